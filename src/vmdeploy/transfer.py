"""File transfer to the VM through a temporary blob container.

Staged transfer:
  1. Create a uniquely named container in the resource group's storage account
  2. Upload each local path with azcopy using a user delegation SAS
  3. Run a download script on the VM (VM Run Command) that pulls each
     prefix into its target path and chowns it to the service user
  4. Delete the container

The SAS is a user delegation SAS (``--as-user``): it is signed with the
caller's Entra ID credentials, never with a storage account key. The
container is deleted on every exit path, including SIGTERM, because an
orphaned container keeps accruing storage charges.

Quick transfer skips blob storage entirely for one small file by inlining
its base64 content in the run-command script.
"""

import base64
import logging
import os
import shlex
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from vmdeploy.azure_platform import AzurePlatform
from vmdeploy.exceptions import (
    AzureCLIError,
    InvalidTransferSpecError,
    QuickTransferError,
    StorageAccountNotFoundError,
    TransferError,
    TransferInterruptedError,
)
from vmdeploy.interaction_handler import InteractionHandler
from vmdeploy.parameters import DEFAULT_SERVICE_USER, read_service_user
from vmdeploy.settings import TransferConfig

logger = logging.getLogger(__name__)

# Base64 of 512 KiB still fits in a run-command payload
QUICK_TRANSFER_LIMIT = 512 * 1024
SAS_LIFETIME = timedelta(hours=1)
SAS_PERMISSIONS = "rwdl"
AZCOPY_INSTALL_URL = "https://aka.ms/downloadazcopy-v10-linux"


@dataclass(frozen=True)
class TransferPair:
    """One local path and its destination on the VM."""

    local: Path
    remote: str

    @property
    def is_directory(self) -> bool:
        return self.local.is_dir()


def parse_transfer_spec(spec: str) -> TransferPair:
    """Parse ``LOCAL:REMOTE``, splitting on the first colon.

    Raises:
        InvalidTransferSpecError: If either side is missing
    """
    local, sep, remote = spec.partition(":")
    if not sep or not local or not remote:
        raise InvalidTransferSpecError(
            f"Transfer path must be in LOCAL:VM format, got '{spec}' "
            "(example: -t ./myapp:/home/appuser)"
        )
    return TransferPair(local=Path(local), remote=remote)


@dataclass(frozen=True)
class TransferPlan:
    """Validated transfer request, built before any Azure call."""

    resource_group: str
    vm_name: str
    pairs: tuple[TransferPair, ...]
    service_user: str
    quick: bool = False
    dry_run: bool = False
    assume_yes: bool = False


def plan_transfer(config: TransferConfig) -> TransferPlan:
    """Validate a transfer request without touching Azure.

    The parameters file's service user wins over --service-user, which wins over
    the default.

    Raises:
        InvalidTransferSpecError: Malformed spec or missing local path
        QuickTransferError: Quick mode constraints violated
        ConfigNotFoundError: Parameters file does not exist
    """
    if not config.transfers:
        raise InvalidTransferSpecError("At least one transfer path is required")
    pairs = tuple(parse_transfer_spec(spec) for spec in config.transfers)
    for pair in pairs:
        if not pair.local.exists():
            raise InvalidTransferSpecError(f"Local path does not exist: {pair.local}")

    if config.quick:
        validate_quick_transfer(pairs)

    service_user = None
    if config.parameters_file is not None:
        service_user = read_service_user(config.parameters_file)

    return TransferPlan(
        resource_group=config.resource_group,
        vm_name=config.vm_name,
        pairs=pairs,
        service_user=service_user or config.service_user or DEFAULT_SERVICE_USER,
        quick=config.quick,
        dry_run=config.dry_run,
        assume_yes=config.assume_yes,
    )


def validate_quick_transfer(pairs: tuple[TransferPair, ...]) -> None:
    if len(pairs) != 1:
        raise QuickTransferError("Quick mode only supports a single file transfer")
    pair = pairs[0]
    if pair.is_directory:
        raise QuickTransferError(
            "Quick mode does not support directories. Use without --quick for directories."
        )
    size = pair.local.stat().st_size
    if size > QUICK_TRANSFER_LIMIT:
        raise QuickTransferError(
            f"File too large for quick mode ({size} bytes > {QUICK_TRANSFER_LIMIT} bytes "
            "limit). Use without --quick for large files."
        )


def generate_container_name(now: datetime | None = None, pid: int | None = None) -> str:
    now = now or datetime.now()
    pid = os.getpid() if pid is None else pid
    return f"transfer-{now:%Y%m%d-%H%M%S}-{pid}"


def sas_expiry(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return (now + SAS_LIFETIME).strftime("%Y-%m-%dT%H:%MZ")


def blob_prefix(index: int) -> str:
    return f"transfer-{index}"


def format_size(size: int) -> str:
    """Human-readable size (1.5K, 12.0M) in binary units."""
    if size < 1024:
        return f"{size}B"
    value = float(size)
    for unit in ("K", "M", "G"):
        value /= 1024
        if value < 1024 or unit == "G":
            break
    return f"{value:.1f}{unit}"


def local_size(path: Path) -> int:
    if path.is_dir():
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
    return path.stat().st_size


def build_download_script(
    blob_url: str, sas_token: str, pairs: tuple[TransferPair, ...], service_user: str
) -> str:
    """Shell script run on the VM to pull every staged prefix.

    Installs azcopy when missing, downloads each ``transfer-<i>/`` prefix
    into its target directory and chowns the targets to the service user.
    Individual download or chown failures are reported in the output but
    do not stop the remaining transfers.
    """
    owner = shlex.quote(f"{service_user}:{service_user}")
    lines = [
        "#!/bin/bash",
        "set -e",
        "",
        "if ! command -v azcopy &> /dev/null; then",
        "    echo 'Installing azcopy...'",
        "    cd /tmp",
        f"    curl -sL {AZCOPY_INSTALL_URL} | tar xz --strip-components=1",
        "    mv azcopy /usr/local/bin/",
        "    chmod +x /usr/local/bin/azcopy",
        "fi",
        "",
        f"BLOB_URL={shlex.quote(blob_url)}",
        f"SAS_TOKEN={shlex.quote(sas_token)}",
        "",
    ]
    for index, pair in enumerate(pairs):
        target = shlex.quote(pair.remote)
        lines += [
            f"echo {shlex.quote('Downloading to: ' + pair.remote)}",
            f"mkdir -p {target}",
            f'azcopy copy "${{BLOB_URL}}/{blob_prefix(index)}/*?${{SAS_TOKEN}}" {target} '
            "--recursive 2>&1 || true",
        ]
    lines.append(f"echo {shlex.quote('Setting ownership to ' + service_user)}")
    for pair in pairs:
        target = shlex.quote(pair.remote)
        warning = shlex.quote(f"Warning: Could not set ownership on {pair.remote}")
        lines.append(f"chown -R {owner} {target} 2>/dev/null || echo {warning}")
    lines += ["", "echo 'Transfer complete!'", ""]
    return "\n".join(lines)


def build_quick_script(content: bytes, remote_path: str, service_user: str) -> str:
    """Script that writes base64-inlined ``content`` to ``remote_path``."""
    encoded = base64.b64encode(content).decode("ascii")
    target = shlex.quote(remote_path)
    parent = shlex.quote(os.path.dirname(remote_path) or "/")
    owner = shlex.quote(f"{service_user}:{service_user}")
    return (
        f"mkdir -p {parent}; echo '{encoded}' | base64 -d > {target}; "
        f"chown {owner} {target}; chmod 644 {target}; ls -la {target}"
    )


def _reports_error(message: str) -> bool:
    return any(word in message for word in ("error", "Error", "failed"))


class TransferSession:
    """Temporary blob container scoped to a ``with`` block.

    The container is created on enter and deleted on exit, whatever the
    exit path. While the session is open, SIGTERM raises
    TransferInterruptedError so the exit handler still runs. SIGINT already
    arrives as KeyboardInterrupt.

    Example:
        >>> with TransferSession(platform, "diagacct", "transfer-1") as session:
        ...     token = session.generate_sas()
    """

    def __init__(self, platform: AzurePlatform, storage_account: str, container: str):
        self.platform = platform
        self.storage_account = storage_account
        self.container = container
        self.created = False
        self._previous_handler = None

    @property
    def blob_url(self) -> str:
        return f"https://{self.storage_account}.blob.core.windows.net/{self.container}"

    def _on_sigterm(self, signum, frame):
        raise TransferInterruptedError(f"Transfer interrupted by signal {signum}")

    def _install_signal_handler(self) -> None:
        # signal.signal only works from the main thread
        if threading.current_thread() is threading.main_thread():
            self._previous_handler = signal.signal(signal.SIGTERM, self._on_sigterm)

    def _restore_signal_handler(self) -> None:
        if self._previous_handler is not None:
            signal.signal(signal.SIGTERM, self._previous_handler)
            self._previous_handler = None

    def __enter__(self) -> "TransferSession":
        self._install_signal_handler()
        try:
            logger.info("Creating temporary container...")
            self.platform.create_container(self.container, self.storage_account)
            self.created = True
            logger.debug(f"Container created: {self.container}")
        except BaseException:
            self._restore_signal_handler()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            if self.created:
                logger.info(f"Cleaning up: Deleting temporary container '{self.container}'...")
                try:
                    self.platform.delete_container(self.container, self.storage_account)
                    self.created = False
                    logger.info("Container deleted.")
                except AzureCLIError as e:
                    logger.warning(
                        f"Could not delete container '{self.container}': {e}. Delete it with: "
                        f"az storage container delete --name {self.container} "
                        f"--account-name {self.storage_account} --auth-mode login"
                    )
        finally:
            self._restore_signal_handler()
        return False

    def generate_sas(self, now: datetime | None = None) -> str:
        """Create a one-hour user delegation SAS for the container.

        Raises:
            TransferError: If the caller lacks Storage Blob Data Contributor
        """
        expiry = sas_expiry(now)
        logger.debug(f"Generating user delegation SAS token (expires: {expiry})...")
        try:
            return self.platform.generate_user_delegation_sas(
                self.container, self.storage_account, expiry, SAS_PERMISSIONS
            )
        except AzureCLIError as e:
            raise TransferError(
                "Failed to generate user delegation SAS token. This requires the "
                "'Storage Blob Data Contributor' role on the storage account. Assign it with: "
                "az role assignment create --assignee <your-email> "
                "--role 'Storage Blob Data Contributor' --scope /subscriptions/<sub>/"
                f"resourceGroups/<rg>/providers/Microsoft.Storage/storageAccounts/"
                f"{self.storage_account}"
            ) from e


@dataclass
class TransferResult:
    container: str | None = None
    transferred: list[TransferPair] = field(default_factory=list)
    upload_failures: list[TransferPair] = field(default_factory=list)
    vm_output: str = ""
    dry_run: bool = False
    cancelled: bool = False


class TransferOrchestrator:
    """Run a validated TransferPlan against Azure."""

    def __init__(
        self,
        platform: AzurePlatform,
        interaction: InteractionHandler,
        console: Console | None = None,
    ):
        self.platform = platform
        self.interaction = interaction
        self.console = console or Console()

    def run(self, plan: TransferPlan) -> TransferResult:
        if plan.quick:
            return self.quick_transfer(plan)
        return self.staged_transfer(plan)

    def _print_header(self, title: str, plan: TransferPlan, rows: list[tuple[str, str]]) -> None:
        click.echo()
        click.echo("=" * 40)
        click.echo(f"{title} (DRY RUN)" if plan.dry_run else title)
        click.echo("=" * 40)
        click.echo()
        for label, value in rows:
            click.echo(f"{label}: {value}")
        click.echo()

    def quick_transfer(self, plan: TransferPlan) -> TransferResult:
        """Write one small file through run-command without blob storage.

        Raises:
            TransferError: If the VM reports an error writing the file
        """
        pair = plan.pairs[0]
        size = pair.local.stat().st_size
        self._print_header(
            "Quick Transfer",
            plan,
            [
                ("Resource Group", plan.resource_group),
                ("VM Name", plan.vm_name),
                ("Service User", plan.service_user),
            ],
        )
        click.echo("Transfer:")
        click.echo(f"  {pair.local} -> {pair.remote} ({format_size(size)})")

        if plan.dry_run:
            click.echo()
            click.echo("Would transfer file via az vm run-command (base64 encoded)")
            click.echo("No blob storage container would be created.")
            return TransferResult(dry_run=True)

        logger.info("Transferring file via run-command...")
        script = build_quick_script(pair.local.read_bytes(), pair.remote, plan.service_user)
        message = self.platform.run_shell_script(plan.resource_group, plan.vm_name, script)
        if _reports_error(message):
            raise TransferError(f"Transfer failed: {message}")

        click.echo()
        click.echo("Quick Transfer Complete!")
        click.echo(f"File transferred: {pair.remote}")
        click.echo(f"Owner: {plan.service_user}")
        return TransferResult(transferred=[pair], vm_output=message)

    def _transfers_table(self, plan: TransferPlan, container: str) -> Table:
        table = Table(title="Transfers", show_header=True, header_style="bold")
        table.add_column("Local", style="cyan")
        table.add_column("Blob")
        table.add_column("VM Path", style="yellow")
        table.add_column("Size", justify="right")
        for index, pair in enumerate(plan.pairs):
            suffix = "/" if pair.is_directory else ""
            table.add_row(
                f"{pair.local}{suffix}",
                f"{container}/{blob_prefix(index)}/",
                pair.remote,
                format_size(local_size(pair.local)),
            )
        return table

    def _upload(self, session: TransferSession, sas_token: str, index: int, pair: TransferPair):
        destination = f"{session.blob_url}/{blob_prefix(index)}"
        logger.info(f"  Uploading: {pair.local} -> blob:{blob_prefix(index)}/")
        if pair.is_directory:
            source = f"{pair.local}/*"
            url = f"{destination}?{sas_token}"
        else:
            source = str(pair.local)
            url = f"{destination}/{pair.local.name}?{sas_token}"
        return self.platform.azcopy_upload(source, url, recursive=pair.is_directory)

    def staged_transfer(self, plan: TransferPlan) -> TransferResult:
        """Stage through a temporary container and pull from the VM.

        Raises:
            StorageAccountNotFoundError: If the resource group has no storage account
            TransferError: If the SAS cannot be generated
            TransferInterruptedError: On SIGTERM (the container is still deleted)
        """
        logger.info(f"Looking up storage account in resource group '{plan.resource_group}'...")
        accounts = self.platform.list_storage_accounts(plan.resource_group)
        if not accounts:
            raise StorageAccountNotFoundError(
                f"No storage account found in resource group '{plan.resource_group}'. "
                "Make sure the VM was deployed with vmdeploy (which creates one)."
            )
        storage_account = accounts[0]
        logger.debug(f"Found storage account: {storage_account}")

        container = generate_container_name()
        self._print_header(
            "Data Transfer to Azure VM",
            plan,
            [
                ("Resource Group", plan.resource_group),
                ("VM Name", plan.vm_name),
                ("Storage Account", storage_account),
                ("Container", f"{container} (temporary)"),
                ("Service User", plan.service_user),
            ],
        )
        self.console.print(self._transfers_table(plan, container))

        if plan.dry_run:
            click.echo()
            click.echo("Steps that would be performed:")
            click.echo(f"  1. CREATE temporary container '{container}' in storage account")
            click.echo("  2. UPLOAD files from local paths to blob storage using azcopy")
            click.echo("  3. DOWNLOAD files from blob storage to VM using azcopy (via Run Command)")
            click.echo(f"  4. SET ownership to {plan.service_user}:{plan.service_user}")
            click.echo(f"  5. DELETE temporary container '{container}'")
            click.echo()
            click.echo("No changes were made.")
            return TransferResult(container=container, dry_run=True)

        if not plan.assume_yes and not self.interaction.confirm("Continue with transfer?"):
            click.echo("Transfer cancelled")
            return TransferResult(container=container, cancelled=True)

        result = TransferResult(container=container)
        with TransferSession(self.platform, storage_account, container) as session:
            logger.info("Uploading files to blob storage...")
            sas_token = session.generate_sas()
            for index, pair in enumerate(plan.pairs):
                exit_code = self._upload(session, sas_token, index, pair)
                if exit_code != 0:
                    self.interaction.show_warning(
                        f"Some files from {pair.local} may have failed to upload "
                        "(check azcopy output above)"
                    )
                    result.upload_failures.append(pair)
            logger.info("  Upload complete")

            logger.info("Downloading files to VM...")
            script = build_download_script(
                session.blob_url, sas_token, plan.pairs, plan.service_user
            )
            result.vm_output = self.platform.run_shell_script(
                plan.resource_group, plan.vm_name, script
            )
            if _reports_error(result.vm_output):
                self.interaction.show_warning(
                    f"VM command completed with errors:\n{result.vm_output}"
                )
            else:
                logger.debug(f"VM download output:\n{result.vm_output}")
            result.transferred = list(plan.pairs)

        click.echo()
        click.echo("=" * 40)
        click.echo("Transfer Complete!")
        click.echo("=" * 40)
        click.echo("Files transferred to VM:")
        for pair in plan.pairs:
            click.echo(f"  - {pair.remote} (owned by {plan.service_user})")
        click.echo()
        if session.created:
            click.echo(f"Temporary container '{container}' could not be deleted (see above).")
        else:
            click.echo("Temporary storage container has been deleted.")
        return result


__all__ = [
    "QUICK_TRANSFER_LIMIT",
    "TransferOrchestrator",
    "TransferPair",
    "TransferPlan",
    "TransferResult",
    "TransferSession",
    "build_download_script",
    "build_quick_script",
    "generate_container_name",
    "parse_transfer_spec",
    "plan_transfer",
    "sas_expiry",
]
