"""Azure platform gateway.

Every Azure CLI and azcopy invocation in vmdeploy goes through
AzurePlatform. Each method is one named platform operation; methods listed
in MUTATING_OPERATIONS change cloud state and are issued exactly once
(no automatic retry), everything else is a read that may be retried.

Orchestrators receive the platform as a constructor argument, which lets
the tests substitute a recording fake and assert that dry-run paths issue
zero mutating calls.
"""

import json
import logging
import os
import subprocess
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, ClassVar

from vmdeploy.azure_cli_executor import run_az_command, run_streaming
from vmdeploy.exceptions import AuthenticationExpiredError, AzureCLIError
from vmdeploy.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

AUTH_EXPIRED_MARKERS = ("InteractionRequired", "InvalidAuthenticationToken", "AADSTS")


class AzurePlatform:
    """Named Azure operations backed by the az CLI."""

    MUTATING_OPERATIONS: ClassVar[frozenset[str]] = frozenset(
        {
            "create_group",
            "delete_group",
            "purge_key_vault",
            "register_feature",
            "register_provider",
            "create_deployment",
            "set_vm_extension",
            "run_shell_script",
            "create_role_definition",
            "create_role_assignment",
            "create_container",
            "delete_container",
            "azcopy_upload",
            "update_vm_user",
            "create_security_contact",
            "move_resources",
        }
    )

    # Deployments routinely take 3-7 minutes, CMK adds a few more
    DEPLOYMENT_TIMEOUT = 3600
    RUN_COMMAND_TIMEOUT = 1800
    GROUP_DELETE_TIMEOUT = 3600

    def __init__(
        self,
        runner: Callable[..., subprocess.CompletedProcess[str]] = run_az_command,
        streamer: Callable[..., int] = run_streaming,
    ):
        self._run = runner
        self._stream = streamer
        self.mutation_count = 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read(self, args: list[str], *, timeout: int = 60) -> subprocess.CompletedProcess[str]:
        cmd = ["az", *args]
        try:
            return self._run(cmd, timeout=timeout, check=False)
        except FileNotFoundError as e:
            raise AzureCLIError(
                "Azure CLI (az) is not installed. Install from: "
                "https://docs.microsoft.com/en-us/cli/azure/install-azure-cli",
                cmd=cmd,
            ) from e
        except subprocess.TimeoutExpired as e:
            raise AzureCLIError(
                f"Timed out: {LogSanitizer.sanitize_command(cmd)}", cmd=cmd
            ) from e
        except OSError as e:
            raise AzureCLIError(f"Could not run az: {e}", cmd=cmd) from e

    def _read_json(self, args: list[str], default: Any = None) -> Any:
        result = self._read([*args, "--output", "json"])
        if result.returncode != 0 or not result.stdout.strip():
            return default
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.debug(f"Unparseable output from az {' '.join(args[:3])}")
            return default

    def _read_tsv(self, args: list[str]) -> str:
        result = self._read([*args, "--output", "tsv"])
        if result.returncode != 0:
            return ""
        return result.stdout.strip()

    def _mutate(
        self,
        args: list[str],
        *,
        timeout: int | None = 600,
        input_text: str | None = None,
        output: str = "none",
    ) -> str:
        cmd = ["az", *args, "--output", output]
        self.mutation_count += 1
        try:
            result = self._run(
                cmd, timeout=timeout, max_attempts=1, check=False, input_text=input_text
            )
        except FileNotFoundError as e:
            raise AzureCLIError("Azure CLI (az) is not installed", cmd=cmd) from e
        except subprocess.TimeoutExpired as e:
            raise AzureCLIError(
                f"Timed out: {LogSanitizer.sanitize_command(cmd)}", cmd=cmd
            ) from e
        except OSError as e:
            raise AzureCLIError(f"Could not run az: {e}", cmd=cmd) from e

        if result.returncode != 0:
            stderr = LogSanitizer.sanitize(result.stderr.strip())
            error_cls = AzureCLIError
            if any(marker in stderr for marker in AUTH_EXPIRED_MARKERS):
                error_cls = AuthenticationExpiredError
            raise error_cls(
                stderr or f"az {' '.join(args[:3])} failed",
                cmd=cmd,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result.stdout

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def is_logged_in(self) -> bool:
        return self._read(["account", "show"]).returncode == 0

    def login(self) -> None:
        """Run interactive ``az login`` (not counted as a cloud mutation)."""
        cmd = ["az", "login", "--output", "none"]
        try:
            returncode = self._stream(cmd)
        except FileNotFoundError as e:
            raise AzureCLIError("Azure CLI (az) is not installed", cmd=cmd) from e
        if returncode != 0:
            raise AzureCLIError("az login failed", cmd=cmd, returncode=returncode)

    def show_account(self, subscription: str | None = None) -> dict[str, Any] | None:
        args = ["account", "show"]
        if subscription:
            args += ["--subscription", subscription]
        return self._read_json(args)

    def list_subscriptions(self) -> list[dict[str, Any]]:
        return self._read_json(["account", "list"], default=[])

    # ------------------------------------------------------------------
    # Resource groups
    # ------------------------------------------------------------------

    def show_group(self, name: str, subscription: str | None = None) -> dict[str, Any] | None:
        args = ["group", "show", "--name", name]
        if subscription:
            args += ["--subscription", subscription]
        return self._read_json(args)

    def list_resources(self, resource_group: str) -> list[dict[str, Any]]:
        return self._read_json(
            ["resource", "list", "--resource-group", resource_group], default=[]
        )

    def create_group(self, name: str, location: str, subscription: str | None = None) -> None:
        args = ["group", "create", "--name", name, "--location", location]
        if subscription:
            args += ["--subscription", subscription]
        self._mutate(args)

    def delete_group(self, name: str, *, wait: bool = True) -> None:
        args = ["group", "delete", "--name", name, "--yes"]
        if not wait:
            args.append("--no-wait")
        self._mutate(args, timeout=self.GROUP_DELETE_TIMEOUT)

    # ------------------------------------------------------------------
    # Key Vault
    # ------------------------------------------------------------------

    def list_key_vaults(self, resource_group: str) -> list[str]:
        vaults = self._read_json(
            ["keyvault", "list", "--resource-group", resource_group], default=[]
        )
        return [v["name"] for v in vaults if v.get("name")]

    def purge_key_vault(self, name: str) -> None:
        self._mutate(["keyvault", "purge", "--name", name], timeout=1200)

    # ------------------------------------------------------------------
    # Features and providers
    # ------------------------------------------------------------------

    def feature_state(self, namespace: str, name: str) -> str:
        state = self._read_tsv(
            [
                "feature",
                "show",
                "--namespace",
                namespace,
                "--name",
                name,
                "--query",
                "properties.state",
            ]
        )
        return state or "Unknown"

    def register_feature(self, namespace: str, name: str) -> None:
        self._mutate(["feature", "register", "--namespace", namespace, "--name", name])

    def register_provider(self, namespace: str) -> None:
        self._mutate(["provider", "register", "--namespace", namespace])

    def provider_state(self, namespace: str) -> str:
        return self._read_tsv(
            ["provider", "show", "--namespace", namespace, "--query", "registrationState"]
        )

    # ------------------------------------------------------------------
    # Deployments and VMs
    # ------------------------------------------------------------------

    def create_deployment(
        self, resource_group: str, template_file: Path, parameters: dict[str, Any]
    ) -> dict[str, Any]:
        """Submit a template deployment and wait for it.

        Parameters are written to a 0600 temp file in ARM parameters format
        so secrets never appear on the process command line.
        """
        document = {
            "$schema": "https://schema.management.azure.com/schemas/2019-04-01/"
            "deploymentParameters.json#",
            "contentVersion": "1.0.0.0",
            "parameters": {key: {"value": value} for key, value in parameters.items()},
        }
        fd, params_path = tempfile.mkstemp(prefix="vmdeploy-params-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document, f)
            output = self._mutate(
                [
                    "deployment",
                    "group",
                    "create",
                    "--resource-group",
                    resource_group,
                    "--template-file",
                    str(template_file),
                    "--parameters",
                    f"@{params_path}",
                ],
                timeout=self.DEPLOYMENT_TIMEOUT,
                output="json",
            )
        finally:
            Path(params_path).unlink(missing_ok=True)
        return json.loads(output) if output.strip() else {}

    def vm_exists(self, resource_group: str, name: str) -> bool:
        result = self._read(["vm", "show", "--resource-group", resource_group, "--name", name])
        return result.returncode == 0

    def show_vm(self, resource_group: str, name: str) -> dict[str, Any] | None:
        return self._read_json(["vm", "show", "--resource-group", resource_group, "--name", name])

    def set_vm_extension(
        self,
        resource_group: str,
        vm_name: str,
        name: str,
        publisher: str,
        settings: dict[str, Any],
    ) -> None:
        self._mutate(
            [
                "vm",
                "extension",
                "set",
                "--resource-group",
                resource_group,
                "--vm-name",
                vm_name,
                "--name",
                name,
                "--publisher",
                publisher,
                "--settings",
                json.dumps(settings),
            ],
            timeout=self.RUN_COMMAND_TIMEOUT,
        )

    def run_shell_script(self, resource_group: str, vm_name: str, script: str) -> str:
        """Execute a script through VM Run Command and return its message.

        The script goes to a 0600 temp file passed as ``@path``; quick
        transfers embed file content and would overflow the argument list.

        Raises:
            AzureCLIError: If the call fails or returns an unexpected shape
        """
        fd, script_path = tempfile.mkstemp(prefix="vmdeploy-script-", suffix=".sh")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(script)
            output = self._mutate(
                [
                    "vm",
                    "run-command",
                    "invoke",
                    "--resource-group",
                    resource_group,
                    "--name",
                    vm_name,
                    "--command-id",
                    "RunShellScript",
                    "--scripts",
                    f"@{script_path}",
                ],
                timeout=self.RUN_COMMAND_TIMEOUT,
                output="json",
            )
        finally:
            Path(script_path).unlink(missing_ok=True)
        try:
            payload = json.loads(output)
            return payload["value"][0]["message"]
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise AzureCLIError(
                f"Unexpected response from VM run-command: {LogSanitizer.sanitize(output)}"
            ) from e

    def update_vm_user(self, resource_group: str, vm_name: str, username: str, password: str):
        self._mutate(
            [
                "vm",
                "user",
                "update",
                "--resource-group",
                resource_group,
                "--name",
                vm_name,
                "--username",
                username,
                "--password",
                password,
            ]
        )

    # ------------------------------------------------------------------
    # RBAC
    # ------------------------------------------------------------------

    def role_definition_exists(self, name: str) -> bool:
        return bool(
            self._read_tsv(["role", "definition", "list", "--name", name, "--query", "[0].id"])
        )

    def create_role_definition(self, definition: str) -> None:
        """Create a custom role from its JSON document (passed on stdin)."""
        self._mutate(
            ["role", "definition", "create", "--role-definition", "@-"], input_text=definition
        )

    def create_role_assignment(
        self,
        assignee: str,
        role: str,
        scope: str,
        *,
        object_id: bool = False,
    ) -> None:
        if object_id:
            target = ["--assignee-object-id", assignee, "--assignee-principal-type", "User"]
        else:
            target = ["--assignee", assignee]
        self._mutate(["role", "assignment", "create", *target, "--role", role, "--scope", scope])

    def resolve_user_object_id(self, email: str) -> str:
        """Resolve an Entra ID user principal name to its object id.

        Raises:
            AuthenticationExpiredError: If the CLI token needs re-authentication
            AzureCLIError: If the user cannot be found
        """
        cmd_args = ["ad", "user", "show", "--id", email, "--query", "id", "--output", "tsv"]
        result = self._read(cmd_args)
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(marker in stderr for marker in AUTH_EXPIRED_MARKERS):
                raise AuthenticationExpiredError(
                    "Azure CLI token has expired or requires re-authentication",
                    cmd=["az", *cmd_args],
                    returncode=result.returncode,
                    stderr=stderr,
                )
            raise AzureCLIError(
                f"Could not find user {email}",
                cmd=["az", *cmd_args],
                returncode=result.returncode,
                stderr=stderr,
            )
        return result.stdout.strip()

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def list_storage_accounts(self, resource_group: str) -> list[str]:
        accounts = self._read_json(
            ["storage", "account", "list", "--resource-group", resource_group], default=[]
        )
        return [a["name"] for a in accounts if a.get("name")]

    def create_container(self, name: str, account: str) -> None:
        self._mutate(
            [
                "storage",
                "container",
                "create",
                "--name",
                name,
                "--account-name",
                account,
                "--auth-mode",
                "login",
            ]
        )

    def delete_container(self, name: str, account: str) -> None:
        self._mutate(
            [
                "storage",
                "container",
                "delete",
                "--name",
                name,
                "--account-name",
                account,
                "--auth-mode",
                "login",
            ]
        )

    def generate_user_delegation_sas(
        self, container: str, account: str, expiry: str, permissions: str = "rwdl"
    ) -> str:
        """Generate a user delegation SAS (Entra ID based, no account key).

        Raises:
            AzureCLIError: If the caller lacks Storage Blob Data Contributor
        """
        cmd_args = [
            "storage",
            "container",
            "generate-sas",
            "--name",
            container,
            "--account-name",
            account,
            "--as-user",
            "--auth-mode",
            "login",
            "--permissions",
            permissions,
            "--expiry",
            expiry,
            "--output",
            "tsv",
        ]
        result = self._read(cmd_args)
        token = result.stdout.strip()
        if result.returncode != 0 or not token:
            raise AzureCLIError(
                "Failed to generate user delegation SAS token",
                cmd=["az", *cmd_args[:6]],
                returncode=result.returncode,
                stderr=LogSanitizer.sanitize(result.stderr.strip()),
            )
        return token

    def azcopy_upload(self, source: str, destination_url: str, *, recursive: bool) -> int:
        """Upload with azcopy, streaming its progress. Returns the exit code."""
        self.mutation_count += 1
        cmd = ["azcopy", "copy", source, destination_url]
        if recursive:
            cmd.append("--recursive")
        env = {**os.environ, "COLUMNS": "120"}
        try:
            return self._stream(cmd, env=env)
        except FileNotFoundError as e:
            raise AzureCLIError(
                "azcopy is not installed. Install from: "
                "https://docs.microsoft.com/en-us/azure/storage/common/storage-use-azcopy-v10",
                cmd=["azcopy"],
            ) from e

    # ------------------------------------------------------------------
    # Security Center and subscription moves
    # ------------------------------------------------------------------

    def create_security_contact(
        self,
        email: str,
        alert_notifications: dict[str, Any],
        notifications_by_role: dict[str, Any],
        phone: str | None = None,
    ) -> None:
        args = ["security", "contact", "create", "--name", "default", "--emails", email]
        if phone:
            args += ["--phone", phone]
        args += [
            "--alert-notifications",
            json.dumps(alert_notifications),
            "--notifications-by-role",
            json.dumps(notifications_by_role),
        ]
        self._mutate(args)

    def validate_move(self, source_group_id: str, resource_ids: list[str], target_group_id: str):
        """Ask ARM to validate a move (does not change state).

        Raises:
            AzureCLIError: With the validation message when the move is rejected
        """
        body = json.dumps({"resources": resource_ids, "targetResourceGroup": target_group_id})
        result = self._read(
            [
                "resource",
                "invoke-action",
                "--action",
                "validateMoveResources",
                "--ids",
                source_group_id,
                "--request-body",
                body,
            ],
            timeout=600,
        )
        if result.returncode != 0:
            raise AzureCLIError(
                "Move validation failed",
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )

    def move_resources(self, resource_ids: list[str], group: str, subscription_id: str) -> None:
        self._mutate(
            [
                "resource",
                "move",
                "--destination-group",
                group,
                "--destination-subscription-id",
                subscription_id,
                "--ids",
                *resource_ids,
            ],
            timeout=self.GROUP_DELETE_TIMEOUT,
        )


def ensure_logged_in(platform: AzurePlatform) -> None:
    """Run ``az login`` when there is no active Azure CLI session."""
    if not platform.is_logged_in():
        logger.info("Not logged in to Azure. Running 'az login'...")
        platform.login()


__all__ = ["AUTH_EXPIRED_MARKERS", "AzurePlatform", "ensure_logged_in"]
