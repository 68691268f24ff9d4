"""Tests for azure_platform module.

The runner and streamer are injected, so these tests check the exact az
argument lists and error mapping without spawning processes.
"""

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from vmdeploy.azure_platform import AzurePlatform, ensure_logged_in
from vmdeploy.exceptions import AuthenticationExpiredError, AzureCLIError
from vmdeploy.transfer import build_quick_script


def completed(stdout: str = "", returncode: int = 0, stderr: str = ""):
    return subprocess.CompletedProcess(
        args=["az"], returncode=returncode, stdout=stdout, stderr=stderr
    )


@pytest.fixture
def runner():
    return MagicMock(return_value=completed())


@pytest.fixture
def streamer():
    return MagicMock(return_value=0)


@pytest.fixture
def azure(runner, streamer):
    return AzurePlatform(runner=runner, streamer=streamer)


def last_cmd(runner: MagicMock) -> list[str]:
    return runner.call_args.args[0]


class TestReads:
    """Read operations never raise on a non-zero exit."""

    def test_show_group_missing_returns_none(self, azure, runner):
        runner.return_value = completed(returncode=3, stderr="ResourceGroupNotFound")

        assert azure.show_group("rg1") is None
        assert last_cmd(runner)[:5] == ["az", "group", "show", "--name", "rg1"]
        assert runner.call_args.kwargs["check"] is False

    def test_show_group_in_other_subscription(self, azure, runner):
        runner.return_value = completed(json.dumps({"name": "rg1", "location": "eastus"}))

        assert azure.show_group("rg1", subscription="sub-2")["location"] == "eastus"
        assert "--subscription" in last_cmd(runner)

    def test_list_key_vaults_names(self, azure, runner):
        runner.return_value = completed(json.dumps([{"name": "kv1"}, {"name": "kv2"}, {}]))

        assert azure.list_key_vaults("rg1") == ["kv1", "kv2"]

    def test_feature_state_unknown_when_empty(self, azure, runner):
        runner.return_value = completed("")

        assert azure.feature_state("Microsoft.Compute", "EncryptionAtHost") == "Unknown"

    def test_unparseable_json_uses_default(self, azure, runner):
        runner.return_value = completed("not json")

        assert azure.list_resources("rg1") == []

    def test_missing_cli_raises(self, azure, runner):
        runner.side_effect = FileNotFoundError("az")

        with pytest.raises(AzureCLIError, match="not installed"):
            azure.is_logged_in()

    def test_os_error_becomes_cli_error(self, azure, runner):
        runner.side_effect = OSError(7, "Argument list too long")

        with pytest.raises(AzureCLIError, match="Could not run az"):
            azure.list_resources("rg1")

    def test_show_vm(self, azure, runner):
        runner.return_value = completed(json.dumps({"osProfile": {"adminUsername": "ops"}}))

        assert azure.show_vm("rg1", "vm1")["osProfile"]["adminUsername"] == "ops"
        assert last_cmd(runner)[:7] == [
            "az", "vm", "show", "--resource-group", "rg1", "--name", "vm1",
        ]

    def test_show_vm_missing(self, azure, runner):
        runner.return_value = completed(returncode=3, stderr="ResourceNotFound")

        assert azure.show_vm("rg1", "vm1") is None

    def test_role_definition_exists(self, azure, runner):
        runner.return_value = completed("/subscriptions/s/providers/roleDefinitions/abc\n")

        assert azure.role_definition_exists("Serial Console User - vm1") is True
        assert last_cmd(runner)[1:4] == ["role", "definition", "list"]


class TestMutations:
    """Mutating operations run once and raise on failure."""

    def test_create_group_single_attempt(self, azure, runner):
        azure.create_group("rg1", "canadacentral")

        cmd = last_cmd(runner)
        assert cmd == [
            "az", "group", "create", "--name", "rg1", "--location", "canadacentral",
            "--output", "none",
        ]
        assert runner.call_args.kwargs["max_attempts"] == 1
        assert azure.mutation_count == 1

    def test_failure_raises_with_stderr(self, azure, runner):
        runner.return_value = completed(returncode=1, stderr="ERROR: AuthorizationFailed")

        with pytest.raises(AzureCLIError) as exc_info:
            azure.delete_group("rg1")

        assert exc_info.value.stderr == "ERROR: AuthorizationFailed"
        assert exc_info.value.returncode == 1
        assert not isinstance(exc_info.value, AuthenticationExpiredError)

    def test_expired_token_detected(self, azure, runner):
        runner.return_value = completed(
            returncode=1, stderr="AADSTS700082: The refresh token has expired"
        )

        with pytest.raises(AuthenticationExpiredError):
            azure.register_feature("Microsoft.Compute", "EncryptionAtHost")

    def test_delete_group_no_wait(self, azure, runner):
        azure.delete_group("rg1", wait=False)

        assert "--no-wait" in last_cmd(runner)
        assert "--yes" in last_cmd(runner)

    def test_role_definition_passed_on_stdin(self, azure, runner):
        azure.create_role_definition('{"Name": "r"}')

        assert last_cmd(runner)[-3:-2] == ["@-"]
        assert runner.call_args.kwargs["input_text"] == '{"Name": "r"}'

    def test_role_assignment_by_object_id(self, azure, runner):
        azure.create_role_assignment("oid-1", "Virtual Machine User Login", "/s/x", object_id=True)

        cmd = last_cmd(runner)
        assert "--assignee-object-id" in cmd
        assert cmd[cmd.index("--assignee-principal-type") + 1] == "User"

    def test_create_deployment_writes_parameters_file(self, azure, runner):
        seen = {}

        def fake_run(cmd, **kwargs):
            path = Path(cmd[cmd.index("--parameters") + 1].lstrip("@"))
            seen["document"] = json.loads(path.read_text())
            seen["path"] = path
            return completed(json.dumps({"properties": {"outputs": {}}}))

        runner.side_effect = fake_run

        result = azure.create_deployment(
            "rg1", Path("main.bicep"), {"vmName": "vm1", "adminPassword": "S3cret!S3cret"}
        )

        assert result == {"properties": {"outputs": {}}}
        assert seen["document"]["parameters"]["vmName"] == {"value": "vm1"}
        assert not seen["path"].exists()
        # The secret is in the file, never on the command line
        assert "S3cret!S3cret" not in " ".join(runner.call_args.args[0])

    def test_run_shell_script_returns_message(self, azure, runner):
        runner.return_value = completed(
            json.dumps({"value": [{"code": "ProvisioningState/succeeded", "message": "done"}]})
        )

        assert azure.run_shell_script("rg1", "vm1", "echo hi") == "done"

    def test_run_shell_script_unexpected_shape(self, azure, runner):
        runner.return_value = completed(json.dumps({"value": []}))

        with pytest.raises(AzureCLIError, match="Unexpected response"):
            azure.run_shell_script("rg1", "vm1", "echo hi")

    def test_large_quick_script_passed_as_file(self, azure, runner):
        script = build_quick_script(b"x" * (300 * 1024), "/home/appuser/blob.bin", "appuser")
        seen = {}

        def fake_run(cmd, **kwargs):
            argument = cmd[cmd.index("--scripts") + 1]
            seen["path"] = Path(argument.lstrip("@"))
            seen["argument"] = argument
            seen["script"] = seen["path"].read_text()
            return completed(json.dumps({"value": [{"message": "Transfer complete!"}]}))

        runner.side_effect = fake_run

        assert azure.run_shell_script("rg1", "vm1", script) == "Transfer complete!"
        assert seen["argument"].startswith("@")
        assert seen["script"] == script
        assert not seen["path"].exists()
        assert sum(len(arg) for arg in runner.call_args.args[0]) < 4096

    def test_script_file_removed_on_failure(self, azure, runner):
        seen = {}

        def fake_run(cmd, **kwargs):
            seen["path"] = Path(cmd[cmd.index("--scripts") + 1].lstrip("@"))
            return completed(returncode=1, stderr="ERROR: (Conflict) busy")

        runner.side_effect = fake_run

        with pytest.raises(AzureCLIError, match="Conflict"):
            azure.run_shell_script("rg1", "vm1", "echo hi")
        assert not seen["path"].exists()

    def test_os_error_becomes_cli_error(self, azure, runner):
        runner.side_effect = OSError(7, "Argument list too long")

        with pytest.raises(AzureCLIError, match="Argument list too long"):
            azure.run_shell_script("rg1", "vm1", "echo hi")


class TestStorage:
    def test_user_delegation_sas(self, azure, runner):
        runner.return_value = completed("se=2026&sig=abc\n")

        token = azure.generate_user_delegation_sas("c1", "acct", "2026-01-01T00:00Z")

        assert token == "se=2026&sig=abc"
        assert "--as-user" in last_cmd(runner)
        assert azure.mutation_count == 0

    def test_sas_failure_raises(self, azure, runner):
        runner.return_value = completed(returncode=1, stderr="AuthorizationPermissionMismatch")

        with pytest.raises(AzureCLIError, match="user delegation SAS"):
            azure.generate_user_delegation_sas("c1", "acct", "2026-01-01T00:00Z")

    def test_azcopy_upload_counts_as_mutation(self, azure, streamer):
        streamer.return_value = 1

        assert azure.azcopy_upload("./app/*", "https://x?sig=y", recursive=True) == 1
        cmd = streamer.call_args.args[0]
        assert cmd[:2] == ["azcopy", "copy"]
        assert cmd[-1] == "--recursive"
        assert azure.mutation_count == 1

    def test_azcopy_missing(self, azure, streamer):
        streamer.side_effect = FileNotFoundError("azcopy")

        with pytest.raises(AzureCLIError, match="azcopy is not installed"):
            azure.azcopy_upload("f", "https://x", recursive=False)


class TestAccount:
    def test_resolve_user_object_id_auth_expired(self, azure, runner):
        runner.return_value = completed(returncode=1, stderr="InteractionRequired: AADSTS50076")

        with pytest.raises(AuthenticationExpiredError):
            azure.resolve_user_object_id("user@example.com")

    def test_resolve_user_object_id_not_found(self, azure, runner):
        runner.return_value = completed(returncode=3, stderr="Resource not found")

        with pytest.raises(AzureCLIError, match="Could not find user user@example.com"):
            azure.resolve_user_object_id("user@example.com")

    def test_ensure_logged_in_runs_login(self, azure, runner, streamer):
        runner.return_value = completed(returncode=1, stderr="Please run 'az login'")

        ensure_logged_in(azure)

        streamer.assert_called_once()
        assert streamer.call_args.args[0][:2] == ["az", "login"]

    def test_ensure_logged_in_skips_when_active(self, azure, streamer):
        ensure_logged_in(azure)
        streamer.assert_not_called()

    def test_security_contact_arguments(self, azure, runner):
        azure.create_security_contact(
            "sec@example.com",
            {"state": "On", "minimalSeverity": "High"},
            {"state": "On", "roles": ["Owner"]},
            phone="+15551234567",
        )

        cmd = last_cmd(runner)
        assert cmd[cmd.index("--emails") + 1] == "sec@example.com"
        assert cmd[cmd.index("--phone") + 1] == "+15551234567"
        assert json.loads(cmd[cmd.index("--alert-notifications") + 1])["minimalSeverity"] == "High"
