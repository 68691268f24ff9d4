"""Tests for deployment module."""

from datetime import datetime
from pathlib import Path

import pytest

from tests.mocks.azure_platform_mock import deployment_payload
from vmdeploy.deployment import (
    CREATE_ONLY_PARAMETERS,
    DeploymentOutputs,
    build_deployment_parameters,
    confirm_bootstrap,
    ensure_encryption_at_host,
    generate_key_vault_name,
    read_preserved_parameters,
    submit_deployment,
)
from vmdeploy.exceptions import (
    AuthenticationExpiredError,
    AzureCLIError,
    DeploymentError,
    FeatureNotRegisteredError,
    ValidationError,
)
from vmdeploy.interaction_handler import MockInteractionHandler
from vmdeploy.parameters import load_parameters
from vmdeploy.retry_handler import RetryPolicy, fixed_backoff
from vmdeploy.settings import DeployConfig


@pytest.fixture
def config():
    return DeployConfig(
        resource_group="rg1",
        vm_name="vm1",
        alert_email="ops@example.com",
        entra_users=("user@example.com",),
        ssh_source="203.0.113.0/24",
    )


class TestBuildDeploymentParameters:
    def test_create_includes_credentials_and_bootstrap(self, config, parameters_file):
        values = build_deployment_parameters(
            config,
            load_parameters(parameters_file),
            update=False,
            admin_password="S3cret!S3cret",
            custom_data="I2Nsb3Vk",
        )

        assert values["adminUsername"] == "azureuser"
        assert values["adminPassword"] == "S3cret!S3cret"
        assert values["dataDiskSizeGB"] == 64
        assert values["customData"] == "I2Nsb3Vk"
        assert values["enableEntraLogin"] is True
        assert values["enableNetworkSSH"] is True
        assert values["sshSourceAddressPrefix"] == "203.0.113.0/24"
        assert values["projectName"] == "hfm"
        assert len(values["inboundPorts"]) == 2

    def test_update_omits_create_only_values(self, config, parameters_file):
        values = build_deployment_parameters(
            config,
            load_parameters(parameters_file),
            update=True,
            preserved={"adminUsername": "ops", "dataDiskSizeGB": 256},
        )

        for key in CREATE_ONLY_PARAMETERS:
            assert key not in values
        assert values["vmSize"] == "Standard_D8s_v5"
        assert values["adminUsername"] == "ops"
        assert values["dataDiskSizeGB"] == 256
        assert values["keyVaultName"].startswith("kvhfm")

    def test_update_requires_preserved_values(self, config):
        with pytest.raises(ValidationError, match="existing admin username"):
            build_deployment_parameters(config, load_parameters(None), update=True)

    def test_update_keeps_existing_vault(self, config):
        values = build_deployment_parameters(
            config,
            load_parameters(None),
            update=True,
            preserved={"adminUsername": "ops", "dataDiskSizeGB": 64, "keyVaultName": "kvold"},
        )

        assert values["keyVaultName"] == "kvold"

    def test_create_gets_fresh_vault_name(self, config):
        values = build_deployment_parameters(
            config,
            load_parameters(None),
            update=False,
            admin_password="S3cret!S3cret",
            custom_data="I2Nsb3Vk",
        )

        assert values["keyVaultName"].startswith("kv")
        assert len(values["keyVaultName"]) <= 24

    def test_create_requires_password(self, config):
        with pytest.raises(ValidationError, match="password"):
            build_deployment_parameters(
                config, load_parameters(None), update=False, custom_data="x"
            )

    def test_create_requires_bootstrap(self, config):
        with pytest.raises(ValidationError, match="cloud-init"):
            build_deployment_parameters(
                config, load_parameters(None), update=False, admin_password="S3cret!S3cret"
            )


class TestGenerateKeyVaultName:
    def test_timestamped(self):
        name = generate_key_vault_name("hfm", datetime(2026, 10, 18, 9, 30, 5))

        assert name == "kvhfm261018093005"

    def test_long_project_name_fits(self):
        name = generate_key_vault_name("My-Very_Long.Project", datetime(2026, 1, 2, 3, 4, 5))

        assert name == "kvmyverylo260102030405"
        assert len(name) <= 24

    def test_differs_between_creations(self):
        first = generate_key_vault_name("hfm", datetime(2026, 1, 1, 0, 0, 0))
        second = generate_key_vault_name("hfm", datetime(2026, 1, 1, 0, 0, 1))

        assert first != second


class TestReadPreservedParameters:
    def test_live_values(self, config, platform):
        platform.add_vm("rg1", "vm1", admin_username="ops", disk_size=256)
        platform.key_vaults["rg1"] = ["kvhfm1"]

        preserved = read_preserved_parameters(platform, config, MockInteractionHandler())

        assert preserved == {
            "adminUsername": "ops",
            "dataDiskSizeGB": 256,
            "keyVaultName": "kvhfm1",
        }
        assert platform.mutation_count == 0

    def test_missing_vm_uses_configured_values(self, config, platform):
        interaction = MockInteractionHandler()

        preserved = read_preserved_parameters(platform, config, interaction)

        assert preserved == {"adminUsername": "azureuser", "dataDiskSizeGB": 64}
        warnings = interaction.get_interactions_by_type("warning")
        assert "not found" in warnings[0]["message"]

    def test_vm_without_data_disk(self, config, platform):
        platform.add_vm("rg1", "vm1", admin_username="ops")
        platform.vm_details[("rg1", "vm1")]["storageProfile"] = {"dataDisks": []}

        preserved = read_preserved_parameters(platform, config, MockInteractionHandler())

        assert preserved["adminUsername"] == "ops"
        assert preserved["dataDiskSizeGB"] == 64


class TestDeploymentOutputs:
    def test_parses_outputs(self):
        outputs = DeploymentOutputs.from_deployment(deployment_payload("rg1", "vm1"))

        assert outputs.public_ip == "20.1.2.3"
        assert outputs.vm_resource_id.endswith("/virtualMachines/vm1")
        assert outputs.storage_account_name == "diagstore01"
        assert outputs.cmk_enabled is True

    def test_empty_strings_become_none(self):
        outputs = DeploymentOutputs.from_deployment(
            deployment_payload("rg1", "vm1", vmPublicIp="", hasPublicIp=False, vmFqdn="")
        )

        assert outputs.public_ip is None
        assert outputs.fqdn is None
        assert outputs.has_public_ip is False
        assert outputs.private_ip == "10.0.0.4"

    def test_missing_outputs(self):
        outputs = DeploymentOutputs.from_deployment({})

        assert outputs.vm_resource_id is None
        assert outputs.has_public_ip is True


class TestSubmitDeployment:
    def test_success(self, platform):
        platform.deployment_result = deployment_payload("rg1", "vm1")

        outputs = submit_deployment(platform, "rg1", Path("main.bicep"), {"vmName": "vm1"})

        assert outputs.private_ip == "10.0.0.4"
        assert platform.mutations == ["create_deployment"]

    def test_quota_failure_flagged(self, platform):
        platform.fail(
            "create_deployment",
            AzureCLIError(
                "Operation could not be completed as it results in exceeding approved quota",
                stderr="ERROR: (QuotaExceeded) Operation could not be completed",
            ),
        )

        with pytest.raises(DeploymentError) as exc_info:
            submit_deployment(platform, "rg1", Path("main.bicep"), {})

        assert exc_info.value.quota_exceeded is True
        assert "Quota or capacity" in str(exc_info.value)

    def test_other_failure_verbatim(self, platform):
        platform.fail(
            "create_deployment",
            AzureCLIError("InvalidTemplate: bad", stderr="InvalidTemplate: bad"),
        )

        with pytest.raises(DeploymentError, match="InvalidTemplate: bad") as exc_info:
            submit_deployment(platform, "rg1", Path("main.bicep"), {})
        assert exc_info.value.quota_exceeded is False

    def test_auth_expiry_propagates(self, platform):
        platform.fail("create_deployment", AuthenticationExpiredError("expired"))

        with pytest.raises(AuthenticationExpiredError):
            submit_deployment(platform, "rg1", Path("main.bicep"), {})


class TestEnsureEncryptionAtHost:
    """Feature registration check and poll."""

    def test_already_registered(self, platform, interaction):
        assert ensure_encryption_at_host(platform, interaction) is False
        assert platform.mutation_count == 0

    def test_operator_declines(self, platform):
        platform.feature = "NotRegistered"
        interaction = MockInteractionHandler(confirm_responses=[False])

        with pytest.raises(FeatureNotRegisteredError, match="--no-cmk"):
            ensure_encryption_at_host(platform, interaction)

        assert platform.mutation_count == 0
        assert interaction.get_interactions_by_type("warning")

    def test_registers_and_polls(self, platform, feature_poll_policy, sleeper):
        platform.feature = "NotRegistered"
        platform.provider_states = ["Registering", "Registering", "Registered"]
        interaction = MockInteractionHandler(confirm_responses=[True])

        assert ensure_encryption_at_host(platform, interaction, feature_poll_policy) is True

        assert platform.mutations == ["register_feature", "register_provider"]
        assert len(platform.calls_to("provider_state")) == 3
        assert sleeper.delays == [5.0, 5.0]

    def test_poll_timeout(self, platform, sleeper):
        platform.feature = "Pending"
        platform.provider_states = ["Registering"] * 10
        interaction = MockInteractionHandler(confirm_responses=[True])
        policy = RetryPolicy(max_attempts=3, backoff=fixed_backoff(5.0), sleep=sleeper)

        with pytest.raises(FeatureNotRegisteredError, match="Timed out"):
            ensure_encryption_at_host(platform, interaction, policy)


class TestConfirmBootstrap:
    def test_success(self, platform):
        assert confirm_bootstrap(platform, "rg1", "vm1") is True
        assert platform.mutations == ["set_vm_extension", "run_shell_script"]
        args, _ = platform.calls_to("set_vm_extension")[0]
        assert args[4] == {"commandToExecute": "cloud-init status --wait"}

    def test_failures_are_not_fatal(self, platform):
        platform.fail("set_vm_extension", AzureCLIError("extension timed out"))
        platform.fail("run_shell_script", AzureCLIError("conflict"))

        assert confirm_bootstrap(platform, "rg1", "vm1") is False
