"""Tests for resource_group module."""

from vmdeploy.resource_group import probe_resource_group, resources_table


class TestProbeResourceGroup:
    def test_missing_group(self, platform):
        state = probe_resource_group(platform, "rg1")

        assert not state.exists
        assert state.is_empty
        assert platform.operations == ["show_group"]

    def test_existing_group_with_resources(self, platform):
        platform.add_group(
            "rg1",
            location="eastus",
            resources=[
                ("Microsoft.Compute/virtualMachines", "vm1"),
                ("Microsoft.KeyVault/vaults", "kv-vm1"),
            ],
        )

        state = probe_resource_group(platform, "rg1")

        assert state.exists
        assert state.location == "eastus"
        assert state.resource_names("microsoft.keyvault/vaults") == ["kv-vm1"]
        assert len(state.resource_ids) == 2
        assert state.resource_ids[0].endswith("/virtualMachines/vm1")
        assert platform.mutation_count == 0

    def test_table_lists_resources(self, platform):
        platform.add_group("rg1", resources=[("Microsoft.Network/networkSecurityGroups", "nsg")])

        table = resources_table(probe_resource_group(platform, "rg1"))

        assert table.row_count == 1
        assert table.title == "Resources in rg1"
