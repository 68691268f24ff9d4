"""Tests for network_rules module."""

import pytest

from vmdeploy.exceptions import ValidationError
from vmdeploy.network_rules import build_security_rules, rules_table, ssh_rule
from vmdeploy.parameters import InboundPortRule


def port(name, port_range, priority, prefixes=("10.0.0.0/8",)):
    return InboundPortRule(
        name=name,
        port_range=port_range,
        source_address_prefixes=list(prefixes),
        priority=priority,
    )


class TestSshRule:
    def test_blocked_by_default(self):
        rule = ssh_rule(False, None)

        assert rule.name == "DenySSH"
        assert rule.access == "Deny"
        assert rule.priority == 1000
        assert rule.source_address_prefixes == ("*",)

    def test_enabled_requires_source(self):
        assert ssh_rule(True, None).access == "Deny"

    def test_allowed_from_source(self):
        rule = ssh_rule(True, "203.0.113.0/24")

        assert rule.name == "AllowSSH"
        assert rule.is_allow
        assert rule.port_range == "22"
        assert rule.source_address_prefixes == ("203.0.113.0/24",)


class TestBuildSecurityRules:
    def test_translates_rules_one_to_one_sorted(self):
        rules = build_security_rules(
            [port("AllowHTTP", "8080", 1010), port("AllowAPI", "443", 900)],
            enable_ssh=True,
            ssh_source="198.51.100.7/32",
        )

        assert [(r.name, r.priority) for r in rules] == [
            ("AllowAPI", 900),
            ("AllowSSH", 1000),
            ("AllowHTTP", 1010),
        ]
        assert all(r.direction == "Inbound" and r.protocol == "Tcp" for r in rules)

    def test_no_inbound_rules_only_ssh(self):
        rules = build_security_rules([])
        assert [r.name for r in rules] == ["DenySSH"]

    def test_reserved_name_rejected(self):
        with pytest.raises(ValidationError, match="reserved"):
            build_security_rules([port("AllowSSH", "2222", 1100)])

    def test_ssh_priority_collision_rejected(self):
        rule = InboundPortRule.model_construct(
            name="Clash",
            port_range="80",
            source_address_prefixes=["*"],
            priority=1000,
        )
        with pytest.raises(ValidationError, match="reserved for SSH"):
            build_security_rules([rule])

    def test_table_has_row_per_rule(self):
        table = rules_table(build_security_rules([port("AllowHTTP", "8080", 1010)]))
        assert table.row_count == 2
