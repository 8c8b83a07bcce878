"""Tests for group management and host-to-group resolution."""

import pytest

from hvinventory.core.models import AuthPolicy, ConfigDocument, GroupRecord, HypervisorKind
from hvinventory.services.group_service import GroupError

PVE = HypervisorKind.PROXMOX_VE
HYPERV = HypervisorKind.HYPER_V


@pytest.mark.unit
class TestMembership:
    def test_host_moves_between_groups(self, groups):
        groups.create_group("G1", HYPERV, host_addresses=["hv01", "hv02"])
        groups.create_group("G2", HYPERV)

        groups.add_host_to_group("G2", "HV01")

        g1 = groups.get_group("G1")
        g2 = groups.get_group("G2")
        assert g1.host_addresses == ["hv02"]
        assert g2.host_addresses == ["HV01"]
        assert groups.find_group_for_host("hv01").name == "G2"

    def test_adding_existing_member_is_idempotent(self, groups):
        groups.create_group("G1", HYPERV, host_addresses=["hv01"])

        groups.add_host_to_group("G1", "hv01")

        assert groups.get_group("G1").host_addresses == ["hv01"]

    def test_create_with_hosts_evicts_from_other_groups(self, groups):
        groups.create_group("G1", HYPERV, host_addresses=["hv01"])
        groups.create_group("G2", HYPERV, host_addresses=["hv01"])

        assert groups.get_group("G1").host_addresses == []

    def test_resolver_prefers_first_group_in_stored_order(self, groups, repository):
        repository.save(
            ConfigDocument(
                groups=[
                    GroupRecord(name="First", host_addresses=["hv01"]),
                    GroupRecord(name="Second", host_addresses=["hv01"]),
                ]
            )
        )

        assert groups.find_group_for_host("HV01").name == "First"

    def test_ungrouped_host_resolves_to_none(self, groups):
        groups.create_group("G1", HYPERV, host_addresses=["hv01"])

        assert groups.find_group_for_host("hv99") is None

    def test_remove_host(self, groups):
        groups.create_group("G1", HYPERV, host_addresses=["hv01", "hv02"])

        groups.remove_host_from_group("G1", "HV02")

        assert groups.get_group("G1").host_addresses == ["hv01"]

    def test_empty_address_is_rejected(self, groups):
        groups.create_group("G1", HYPERV)

        with pytest.raises(GroupError):
            groups.add_host_to_group("G1", "  ")


@pytest.mark.unit
class TestManagement:
    def test_names_are_unique_case_insensitively(self, groups):
        groups.create_group("Lab", HYPERV)

        with pytest.raises(GroupError):
            groups.create_group("lab", HYPERV)

    def test_blank_name_is_rejected(self, groups):
        with pytest.raises(GroupError):
            groups.create_group("   ", HYPERV)

    def test_secret_is_stored_encrypted(self, groups, repository, protector):
        groups.create_group("Lab", PVE, AuthPolicy.API_TOKEN, username="root@pam!inv", secret="uuid-secret")

        group = groups.get_group("Lab")
        assert group.encrypted_secret != "uuid-secret"
        assert protector.unprotect(group.encrypted_secret) == "uuid-secret"
        assert "uuid-secret" not in repository.path.read_text(encoding="utf-8")

    def test_policy_must_fit_hypervisor_kind(self, groups):
        with pytest.raises(GroupError):
            groups.create_group("Lab", PVE, AuthPolicy.CURRENT_USER)
        with pytest.raises(GroupError):
            groups.create_group("Lab", HYPERV, AuthPolicy.API_TOKEN)

    def test_switching_to_current_user_drops_secret(self, groups):
        groups.create_group("Lab", HYPERV, AuthPolicy.USERNAME_PASSWORD, username="svc", secret="pw")

        group = groups.update_group("Lab", auth_policy=AuthPolicy.CURRENT_USER)

        assert group.username is None
        assert group.encrypted_secret is None

    def test_update_port_and_secret(self, groups, protector):
        groups.create_group("Lab", PVE, AuthPolicy.USERNAME_PASSWORD, username="root@pam", secret="old")

        groups.update_group("Lab", port=9006)
        groups.set_group_secret("Lab", "admin@pve", "new")

        group = groups.get_group("Lab")
        assert group.port == 9006
        assert group.username == "admin@pve"
        assert protector.unprotect(group.encrypted_secret) == "new"

    def test_rename(self, groups):
        groups.create_group("Lab", HYPERV, host_addresses=["hv01"])
        groups.create_group("Prod", HYPERV)

        groups.rename_group("Lab", "Staging")

        assert groups.get_group("Lab") is None
        assert groups.get_group("staging").host_addresses == ["hv01"]
        with pytest.raises(GroupError):
            groups.rename_group("Staging", "PROD")

    def test_delete_keeps_history(self, groups, repository, store):
        store.persist("hv01", HYPERV, True, None, False)
        groups.create_group("Lab", HYPERV, host_addresses=["hv01"])

        groups.delete_group("Lab")

        assert groups.list_groups() == []
        assert repository.get_host("hv01") is not None

    def test_unknown_group_raises(self, groups):
        with pytest.raises(GroupError):
            groups.delete_group("missing")
