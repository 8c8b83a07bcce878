"""Tests for the Proxmox Datacenter Manager adapter."""

import pytest

from hvinventory.core.models import Credential, HypervisorKind
from hvinventory.services.adapters.base import AuthenticationFailedError
from hvinventory.services.adapters.pdm import ProxmoxPDMAdapter, build_pdm_record

MIB = 1024 ** 2

REMOTES = {
    "/remotes": [
        {"id": "cluster-a", "type": "pve"},
        {"id": "cluster-b", "type": "pve"},
        {"id": "backup", "type": "pbs"},
    ],
    "/pve/remotes/cluster-a/resources": [
        {
            "type": "qemu",
            "vmid": 100,
            "name": "web",
            "node": "pve-a",
            "status": "running",
            "maxcpu": 4,
            "maxmem": 4096 * MIB,
            "uptime": 86400,
        },
        {"type": "qemu", "vmid": 9000, "name": "tmpl", "node": "pve-a", "template": 1},
        {"type": "lxc", "vmid": 300, "name": "ct", "node": "pve-a"},
        {"type": "node", "node": "pve-a"},
    ],
    "/pve/remotes/cluster-b/resources": 500,
}

TOKEN = Credential.token("admin@pdm!inventory", "uuid")


@pytest.fixture
def adapter_for(proxmox_api):
    def build(routes, calls=None):
        return ProxmoxPDMAdapter(client_factory=proxmox_api(routes, calls))

    return build


def _collect(adapter):
    context = adapter.authenticate("pdm.corp.local", TOKEN)
    try:
        return adapter.collect(context)
    finally:
        context.close()


@pytest.mark.unit
def test_failing_remote_is_skipped_with_warning(adapter_for):
    result = _collect(adapter_for(REMOTES))

    assert result.kind == HypervisorKind.PROXMOX_PDM
    assert result.cluster_names == ["cluster-a"]
    assert result.node_names == ["pve-a"]
    assert len(result.warnings) == 1
    assert "cluster-b" in result.warnings[0]

    (vm,) = result.vms
    assert vm.platform == "Proxmox PDM"
    assert vm.generation == "KVM"
    assert vm.host_name == "pve-a"
    assert vm.cpu_count == 4
    assert vm.memory_assigned_mb == 4096
    assert vm.uptime == "01:00:00:00"
    assert vm.state == "Running"
    assert vm.host_cpu is None
    assert vm.host_version == ""


@pytest.mark.unit
def test_only_pve_remotes_are_queried(adapter_for):
    calls = []
    _collect(adapter_for(REMOTES, calls))

    assert ("GET", "/pve/remotes/backup/resources") not in calls


@pytest.mark.unit
def test_missing_remotes_api_falls_back_to_ve_collection(adapter_for):
    routes = {
        "/cluster/status": [{"type": "node", "name": "pve-a"}],
        "/nodes/pve-a/status": {"cpuinfo": {"cpus": 4}},
        "/nodes/pve-a/qemu": [{"vmid": 100}],
        "/nodes/pve-a/qemu/100/config": {"name": "web", "cores": 2},
        "/nodes/pve-a/qemu/100/status/current": {"status": "running", "uptime": 5},
        "/nodes/pve-a/qemu/100/snapshot": [],
    }

    result = _collect(adapter_for(routes))

    assert result.kind == HypervisorKind.PROXMOX_VE
    assert [vm.platform for vm in result.vms] == ["Proxmox VE"]


@pytest.mark.unit
def test_rejected_token_on_remotes(adapter_for):
    with pytest.raises(AuthenticationFailedError):
        _collect(adapter_for({"/remotes": 401}))


@pytest.mark.unit
def test_empty_remote_list_yields_no_vms(adapter_for):
    result = _collect(adapter_for({"/remotes": []}))

    assert result.vms == []
    assert result.warnings == []


@pytest.mark.unit
def test_build_pdm_record_defaults():
    record = build_pdm_record("cluster-a", {"vmid": 7})

    assert record.vm_name == "VM 7"
    assert record.host_name == "cluster-a"
    assert record.memory_assigned_mb is None
    assert record.state == "Unknown"


@pytest.mark.unit
def test_default_port():
    assert ProxmoxPDMAdapter().default_port() == 8443
