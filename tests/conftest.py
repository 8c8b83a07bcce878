"""Test configuration for the inventory test suite."""

from typing import Dict, Iterable, List, Optional

import httpx
import pytest

from hvinventory.core.config import settings
from hvinventory.core.models import (
    ConfirmationRequest,
    Credential,
    CredentialPromptRequest,
    CredentialPromptResult,
    HypervisorKind,
    ReachabilityResult,
    VmRecord,
)
from hvinventory.core.secret_protection import SecretProtector, secret_protector
from hvinventory.services.adapters.base import (
    AuthContext,
    AuthenticationFailedError,
    CollectionResult,
    PortClosedError,
    ProtocolAdapter,
    UnreachableError,
)
from hvinventory.services.config_repository import ConfigRepository
from hvinventory.services.connection_service import ConnectionOrchestrator, InteractionHandler
from hvinventory.services.credential_store import CredentialStore
from hvinventory.services.group_service import GroupService
from hvinventory.services.notification_service import NotificationService
from hvinventory.services.proxmox_client import ProxmoxClient


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep every test away from the real profile directory and local tooling."""

    data_dir = tmp_path / "data"
    monkeypatch.setattr(settings, "inventory_data_dir", data_dir)
    monkeypatch.setattr(settings, "inventory_export_dir", tmp_path / "exports")
    monkeypatch.setattr(settings, "winrm_manage_trusted_hosts", False)
    monkeypatch.setattr(settings, "history_limit", 20)
    monkeypatch.setattr(settings, "require_icmp", True)
    monkeypatch.setattr(secret_protector, "_fernet", None)
    return data_dir


@pytest.fixture
def protector(isolated_settings):
    return SecretProtector(isolated_settings / "secret.key")


@pytest.fixture
def repository(isolated_settings):
    return ConfigRepository(isolated_settings / "config.json")


@pytest.fixture
def store(repository, protector):
    return CredentialStore(repository=repository, protector=protector)


@pytest.fixture
def groups(repository, protector):
    return GroupService(repository=repository, protector=protector)


class FakeAdapter(ProtocolAdapter):
    """Scriptable adapter that records every stage it is asked to run."""

    def __init__(
        self,
        kind: HypervisorKind,
        *,
        supports_current_user: bool = False,
        vm_counts: Optional[Dict[str, int]] = None,
        nodes: Optional[Dict[str, List[str]]] = None,
        unreachable: Iterable[str] = (),
        closed: Iterable[str] = (),
        reject: Iterable[str] = (),
        untrusted: Iterable[str] = (),
    ) -> None:
        self.kind = kind
        self.supports_current_user = supports_current_user
        self.vm_counts = dict(vm_counts or {})
        self.nodes = dict(nodes or {})
        self.unreachable = set(unreachable)
        self.closed = set(closed)
        self.reject = set(reject)
        self.untrusted = set(untrusted)
        self.calls: List[tuple] = []

    def stages_for(self, address: str) -> List[str]:
        return [call[0] for call in self.calls if call[1] == address]

    def probe(self, address, port=None):
        self.calls.append(("probe", address, port))
        if address in self.unreachable:
            raise UnreachableError(f"{address} did not respond to 2 ping request(s)")
        if address in self.closed:
            raise PortClosedError(f"{address} is not accepting connections on port {port}")
        return ReachabilityResult(address=address, port=port or self.default_port(), icmp_ok=True, tcp_ok=True)

    def needs_trust(self, address, credential):
        return address in self.untrusted

    def add_trust(self, address):
        self.calls.append(("trust", address))
        self.untrusted.discard(address)

    def authenticate(self, address, credential, port=None):
        self.calls.append(("authenticate", address, credential))
        if address in self.reject:
            raise AuthenticationFailedError(f"Authentication to {address} was rejected")
        return AuthContext(
            address=address, kind=self.kind, port=port or self.default_port(), credential=credential
        )

    def collect(self, context):
        self.calls.append(("collect", context.address))
        node_names = self.nodes.get(context.address, [context.address])
        count = self.vm_counts.get(context.address, 2)
        vms = [
            VmRecord(
                platform=self.kind.label,
                host_name=node_names[index % len(node_names)],
                vm_name=f"{context.address}-vm{index}",
                state="Running",
            )
            for index in range(count)
        ]
        return CollectionResult(kind=self.kind, vms=vms, node_names=list(node_names))


class RecordingInteraction(InteractionHandler):
    """Interaction handler that answers from preset values and records requests."""

    def __init__(self, credential: Optional[Credential] = None, remember: bool = False, confirm: bool = True):
        self.credential = credential
        self.remember = remember
        self.confirm_answer = confirm
        self.prompts: List[CredentialPromptRequest] = []
        self.confirmations: List[ConfirmationRequest] = []

    def request_credential(self, request):
        self.prompts.append(request)
        return CredentialPromptResult(credential=self.credential, remember=self.remember)

    def confirm(self, request):
        self.confirmations.append(request)
        return self.confirm_answer


@pytest.fixture
def adapters():
    return {
        HypervisorKind.HYPER_V: FakeAdapter(HypervisorKind.HYPER_V, supports_current_user=True),
        HypervisorKind.PROXMOX_VE: FakeAdapter(HypervisorKind.PROXMOX_VE),
        HypervisorKind.PROXMOX_PDM: FakeAdapter(HypervisorKind.PROXMOX_PDM),
    }


@pytest.fixture
def interaction():
    return RecordingInteraction()


@pytest.fixture
def notifications():
    return NotificationService()


@pytest.fixture
def orchestrator(adapters, store, groups, notifications, interaction):
    return ConnectionOrchestrator(
        adapters=adapters,
        credentials=store,
        groups=groups,
        notifications=notifications,
        interaction=interaction,
    )


@pytest.fixture
def proxmox_api():
    """Build a client factory backed by an in-memory Proxmox API.

    ``routes`` maps API paths (relative to ``/api2/json``) to the ``data``
    payload, or to an integer HTTP status to fail with.
    """

    def build(routes, calls=None):
        def handler(request):
            path = request.url.path[len("/api2/json"):]
            if calls is not None:
                calls.append((request.method, path))
            if path == "/access/ticket" and path not in routes:
                return httpx.Response(
                    200, json={"data": {"ticket": "PVE:root@pam:TICKET", "CSRFPreventionToken": "csrf"}}
                )
            value = routes.get(path, 501)
            if isinstance(value, int):
                return httpx.Response(value, json={"data": None})
            return httpx.Response(200, json={"data": value})

        def factory(address, port, credential):
            return ProxmoxClient(address, port, credential, transport=httpx.MockTransport(handler))

        return factory

    return build
