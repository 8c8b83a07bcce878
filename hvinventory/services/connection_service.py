"""Connection orchestration: credential resolution, staged probes and the host registry."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from ..core.models import (
    AuthPolicy,
    ConfirmationRequest,
    ConfirmationTopic,
    ConnectedHost,
    ConnectionOutcome,
    ConnectionStage,
    ConnectionState,
    Credential,
    CredentialPromptRequest,
    CredentialPromptResult,
    GroupRecord,
    HypervisorKind,
    NotificationLevel,
    VmRecord,
    normalize_address,
)
from ..core.secret_protection import SecretProtectionError
from .adapters.base import (
    AuthContext,
    CollectionResult,
    ConnectionCancelledError,
    ConnectionStageError,
    DuplicateConnectionError,
    ProtocolAdapter,
    TrustConfigurationRequiredError,
    UnreachableError,
)
from .adapters.hyperv import KERBEROS_HINT, HyperVAdapter
from .adapters.pdm import ProxmoxPDMAdapter
from .adapters.proxmox import ProxmoxVEAdapter
from .credential_store import CredentialStore, credential_store
from .diagnostics import is_ip_literal
from .group_service import GroupService, group_service
from .notification_service import NotificationService, notification_service

logger = logging.getLogger(__name__)

TRUST_HINT = (
    "Connect interactively and allow the TrustedHosts change, or add the address with "
    "Set-Item WSMan:\\localhost\\Client\\TrustedHosts from an elevated shell."
)
GROUP_SECRET_HINT = "Store a credential for the group in group management and retry."


def default_adapters() -> Dict[HypervisorKind, ProtocolAdapter]:
    return {
        HypervisorKind.HYPER_V: HyperVAdapter(),
        HypervisorKind.PROXMOX_VE: ProxmoxVEAdapter(),
        HypervisorKind.PROXMOX_PDM: ProxmoxPDMAdapter(),
    }


class InteractionHandler:
    """Presentation-layer hooks used when a connection needs an operator decision.

    The base implementation is non-interactive: every prompt is cancelled and
    every confirmation declined.
    """

    def request_credential(self, request: CredentialPromptRequest) -> CredentialPromptResult:
        return CredentialPromptResult()

    def confirm(self, request: ConfirmationRequest) -> bool:
        return False


@dataclass
class _ResolvedCredential:
    credential: Optional[Credential]
    use_current_user: bool
    remember: bool
    source: str


class ConnectionOrchestrator:
    """Owns the connected-host registry and the merged VM collection.

    Not thread-safe; every call is expected to arrive through the worker lane.
    """

    def __init__(
        self,
        adapters: Optional[Dict[HypervisorKind, ProtocolAdapter]] = None,
        credentials: Optional[CredentialStore] = None,
        groups: Optional[GroupService] = None,
        notifications: Optional[NotificationService] = None,
        interaction: Optional[InteractionHandler] = None,
    ) -> None:
        self._adapters = adapters if adapters is not None else default_adapters()
        self._credentials = credentials or credential_store
        self._groups = groups or group_service
        self._notifications = notifications or notification_service
        self.interaction = interaction or InteractionHandler()

        self._hosts: Dict[str, ConnectedHost] = {}
        self._vms: List[VmRecord] = []

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def connect(
        self,
        address: str,
        kind: Union[HypervisorKind, str],
        use_current_user: bool = False,
        credential: Optional[Credential] = None,
        remember: bool = False,
        skip_prompts: bool = False,
    ) -> bool:
        outcome = self.connect_detailed(
            address,
            kind,
            use_current_user=use_current_user,
            credential=credential,
            remember=remember,
            skip_prompts=skip_prompts,
        )
        return outcome.success

    def connect_detailed(
        self,
        address: str,
        kind: Union[HypervisorKind, str],
        use_current_user: bool = False,
        credential: Optional[Credential] = None,
        remember: bool = False,
        skip_prompts: bool = False,
    ) -> ConnectionOutcome:
        """Run one connection attempt through every stage and report how it ended."""

        address = (address or "").strip()
        try:
            kind = HypervisorKind(kind)
        except ValueError:
            known = ", ".join(member.value for member in HypervisorKind)
            return self._fail(
                address,
                None,
                ConnectionStage.COLLECTION_FAILED,
                f"Unknown hypervisor kind {kind!r}",
                hint=f"Choose one of: {known}",
            )
        context: Optional[AuthContext] = None

        try:
            if not address:
                raise UnreachableError("No address was supplied")

            self._transition(ConnectionState.CHECKING_DUPLICATE, address, f"Checking {address}")
            if self.is_connected(address):
                raise DuplicateConnectionError(f"{address} is already connected")

            group = self._groups.find_group_for_host(address)
            if group is not None and group.hypervisor_kind != kind:
                logger.info(
                    "%s belongs to group %s; connecting as %s instead of %s",
                    address,
                    group.name,
                    group.hypervisor_kind.label,
                    kind.label,
                )
                kind = group.hypervisor_kind

            adapter = self._adapters[kind]
            port = (group.port if group is not None else None) or adapter.default_port()

            self._transition(
                ConnectionState.PROBING_REACHABILITY,
                address,
                f"Testing reachability of {address} (port {port})",
            )
            adapter.probe(address, port)

            self._transition(ConnectionState.RESOLVING_CREDENTIAL, address, "Resolving credentials")
            resolved = self._resolve_credential(
                adapter, address, group, use_current_user, credential, remember, skip_prompts
            )
            logger.info(
                "Using %s credential for %s%s",
                resolved.source,
                address,
                "" if resolved.credential is None else f" as {resolved.credential.username}",
            )

            self._transition(
                ConnectionState.TESTING_AUTH, address, f"Authenticating to {kind.label} at {address}"
            )
            if adapter.needs_trust(address, resolved.credential):
                self._ensure_trust(adapter, address, skip_prompts)
            context = adapter.authenticate(address, resolved.credential, port)

            self._transition(ConnectionState.COLLECTING, address, f"Collecting inventory from {address}")
            result = adapter.collect(context)

            host = self._register(address, kind, resolved, result)
        except ConnectionStageError as exc:
            return self._fail(address, kind, exc.stage, exc.message, exc.hint)
        except Exception as exc:
            logger.exception("Unexpected failure while connecting to %s", address)
            return self._fail(address, kind, ConnectionStage.COLLECTION_FAILED, str(exc) or type(exc).__name__)
        finally:
            if context is not None:
                context.close()

        self._persist(address, kind, resolved)

        for warning in result.warnings:
            self._notifications.notify(
                ConnectionState.REGISTERED, warning, address=address, level=NotificationLevel.WARNING
            )

        message = f"Connected to {kind.label} host {address}: {host.vm_count} VM(s)"
        self._transition(
            ConnectionState.REGISTERED, address, message, level=NotificationLevel.SUCCESS, busy=False
        )
        return ConnectionOutcome(
            address=address,
            hypervisor_kind=kind,
            success=True,
            message=message,
            vm_count=host.vm_count,
        )

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def is_connected(self, address: str) -> bool:
        return normalize_address(address) in self._hosts

    def connected_hosts(self) -> List[ConnectedHost]:
        return list(self._hosts.values())

    def vm_records(self) -> List[VmRecord]:
        return list(self._vms)

    def summary(self) -> Dict[str, int]:
        return {"hosts": len(self._hosts), "vms": len(self._vms)}

    def disconnect(self, address: str) -> int:
        """Drop ``address`` and every VM row it owns; returns the number of rows removed."""

        host = self._hosts.pop(normalize_address(address), None)
        if host is None:
            logger.debug("Disconnect requested for %s, which is not connected", address)
            return 0

        owned = host.owned_host_names()
        remaining = [record for record in self._vms if normalize_address(record.host_name) not in owned]
        removed = len(self._vms) - len(remaining)
        self._vms = remaining

        logger.info("Disconnected %s; removed %d VM record(s)", host.address, removed)
        self._transition(
            ConnectionState.IDLE,
            host.address,
            f"Disconnected {host.address} ({removed} VM(s) removed)",
            busy=False,
        )
        return removed

    def disconnect_all(self) -> int:
        count = len(self._hosts)
        self._hosts.clear()
        self._vms.clear()
        logger.info("Disconnected all %d host(s)", count)
        self._transition(ConnectionState.IDLE, None, "Disconnected all hosts", busy=False)
        return count

    def _register(
        self,
        address: str,
        kind: HypervisorKind,
        resolved: _ResolvedCredential,
        result: CollectionResult,
    ) -> ConnectedHost:
        host = ConnectedHost(
            address=address,
            hypervisor_kind=kind,
            credential_handle=resolved.credential,
            use_current_user=resolved.use_current_user,
            vm_count=len(result.vms),
            node_names=list(result.node_names),
            cluster_names=list(result.cluster_names),
        )

        owned = host.owned_host_names()
        for record in result.vms:
            if normalize_address(record.host_name) not in owned:
                host.node_names.append(record.host_name)
                owned.add(normalize_address(record.host_name))

        # Rows are purged by host name, so two hosts may never own the same name
        for existing in self._hosts.values():
            overlap = owned & existing.owned_host_names()
            if overlap:
                raise DuplicateConnectionError(
                    f"{address} reports node(s) {', '.join(sorted(overlap))} already "
                    f"inventoried through {existing.address}",
                    hint=f"Disconnect {existing.address} first to inventory the cluster through {address}.",
                )

        self._hosts[host.key] = host
        self._vms.extend(result.vms)
        return host

    # ------------------------------------------------------------------
    # Credential resolution
    # ------------------------------------------------------------------

    def _resolve_credential(
        self,
        adapter: ProtocolAdapter,
        address: str,
        group: Optional[GroupRecord],
        use_current_user: bool,
        provided: Optional[Credential],
        remember: bool,
        skip_prompts: bool,
    ) -> _ResolvedCredential:
        if provided is not None:
            return _ResolvedCredential(provided, False, remember, "provided")

        if group is not None:
            return self._resolve_group_credential(adapter, address, group, skip_prompts)

        if use_current_user:
            if not adapter.supports_current_user:
                logger.warning(
                    "%s does not support current-user authentication; looking for explicit credentials",
                    adapter.kind.label,
                )
            elif not is_ip_literal(address):
                return _ResolvedCredential(None, True, False, "current-user")
            else:
                self._confirm_ip_fallback(address, skip_prompts)

        saved = self._credentials.resolve_credential(address)
        if saved is not None:
            if skip_prompts or self._confirm(
                address,
                ConfirmationTopic.SAVED_CREDENTIAL,
                "Use saved credentials",
                f"Connect to {address} as {saved.username} using the saved credentials?",
            ):
                return _ResolvedCredential(saved, False, True, "saved")

        return self._prompt(
            adapter,
            address,
            skip_prompts,
            reason=f"Enter credentials for {adapter.kind.label} host {address}",
            username_hint=saved.username if saved is not None else None,
            remember=remember,
        )

    def _resolve_group_credential(
        self,
        adapter: ProtocolAdapter,
        address: str,
        group: GroupRecord,
        skip_prompts: bool,
    ) -> _ResolvedCredential:
        if group.auth_policy == AuthPolicy.CURRENT_USER:
            if not is_ip_literal(address):
                return _ResolvedCredential(None, True, False, f"group '{group.name}' current-user")
            self._confirm_ip_fallback(address, skip_prompts)
        else:
            shared = self._credentials.resolve_group_credential(group)
            if shared is not None:
                return _ResolvedCredential(shared, False, False, f"group '{group.name}'")
            if skip_prompts:
                raise ConnectionCancelledError(
                    f"Group '{group.name}' has no usable stored credential for {address}",
                    hint=GROUP_SECRET_HINT,
                )

        return self._prompt(
            adapter,
            address,
            skip_prompts,
            reason=f"Enter credentials for {address} (group '{group.name}')",
            username_hint=group.username,
            remember=False,
            expects_token=group.auth_policy == AuthPolicy.API_TOKEN,
            allow_remember=False,
        )

    def _confirm_ip_fallback(self, address: str, skip_prompts: bool) -> None:
        if skip_prompts:
            raise ConnectionCancelledError(
                f"Current-user authentication cannot be used with IP address {address}; "
                "explicit credentials are required",
                hint=KERBEROS_HINT,
            )
        if not self._confirm(
            address,
            ConfirmationTopic.IP_CREDENTIAL_FALLBACK,
            "Explicit credentials required",
            f"{address} is an IP address, so Kerberos cannot be used. Continue with explicit credentials?",
        ):
            raise ConnectionCancelledError(
                f"Switching {address} to explicit credentials was declined", hint=KERBEROS_HINT
            )

    def _prompt(
        self,
        adapter: ProtocolAdapter,
        address: str,
        skip_prompts: bool,
        *,
        reason: str,
        username_hint: Optional[str],
        remember: bool,
        expects_token: bool = False,
        allow_remember: bool = True,
    ) -> _ResolvedCredential:
        if skip_prompts:
            raise ConnectionCancelledError(
                f"No usable credential for {address} and prompts are disabled",
                hint="Retry this host individually to enter credentials.",
            )

        request = CredentialPromptRequest(
            address=address,
            hypervisor_kind=adapter.kind,
            reason=reason,
            expects_token=expects_token,
            username_hint=username_hint,
            allow_remember=allow_remember,
        )
        response = self.interaction.request_credential(request)
        if response.cancelled:
            raise ConnectionCancelledError(f"Credential entry for {address} was cancelled")

        keep = allow_remember and (remember or response.remember)
        return _ResolvedCredential(response.credential, False, keep, "prompted")

    def _ensure_trust(self, adapter: ProtocolAdapter, address: str, skip_prompts: bool) -> None:
        if skip_prompts:
            raise TrustConfigurationRequiredError(
                f"{address} is not in the WinRM TrustedHosts list and non-interactive "
                "connections never modify it",
                hint=TRUST_HINT,
            )
        if not self._confirm(
            address,
            ConfirmationTopic.TRUSTED_HOST,
            "Add to TrustedHosts",
            f"{address} must be added to the local WinRM TrustedHosts list before connecting. Add it now?",
        ):
            raise TrustConfigurationRequiredError(
                f"Adding {address} to TrustedHosts was declined", hint=TRUST_HINT
            )
        adapter.add_trust(address)
        logger.info("Added %s to the WinRM TrustedHosts list", address)

    def _confirm(self, address: str, topic: ConfirmationTopic, title: str, message: str) -> bool:
        request = ConfirmationRequest(address=address, topic=topic, title=title, message=message)
        return bool(self.interaction.confirm(request))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _persist(self, address: str, kind: HypervisorKind, resolved: _ResolvedCredential) -> None:
        try:
            self._credentials.persist(
                address, kind, resolved.use_current_user, resolved.credential, resolved.remember
            )
        except (OSError, SecretProtectionError) as exc:
            # The host is connected; only the history entry is lost
            logger.error("Failed to record %s in connection history: %s", address, exc)

    def _transition(
        self,
        state: ConnectionState,
        address: Optional[str],
        message: str,
        *,
        level: NotificationLevel = NotificationLevel.INFO,
        busy: bool = True,
    ) -> None:
        logger.debug("[%s] %s: %s", address or "-", state.value, message)
        self._notifications.notify(state, message, address=address, level=level, busy=busy)

    def _fail(
        self,
        address: str,
        kind: Optional[HypervisorKind],
        stage: ConnectionStage,
        message: str,
        hint: Optional[str] = None,
    ) -> ConnectionOutcome:
        logger.error("Connection to %s failed at stage %s: %s", address or "<empty>", stage.value, message)
        self._transition(
            ConnectionState.FAILED, address or None, message, level=NotificationLevel.ERROR, busy=False
        )
        return ConnectionOutcome(
            address=address,
            hypervisor_kind=kind,
            success=False,
            stage=stage,
            message=message,
            hint=hint,
        )
