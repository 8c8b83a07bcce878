"""Hyper-V adapter: WinRM handshake and PowerShell-based inventory collection."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ...core.models import Credential, HypervisorKind, VmRecord
from ..diagnostics import is_ip_literal
from ..trusted_hosts import TrustedHostsError, TrustedHostsManager, trusted_hosts_manager
from ..winrm_service import (
    WinRMAuthenticationError,
    WinRMService,
    WinRMServiceError,
    WinRMTarget,
    winrm_service,
)
from .base import (
    AuthContext,
    AuthenticationFailedError,
    CollectionFailedError,
    CollectionResult,
    ProtocolAdapter,
    TrustConfigurationRequiredError,
    coerce_float,
    coerce_int,
    format_uptime,
)

logger = logging.getLogger(__name__)

INVENTORY_SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "Inventory.Collect.ps1"
PLATFORM_LABEL = "Hyper-V"

AUTH_HINT = (
    "Confirm the credentials, that the account is an administrator on the target "
    "and that 'Enable-PSRemoting -Force' has been run there."
)
KERBEROS_HINT = (
    "Current-user (Kerberos) authentication needs a domain-resolvable host name; "
    "connect by name or supply explicit credentials."
)
COLLECTION_HINT = (
    "The account authenticated but could not query Hyper-V. Add it to the "
    "'Hyper-V Administrators' group on the target."
)


def _load_inventory_script() -> str:
    return INVENTORY_SCRIPT_PATH.read_text(encoding="utf-8")


def format_mac(value: Any) -> str:
    text = str(value or "").replace("-", "").replace(":", "").strip().upper()
    if len(text) != 12:
        return text
    return ":".join(text[i : i + 2] for i in range(0, 12, 2))


def format_nic(adapter: Dict[str, Any]) -> str:
    """``name [switch, MAC, IPs]``"""

    name = str(adapter.get("Name") or "Network Adapter")
    switch = str(adapter.get("SwitchName") or "").strip() or "not connected"
    mac = format_mac(adapter.get("MacAddress")) or "no MAC"
    addresses = adapter.get("IPAddresses") or []
    if isinstance(addresses, str):
        addresses = [addresses]
    ips = ", ".join(str(ip) for ip in addresses if ip) or "no IP"
    return f"{name} [{switch}, {mac}, {ips}]"


def format_disk(disk: Dict[str, Any]) -> str:
    """``controller#index: path (size, used)``"""

    controller = f"{disk.get('ControllerType') or 'Disk'}{coerce_int(disk.get('ControllerNumber'), 0)}"
    index = coerce_int(disk.get("ControllerLocation"), 0)
    path = str(disk.get("Path") or "").strip() or "(no path)"
    size = coerce_float(disk.get("SizeGB"))
    used = coerce_float(disk.get("UsedGB"))
    if not disk.get("Available") or size is None:
        return f"{controller}#{index}: {path} (info unavailable)"
    used_text = f"{used:.2f} GB used" if used is not None else "usage unknown"
    return f"{controller}#{index}: {path} ({size:.2f} GB, {used_text})"


def format_checkpoints(names: Any) -> str:
    if isinstance(names, str):
        names = [names]
    cleaned = [str(name) for name in (names or []) if name]
    return "; ".join(cleaned) if cleaned else "None"


def _as_list(value: Any) -> List[Any]:
    # ConvertTo-Json collapses single-element arrays into objects
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def parse_inventory_payload(address: str, payload: Dict[str, Any]) -> CollectionResult:
    """Normalise the JSON document printed by the collection script."""

    host_section = payload.get("Host")
    if not isinstance(host_section, dict):
        host_section = {}

    host_name = str(host_section.get("Name") or address).strip()
    host_cpu = coerce_int(host_section.get("LogicalProcessors"))
    host_memory = coerce_float(host_section.get("MemoryGB"))
    host_version = str(host_section.get("Version") or "")

    records: List[VmRecord] = []
    for vm in _as_list(payload.get("VirtualMachines")):
        if not isinstance(vm, dict):
            logger.warning("Skipping malformed VM entry from %s: %r", address, vm)
            continue

        nics = [format_nic(nic) for nic in _as_list(vm.get("NetworkAdapters")) if isinstance(nic, dict)]
        disks = [format_disk(disk) for disk in _as_list(vm.get("Disks")) if isinstance(disk, dict)]
        generation = coerce_int(vm.get("Generation"))

        records.append(
            VmRecord(
                platform=PLATFORM_LABEL,
                host_name=host_name,
                host_cpu=host_cpu,
                host_memory_gb=host_memory,
                host_version=host_version,
                vm_name=str(vm.get("Name") or ""),
                state=str(vm.get("State") or "Unknown"),
                cpu_count=coerce_int(vm.get("ProcessorCount")),
                memory_assigned_mb=coerce_int(vm.get("MemoryAssignedMB")),
                uptime=format_uptime(vm.get("UptimeSeconds")),
                generation=str(generation) if generation is not None else "",
                dynamic_memory_flag=bool(vm.get("DynamicMemoryEnabled")),
                nics_summary="; ".join(nics),
                disks_summary="; ".join(disks),
                checkpoints_summary=format_checkpoints(vm.get("Checkpoints")),
                integration_services_info=str(vm.get("IntegrationServicesVersion") or "Unknown"),
            )
        )

    return CollectionResult(kind=HypervisorKind.HYPER_V, vms=records, node_names=[host_name])


class HyperVAdapter(ProtocolAdapter):
    """Connects to Hyper-V hosts over WinRM (port 5985)."""

    kind = HypervisorKind.HYPER_V
    supports_current_user = True
    port_closed_hint = (
        "WinRM is not listening. Run 'Enable-PSRemoting -Force' on the target and "
        "allow TCP 5985 through its firewall."
    )

    def __init__(
        self,
        winrm: Optional[WinRMService] = None,
        trusted_hosts: Optional[TrustedHostsManager] = None,
    ) -> None:
        self._winrm = winrm or winrm_service
        self._trusted_hosts = trusted_hosts or trusted_hosts_manager

    def needs_trust(self, address: str, credential: Optional[Credential]) -> bool:
        if not is_ip_literal(address):
            return False
        return not self._trusted_hosts.is_trusted(address)

    def add_trust(self, address: str) -> None:
        try:
            self._trusted_hosts.add(address)
        except TrustedHostsError as exc:
            raise TrustConfigurationRequiredError(
                f"Could not add {address} to the WinRM TrustedHosts list: {exc}",
                hint="Run the application elevated, or add the address manually with "
                "Set-Item WSMan:\\localhost\\Client\\TrustedHosts.",
            ) from exc

    def authenticate(
        self, address: str, credential: Optional[Credential], port: Optional[int] = None
    ) -> AuthContext:
        if credential is None and is_ip_literal(address):
            raise AuthenticationFailedError(
                f"Cannot use current-user authentication with IP address {address}",
                hint=KERBEROS_HINT,
            )

        target = WinRMTarget(hostname=address, credential=credential, port=port or self.default_port())
        try:
            self._winrm.test_connection(target)
        except WinRMAuthenticationError as exc:
            raise AuthenticationFailedError(
                f"Authentication to {address} was rejected: {exc}",
                hint=KERBEROS_HINT if credential is None else AUTH_HINT,
            ) from exc
        except WinRMServiceError as exc:
            raise AuthenticationFailedError(
                f"WinRM handshake with {address} failed: {exc}", hint=AUTH_HINT
            ) from exc
        except Exception as exc:
            logger.debug("Unexpected WinRM handshake failure for %s", address, exc_info=True)
            raise AuthenticationFailedError(
                f"WinRM handshake with {address} failed: {exc}", hint=AUTH_HINT
            ) from exc

        return AuthContext(
            address=address,
            kind=self.kind,
            port=target.port,
            credential=credential,
            session=target,
        )

    def collect(self, context: AuthContext) -> CollectionResult:
        target: WinRMTarget = context.session
        try:
            stdout, stderr, exit_code = self._winrm.execute_ps_command(target, _load_inventory_script())
        except WinRMServiceError as exc:
            raise CollectionFailedError(
                f"Inventory collection on {context.address} failed: {exc}", hint=COLLECTION_HINT
            ) from exc

        if exit_code != 0:
            preview = (stderr.strip() or stdout.strip())[:400]
            raise CollectionFailedError(
                f"Inventory collection on {context.address} failed (exit={exit_code}): {preview}",
                hint=COLLECTION_HINT,
            )

        raw_output = stdout.strip().lstrip("\ufeff")
        if not raw_output:
            raise CollectionFailedError(
                f"Inventory collection on {context.address} returned no data", hint=COLLECTION_HINT
            )

        try:
            payload = json.loads(raw_output)
        except json.JSONDecodeError as exc:
            logger.debug("Raw inventory payload from %s: %s", context.address, stdout)
            raise CollectionFailedError(
                f"Inventory payload from {context.address} is not valid JSON: {exc}"
            ) from exc

        if not isinstance(payload, dict):
            raise CollectionFailedError(
                f"Unexpected inventory payload type from {context.address}: {type(payload).__name__}"
            )

        result = parse_inventory_payload(context.address, payload)
        logger.info("Collected %d VM(s) from Hyper-V host %s", len(result.vms), context.address)
        return result
