"""Proxmox VE adapter: REST authentication and per-node VM collection."""
from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ...core.models import Credential, CredentialKind, HypervisorKind, VmRecord
from ..proxmox_client import (
    ProxmoxAPIError,
    ProxmoxAuthenticationError,
    ProxmoxClient,
    quote_segment,
)
from .base import (
    AuthContext,
    AuthenticationFailedError,
    CollectionFailedError,
    CollectionResult,
    ProtocolAdapter,
    coerce_float,
    coerce_int,
    format_uptime,
)

logger = logging.getLogger(__name__)

PLATFORM_LABEL = "Proxmox VE"
GENERATION_LABEL = "KVM"

TOKEN_HINT = (
    "HTTP 401: check the credentials. API tokens must be entered as "
    "'user@realm!tokenname' with the token secret, and need privilege separation "
    "disabled or VM.Audit/Sys.Audit permissions; user names need a realm such as '@pam'."
)
COLLECTION_HINT = "Grant the account VM.Audit and Sys.Audit on '/' and retry."
PORT_HINT = "Verify pveproxy is running and the port is correct (8006 for Proxmox VE)."

_MAC_PATTERN = re.compile(r"([0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5})")
_DISK_KEY = re.compile(r"^(ide|sata|scsi|virtio|efidisk|tpmstate)\d+$")
_NIC_KEY = re.compile(r"^net\d+$")

ClientFactory = Callable[..., ProxmoxClient]


def parse_property_string(value: Any) -> Tuple[Optional[str], Dict[str, str]]:
    """Split ``volume,key=value,...`` into its leading value and option map.

    Entries are comma-separated in current releases; semicolons are accepted too.
    """

    text = str(value or "").strip()
    leading: Optional[str] = None
    options: Dict[str, str] = {}
    for index, part in enumerate(re.split(r"[,;]", text)):
        part = part.strip()
        if not part:
            continue
        if "=" in part:
            key, _, item = part.partition("=")
            options[key.strip()] = item.strip()
        elif index == 0:
            leading = part
    return leading, options


def format_nic(key: str, value: Any, ips_by_mac: Optional[Dict[str, List[str]]] = None) -> str:
    """``net0 [bridge, MAC, IPs]``"""

    _, options = parse_property_string(value)
    mac = ""
    match = _MAC_PATTERN.search(str(value or ""))
    if match:
        mac = match.group(1).upper()
    bridge = options.get("bridge") or "no bridge"
    if options.get("tag"):
        bridge = f"{bridge} VLAN {options['tag']}"
    ips = (ips_by_mac or {}).get(mac.lower(), [])
    return f"{key} [{bridge}, {mac or 'no MAC'}, {', '.join(ips) or 'no IP'}]"


def format_disk(key: str, value: Any) -> Optional[str]:
    """``scsi0: volume (size)``; None for cdrom and cloud-init entries."""

    volume, options = parse_property_string(value)
    if options.get("media") == "cdrom":
        return None
    volume = volume or options.get("file") or ""
    if "cloudinit" in volume:
        return None
    size = options.get("size") or "size unknown"
    return f"{key}: {volume or '(no volume)'} ({size})"


def parse_memory_mb(value: Any) -> Optional[int]:
    """Accept ``4096`` as well as the newer ``current=4096`` form."""

    if isinstance(value, (int, float)):
        return int(value)
    leading, options = parse_property_string(value)
    return coerce_int(options.get("current", leading))


def balloon_enabled(config: Dict[str, Any]) -> bool:
    return (coerce_int(config.get("balloon"), 0) or 0) > 0


def agent_enabled(config: Dict[str, Any]) -> bool:
    leading, options = parse_property_string(config.get("agent"))
    flag = options.get("enabled", leading)
    return str(flag).strip() in {"1", "true", "yes", "on"}


def format_snapshots(snapshots: Any) -> str:
    names = [
        str(entry.get("name"))
        for entry in (snapshots or [])
        if isinstance(entry, dict) and entry.get("name") and entry.get("name") != "current"
    ]
    return "; ".join(names) if names else "None"


def format_state(value: Any) -> str:
    text = str(value or "").strip()
    return text.capitalize() if text else "Unknown"


def agent_ips_by_mac(payload: Any) -> Dict[str, List[str]]:
    """Map lower-case MAC to guest IPs from ``agent/network-get-interfaces``."""

    interfaces = payload.get("result") if isinstance(payload, dict) else payload
    mapping: Dict[str, List[str]] = {}
    for iface in interfaces or []:
        if not isinstance(iface, dict):
            continue
        mac = str(iface.get("hardware-address") or "").lower()
        if not mac or mac == "00:00:00:00:00:00":
            continue
        for entry in iface.get("ip-addresses") or []:
            address = entry.get("ip-address") if isinstance(entry, dict) else None
            if address and not address.startswith(("127.", "::1", "fe80")):
                mapping.setdefault(mac, []).append(address)
    return mapping


def build_vm_record(
    node: str,
    node_status: Dict[str, Any],
    config: Dict[str, Any],
    status: Dict[str, Any],
    snapshots: Any,
    ips_by_mac: Optional[Dict[str, List[str]]] = None,
) -> VmRecord:
    """Normalise one QEMU guest into the shared row shape."""

    cores = coerce_int(config.get("cores"), 1) or 1
    sockets = coerce_int(config.get("sockets"), 1) or 1
    cpuinfo = node_status.get("cpuinfo") or {}
    memory = node_status.get("memory") or {}
    total_memory = coerce_float(memory.get("total"))

    nics = [
        format_nic(key, config[key], ips_by_mac)
        for key in sorted(config, key=_natural_key)
        if _NIC_KEY.match(key)
    ]
    disks = [
        entry
        for entry in (
            format_disk(key, config[key]) for key in sorted(config, key=_natural_key) if _DISK_KEY.match(key)
        )
        if entry
    ]

    agent = agent_enabled(config)
    return VmRecord(
        platform=PLATFORM_LABEL,
        host_name=node,
        host_cpu=coerce_int(cpuinfo.get("cpus")),
        host_memory_gb=round(total_memory / 1024 ** 3, 2) if total_memory else None,
        host_version=str(node_status.get("pveversion") or ""),
        vm_name=str(config.get("name") or status.get("name") or ""),
        state=format_state(status.get("status")),
        cpu_count=cores * sockets,
        memory_assigned_mb=parse_memory_mb(config.get("memory")),
        uptime=format_uptime(status.get("uptime", 0)),
        generation=GENERATION_LABEL,
        dynamic_memory_flag=balloon_enabled(config),
        nics_summary="; ".join(nics),
        disks_summary="; ".join(disks),
        checkpoints_summary=format_snapshots(snapshots),
        integration_services_info=f"QEMU Guest Agent: {'Enabled' if agent else 'Disabled'}",
    )


def _natural_key(key: str) -> Tuple[str, int]:
    match = re.match(r"^([a-z]+)(\d+)$", key)
    if not match:
        return key, -1
    return match.group(1), int(match.group(2))


class ProxmoxVEAdapter(ProtocolAdapter):
    """Connects to a Proxmox VE node and inventories its whole cluster."""

    kind = HypervisorKind.PROXMOX_VE
    port_closed_hint = PORT_HINT

    def __init__(self, client_factory: Optional[ClientFactory] = None) -> None:
        self._client_factory = client_factory or ProxmoxClient

    def authenticate(
        self, address: str, credential: Optional[Credential], port: Optional[int] = None
    ) -> AuthContext:
        if credential is None:
            raise AuthenticationFailedError(
                f"{self.kind.label} requires a user name/password or an API token",
                hint=TOKEN_HINT,
            )

        if credential.kind == CredentialKind.PASSWORD and "@" not in credential.username:
            credential = credential.model_copy(update={"username": f"{credential.username}@pam"})

        port = port or self.default_port()
        client = self._client_factory(address, port, credential)
        try:
            client.login()
        except ProxmoxAuthenticationError as exc:
            client.close()
            raise AuthenticationFailedError(
                f"{self.kind.label} at {address} rejected the credentials: {exc}", hint=TOKEN_HINT
            ) from exc
        except ProxmoxAPIError as exc:
            client.close()
            raise AuthenticationFailedError(
                f"Login to {self.kind.label} at {address} failed: {exc}", hint=PORT_HINT
            ) from exc

        return AuthContext(address=address, kind=self.kind, port=port, credential=credential, session=client)

    def collect(self, context: AuthContext) -> CollectionResult:
        return self.collect_cluster(context.session, context.address)

    def collect_cluster(self, client: ProxmoxClient, address: str) -> CollectionResult:
        """Discover every node reachable through ``client`` and inventory its VMs."""

        try:
            nodes = self._discover_nodes(client)
            records: List[VmRecord] = []
            for node in nodes:
                records.extend(self._collect_node(client, node))
        except ProxmoxAuthenticationError as exc:
            raise AuthenticationFailedError(
                f"{self.kind.label} at {address} rejected a request: {exc}", hint=TOKEN_HINT
            ) from exc
        except ProxmoxAPIError as exc:
            raise CollectionFailedError(
                f"Inventory collection from {address} failed: {exc}", hint=COLLECTION_HINT
            ) from exc

        logger.info(
            "Collected %d VM(s) from %d Proxmox VE node(s) via %s", len(records), len(nodes), address
        )
        return CollectionResult(kind=HypervisorKind.PROXMOX_VE, vms=records, node_names=nodes)

    def _discover_nodes(self, client: ProxmoxClient) -> List[str]:
        try:
            entries = client.get("/cluster/status") or []
        except ProxmoxAuthenticationError:
            raise
        except ProxmoxAPIError as exc:
            logger.info("Cluster status unavailable on %s (%s); listing nodes instead", client.address, exc)
            entries = []

        nodes = self._unique(
            entry.get("name") for entry in entries if isinstance(entry, dict) and entry.get("type") == "node"
        )
        if nodes:
            return nodes

        return self._unique(
            entry.get("node") for entry in (client.get("/nodes") or []) if isinstance(entry, dict)
        )

    def _collect_node(self, client: ProxmoxClient, node: str) -> List[VmRecord]:
        node_path = f"/nodes/{quote_segment(node)}"
        node_status = client.get(f"{node_path}/status") or {}
        guests = client.get(f"{node_path}/qemu") or []

        records: List[VmRecord] = []
        for guest in sorted(guests, key=lambda item: coerce_int(item.get("vmid"), 0) or 0):
            if coerce_int(guest.get("template"), 0):
                continue
            vm_path = f"{node_path}/qemu/{quote_segment(guest.get('vmid'))}"
            config = client.get(f"{vm_path}/config") or {}
            status = client.get(f"{vm_path}/status/current") or {}
            snapshots = client.get(f"{vm_path}/snapshot") or []

            ips: Dict[str, List[str]] = {}
            if agent_enabled(config) and status.get("status") == "running":
                ips = self._guest_ips(client, vm_path, guest)

            records.append(build_vm_record(node, node_status, config, status, snapshots, ips))

        logger.debug("Node %s reported %d VM(s)", node, len(records))
        return records

    @staticmethod
    def _guest_ips(client: ProxmoxClient, vm_path: str, guest: Dict[str, Any]) -> Dict[str, List[str]]:
        try:
            return agent_ips_by_mac(client.get(f"{vm_path}/agent/network-get-interfaces"))
        except ProxmoxAPIError as exc:
            logger.debug("Guest agent query for VM %s failed: %s", guest.get("vmid"), exc)
            return {}

    @staticmethod
    def _unique(values: Iterable[Any]) -> List[str]:
        seen: List[str] = []
        for value in values:
            if value and str(value) not in seen:
                seen.append(str(value))
        return seen
