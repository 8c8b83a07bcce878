"""Proxmox Datacenter Manager adapter.

PDM aggregates several Proxmox VE clusters ("remotes"). Its per-guest view is
reduced, so host-level columns are left blank. An endpoint without the remotes
API is treated as a plain VE node.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List

from ...core.models import HypervisorKind, VmRecord
from ..proxmox_client import ProxmoxAPIError, ProxmoxAuthenticationError, ProxmoxClient, quote_segment
from .base import (
    AuthContext,
    AuthenticationFailedError,
    CollectionResult,
    coerce_float,
    coerce_int,
    format_uptime,
)
from .proxmox import GENERATION_LABEL, TOKEN_HINT, ProxmoxVEAdapter, format_state

logger = logging.getLogger(__name__)

PLATFORM_LABEL = "Proxmox PDM"


def build_pdm_record(remote: str, resource: Dict[str, Any]) -> VmRecord:
    max_mem = coerce_float(resource.get("maxmem"))
    return VmRecord(
        platform=PLATFORM_LABEL,
        host_name=str(resource.get("node") or remote),
        vm_name=str(resource.get("name") or f"VM {resource.get('vmid', '?')}"),
        state=format_state(resource.get("status")),
        cpu_count=coerce_int(resource.get("maxcpu")),
        memory_assigned_mb=int(max_mem // 1024 ** 2) if max_mem else None,
        uptime=format_uptime(resource.get("uptime", 0)),
        generation=GENERATION_LABEL,
    )


class ProxmoxPDMAdapter(ProxmoxVEAdapter):
    """Enumerates PDM remotes, falling back to the VE path when unavailable."""

    kind = HypervisorKind.PROXMOX_PDM
    port_closed_hint = "Verify the PDM API is running and the port is correct (8443 by default)."

    def collect(self, context: AuthContext) -> CollectionResult:
        client: ProxmoxClient = context.session
        try:
            remotes = client.get("/remotes")
        except ProxmoxAuthenticationError as exc:
            raise AuthenticationFailedError(
                f"{self.kind.label} at {context.address} rejected a request: {exc}", hint=TOKEN_HINT
            ) from exc
        except ProxmoxAPIError as exc:
            logger.info(
                "Remote enumeration unavailable on %s (%s); treating it as a Proxmox VE node",
                context.address,
                exc,
            )
            return self.collect_cluster(client, context.address)

        return self._collect_remotes(client, context.address, remotes or [])

    def _collect_remotes(self, client: ProxmoxClient, address: str, remotes: List[Any]) -> CollectionResult:
        result = CollectionResult(kind=HypervisorKind.PROXMOX_PDM)

        for remote in remotes:
            if not isinstance(remote, dict):
                continue
            remote_id = str(remote.get("id") or remote.get("remote") or "").strip()
            if not remote_id:
                continue
            remote_type = str(remote.get("type") or "pve").lower()
            if remote_type != "pve":
                logger.info("Skipping PDM remote %s of type %s", remote_id, remote_type)
                continue

            try:
                records = self._collect_remote(client, remote_id)
            except ProxmoxAPIError as exc:
                message = f"Failed to collect from PDM remote {remote_id}: {exc}"
                logger.warning(message)
                result.warnings.append(message)
                continue

            result.cluster_names.append(remote_id)
            result.vms.extend(records)
            for record in records:
                if record.host_name not in result.node_names:
                    result.node_names.append(record.host_name)

        logger.info(
            "Collected %d VM(s) from %d PDM remote(s) via %s (%d warning(s))",
            len(result.vms),
            len(result.cluster_names),
            address,
            len(result.warnings),
        )
        return result

    @staticmethod
    def _collect_remote(client: ProxmoxClient, remote_id: str) -> List[VmRecord]:
        resources = client.get(f"/pve/remotes/{quote_segment(remote_id)}/resources") or []
        records: List[VmRecord] = []
        for resource in resources:
            if not isinstance(resource, dict) or resource.get("type") != "qemu":
                continue
            if coerce_int(resource.get("template"), 0):
                continue
            records.append(build_pdm_record(remote_id, resource))
        return records

