"""Shared contract and failure taxonomy for the hypervisor protocol adapters."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional

from ...core.config import settings
from ...core.models import (
    ConnectionStage,
    Credential,
    HypervisorKind,
    ReachabilityResult,
    VmRecord,
)
from .. import diagnostics

logger = logging.getLogger(__name__)


class ConnectionStageError(RuntimeError):
    """A connection attempt failed at a specific diagnostic stage."""

    stage: ConnectionStage = ConnectionStage.COLLECTION_FAILED

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


class DuplicateConnectionError(ConnectionStageError):
    stage = ConnectionStage.DUPLICATE


class UnreachableError(ConnectionStageError):
    stage = ConnectionStage.UNREACHABLE


class PortClosedError(ConnectionStageError):
    stage = ConnectionStage.PORT_CLOSED


class AuthenticationFailedError(ConnectionStageError):
    stage = ConnectionStage.AUTHENTICATION_FAILED


class TrustConfigurationRequiredError(ConnectionStageError):
    stage = ConnectionStage.TRUST_CONFIGURATION_REQUIRED


class CollectionFailedError(ConnectionStageError):
    stage = ConnectionStage.COLLECTION_FAILED


class ConnectionCancelledError(ConnectionStageError):
    stage = ConnectionStage.CANCELLED


@dataclass
class AuthContext:
    """Authenticated handle passed from ``authenticate`` to ``collect``."""

    address: str
    kind: HypervisorKind
    port: int
    credential: Optional[Credential] = None
    session: Any = None

    @property
    def use_current_user(self) -> bool:
        return self.credential is None

    def close(self) -> None:
        closer = getattr(self.session, "close", None)
        if callable(closer):
            try:
                closer()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close session for %s cleanly", self.address, exc_info=True)


@dataclass
class CollectionResult:
    """Normalised output of one adapter's collection routine."""

    kind: HypervisorKind
    vms: List[VmRecord] = field(default_factory=list)
    node_names: List[str] = field(default_factory=list)
    cluster_names: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def format_uptime(seconds: Any) -> str:
    """Render a second count as ``DD:HH:MM:SS``."""

    try:
        total = int(float(seconds))
    except (TypeError, ValueError):
        return ""
    if total < 0:
        total = 0
    days, remainder = divmod(total, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{days:02d}:{hours:02d}:{minutes:02d}:{secs:02d}"


def coerce_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        if value is None or value == "":
            return default
        return int(float(value))
    except (TypeError, ValueError):
        logger.debug("Unable to coerce %r to int; using default %s", value, default)
        return default


def coerce_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        logger.debug("Unable to coerce %r to float; using default %s", value, default)
        return default


class ProtocolAdapter(ABC):
    """Reachability, authentication and collection for one hypervisor kind."""

    kind: HypervisorKind
    supports_current_user: bool = False
    unreachable_hint = "Check the address, name resolution and that the target answers ICMP echo requests."
    port_closed_hint = "Verify the management service is running and the port is allowed through the firewall."

    def default_port(self) -> int:
        return settings.default_port(self.kind)

    def probe(self, address: str, port: Optional[int] = None) -> ReachabilityResult:
        """ICMP then TCP reachability; raises before any credential is used."""

        port = port or self.default_port()
        icmp_ok = diagnostics.ping(address, settings.ping_count, settings.ping_timeout_seconds)
        if icmp_ok is False:
            if settings.require_icmp:
                raise UnreachableError(
                    f"{address} did not respond to {settings.ping_count} ping request(s)",
                    hint=self.unreachable_hint,
                )
            logger.warning("%s did not answer ping; continuing with the TCP probe", address)

        if not diagnostics.tcp_probe(address, port, settings.tcp_probe_timeout_seconds):
            raise PortClosedError(
                f"{address} is not accepting connections on port {port}",
                hint=self.port_closed_hint,
            )

        return ReachabilityResult(address=address, port=port, icmp_ok=icmp_ok, tcp_ok=True)

    def needs_trust(self, address: str, credential: Optional[Credential]) -> bool:
        """Return True when a client-side trust entry must exist before authenticating."""
        return False

    def add_trust(self, address: str) -> None:
        raise TrustConfigurationRequiredError(
            f"{self.kind.label} connections do not use a trusted-peers list"
        )

    @abstractmethod
    def authenticate(
        self, address: str, credential: Optional[Credential], port: Optional[int] = None
    ) -> AuthContext:
        """Complete the authentication handshake or raise ``AuthenticationFailedError``."""

    @abstractmethod
    def collect(self, context: AuthContext) -> CollectionResult:
        """Gather normalised VM records or raise ``CollectionFailedError``."""
