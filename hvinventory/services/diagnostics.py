"""Reachability probes run before any authentication attempt."""

import ipaddress
import logging
import socket
import subprocess
import sys
from typing import List, Optional

logger = logging.getLogger(__name__)


def is_ip_literal(address: str) -> bool:
    """Return True when ``address`` is an IPv4/IPv6 literal rather than a name."""

    candidate = (address or "").strip()
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    # Scoped IPv6 literals (fe80::1%eth0)
    candidate = candidate.split("%", 1)[0]
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return False
    return True


def _ping_command(address: str, count: int, timeout: float) -> List[str]:
    if sys.platform == "win32":
        return ["ping", "-n", str(count), "-w", str(int(timeout * 1000)), address]
    return ["ping", "-c", str(count), "-W", str(max(1, int(round(timeout)))), address]


def ping(address: str, count: int = 2, timeout: float = 2.0) -> Optional[bool]:
    """Send ICMP echo requests.

    Returns True when at least one reply arrives, False when none do and None
    when ICMP could not be attempted at all (no ping utility on PATH).
    """

    command = _ping_command(address, count, timeout)
    logger.debug("Pinging %s: %s", address, " ".join(command))
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=count * timeout + 5,
            check=False,
        )
    except FileNotFoundError:
        logger.warning("ping utility not found; skipping ICMP reachability check for %s", address)
        return None
    except subprocess.TimeoutExpired:
        logger.info("Ping to %s timed out", address)
        return False

    if result.returncode == 0:
        return True

    logger.info("Ping to %s failed (rc=%s)", address, result.returncode)
    return False


def tcp_probe(address: str, port: int, timeout: float = 3.0) -> bool:
    """Return True when a TCP connection to ``address:port`` can be opened."""

    host = address.strip()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as exc:
        logger.info("TCP probe to %s:%s failed: %s", host, port, exc)
        return False

