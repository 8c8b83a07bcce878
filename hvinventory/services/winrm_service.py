"""WinRM service for running the inventory PowerShell pipeline on Hyper-V hosts."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Iterator, List, Optional, Set, Tuple

from pypsrp.complex_objects import PSInvocationState
from pypsrp.exceptions import AuthenticationError, WinRMError
from pypsrp.exceptions import WinRMTransportError as PyWinRMTransportError
from pypsrp.powershell import PowerShell, RunspacePool
from pypsrp.wsman import WSMan

from ..core.config import settings
from ..core.models import Credential

logger = logging.getLogger(__name__)

EXIT_SENTINEL = "__HVINVENTORY_EXIT_CODE__:"
WINRM_HTTPS_PORT = 5986

_FINISHED_STATE_NAMES = ("COMPLETED", "FAILED", "STOPPED", "DISCONNECTED")
_FINISHED_STATES = {getattr(PSInvocationState, name) for name in _FINISHED_STATE_NAMES}


class WinRMServiceError(RuntimeError):
    """Base exception for WinRM service failures."""


class WinRMAuthenticationError(WinRMServiceError):
    """Raised when authentication to a host fails."""


class WinRMTransportError(WinRMServiceError):
    """Raised for lower-level transport failures."""


class WinRMTimeoutError(WinRMServiceError):
    """Raised when a pipeline runs past the configured wall-clock limit."""


@dataclass(frozen=True)
class WinRMTarget:
    """Where and as whom a WinRM session is opened."""

    hostname: str
    credential: Optional[Credential] = None
    port: int = 5985

    @property
    def use_current_user(self) -> bool:
        return self.credential is None

    @property
    def transport(self) -> str:
        # Kerberos needs a resolvable name; explicit credentials negotiate
        return "kerberos" if self.use_current_user else "negotiate"


def ps_quote(value: str) -> str:
    """Return ``value`` as a single-quoted PowerShell literal."""

    return "'" + value.replace("'", "''") + "'"


def render_psrp_item(item: Any, _seen: Optional[Set[int]] = None) -> str:
    """Turn a PSRP output or error record into text.

    Deserialised complex objects carry a type name in ``to_string`` and the
    useful data in ``adapted_properties``; those are rendered as
    ``Key: value`` lines.
    """

    if item is None:
        return ""
    if isinstance(item, str):
        return item

    seen = _seen if _seen is not None else set()
    if id(item) in seen:
        return ""
    seen.add(id(item))

    properties = getattr(item, "adapted_properties", None)
    if isinstance(properties, dict) and properties:
        lines = []
        for key, value in properties.items():
            rendered = render_psrp_item(value, seen)
            if rendered:
                lines.append(f"{key}: {rendered}")
        return "\n".join(lines)

    label = getattr(item, "to_string", None)
    if isinstance(label, str) and label.strip():
        return label
    return str(item)


def pipeline_finished(state: object) -> bool:
    """True once a PowerShell invocation can no longer produce output."""

    if state in _FINISHED_STATES:
        return True
    return str(state).upper() in _FINISHED_STATE_NAMES


def wrap_script(command: str) -> str:
    """Run ``command`` in a script block and report its outcome via the exit sentinel."""

    body = "        " + command.replace("\n", "\n        ")
    return "\n".join(
        [
            "$ErrorActionPreference = 'Continue'",
            "$ProgressPreference = 'SilentlyContinue'",
            "$InventoryExitCode = 0",
            "try {",
            "    & {",
            body,
            "    }",
            "    if (-not $?) { $InventoryExitCode = 1 }",
            "} catch {",
            "    $InventoryExitCode = 1",
            "    Write-Error $_",
            "}",
            f'Write-Output "{EXIT_SENTINEL}$InventoryExitCode"',
        ]
    )


def _preview(text: str, limit: int = 400) -> str:
    compact = text.replace("\r\n", "\n").strip()
    if len(compact) > limit:
        compact = compact[: limit - 3] + "..."
    return compact


@dataclass
class _StreamCursor:
    """Buffers new pipeline output and error records between polls."""

    hostname: str
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None
    _output_seen: int = 0
    _errors_seen: int = 0

    def drain(self, ps: Any) -> None:
        output = list(ps.output)
        for item in output[self._output_seen :]:
            self._take(self.stdout, item)
        self._output_seen = len(output)

        errors = list(ps.streams.error)
        for item in errors[self._errors_seen :]:
            self._take(self.stderr, item)
        self._errors_seen = len(errors)

    def _take(self, sink: List[str], item: Any) -> None:
        text = render_psrp_item(item)
        if not text:
            return
        if text.startswith(EXIT_SENTINEL):
            raw = text[len(EXIT_SENTINEL) :].strip()
            try:
                self.exit_code = int(raw)
            except ValueError:
                logger.warning("Ignoring malformed exit code '%s' from %s", raw, self.hostname)
            return
        sink.append(text if text.endswith("\n") else text + "\n")


@contextmanager
def _translated_errors(hostname: str, action: str) -> Iterator[None]:
    """Map pypsrp failures onto the service's exception family."""

    try:
        yield
    except AuthenticationError as exc:
        logger.error("Authentication failed while %s on %s: %s", action, hostname, exc)
        raise WinRMAuthenticationError(str(exc)) from exc
    except (PyWinRMTransportError, WinRMError) as exc:
        logger.error("WinRM error while %s on %s: %s", action, hostname, exc)
        raise WinRMTransportError(str(exc)) from exc


class WinRMService:
    """Opens a fresh PSRP session per call; nothing is pooled between hosts."""

    def _create_session(self, target: WinRMTarget) -> WSMan:
        operation_timeout = max(1, int(settings.winrm_operation_timeout))
        credential = target.credential

        logger.info(
            "Opening WinRM session to %s:%s (auth=%s, user=%s)",
            target.hostname,
            target.port,
            target.transport,
            credential.username if credential else "<current user>",
        )
        with _translated_errors(target.hostname, "creating the WSMan session"):
            return WSMan(
                target.hostname,
                port=target.port,
                username=credential.username if credential else None,
                password=credential.reveal() if credential else None,
                auth=target.transport,
                ssl=target.port == WINRM_HTTPS_PORT,
                cert_validation=False,
                connection_timeout=max(1, int(settings.winrm_connection_timeout)),
                operation_timeout=operation_timeout,
                read_timeout=max(operation_timeout + 1, int(settings.winrm_read_timeout)),
            )

    @contextmanager
    def _session(self, target: WinRMTarget) -> Iterator[RunspacePool]:
        """Yield an open runspace pool; the pool and transport are always released."""

        wsman = self._create_session(target)
        try:
            with _translated_errors(target.hostname, "opening the runspace pool"):
                pool = RunspacePool(wsman)
                pool.open()
            try:
                yield pool
            finally:
                try:
                    pool.close()
                except Exception:  # pragma: no cover - best effort cleanup
                    logger.debug("Runspace pool on %s did not close cleanly", target.hostname, exc_info=True)
        finally:
            try:
                wsman.close()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("WSMan transport to %s did not close cleanly", target.hostname, exc_info=True)

    def test_connection(self, target: WinRMTarget) -> float:
        """Complete the authentication handshake and return its duration."""

        started = perf_counter()
        with self._session(target):
            pass
        elapsed = perf_counter() - started
        logger.info("WinRM handshake with %s succeeded in %.2fs", target.hostname, elapsed)
        return elapsed

    def execute_ps_command(self, target: WinRMTarget, command: str) -> Tuple[str, str, int]:
        """Run ``command`` on the target and return stdout, stderr and exit code."""

        logger.debug("PowerShell command for %s: %s", target.hostname, command)
        cursor = _StreamCursor(hostname=target.hostname)

        with self._session(target) as pool:
            elapsed = self._invoke(pool, target.hostname, wrap_script(command), cursor)

        stdout = "".join(cursor.stdout)
        stderr = "".join(cursor.stderr)
        exit_code = cursor.exit_code if cursor.exit_code is not None else (1 if cursor.stderr else 0)

        logger.info(
            "Pipeline on %s finished in %.2fs with exit code %s (%d stdout chars)",
            target.hostname,
            elapsed,
            exit_code,
            len(stdout),
        )
        if stderr:
            log = logger.warning if exit_code else logger.debug
            log("Pipeline stderr on %s:\n%s", target.hostname, _preview(stderr))

        return stdout, stderr, exit_code

    def _invoke(self, pool: RunspacePool, hostname: str, script: str, cursor: _StreamCursor) -> float:
        """Poll the pipeline until it finishes or the collection deadline passes."""

        ps = PowerShell(pool)
        ps.add_script(script)

        started = perf_counter()
        deadline = started + max(1.0, settings.winrm_collection_timeout)
        poll_seconds = max(1, int(min(settings.winrm_poll_interval_seconds, settings.winrm_operation_timeout)))
        finished = False
        try:
            with _translated_errors(hostname, "running the pipeline"):
                ps.begin_invoke()
                while not pipeline_finished(ps.state):
                    if perf_counter() > deadline:
                        raise WinRMTimeoutError(
                            f"PowerShell pipeline on {hostname} exceeded "
                            f"{settings.winrm_collection_timeout:.0f}s"
                        )
                    ps.poll_invoke(timeout=poll_seconds)
                    cursor.drain(ps)
                ps.end_invoke()
                finished = True
                cursor.drain(ps)
        finally:
            if not finished:
                try:
                    ps.stop()
                except Exception:  # pragma: no cover - best effort cleanup
                    logger.debug("Could not stop pipeline on %s", hostname, exc_info=True)

        return perf_counter() - started


winrm_service = WinRMService()
