"""Client-side WSMan TrustedHosts management for IP-literal WinRM targets."""

import fnmatch
import logging
import subprocess
from typing import List

from ..core.config import settings
from ..core.models import normalize_address
from .winrm_service import ps_quote

logger = logging.getLogger(__name__)

_TRUSTED_HOSTS_PATH = r"WSMan:\localhost\Client\TrustedHosts"


class TrustedHostsError(RuntimeError):
    """Raised when the TrustedHosts list cannot be read or updated."""


class TrustedHostsManager:
    """Read and extend the local WinRM client's TrustedHosts allow-list."""

    def __init__(self, shell: str = "powershell") -> None:
        self._shell = shell

    @property
    def enabled(self) -> bool:
        return bool(settings.winrm_manage_trusted_hosts)

    def _run(self, script: str) -> str:
        command = [self._shell, "-NoProfile", "-NonInteractive", "-Command", script]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=30,
                check=False,
            )
        except FileNotFoundError as exc:
            raise TrustedHostsError(f"{self._shell} not found on PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise TrustedHostsError("Timed out while accessing the TrustedHosts list") from exc

        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            raise TrustedHostsError(detail)
        return result.stdout

    def list_entries(self) -> List[str]:
        output = self._run(f"(Get-Item -Path '{_TRUSTED_HOSTS_PATH}').Value")
        return [entry.strip() for entry in output.strip().split(",") if entry.strip()]

    def is_trusted(self, address: str) -> bool:
        """Return True when ``address`` is covered by the TrustedHosts list."""

        if not self.enabled:
            return True

        try:
            entries = self.list_entries()
        except TrustedHostsError as exc:
            logger.warning("Unable to read TrustedHosts list: %s", exc)
            return False

        # Entries may be WSMan wildcard patterns such as 10.0.0.* or *.corp.local
        key = normalize_address(address)
        for entry in entries:
            pattern = normalize_address(entry)
            if pattern == key or fnmatch.fnmatchcase(key, pattern):
                return True
        return False

    def add(self, address: str) -> None:
        """Append ``address`` to TrustedHosts. Requires an elevated session."""

        if not self.enabled:
            return

        value = ps_quote(address.strip())
        self._run(
            f"Set-Item -Path '{_TRUSTED_HOSTS_PATH}' -Value {value} -Concatenate -Force"
        )
        logger.info("Added %s to the WinRM TrustedHosts list", address)


trusted_hosts_manager = TrustedHostsManager()
