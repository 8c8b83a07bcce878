"""Configuration management using Pydantic settings."""

import sys
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings

from .models import HypervisorKind


DEFAULT_DATA_DIR = Path.home() / ".hvinventory"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    app_name: str = "Hypervisor Inventory"
    debug: bool = False

    # User-profile scoped storage
    inventory_data_dir: Path = DEFAULT_DATA_DIR
    inventory_config_file: str = "config.json"
    inventory_key_file: str = "secret.key"
    inventory_export_dir: Optional[Path] = None

    # Connection history
    history_limit: int = 20

    # Reachability diagnostics
    ping_count: int = 2
    ping_timeout_seconds: float = 2.0
    require_icmp: bool = True  # When False an ICMP failure only logs a warning
    tcp_probe_timeout_seconds: float = 3.0

    # WinRM connection settings
    winrm_port: int = 5985
    winrm_operation_timeout: float = 15.0  # seconds to wait for WinRM calls
    winrm_connection_timeout: float = 30.0  # network connect timeout in seconds
    winrm_read_timeout: float = 30.0  # HTTP read timeout in seconds
    winrm_poll_interval_seconds: float = 1.0  # how long to wait between poll cycles
    winrm_collection_timeout: float = 300.0  # wall clock limit for the inventory pipeline
    # The WSMan TrustedHosts list only exists on Windows clients
    winrm_manage_trusted_hosts: bool = sys.platform == "win32"

    # Proxmox REST settings
    proxmox_ve_port: int = 8006
    proxmox_pdm_port: int = 8443
    proxmox_timeout_seconds: float = 15.0
    proxmox_verify_tls: bool = False  # Self-signed certificates are the norm

    class Config:
        env_file = ".env"
        case_sensitive = False

    def config_path(self) -> Path:
        """Location of the persisted host/group document."""
        return Path(self.inventory_data_dir).expanduser() / self.inventory_config_file

    def key_path(self) -> Path:
        """Location of the per-user secret protection key."""
        return Path(self.inventory_data_dir).expanduser() / self.inventory_key_file

    def export_dir(self) -> Path:
        """Directory that receives CSV exports."""
        if self.inventory_export_dir is None:
            return Path.cwd()
        return Path(self.inventory_export_dir).expanduser()

    def default_port(self, kind: HypervisorKind) -> int:
        """Return the management port used when no group override exists."""
        if kind == HypervisorKind.PROXMOX_VE:
            return self.proxmox_ve_port
        if kind == HypervisorKind.PROXMOX_PDM:
            return self.proxmox_pdm_port
        return self.winrm_port


settings = Settings()
