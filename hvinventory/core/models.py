"""Data models for the application."""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic.alias_generators import to_camel


CURRENT_SCHEMA_VERSION = 3


def normalize_address(address: str) -> str:
    """Return the lookup key used for host addresses."""
    return (address or "").strip().lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HypervisorKind(str, Enum):
    """Hypervisor platform reachable through one of the protocol adapters."""
    HYPER_V = "HyperV"
    PROXMOX_VE = "ProxmoxVE"
    PROXMOX_PDM = "ProxmoxPDM"

    @property
    def label(self) -> str:
        return {
            HypervisorKind.HYPER_V: "Hyper-V",
            HypervisorKind.PROXMOX_VE: "Proxmox VE",
            HypervisorKind.PROXMOX_PDM: "Proxmox PDM",
        }[self]


class AuthPolicy(str, Enum):
    """How a group of hosts authenticates."""
    CURRENT_USER = "CurrentUser"
    USERNAME_PASSWORD = "UsernamePassword"
    API_TOKEN = "ApiToken"


class CredentialKind(str, Enum):
    PASSWORD = "password"
    TOKEN = "token"


class ConnectionStage(str, Enum):
    """Failure taxonomy surfaced by the orchestrator."""
    DUPLICATE = "Duplicate"
    UNREACHABLE = "Unreachable"
    PORT_CLOSED = "PortClosed"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    TRUST_CONFIGURATION_REQUIRED = "TrustConfigurationRequired"
    COLLECTION_FAILED = "CollectionFailed"
    CANCELLED = "Cancelled"
    CONFIG_CORRUPT = "ConfigCorrupt"


class ConnectionState(str, Enum):
    """States walked by a single connection attempt."""
    IDLE = "Idle"
    CHECKING_DUPLICATE = "CheckingDuplicate"
    PROBING_REACHABILITY = "ProbingReachability"
    RESOLVING_CREDENTIAL = "ResolvingCredential"
    TESTING_AUTH = "TestingAuth"
    COLLECTING = "Collecting"
    REGISTERED = "Registered"
    FAILED = "Failed"


class NotificationLevel(str, Enum):
    """Notification severity level."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class ConfirmationTopic(str, Enum):
    """Interactive decisions the orchestrator may need from the operator."""
    SAVED_CREDENTIAL = "saved-credential"
    TRUSTED_HOST = "trusted-host"
    IP_CREDENTIAL_FALLBACK = "ip-credential-fallback"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class _PersistedModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HostRecord(_PersistedModel):
    """Connection history entry for one address."""
    address: str
    hypervisor_kind: HypervisorKind = HypervisorKind.HYPER_V
    last_connected_at: Optional[datetime] = None
    use_current_user: bool = False
    username: Optional[str] = None
    encrypted_password: Optional[str] = None

    @property
    def key(self) -> str:
        return normalize_address(self.address)

    @property
    def has_saved_secret(self) -> bool:
        return bool(self.encrypted_password)


class GroupRecord(_PersistedModel):
    """Named collection of hosts sharing a hypervisor kind and credentials."""
    name: str
    hypervisor_kind: HypervisorKind = HypervisorKind.HYPER_V
    auth_policy: AuthPolicy = AuthPolicy.CURRENT_USER
    username: Optional[str] = None
    encrypted_secret: Optional[str] = None
    port: Optional[int] = None
    host_addresses: List[str] = Field(default_factory=list)

    def contains(self, address: str) -> bool:
        key = normalize_address(address)
        return any(normalize_address(existing) == key for existing in self.host_addresses)


class ConfigDocument(_PersistedModel):
    """Root of the persisted document."""
    version: int = CURRENT_SCHEMA_VERSION
    hosts: List[HostRecord] = Field(default_factory=list)
    groups: List[GroupRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """Plaintext credential material held only in memory."""
    username: str = ""
    secret: SecretStr
    kind: CredentialKind = CredentialKind.PASSWORD

    @classmethod
    def password(cls, username: str, password: str) -> "Credential":
        return cls(username=username, secret=SecretStr(password), kind=CredentialKind.PASSWORD)

    @classmethod
    def token(cls, token_id: str, token_secret: str) -> "Credential":
        return cls(username=token_id, secret=SecretStr(token_secret), kind=CredentialKind.TOKEN)

    def reveal(self) -> str:
        return self.secret.get_secret_value()


class ReachabilityResult(BaseModel):
    """Outcome of the pre-authentication probes."""
    address: str
    port: int
    icmp_ok: Optional[bool] = None  # None when ICMP could not be attempted
    tcp_ok: bool = False


class VmRecord(BaseModel):
    """Normalised VM row shared by every hypervisor kind."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    platform: str
    host_name: str
    host_cpu: Optional[int] = Field(default=None, alias="hostCPU")
    host_memory_gb: Optional[float] = Field(default=None, alias="hostMemoryGB")
    host_version: str = ""
    vm_name: str
    state: str = "Unknown"
    cpu_count: Optional[int] = None
    memory_assigned_mb: Optional[int] = Field(default=None, alias="memoryAssignedMB")
    uptime: str = ""
    generation: str = ""
    dynamic_memory_flag: Optional[bool] = None
    nics_summary: str = ""
    disks_summary: str = ""
    checkpoints_summary: str = ""
    integration_services_info: str = ""

    @classmethod
    def column_names(cls) -> List[str]:
        return [field.alias or name for name, field in cls.model_fields.items()]


class ConnectedHost(BaseModel):
    """Registry entry for a host with a live inventory in memory."""
    address: str
    hypervisor_kind: HypervisorKind
    credential_handle: Optional[Credential] = Field(default=None, exclude=True, repr=False)
    use_current_user: bool = False
    vm_count: int = 0
    node_names: List[str] = Field(default_factory=list)
    cluster_names: List[str] = Field(default_factory=list)
    connected_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return normalize_address(self.address)

    def owned_host_names(self) -> Set[str]:
        """Keys that VM rows of this host may carry in their host name."""
        names = {self.key}
        names.update(normalize_address(node) for node in self.node_names if node)
        return names


class ConnectionOutcome(BaseModel):
    """Structured result of one connection attempt."""
    address: str
    hypervisor_kind: Optional[HypervisorKind] = None
    success: bool
    stage: Optional[ConnectionStage] = None
    message: str = ""
    hint: Optional[str] = None
    vm_count: int = 0


class BulkResult(BaseModel):
    """Aggregate of a sequential multi-host run."""
    succeeded: int = 0
    failed: int = 0
    failed_addresses: List[str] = Field(default_factory=list)
    outcomes: List[ConnectionOutcome] = Field(default_factory=list)


class StatusUpdate(BaseModel):
    """Message pushed from the worker to the presentation layer."""
    state: ConnectionState
    message: str
    address: Optional[str] = None
    level: NotificationLevel = NotificationLevel.INFO
    busy: bool = True
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Interactive request/response types
# ---------------------------------------------------------------------------


class CredentialPromptRequest(BaseModel):
    address: str
    hypervisor_kind: HypervisorKind
    reason: str
    expects_token: bool = False
    username_hint: Optional[str] = None
    allow_remember: bool = True


class CredentialPromptResult(BaseModel):
    credential: Optional[Credential] = None
    remember: bool = False

    @property
    def cancelled(self) -> bool:
        return self.credential is None


class ConfirmationRequest(BaseModel):
    address: str
    topic: ConfirmationTopic
    title: str
    message: str
