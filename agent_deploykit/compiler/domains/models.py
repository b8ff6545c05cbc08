"""Domain models for agent configuration compilation."""
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Protocol, Tuple, Union, runtime_checkable

from .errors import SECRET_FIELD_MISSING_EXIT, SECRET_VALUE_MULTILINE_EXIT

# Runtime-only file the fetch script writes real secret values into
RUNTIME_SECRETS_FILE = "/run/secrets.env"

DEFAULT_UPLOAD_URL = "https://api.slashid.com/nhi/snapshots"
DEFAULT_UPLOAD_INTERVAL = 3600
DEFAULT_MAX_CONSECUTIVE_FAILURES = 5
DEFAULT_MAX_BACKOFF_INTERVAL = 3600


@runtime_checkable
class SecretHandle(Protocol):
    """Locator for a secret held by an external secret store."""

    @property
    def name(self) -> str:
        """Stable resource name (never the value)."""
        ...

    @property
    def secret_id(self) -> str:
        ...

    @property
    def project_id(self) -> str:
        ...

    def grant_read(self, identity: str) -> None:
        ...


@dataclass(frozen=True)
class LiteralValue:
    """A value written verbatim into the environment."""
    value: str


@dataclass(frozen=True)
class WholeSecret:
    """The entire text of a secret."""
    handle: SecretHandle


@dataclass(frozen=True)
class SecretField:
    """A single field of a JSON secret."""
    handle: SecretHandle
    field: str

    def __post_init__(self):
        if not self.field:
            raise ValueError(f"SecretField for {self.handle.name} requires a non-empty field name")


SecretRef = Union[LiteralValue, WholeSecret, SecretField]

# What callers may pass wherever a SecretRef is expected
StringOrSecret = Union[str, int, SecretHandle, LiteralValue, WholeSecret, SecretField]


def as_secret_ref(value: StringOrSecret) -> SecretRef:
    """Normalize a plain string, number or bare handle into a SecretRef."""
    if isinstance(value, (LiteralValue, WholeSecret, SecretField)):
        return value
    if isinstance(value, bool):
        return LiteralValue("true" if value else "false")
    if isinstance(value, (str, int)):
        return LiteralValue(str(value))
    if isinstance(value, SecretHandle):
        return WholeSecret(value)
    raise TypeError(f"Cannot use {type(value).__name__} as a secret reference")


@dataclass(frozen=True)
class Credential:
    """Username/password pair, each a literal or a secret reference."""
    username: StringOrSecret
    password: StringOrSecret


def credential_from_secret(
    secret: SecretHandle,
    username_field: str = "username",
    password_field: str = "password",
) -> Credential:
    """Build a Credential whose fields are read from one JSON secret."""
    return Credential(
        username=SecretField(secret, username_field),
        password=SecretField(secret, password_field),
    )


@dataclass(frozen=True)
class OwnedSecretFields:
    """Field names expected in a managed database's own credential secret."""
    host: str = "host"
    port: str = "port"
    dbname: str = "dbname"
    username: str = "username"
    password: str = "password"


OWNED_SECRET_FIELDS = OwnedSecretFields()


@dataclass(frozen=True)
class ResolvedVariable:
    """One entry of the environment file. rendered_value is never a secret."""
    name: str
    rendered_value: str


@dataclass(frozen=True)
class FetchCommand:
    """Boot-time instruction that fetches one secret value into the runtime secrets file."""
    variable: str
    secret_id: str
    project_id: str
    field: Optional[str] = None

    def render(self, secrets_file: str = RUNTIME_SECRETS_FILE) -> str:
        """
        Render as bash lines appending VARIABLE=value to secrets_file.

        Exits with SECRET_FIELD_MISSING_EXIT if the value can't be read and with
        SECRET_VALUE_MULTILINE_EXIT if it spans lines, so nothing but one
        VARIABLE=value line is ever written per command.
        """
        access = (
            f"gcloud secrets versions access latest"
            f" --secret={shlex.quote(self.secret_id)} --project={shlex.quote(self.project_id)}"
        )
        if self.field is None:
            fetch = access
            failure = f"{self.variable}: secret {self.secret_id} could not be read"
        else:
            fetch = f"{access} | jq -er --arg f {shlex.quote(self.field)} '.[$f]'"
            failure = f"{self.variable}: field '{self.field}' missing from secret {self.secret_id}"
        multiline = f"{self.variable}: value from secret {self.secret_id} spans multiple lines"
        return (
            f"value=$({fetch})"
            f" || {{ echo {shlex.quote(failure)} >&2; exit {SECRET_FIELD_MISSING_EXIT}; }}\n"
            f"case \"$value\" in *$'\\n'*|*$'\\r'*) echo {shlex.quote(multiline)} >&2;"
            f" exit {SECRET_VALUE_MULTILINE_EXIT};; esac\n"
            f"printf '%s=%s\\n' {self.variable} \"$value\" >> {secrets_file}"
        )


@dataclass(frozen=True)
class Subnet:
    id: str
    route_table_id: str
    public: bool = False


@dataclass(frozen=True)
class Network:
    """A network identity: id, address range and the subnets routing out of it."""
    id: str
    cidr: str
    subnets: Tuple[Subnet, ...] = ()

    @property
    def public_subnets(self) -> Tuple[Subnet, ...]:
        return tuple(s for s in self.subnets if s.public)

    @property
    def private_subnets(self) -> Tuple[Subnet, ...]:
        return tuple(s for s in self.subnets if not s.public)


@dataclass(frozen=True)
class NetworkLink:
    source_id: str
    target_id: str
    link_id: str


@dataclass(frozen=True)
class Route:
    route_id: str
    route_table_id: str
    destination_cidr: str
    link_id: str


class LinkResult(Enum):
    ALREADY_LOCAL = "already_local"
    ALREADY_LINKED = "already_linked"
    CREATED = "created"


@dataclass(frozen=True)
class ManagedDatabase:
    """A provisioned database instance the agent should reach over the network.

    host/port are the endpoint the resource exposes; when unset they are read
    from the owned secret at boot time instead.
    """
    name: str
    engine: str
    network: Network
    secret: Optional[SecretHandle] = None
    host: Optional[str] = None
    port: Optional[int] = None
    use_ssl: bool = True


@dataclass(frozen=True)
class PostgresDatabaseInfo:
    """Explicit connection details for a database the compiler does not manage."""
    host: StringOrSecret
    port: StringOrSecret
    dbname: StringOrSecret
    username: StringOrSecret
    password: StringOrSecret
    use_ssl: bool = True


@dataclass(frozen=True)
class DomainController:
    address: str
    fqdn: Optional[str] = None


@dataclass(frozen=True)
class ManagedDirectory:
    """A managed directory; its DNS servers are its domain controllers."""
    domain_name: str
    controllers: Tuple[DomainController, ...]
    network: Network
    kind: str = "microsoft-ad"


@dataclass(frozen=True)
class ActiveDirectoryInfo:
    """A directory reachable without network planning."""
    domain_name: str
    controllers: Tuple[DomainController, ...]


@dataclass(kw_only=True)
class UploadConfig:
    """Where and how often the agent uploads what it collected."""
    auth_token: StringOrSecret
    upload_url: str = DEFAULT_UPLOAD_URL
    upload_interval: int = DEFAULT_UPLOAD_INTERVAL
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    max_backoff_interval: int = DEFAULT_MAX_BACKOFF_INTERVAL


@dataclass(kw_only=True)
class PostgresAgentConfig(UploadConfig):
    fetch_passwords: Optional[bool] = None


@dataclass(kw_only=True)
class SnapshotCollectorConfig(UploadConfig):
    credential: Credential
    collect_adcs: Optional[bool] = None
    collection_method: Optional[str] = None  # "All" or "DCOnly"
    ldaps: bool = False
    ldap_port: int = 389


@dataclass(kw_only=True)
class WmiCollectorConfig(UploadConfig):
    credential: Credential


@dataclass
class ActiveDirectoryAgentConfig:
    """Which collectors to run against a directory.

    network overrides the directory's own network placement when set.
    """
    network: Optional[Network] = None
    snapshot: Optional[SnapshotCollectorConfig] = None
    wmi: Optional[WmiCollectorConfig] = None


@dataclass
class AgentSettings:
    """Host-level settings for the agent container."""
    log_level: str = "INFO"
    container_image: str = "slashid/agent"
    container_name: str = "slashid-agent"
    log_to_cloud: bool = False
    project_id: Optional[str] = None
    # cron schedule for re-fetching secrets and pulling a newer image
    update_schedule: str = "0 * * * *"


@dataclass(frozen=True)
class CompiledConfiguration:
    """Immutable snapshot of everything a compiler accumulated."""
    environment: Tuple[ResolvedVariable, ...] = ()
    fetch_commands: Tuple[FetchCommand, ...] = ()
    links: Tuple[NetworkLink, ...] = ()
    routes: Tuple[Route, ...] = ()

    def as_dict(self) -> Dict[str, str]:
        return {v.name: v.rendered_value for v in self.environment}

    def variables_with_prefix(self, prefix: str) -> Dict[str, str]:
        return {v.name: v.rendered_value for v in self.environment if v.name.startswith(prefix)}
