"""Compiles agent connections into an environment mapping, fetch commands and a link plan."""
import logging
from typing import Dict, List, Optional, Union

from ..domains.connectivity import ConnectivityPlanner
from ..domains.errors import CompilerFinalized, ConfigurationMismatch, MissingCredential
from ..domains.models import (
    OWNED_SECRET_FIELDS,
    ActiveDirectoryAgentConfig,
    ActiveDirectoryInfo,
    AgentSettings,
    CompiledConfiguration,
    Credential,
    DomainController,
    FetchCommand,
    LiteralValue,
    ManagedDatabase,
    ManagedDirectory,
    Network,
    PostgresAgentConfig,
    PostgresDatabaseInfo,
    ResolvedVariable,
    SecretField,
    SnapshotCollectorConfig,
    StringOrSecret,
    UploadConfig,
    WmiCollectorConfig,
)
from ..domains.namespace import NamespaceAllocator
from ..domains.secret_resolver import SecretResolver

logger = logging.getLogger(__name__)

POSTGRES_ENGINES = ("postgres", "postgresql", "aurora-postgresql")
MANAGED_DIRECTORY_KIND = "microsoft-ad"
COLLECTION_METHODS = ("All", "DCOnly")
RUSTHOUND_PATH = "/usr/local/bin/rusthound-ce"
OUTPUT_ROOT = "/tmp/slashid-agent"

Database = Union[ManagedDatabase, PostgresDatabaseInfo]
Directory = Union[ManagedDirectory, ActiveDirectoryInfo]


class _Connection:
    """Variables and commands staged for one prefix, committed only if the whole call succeeds."""

    def __init__(self, prefix: str, resolver: SecretResolver):
        self.prefix = prefix
        self._resolver = resolver
        self.environment: Dict[str, str] = {}
        self.commands: List[FetchCommand] = []

    def set(self, field: str, value: StringOrSecret) -> None:
        name = f"{self.prefix}{field}"
        rendered, commands = self._resolver.resolve(name, value)
        self.environment[name] = rendered
        self.commands.extend(commands)

    def set_literal(self, field: str, value: object) -> None:
        if isinstance(value, bool):
            value = "true" if value else "false"
        self.set(field, LiteralValue(str(value)))


class AgentConfigCompiler:
    """
    Accumulates the configuration of one agent host.

    Each add_* call allocates a namespace prefix per connection kind, links
    the agent's network to the resource's network when needed, and resolves
    every credential field into a placeholder plus a boot-time fetch command.
    Calls chain and run sequentially; finalize() returns the immutable result.
    """

    def __init__(self, network: Network, identity: str, settings: Optional[AgentSettings] = None):
        self.network = network
        self.identity = identity
        self.settings = settings or AgentSettings()
        self._resolver = SecretResolver(identity)
        self._planner = ConnectivityPlanner(network)
        self._namespaces = NamespaceAllocator()
        self._environment: Dict[str, str] = {"LOG_LEVEL": self.settings.log_level}
        self._fetch_commands: List[FetchCommand] = []
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def link_network(self, target: Network) -> "AgentConfigCompiler":
        """Explicitly link a network the compiler can't infer from a connection."""
        self._check_open()
        self._planner.ensure_link(target, f"LINK_{target.id}")
        return self

    def add_postgres(self, database: Database, agent_config: PostgresAgentConfig) -> "AgentConfigCompiler":
        """
        Connect the agent to a PostgreSQL database.

        A ManagedDatabase gets network connectivity and credentials from its own
        secret; a PostgresDatabaseInfo is used as given and connectivity is the
        caller's concern.

        Raises:
            ConfigurationMismatch: If a managed database is not a PostgreSQL engine
            MissingCredential: If a managed database owns no credential secret
            ResourceUnavailable: If a referenced secret can't be granted
        """
        self._check_open()
        if isinstance(database, ManagedDatabase):
            if database.engine.lower() not in POSTGRES_ENGINES:
                raise ConfigurationMismatch(
                    f"Database '{database.name}' has engine '{database.engine}', expected PostgreSQL"
                )
        elif not isinstance(database, PostgresDatabaseInfo):
            raise ConfigurationMismatch(f"Not a PostgreSQL database descriptor: {type(database).__name__}")

        conn = _Connection(self._namespaces.allocate("PSQL"), self._resolver)

        if isinstance(database, ManagedDatabase):
            secret = database.secret
            if secret is None:
                raise MissingCredential(
                    f"Database '{database.name}' owns no credential secret; "
                    "pass a PostgresDatabaseInfo with explicit credentials instead"
                )
            self._planner.ensure_link(database.network, conn.prefix.rstrip("_"))

            fields = OWNED_SECRET_FIELDS
            conn.set("HOST", database.host if database.host is not None else SecretField(secret, fields.host))
            conn.set("PORT", database.port if database.port is not None else SecretField(secret, fields.port))
            conn.set_literal("USE_SSL", database.use_ssl)
            conn.set("DBNAME", SecretField(secret, fields.dbname))
            conn.set("USERNAME", SecretField(secret, fields.username))
            conn.set("PASSWORD", SecretField(secret, fields.password))
        else:
            conn.set("HOST", database.host)
            conn.set("PORT", database.port)
            conn.set_literal("USE_SSL", database.use_ssl)
            conn.set("DBNAME", database.dbname)
            conn.set("USERNAME", database.username)
            conn.set("PASSWORD", database.password)

        if agent_config.fetch_passwords is not None:
            conn.set_literal("FETCH_PASSWORDS", agent_config.fetch_passwords)
        self._set_upload_config(conn, agent_config)

        self._commit([conn])
        logger.info(f"Added PostgreSQL connection {conn.prefix.rstrip('_')}")
        return self

    add_database_connection = add_postgres

    def add_active_directory(self, directory: Directory, agent_config: ActiveDirectoryAgentConfig) -> "AgentConfigCompiler":
        """
        Connect the agent to an Active Directory domain.

        The snapshot collector runs once against the first domain controller.
        The WMI event collector runs once per domain controller, each with its
        own namespace prefix.

        Raises:
            ConfigurationMismatch: If the directory or collector config is unusable
            ResourceUnavailable: If a referenced secret can't be granted
        """
        self._check_open()
        self._validate_directory(directory, agent_config)

        snapshot_prefix = None
        wmi_prefixes: List[str] = []
        if agent_config.snapshot is not None:
            snapshot_prefix = self._namespaces.allocate("AD_SNAPSHOT")
        if agent_config.wmi is not None:
            wmi_prefixes = [self._namespaces.allocate("WMI") for _ in directory.controllers]

        network = agent_config.network
        if network is None and isinstance(directory, ManagedDirectory):
            network = directory.network
        if network is not None:
            self._planner.ensure_link(network, (snapshot_prefix or wmi_prefixes[0]).rstrip("_"))

        connections = []
        if snapshot_prefix is not None:
            connections.append(self._snapshot_connection(
                snapshot_prefix, directory.domain_name, directory.controllers[0], agent_config.snapshot
            ))
        for prefix, controller in zip(wmi_prefixes, directory.controllers):
            connections.append(self._wmi_connection(prefix, directory.domain_name, controller, agent_config.wmi))

        self._commit(connections)
        logger.info(
            f"Added Active Directory {directory.domain_name}: "
            f"{', '.join(c.prefix.rstrip('_') for c in connections)}"
        )
        return self

    add_directory_connection = add_active_directory

    def finalize(self) -> CompiledConfiguration:
        """Close the compiler to further changes and return its configuration."""
        self._finalized = True
        return CompiledConfiguration(
            environment=tuple(ResolvedVariable(name, value) for name, value in self._environment.items()),
            fetch_commands=tuple(self._fetch_commands),
            links=self._planner.links,
            routes=self._planner.routes,
        )

    def _check_open(self) -> None:
        if self._finalized:
            raise CompilerFinalized("Configuration already finalized; create a new compiler to add connections")

    @staticmethod
    def _validate_directory(directory: Directory, agent_config: ActiveDirectoryAgentConfig) -> None:
        if isinstance(directory, ManagedDirectory):
            if directory.kind != MANAGED_DIRECTORY_KIND:
                raise ConfigurationMismatch(
                    f"Directory '{directory.domain_name}' is '{directory.kind}', expected '{MANAGED_DIRECTORY_KIND}'"
                )
        elif not isinstance(directory, ActiveDirectoryInfo):
            raise ConfigurationMismatch(f"Not a directory descriptor: {type(directory).__name__}")

        if not directory.controllers:
            raise ConfigurationMismatch(f"Directory '{directory.domain_name}' has no domain controllers")
        if agent_config.snapshot is None and agent_config.wmi is None:
            raise ConfigurationMismatch(
                f"Directory '{directory.domain_name}': enable snapshot and/or wmi collection"
            )
        snapshot = agent_config.snapshot
        if snapshot is not None and snapshot.collection_method is not None \
                and snapshot.collection_method not in COLLECTION_METHODS:
            raise ConfigurationMismatch(
                f"Unsupported collection_method '{snapshot.collection_method}', "
                f"expected one of: {', '.join(COLLECTION_METHODS)}"
            )

    def _snapshot_connection(self, prefix: str, domain: str, controller: DomainController,
                             config: SnapshotCollectorConfig) -> _Connection:
        conn = _Connection(prefix, self._resolver)
        conn.set_literal("DOMAIN", domain)
        self._set_credential(conn, config.credential)
        conn.set_literal("TARGET_DC", controller.fqdn or controller.address)
        # Managed directory DNS servers are the domain controllers themselves
        conn.set_literal("FQDN_RESOLVER", controller.address)
        conn.set_literal("LDAPS", config.ldaps)
        conn.set_literal("LDAP_PORT", config.ldap_port)
        if config.collect_adcs is not None:
            conn.set_literal("COLLECT_ADCS", config.collect_adcs)
        if config.collection_method is not None:
            conn.set_literal("COLLECTION_METHOD", config.collection_method)
        conn.set_literal("RUSTHOUND_PATH", RUSTHOUND_PATH)
        self._set_upload_config(conn, config)
        return conn

    def _wmi_connection(self, prefix: str, domain: str, controller: DomainController,
                        config: WmiCollectorConfig) -> _Connection:
        conn = _Connection(prefix, self._resolver)
        conn.set_literal("DOMAIN", domain)
        self._set_credential(conn, config.credential)
        conn.set_literal("TARGET_DC", controller.fqdn or controller.address)
        self._set_upload_config(conn, config)
        return conn

    @staticmethod
    def _set_credential(conn: _Connection, credential: Credential) -> None:
        conn.set("USERNAME", credential.username)
        conn.set("PASSWORD", credential.password)

    @staticmethod
    def _set_upload_config(conn: _Connection, config: UploadConfig) -> None:
        conn.set("SLASHID_AUTH_TOKEN", config.auth_token)
        conn.set_literal("UPLOAD_URL", config.upload_url)
        conn.set_literal("UPLOAD_INTERVAL", config.upload_interval)
        conn.set_literal("MAX_CONSECUTIVE_FAILURES", config.max_consecutive_failures)
        conn.set_literal("MAX_BACKOFF_INTERVAL", config.max_backoff_interval)
        conn.set_literal("OUTPUT_DIR", f"{OUTPUT_ROOT}/{conn.prefix}OUTPUT")

    def _commit(self, connections: List[_Connection]) -> None:
        for conn in connections:
            for name in conn.environment:
                if name in self._environment:
                    raise ConfigurationMismatch(f"Environment variable {name} is already defined")
        for conn in connections:
            self._environment.update(conn.environment)
            self._fetch_commands.extend(conn.commands)
            logger.debug(f"{conn.prefix}: {len(conn.environment)} variables, {len(conn.commands)} deferred")
