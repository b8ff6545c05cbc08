"""Workflow turning a deployment description into a compiled agent configuration."""
import logging
from typing import Any, Dict, Iterable, Tuple

from ..domains.config_loader import ConfigError
from ..domains.gcp_client import GCPSecretClient
from ..domains.models import (
    ActiveDirectoryAgentConfig,
    ActiveDirectoryInfo,
    AgentSettings,
    CompiledConfiguration,
    Credential,
    DomainController,
    ManagedDatabase,
    ManagedDirectory,
    Network,
    PostgresAgentConfig,
    PostgresDatabaseInfo,
    SecretField,
    SnapshotCollectorConfig,
    StringOrSecret,
    Subnet,
    WholeSecret,
    WmiCollectorConfig,
    credential_from_secret,
)
from .agent_compiler import AgentConfigCompiler

logger = logging.getLogger(__name__)

UPLOAD_KEYS = {"auth_token", "upload_url", "upload_interval", "max_consecutive_failures", "max_backoff_interval"}
SETTINGS_KEYS = {"log_level", "container_image", "container_name", "log_to_cloud", "update_schedule"}


def _check_keys(spec: Dict[str, Any], allowed: Iterable[str], where: str) -> None:
    if not isinstance(spec, dict):
        raise ConfigError(f"{where} must be a mapping")
    unknown = set(spec) - set(allowed)
    if unknown:
        raise ConfigError(f"Unknown key(s) in {where}: {', '.join(sorted(unknown))}")


def build_network(name: str, spec: Dict[str, Any]) -> Network:
    _check_keys(spec, {"cidr", "subnets"}, f"networks.{name}")
    subnets = []
    for i, subnet in enumerate(spec.get("subnets") or []):
        if not isinstance(subnet, dict) or not subnet.get("id") or not subnet.get("route_table"):
            raise ConfigError(f"networks.{name}.subnets[{i}] needs 'id' and 'route_table'")
        subnets.append(Subnet(id=subnet["id"], route_table_id=subnet["route_table"], public=bool(subnet.get("public", False))))
    return Network(id=name, cidr=spec["cidr"], subnets=tuple(subnets))


def secret_ref(value: Any, secrets: GCPSecretClient, where: str) -> StringOrSecret:
    """
    Interpret a YAML value as a SecretRef.

    A scalar is a literal; {secret: id} is a whole secret; {secret: id, field: name}
    is a single field of a JSON secret.
    """
    if isinstance(value, dict):
        _check_keys(value, {"secret", "field"}, where)
        if not value.get("secret"):
            raise ConfigError(f"{where}: secret reference needs a 'secret' id")
        handle = secrets.secret(value["secret"])
        if "field" in value:
            if not value["field"]:
                raise ConfigError(f"{where}: 'field' must not be empty")
            return SecretField(handle, value["field"])
        return WholeSecret(handle)
    if isinstance(value, (str, int)):
        return value
    raise ConfigError(f"{where}: expected a string, number or secret reference")


def build_credential(spec: Any, secrets: GCPSecretClient, where: str) -> Credential:
    """Either {username, password} SecretRefs, or {secret, username_field, password_field}."""
    if not isinstance(spec, dict):
        raise ConfigError(f"{where} must be a mapping")
    if "secret" in spec:
        _check_keys(spec, {"secret", "username_field", "password_field"}, where)
        return credential_from_secret(
            secrets.secret(spec["secret"]),
            username_field=spec.get("username_field", "username"),
            password_field=spec.get("password_field", "password"),
        )
    _check_keys(spec, {"username", "password"}, where)
    if "username" not in spec or "password" not in spec:
        raise ConfigError(f"{where} needs 'username' and 'password'")
    return Credential(
        username=secret_ref(spec["username"], secrets, f"{where}.username"),
        password=secret_ref(spec["password"], secrets, f"{where}.password"),
    )


def _upload_kwargs(spec: Dict[str, Any], secrets: GCPSecretClient, where: str) -> Dict[str, Any]:
    if "auth_token" not in spec:
        raise ConfigError(f"Missing '{where}.auth_token'")
    kwargs = {key: spec[key] for key in UPLOAD_KEYS if key in spec}
    kwargs["auth_token"] = secret_ref(spec["auth_token"], secrets, f"{where}.auth_token")
    return kwargs


def build_database(entry: Dict[str, Any], networks: Dict[str, Network],
                   secrets: GCPSecretClient, where: str) -> Tuple[Any, PostgresAgentConfig]:
    agent_spec = entry.get("agent")
    if not isinstance(agent_spec, dict):
        raise ConfigError(f"Missing '{where}.agent' section")
    _check_keys(agent_spec, UPLOAD_KEYS | {"fetch_passwords"}, f"{where}.agent")
    agent_config = PostgresAgentConfig(
        fetch_passwords=agent_spec.get("fetch_passwords"),
        **_upload_kwargs(agent_spec, secrets, f"{where}.agent"),
    )

    if "managed" in entry:
        _check_keys(entry, {"managed", "agent"}, where)
        managed = entry["managed"]
        _check_keys(managed, {"name", "engine", "network", "secret", "host", "port", "use_ssl"}, f"{where}.managed")
        database = ManagedDatabase(
            name=managed.get("name", where),
            engine=managed.get("engine", "postgres"),
            network=networks[managed["network"]],
            secret=secrets.secret(managed["secret"]) if managed.get("secret") else None,
            host=managed.get("host"),
            port=managed.get("port"),
            use_ssl=bool(managed.get("use_ssl", True)),
        )
        return database, agent_config

    fields = ("host", "port", "dbname", "username", "password")
    _check_keys(entry, set(fields) | {"use_ssl", "agent"}, where)
    missing = [f for f in fields if f not in entry]
    if missing:
        raise ConfigError(f"{where} is missing: {', '.join(missing)}")
    database = PostgresDatabaseInfo(
        use_ssl=bool(entry.get("use_ssl", True)),
        **{f: secret_ref(entry[f], secrets, f"{where}.{f}") for f in fields},
    )
    return database, agent_config


def build_directory(entry: Dict[str, Any], networks: Dict[str, Network],
                    secrets: GCPSecretClient, where: str) -> Tuple[Any, ActiveDirectoryAgentConfig]:
    _check_keys(entry, {"domain_name", "controllers", "network", "kind", "snapshot", "wmi"}, where)
    if not entry.get("domain_name"):
        raise ConfigError(f"Missing '{where}.domain_name'")

    controllers = []
    for i, controller in enumerate(entry.get("controllers") or []):
        if isinstance(controller, str):
            controllers.append(DomainController(address=controller))
        elif isinstance(controller, dict) and controller.get("address"):
            _check_keys(controller, {"address", "fqdn"}, f"{where}.controllers[{i}]")
            controllers.append(DomainController(address=controller["address"], fqdn=controller.get("fqdn")))
        else:
            raise ConfigError(f"{where}.controllers[{i}] must be an address or {{address, fqdn}}")

    if entry.get("network") is not None:
        directory = ManagedDirectory(
            domain_name=entry["domain_name"],
            controllers=tuple(controllers),
            network=networks[entry["network"]],
            kind=entry.get("kind", "microsoft-ad"),
        )
    elif "kind" in entry:
        raise ConfigError(f"{where}.kind only applies to a managed directory; set {where}.network as well")
    else:
        directory = ActiveDirectoryInfo(domain_name=entry["domain_name"], controllers=tuple(controllers))

    agent_config = ActiveDirectoryAgentConfig()
    snapshot = entry.get("snapshot")
    if snapshot is not None:
        _check_keys(snapshot, UPLOAD_KEYS | {"credential", "collect_adcs", "collection_method", "ldaps", "ldap_port"},
                    f"{where}.snapshot")
        agent_config.snapshot = SnapshotCollectorConfig(
            credential=build_credential(snapshot.get("credential"), secrets, f"{where}.snapshot.credential"),
            collect_adcs=snapshot.get("collect_adcs"),
            collection_method=snapshot.get("collection_method"),
            ldaps=bool(snapshot.get("ldaps", False)),
            ldap_port=snapshot.get("ldap_port", 389),
            **_upload_kwargs(snapshot, secrets, f"{where}.snapshot"),
        )
    wmi = entry.get("wmi")
    if wmi is not None:
        _check_keys(wmi, UPLOAD_KEYS | {"credential"}, f"{where}.wmi")
        agent_config.wmi = WmiCollectorConfig(
            credential=build_credential(wmi.get("credential"), secrets, f"{where}.wmi.credential"),
            **_upload_kwargs(wmi, secrets, f"{where}.wmi"),
        )
    return directory, agent_config


def build_settings(config: Dict[str, Any], project_id: str) -> AgentSettings:
    agent = config["agent"]
    _check_keys(agent, SETTINGS_KEYS | {"identity", "network"}, "agent")
    return AgentSettings(project_id=project_id, **{k: agent[k] for k in SETTINGS_KEYS if k in agent})


def identity_member(identity: str) -> str:
    """IAM member string for the agent identity; bare emails are service accounts."""
    if ":" in identity:
        return identity
    return f"serviceAccount:{identity}"


def compile_deployment(config: Dict[str, Any], secrets: GCPSecretClient) -> Tuple[CompiledConfiguration, AgentSettings]:
    """
    Compile a loaded deployment description.

    Links are applied first, then databases, then directories, each in the
    order they appear, so the same description always yields the same output.

    Raises:
        ConfigError: If an entry is malformed
        CompileError: If compilation fails (missing secret, wrong engine, ...)
    """
    networks = {name: build_network(name, spec) for name, spec in config["networks"].items()}
    settings = build_settings(config, secrets.get_project_id())

    compiler = AgentConfigCompiler(
        network=networks[config["agent"]["network"]],
        identity=identity_member(config["agent"]["identity"]),
        settings=settings,
    )

    for name in config["links"]:
        compiler.link_network(networks[name])
    for i, entry in enumerate(config["databases"]):
        database, agent_config = build_database(entry, networks, secrets, f"databases[{i}]")
        compiler.add_postgres(database, agent_config)
    for i, entry in enumerate(config["directories"]):
        directory, agent_config = build_directory(entry, networks, secrets, f"directories[{i}]")
        compiler.add_active_directory(directory, agent_config)

    compiled = compiler.finalize()
    logger.info(
        f"Compiled {len(compiled.environment)} variables, {len(compiled.fetch_commands)} fetch commands, "
        f"{len(compiled.links)} network link(s)"
    )
    return compiled, settings
