"""Deployment description loader for agent-deploykit."""
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "AGENT_DEPLOYKIT_CONFIG"


class ConfigError(Exception):
    """Deployment description error exception."""
    pass


def default_config_path() -> Path:
    # Resolved on each call so a changed HOME is honoured
    return Path.home() / ".config" / "agent-deploykit" / "deployment.yml"


def _get_config_path(explicit: Optional[str] = None) -> str:
    """
    Get the deployment description path.

    Priority order:
    1. Path given on the command line
    2. AGENT_DEPLOYKIT_CONFIG environment variable
    3. Default location: ~/.config/agent-deploykit/deployment.yml

    Returns:
        Absolute path to the deployment description

    Raises:
        FileNotFoundError: If no description exists in any location
    """
    # 1. Explicit path never falls back
    if explicit:
        config_path = Path(explicit).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Deployment description not found: {config_path}")
        return str(config_path.resolve())

    # 2. Environment variable
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        config_path = Path(env_path).expanduser()
        if config_path.exists():
            logger.info(f"Using deployment description from {CONFIG_ENV_VAR}: {config_path}")
            return str(config_path)
        else:
            logger.warning(f"{CONFIG_ENV_VAR} points to a missing file: {config_path}")

    # 3. Default location
    default_config = default_config_path()
    if default_config.exists():
        logger.info(f"Using default deployment description: {default_config}")
        return str(default_config)

    raise FileNotFoundError(
        "Deployment description not found. Provide one using one of these methods:\n\n"
        "1. Pass it on the command line:\n"
        "   agent-deploykit compile /path/to/deployment.yml\n\n"
        "2. Point the environment at it:\n"
        f"   export {CONFIG_ENV_VAR}=/path/to/deployment.yml\n\n"
        "3. Use the default location:\n"
        f"   mkdir -p {default_config.parent}\n"
        f"   cp /path/to/deployment.yml {default_config}\n"
    )


def _require_mapping(value: Any, where: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"'{where}' must be a mapping")
    return value


def _require_list(value: Any, where: str) -> list:
    if not isinstance(value, list):
        raise ConfigError(f"'{where}' must be a list")
    return value


def load_config(path: Optional[str] = None, project_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and validate a deployment description from YAML.

    Only the overall shape is checked here: sections present, networks
    defined before they are referenced. Individual connections are checked
    when they are compiled.

    Args:
        path: Explicit description path (see _get_config_path)
        project_id: Overrides gcp.project_id (e.g. from --project-id)

    Returns:
        Dict containing the description with keys:
        - gcp: dict with project_id
        - agent: dict with identity, network and container settings
        - networks: dict of network name -> cidr/subnets
        - links, databases, directories: lists (possibly empty)

    Raises:
        ConfigError: If the description is invalid
        FileNotFoundError: If no description can be found
    """
    config_path = _get_config_path(path)

    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML deployment description at {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read deployment description at {config_path}: {e}")

    if not config:
        raise ConfigError(f"Deployment description at {config_path} is empty")
    _require_mapping(config, "<root>")

    gcp = _require_mapping(config.get('gcp') or {}, "gcp")
    config['gcp'] = gcp
    if project_id:
        gcp['project_id'] = project_id
    if not gcp.get('project_id') and not os.getenv("GCP_PROJECT"):
        raise ConfigError(
            f"Missing 'gcp.project_id' in {config_path}\n"
            f"Required format:\n"
            f"gcp:\n"
            f"  project_id: your-project-id\n"
            f"(or pass --project-id, or set the GCP_PROJECT environment variable)"
        )

    if 'agent' not in config:
        raise ConfigError(
            f"Missing 'agent' section in {config_path}\n"
            f"Required format:\n"
            f"agent:\n"
            f"  identity: serviceAccount:agent@your-project-id.iam.gserviceaccount.com\n"
            f"  network: agent-net"
        )
    agent = _require_mapping(config['agent'], "agent")
    for key in ('identity', 'network'):
        if not agent.get(key):
            raise ConfigError(f"Missing 'agent.{key}' in deployment description")

    networks = _require_mapping(config.get('networks') or {}, "networks")
    for name, spec in networks.items():
        spec = _require_mapping(spec, f"networks.{name}")
        if not spec.get('cidr'):
            raise ConfigError(f"Missing 'networks.{name}.cidr' in deployment description")
    config['networks'] = networks

    referenced = [("agent.network", agent['network'])]
    for section in ('links', 'databases', 'directories'):
        config[section] = _require_list(config.get(section) or [], section)

    for i, name in enumerate(config['links']):
        referenced.append((f"links[{i}]", name))
    for i, entry in enumerate(config['databases']):
        entry = _require_mapping(entry, f"databases[{i}]")
        managed = entry.get('managed')
        if managed is not None:
            referenced.append((f"databases[{i}].managed.network", _require_mapping(managed, f"databases[{i}].managed").get('network')))
    for i, entry in enumerate(config['directories']):
        entry = _require_mapping(entry, f"directories[{i}]")
        if entry.get('network') is not None:
            referenced.append((f"directories[{i}].network", entry['network']))

    for where, name in referenced:
        if not isinstance(name, str):
            raise ConfigError(f"'{where}' must be a network name, got {type(name).__name__}")
        if name not in networks:
            raise ConfigError(f"'{where}' refers to undefined network '{name}'")

    logger.info(f"Deployment description loaded successfully from {config_path}")
    logger.debug(
        f"{len(config['databases'])} database(s), {len(config['directories'])} directory(ies), "
        f"{len(networks)} network(s)"
    )

    return config
