"""Renders a compiled configuration into the files the agent host boots from."""
import logging
from pathlib import Path
from typing import Dict

import yaml

from ..domains.errors import ConfigurationMismatch
from ..domains.models import RUNTIME_SECRETS_FILE, AgentSettings, CompiledConfiguration

logger = logging.getLogger(__name__)

INSTALL_DIR = "/opt"
ENV_FILE = "docker.env"
FETCH_SCRIPT = "fetch_secrets.sh"
START_SCRIPT = "start-container.sh"
COMPOSE_FILE = "docker-compose.yml"
NETWORK_PLAN = "network-plan.yml"
STARTUP_SCRIPT = "startup-script.sh"

COMPOSE_PLUGIN_URL = "https://github.com/docker/compose/releases/latest/download/docker-compose-linux-$(uname -m)"


def render_env_file(compiled: CompiledConfiguration) -> str:
    """KEY=value lines in insertion order. Secret values appear only as placeholders."""
    lines = []
    for variable in compiled.environment:
        if "\n" in variable.rendered_value or "\r" in variable.rendered_value:
            raise ConfigurationMismatch(f"Value of {variable.name} spans multiple lines")
        lines.append(f"{variable.name}={variable.rendered_value}")
    return "\n".join(lines) + "\n"


def render_fetch_script(compiled: CompiledConfiguration, secrets_file: str = RUNTIME_SECRETS_FILE) -> str:
    """Boot script that empties the runtime secrets file, then runs every fetch command in order."""
    lines = [
        "#!/bin/bash",
        "set -o pipefail",
        "umask 077",
        f": > {secrets_file}",
    ]
    lines.extend(command.render(secrets_file) for command in compiled.fetch_commands)
    return "\n".join(lines) + "\n"


def render_network_plan(compiled: CompiledConfiguration) -> str:
    plan = {
        "links": [
            {"link_id": link.link_id, "source": link.source_id, "target": link.target_id}
            for link in compiled.links
        ],
        "routes": [
            {
                "route_id": route.route_id,
                "route_table": route.route_table_id,
                "destination": route.destination_cidr,
                "link_id": route.link_id,
            }
            for route in compiled.routes
        ],
    }
    return yaml.safe_dump(plan, sort_keys=False)


def render_compose_file(settings: AgentSettings) -> str:
    service = {
        "image": settings.container_image,
        "container_name": settings.container_name,
        "restart": "unless-stopped",
        "network_mode": "host",
        # secrets.env is read last so real values replace the placeholders
        "env_file": [ENV_FILE, RUNTIME_SECRETS_FILE],
    }
    if settings.log_to_cloud:
        options = {"gcp-log-cmd": "true"}
        if settings.project_id:
            options["gcp-project"] = settings.project_id
        service["logging"] = {"driver": "gcplogs", "options": options}
    return yaml.safe_dump({"services": {settings.container_name: service}}, sort_keys=False)


def render_start_script() -> str:
    """Refresh secrets, then start or update the container."""
    return (
        "#!/bin/bash\n"
        f"cd {INSTALL_DIR}\n"
        f"./{FETCH_SCRIPT} || exit $?\n"
        "docker compose up -d --pull always\n"
        "docker image prune -f\n"
    )


def write_file_command(path: str, content: str, executable: bool = False) -> str:
    """Shell command writing content to path through a quoted heredoc."""
    if not content.endswith("\n"):
        content += "\n"
    if "\nEOF\n" in f"\n{content}":
        raise ValueError(f"Content for {path} contains a line that would end the heredoc")
    command = f"cat << 'EOF' > {path}\n{content}EOF"
    if executable:
        command += f"\nchmod +x {path}"
    return command


def render_startup_script(compiled: CompiledConfiguration, settings: AgentSettings) -> str:
    """Instance startup script: installs every artifact under /opt and starts the agent."""
    commands = [
        "#!/bin/bash",
        "mkdir -p /usr/local/lib/docker/cli-plugins",
        f"curl -SL {COMPOSE_PLUGIN_URL} -o /usr/local/lib/docker/cli-plugins/docker-compose",
        "chmod +x /usr/local/lib/docker/cli-plugins/docker-compose",
        write_file_command(f"{INSTALL_DIR}/{COMPOSE_FILE}", render_compose_file(settings)),
        write_file_command(f"{INSTALL_DIR}/{ENV_FILE}", render_env_file(compiled)),
        write_file_command(f"{INSTALL_DIR}/{FETCH_SCRIPT}", render_fetch_script(compiled), executable=True),
        write_file_command(f"{INSTALL_DIR}/{START_SCRIPT}", render_start_script(), executable=True),
        f"{INSTALL_DIR}/{START_SCRIPT}",
        f'echo "{settings.update_schedule} root {INSTALL_DIR}/{START_SCRIPT}" > /etc/cron.d/container-update',
    ]
    return "\n".join(commands) + "\n"


def render_artifacts(compiled: CompiledConfiguration, settings: AgentSettings) -> Dict[str, str]:
    """All artifacts keyed by file name."""
    return {
        ENV_FILE: render_env_file(compiled),
        FETCH_SCRIPT: render_fetch_script(compiled),
        START_SCRIPT: render_start_script(),
        COMPOSE_FILE: render_compose_file(settings),
        NETWORK_PLAN: render_network_plan(compiled),
        STARTUP_SCRIPT: render_startup_script(compiled, settings),
    }


def write_artifacts(compiled: CompiledConfiguration, settings: AgentSettings, out_dir: Path) -> Dict[str, Path]:
    """
    Write all artifacts into out_dir.

    Returns:
        Mapping of file name to written path
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    written = {}
    for name, content in render_artifacts(compiled, settings).items():
        path = out_dir / name
        path.write_text(content)
        if name.endswith(".sh"):
            path.chmod(0o755)
        written[name] = path
        logger.debug(f"Wrote {path}")

    logger.info(f"Wrote {len(written)} artifacts to {out_dir}")
    return written
