"""Tests for artifact rendering."""
import os
import shutil
import subprocess

import pytest
import yaml

from agent_deploykit.compiler.domains.errors import (
    SECRET_FIELD_MISSING_EXIT,
    SECRET_VALUE_MULTILINE_EXIT,
    ConfigurationMismatch,
)
from agent_deploykit.compiler.domains.models import (
    AgentSettings,
    CompiledConfiguration,
    FetchCommand,
    ManagedDatabase,
    PostgresAgentConfig,
    ResolvedVariable,
)
from agent_deploykit.compiler.workflows.agent_compiler import AgentConfigCompiler
from agent_deploykit.compiler.workflows.artifacts import (
    COMPOSE_FILE,
    ENV_FILE,
    FETCH_SCRIPT,
    NETWORK_PLAN,
    START_SCRIPT,
    STARTUP_SCRIPT,
    render_compose_file,
    render_env_file,
    render_fetch_script,
    render_network_plan,
    render_startup_script,
    write_artifacts,
    write_file_command,
)


@pytest.fixture
def compiled(agent_net, db_net, identity, db_secret, token_secret):
    database = ManagedDatabase(name="orders", engine="postgres", network=db_net, secret=db_secret, host="db", port=5432)
    compiler = AgentConfigCompiler(agent_net, identity)
    return compiler.add_postgres(database, PostgresAgentConfig(auth_token=token_secret)).finalize()


class TestEnvFile:
    """Test suite for the environment file."""

    def test_lines_in_insertion_order(self, compiled):
        lines = render_env_file(compiled).splitlines()

        assert lines[0] == "LOG_LEVEL=INFO"
        assert lines[1] == "PSQL_1_HOST=db"
        assert [line.split("=", 1)[0] for line in lines] == [v.name for v in compiled.environment]

    def test_contains_only_placeholders_for_secrets(self, compiled):
        content = render_env_file(compiled)

        assert "PSQL_1_PASSWORD=<secret:projects/test-project/secrets/db-credentials#password>" in content
        assert "gcloud" not in content

    def test_multiline_value_rejected(self):
        compiled = CompiledConfiguration(environment=(ResolvedVariable("BAD", "a\nb"),))
        with pytest.raises(ConfigurationMismatch):
            render_env_file(compiled)


class TestFetchScript:
    """Test suite for the boot-time fetch script."""

    def test_header_truncates_secrets_file(self, compiled):
        lines = render_fetch_script(compiled).splitlines()

        assert lines[:4] == ["#!/bin/bash", "set -o pipefail", "umask 077", ": > /run/secrets.env"]

    def test_one_fetch_per_command(self, compiled):
        script = render_fetch_script(compiled)

        assert script.count("gcloud secrets versions access") == len(compiled.fetch_commands)
        for command in compiled.fetch_commands:
            assert command.render() in script

    def test_commands_keep_order(self):
        compiled = CompiledConfiguration(fetch_commands=(FetchCommand("B", "s", "p"), FetchCommand("A", "s", "p")))

        script = render_fetch_script(compiled)

        assert script.index("' B \"$value\"") < script.index("' A \"$value\"")


FAKE_GCLOUD = """#!/bin/bash
for arg in "$@"; do
  case "$arg" in --secret=*) id="${arg#--secret=}" ;; esac
done
[ -f "$FAKE_SECRETS_DIR/$id" ] || exit 1
cat "$FAKE_SECRETS_DIR/$id"
"""

# Reads key=value lines instead of JSON; $4 is the field passed with --arg f
FAKE_JQ = """#!/bin/bash
while IFS='=' read -r key val; do
  if [ "$key" = "$4" ]; then printf '%s\\n' "$val"; exit 0; fi
done
exit 1
"""


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")
class TestFetchScriptExecution:
    """Test suite running the fetch script against fake gcloud and jq commands."""

    @pytest.fixture
    def secrets_dir(self, tmp_path):
        secrets_dir = tmp_path / "store"
        secrets_dir.mkdir()
        (secrets_dir / "db-credentials").write_text("dbname=orders\nusername=reader\npassword=s3cret\n")
        (secrets_dir / "upload-token").write_text("tok-123\n")
        return secrets_dir

    @pytest.fixture
    def run_script(self, tmp_path, secrets_dir, compiled):
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        for name, content in (("gcloud", FAKE_GCLOUD), ("jq", FAKE_JQ)):
            (bin_dir / name).write_text(content)
            (bin_dir / name).chmod(0o755)

        secrets_file = tmp_path / "secrets.env"
        script = tmp_path / "fetch_secrets.sh"
        script.write_text(render_fetch_script(compiled, secrets_file=str(secrets_file)))
        env = dict(os.environ, PATH=f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}",
                   FAKE_SECRETS_DIR=str(secrets_dir))

        def run():
            return subprocess.run(["bash", str(script)], env=env, capture_output=True, text=True)

        return run, secrets_file

    def test_writes_one_line_per_variable(self, run_script):
        run, secrets_file = run_script

        result = run()

        assert result.returncode == 0, result.stderr
        assert secrets_file.read_text().splitlines() == [
            "PSQL_1_DBNAME=orders",
            "PSQL_1_USERNAME=reader",
            "PSQL_1_PASSWORD=s3cret",
            "PSQL_1_SLASHID_AUTH_TOKEN=tok-123",
        ]

    def test_rerun_does_not_accumulate(self, run_script):
        run, secrets_file = run_script

        run()
        first = secrets_file.read_text()
        result = run()

        assert result.returncode == 0, result.stderr
        assert secrets_file.read_text() == first

    def test_missing_field_exit_status(self, run_script, secrets_dir):
        run, secrets_file = run_script
        (secrets_dir / "db-credentials").write_text("dbname=orders\nusername=reader\n")

        result = run()

        assert result.returncode == SECRET_FIELD_MISSING_EXIT
        assert "PSQL_1_PASSWORD" in result.stderr
        assert "PSQL_1_PASSWORD" not in secrets_file.read_text()

    def test_multiline_value_cannot_add_variables(self, run_script, secrets_dir):
        run, secrets_file = run_script
        (secrets_dir / "upload-token").write_text("line1\nEVIL=injected\n")

        result = run()

        assert result.returncode == SECRET_VALUE_MULTILINE_EXIT
        assert "PSQL_1_SLASHID_AUTH_TOKEN" in result.stderr
        content = secrets_file.read_text()
        assert "EVIL" not in content
        assert "PSQL_1_SLASHID_AUTH_TOKEN" not in content


class TestNetworkPlan:
    """Test suite for the network plan."""

    def test_links_and_routes(self, compiled):
        plan = yaml.safe_load(render_network_plan(compiled))

        assert plan["links"] == [{"link_id": "PSQL_1", "source": "agent-net", "target": "db-net"}]
        assert plan["routes"][0] == {
            "route_id": "PSQL_1-route-public-0",
            "route_table": "rt-public-a",
            "destination": "10.1.0.0/16",
            "link_id": "PSQL_1",
        }
        assert len(plan["routes"]) == 3

    def test_empty_plan(self):
        assert yaml.safe_load(render_network_plan(CompiledConfiguration())) == {"links": [], "routes": []}


class TestCompose:
    """Test suite for the compose file."""

    def test_runtime_secrets_read_last(self):
        compose = yaml.safe_load(render_compose_file(AgentSettings()))

        service = compose["services"]["slashid-agent"]
        assert service["image"] == "slashid/agent"
        assert service["env_file"] == ["docker.env", "/run/secrets.env"]
        assert "logging" not in service

    def test_cloud_logging(self):
        compose = yaml.safe_load(render_compose_file(AgentSettings(log_to_cloud=True, project_id="my-project")))

        logging_config = compose["services"]["slashid-agent"]["logging"]
        assert logging_config["driver"] == "gcplogs"
        assert logging_config["options"]["gcp-project"] == "my-project"


class TestStartupScript:
    """Test suite for the instance startup script."""

    def test_installs_every_artifact(self, compiled):
        script = render_startup_script(compiled, AgentSettings())

        assert "cat << 'EOF' > /opt/docker.env" in script
        assert "cat << 'EOF' > /opt/fetch_secrets.sh" in script
        assert "chmod +x /opt/fetch_secrets.sh" in script
        assert "cat << 'EOF' > /opt/docker-compose.yml" in script
        assert render_env_file(compiled) in script

    def test_cron_schedule(self, compiled):
        script = render_startup_script(compiled, AgentSettings(update_schedule="*/30 * * * *"))

        assert script.rstrip().endswith(
            'echo "*/30 * * * * root /opt/start-container.sh" > /etc/cron.d/container-update'
        )

    def test_heredoc_terminator_in_content_rejected(self):
        with pytest.raises(ValueError):
            write_file_command("/opt/x", "line\nEOF\nmore")

    def test_trailing_newline_added(self):
        assert write_file_command("/opt/x", "a") == "cat << 'EOF' > /opt/x\na\nEOF"


class TestWriteArtifacts:
    """Test suite for writing artifacts to disk."""

    def test_writes_all_files(self, compiled, tmp_path):
        out_dir = tmp_path / "build"

        written = write_artifacts(compiled, AgentSettings(), out_dir)

        assert set(written) == {ENV_FILE, FETCH_SCRIPT, START_SCRIPT, COMPOSE_FILE, NETWORK_PLAN, STARTUP_SCRIPT}
        assert (out_dir / ENV_FILE).read_text() == render_env_file(compiled)
        assert os.access(out_dir / FETCH_SCRIPT, os.X_OK)
        assert not os.access(out_dir / ENV_FILE, os.X_OK)
