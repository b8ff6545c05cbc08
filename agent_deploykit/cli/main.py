"""CLI entrypoint for agent-deploykit."""
import sys
import argparse
import logging
from pathlib import Path

from .validators import validate_output_dir, validate_project_id

VERSION = "0.1.0"

# Configure logging to stderr
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    stream=sys.stderr
)
logger = logging.getLogger(__name__)


def _set_verbosity(args):
    level = {0: logging.WARNING, 1: logging.INFO}.get(getattr(args, "verbose", 0), logging.DEBUG)
    logging.getLogger().setLevel(level)


def _compile(args):
    """Load the deployment description and compile it."""
    from agent_deploykit.compiler.domains.config_loader import load_config
    from agent_deploykit.compiler.domains.gcp_client import GCPSecretClient
    from agent_deploykit.compiler.workflows.deployment import compile_deployment

    config = load_config(args.config, project_id=getattr(args, "project_id", None))
    secrets = GCPSecretClient(project_id=config["gcp"].get("project_id"), dry_run=getattr(args, "dry_run", True))
    return compile_deployment(config, secrets)


def cmd_version(args):
    """Show version information."""
    print(f"agent-deploykit {VERSION}")


def cmd_validate(args):
    """Check a deployment description without touching GCP."""
    args.dry_run = True
    compiled, _settings = _compile(args)

    print(f"Variables: {len(compiled.environment)}")
    print(f"Fetch commands: {len(compiled.fetch_commands)}")
    print(f"Network links: {len(compiled.links)}")
    for link in compiled.links:
        print(f"  {link.source_id} -> {link.target_id} ({link.link_id})")
    print("Success: deployment description is valid")


def cmd_compile(args):
    """Compile and write all artifacts."""
    from agent_deploykit.compiler.workflows.artifacts import write_artifacts

    validate_output_dir(args.out_dir)
    compiled, settings = _compile(args)
    written = write_artifacts(compiled, settings, Path(args.out_dir))

    for path in written.values():
        print(path)


def cmd_env(args):
    """Print the environment file."""
    from agent_deploykit.compiler.workflows.artifacts import render_env_file

    args.dry_run = True
    compiled, _settings = _compile(args)
    sys.stdout.write(render_env_file(compiled))


def cmd_plan(args):
    """Print the network plan."""
    from agent_deploykit.compiler.workflows.artifacts import render_network_plan

    args.dry_run = True
    compiled, _settings = _compile(args)
    sys.stdout.write(render_network_plan(compiled))


def _add_common_arguments(parser):
    parser.add_argument(
        "config",
        nargs="?",
        help="Path to the deployment description (default: $AGENT_DEPLOYKIT_CONFIG, "
             "then ~/.config/agent-deploykit/deployment.yml)"
    )
    parser.add_argument(
        "--project-id",
        help="GCP project ID for secrets (overrides gcp.project_id; GCP_PROJECT env var overrides both)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Log progress to stderr (-vv for debug output)"
    )


def main():
    """Main CLI entrypoint.

    Exit codes:
        0 - Success
        1 - Runtime errors (invalid description, missing secret, wrong engine, etc.)
        2 - Usage errors (invalid arguments, invalid project ID, etc.)
    """
    parser = argparse.ArgumentParser(
        prog="agent-deploykit",
        description="Compile an identity-collection agent deployment into env file, secret fetch script and network plan",
        epilog="""
Exit codes:
  0 - Success
  1 - Runtime error (invalid description, missing secret, wrong engine, etc.)
  2 - Usage error (invalid arguments, invalid project ID, etc.)

Environment variables:
  AGENT_DEPLOYKIT_CONFIG - Deployment description path
  GCP_PROJECT - GCP project ID (overrides the description)

Secret values never appear in generated files: they are written as
<secret:...> placeholders and fetched into /run/secrets.env at boot.
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # version command
    _version_parser = subparsers.add_parser(
        "version",
        help="Show version information",
        description="Display the current version of agent-deploykit"
    )

    # validate command
    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate a deployment description",
        description="""
Load and compile a deployment description without granting secret access.

Reports the number of variables, deferred secret fetches and network links.
        """
    )
    _add_common_arguments(validate_parser)

    # compile command
    compile_parser = subparsers.add_parser(
        "compile",
        help="Compile a deployment description into artifacts",
        description="""
Compile a deployment description and write:

  docker.env          - environment file (secrets as placeholders)
  fetch_secrets.sh    - boot script fetching secret values into /run/secrets.env
  start-container.sh  - refreshes secrets and (re)starts the agent container
  docker-compose.yml  - agent container definition
  network-plan.yml    - network links and routes to create
  startup-script.sh   - instance startup script installing all of the above

Grants the agent identity read access to every referenced secret unless
--dry-run is given.
        """
    )
    _add_common_arguments(compile_parser)
    compile_parser.add_argument(
        "-o", "--out-dir",
        default="build",
        help="Directory to write artifacts into (default: ./build)"
    )
    compile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Don't change IAM policies on secrets; only log the grants that would be made"
    )

    # env command
    env_parser = subparsers.add_parser(
        "env",
        help="Print the environment file",
        description="Compile without granting access and print the resulting environment file"
    )
    _add_common_arguments(env_parser)

    # plan command
    plan_parser = subparsers.add_parser(
        "plan",
        help="Print the network plan",
        description="Compile without granting access and print the network links and routes"
    )
    _add_common_arguments(plan_parser)

    args = parser.parse_args()

    # If no command provided, show help and exit with usage error code
    if not args.command:
        parser.print_help()
        sys.exit(2)

    if getattr(args, "project_id", None):
        validate_project_id(args.project_id)
    _set_verbosity(args)

    handlers = {
        "version": cmd_version,
        "validate": cmd_validate,
        "compile": cmd_compile,
        "env": cmd_env,
        "plan": cmd_plan,
    }

    # Route to command handlers
    try:
        handlers[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
