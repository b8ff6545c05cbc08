"""Input validation for CLI arguments."""
import re
import sys
from pathlib import Path


def validate_project_id(project_id: str) -> None:
    """
    Validate a GCP project ID.

    Project IDs are 6-30 characters: lowercase letters, digits and hyphens,
    starting with a letter and not ending with a hyphen.

    Raises:
        SystemExit with code 2 if validation fails
    """
    pattern = r'^[a-z][a-z0-9-]{4,28}[a-z0-9]$'

    if not re.match(pattern, project_id or ""):
        print(f"Error: Invalid GCP project ID '{project_id}'", file=sys.stderr)
        print("\nProject IDs are 6-30 characters: lowercase letters, digits and hyphens,", file=sys.stderr)
        print("starting with a letter and not ending with a hyphen.", file=sys.stderr)
        print("\nExamples of valid IDs:", file=sys.stderr)
        print("  ✓ my-project", file=sys.stderr)
        print("  ✓ agent-prod-123", file=sys.stderr)
        sys.exit(2)


def validate_output_dir(path: str) -> None:
    """
    Validate the artifact output directory.

    The directory may not exist yet, but the path must not be a file.

    Raises:
        SystemExit with code 2 if validation fails
    """
    out_dir = Path(path)
    if out_dir.exists() and not out_dir.is_dir():
        print(f"Error: Output path is not a directory: {out_dir}", file=sys.stderr)
        sys.exit(2)
