"""GCP Secret Manager locator for secrets the agent reads at boot."""
import os
import re
import logging
from dataclasses import dataclass, field
from typing import Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import secretmanager

from .errors import ResourceUnavailable

logger = logging.getLogger(__name__)

SECRET_ACCESSOR_ROLE = "roles/secretmanager.secretAccessor"

# GCP secret ids: alphanumeric, underscores, hyphens only
SECRET_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass(frozen=True)
class GCPSecretHandle:
    """A Secret Manager secret, identified by project and secret id."""
    secret_id: str
    project_id: str
    store: "GCPSecretClient" = field(compare=False, repr=False)

    @property
    def name(self) -> str:
        return f"projects/{self.project_id}/secrets/{self.secret_id}"

    def grant_read(self, identity: str) -> None:
        """
        Bind the secret accessor role for identity on this secret.

        Granting an identity that already holds the role is a no-op.

        Raises:
            ResourceUnavailable: If the secret doesn't exist or its policy can't be read
        """
        self.store.grant_accessor(self.name, identity)


class GCPSecretClient:
    """Wrapper around the Secret Manager client for locating secrets and granting access."""

    def __init__(self, project_id: Optional[str] = None, dry_run: bool = False):
        self._client = None
        self._project_id = project_id
        self.dry_run = dry_run

    @property
    def client(self) -> secretmanager.SecretManagerServiceClient:
        """Lazy-initialize client."""
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def get_project_id(self) -> Optional[str]:
        """
        Get GCP project ID.

        Priority order:
        1. GCP_PROJECT environment variable (allows override)
        2. Project ID given at construction (from the deployment description)

        Returns:
            Project ID string, or None if not found
        """
        gcp_project_env = os.getenv("GCP_PROJECT")
        if gcp_project_env:
            logger.debug(f"Using GCP_PROJECT from environment: {gcp_project_env}")
            return gcp_project_env
        return self._project_id

    def secret(self, secret_id: str, project_id: Optional[str] = None) -> GCPSecretHandle:
        """
        Locate a secret by id.

        Raises:
            ResourceUnavailable: If the id is malformed or no project is known
        """
        if not secret_id or not SECRET_ID_PATTERN.match(secret_id):
            raise ResourceUnavailable(
                f"Invalid secret id '{secret_id}': only letters, numbers, underscores (_) and hyphens (-) are allowed"
            )
        project_id = project_id or self.get_project_id()
        if not project_id:
            raise ResourceUnavailable(
                f"No GCP project for secret '{secret_id}'. "
                "Set GCP_PROJECT or gcp.project_id in the deployment description."
            )
        return GCPSecretHandle(secret_id=secret_id, project_id=project_id, store=self)

    def grant_accessor(self, resource: str, identity: str) -> None:
        if self.dry_run:
            logger.info(f"[dry-run] Would grant {SECRET_ACCESSOR_ROLE} on {resource} to {identity}")
            return

        try:
            policy = self.client.get_iam_policy(request={"resource": resource})
            binding = next((b for b in policy.bindings if b.role == SECRET_ACCESSOR_ROLE), None)
            if binding is None:
                policy.bindings.add(role=SECRET_ACCESSOR_ROLE, members=[identity])
            elif identity in binding.members:
                logger.debug(f"{identity} already has {SECRET_ACCESSOR_ROLE} on {resource}")
                return
            else:
                binding.members.append(identity)
            self.client.set_iam_policy(request={"resource": resource, "policy": policy})
        except gcp_exceptions.NotFound as e:
            raise ResourceUnavailable(f"Secret not found: {resource}") from e
        except gcp_exceptions.PermissionDenied as e:
            raise ResourceUnavailable(f"Permission denied managing access to {resource}: {e}") from e

        logger.info(f"Granted {SECRET_ACCESSOR_ROLE} on {resource} to {identity}")
