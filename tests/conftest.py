"""Shared fixtures: in-memory secret handles and networks."""
from dataclasses import dataclass, field
from typing import List

import pytest

from agent_deploykit.compiler.domains.errors import ResourceUnavailable
from agent_deploykit.compiler.domains.models import Network, Subnet


@dataclass(frozen=True)
class FakeSecret:
    """Secret handle that records grants instead of calling GCP."""
    secret_id: str
    project_id: str = "test-project"
    missing: bool = False
    grants: List[str] = field(default_factory=list, compare=False, hash=False)

    @property
    def name(self) -> str:
        return f"projects/{self.project_id}/secrets/{self.secret_id}"

    def grant_read(self, identity: str) -> None:
        if self.missing:
            raise ResourceUnavailable(f"Secret not found: {self.name}")
        self.grants.append(identity)


class FakeSecretClient:
    """Stands in for GCPSecretClient when compiling deployment descriptions."""

    def __init__(self, project_id="test-project", missing=()):
        self.project_id = project_id
        self.missing = set(missing)
        self.handles = {}

    def get_project_id(self):
        return self.project_id

    def secret(self, secret_id, project_id=None):
        if secret_id not in self.handles:
            self.handles[secret_id] = FakeSecret(
                secret_id, project_id or self.project_id, missing=secret_id in self.missing
            )
        return self.handles[secret_id]


@pytest.fixture
def identity():
    return "serviceAccount:agent@test-project.iam.gserviceaccount.com"


@pytest.fixture
def agent_net():
    return Network(
        id="agent-net",
        cidr="10.0.0.0/16",
        subnets=(
            Subnet(id="agent-public-a", route_table_id="rt-public-a", public=True),
            Subnet(id="agent-private-a", route_table_id="rt-private-a"),
            Subnet(id="agent-private-b", route_table_id="rt-private-b"),
        ),
    )


@pytest.fixture
def db_net():
    return Network(id="db-net", cidr="10.1.0.0/16")


@pytest.fixture
def ad_net():
    return Network(id="ad-net", cidr="10.2.0.0/16")


@pytest.fixture
def db_secret():
    return FakeSecret("db-credentials")


@pytest.fixture
def token_secret():
    return FakeSecret("upload-token")


@pytest.fixture
def fake_secrets():
    return FakeSecretClient()
