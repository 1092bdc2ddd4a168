"""
Shared fixtures for the notebook environment tests.

- base_options: a valid config.yaml document as a dict
- make_config: builds a NotebookEnvironmentConfig from base_options plus overrides
- lookup: an in-memory ResourceLookup that records every call
"""

from typing import Dict, List, Optional, Tuple

import pytest

from config import NotebookEnvironmentConfig
from plan import Network, Project, Subnet


class RecordingLookup:
    """In-memory stand-in for GCPLookup that records every lookup it serves."""

    def __init__(self):
        self.projects: Dict[str, Project] = {}
        self.networks: Dict[Tuple[str, str], Network] = {}
        self.subnets: Dict[Tuple[str, str], Subnet] = {}
        self.calls: List[Tuple[str, str]] = []

    def add_project(self, project_id: str) -> Project:
        project = Project(project_id=project_id, org_id="1234", number="42")
        self.projects[project_id] = project
        return project

    def add_network(self, name: str, project_id: str, subnet: Optional[str] = None, region: str = "us-central1"):
        network = Network(name, project_id, f"https://compute/projects/{project_id}/global/networks/{name}")
        self.networks[(name, project_id)] = network
        if subnet:
            self.subnets[(subnet, region)] = Subnet(
                subnet,
                region,
                network,
                "10.0.0.0/24",
                f"https://compute/projects/{project_id}/regions/{region}/subnetworks/{subnet}",
            )
        return network

    def find_project(self, project_id: str) -> Optional[Project]:
        self.calls.append(("project", project_id))
        return self.projects.get(project_id)

    def find_network(self, name: str, project_id: str) -> Optional[Network]:
        self.calls.append(("network", name))
        return self.networks.get((name, project_id))

    def find_subnet(self, name: str, region: str, network: Network) -> Optional[Subnet]:
        self.calls.append(("subnet", name))
        return self.subnets.get((name, region))


@pytest.fixture
def base_options() -> dict:
    return {
        "createProject": True,
        "createNetwork": True,
        "projectName": "ds-notebooks",
        "billingAccount": "000000-000000-000000",
        "folderId": "123456789012",
        "zone": "us-central1-a",
        "notebookCount": 2,
        "trustedUsers": ["alice@example.com", "group:analysts@example.com"],
    }


@pytest.fixture
def make_config(base_options):
    def _make(**overrides) -> NotebookEnvironmentConfig:
        options = dict(base_options)
        options.update(overrides)
        return NotebookEnvironmentConfig.from_dict(options)

    return _make


@pytest.fixture
def lookup() -> RecordingLookup:
    return RecordingLookup()
