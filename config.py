"""
This module defines the configuration for the notebook environment and loads it
from YAML. Options use the camelCase names found in config.yaml and are exposed
as snake_case attributes on NotebookEnvironmentConfig.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml

PROJECT_ID_MAX_LENGTH = 30
SUFFIX_LENGTH = 5  # "-" plus four hex characters

BOOT_DISK_TYPES = ("PD_STANDARD", "PD_SSD", "PD_BALANCED", "PD_EXTREME")
PRINCIPAL_PREFIXES = ("user:", "group:", "serviceAccount:", "domain:")

DEFAULT_SERVICE_ACCOUNT_ROLES = (
    "roles/logging.logWriter",
    "roles/monitoring.metricWriter",
    "roles/storage.objectViewer",
)

_PROJECT_ID = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")
_ZONE = re.compile(r"^[a-z]+-[a-z]+[0-9]+-[a-z]$")

# YAML option -> dataclass attribute
OPTIONS = {
    "createProject": "create_project",
    "createNetwork": "create_network",
    "projectName": "project_name",
    "networkName": "network_name",
    "subnetName": "subnet_name",
    "zone": "zone",
    "machineType": "machine_type",
    "notebookCount": "notebook_count",
    "bootDiskType": "boot_disk_type",
    "bootDiskSizeGb": "boot_disk_size_gb",
    "trustedUsers": "trusted_users",
    "enableServices": "enable_services",
    "ipCidrRange": "ip_cidr_range",
    "imageProject": "image_project",
    "imageFamily": "image_family",
    "folderId": "folder_id",
    "billingAccount": "billing_account",
    "organizationId": "organization_id",
    "bucketLocation": "bucket_location",
    "startupScript": "startup_script",
    "serviceAccountRoles": "service_account_roles",
    "labels": "labels",
}

_BOOL_OPTIONS = ("createProject", "createNetwork", "enableServices")
_INT_OPTIONS = ("notebookCount", "bootDiskSizeGb")
_STR_OPTIONS = (
    "zone",
    "ipCidrRange",
    "machineType",
    "networkName",
    "subnetName",
    "bootDiskType",
    "imageProject",
    "imageFamily",
    "bucketLocation",
    "startupScript",
)


class ConfigurationError(ValueError):
    """Raised when config.yaml cannot describe a valid environment."""


def normalize_principal(member: str) -> str:
    member = member.strip()
    if member.startswith(PRINCIPAL_PREFIXES):
        return member
    if ":" in member:
        raise ConfigurationError(f"Unsupported principal type in trusted user '{member}'")
    if member.endswith(".iam.gserviceaccount.com"):
        return f"serviceAccount:{member}"
    if "@" in member:
        return f"user:{member}"
    raise ConfigurationError(f"Trusted user '{member}' is not an e-mail address or principal")


@dataclass
class NotebookEnvironmentConfig:
    project_name: str
    create_project: bool = True
    create_network: bool = True
    network_name: str = "notebook-network"
    subnet_name: str = "notebook-subnet"
    zone: str = "us-central1-a"
    machine_type: str = "n1-standard-4"
    notebook_count: int = 1
    boot_disk_type: str = "PD_SSD"
    boot_disk_size_gb: int = 150
    trusted_users: FrozenSet[str] = frozenset()
    enable_services: bool = True
    ip_cidr_range: str = "10.142.190.0/24"
    image_project: str = "cloud-notebooks-managed"
    image_family: str = "workbench-instances"
    folder_id: Optional[str] = None
    billing_account: Optional[str] = None
    organization_id: Optional[str] = None
    bucket_location: str = "US"
    startup_script: Optional[str] = None
    service_account_roles: Tuple[str, ...] = DEFAULT_SERVICE_ACCOUNT_ROLES
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def region(self) -> str:
        return self.zone.rsplit("-", 1)[0]

    @classmethod
    def from_dict(cls, data: Any) -> "NotebookEnvironmentConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping of options")

        unknown = sorted(set(data) - set(OPTIONS))
        if unknown:
            raise ConfigurationError(f"Unknown configuration option(s): {', '.join(unknown)}")
        if not data.get("projectName"):
            raise ConfigurationError("Missing required configuration key: projectName")

        for key in _BOOL_OPTIONS:
            if key in data and not isinstance(data[key], bool):
                raise ConfigurationError(f"'{key}' must be true or false, got {data[key]!r}")
        for key in _INT_OPTIONS:
            # bool is an int subclass
            if key in data and (isinstance(data[key], bool) or not isinstance(data[key], int)):
                raise ConfigurationError(f"'{key}' must be an integer, got {data[key]!r}")
        for key in _STR_OPTIONS:
            if data.get(key) is not None and not isinstance(data[key], str):
                raise ConfigurationError(f"'{key}' must be a string, got {data[key]!r}")

        for key in ("trustedUsers", "serviceAccountRoles"):
            if data.get(key) is not None and not isinstance(data[key], list):
                raise ConfigurationError(f"'{key}' must be a list")
        if data.get("labels") is not None and not isinstance(data["labels"], dict):
            raise ConfigurationError("'labels' must be a mapping")

        kwargs = {OPTIONS[key]: value for key, value in data.items() if value is not None}
        if "trusted_users" in kwargs:
            kwargs["trusted_users"] = frozenset(normalize_principal(str(m)) for m in kwargs["trusted_users"])
        if "service_account_roles" in kwargs:
            kwargs["service_account_roles"] = tuple(kwargs["service_account_roles"])
        if "labels" in kwargs:
            kwargs["labels"] = {str(k): str(v) for k, v in kwargs["labels"].items()}
        for key in ("folder_id", "billing_account", "organization_id", "project_name"):
            if key in kwargs:
                kwargs[key] = str(kwargs[key])

        config = cls(**kwargs)
        config.validate()
        return config

    def validate(self) -> None:
        if not _PROJECT_ID.match(self.project_name):
            raise ConfigurationError(
                f"projectName '{self.project_name}' must be 6-30 lowercase letters, digits or hyphens"
            )
        if self.create_project:
            if len(self.project_name) > PROJECT_ID_MAX_LENGTH - SUFFIX_LENGTH:
                raise ConfigurationError(
                    f"projectName '{self.project_name}' leaves no room for the name suffix; "
                    f"use at most {PROJECT_ID_MAX_LENGTH - SUFFIX_LENGTH} characters"
                )
            if not self.billing_account:
                raise ConfigurationError("billingAccount is required when createProject is true")
            if self.folder_id and self.organization_id:
                raise ConfigurationError("Set either folderId or organizationId, not both")
            if not self.create_network:
                raise ConfigurationError("createNetwork must be true when createProject is true")

        if self.notebook_count < 1:
            raise ConfigurationError("notebookCount must be at least 1")
        if self.boot_disk_size_gb < 1:
            raise ConfigurationError("bootDiskSizeGb must be positive")
        if self.boot_disk_type not in BOOT_DISK_TYPES:
            raise ConfigurationError(
                f"bootDiskType '{self.boot_disk_type}' must be one of {', '.join(BOOT_DISK_TYPES)}"
            )
        if not _ZONE.match(self.zone):
            raise ConfigurationError(f"zone '{self.zone}' is not a Compute Engine zone")
        try:
            ipaddress.IPv4Network(self.ip_cidr_range)
        except ValueError as e:
            raise ConfigurationError(f"ipCidrRange '{self.ip_cidr_range}' is invalid: {e}") from e


def load_config(file_path: str) -> NotebookEnvironmentConfig:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file)

    return NotebookEnvironmentConfig.from_dict(config_data)
