"""Tests for loading and validating config.yaml."""

import pytest

from config import (
    DEFAULT_SERVICE_ACCOUNT_ROLES,
    ConfigurationError,
    NotebookEnvironmentConfig,
    load_config,
    normalize_principal,
)


def test_load_config_reads_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "createProject: false\n"
        "createNetwork: false\n"
        "projectName: existing-project\n"
        "zone: europe-west4-b\n"
        "notebookCount: 3\n"
        "bootDiskSizeGb: 200\n"
        "trustedUsers:\n"
        "  - bob@example.com\n"
        "labels:\n"
        "  cost-center: 1234\n"
    )

    config = load_config(str(path))

    assert config.create_project is False
    assert config.create_network is False
    assert config.project_name == "existing-project"
    assert config.region == "europe-west4"
    assert config.notebook_count == 3
    assert config.boot_disk_size_gb == 200
    assert config.trusted_users == frozenset({"user:bob@example.com"})
    assert config.labels == {"cost-center": "1234"}


def test_defaults_apply_to_omitted_options(make_config):
    config = make_config()

    assert config.network_name == "notebook-network"
    assert config.subnet_name == "notebook-subnet"
    assert config.machine_type == "n1-standard-4"
    assert config.boot_disk_type == "PD_SSD"
    assert config.ip_cidr_range == "10.142.190.0/24"
    assert config.enable_services is True
    assert config.service_account_roles == DEFAULT_SERVICE_ACCOUNT_ROLES
    assert config.startup_script is None


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError, match="mapping"):
        load_config(str(path))


def test_unknown_option_is_rejected(make_config):
    with pytest.raises(ConfigurationError, match="Unknown configuration option"):
        make_config(createBucket=True)


def test_project_name_is_required(base_options):
    del base_options["projectName"]

    with pytest.raises(ConfigurationError, match="projectName"):
        NotebookEnvironmentConfig.from_dict(base_options)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"createProject": "yes"}, "true or false"),
        ({"notebookCount": "2"}, "integer"),
        ({"notebookCount": True}, "integer"),
        ({"notebookCount": 0}, "at least 1"),
        ({"bootDiskSizeGb": 0}, "positive"),
        ({"bootDiskType": "pd-ssd"}, "bootDiskType"),
        ({"zone": "us-central1"}, "zone"),
        ({"ipCidrRange": "10.0.0.0/33"}, "ipCidrRange"),
        ({"projectName": "Bad_Name"}, "projectName"),
        ({"trustedUsers": "alice@example.com"}, "list"),
        ({"labels": ["team"]}, "mapping"),
        ({"zone": 5}, "'zone' must be a string"),
        ({"ipCidrRange": 10}, "'ipCidrRange' must be a string"),
        ({"machineType": 4}, "'machineType' must be a string"),
        ({"networkName": ["vpc"]}, "'networkName' must be a string"),
        ({"subnetName": 1}, "'subnetName' must be a string"),
        ({"bootDiskType": 2}, "'bootDiskType' must be a string"),
        ({"imageProject": 3}, "'imageProject' must be a string"),
        ({"imageFamily": False}, "'imageFamily' must be a string"),
        ({"bucketLocation": {"region": "US"}}, "'bucketLocation' must be a string"),
        ({"startupScript": 7}, "'startupScript' must be a string"),
    ],
)
def test_invalid_values_are_rejected(make_config, overrides, message):
    with pytest.raises(ConfigurationError, match=message):
        make_config(**overrides)


def test_new_project_requires_billing_account(base_options):
    del base_options["billingAccount"]

    with pytest.raises(ConfigurationError, match="billingAccount"):
        NotebookEnvironmentConfig.from_dict(base_options)


def test_new_project_rejects_folder_and_organization(make_config):
    with pytest.raises(ConfigurationError, match="folderId or organizationId"):
        make_config(organizationId="987654321")


def test_new_project_cannot_reuse_network(make_config):
    with pytest.raises(ConfigurationError, match="createNetwork"):
        make_config(createNetwork=False)


def test_new_project_name_leaves_room_for_suffix(make_config):
    name = "a" * 26

    with pytest.raises(ConfigurationError, match="suffix"):
        make_config(projectName=name)

    config = make_config(projectName=name, createProject=False, billingAccount=None)
    assert config.project_name == name


def test_reused_project_does_not_need_billing(base_options):
    del base_options["billingAccount"]
    base_options["createProject"] = False

    config = NotebookEnvironmentConfig.from_dict(base_options)

    assert config.billing_account is None


def test_trusted_users_are_normalized(make_config):
    config = make_config(
        trustedUsers=[
            "alice@example.com",
            "runner@ci-project.iam.gserviceaccount.com",
            "group:analysts@example.com",
            "domain:example.com",
        ]
    )

    assert config.trusted_users == frozenset(
        {
            "user:alice@example.com",
            "serviceAccount:runner@ci-project.iam.gserviceaccount.com",
            "group:analysts@example.com",
            "domain:example.com",
        }
    )


@pytest.mark.parametrize("member", ["robot:alice@example.com", "alice"])
def test_unknown_principals_are_rejected(member):
    with pytest.raises(ConfigurationError):
        normalize_principal(member)
