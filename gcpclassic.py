import hashlib
import re
from typing import Any, Dict, List, Optional

import pulumi
import pulumi_gcp as gcp
import pulumi_time as time

from config import NotebookEnvironmentConfig
from plan import Existing, Network, Plan, PlanStep, Project, Subnet

# Consolidated list of common GCP region abbreviations
GCP_REGION_ABBREVIATIONS = {
    "asia-east1": "ase1",
    "asia-east2": "ase2",
    "asia-northeast1": "an1",
    "asia-northeast2": "an2",
    "asia-northeast3": "an3",
    "asia-south1": "as1",
    "asia-southeast1": "ase1",
    "asia-southeast2": "ase2",
    "australia-southeast1": "aus1",
    "australia-southeast2": "aus2",
    "europe-central2": "ec2",
    "europe-north1": "en1",
    "europe-west1": "ew1",
    "europe-west2": "ew2",
    "europe-west3": "ew3",
    "europe-west4": "ew4",
    "europe-west6": "ew6",
    "northamerica-northeast1": "nn1",
    "southamerica-east1": "se1",
    "us-central1": "usc1",
    "us-east1": "use1",
    "us-east4": "use4",
    "us-west1": "usw1",
    "us-west2": "usw2",
    "us-west3": "usw3",
    "us-west4": "usw4",
}


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def member_slug(member: str) -> str:
    # the digest keeps slugs unique for principals differing only in punctuation or case
    slug = re.sub(r"[^a-z0-9]+", "-", member.lower()).strip("-")
    digest = hashlib.sha1(member.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


class GCPLookup:
    """Finds existing GCP entities for the reuse path. Anything the API cannot return counts as absent."""

    def find_project(self, project_id: str) -> Optional[Project]:
        try:
            result = gcp.organizations.get_project(project_id=project_id)
        except Exception as e:
            pulumi.log.warn(f"Failed to retrieve existing project '{project_id}': {e}")
            return None
        pulumi.log.info(f"Fetched existing project '{project_id}' via 'get_project'")
        return Project(
            project_id=result.project_id,
            folder_id=result.folder_id or None,
            billing_account=result.billing_account or None,
            org_id=result.org_id or None,
            number=result.number or None,
        )

    def find_network(self, name: str, project_id: str) -> Optional[Network]:
        try:
            result = gcp.compute.get_network(name=name, project=project_id)
        except Exception as e:
            pulumi.log.warn(f"Failed to retrieve existing network '{name}' in '{project_id}': {e}")
            return None
        pulumi.log.info(f"Fetched existing network '{name}' via 'get_network'")
        return Network(name=result.name, project_id=project_id, self_link=result.self_link)

    def find_subnet(self, name: str, region: str, network: Network) -> Optional[Subnet]:
        try:
            result = gcp.compute.get_subnetwork(name=name, region=region, project=network.project_id)
        except Exception as e:
            pulumi.log.warn(f"Failed to retrieve existing subnet '{name}' in '{region}': {e}")
            return None
        if network.self_link and result.network != network.self_link:
            pulumi.log.warn(f"Subnet '{name}' belongs to '{result.network}', not network '{network.name}'")
            return None
        pulumi.log.info(f"Fetched existing subnet '{name}' via 'get_subnetwork'")
        return Subnet(
            name=result.name,
            region=region,
            network=network,
            ip_cidr_range=result.ip_cidr_range,
            self_link=result.self_link,
        )


class GCPResourceBuilder:
    def __init__(self, plan: Plan, config: NotebookEnvironmentConfig):
        self.plan = plan
        self.config = config
        self.resources: Dict[str, Any] = {}

    def get_abbreviation(self, region: str) -> str:
        return GCP_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        project = self.config.project_name.strip().lower()
        reg_abbr = self.get_abbreviation(self.config.region)
        return f"{project}-{reg_abbr}-{base_name}".lower()

    def _labels(self) -> Dict[str, str]:
        return {"managed-by": "pulumi", "name-suffix": self.plan.context.suffix, **self.config.labels}

    def _opts(self, step: PlanStep) -> pulumi.ResourceOptions:
        depends_on: List[pulumi.Resource] = []
        for key in step.depends_on:
            created = self.resources.get(key)
            if isinstance(created, list):
                depends_on.extend(created)
            elif isinstance(created, pulumi.Resource):
                depends_on.append(created)
        return pulumi.ResourceOptions(depends_on=depends_on)

    # region Handles
    def _project_id(self) -> Any:
        # plain Project entity when reused, organizations.Project when created
        return self.resources["project"].project_id

    def _network_handle(self) -> Any:
        network = self.resources["network"]
        return network.self_link if isinstance(network, Network) else network.id

    def _subnet_handle(self) -> Any:
        subnet = self.resources["subnet"]
        return subnet.self_link if isinstance(subnet, Subnet) else subnet.id
    #endregion

    def build(self):
        for step in self.plan:
            if isinstance(step.ref, Existing):
                self.resources[step.key] = step.entity
                pulumi.log.info(f"Using existing {step.kind} '{step.key}'")
                continue

            handler = getattr(self, f"_create_{to_snake_case(step.kind)}", None)
            if handler is None:
                raise ValueError(f"No builder for plan step '{step.key}' of kind '{step.kind}'")
            self.resources[step.key] = handler(step)
            pulumi.log.info(f"Created resource: {self.generate_resource_name(step.key)} ({step.kind})")

    def exports(self) -> Dict[str, Any]:
        outputs = {
            "project_id": self._project_id(),
            "network": self._network_handle(),
            "subnet": self._subnet_handle(),
            "service_account_email": self.resources["service-account"].email,
            "bucket_name": self.resources["bucket"].name,
            "notebooks": [self.resources[step.key].name for step in self.plan.of_kind("NotebookInstance")],
            "name_suffix": self.plan.context.suffix,
        }
        return outputs

    # region Resources
    def _create_project(self, step: PlanStep) -> gcp.organizations.Project:
        project = step.entity
        return gcp.organizations.Project(
            self.generate_resource_name(step.key),
            name=self.config.project_name,
            project_id=project.project_id,
            folder_id=project.folder_id,
            org_id=project.org_id,
            billing_account=project.billing_account,
            auto_create_network=False,
            labels=self._labels(),
            opts=self._opts(step),
        )

    def _create_api_services(self, step: PlanStep) -> List[gcp.projects.Service]:
        return [
            gcp.projects.Service(
                self.generate_resource_name(f"{service.split('.')[0]}-service"),
                service=service,
                disable_on_destroy=False,
                project=self._project_id(),
                opts=self._opts(step),
            )
            for service in step.entity.services
        ]

    def _create_network(self, step: PlanStep) -> gcp.compute.Network:
        return gcp.compute.Network(
            self.generate_resource_name(step.key),
            name=step.entity.name,
            project=self._project_id(),
            auto_create_subnetworks=False,
            opts=self._opts(step),
        )

    def _create_subnet(self, step: PlanStep) -> gcp.compute.Subnetwork:
        subnet = step.entity
        return gcp.compute.Subnetwork(
            self.generate_resource_name(step.key),
            name=subnet.name,
            project=self._project_id(),
            region=subnet.region,
            network=self._network_handle(),
            ip_cidr_range=subnet.ip_cidr_range,
            private_ip_google_access=True,
            opts=self._opts(step),
        )

    def _create_firewall_rule(self, step: PlanStep) -> gcp.compute.Firewall:
        rule = step.entity
        return gcp.compute.Firewall(
            self.generate_resource_name(step.key),
            name=rule.name,
            project=self._project_id(),
            network=self._network_handle(),
            direction="INGRESS",
            source_ranges=list(rule.source_ranges),
            allows=[gcp.compute.FirewallAllowArgs(protocol=rule.protocol, ports=list(rule.ports) or None)],
            opts=self._opts(step),
        )

    def _create_cloud_nat(self, step: PlanStep) -> List[pulumi.CustomResource]:
        nat = step.entity
        router = gcp.compute.Router(
            self.generate_resource_name(f"{step.key}-router"),
            name=nat.router_name,
            project=self._project_id(),
            region=nat.region,
            network=self._network_handle(),
            opts=self._opts(step),
        )
        router_nat = gcp.compute.RouterNat(
            self.generate_resource_name(step.key),
            name=nat.nat_name,
            project=self._project_id(),
            region=nat.region,
            router=router.name,
            nat_ip_allocate_option="AUTO_ONLY",
            source_subnetwork_ip_ranges_to_nat="ALL_SUBNETWORKS_ALL_IP_RANGES",
            opts=self._opts(step),
        )
        return [router, router_nat]

    def _create_settling_delay(self, step: PlanStep) -> time.Sleep:
        return time.Sleep(
            self.generate_resource_name(step.key),
            create_duration=f"{step.entity.seconds}s",
            opts=self._opts(step),
        )

    def _create_service_account(self, step: PlanStep) -> gcp.serviceaccount.Account:
        account = step.entity
        return gcp.serviceaccount.Account(
            self.generate_resource_name(step.key),
            account_id=account.account_id,
            display_name=account.display_name,
            project=self._project_id(),
            opts=self._opts(step),
        )

    def _create_iam_binding(self, step: PlanStep) -> List[pulumi.CustomResource]:
        binding = step.entity
        members = []
        for member in sorted(binding.members):
            name = self.generate_resource_name(f"{step.key}-{member_slug(member)}")
            if binding.target_kind == "project":
                members.append(
                    gcp.projects.IAMMember(
                        name, project=self._project_id(), role=binding.role, member=member, opts=self._opts(step)
                    )
                )
            elif binding.target_kind == "service_account":
                members.append(
                    gcp.serviceaccount.IAMMember(
                        name,
                        service_account_id=self.resources[binding.target].name,
                        role=binding.role,
                        member=member,
                        opts=self._opts(step),
                    )
                )
            elif binding.target_kind == "bucket":
                members.append(
                    gcp.storage.BucketIAMMember(
                        name,
                        bucket=self.resources[binding.target].name,
                        role=binding.role,
                        member=member,
                        opts=self._opts(step),
                    )
                )
            else:
                raise ValueError(f"Unsupported IAM target '{binding.target_kind}' in step '{step.key}'")
        return members

    def _create_notebook_instance(self, step: PlanStep) -> gcp.workbench.Instance:
        notebook = step.entity
        metadata = {"proxy-mode": "service_account"}
        if notebook.post_startup_script:
            metadata["post-startup-script"] = notebook.post_startup_script
        return gcp.workbench.Instance(
            self.generate_resource_name(step.key),
            name=notebook.name,
            location=notebook.zone,
            project=self._project_id(),
            labels=self._labels(),
            gce_setup=gcp.workbench.InstanceGceSetupArgs(
                machine_type=notebook.machine_type,
                vm_image=gcp.workbench.InstanceGceSetupVmImageArgs(
                    project=notebook.image_project,
                    family=notebook.image_family,
                ),
                boot_disk=gcp.workbench.InstanceGceSetupBootDiskArgs(
                    disk_type=notebook.boot_disk_type,
                    disk_size_gb=str(notebook.boot_disk_size_gb),
                ),
                network_interfaces=[
                    gcp.workbench.InstanceGceSetupNetworkInterfaceArgs(
                        network=self._network_handle(),
                        subnet=self._subnet_handle(),
                    )
                ],
                service_accounts=[
                    gcp.workbench.InstanceGceSetupServiceAccountArgs(
                        email=self.resources["service-account"].email,
                    )
                ],
                disable_public_ip=True,
                metadata=metadata,
            ),
            opts=self._opts(step),
        )

    def _create_storage_bucket(self, step: PlanStep) -> gcp.storage.Bucket:
        bucket = step.entity
        return gcp.storage.Bucket(
            self.generate_resource_name(step.key),
            name=bucket.name,
            location=bucket.location,
            project=self._project_id(),
            uniform_bucket_level_access=True,
            labels=self._labels(),
            opts=self._opts(step),
        )

    def _create_script_object(self, step: PlanStep) -> gcp.storage.BucketObject:
        script = step.entity
        return gcp.storage.BucketObject(
            self.generate_resource_name(step.key),
            name=script.object_name,
            bucket=self.resources["bucket"].name,
            source=pulumi.FileAsset(script.source_path),
            opts=self._opts(step),
        )
    #endregion
