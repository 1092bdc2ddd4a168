"""
Plan resolution for the notebook environment.

The resolver decides once per run which entities are created and which are
reused, then orders every step so that it comes after everything it references.
Nothing in this module creates cloud resources: existing entities are found
through a ResourceLookup, and the resulting Plan is handed to a builder.
"""

import graphlib
import heapq
import os
import re
import secrets
from dataclasses import dataclass
from typing import Dict, FrozenSet, Generic, Iterator, List, Optional, Protocol, Tuple, TypeVar, Union

import pulumi

from config import NotebookEnvironmentConfig

T = TypeVar("T")

SUFFIX_BYTES = 2
SETTLING_DELAY_SECONDS = 120

DEFAULT_SERVICES = (
    "cloudresourcemanager.googleapis.com",
    "compute.googleapis.com",
    "iam.googleapis.com",
    "notebooks.googleapis.com",
    "storage.googleapis.com",
)

TRUSTED_USER_PROJECT_ROLE = "roles/notebooks.runner"
TRUSTED_USER_SERVICE_ACCOUNT_ROLE = "roles/iam.serviceAccountUser"
TRUSTED_USER_BUCKET_ROLE = "roles/storage.objectAdmin"
SERVICE_ACCOUNT_BUCKET_ROLE = "roles/storage.objectViewer"

# Google's IAP TCP forwarding range
IAP_SOURCE_RANGE = "35.235.240.0/20"


class UnresolvedReferenceError(LookupError):
    """A reuse path names an entity that does not exist."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"Existing {kind} '{name}' was not found; create it or fix the name in config.yaml")
        self.kind = kind
        self.name = name


# region Refs
@dataclass(frozen=True)
class Created(Generic[T]):
    value: T
    action = "create"


@dataclass(frozen=True)
class Existing(Generic[T]):
    value: T
    action = "lookup"


Ref = Union[Created[T], Existing[T]]
#endregion


@dataclass(frozen=True)
class RunContext:
    """Run-scoped naming state. The suffix is fixed for the lifetime of the run."""

    suffix: str

    @classmethod
    def create(cls, suffix: Optional[str] = None) -> "RunContext":
        if suffix is None:
            suffix = secrets.token_hex(SUFFIX_BYTES)
        if not re.fullmatch(r"[0-9a-f]{%d}" % (SUFFIX_BYTES * 2), suffix):
            raise ValueError(f"Name suffix '{suffix}' must be {SUFFIX_BYTES * 2} lowercase hex characters")
        return cls(suffix)

    def name(self, base: str) -> str:
        return f"{base}-{self.suffix}"


# region Entities
@dataclass(frozen=True)
class Project:
    project_id: str
    folder_id: Optional[str] = None
    billing_account: Optional[str] = None
    org_id: Optional[str] = None
    number: Optional[str] = None


@dataclass(frozen=True)
class ApiServices:
    project_id: str
    services: Tuple[str, ...]


@dataclass(frozen=True)
class Network:
    name: str
    project_id: str
    self_link: Optional[str] = None


@dataclass(frozen=True)
class Subnet:
    name: str
    region: str
    network: Network
    ip_cidr_range: Optional[str] = None
    self_link: Optional[str] = None


@dataclass(frozen=True)
class FirewallRule:
    name: str
    network: Network
    source_ranges: Tuple[str, ...]
    protocol: str = "tcp"
    ports: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CloudNat:
    router_name: str
    nat_name: str
    region: str
    network: Network


@dataclass(frozen=True)
class SettlingDelay:
    seconds: int


@dataclass(frozen=True)
class ServiceAccount:
    account_id: str
    project_id: str
    display_name: str = "Notebook service account"

    @property
    def email(self) -> str:
        return f"{self.account_id}@{self.project_id}.iam.gserviceaccount.com"

    @property
    def member(self) -> str:
        return f"serviceAccount:{self.email}"


@dataclass(frozen=True)
class IamBinding:
    target_kind: str  # project | service_account | bucket
    target: str  # key of the step owning the resource
    role: str
    members: FrozenSet[str]


@dataclass(frozen=True)
class StorageBucket:
    name: str
    project_id: str
    location: str


@dataclass(frozen=True)
class ScriptObject:
    bucket_name: str
    object_name: str
    source_path: str

    @property
    def gcs_uri(self) -> str:
        return f"gs://{self.bucket_name}/{self.object_name}"


@dataclass(frozen=True)
class NotebookInstance:
    name: str
    zone: str
    machine_type: str
    boot_disk_type: str
    boot_disk_size_gb: int
    image_project: str
    image_family: str
    project_id: str
    network: Network
    subnet: Subnet
    service_account: ServiceAccount
    post_startup_script: Optional[str] = None
#endregion


@dataclass(frozen=True)
class PlanStep:
    key: str
    ref: Ref
    depends_on: Tuple[str, ...] = ()

    @property
    def entity(self):
        return self.ref.value

    @property
    def kind(self) -> str:
        return type(self.ref.value).__name__

    @property
    def action(self) -> str:
        return self.ref.action


@dataclass(frozen=True)
class Plan:
    context: RunContext
    steps: Tuple[PlanStep, ...]

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def step(self, key: str) -> PlanStep:
        for step in self.steps:
            if step.key == key:
                return step
        raise KeyError(key)

    def of_kind(self, kind: str) -> List[PlanStep]:
        return [step for step in self.steps if step.kind == kind]

    def creation_order(self) -> List[PlanStep]:
        return [step for step in self.steps if isinstance(step.ref, Created)]

    def lookups(self) -> List[PlanStep]:
        return [step for step in self.steps if isinstance(step.ref, Existing)]

    @property
    def project(self) -> Ref:
        return self.step("project").ref

    @property
    def network(self) -> Ref:
        return self.step("network").ref

    @property
    def subnet(self) -> Ref:
        return self.step("subnet").ref

    @property
    def service_account(self) -> ServiceAccount:
        return self.step("service-account").entity

    @property
    def bucket(self) -> StorageBucket:
        return self.step("bucket").entity

    @property
    def notebooks(self) -> List[NotebookInstance]:
        return [step.entity for step in self.of_kind("NotebookInstance")]


def order_steps(steps: Dict[str, PlanStep]) -> Tuple[PlanStep, ...]:
    """
    Topologically order steps. Among the steps that are ready at any point the
    one declared first wins, so the order is stable across runs.
    """
    for key, step in steps.items():
        unknown = sorted(set(step.depends_on) - steps.keys())
        if unknown:
            raise ValueError(f"Step '{key}' depends on unknown step(s): {', '.join(unknown)}")

    position = {key: index for index, key in enumerate(steps)}
    sorter = graphlib.TopologicalSorter({key: step.depends_on for key, step in steps.items()})
    try:
        sorter.prepare()
    except graphlib.CycleError as e:
        raise ValueError(f"Dependency cycle between plan steps: {e.args[1]}") from e

    ready: List[Tuple[int, str]] = []
    ordered: List[PlanStep] = []
    while sorter.is_active():
        for key in sorter.get_ready():
            heapq.heappush(ready, (position[key], key))
        _, key = heapq.heappop(ready)
        ordered.append(steps[key])
        sorter.done(key)
    return tuple(ordered)


class ResourceLookup(Protocol):
    def find_project(self, project_id: str) -> Optional[Project]:
        ...

    def find_network(self, name: str, project_id: str) -> Optional[Network]:
        ...

    def find_subnet(self, name: str, region: str, network: Network) -> Optional[Subnet]:
        ...


def _role_slug(role: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", role.split("/")[-1].lower())


class PlanResolver:
    def __init__(self, config: NotebookEnvironmentConfig, context: RunContext, lookup: ResourceLookup):
        self.config = config
        self.context = context
        self.lookup = lookup
        self._steps: Dict[str, PlanStep] = {}

    def _add(self, key: str, ref: Ref, depends_on: Tuple[str, ...] = ()) -> PlanStep:
        if key in self._steps:
            raise ValueError(f"Plan step '{key}' declared twice")
        step = PlanStep(key, ref, tuple(depends_on))
        self._steps[key] = step
        return step

    def resolve(self) -> Plan:
        """
        Resolve every entity and return the ordered plan. Lookups all happen
        here, so a missing entity fails the run before anything is created.
        """
        self._steps = {}
        project = self._resolve_project()
        self._add("project", project)

        base: Tuple[str, ...] = ("project",)
        if self.config.enable_services:
            self._add("services", Created(ApiServices(project.value.project_id, DEFAULT_SERVICES)), ("project",))
            base = ("services",)

        network, subnet = self._resolve_network(project.value, base)
        settle = self._add_network_edge(network, subnet)

        account = ServiceAccount(self.context.name("notebooks-sa"), project.value.project_id)
        self._add("service-account", Created(account), ("subnet",) + base)

        bucket = StorageBucket(
            self.context.name(f"{self.config.project_name}-scripts"),
            project.value.project_id,
            self.config.bucket_location,
        )
        script = None
        if self.config.startup_script:
            script = ScriptObject(bucket.name, os.path.basename(self.config.startup_script), self.config.startup_script)

        access = self._add_bindings(
            [
                *(("project", "project", role, account.member) for role in self.config.service_account_roles),
                *(("project", "project", TRUSTED_USER_PROJECT_ROLE, m) for m in self.config.trusted_users),
                *(("service_account", "service-account", TRUSTED_USER_SERVICE_ACCOUNT_ROLE, m) for m in self.config.trusted_users),
            ],
            ("service-account",) + base,
        )

        notebook_deps = ("subnet", "service-account") + settle + access
        if script is not None:
            notebook_deps += ("startup-script",)
        for index in range(1, self.config.notebook_count + 1):
            notebook = NotebookInstance(
                name=self.context.name(f"notebook-{index}"),
                zone=self.config.zone,
                machine_type=self.config.machine_type,
                boot_disk_type=self.config.boot_disk_type,
                boot_disk_size_gb=self.config.boot_disk_size_gb,
                image_project=self.config.image_project,
                image_family=self.config.image_family,
                project_id=project.value.project_id,
                network=network.value,
                subnet=subnet.value,
                service_account=account,
                post_startup_script=script.gcs_uri if script else None,
            )
            self._add(f"notebook-{index}", Created(notebook), notebook_deps)

        self._add("bucket", Created(bucket), ("service-account",) + access)
        self._add_bindings(
            [
                ("bucket", "bucket", SERVICE_ACCOUNT_BUCKET_ROLE, account.member),
                *(("bucket", "bucket", TRUSTED_USER_BUCKET_ROLE, m) for m in self.config.trusted_users),
            ],
            ("bucket", "service-account"),
        )
        if script is not None:
            self._add("startup-script", Created(script), ("bucket",))

        plan = Plan(self.context, order_steps(self._steps))
        pulumi.log.info(
            f"Resolved plan with {len(plan.creation_order())} resource(s) to create "
            f"and {len(plan.lookups())} to reuse (suffix '{self.context.suffix}')"
        )
        return plan

    def _resolve_project(self) -> Ref:
        config = self.config
        if config.create_project:
            project = Project(
                project_id=self.context.name(config.project_name),
                folder_id=config.folder_id,
                billing_account=config.billing_account,
                org_id=config.organization_id,
            )
            pulumi.log.info(f"Project '{project.project_id}' will be created")
            return Created(project)

        existing = self.lookup.find_project(config.project_name)
        if existing is None:
            raise UnresolvedReferenceError("project", config.project_name)
        pulumi.log.info(f"Reusing existing project '{existing.project_id}'")
        return Existing(existing)

    def _resolve_network(self, project: Project, depends_on: Tuple[str, ...]) -> Tuple[Ref, Ref]:
        config = self.config
        if config.create_network:
            network = Network(config.network_name, project.project_id)
            subnet = Subnet(config.subnet_name, config.region, network, config.ip_cidr_range)
            self._add("network", Created(network), depends_on)
            self._add("subnet", Created(subnet), ("network",))
            return Created(network), Created(subnet)

        found_network = self.lookup.find_network(config.network_name, project.project_id)
        if found_network is None:
            raise UnresolvedReferenceError("network", config.network_name)
        found_subnet = self.lookup.find_subnet(config.subnet_name, config.region, found_network)
        if found_subnet is None:
            raise UnresolvedReferenceError("subnet", config.subnet_name)
        pulumi.log.info(f"Reusing existing network '{found_network.name}' and subnet '{found_subnet.name}'")
        self._add("network", Existing(found_network), depends_on)
        self._add("subnet", Existing(found_subnet), ("network",))
        return Existing(found_network), Existing(found_subnet)

    def _add_network_edge(self, network: Ref, subnet: Ref) -> Tuple[str, ...]:
        """Firewall, NAT and the settling delay for a network created in this run."""
        if not isinstance(network, Created):
            return ()

        config = self.config
        rules = {
            "firewall-internal": FirewallRule(
                f"{config.network_name}-allow-internal", network.value, (config.ip_cidr_range,), "all"
            ),
            "firewall-iap-ssh": FirewallRule(
                f"{config.network_name}-allow-iap-ssh", network.value, (IAP_SOURCE_RANGE,), "tcp", ("22",)
            ),
        }
        for key, rule in rules.items():
            self._add(key, Created(rule), ("network",))

        nat = CloudNat(f"{config.network_name}-router", f"{config.network_name}-nat", subnet.value.region, network.value)
        self._add("nat", Created(nat), ("subnet",))
        self._add("network-settle", Created(SettlingDelay(SETTLING_DELAY_SECONDS)), tuple(rules) + ("nat",))
        return ("network-settle",)

    def _add_bindings(self, grants, depends_on: Tuple[str, ...]) -> Tuple[str, ...]:
        """Group (target, role, member) grants into one binding per resource and role."""
        members: Dict[Tuple[str, str, str], set] = {}
        for target_kind, target, role, member in grants:
            members.setdefault((target_kind, target, role), set()).add(member)

        keys = []
        for (target_kind, target, role), principals in members.items():
            key = f"iam-{target}-{_role_slug(role)}"
            binding = IamBinding(target_kind, target, role, frozenset(principals))
            self._add(key, Created(binding), tuple(dict.fromkeys((target,) + depends_on)))
            keys.append(key)
        return tuple(keys)
