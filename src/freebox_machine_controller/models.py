"""Data models for FreeboxMachine and FreeboxCluster resources."""

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

API_GROUP = "infrastructure.cluster.x-k8s.io"
API_VERSION = "v1alpha1"
MACHINE_KIND = "FreeboxMachine"
MACHINE_PLURAL = "freeboxmachines"
CLUSTER_KIND = "FreeboxCluster"
CLUSTER_PLURAL = "freeboxclusters"

MACHINE_FINALIZER = "freeboxmachine.infrastructure.cluster.x-k8s.io/finalizer"
PROVIDER_ID_PREFIX = "freebox://"

DEFAULT_VCPUS = 2
DEFAULT_MEMORY_MB = 2048
DEFAULT_DISK_SIZE_GB = 20


class ConditionType(str, Enum):
    """Condition types published on FreeboxMachine and FreeboxCluster."""

    IMAGE_READY = "ImageReady"
    VM_PROVISIONED = "VMProvisioned"
    INFRASTRUCTURE_READY = "InfrastructureReady"
    READY = "Ready"


class ConditionStatus(str, Enum):
    """Kubernetes condition status values."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A metav1.Condition entry."""

    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: str = ""
    observed_generation: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Condition":
        """Create a Condition from its API representation."""
        return cls(
            type=data.get("type", ""),
            status=data.get("status", ConditionStatus.UNKNOWN.value),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
            observed_generation=data.get("observedGeneration"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to API representation."""
        data: dict[str, Any] = {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }
        if self.observed_generation is not None:
            data["observedGeneration"] = self.observed_generation
        return data


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    """Return the condition of the given type, if present."""
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(
    conditions: list[Condition],
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str = "",
    observed_generation: int | None = None,
) -> None:
    """Add or update a condition in place.

    The transition time only moves when the status value changes.
    """
    existing = find_condition(conditions, condition_type)
    now = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    if existing is None:
        conditions.append(
            Condition(
                type=condition_type,
                status=status.value,
                reason=reason,
                message=message,
                last_transition_time=now,
                observed_generation=observed_generation,
            )
        )
        return

    if existing.status != status.value:
        existing.last_transition_time = now
    existing.status = status.value
    existing.reason = reason
    existing.message = message
    existing.observed_generation = observed_generation


@dataclass
class MachineAddress:
    """An address reachable for a machine."""

    address: str
    type: str = "InternalIP"

    def to_dict(self) -> dict[str, str]:
        """Convert to API representation."""
        return {"type": self.type, "address": self.address}


@dataclass
class MachineSpec:
    """Desired state of a FreeboxMachine."""

    name: str = ""
    vcpus: int = 0
    memory_mb: int = 0
    disk_size_gb: int = 0
    image_url: str = ""
    provider_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MachineSpec":
        """Create a MachineSpec from its API representation."""
        return cls(
            name=data.get("name", ""),
            vcpus=int(data.get("vcpus") or 0),
            memory_mb=int(data.get("memoryMB") or 0),
            disk_size_gb=int(data.get("diskSizeGB") or 0),
            image_url=data.get("imageURL", ""),
            provider_id=data.get("providerID", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to API representation, omitting unset fields."""
        data: dict[str, Any] = {
            "name": self.name,
            "vcpus": self.vcpus,
            "memoryMB": self.memory_mb,
            "diskSizeGB": self.disk_size_gb,
            "imageURL": self.image_url,
            "providerID": self.provider_id,
        }
        return {key: value for key, value in data.items() if value}


@dataclass
class MachineStatus:
    """Observed state of a FreeboxMachine, written only by the controller."""

    progress: dict[str, Any] = field(default_factory=dict)
    vm_id: int | None = None
    disk_path: str = ""
    addresses: list[MachineAddress] = field(default_factory=list)
    provider_id: str = ""
    ready: bool = False
    provisioned: bool = False
    conditions: list[Condition] = field(default_factory=list)
    stop_attempts: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MachineStatus":
        """Create a MachineStatus from its API representation."""
        vm_id = data.get("vmId")
        return cls(
            progress=dict(data.get("progress") or {}),
            vm_id=int(vm_id) if vm_id is not None else None,
            disk_path=data.get("diskPath", ""),
            addresses=[
                MachineAddress(address=item["address"], type=item.get("type", "InternalIP"))
                for item in data.get("addresses") or []
                if item.get("address")
            ],
            provider_id=data.get("providerID", ""),
            ready=bool(data.get("ready", False)),
            provisioned=bool((data.get("initialization") or {}).get("provisioned", False)),
            conditions=[Condition.from_dict(item) for item in data.get("conditions") or []],
            stop_attempts=int((data.get("teardown") or {}).get("stopAttempts", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to API representation."""
        data: dict[str, Any] = {
            "ready": self.ready,
            "initialization": {"provisioned": self.provisioned},
        }
        if self.progress:
            data["progress"] = dict(self.progress)
        if self.vm_id is not None:
            data["vmId"] = self.vm_id
        if self.disk_path:
            data["diskPath"] = self.disk_path
        if self.addresses:
            data["addresses"] = [address.to_dict() for address in self.addresses]
        if self.provider_id:
            data["providerID"] = self.provider_id
        if self.conditions:
            data["conditions"] = [condition.to_dict() for condition in self.conditions]
        if self.stop_attempts:
            data["teardown"] = {"stopAttempts": self.stop_attempts}
        return data


@dataclass
class OwnerReference:
    """A metadata.ownerReferences entry."""

    api_version: str
    kind: str
    name: str
    uid: str = ""

    @property
    def group(self) -> str:
        """API group of the owner, empty for the core group."""
        return self.api_version.split("/")[0] if "/" in self.api_version else ""


@dataclass
class FreeboxMachine:
    """A FreeboxMachine custom resource."""

    name: str
    namespace: str
    spec: MachineSpec = field(default_factory=MachineSpec)
    status: MachineStatus = field(default_factory=MachineStatus)
    finalizers: list[str] = field(default_factory=list)
    resource_version: str = ""
    generation: int | None = None
    deletion_timestamp: str | None = None
    owner_references: list[OwnerReference] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "FreeboxMachine":
        """Create a FreeboxMachine from a custom object returned by the API."""
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            spec=MachineSpec.from_dict(obj.get("spec") or {}),
            status=MachineStatus.from_dict(obj.get("status") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            resource_version=metadata.get("resourceVersion", ""),
            generation=metadata.get("generation"),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            owner_references=[
                OwnerReference(
                    api_version=ref.get("apiVersion", ""),
                    kind=ref.get("kind", ""),
                    name=ref.get("name", ""),
                    uid=ref.get("uid", ""),
                )
                for ref in metadata.get("ownerReferences") or []
            ],
            raw=copy.deepcopy(obj),
        )

    def to_dict(self) -> dict[str, Any]:
        """Render the full object, preserving fields the controller does not own."""
        obj = copy.deepcopy(self.raw)
        obj.setdefault("apiVersion", f"{API_GROUP}/{API_VERSION}")
        obj.setdefault("kind", MACHINE_KIND)
        metadata = obj.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace
        metadata["finalizers"] = list(self.finalizers)
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        spec = obj.setdefault("spec", {})
        spec.update(self.spec.to_dict())
        obj["status"] = self.status.to_dict()
        return obj

    @property
    def key(self) -> str:
        """Namespace/name key for logging and queueing."""
        return f"{self.namespace}/{self.name}"

    @property
    def vm_name(self) -> str:
        """Name of the VM on the appliance."""
        return self.spec.name or self.name

    @property
    def vcpus(self) -> int:
        """Requested vCPUs, defaulting when unset."""
        return self.spec.vcpus if self.spec.vcpus > 0 else DEFAULT_VCPUS

    @property
    def memory_mb(self) -> int:
        """Requested memory in MB, defaulting when unset."""
        return self.spec.memory_mb if self.spec.memory_mb > 0 else DEFAULT_MEMORY_MB

    @property
    def disk_size_gb(self) -> int:
        """Requested disk size in GiB, defaulting when unset."""
        return self.spec.disk_size_gb if self.spec.disk_size_gb > 0 else DEFAULT_DISK_SIZE_GB

    @property
    def disk_size_bytes(self) -> int:
        """Requested disk size in bytes."""
        return self.disk_size_gb * 1024**3

    @property
    def provider_id(self) -> str:
        """Provider id, preferring the status copy over the spec."""
        return self.status.provider_id or self.spec.provider_id

    @property
    def is_ready(self) -> bool:
        """Check if the machine reported ready."""
        return self.status.ready

    @property
    def is_being_deleted(self) -> bool:
        """Check if deletion was requested."""
        return bool(self.deletion_timestamp)

    @property
    def has_finalizer(self) -> bool:
        """Check if the cleanup marker is present."""
        return MACHINE_FINALIZER in self.finalizers

    def owner_machine_name(self) -> str | None:
        """Name of the owning Cluster API Machine, if any."""
        for ref in self.owner_references:
            if ref.kind == "Machine" and ref.group == "cluster.x-k8s.io":
                return ref.name
        return None


@dataclass
class FreeboxCluster:
    """A FreeboxCluster custom resource."""

    name: str
    namespace: str
    ready: bool = False
    provisioned: bool = False
    conditions: list[Condition] = field(default_factory=list)
    resource_version: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "FreeboxCluster":
        """Create a FreeboxCluster from a custom object returned by the API."""
        metadata = obj.get("metadata") or {}
        status = obj.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            ready=bool(status.get("ready", False)),
            provisioned=bool((status.get("initialization") or {}).get("provisioned", False)),
            conditions=[Condition.from_dict(item) for item in status.get("conditions") or []],
            resource_version=metadata.get("resourceVersion", ""),
            raw=copy.deepcopy(obj),
        )

    def to_dict(self) -> dict[str, Any]:
        """Render the full object with the controller-owned status."""
        obj = copy.deepcopy(self.raw)
        metadata = obj.setdefault("metadata", {})
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        obj["status"] = {
            "ready": self.ready,
            "initialization": {"provisioned": self.provisioned},
            "conditions": [condition.to_dict() for condition in self.conditions],
        }
        return obj

    @property
    def key(self) -> str:
        """Namespace/name key for logging and queueing."""
        return f"{self.namespace}/{self.name}"
