"""Pytest fixtures for Freebox machine controller tests."""

import copy
from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock

import pytest
import structlog

from freebox_machine_controller.config import Settings
from freebox_machine_controller.exceptions import ConflictError
from freebox_machine_controller.freebox_client import (
    DownloadTask,
    FileSystemTask,
    FreeboxClient,
    LanHost,
    VirtualDiskTask,
    VirtualMachine,
)
from freebox_machine_controller.images import StorageLayout
from freebox_machine_controller.models import (
    API_GROUP,
    API_VERSION,
    MACHINE_FINALIZER,
    MACHINE_KIND,
    FreeboxCluster,
    FreeboxMachine,
)
from freebox_machine_controller.scope import MachineScope

DOWNLOAD_DIR = "/Freebox/Downloads"
VM_STORAGE = "/Freebox/VMs"
VM_MAC = "AA:BB:CC:DD:EE:01"


class FakeStore:
    """In-memory stand-in for KubernetesClient with resourceVersion checks."""

    def __init__(self) -> None:
        self.machines: dict[tuple[str, str], dict[str, Any]] = {}
        self.clusters: dict[tuple[str, str], dict[str, Any]] = {}
        self.owners: dict[tuple[str, str], dict[str, Any]] = {}
        self.secrets: dict[tuple[str, str], bytes] = {}
        self.conflicts_remaining = 0
        self.status_writes = 0
        self._version = 0

    def _bump(self, obj: dict[str, Any]) -> None:
        self._version += 1
        obj["metadata"]["resourceVersion"] = str(self._version)

    def _check(self, stored: dict[str, Any], incoming: dict[str, Any]) -> None:
        if self.conflicts_remaining > 0:
            self.conflicts_remaining -= 1
            raise ConflictError("injected conflict")
        if incoming["metadata"].get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise ConflictError("stale resourceVersion")

    def add_machine(self, obj: dict[str, Any]) -> None:
        obj = copy.deepcopy(obj)
        obj.setdefault("status", {})
        self._bump(obj)
        meta = obj["metadata"]
        self.machines[(meta["namespace"], meta["name"])] = obj

    def stored(self, namespace: str, name: str) -> dict[str, Any]:
        return self.machines[(namespace, name)]

    def get_machine(self, namespace: str, name: str) -> FreeboxMachine | None:
        obj = self.machines.get((namespace, name))
        return FreeboxMachine.from_dict(copy.deepcopy(obj)) if obj else None

    def list_machines(self, namespace: str = "") -> list[FreeboxMachine]:
        return [
            FreeboxMachine.from_dict(copy.deepcopy(obj))
            for (ns, _), obj in self.machines.items()
            if not namespace or ns == namespace
        ]

    def update_machine(self, machine: FreeboxMachine) -> FreeboxMachine:
        key = (machine.namespace, machine.name)
        stored = self.machines[key]
        incoming = machine.to_dict()
        self._check(stored, incoming)
        stored["metadata"]["finalizers"] = incoming["metadata"].get("finalizers", [])
        stored["spec"] = incoming.get("spec", {})
        self._bump(stored)
        if stored["metadata"].get("deletionTimestamp") and not stored["metadata"]["finalizers"]:
            del self.machines[key]
        return FreeboxMachine.from_dict(copy.deepcopy(stored))

    def update_machine_status(self, machine: FreeboxMachine) -> FreeboxMachine:
        stored = self.machines[(machine.namespace, machine.name)]
        incoming = machine.to_dict()
        self._check(stored, incoming)
        stored["status"] = incoming.get("status", {})
        self._bump(stored)
        self.status_writes += 1
        return FreeboxMachine.from_dict(copy.deepcopy(stored))

    def get_cluster(self, namespace: str, name: str) -> FreeboxCluster | None:
        obj = self.clusters.get((namespace, name))
        return FreeboxCluster.from_dict(copy.deepcopy(obj)) if obj else None

    def update_cluster_status(self, cluster: FreeboxCluster) -> FreeboxCluster:
        stored = self.clusters[(cluster.namespace, cluster.name)]
        incoming = cluster.to_dict()
        self._check(stored, incoming)
        stored["status"] = incoming["status"]
        self._bump(stored)
        return FreeboxCluster.from_dict(copy.deepcopy(stored))

    def get_owner_machine(self, machine: FreeboxMachine) -> dict[str, Any] | None:
        owner_name = machine.owner_machine_name()
        if owner_name is None:
            return None
        return self.owners.get((machine.namespace, owner_name))

    def get_bootstrap_data(self, namespace: str, secret_name: str) -> bytes | None:
        return self.secrets.get((namespace, secret_name))


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    """Undo logging configuration done by a test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings() -> Settings:
    """Create test settings."""
    return Settings(
        freebox_endpoint="http://fbx.test",
        freebox_session_token="session-token",
        download_dir=DOWNLOAD_DIR,
        vm_storage_path=VM_STORAGE,
        lan_interface="pub",
        poll_interval_seconds=10,
        step_interval_seconds=1,
        stop_poll_interval_seconds=1,
        stop_poll_attempts=30,
    )


@pytest.fixture
def storage() -> StorageLayout:
    """Create the appliance storage layout."""
    return StorageLayout(download_dir=DOWNLOAD_DIR, vm_storage_path=VM_STORAGE)


@pytest.fixture
def machine_obj() -> dict[str, Any]:
    """Create a FreeboxMachine as returned by the API server."""
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": MACHINE_KIND,
        "metadata": {
            "name": "worker-0",
            "namespace": "default",
            "generation": 1,
            "ownerReferences": [
                {
                    "apiVersion": "cluster.x-k8s.io/v1beta2",
                    "kind": "Machine",
                    "name": "worker-0-machine",
                    "uid": "7d1e",
                }
            ],
        },
        "spec": {
            "vcpus": 2,
            "memoryMB": 4096,
            "diskSizeGB": 10,
            "imageURL": "https://images.example.com/debian.qcow2",
        },
    }


@pytest.fixture
def store(machine_obj: dict[str, Any]) -> FakeStore:
    """Create an in-memory store holding the machine, its owner and bootstrap data."""
    fake = FakeStore()
    fake.add_machine(machine_obj)
    fake.owners[("default", "worker-0-machine")] = {
        "metadata": {"name": "worker-0-machine", "namespace": "default"},
        "spec": {"bootstrap": {"dataSecretName": "worker-0-bootstrap"}},
    }
    fake.secrets[("default", "worker-0-bootstrap")] = b"#cloud-config\nhostname: worker-0\n"
    return fake


@pytest.fixture
def finalized_store(store: FakeStore) -> FakeStore:
    """Store whose machine already carries the finalizer."""
    store.stored("default", "worker-0")["metadata"]["finalizers"] = [MACHINE_FINALIZER]
    return store


@pytest.fixture
def scope(finalized_store: FakeStore) -> MachineScope:
    """Create a scope over the stored machine."""
    machine = finalized_store.get_machine("default", "worker-0")
    assert machine is not None
    return MachineScope(machine, finalized_store)  # type: ignore[arg-type]


@pytest.fixture
def mock_freebox(settings: Settings) -> MagicMock:
    """Create a mock Freebox client whose tasks all complete immediately."""
    freebox = MagicMock(spec=FreeboxClient)
    freebox.settings = settings
    freebox.add_download_task.return_value = 11
    freebox.get_download_task.return_value = DownloadTask(id=11, status="done")
    freebox.extract_file.return_value = FileSystemTask(id=21, state="queued", type="extract")
    freebox.copy_files.return_value = FileSystemTask(id=22, state="queued", type="cp")
    freebox.move_files.return_value = FileSystemTask(id=23, state="queued", type="mv")
    freebox.remove_files.return_value = FileSystemTask(id=24, state="queued", type="rm")
    freebox.get_filesystem_task.side_effect = lambda task_id: FileSystemTask(
        id=task_id, state="done"
    )
    freebox.resize_virtual_disk.return_value = 31
    freebox.get_virtual_disk_task.return_value = VirtualDiskTask(id=31, done=True, error=False)
    freebox.create_virtual_machine.return_value = VirtualMachine(
        id=42, name="worker-0", mac=VM_MAC, status="stopped"
    )
    freebox.get_virtual_machine.return_value = VirtualMachine(
        id=42, name="worker-0", mac=VM_MAC, status="running"
    )
    freebox.get_lan_hosts.return_value = [
        LanHost(mac="aa:bb:cc:dd:ee:99", ipv4_addresses=["192.168.1.20"]),
        LanHost(mac=VM_MAC.lower(), ipv4_addresses=["192.168.1.42"]),
    ]
    return freebox

