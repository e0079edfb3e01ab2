"""VM creation and start once the disk image is ready."""

from typing import Any

import structlog

from .config import Settings
from .discovery import NetworkDiscovery
from .exceptions import BootstrapDataError
from .freebox_client import FreeboxClient, VirtualMachinePayload
from .images import disk_type
from .kubernetes_client import KubernetesClient
from .models import (
    PROVIDER_ID_PREFIX,
    ConditionStatus,
    ConditionType,
    FreeboxMachine,
    set_condition,
)
from .result import ReconcileResult
from .scope import MachineScope

logger = structlog.get_logger()

VM_STATUS_STOPPED = "stopped"


def provider_id_for(vm_id: int) -> str:
    """Cluster API provider id of a Freebox VM."""
    return f"{PROVIDER_ID_PREFIX}{vm_id}"


def bootstrap_secret_name(owner: dict[str, Any]) -> str | None:
    """Bootstrap data secret referenced by a Cluster API Machine."""
    bootstrap = (owner.get("spec") or {}).get("bootstrap") or {}
    return bootstrap.get("dataSecretName") or None


class VMLifecycleManager:
    """Creates, records and starts the VM backing a FreeboxMachine."""

    def __init__(
        self,
        settings: Settings,
        freebox: FreeboxClient,
        store: KubernetesClient,
        discovery: NetworkDiscovery,
    ) -> None:
        """Initialize the VM lifecycle manager."""
        self.settings = settings
        self.freebox = freebox
        self.store = store
        self.discovery = discovery

    def ensure(self, scope: MachineScope, final_path: str) -> ReconcileResult:
        """Make sure the VM exists and runs, then discover its addresses."""
        machine = scope.machine
        if machine.status.vm_id is not None:
            return self._existing(scope, machine.status.vm_id)

        userdata = self._bootstrap_userdata(machine)
        if userdata is None:
            return ReconcileResult.requeue(self.settings.poll_interval_seconds)

        payload = VirtualMachinePayload(
            name=machine.vm_name,
            disk_path=final_path,
            disk_type=disk_type(final_path),
            memory=machine.memory_mb,
            vcpus=machine.vcpus,
            cloudinit_userdata=userdata,
        )
        logger.info(
            "Creating VM",
            machine=machine.key,
            vm_name=payload.name,
            disk_path=payload.disk_path,
            disk_type=payload.disk_type,
            memory=payload.memory,
            vcpus=payload.vcpus,
        )
        vm = self.freebox.create_virtual_machine(payload)
        logger.info("VM created", machine=machine.key, vm_id=vm.id)

        def record(latest: FreeboxMachine) -> None:
            latest.status.vm_id = vm.id
            latest.status.disk_path = final_path
            if not latest.status.provider_id:
                latest.status.provider_id = provider_id_for(vm.id)
            set_condition(
                latest.status.conditions,
                ConditionType.VM_PROVISIONED.value,
                ConditionStatus.FALSE,
                "VMStarting",
                f"VM {vm.id} created",
                latest.generation,
            )

        # The VM id must be durable before anything else can fail.
        scope.save_status_retrying(record)
        self._ensure_provider_id(scope)

        self.freebox.start_virtual_machine(vm.id)
        logger.info("VM started", machine=machine.key, vm_id=vm.id)
        return self.discovery.discover(scope, vm)

    def _existing(self, scope: MachineScope, vm_id: int) -> ReconcileResult:
        """Converge an already created VM without creating another one."""
        machine = scope.machine
        self._ensure_provider_id(scope)
        if machine.status.addresses:
            return ReconcileResult.done()

        vm = self.freebox.get_virtual_machine(vm_id)
        if vm.status == VM_STATUS_STOPPED:
            logger.info("Starting stopped VM", machine=machine.key, vm_id=vm_id)
            self.freebox.start_virtual_machine(vm_id)
        return self.discovery.discover(scope, vm)

    def _ensure_provider_id(self, scope: MachineScope) -> None:
        machine = scope.machine
        if machine.spec.provider_id or machine.status.vm_id is None:
            return
        machine.spec.provider_id = provider_id_for(machine.status.vm_id)
        if scope.save():
            logger.info("Set provider ID", machine=machine.key, provider_id=machine.spec.provider_id)

    def _bootstrap_userdata(self, machine: FreeboxMachine) -> str | None:
        """Cloud-init user data for the machine, or None while it is not available yet."""
        owner = self.store.get_owner_machine(machine)
        if owner is None:
            logger.info("Waiting for owning Machine", machine=machine.key)
            return None

        secret_name = bootstrap_secret_name(owner)
        if secret_name is None:
            logger.info("Waiting for bootstrap data secret name", machine=machine.key)
            return None

        data = self.store.get_bootstrap_data(machine.namespace, secret_name)
        if data is None:
            logger.info("Waiting for bootstrap data secret", machine=machine.key, secret=secret_name)
            return None
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BootstrapDataError(
                f"bootstrap secret {machine.namespace}/{secret_name} is not UTF-8 text"
            ) from e
