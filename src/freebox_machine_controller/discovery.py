"""Address discovery for created VMs via the Freebox LAN browser."""

import structlog

from .config import Settings
from .exceptions import FreeboxAPIError
from .freebox_client import FreeboxClient, VirtualMachine
from .models import (
    ConditionStatus,
    ConditionType,
    MachineAddress,
    set_condition,
)
from .result import ReconcileResult
from .scope import MachineScope

logger = structlog.get_logger()


class NetworkDiscovery:
    """Finds the IPv4 addresses of a VM and marks the machine ready."""

    def __init__(self, settings: Settings, freebox: FreeboxClient) -> None:
        """Initialize network discovery."""
        self.settings = settings
        self.freebox = freebox

    def find_addresses(self, mac: str) -> list[str]:
        """IPv4 addresses the LAN browser reports for a MAC address."""
        wanted = mac.lower()
        for host in self.freebox.get_lan_hosts(self.settings.lan_interface):
            if host.mac.lower() == wanted:
                return host.ipv4_addresses
        return []

    def discover(self, scope: MachineScope, vm: VirtualMachine | None = None) -> ReconcileResult:
        """Look up the VM's addresses and publish readiness once found.

        ``vm`` may be passed when the caller already fetched it.
        """
        machine = scope.machine
        if machine.status.addresses:
            return ReconcileResult.done()

        vm_id = machine.status.vm_id
        if vm_id is None:
            return ReconcileResult.requeue(self.settings.poll_interval_seconds)

        if vm is None or not vm.mac:
            vm = self.freebox.get_virtual_machine(vm_id)
        if not vm.mac:
            logger.info("VM has no MAC address yet", machine=machine.key, vm_id=vm_id)
            return ReconcileResult.requeue(self.settings.poll_interval_seconds)

        try:
            addresses = self.find_addresses(vm.mac)
        except FreeboxAPIError as e:
            logger.warning(
                "Failed to list LAN hosts, will retry",
                machine=machine.key,
                interface=self.settings.lan_interface,
                error=str(e),
            )
            return ReconcileResult.requeue(self.settings.poll_interval_seconds)

        if not addresses:
            logger.info("Waiting for VM to appear on LAN", machine=machine.key, mac=vm.mac)
            return ReconcileResult.requeue(self.settings.poll_interval_seconds)

        logger.info("Discovered VM addresses", machine=machine.key, addresses=addresses)
        self._mark_ready(scope, addresses)
        if not scope.save_status():
            return ReconcileResult.requeue(self.settings.step_interval_seconds)
        return ReconcileResult.done()

    @staticmethod
    def _mark_ready(scope: MachineScope, addresses: list[str]) -> None:
        machine = scope.machine
        status = machine.status
        status.addresses = [MachineAddress(address=address) for address in addresses]
        status.ready = True
        status.provisioned = True
        generation = machine.generation
        set_condition(
            status.conditions,
            ConditionType.READY.value,
            ConditionStatus.TRUE,
            "InfrastructureReady",
            "VM is running and reachable",
            generation,
        )
        set_condition(
            status.conditions,
            ConditionType.INFRASTRUCTURE_READY.value,
            ConditionStatus.TRUE,
            "InfrastructureReady",
            "",
            generation,
        )
        set_condition(
            status.conditions,
            ConditionType.VM_PROVISIONED.value,
            ConditionStatus.TRUE,
            "VMProvisioned",
            "",
            generation,
        )
