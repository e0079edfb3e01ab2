"""Teardown of the VM and disk image when a FreeboxMachine is deleted.

Waiting for the VM to stop is done by requeueing, never by sleeping; the
number of stop checks so far is kept in ``status.teardown.stopAttempts``.
"""

import structlog

from .config import Settings
from .exceptions import FreeboxAPIError
from .freebox_client import FreeboxClient
from .lifecycle import VM_STATUS_STOPPED
from .models import MACHINE_FINALIZER
from .result import ReconcileResult
from .scope import MachineScope

logger = structlog.get_logger()

EFIVARS_SUFFIX = ".efivars"


class DeletionProtocol:
    """Stops and deletes the VM, removes its disk, then releases the finalizer."""

    def __init__(self, settings: Settings, freebox: FreeboxClient) -> None:
        """Initialize the deletion protocol."""
        self.settings = settings
        self.freebox = freebox

    def run(self, scope: MachineScope) -> ReconcileResult:
        """Advance the teardown by one step."""
        machine = scope.machine
        if not machine.has_finalizer:
            return ReconcileResult.done()

        log = logger.bind(machine=machine.key)
        log.info("Deleting FreeboxMachine", vm_id=machine.status.vm_id)

        if machine.status.vm_id is not None:
            result = self._teardown_vm(scope, machine.status.vm_id)
            if result is not None:
                return result

        disk_path = scope.machine.status.disk_path
        if disk_path:
            files = [disk_path, disk_path + EFIVARS_SUFFIX]
            task = self.freebox.remove_files(files)
            log.info("Submitted disk removal", files=files, task_id=task.id)

        scope.machine.finalizers = [f for f in scope.machine.finalizers if f != MACHINE_FINALIZER]
        if not scope.save():
            return ReconcileResult.requeue(self.settings.step_interval_seconds)
        log.info("Finalizer removed")
        return ReconcileResult.done()

    def _teardown_vm(self, scope: MachineScope, vm_id: int) -> ReconcileResult | None:
        """Stop and delete the recorded VM. Returns None once it is gone."""
        machine = scope.machine
        log = logger.bind(machine=machine.key, vm_id=vm_id)

        try:
            vm = self.freebox.get_virtual_machine(vm_id)
        except FreeboxAPIError as e:
            if not e.is_not_found:
                raise
            log.info("VM already gone")
            return self._forget_vm(scope)

        attempts = machine.status.stop_attempts
        if vm.status != VM_STATUS_STOPPED and attempts < self.settings.stop_poll_attempts:
            if attempts == 0:
                try:
                    self.freebox.kill_virtual_machine(vm_id)
                    log.info("Stopping VM")
                except FreeboxAPIError as e:
                    log.warning("Failed to stop VM", error=str(e))
            machine.status.stop_attempts = attempts + 1
            if not scope.save_status():
                return ReconcileResult.requeue(self.settings.step_interval_seconds)
            return ReconcileResult.requeue(self.settings.stop_poll_interval_seconds)

        if vm.status != VM_STATUS_STOPPED:
            log.warning("VM did not stop in time, deleting anyway", status=vm.status, attempts=attempts)

        self.freebox.delete_virtual_machine(vm_id)
        log.info("VM deleted")
        return self._forget_vm(scope)

    def _forget_vm(self, scope: MachineScope) -> ReconcileResult | None:
        """Clear the VM id so a repeated invocation does not touch the VM again."""
        scope.machine.status.vm_id = None
        scope.machine.status.stop_attempts = 0
        if not scope.save_status():
            return ReconcileResult.requeue(self.settings.step_interval_seconds)
        return None
