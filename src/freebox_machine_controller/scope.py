"""Persistence of a FreeboxMachine across the steps of one invocation."""

from collections.abc import Callable

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt

from .exceptions import ConflictError, StoreError
from .kubernetes_client import KubernetesClient
from .models import FreeboxMachine

logger = structlog.get_logger()

CRITICAL_WRITE_ATTEMPTS = 5


class MachineScope:
    """Holds the freshest copy of a machine and writes it back.

    Every successful write replaces ``machine`` with the object returned by the
    API server so the next write carries the new resourceVersion.
    """

    def __init__(self, machine: FreeboxMachine, store: KubernetesClient) -> None:
        self.machine = machine
        self.store = store

    def save(self) -> bool:
        """Write metadata and spec. Returns False when a concurrent writer won."""
        try:
            self.machine = self.store.update_machine(self.machine)
        except ConflictError:
            logger.info("Update conflict, another writer already updated", machine=self.machine.key)
            return False
        return True

    def save_status(self) -> bool:
        """Write the status. Returns False when a concurrent writer won."""
        try:
            self.machine = self.store.update_machine_status(self.machine)
        except ConflictError:
            logger.info(
                "Status update conflict, another writer already updated",
                machine=self.machine.key,
            )
            return False
        return True

    def save_status_retrying(self, mutate: Callable[[FreeboxMachine], None]) -> None:
        """Apply ``mutate`` and write the status, re-reading on conflict.

        Used for writes that must not be lost, such as recording a freshly
        created VM. Raises ConflictError once every attempt has lost.
        """
        mutate(self.machine)
        self._write_status_refreshing(mutate)

    @retry(
        stop=stop_after_attempt(CRITICAL_WRITE_ATTEMPTS),
        retry=retry_if_exception_type(ConflictError),
        reraise=True,
    )
    def _write_status_refreshing(self, mutate: Callable[[FreeboxMachine], None]) -> None:
        try:
            self.machine = self.store.update_machine_status(self.machine)
        except ConflictError as e:
            logger.info(
                "Status update conflict, retrying on latest version",
                machine=self.machine.key,
            )
            latest = self.store.get_machine(self.machine.namespace, self.machine.name)
            if latest is None:
                raise StoreError(
                    f"FreeboxMachine {self.machine.key} disappeared during update"
                ) from e
            mutate(latest)
            self.machine = latest
            raise
