"""Reconcile entry points for FreeboxMachine and FreeboxCluster."""

import structlog

from .config import Settings
from .deletion import DeletionProtocol
from .discovery import NetworkDiscovery
from .exceptions import ConflictError, ControllerError
from .freebox_client import FreeboxClient
from .images import StorageLayout
from .kubernetes_client import KubernetesClient
from .lifecycle import VMLifecycleManager
from .models import (
    MACHINE_FINALIZER,
    ConditionStatus,
    ConditionType,
    FreeboxMachine,
    find_condition,
    set_condition,
)
from .pipeline import ImagePipeline
from .result import ReconcileResult
from .scope import MachineScope

logger = structlog.get_logger()

FAILED_REASON_SUFFIX = "Failed"


def failed_image_reason(machine: FreeboxMachine) -> str | None:
    """Reason of a recorded image failure, or None when the image has not failed."""
    condition = find_condition(machine.status.conditions, ConditionType.IMAGE_READY.value)
    if condition is None or condition.status != ConditionStatus.FALSE.value:
        return None
    if condition.reason.endswith(FAILED_REASON_SUFFIX):
        return condition.reason
    return None


def image_ready(machine: FreeboxMachine) -> bool:
    """Check if the ImageReady condition is True."""
    condition = find_condition(machine.status.conditions, ConditionType.IMAGE_READY.value)
    return condition is not None and condition.status == ConditionStatus.TRUE.value


class MachineReconciler:
    """Drives one FreeboxMachine toward its desired state per invocation."""

    def __init__(
        self,
        settings: Settings,
        store: KubernetesClient,
        freebox: FreeboxClient,
        storage: StorageLayout,
    ) -> None:
        """Initialize the machine reconciler."""
        self.settings = settings
        self.store = store
        self.freebox = freebox
        self.pipeline = ImagePipeline(settings, freebox, storage)
        self.discovery = NetworkDiscovery(settings, freebox)
        self.lifecycle = VMLifecycleManager(settings, freebox, store, self.discovery)
        self.deletion = DeletionProtocol(settings, freebox)

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Reconcile a FreeboxMachine.

        Errors from the appliance or the API server are returned as a failed
        result for the driver's backoff; they are never raised.
        """
        with structlog.contextvars.bound_contextvars(namespace=namespace, name=name):
            try:
                result = self._reconcile(namespace, name)
            except ControllerError as e:
                logger.error("Reconcile failed", error=str(e), error_type=type(e).__name__)
                return ReconcileResult.failed(e)
            logger.debug("Reconcile finished", outcome=result.describe())
            return result

    def _reconcile(self, namespace: str, name: str) -> ReconcileResult:
        machine = self.store.get_machine(namespace, name)
        if machine is None:
            logger.debug("FreeboxMachine not found, nothing to do")
            return ReconcileResult.done()

        scope = MachineScope(machine, self.store)

        if machine.is_being_deleted:
            return self.deletion.run(scope)

        if not machine.has_finalizer:
            machine.finalizers.append(MACHINE_FINALIZER)
            if not scope.save():
                return ReconcileResult.requeue(self.settings.step_interval_seconds)
            logger.info("Added finalizer")

        if not scope.machine.spec.image_url:
            logger.info("No image URL set, skipping")
            return ReconcileResult.done()

        reason = failed_image_reason(scope.machine)
        if reason is not None:
            logger.info("Image provisioning failed earlier, waiting for intervention", reason=reason)
            return ReconcileResult.done()

        if not image_ready(scope.machine):
            result = self.pipeline.advance(scope)
            if result is not None:
                return result

        return self.lifecycle.ensure(scope, self.pipeline.final_path(scope))


class ClusterReconciler:
    """Marks FreeboxClusters provisioned; there is no cluster-level infrastructure."""

    def __init__(self, settings: Settings, store: KubernetesClient) -> None:
        """Initialize the cluster reconciler."""
        self.settings = settings
        self.store = store

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Reconcile a FreeboxCluster."""
        with structlog.contextvars.bound_contextvars(namespace=namespace, name=name):
            try:
                cluster = self.store.get_cluster(namespace, name)
                if cluster is None or cluster.provisioned:
                    return ReconcileResult.done()

                cluster.ready = True
                cluster.provisioned = True
                set_condition(
                    cluster.conditions,
                    ConditionType.READY.value,
                    ConditionStatus.TRUE,
                    "Provisioned",
                    "FreeboxCluster is ready",
                )
                try:
                    self.store.update_cluster_status(cluster)
                except ConflictError:
                    logger.info("Cluster status conflict, retrying")
                    return ReconcileResult.requeue(self.settings.step_interval_seconds)
                logger.info("FreeboxCluster provisioned")
                return ReconcileResult.done()
            except ControllerError as e:
                logger.error("Cluster reconcile failed", error=str(e))
                return ReconcileResult.failed(e)
