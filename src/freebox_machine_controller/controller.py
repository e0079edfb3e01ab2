"""Kopf handlers that drive the machine and cluster reconcilers.

Every handler call is one reconcile invocation. A requeue or a failure is
raised as ``kopf.TemporaryError`` so kopf schedules the next invocation after
the requested delay. Kopf never runs two handlers for the same object at once.
"""

import threading
from typing import Any, NamedTuple

import kopf
import structlog

from .config import Settings
from .models import API_GROUP, API_VERSION, CLUSTER_PLURAL, MACHINE_PLURAL
from .reconciler import ClusterReconciler, MachineReconciler
from .result import ReconcileResult

logger = structlog.get_logger()

MACHINE = "machine"
CLUSTER = "cluster"


class ResourceKey(NamedTuple):
    """Identity of a reconciled resource."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.namespace}/{self.name}"


class Controller:
    """Registers the reconcile handlers with kopf and runs the operator."""

    def __init__(
        self,
        settings: Settings,
        machines: MachineReconciler,
        clusters: ClusterReconciler,
        registry: kopf.OperatorRegistry | None = None,
    ) -> None:
        """Initialize the controller and register its handlers."""
        self.settings = settings
        self.machines = machines
        self.clusters = clusters
        self.registry = registry if registry is not None else kopf.OperatorRegistry()
        self.stop_flag = threading.Event()
        self._failures: dict[ResourceKey, int] = {}
        self._failures_lock = threading.Lock()
        self._register()

    def backoff(self, key: ResourceKey) -> float:
        """Record a failure for ``key`` and return the delay before the next attempt."""
        with self._failures_lock:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        delay = self.settings.backoff_base_seconds * (2 ** (failures - 1))
        return min(delay, self.settings.backoff_max_seconds)

    def forget(self, key: ResourceKey) -> None:
        """Reset the failure count of ``key``."""
        with self._failures_lock:
            self._failures.pop(key, None)

    def process(self, key: ResourceKey) -> ReconcileResult:
        """Run one reconcile for ``key``.

        Raises ``kopf.TemporaryError`` when the resource must be handled again.
        """
        if key.kind == MACHINE:
            result = self.machines.reconcile(key.namespace, key.name)
        else:
            result = self.clusters.reconcile(key.namespace, key.name)

        if result.is_failed:
            delay = self.backoff(key)
            logger.warning("Reconcile failed, backing off", key=str(key), delay=delay)
            raise kopf.TemporaryError(f"{key}: {result.describe()}", delay=delay)

        self.forget(key)
        if result.requeue_after is not None:
            raise kopf.TemporaryError(f"{key}: {result.describe()}", delay=result.requeue_after)
        return result

    def _register(self) -> None:
        registry = self.registry
        config = self.settings

        @kopf.on.startup(registry=registry)
        def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
            # Status belongs to the reconcilers, so kopf keeps its state in annotations.
            settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
                prefix=API_GROUP
            )
            settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
                prefix=API_GROUP
            )
            settings.execution.max_workers = config.workers
            logger.info(
                "Starting controller",
                namespace=config.watch_namespace or "*",
                workers=config.workers,
            )

        @kopf.on.resume(API_GROUP, API_VERSION, MACHINE_PLURAL, registry=registry)
        @kopf.on.create(API_GROUP, API_VERSION, MACHINE_PLURAL, registry=registry)
        @kopf.on.update(API_GROUP, API_VERSION, MACHINE_PLURAL, registry=registry)
        @kopf.on.delete(API_GROUP, API_VERSION, MACHINE_PLURAL, registry=registry, optional=True)
        def reconcile_machine(namespace: str, name: str, **_: Any) -> None:
            self.process(ResourceKey(MACHINE, namespace, name))

        @kopf.on.resume(API_GROUP, API_VERSION, CLUSTER_PLURAL, registry=registry)
        @kopf.on.create(API_GROUP, API_VERSION, CLUSTER_PLURAL, registry=registry)
        @kopf.on.update(API_GROUP, API_VERSION, CLUSTER_PLURAL, registry=registry)
        def reconcile_cluster(namespace: str, name: str, **_: Any) -> None:
            self.process(ResourceKey(CLUSTER, namespace, name))

    def run(self) -> None:
        """Run the operator until ``stop`` is called or a signal arrives."""
        namespace = self.settings.watch_namespace
        kopf.run(
            registry=self.registry,
            standalone=True,
            clusterwide=not namespace,
            namespaces=[namespace] if namespace else [],
            stop_flag=self.stop_flag,
        )
        logger.info("Controller stopped")

    def stop(self) -> None:
        """Ask the operator to stop."""
        self.stop_flag.set()
