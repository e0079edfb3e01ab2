"""Kubernetes client wrapper for FreeboxMachine and FreeboxCluster resources."""

import base64
from typing import Any

import structlog
from kubernetes import client, config  # type: ignore[import-untyped]
from kubernetes.client.exceptions import ApiException  # type: ignore[import-untyped]

from .config import Settings
from .exceptions import BootstrapDataError, ConflictError, StoreError
from .models import (
    API_GROUP,
    API_VERSION,
    CLUSTER_PLURAL,
    MACHINE_PLURAL,
    FreeboxCluster,
    FreeboxMachine,
)

logger = structlog.get_logger()

CAPI_GROUP = "cluster.x-k8s.io"
CAPI_MACHINE_PLURAL = "machines"
BOOTSTRAP_DATA_KEY = "value"


def _store_error(action: str, key: str, e: ApiException) -> StoreError:
    if e.status == 409:
        return ConflictError(f"{action} {key}: conflict ({e.reason})")
    return StoreError(f"{action} {key}: HTTP {e.status} {e.reason}")


class KubernetesClient:
    """Wrapper for the Kubernetes API operations the controller needs."""

    def __init__(self, settings: Settings) -> None:
        """Initialize Kubernetes client."""
        self.settings = settings
        self._load_config()
        self.core_v1 = client.CoreV1Api()
        self.custom = client.CustomObjectsApi()

    def _load_config(self) -> None:
        """Load Kubernetes configuration."""
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Loaded local Kubernetes config")

    # FreeboxMachine

    def get_machine(self, namespace: str, name: str) -> FreeboxMachine | None:
        """Get a FreeboxMachine, or None if it does not exist."""
        try:
            obj = self.custom.get_namespaced_custom_object(
                API_GROUP, API_VERSION, namespace, MACHINE_PLURAL, name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise _store_error("get FreeboxMachine", f"{namespace}/{name}", e) from e
        return FreeboxMachine.from_dict(obj)

    def list_machines(self, namespace: str = "") -> list[FreeboxMachine]:
        """List FreeboxMachines in a namespace, or in all namespaces."""
        try:
            if namespace:
                result = self.custom.list_namespaced_custom_object(
                    API_GROUP, API_VERSION, namespace, MACHINE_PLURAL
                )
            else:
                result = self.custom.list_cluster_custom_object(
                    API_GROUP, API_VERSION, MACHINE_PLURAL
                )
        except ApiException as e:
            raise _store_error("list FreeboxMachines", namespace or "*", e) from e
        return [FreeboxMachine.from_dict(item) for item in result.get("items", [])]

    def update_machine(self, machine: FreeboxMachine) -> FreeboxMachine:
        """Replace metadata and spec, guarded by resourceVersion."""
        try:
            obj = self.custom.replace_namespaced_custom_object(
                API_GROUP,
                API_VERSION,
                machine.namespace,
                MACHINE_PLURAL,
                machine.name,
                machine.to_dict(),
            )
        except ApiException as e:
            raise _store_error("update FreeboxMachine", machine.key, e) from e
        return FreeboxMachine.from_dict(obj)

    def update_machine_status(self, machine: FreeboxMachine) -> FreeboxMachine:
        """Replace the status subresource, guarded by resourceVersion."""
        try:
            obj = self.custom.replace_namespaced_custom_object_status(
                API_GROUP,
                API_VERSION,
                machine.namespace,
                MACHINE_PLURAL,
                machine.name,
                machine.to_dict(),
            )
        except ApiException as e:
            raise _store_error("update FreeboxMachine status", machine.key, e) from e
        return FreeboxMachine.from_dict(obj)

    # FreeboxCluster

    def get_cluster(self, namespace: str, name: str) -> FreeboxCluster | None:
        """Get a FreeboxCluster, or None if it does not exist."""
        try:
            obj = self.custom.get_namespaced_custom_object(
                API_GROUP, API_VERSION, namespace, CLUSTER_PLURAL, name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise _store_error("get FreeboxCluster", f"{namespace}/{name}", e) from e
        return FreeboxCluster.from_dict(obj)

    def update_cluster_status(self, cluster: FreeboxCluster) -> FreeboxCluster:
        """Replace the FreeboxCluster status subresource."""
        try:
            obj = self.custom.replace_namespaced_custom_object_status(
                API_GROUP,
                API_VERSION,
                cluster.namespace,
                CLUSTER_PLURAL,
                cluster.name,
                cluster.to_dict(),
            )
        except ApiException as e:
            raise _store_error("update FreeboxCluster status", cluster.key, e) from e
        return FreeboxCluster.from_dict(obj)

    # Owning Machine and bootstrap data

    def get_owner_machine(self, machine: FreeboxMachine) -> dict[str, Any] | None:
        """Get the Cluster API Machine owning a FreeboxMachine."""
        owner_name = machine.owner_machine_name()
        if owner_name is None:
            return None
        try:
            obj: dict[str, Any] = self.custom.get_namespaced_custom_object(
                CAPI_GROUP,
                self.settings.cluster_api_version,
                machine.namespace,
                CAPI_MACHINE_PLURAL,
                owner_name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise _store_error("get Machine", f"{machine.namespace}/{owner_name}", e) from e
        return obj

    def get_bootstrap_data(self, namespace: str, secret_name: str) -> bytes | None:
        """Read bootstrap data from a Secret, or None if the Secret does not exist yet."""
        try:
            secret = self.core_v1.read_namespaced_secret(name=secret_name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _store_error("get Secret", f"{namespace}/{secret_name}", e) from e

        data = secret.data or {}
        if BOOTSTRAP_DATA_KEY not in data:
            raise BootstrapDataError(
                f"bootstrap secret {namespace}/{secret_name} missing '{BOOTSTRAP_DATA_KEY}' key"
            )
        return base64.b64decode(data[BOOTSTRAP_DATA_KEY])

