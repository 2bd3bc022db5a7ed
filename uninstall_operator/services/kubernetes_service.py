"""
Kubernetes service layer — the resource store the uninstaller works against.

Design principles:
  - Idempotent: deletes are safe to repeat, callers decide what "not found" means
  - Optimistic concurrency: updates carry resourceVersion, stale writes surface as conflicts
  - Clean error handling: translates K8s API exceptions to domain errors
"""

import logging
from contextlib import contextmanager
from typing import Optional

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException

from uninstall_operator.config import Settings, settings as default_settings
from uninstall_operator.constants import FINALIZER, LABEL_BACKUP_TARGET, LABEL_BACKUP_VOLUME, label_key
from uninstall_operator.errors import (
    ConflictError, NotFoundError, StoreError, TransientStoreError,
)
from uninstall_operator.models import ManagedResource, ResourceKind, Workload

logger = logging.getLogger("kubernetes_service")

SETTING_PLURAL = "settings"

_k8s_loaded = False


def _ensure_k8s(cfg: Settings):
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    if cfg.IN_CLUSTER:
        config.load_incluster_config()
    else:
        config.load_kube_config(config_file=cfg.KUBECONFIG or None)
    _k8s_loaded = True


def translate_api_error(e: ApiException, kind: str, operation: str, name: str = "") -> StoreError:
    """Map an API status code onto the store error taxonomy."""
    if e.status == 404:
        return NotFoundError(kind, operation, name, e)
    if e.status == 409:
        return ConflictError(kind, operation, name, e)
    return TransientStoreError(kind, operation, name, e)


@contextmanager
def api_call(kind: str, operation: str, name: str = ""):
    try:
        yield
    except ApiException as e:
        raise translate_api_error(e, kind, operation, name) from e
    except urllib3.exceptions.HTTPError as e:
        raise TransientStoreError(kind, operation, name, e) from e


class KubernetesService:
    """
    Resource store backed by the official Kubernetes client.

    Custom resources live in the system namespace under CRD_GROUP/CRD_VERSION.
    Every method raises NotFoundError, ConflictError or TransientStoreError.
    """

    def __init__(self, cfg: Optional[Settings] = None, namespace: Optional[str] = None):
        self.settings = cfg or default_settings
        self.namespace = namespace or self.settings.NAMESPACE
        self.group = self.settings.CRD_GROUP
        self.version = self.settings.CRD_VERSION

    # --- API clients ---

    def core_api(self) -> client.CoreV1Api:
        _ensure_k8s(self.settings)
        return client.CoreV1Api()

    def apps_api(self) -> client.AppsV1Api:
        _ensure_k8s(self.settings)
        return client.AppsV1Api()

    def custom_api(self) -> client.CustomObjectsApi:
        _ensure_k8s(self.settings)
        return client.CustomObjectsApi()

    def storage_api(self) -> client.StorageV1Api:
        _ensure_k8s(self.settings)
        return client.StorageV1Api()

    def coordination_api(self) -> client.CoordinationV1Api:
        _ensure_k8s(self.settings)
        return client.CoordinationV1Api()

    def policy_api(self) -> client.PolicyV1Api:
        _ensure_k8s(self.settings)
        return client.PolicyV1Api()

    def admission_api(self) -> client.AdmissionregistrationV1Api:
        _ensure_k8s(self.settings)
        return client.AdmissionregistrationV1Api()

    def extensions_api(self) -> client.ApiextensionsV1Api:
        _ensure_k8s(self.settings)
        return client.ApiextensionsV1Api()

    # --- Custom resources ---

    def crd_exists(self, kind: ResourceKind) -> bool:
        """Probe the CRD for a kind; any API error counts as absent."""
        crd_name = kind.crd_name(self.group)
        try:
            self.extensions_api().read_custom_resource_definition(crd_name)
            return True
        except ApiException as e:
            if e.status != 404:
                logger.warning(f"CRD {crd_name} could not be read (treated as absent): {e.reason}")
            return False

    def list_resources(self, kind: ResourceKind, label_selector: str = "") -> dict[str, ManagedResource]:
        with api_call(kind.value, "list"):
            result = self.custom_api().list_namespaced_custom_object(
                self.group, self.version, self.namespace, kind.plural,
                label_selector=label_selector,
            )
        resources = [ManagedResource.from_object(kind, item) for item in result.get("items", [])]
        return {r.name: r for r in resources}

    def get_resource(self, kind: ResourceKind, name: str) -> ManagedResource:
        with api_call(kind.value, "get", name):
            item = self.custom_api().get_namespaced_custom_object(
                self.group, self.version, self.namespace, kind.plural, name
            )
        return ManagedResource.from_object(kind, item)

    def delete_resource(self, kind: ResourceKind, name: str):
        with api_call(kind.value, "delete", name):
            self.custom_api().delete_namespaced_custom_object(
                self.group, self.version, self.namespace, kind.plural, name
            )

    def update_resource(self, resource: ManagedResource) -> ManagedResource:
        """Persist annotations, labels and spec. A stale resourceVersion raises ConflictError."""
        body = {
            "metadata": {
                "resourceVersion": resource.resource_version,
                "annotations": resource.annotations,
                "labels": resource.labels,
            },
            "spec": resource.spec,
        }
        with api_call(resource.kind.value, "update", resource.name):
            item = self.custom_api().patch_namespaced_custom_object(
                self.group, self.version, self.namespace, resource.kind.plural, resource.name, body
            )
        return ManagedResource.from_object(resource.kind, item)

    def remove_finalizer(self, resource: ManagedResource):
        """Drop the system finalizer; other holders are kept."""
        if FINALIZER not in resource.finalizers:
            return
        remaining = [f for f in resource.finalizers if f != FINALIZER]
        body = {
            "metadata": {
                "resourceVersion": resource.resource_version,
                "finalizers": remaining or None,
            }
        }
        with api_call(resource.kind.value, "remove finalizer from", resource.name):
            self.custom_api().patch_namespaced_custom_object(
                self.group, self.version, self.namespace, resource.kind.plural, resource.name, body
            )

    def find_backup_volume(self, backup_target: str, volume: str) -> ManagedResource:
        """Backup volume for a (backup target, volume) pair; NotFoundError when none matches."""
        selector = (
            f"{label_key(LABEL_BACKUP_TARGET)}={backup_target},"
            f"{label_key(LABEL_BACKUP_VOLUME)}={volume}"
        )
        matches = self.list_resources(ResourceKind.BACKUP_VOLUME, label_selector=selector)
        if not matches:
            raise NotFoundError(ResourceKind.BACKUP_VOLUME.value, "get", f"{backup_target}/{volume}")
        return next(iter(matches.values()))

    def get_setting(self, name: str) -> str:
        with api_call("Setting", "get", name):
            item = self.custom_api().get_namespaced_custom_object(
                self.group, self.version, self.namespace, SETTING_PLURAL, name
            )
        return str(item.get("value", ""))

    # --- Workloads ---

    def get_daemon_set(self, name: str) -> Workload:
        with api_call("DaemonSet", "get", name):
            ds = self.apps_api().read_namespaced_daemon_set(name=name, namespace=self.namespace)
        return Workload.from_daemon_set(ds)

    def delete_daemon_set(self, name: str):
        with api_call("DaemonSet", "delete", name):
            self.apps_api().delete_namespaced_daemon_set(name=name, namespace=self.namespace)

    def get_deployment(self, name: str) -> Workload:
        with api_call("Deployment", "get", name):
            deploy = self.apps_api().read_namespaced_deployment(name=name, namespace=self.namespace)
        return Workload.from_deployment(deploy)

    def delete_deployment(self, name: str):
        with api_call("Deployment", "delete", name):
            self.apps_api().delete_namespaced_deployment(name=name, namespace=self.namespace)

    def delete_pod(self, name: str):
        with api_call("Pod", "delete", name):
            self.core_api().delete_namespaced_pod(name=name, namespace=self.namespace)

    # --- Cluster configuration ---

    def delete_secret(self, name: str):
        with api_call("Secret", "delete", name):
            self.core_api().delete_namespaced_secret(name=name, namespace=self.namespace)

    def delete_lease(self, name: str):
        with api_call("Lease", "delete", name):
            self.coordination_api().delete_namespaced_lease(name=name, namespace=self.namespace)

    def list_pdbs(self) -> list[str]:
        with api_call("PodDisruptionBudget", "list"):
            pdbs = self.policy_api().list_namespaced_pod_disruption_budget(namespace=self.namespace)
        return [pdb.metadata.name for pdb in pdbs.items]

    def delete_pdb(self, name: str):
        with api_call("PodDisruptionBudget", "delete", name):
            self.policy_api().delete_namespaced_pod_disruption_budget(name=name, namespace=self.namespace)

    def delete_storage_class(self, name: str):
        with api_call("StorageClass", "delete", name):
            self.storage_api().delete_storage_class(name=name)

    def delete_csi_driver(self, name: str):
        with api_call("CSIDriver", "delete", name):
            self.storage_api().delete_csi_driver(name=name)

    def delete_validating_webhook(self, name: str):
        with api_call("ValidatingWebhookConfiguration", "delete", name):
            self.admission_api().delete_validating_webhook_configuration(name=name)

    def delete_mutating_webhook(self, name: str):
        with api_call("MutatingWebhookConfiguration", "delete", name):
            self.admission_api().delete_mutating_webhook_configuration(name=name)
