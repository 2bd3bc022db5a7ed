"""
In-memory fakes for the resource store and the change feed.

FakeStore mimics the API server rules the uninstaller relies on:
  - delete on an object with finalizers only sets deletionTimestamp
  - removing the last finalizer of a soft-deleted object removes it
  - updates with a stale resourceVersion conflict
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from uninstall_operator import events
from uninstall_operator.constants import (
    FINALIZER, LEASES, MANAGER_DAEMON_SET, MUTATING_WEBHOOK, SECRETS,
    SETTING_DEFAULT_ENGINE_IMAGE, SETTING_DELETING_CONFIRMATION_FLAG, VALIDATING_WEBHOOK,
    DEFAULT_STORAGE_CLASS, CSI_DRIVER_NAME,
)
from uninstall_operator.errors import ConflictError, NotFoundError
from uninstall_operator.grace import GracePeriodPolicy
from uninstall_operator.models import ManagedResource, ResourceKind, Workload
from uninstall_operator.orchestrator import UninstallOrchestrator

NAMESPACE = "longhorn-system"
DEFAULT_ENGINE_IMAGE = "longhornio/longhorn-engine:v1.6.0"


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def ago(self, seconds: float) -> datetime:
        return self.now - timedelta(seconds=seconds)

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeStore:
    def __init__(self, clock: Clock):
        self.clock = clock
        self.resources: dict[ResourceKind, dict[str, ManagedResource]] = {k: {} for k in ResourceKind}
        self.settings = {
            SETTING_DELETING_CONFIRMATION_FLAG: "true",
            SETTING_DEFAULT_ENGINE_IMAGE: DEFAULT_ENGINE_IMAGE,
        }
        self.daemon_sets: dict[str, Workload] = {}
        self.deployments: dict[str, Workload] = {}
        self.pods: set[str] = set()
        self.secrets: set[str] = set()
        self.leases: set[str] = set()
        self.pdbs: set[str] = set()
        self.storage_classes: set[str] = set()
        self.csi_drivers: set[str] = set()
        self.validating_webhooks: set[str] = set()
        self.mutating_webhooks: set[str] = set()
        # workloads whose deletion only marks them (pods still terminating)
        self.sticky_workloads: set[str] = set()
        self.crds: set[ResourceKind] = set(ResourceKind)
        self.calls: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self._rv = 0

    # --- helpers for tests ---

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    def add(self, kind: ResourceKind, name: str, finalizers: Optional[list] = None,
            deletion_timestamp: Optional[datetime] = None, **fields) -> ManagedResource:
        resource = ManagedResource(
            kind=kind,
            name=name,
            namespace=NAMESPACE,
            resource_version=self._next_rv(),
            deletion_timestamp=deletion_timestamp,
            finalizers=[FINALIZER] if finalizers is None else finalizers,
            **fields,
        )
        self.resources[kind][name] = resource
        return resource

    def add_daemon_set(self, name: str, desired: int = 3, ready: int = 3,
                       deletion_timestamp: Optional[datetime] = None):
        self.daemon_sets[name] = Workload(kind="DaemonSet", name=name, namespace=NAMESPACE,
                                          desired=desired, ready=ready,
                                          deletion_timestamp=deletion_timestamp)

    def add_deployment(self, name: str, deletion_timestamp: Optional[datetime] = None):
        self.deployments[name] = Workload(kind="Deployment", name=name, namespace=NAMESPACE,
                                          desired=1, ready=1, deletion_timestamp=deletion_timestamp)

    def fail(self, op: str, name: str, exc: Exception):
        self.failures[(op, name)] = exc

    def mutations(self, op: Optional[str] = None) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if op is None or c[0] == op]

    def _check(self, op: str, name: str):
        exc = self.failures.get((op, name))
        if exc is not None:
            raise exc

    # --- custom resources ---

    def crd_exists(self, kind: ResourceKind) -> bool:
        return kind in self.crds

    def list_resources(self, kind: ResourceKind, label_selector: str = "") -> dict[str, ManagedResource]:
        self._check("list", kind.value)
        return {name: r.model_copy(deep=True) for name, r in self.resources[kind].items()}

    def get_resource(self, kind: ResourceKind, name: str) -> ManagedResource:
        if name not in self.resources[kind]:
            raise NotFoundError(kind.value, "get", name)
        return self.resources[kind][name].model_copy(deep=True)

    def delete_resource(self, kind: ResourceKind, name: str):
        self._check("delete", name)
        self.calls.append(("delete", kind.value, name))
        stored = self.resources[kind].get(name)
        if stored is None:
            raise NotFoundError(kind.value, "delete", name)
        if not stored.finalizers:
            del self.resources[kind][name]
        elif stored.deletion_timestamp is None:
            stored.deletion_timestamp = self.clock()
            stored.resource_version = self._next_rv()

    def update_resource(self, resource: ManagedResource) -> ManagedResource:
        self._check("update", resource.name)
        self.calls.append(("update", resource.kind.value, resource.name))
        stored = self.resources[resource.kind].get(resource.name)
        if stored is None:
            raise NotFoundError(resource.kind.value, "update", resource.name)
        if stored.resource_version != resource.resource_version:
            raise ConflictError(resource.kind.value, "update", resource.name)
        updated = stored.model_copy(deep=True, update={
            "annotations": dict(resource.annotations),
            "labels": dict(resource.labels),
            "spec": dict(resource.spec),
            "resource_version": self._next_rv(),
        })
        self.resources[resource.kind][resource.name] = updated
        return updated.model_copy(deep=True)

    def remove_finalizer(self, resource: ManagedResource):
        self._check("remove_finalizer", resource.name)
        self.calls.append(("remove_finalizer", resource.kind.value, resource.name))
        stored = self.resources[resource.kind].get(resource.name)
        if stored is None:
            raise NotFoundError(resource.kind.value, "remove finalizer from", resource.name)
        stored.finalizers = [f for f in stored.finalizers if f != FINALIZER]
        if not stored.finalizers and stored.deletion_timestamp is not None:
            del self.resources[resource.kind][resource.name]

    def find_backup_volume(self, backup_target: str, volume: str) -> ManagedResource:
        self._check("find_backup_volume", volume)
        for bv in self.resources[ResourceKind.BACKUP_VOLUME].values():
            if (bv.labels.get("longhorn.io/backup-target") == backup_target
                    and bv.labels.get("longhorn.io/backup-volume") == volume):
                return bv.model_copy(deep=True)
        raise NotFoundError(ResourceKind.BACKUP_VOLUME.value, "get", f"{backup_target}/{volume}")

    def get_setting(self, name: str) -> str:
        self._check("get_setting", name)
        if name not in self.settings:
            raise NotFoundError("Setting", "get", name)
        return self.settings[name]

    # --- workloads ---

    def _get_workload(self, workloads: dict, kind: str, name: str) -> Workload:
        self._check("get", name)
        if name not in workloads:
            raise NotFoundError(kind, "get", name)
        return workloads[name].model_copy()

    def _delete_workload(self, workloads: dict, kind: str, name: str):
        self._check("delete", name)
        self.calls.append(("delete", kind, name))
        if name not in workloads:
            raise NotFoundError(kind, "delete", name)
        if name in self.sticky_workloads:
            workloads[name].deletion_timestamp = self.clock()
        else:
            del workloads[name]

    def get_daemon_set(self, name: str) -> Workload:
        return self._get_workload(self.daemon_sets, "DaemonSet", name)

    def delete_daemon_set(self, name: str):
        self._delete_workload(self.daemon_sets, "DaemonSet", name)

    def get_deployment(self, name: str) -> Workload:
        return self._get_workload(self.deployments, "Deployment", name)

    def delete_deployment(self, name: str):
        self._delete_workload(self.deployments, "Deployment", name)

    def _delete_from(self, objects: set, kind: str, name: str):
        self._check("delete", name)
        self.calls.append(("delete", kind, name))
        if name not in objects:
            raise NotFoundError(kind, "delete", name)
        objects.discard(name)

    def delete_pod(self, name: str):
        self._delete_from(self.pods, "Pod", name)

    def delete_secret(self, name: str):
        self._delete_from(self.secrets, "Secret", name)

    def delete_lease(self, name: str):
        self._delete_from(self.leases, "Lease", name)

    def list_pdbs(self) -> list[str]:
        return sorted(self.pdbs)

    def delete_pdb(self, name: str):
        self._delete_from(self.pdbs, "PodDisruptionBudget", name)

    def delete_storage_class(self, name: str):
        self._delete_from(self.storage_classes, "StorageClass", name)

    def delete_csi_driver(self, name: str):
        self._delete_from(self.csi_drivers, "CSIDriver", name)

    def delete_validating_webhook(self, name: str):
        self._delete_from(self.validating_webhooks, "ValidatingWebhookConfiguration", name)

    def delete_mutating_webhook(self, name: str):
        self._delete_from(self.mutating_webhooks, "MutatingWebhookConfiguration", name)

    def install_cluster_config(self):
        """Objects a fresh install leaves behind for the final cleanup phase."""
        self.secrets |= set(SECRETS)
        self.leases |= set(LEASES)
        self.pdbs |= {"csi-attacher", "csi-provisioner", "instance-manager-0a1b2c", "unrelated-pdb"}
        self.storage_classes.add(DEFAULT_STORAGE_CLASS)
        self.csi_drivers.add(CSI_DRIVER_NAME)
        self.validating_webhooks.add(VALIDATING_WEBHOOK)
        self.mutating_webhooks.add(MUTATING_WEBHOOK)


class FakeSubscription:
    def __init__(self, source, handler, synced: bool = True):
        self.source = source
        self.handler = handler
        self.synced = synced
        self.cancelled = False

    def has_synced(self) -> bool:
        return self.synced

    def cancel(self):
        self.cancelled = True


class FakeChangeFeed:
    def __init__(self, synced: bool = True):
        self.synced = synced
        self.subscriptions: list[FakeSubscription] = []

    def subscribe(self, source, handler) -> FakeSubscription:
        subscription = FakeSubscription(source, handler, self.synced)
        self.subscriptions.append(subscription)
        return subscription

    def sources(self) -> list[str]:
        return [s.source.resource for s in self.subscriptions]

    def emit(self, event):
        for subscription in self.subscriptions:
            if subscription.source.resource == event.resource:
                subscription.handler(event)


@pytest.fixture(autouse=True)
def _clear_events():
    events.clear()
    yield
    events.clear()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(clock) -> FakeStore:
    s = FakeStore(clock)
    s.add_daemon_set(MANAGER_DAEMON_SET, desired=3, ready=3)
    return s


@pytest.fixture
def orchestrator(store, clock) -> UninstallOrchestrator:
    return UninstallOrchestrator(
        store, namespace=NAMESPACE, force=False, grace=GracePeriodPolicy(90), clock=clock
    )
