"""
Teardown Orchestrator — one reconciliation pass of the uninstaller.

Pass layout:
  0. Precondition gate (until satisfied once)
       - deleting-confirmation-flag must be true
       - manager must be ready, unless --force (grace period drops to 0)
       - no volume may be in use, unless --force
  1. Touch backup targets once      (API version migration, manager ready only)
  2. Non-recreatable kinds          (manager ready only; first non-empty kind wins)
  3. Manager-dependent resources    (support bundles)
  4. Manager DaemonSet              (must be gone before recreatable kinds)
     once it is gone the grace period drops to 0
  5. Recreatable kinds              (backup targets)
  6. Rescan non-recreatable kinds with the zeroed grace period
  7. CSI driver workloads           (best effort, aggregated into Wait)
  8. Cluster configuration          (webhooks, storage class, leases, secrets, PDBs)
  9. Done

Every phase may end the pass early with Wait. Store errors abort the pass
immediately and are retried by the controller with backoff.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from uninstall_operator import metrics
from uninstall_operator.constants import (
    DEFAULT_STORAGE_CLASS, DRIVER_DAEMON_SETS, DRIVER_DEPLOYMENTS, CSI_DRIVER_NAME, LEASES,
    MANAGER_DAEMON_SET, MUTATING_WEBHOOK, PDB_NAMES, PDB_PREFIX, SECRETS,
    SETTING_DELETING_CONFIRMATION_FLAG, VALIDATING_WEBHOOK, VOLUME_STATES_IN_USE,
)
from uninstall_operator.errors import (
    ConflictError, NotFoundError, PreconditionError, StoreError,
)
from uninstall_operator.grace import GracePeriodPolicy
from uninstall_operator.kinds import (
    MANAGER_DEPENDENT_RULES, NON_RECREATABLE_RULES, RECREATABLE_RULES, ChildObject, KindRule,
)
from uninstall_operator.models import ManagedResource, Outcome, PassResult, ResourceKind

logger = logging.getLogger("uninstall-operator")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UninstallOrchestrator:
    """
    Drives the system to zero, one idempotent pass at a time.

    Not thread-safe by itself: the controller runs passes on a single worker.
    The grace period is the only state shared with other threads.
    """

    def __init__(
        self,
        store,
        namespace: str,
        force: bool = False,
        grace: Optional[GracePeriodPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.namespace = namespace
        self.force = force
        self.grace = grace or GracePeriodPolicy()
        self.clock = clock
        self.preconditions_met = False
        self._touched_backup_targets: set[str] = set()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def uninstall(self) -> PassResult:
        """Run one pass. Returns Done / Wait / WaitingExternal, raises on errors."""
        if not self.preconditions_met:
            self.check_preconditions()
            self.preconditions_met = True

        if self.manager_ready():
            self.touch_backup_targets()
            result = self.delete_crs()
            if result:
                return result

        result = self.delete_manager_dependent_resources()
        if result:
            return result

        result = self.delete_manager()
        if result:
            return result

        # No manager left to clean up gracefully
        self.grace.expire()
        metrics.set_grace_period(self.grace.seconds)

        result = self.delete_recreated_crs()
        if result:
            return result

        # Flush whatever was still held back by the old grace period
        result = self.delete_crs()
        if result:
            return result

        result = self.delete_driver()
        if result:
            return result

        self.delete_cluster_config()
        logger.info("All resources removed, uninstall complete")
        return PassResult(outcome=Outcome.DONE, phase="done", message="uninstall complete")

    # ------------------------------------------------------------------
    # Precondition gate
    # ------------------------------------------------------------------

    def check_preconditions(self):
        try:
            flag = self.store.get_setting(SETTING_DELETING_CONFIRMATION_FLAG)
        except NotFoundError as e:
            raise PreconditionError(
                f"cannot uninstall: setting {SETTING_DELETING_CONFIRMATION_FLAG} not found"
            ) from e
        if flag.strip().lower() != "true":
            raise PreconditionError(
                f"cannot uninstall because {SETTING_DELETING_CONFIRMATION_FLAG} is set to `{flag}`. "
                f"Please set it to `true` using the UI or "
                f"kubectl -n {self.namespace} edit settings.longhorn.io {SETTING_DELETING_CONFIRMATION_FLAG}"
            )

        if not self.manager_ready():
            if not self.force:
                raise PreconditionError("manager not ready, set --force to continue")
            logger.warning("Manager is not ready, this may leave data behind")
            self.grace.expire()
            metrics.set_grace_period(self.grace.seconds)

        volumes = self.list_kind(ResourceKind.VOLUME)
        in_use = False
        for vol in volumes.values():
            if vol.status.get("state") in VOLUME_STATES_IN_USE:
                logger.warning(f"[{vol.ref}] Volume is in use ({vol.status.get('state')})")
                in_use = True
        if in_use and not self.force:
            raise PreconditionError("volume(s) are in use, set --force to continue")

    def manager_ready(self) -> bool:
        try:
            ds = self.store.get_daemon_set(MANAGER_DAEMON_SET)
        except NotFoundError:
            return False
        if ds.deletion_timestamp is not None:
            logger.warning(f"[DaemonSet/{MANAGER_DAEMON_SET}] Marked for deletion")
            return False
        # One missing pod is tolerated so uninstall works in the middle of an upgrade
        if ds.ready < ds.desired - 1:
            logger.warning(
                f"[DaemonSet/{MANAGER_DAEMON_SET}] Not enough ready pods ({ds.ready}/{ds.desired})"
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Phase 1: API version migration
    # ------------------------------------------------------------------

    def touch_backup_targets(self):
        """
        Re-save each backup target once so it is stored in the current API
        version. Once the manager (and its conversion webhook) is gone, objects
        stored in an older version can no longer be deleted.
        """
        backup_targets = self.list_kind(ResourceKind.BACKUP_TARGET)
        for bt in backup_targets.values():
            if bt.name in self._touched_backup_targets:
                continue
            try:
                self.update(bt)
            except ConflictError:
                logger.debug(f"[{bt.ref}] Conflict while touching, already rewritten")
            self._touched_backup_targets.add(bt.name)

    # ------------------------------------------------------------------
    # Phases 2 / 3 / 5 / 6: custom resources
    # ------------------------------------------------------------------

    def delete_crs(self) -> Optional[PassResult]:
        """Resources the manager does not recreate. Acts on the first non-empty kind only."""
        return self._scan(NON_RECREATABLE_RULES, phase="resources")

    def delete_manager_dependent_resources(self) -> Optional[PassResult]:
        return self._scan(MANAGER_DEPENDENT_RULES, phase="manager-dependent")

    def delete_recreated_crs(self) -> Optional[PassResult]:
        """Resources the manager would recreate; only safe once it is gone."""
        return self._scan(RECREATABLE_RULES, phase="recreated")

    def _scan(self, rules: list[KindRule], phase: str) -> Optional[PassResult]:
        for rule in rules:
            resources = self.list_kind(rule.kind)
            metrics.set_remaining(rule.kind.value, len(resources))
            if not resources:
                continue
            logger.info(f"Found {len(resources)} {rule.kind.value} remaining")
            if rule.handler:
                outcome = rule.handler(self, resources)
            else:
                self.delete_batch(rule, resources)
                outcome = rule.outcome
            return PassResult(
                outcome=outcome,
                phase=phase,
                kind=rule.kind,
                message=f"{len(resources)} {rule.kind.value} remaining",
            )
        return None

    def list_kind(self, kind: ResourceKind) -> dict[str, ManagedResource]:
        """List a managed kind; a kind whose CRD is not installed reads as empty."""
        try:
            return self.store.list_resources(kind)
        except NotFoundError:
            logger.debug(f"[{kind.value}] Resource type not served, nothing to remove")
            return {}

    def delete_batch(self, rule: KindRule, resources: dict[str, ManagedResource]):
        """Default cycle; the first unexpected store error aborts the batch."""
        for resource in resources.values():
            if resource.deletion_timestamp is None:
                if rule.prepare:
                    rule.prepare(self, resource)
                self.request_delete(resource)
            elif rule.remove_finalizer and (not rule.grace_gated or self.grace_elapsed(resource)):
                child = rule.child(resource) if rule.child else None
                self.finalize(resource, child)

    # ------------------------------------------------------------------
    # Store actions shared by the kind rules
    # ------------------------------------------------------------------

    def grace_elapsed(self, resource: ManagedResource) -> bool:
        return resource.deletion_timestamp is not None and self.grace.elapsed(
            resource.deletion_timestamp, self.clock()
        )

    def request_delete(self, resource: ManagedResource):
        try:
            self.store.delete_resource(resource.kind, resource.name)
        except NotFoundError:
            logger.info(f"[{resource.ref}] Not found")
            return
        metrics.record_mutation("delete")
        logger.info(f"[{resource.ref}] Marked for deletion")

    def update(self, resource: ManagedResource) -> ManagedResource:
        updated = self.store.update_resource(resource)
        metrics.record_mutation("update")
        return updated

    def finalize(self, resource: ManagedResource, child: Optional[ChildObject] = None):
        """Delete the generated child (if any), then remove the finalizer."""
        if child:
            self._delete_child(resource, child)
        try:
            self.store.remove_finalizer(resource)
        except NotFoundError:
            logger.info(f"[{resource.ref}] Not found")
            return
        metrics.record_mutation("remove_finalizer")
        logger.info(f"[{resource.ref}] Removed finalizer")

    def _delete_child(self, resource: ManagedResource, child: ChildObject):
        delete = {
            "Pod": self.store.delete_pod,
            "DaemonSet": self.store.delete_daemon_set,
            "Deployment": self.store.delete_deployment,
        }[child.kind]
        try:
            delete(child.name)
        except NotFoundError:
            logger.info(f"[{resource.ref}] {child.kind} {child.name} is not found")
            return
        metrics.record_mutation("delete")
        logger.info(f"[{resource.ref}] Removed {child.kind} {child.name}")

    # ------------------------------------------------------------------
    # Phase 4: manager
    # ------------------------------------------------------------------

    def delete_manager(self) -> Optional[PassResult]:
        """The manager recreates some resources, so it must be gone before they are removed."""
        ref = f"DaemonSet/{MANAGER_DAEMON_SET}"
        try:
            ds = self.store.get_daemon_set(MANAGER_DAEMON_SET)
        except NotFoundError:
            return None
        if ds.deletion_timestamp is None:
            try:
                self.store.delete_daemon_set(MANAGER_DAEMON_SET)
            except NotFoundError:
                return None
            except StoreError:
                logger.warning(f"[{ref}] Failed to mark for deletion")
                raise
            metrics.record_mutation("delete")
            logger.info(f"[{ref}] Marked for deletion")
        else:
            logger.info(f"[{ref}] Already marked for deletion")
        return PassResult(outcome=Outcome.WAIT, phase="manager", message="waiting for manager removal")

    # ------------------------------------------------------------------
    # Phase 7: CSI driver
    # ------------------------------------------------------------------

    def delete_driver(self) -> Optional[PassResult]:
        """Best effort: failures are logged and turned into Wait instead of errors."""
        wait = False
        for name in DRIVER_DEPLOYMENTS:
            wait |= self._delete_driver_workload(
                "Deployment", name, self.store.get_deployment, self.store.delete_deployment
            )
        for name in DRIVER_DAEMON_SETS:
            wait |= self._delete_driver_workload(
                "DaemonSet", name, self.store.get_daemon_set, self.store.delete_daemon_set
            )

        try:
            self.store.delete_csi_driver(CSI_DRIVER_NAME)
            metrics.record_mutation("delete")
            logger.info(f"[CSIDriver/{CSI_DRIVER_NAME}] Deleted")
        except NotFoundError:
            pass
        except StoreError as e:
            logger.warning(f"[CSIDriver/{CSI_DRIVER_NAME}] Failed to delete: {e}")
            wait = True

        if wait:
            return PassResult(outcome=Outcome.WAIT, phase="driver", message="waiting for driver removal")
        return None

    def _delete_driver_workload(self, kind: str, name: str, get, delete) -> bool:
        """Returns True while the workload still needs waiting for."""
        ref = f"{kind}/{name}"
        try:
            workload = get(name)
        except NotFoundError:
            return False
        except StoreError as e:
            logger.warning(f"[{ref}] Failed to get for deletion: {e}")
            return True

        if workload.deletion_timestamp is not None:
            logger.info(f"[{ref}] Already marked for deletion")
            return True

        try:
            delete(name)
        except NotFoundError:
            return False
        except StoreError as e:
            logger.warning(f"[{ref}] Failed to mark for deletion: {e}")
            return True
        metrics.record_mutation("delete")
        logger.info(f"[{ref}] Marked for deletion")

        try:
            get(name)
        except NotFoundError:
            return False
        except StoreError as e:
            logger.warning(f"[{ref}] Failed to confirm deletion: {e}")
        return True

    # ------------------------------------------------------------------
    # Phase 8: cluster configuration
    # ------------------------------------------------------------------

    def delete_cluster_config(self):
        """Each object is deleted independently; "not found" counts as done."""
        self._delete_ignoring_missing(self.store.delete_validating_webhook, VALIDATING_WEBHOOK,
                                      "ValidatingWebhookConfiguration")
        self._delete_ignoring_missing(self.store.delete_mutating_webhook, MUTATING_WEBHOOK,
                                      "MutatingWebhookConfiguration")
        self._delete_ignoring_missing(self.store.delete_storage_class, DEFAULT_STORAGE_CLASS,
                                      "StorageClass")
        for lease in LEASES:
            self._delete_ignoring_missing(self.store.delete_lease, lease, "Lease")
        for secret in SECRETS:
            self._delete_ignoring_missing(self.store.delete_secret, secret, "Secret")

        try:
            pdbs = self.store.list_pdbs()
        except NotFoundError:
            pdbs = []
        for pdb in pdbs:
            if pdb not in PDB_NAMES and not pdb.startswith(PDB_PREFIX):
                continue
            self._delete_ignoring_missing(self.store.delete_pdb, pdb, "PodDisruptionBudget")

    def _delete_ignoring_missing(self, delete, name: str, kind: str):
        try:
            delete(name)
        except NotFoundError:
            return
        metrics.record_mutation("delete")
        logger.info(f"[{kind}/{name}] Successfully cleaned up")
