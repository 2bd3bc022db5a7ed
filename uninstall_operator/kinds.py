"""
Per-kind deletion rules, in the order the uninstaller scans them.

Every kind follows the same cycle unless its rule says otherwise:
  1. deletionTimestamp unset        -> request deletion (optionally after a prepare step)
  2. soft-deleted past grace period -> delete the generated child object, remove finalizer

Kinds that need more than that (backup targets, backups, ...) carry a handler
that replaces the cycle for the whole batch.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from uninstall_operator.constants import (
    ANNOTATION_DELETE_BACKUP_TARGET, ANNOTATION_DELETE_ENGINE_IMAGE, ANNOTATION_DELETE_NODE,
    LABEL_BACKUP_VOLUME, SETTING_DEFAULT_ENGINE_IMAGE, label_key,
)
from uninstall_operator.errors import (
    BackupLookupError, ConflictError, NotFoundError, StoreError, StuckError,
)
from uninstall_operator.models import ManagedResource, Outcome, ResourceKind

logger = logging.getLogger("uninstall-operator")


@dataclass(frozen=True)
class ChildObject:
    kind: str  # Pod, DaemonSet or Deployment
    name: str


@dataclass(frozen=True)
class KindRule:
    kind: ResourceKind
    # Replaces the default cycle: handler(teardown, resources) -> Outcome
    handler: Optional[Callable] = None
    # Runs before the deletion request: prepare(teardown, resource)
    prepare: Optional[Callable] = None
    # Generated object deleted right before the finalizer is removed
    child: Optional[Callable[[ManagedResource], ChildObject]] = None
    remove_finalizer: bool = True
    grace_gated: bool = True
    outcome: Outcome = Outcome.WAIT


# ---------------------------------------------------------------------------
# Generated children
# ---------------------------------------------------------------------------

def engine_image_daemon_set(resource: ManagedResource) -> ChildObject:
    return ChildObject("DaemonSet", f"engine-image-{resource.name}")


def share_manager_pod(resource: ManagedResource) -> ChildObject:
    return ChildObject("Pod", f"share-manager-{resource.name}")


def same_name_pod(resource: ManagedResource) -> ChildObject:
    return ChildObject("Pod", resource.name)


def support_bundle_manager(resource: ManagedResource) -> ChildObject:
    return ChildObject("Deployment", f"longhorn-support-bundle-manager-{resource.name}")


# ---------------------------------------------------------------------------
# Prepare steps
# ---------------------------------------------------------------------------

def mark_default_engine_image(teardown, resource: ManagedResource):
    """The webhook only lets the default engine image go when it carries the delete annotation."""
    default_image = teardown.store.get_setting(SETTING_DEFAULT_ENGINE_IMAGE)
    if resource.spec.get("image") != default_image:
        return
    key = label_key(ANNOTATION_DELETE_ENGINE_IMAGE)
    logger.info(f"[{resource.ref}] Adding annotation {key} to mark for deletion")
    resource.annotations[key] = ""
    teardown.update(resource)


def mark_node_for_deletion(teardown, resource: ManagedResource):
    key = label_key(ANNOTATION_DELETE_NODE)
    logger.info(f"[{resource.ref}] Adding annotation {key} to mark for deletion")
    resource.annotations[key] = ""
    teardown.update(resource)


# ---------------------------------------------------------------------------
# Batch handlers
# ---------------------------------------------------------------------------

def backup_target_needs_update(resource: ManagedResource) -> bool:
    return (
        resource.spec.get("backupTargetURL", "") != ""
        or label_key(ANNOTATION_DELETE_BACKUP_TARGET) not in resource.annotations
    )


def delete_backup_targets(teardown, resources: dict[str, ManagedResource], finalize: bool = False) -> Outcome:
    """
    Clear the URL first so the remote backup store is never touched by the
    deletion, and only then delete. With finalize set (manager gone), also
    escalate soft-deleted targets past the grace period.
    """
    for bt in resources.values():
        if bt.deletion_timestamp is None:
            if backup_target_needs_update(bt):
                bt.annotations[label_key(ANNOTATION_DELETE_BACKUP_TARGET)] = ""
                bt.spec["backupTargetURL"] = ""
                logger.info(f"[{bt.ref}] Cleanup BackupTarget URL and add annotation to mark for deletion")
                try:
                    teardown.update(bt)
                except ConflictError:
                    # changed under us; the change event brings the next pass
                    logger.info(f"[{bt.ref}] Conflict while clearing URL, retrying next pass")
                continue
            teardown.request_delete(bt)
        elif finalize and teardown.grace_elapsed(bt):
            teardown.finalize(bt)
    return Outcome.WAIT


def delete_recreated_backup_targets(teardown, resources: dict[str, ManagedResource]) -> Outcome:
    return delete_backup_targets(teardown, resources, finalize=True)


def wait_for_backup_volumes(teardown, resources: dict[str, ManagedResource]) -> Outcome:
    logger.info(f"Waiting for {len(resources)} backup volumes to be cleaned up by their controller")
    return Outcome.WAITING_EXTERNAL


def delete_left_backups(teardown, resources: dict[str, ManagedResource]) -> Outcome:
    """Delete backups whose backup volume is gone; the rest belong to the backup volume controller."""
    for backup in resources.values():
        # already deleting: its finalizer is the backup controller's to remove
        if backup.deletion_timestamp is not None:
            continue
        volume = backup.labels.get(label_key(LABEL_BACKUP_VOLUME))
        target = backup.status.get("backupTargetName", "")
        if volume is None or not target:
            # no backup volume label, or the backup never completed
            teardown.request_delete(backup)
            continue
        try:
            teardown.store.find_backup_volume(target, volume)
        except NotFoundError:
            logger.info(f"[{backup.ref}] Backup volume {volume} is gone, deleting orphaned backup")
            teardown.request_delete(backup)
            continue
        except StoreError as e:
            raise BackupLookupError(backup.name, e) from e
        logger.debug(f"[{backup.ref}] Backup volume {volume} still present, leaving backup")
    return Outcome.WAITING_EXTERNAL


def fail_on_system_backups(teardown, resources: dict[str, ManagedResource]) -> Outcome:
    raise StuckError(ResourceKind.SYSTEM_BACKUP.value, len(resources))


# ---------------------------------------------------------------------------
# Ordering tables
# ---------------------------------------------------------------------------

NON_RECREATABLE_RULES: list[KindRule] = [
    KindRule(ResourceKind.VOLUME),
    KindRule(ResourceKind.SNAPSHOT),
    KindRule(ResourceKind.ENGINE),
    KindRule(ResourceKind.REPLICA),
    KindRule(ResourceKind.BACKUP_TARGET, handler=delete_backup_targets),
    KindRule(ResourceKind.BACKUP_VOLUME, handler=wait_for_backup_volumes),
    KindRule(ResourceKind.BACKUP, handler=delete_left_backups),
    KindRule(ResourceKind.SYSTEM_BACKUP, handler=fail_on_system_backups),
    KindRule(ResourceKind.ENGINE_IMAGE, prepare=mark_default_engine_image, child=engine_image_daemon_set),
    KindRule(ResourceKind.BACKING_IMAGE),
    KindRule(ResourceKind.SHARE_MANAGER, child=share_manager_pod),
    KindRule(ResourceKind.BACKING_IMAGE_MANAGER, child=same_name_pod),
    KindRule(ResourceKind.BACKING_IMAGE_DATA_SOURCE, child=same_name_pod),
    KindRule(ResourceKind.RECURRING_JOB, remove_finalizer=False),
    KindRule(ResourceKind.NODE, prepare=mark_node_for_deletion, grace_gated=False),
    KindRule(ResourceKind.INSTANCE_MANAGER, remove_finalizer=False),
    KindRule(ResourceKind.ORPHAN, remove_finalizer=False),
    KindRule(ResourceKind.SYSTEM_RESTORE, remove_finalizer=False),
]

# Need a running manager to clean up gracefully
MANAGER_DEPENDENT_RULES: list[KindRule] = [
    KindRule(ResourceKind.SUPPORT_BUNDLE, child=support_bundle_manager),
]

# Recreated by the manager while it runs; finished off once it is gone
RECREATABLE_RULES: list[KindRule] = [
    KindRule(ResourceKind.BACKUP_TARGET, handler=delete_recreated_backup_targets),
]
