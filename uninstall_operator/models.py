"""
Pydantic models for managed resources, workloads, pass results and the status API.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ResourceKind(str, Enum):
    VOLUME = "Volume"
    SNAPSHOT = "Snapshot"
    ENGINE = "Engine"
    REPLICA = "Replica"
    BACKUP_TARGET = "BackupTarget"
    BACKUP_VOLUME = "BackupVolume"
    BACKUP = "Backup"
    SYSTEM_BACKUP = "SystemBackup"
    ENGINE_IMAGE = "EngineImage"
    BACKING_IMAGE = "BackingImage"
    SHARE_MANAGER = "ShareManager"
    BACKING_IMAGE_MANAGER = "BackingImageManager"
    BACKING_IMAGE_DATA_SOURCE = "BackingImageDataSource"
    RECURRING_JOB = "RecurringJob"
    NODE = "Node"
    INSTANCE_MANAGER = "InstanceManager"
    ORPHAN = "Orphan"
    SYSTEM_RESTORE = "SystemRestore"
    SUPPORT_BUNDLE = "SupportBundle"

    @property
    def plural(self) -> str:
        return self.value.lower() + "s"

    def crd_name(self, group: str) -> str:
        return f"{self.plural}.{group}"


class ManagedResource(BaseModel):
    """One custom resource instance, parsed from the raw API dict."""
    kind: ResourceKind
    name: str
    namespace: Optional[str] = None
    resource_version: Optional[str] = None
    deletion_timestamp: Optional[datetime] = None
    finalizers: List[str] = []
    annotations: Dict[str, str] = {}
    labels: Dict[str, str] = {}
    spec: Dict[str, Any] = {}
    status: Dict[str, Any] = {}

    @classmethod
    def from_object(cls, kind: ResourceKind, item: dict) -> "ManagedResource":
        metadata = item.get("metadata", {})
        return cls(
            kind=kind,
            name=metadata["name"],
            namespace=metadata.get("namespace"),
            resource_version=metadata.get("resourceVersion"),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            finalizers=metadata.get("finalizers") or [],
            annotations=metadata.get("annotations") or {},
            labels=metadata.get("labels") or {},
            spec=item.get("spec") or {},
            status=item.get("status") or {},
        )

    @property
    def ref(self) -> str:
        return f"{self.kind.value}/{self.name}"


class Workload(BaseModel):
    """DaemonSet or Deployment view: only what readiness and teardown need."""
    kind: str
    name: str
    namespace: Optional[str] = None
    deletion_timestamp: Optional[datetime] = None
    desired: int = 0
    ready: int = 0

    @classmethod
    def from_daemon_set(cls, ds) -> "Workload":
        status = ds.status
        return cls(
            kind="DaemonSet",
            name=ds.metadata.name,
            namespace=ds.metadata.namespace,
            deletion_timestamp=ds.metadata.deletion_timestamp,
            desired=(status.desired_number_scheduled or 0) if status else 0,
            ready=(status.number_ready or 0) if status else 0,
        )

    @classmethod
    def from_deployment(cls, deploy) -> "Workload":
        status = deploy.status
        return cls(
            kind="Deployment",
            name=deploy.metadata.name,
            namespace=deploy.metadata.namespace,
            deletion_timestamp=deploy.metadata.deletion_timestamp,
            desired=(deploy.spec.replicas or 0) if deploy.spec else 0,
            ready=(status.ready_replicas or 0) if status else 0,
        )


class Outcome(str, Enum):
    DONE = "Done"
    WAIT = "Wait"
    WAITING_EXTERNAL = "WaitingExternal"


class PassResult(BaseModel):
    outcome: Outcome
    phase: str
    kind: Optional[ResourceKind] = None
    message: str = ""


class ProgressEvent(BaseModel):
    timestamp: str
    event: str  # PASS_DONE, PASS_WAIT, PASS_FAILED, ...
    phase: str = ""
    message: str = ""


class StatusResponse(BaseModel):
    namespace: str
    force: bool
    gracePeriodSeconds: float
    preconditionsMet: bool
    passes: int
    failures: int
    lastOutcome: Optional[str] = None
    lastPhase: Optional[str] = None
    lastError: Optional[str] = None
    done: bool = False
    events: List[ProgressEvent] = []
