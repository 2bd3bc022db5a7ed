"""
Change feed — list-then-watch subscriptions on top of kubernetes.watch.

Each subscription runs in its own daemon thread:
  1. List the source and deliver every object as ADDED
  2. Mark itself synced
  3. Watch from the listed resourceVersion, delivering ADDED / MODIFIED / DELETED
  4. On an expired resourceVersion (410), relist; on other errors, back off and relist

Handlers run on the subscription thread and must only do cheap, thread-safe work.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import urllib3
from kubernetes import watch
from kubernetes.client import ApiException

from uninstall_operator.models import ResourceKind

logger = logging.getLogger("change_feed")

RELIST_DELAY = 5.0

DAEMON_SET = "DaemonSet"
DEPLOYMENT = "Deployment"
CSI_DRIVER = "CSIDriver"


@dataclass(frozen=True)
class WatchSource:
    resource: str  # ResourceKind value, DaemonSet, Deployment or CSIDriver


@dataclass(frozen=True)
class ChangeEvent:
    type: str  # ADDED, MODIFIED, DELETED
    resource: str
    name: str
    namespace: Optional[str] = None


def _object_meta(obj) -> tuple[str, Optional[str], Optional[str]]:
    """(name, namespace, resourceVersion) for a raw dict or a client model."""
    if isinstance(obj, dict):
        metadata = obj.get("metadata", {})
        return metadata.get("name", ""), metadata.get("namespace"), metadata.get("resourceVersion")
    metadata = obj.metadata
    return metadata.name, metadata.namespace, metadata.resource_version


def _list_meta(result) -> tuple[list, Optional[str]]:
    if isinstance(result, dict):
        return result.get("items", []), result.get("metadata", {}).get("resourceVersion")
    return result.items, result.metadata.resource_version


class Subscription:
    def __init__(self, source: WatchSource, list_fn: Callable, list_args: tuple,
                 handler: Callable[[ChangeEvent], None], watch_timeout: int = 300):
        self.source = source
        self._list_fn = list_fn
        self._list_args = list_args
        self._handler = handler
        self._watch_timeout = watch_timeout
        self._synced = threading.Event()
        self._stopped = threading.Event()
        self._watch: Optional[watch.Watch] = None
        self._thread = threading.Thread(
            target=self._run, name=f"watch-{source.resource}", daemon=True
        )

    def start(self):
        self._thread.start()

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def cancel(self):
        self._stopped.set()
        if self._watch is not None:
            self._watch.stop()

    def _deliver(self, event_type: str, obj):
        name, namespace, _ = _object_meta(obj)
        self._handler(ChangeEvent(event_type, self.source.resource, name, namespace))

    def _run(self):
        while not self._stopped.is_set():
            try:
                resource_version = self._list()
                self._synced.set()
                self._watch_from(resource_version)
            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{self.source.resource}: resourceVersion expired, relisting")
                    continue
                logger.warning(f"{self.source.resource}: watch failed ({e.status} {e.reason}), relisting")
            except urllib3.exceptions.HTTPError as e:
                logger.warning(f"{self.source.resource}: connection error ({e}), relisting")
            except Exception as e:
                logger.error(f"{self.source.resource}: unexpected watch error: {e}", exc_info=True)
            self._stopped.wait(RELIST_DELAY)

    def _list(self) -> Optional[str]:
        items, resource_version = _list_meta(self._list_fn(*self._list_args))
        for item in items:
            self._deliver("ADDED", item)
        return resource_version

    def _watch_from(self, resource_version: Optional[str]):
        while not self._stopped.is_set():
            self._watch = watch.Watch()
            for event in self._watch.stream(
                self._list_fn, *self._list_args,
                resource_version=resource_version,
                timeout_seconds=self._watch_timeout,
            ):
                if self._stopped.is_set():
                    self._watch.stop()
                    return
                if event["type"] == "ERROR":
                    raise ApiException(status=event["raw_object"].get("code", 500),
                                       reason=event["raw_object"].get("message", "watch error"))
                obj = event["object"]
                _, _, rv = _object_meta(obj)
                resource_version = rv or resource_version
                self._deliver(event["type"], obj)
            # Server-side timeout: resume from the last seen resourceVersion


class KubernetesChangeFeed:
    """Maps watch sources onto the list functions of the Kubernetes client."""

    def __init__(self, service, watch_timeout: int = 300):
        self.service = service
        self.watch_timeout = watch_timeout

    def _list_target(self, source: WatchSource) -> tuple[Callable, tuple]:
        if source.resource == DAEMON_SET:
            return self.service.apps_api().list_daemon_set_for_all_namespaces, ()
        if source.resource == DEPLOYMENT:
            return self.service.apps_api().list_deployment_for_all_namespaces, ()
        if source.resource == CSI_DRIVER:
            return self.service.storage_api().list_csi_driver, ()
        kind = ResourceKind(source.resource)
        return self.service.custom_api().list_namespaced_custom_object, (
            self.service.group, self.service.version, self.service.namespace, kind.plural,
        )

    def subscribe(self, source: WatchSource, handler: Callable[[ChangeEvent], None]) -> Subscription:
        list_fn, args = self._list_target(source)
        subscription = Subscription(source, list_fn, args, handler, self.watch_timeout)
        subscription.start()
        logger.info(f"Watching {source.resource}")
        return subscription
