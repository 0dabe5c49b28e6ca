"""Watch loops and worker pool driving the PopulatorReconciler.

One background thread per watched kind streams events (resuming from the last
seen resourceVersion, like the pod event monitor) into the claim index and
the work queue. Worker threads drain the queue; the queue guarantees a PVC is
reconciled by one worker at a time, so the reconciler needs no locking.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from kubernetes import watch
from kubernetes.client.rest import ApiException

from common.k8s import KubeClients, SOURCE_GROUP, SOURCE_PLURAL, SOURCE_VERSION
from populator.claims import Request
from populator.config import PopulatorSettings
from populator.events import (
    EventType,
    ResourceKind,
    WatchEvent,
    claim_event,
    requests_for_event,
)
from populator.indexer import ClaimIndex
from populator.reconciler import PopulatorReconciler
from populator.workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 1.0
ERROR_RECONNECT_DELAY = 5.0


class PopulatorController:
    """Connects watches, the claim index, the work queue and the reconciler."""

    def __init__(self, clients: KubeClients, settings: PopulatorSettings,
                 reconciler: PopulatorReconciler | None = None,
                 queue: RateLimitingQueue | None = None):
        self.clients = clients
        self.settings = settings
        self.reconciler = reconciler or PopulatorReconciler(clients)
        self.queue = queue or RateLimitingQueue()
        self.index = ClaimIndex()
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    # --- event handling ---------------------------------------------------------

    def handle_event(self, event: WatchEvent) -> list[Request]:
        """Update the index and enqueue whatever the event triggers."""
        if event.kind in (ResourceKind.CLAIM, ResourceKind.SHADOW_CLAIM):
            if event.type is EventType.DELETED:
                self.index.delete(event.obj)
            else:
                self.index.upsert(event.obj)

        requests = requests_for_event(event, self.index)
        for request in requests:
            self.queue.add(request)
        return requests

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Reconcile one queued request. Returns False once the queue shuts down."""
        request = self.queue.get(timeout)
        if request is None:
            return not self.queue.shutting_down
        try:
            self.reconciler.reconcile(request)
        except ApiException as exc:
            delay = self.queue.add_rate_limited(request)
            logger.warning(f"Reconcile of {request} failed ({exc.status} {exc.reason}), "
                           f"retrying in {delay:.3f}s")
        except Exception as exc:
            delay = self.queue.add_rate_limited(request)
            logger.exception(f"Reconcile of {request} failed: {exc}, retrying in {delay:.3f}s")
        else:
            self.queue.forget(request)
        finally:
            self.queue.done(request)
        return True

    # --- threads ------------------------------------------------------------------

    def _watch_targets(self) -> list[tuple]:
        """(name, list function, positional args, event factory) per watched kind."""
        core = self.clients.core
        custom = self.clients.custom
        ns = self.settings.namespace

        def source_event(event_type: str, obj: Any) -> WatchEvent:
            return WatchEvent(ResourceKind.SOURCE, EventType(event_type), obj)

        def storage_class_event(event_type: str, obj: Any) -> WatchEvent:
            return WatchEvent(ResourceKind.STORAGE_CLASS, EventType(event_type), obj)

        def pvc_event(event_type: str, obj: Any) -> WatchEvent:
            return claim_event(EventType(event_type), obj)

        if ns:
            pvc_watch = ("pvcs", core.list_namespaced_persistent_volume_claim, (ns,), pvc_event)
            source_watch = ("replicationdestinations", custom.list_namespaced_custom_object,
                            (SOURCE_GROUP, SOURCE_VERSION, ns, SOURCE_PLURAL), source_event)
        else:
            pvc_watch = ("pvcs", core.list_persistent_volume_claim_for_all_namespaces, (), pvc_event)
            source_watch = ("replicationdestinations", custom.list_cluster_custom_object,
                            (SOURCE_GROUP, SOURCE_VERSION, SOURCE_PLURAL), source_event)
        sc_watch = ("storageclasses", self.clients.storage.list_storage_class, (), storage_class_event)
        return [pvc_watch, sc_watch, source_watch]

    def _watch_loop(self, name: str, list_fn: Callable[..., Any], args: tuple,
                    to_event: Callable[[str, Any], WatchEvent]) -> None:
        """Stream events for one kind until stop_event is set, reconnecting on timeouts."""
        latest_resource_version = None

        while not self.stop_event.is_set():
            w = watch.Watch()
            try:
                kwargs: dict[str, Any] = {'timeout_seconds': self.settings.watch_timeout_seconds}
                if latest_resource_version:
                    kwargs['resource_version'] = latest_resource_version

                for event in w.stream(list_fn, *args, **kwargs):
                    if self.stop_event.is_set():
                        break
                    raw = event.get('raw_object') or {}
                    rv = (raw.get('metadata') or {}).get('resourceVersion')
                    if rv:
                        latest_resource_version = rv
                    if event['type'] not in EventType.__members__:
                        continue  # BOOKMARK
                    self.handle_event(to_event(event['type'], event['object']))

            except ApiException as exc:
                if exc.status == 410:
                    # resourceVersion too old, relist
                    latest_resource_version = None
                    time.sleep(RECONNECT_DELAY)
                    continue
                if not self.stop_event.is_set():
                    logger.warning(f"Watch on {name} interrupted: {exc.reason}")
                self.stop_event.wait(ERROR_RECONNECT_DELAY)
                continue
            except Exception as exc:
                if not self.stop_event.is_set():
                    logger.warning(f"Watch on {name} failed: {exc}")
                self.stop_event.wait(ERROR_RECONNECT_DELAY)
                continue
            finally:
                w.stop()

            if not self.stop_event.is_set():
                time.sleep(RECONNECT_DELAY)

    def _worker(self) -> None:
        while not self.stop_event.is_set():
            if not self.process_next_item(timeout=1.0):
                return

    def start(self) -> None:
        for name, list_fn, args, to_event in self._watch_targets():
            thread = threading.Thread(
                target=self._watch_loop,
                args=(name, list_fn, args, to_event),
                name=f"watch-{name}",
                daemon=True,
            )
            self._threads.append(thread)
        for i in range(self.settings.max_concurrent_reconciles):
            self._threads.append(threading.Thread(target=self._worker, name=f"worker-{i}", daemon=True))
        for thread in self._threads:
            thread.start()
        logger.info(f"Populator controller started with {self.settings.max_concurrent_reconciles} "
                    f"worker(s), namespace: {self.settings.namespace or 'all'}")

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout=timeout)
        logger.info("Populator controller stopped")

    def run(self) -> None:
        """Start and block until stop_event is set (e.g. by a signal handler)."""
        self.start()
        self.stop_event.wait()
        self.stop()
