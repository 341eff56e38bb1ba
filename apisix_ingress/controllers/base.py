# Copyright 2025 Alibaba Group Holding Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Common watch -> queue -> worker plumbing of the per-kind controllers.

A controller receives raw objects from an informer, turns them into
``Event``s (after the namespace, ingress class and version guards) and lets
its workers reconcile them: translate, resolve the previous state, diff and
apply the difference to the gateway.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Set

from apisix_ingress.controllers.context import ControllerContext
from apisix_ingress.controllers.events import Event, EventType, event_key, merge_events
from apisix_ingress.controllers.reverse_index import ReverseIndex
from apisix_ingress.controllers.resync import get_sync_delay
from apisix_ingress.kube.errors import ResourceNotFound
from apisix_ingress.kube.informer import DeletedFinalStateUnknown
from apisix_ingress.kube.store import ObjectStore, split_meta_namespace_key
from apisix_ingress.kube.versioned import (
    APISIX_V2,
    UnknownVersionError,
    VersionedResource,
    wrap,
)
from apisix_ingress.sync.manifest import Manifest, diff, dump_diff, sync_manifests
from apisix_ingress.translation.context import TranslateContext
from apisix_ingress.translation.errors import TranslateError

logger = logging.getLogger(__name__)


def plugin_secret_references(namespace: str, plugins: Optional[List[Dict[str, Any]]]) -> Set[str]:
    """Secrets merged into the configuration of enabled plugins."""
    return {
        f"{namespace}/{plugin['secretRef']}"
        for plugin in plugins or []
        if plugin.get("enable") and plugin.get("config") is not None and plugin.get("secretRef")
    }


def is_status_only_change(prev: VersionedResource, curr: VersionedResource) -> bool:
    """True when only the status subresource differs between two versions."""
    if prev.generation != curr.generation or prev.uid != curr.uid:
        return False
    return prev.spec == curr.spec and prev.status != curr.status


class BaseController:
    """
    Shared controller behaviour.

    Subclasses set ``kind`` (the watched source kind) and ``resource`` (the
    metrics label), and implement ``translate`` / ``translate_delete`` /
    ``translate_old`` or override ``reconcile`` entirely.
    """

    kind: str = ""
    resource: str = ""
    records_status: bool = True
    tracks_secrets: bool = False

    def __init__(self, ctx: ControllerContext):
        self.ctx = ctx
        self.queue = ctx.new_queue(self.kind, key_func=event_key, merge_func=merge_events)
        self.workers = ctx.config.controller.workers
        self.secret_index: Optional[ReverseIndex] = ReverseIndex("Secret") if self.tracks_secrets else None
        self._threads: List[threading.Thread] = []

    @property
    def store(self) -> ObjectStore:
        return self.ctx.store(self.kind)

    # Guards

    def is_effective(self, obj: VersionedResource) -> bool:
        if obj.group_version == APISIX_V2:
            return self.ctx.match_crd_ingress_class(obj.ingress_class)
        # older versions predate ingressClassName
        return True

    def _wrap(self, raw: Any) -> Optional[VersionedResource]:
        try:
            return wrap(self.kind, raw)
        except UnknownVersionError as exc:
            logger.error("ignore %s event with unexpected object: %s", self.kind, exc)
            return None

    # Watch callbacks

    def on_add(self, raw: Any) -> None:
        obj = self._wrap(raw)
        if obj is None or not self.ctx.is_watching_namespace(obj.key):
            return
        logger.debug("%s add event arrived: %s", self.kind, obj.key)
        if not self.is_effective(obj):
            logger.debug("ignore noneffective %s add event: %s", self.kind, obj.key)
            return
        self.queue.add(Event(EventType.ADD, obj.key, obj.group_version))
        self.ctx.metrics.incr_events(self.resource, "add")

    def on_update(self, old_raw: Any, new_raw: Any) -> None:
        prev, curr = self._wrap(old_raw), self._wrap(new_raw)
        if prev is None or curr is None:
            return
        if prev.version_token() >= curr.version_token():
            return
        if is_status_only_change(prev, curr):
            return
        if not self.ctx.is_watching_namespace(curr.key):
            return
        logger.debug("%s update event arrived: %s", self.kind, curr.key)
        if not self.is_effective(curr):
            logger.debug("ignore noneffective %s update event: %s", self.kind, curr.key)
            return
        self.queue.add(Event(EventType.UPDATE, curr.key, curr.group_version, old_object=prev))
        self.ctx.metrics.incr_events(self.resource, "update")

    def on_delete(self, raw: Any) -> None:
        if isinstance(raw, DeletedFinalStateUnknown):
            raw = raw.obj
        obj = self._wrap(raw)
        if obj is None or not self.ctx.is_watching_namespace(obj.key):
            return
        logger.debug("%s delete event arrived: %s", self.kind, obj.key)
        if not self.is_effective(obj):
            logger.debug("ignore noneffective %s delete event: %s", self.kind, obj.key)
            return
        self.queue.add(Event(EventType.DELETE, obj.key, obj.group_version, tombstone=obj))
        self.ctx.metrics.incr_events(self.resource, "delete")

    # Workers

    def run(self) -> None:
        """Start the worker threads; they exit once the queue is shut down."""
        logger.info("%s controller started with %d worker(s)", self.kind, self.workers)
        for i in range(self.workers):
            thread = threading.Thread(
                target=self._run_worker,
                name=f"{self.resource}-worker-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def shutdown(self) -> None:
        self.queue.shutdown()

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout)
        logger.info("%s controller exited", self.kind)

    def _run_worker(self) -> None:
        while True:
            event, shutdown = self.queue.get()
            if shutdown:
                return
            self.process(event)
            self.ctx.metrics.set_queue_depth(self.kind, len(self.queue))

    def process(self, event: Event) -> None:
        """Reconcile one event and settle its retry state."""
        err: Optional[Exception] = None
        try:
            self.sync(event)
        except Exception as exc:
            err = exc
        finally:
            self.queue.done(event)
        self.handle_sync_err(event, err)

    def handle_sync_err(self, event: Event, err: Optional[Exception]) -> None:
        if err is None:
            self.queue.forget(event)
            self.ctx.metrics.incr_sync_operation(self.resource, "success")
            return
        if isinstance(err, ResourceNotFound) and err.kind == self.kind and event.type is not EventType.DELETE:
            logger.info("sync %s %s but not found, ignore", self.kind, event.key)
            self.queue.forget(event)
            return
        if isinstance(err, TranslateError):
            logger.error("failed to translate %s %s, giving up: %s", self.kind, event.key, err)
            self.queue.forget(event)
            self.ctx.metrics.incr_sync_operation(self.resource, "failure")
            return
        logger.warning(
            "sync %s %s failed, will retry (attempt %d): %s",
            self.kind,
            event.key,
            self.queue.num_requeues(event) + 1,
            err,
        )
        self.queue.add_rate_limited(event)
        self.ctx.metrics.incr_sync_operation(self.resource, "failure")

    # Reconciliation

    def sync(self, event: Event) -> None:
        namespace, name = split_meta_namespace_key(event.key)
        raw = self.store.get(namespace, name)
        obj = self._wrap(raw) if raw is not None else None
        if obj is None:
            if event.type.is_sync_event():
                return
            if event.type is not EventType.DELETE:
                logger.warning("%s %s was deleted before it can be delivered", self.kind, event.key)
                return
        if event.type is EventType.DELETE:
            if obj is not None:
                logger.warning(
                    "discard the stale %s delete event since %s still exists",
                    self.kind,
                    event.key,
                )
                return
            obj = event.tombstone

        if self.secret_index is not None:
            if event.type is EventType.DELETE:
                self.secret_index.remove(event.key)
            else:
                self.secret_index.set(event.key, self.secret_references(obj))

        err: Optional[Exception] = None
        try:
            self.reconcile(event, obj)
        except Exception as exc:
            err = exc
            raise
        finally:
            if event.type is not EventType.DELETE:
                self.record_status(obj, err)

    def reconcile(self, event: Event, obj: VersionedResource) -> None:
        if event.type is EventType.DELETE:
            added, updated = None, None
            deleted = Manifest.from_context(self.translate_delete(obj))
        else:
            tctx = self.translate(obj)
            logger.debug("translated %s %s: %s", self.kind, event.key, tctx)
            new = Manifest.from_context(tctx)
            if event.type.is_add_event():
                added, updated, deleted = new, None, None
            else:
                added, updated, deleted = diff(new, self.resolve_old(event))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "sync %s %s to cluster, event %s:\n%s",
                self.kind,
                event.key,
                event.type.value,
                dump_diff(added, updated, deleted),
            )
        sync_manifests(
            self.ctx.cluster(),
            added,
            updated,
            deleted,
            should_compare=event.type.is_sync_event(),
        )

    def translate(self, obj: VersionedResource) -> TranslateContext:
        raise NotImplementedError

    def translate_delete(self, obj: VersionedResource) -> TranslateContext:
        raise NotImplementedError

    def translate_old(self, obj: VersionedResource) -> TranslateContext:
        """Rebuild what ``obj`` produced; defaults to a strict translation."""
        return self.translate(obj)

    def resolve_old(self, event: Event) -> Optional[Manifest]:
        """
        The manifest the previous version of the object produced.

        Returns None when it cannot be rebuilt, in which case everything is
        treated as added.
        """
        if event.old_object is None:
            return None
        try:
            return Manifest.from_context(self.translate_old(event.old_object))
        except (TranslateError, ResourceNotFound) as exc:
            logger.warning(
                "failed to resolve the previous state of %s %s, resync it as new: %s",
                self.kind,
                event.key,
                exc,
            )
            return None

    def secret_references(self, obj: VersionedResource) -> Set[str]:
        """``namespace/name`` keys of the Secrets ``obj`` reads."""
        return set()

    def enqueue_keys(self, keys: Iterable[str]) -> int:
        """Re-enqueue cached objects by key as Add events; return how many were queued."""
        queued = 0
        for key in sorted(keys):
            raw = self.store.get_by_key(key)
            if raw is None:
                continue
            obj = self._wrap(raw)
            if obj is None or not self.is_effective(obj):
                continue
            self.queue.add(Event(EventType.ADD, key, obj.group_version))
            queued += 1
        return queued

    # Status

    def record_status(self, obj: Optional[VersionedResource], err: Optional[Exception]) -> None:
        if obj is None or not self.records_status or not self.ctx.status.enabled:
            return
        if self.ctx.status_pool is None:
            self._record_status(obj, err)
            return
        self.ctx.status_pool.submit(self._record_status, obj, err)

    def _record_status(self, obj: VersionedResource, err: Optional[Exception]) -> None:
        raw = self.store.get(obj.namespace, obj.name)
        if raw is None:
            return
        current = self._wrap(raw)
        if current is None or current.resource_version != obj.resource_version:
            # a newer version is on its way through the queue
            return
        try:
            written = self.ctx.status.record(current, err)
        except Exception as exc:
            # status is advisory; the next resync writes it again
            logger.error("failed to record status of %s %s: %s", self.kind, obj.key, exc)
            self.ctx.metrics.incr_status_updates(self.resource, "failure")
            return
        self.ctx.metrics.incr_status_updates(self.resource, "success" if written else "skipped")

    # Periodic resync

    def resource_sync(self, interval: float, namespace: str = "") -> int:
        """Enqueue every cached object as a Sync event spread across ``interval``."""
        objs = self.store.list()
        delay = get_sync_delay(interval, len(objs))
        scheduled = 0
        secrets = {}
        for i, raw in enumerate(objs):
            obj = self._wrap(raw)
            if obj is None or not self.ctx.is_watching_namespace(obj.key):
                continue
            if namespace and obj.namespace != namespace:
                continue
            if not self.is_effective(obj):
                continue
            if self.secret_index is not None:
                secrets[obj.key] = self.secret_references(obj)
            logger.debug("resync %s %s after %.2fs", self.kind, obj.key, delay * i)
            self.queue.add_after(Event(EventType.SYNC, obj.key, obj.group_version), delay * i)
            scheduled += 1
        if self.secret_index is not None and not namespace:
            self.secret_index.rebuild(secrets)
        return scheduled


__all__ = ["BaseController", "is_status_only_change", "plugin_secret_references"]
