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

"""Informer-style watch cache that feeds controllers with change notifications."""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from kubernetes import watch
from kubernetes.client import ApiClient, ApiException

from apisix_ingress.kube.store import ObjectStore, meta_namespace_key

logger = logging.getLogger(__name__)

AddHandler = Callable[[Dict[str, Any]], None]
UpdateHandler = Callable[[Dict[str, Any], Dict[str, Any]], None]
DeleteHandler = Callable[[Any], None]


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Handed to delete handlers when a relist finds an object gone."""

    key: str
    obj: Dict[str, Any]


@dataclass
class _Handlers:
    on_add: Optional[AddHandler] = None
    on_update: Optional[UpdateHandler] = None
    on_delete: Optional[DeleteHandler] = None


def _resource_version(obj: Dict[str, Any]) -> Optional[str]:
    return (obj.get("metadata") or {}).get("resourceVersion")


class ResourceInformer:
    """
    Maintain an in-memory cache of one resource kind via list + watch.

    ``list_func`` is any kubernetes list call (``CoreV1Api.list_service_for_all_namespaces``,
    ``CustomObjectsApi.list_cluster_custom_object``...). Objects are normalised
    to camelCase dictionaries so typed API models and custom objects look alike.
    """

    def __init__(
        self,
        kind: str,
        list_func: Callable[..., Any],
        list_args: Sequence[Any] = (),
        list_kwargs: Optional[Dict[str, Any]] = None,
        store: Optional[ObjectStore] = None,
        resync_period_seconds: int = 300,
        watch_timeout_seconds: int = 60,
        enable_watch: bool = True,
        api_client: Optional[ApiClient] = None,
    ):
        self.kind = kind
        self.list_func = list_func
        self.list_args = tuple(list_args)
        self.list_kwargs = dict(list_kwargs or {})
        self.store = store or ObjectStore(kind)
        self.resync_period_seconds = resync_period_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.enable_watch = enable_watch
        self._api_client = api_client or ApiClient()

        self._handlers: List[_Handlers] = []
        self._lock = threading.RLock()
        self._resource_version: Optional[str] = None
        self._has_synced = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def has_synced(self) -> bool:
        """Return True once an initial list has completed."""
        return self._has_synced

    def add_event_handler(
        self,
        on_add: Optional[AddHandler] = None,
        on_update: Optional[UpdateHandler] = None,
        on_delete: Optional[DeleteHandler] = None,
    ) -> None:
        with self._lock:
            self._handlers.append(_Handlers(on_add, on_update, on_delete))

    def start(self) -> None:
        """Start the background watch thread if not already running."""
        if self._thread and self._thread.is_alive():
            return

        self._thread = threading.Thread(
            target=self._run,
            name=f"informer-{self.kind}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background watch thread."""
        self._stop_event.set()

    def get(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.store.get(namespace, name)

    def list(self) -> List[Dict[str, Any]]:
        return self.store.list()

    def _normalize(self, obj: Any) -> Optional[Dict[str, Any]]:
        if obj is None:
            return None
        if isinstance(obj, dict):
            return obj
        try:
            return self._api_client.sanitize_for_serialization(obj)
        except (TypeError, ValueError, AttributeError):
            logger.warning("Informer %s received an object it cannot serialize: %r", self.kind, obj)
            return None

    def _run(self) -> None:
        backoff = 1.0
        while not self._stop_event.is_set():
            try:
                if not self._has_synced:
                    self._full_resync()
                    backoff = 1.0

                if not self.enable_watch:
                    self._stop_event.wait(self.resync_period_seconds)
                    self._has_synced = False
                    continue

                self._run_watch_loop()
                backoff = 1.0
            except ApiException as exc:
                if exc.status == 410:
                    # Resource version too old; force a fresh list on next loop.
                    self._resource_version = None
                    self._has_synced = False
                else:
                    logger.warning("Informer watch error for %s: %s", self.kind, exc, exc_info=True)
                    self._has_synced = False
                    self._stop_event.wait(min(backoff, 30.0))
                    backoff = min(backoff * 2, 30.0)
            except Exception as exc:  # pragma: no cover - keeps the watch thread alive
                logger.warning("Unexpected informer error for %s: %s", self.kind, exc, exc_info=True)
                self._has_synced = False
                self._stop_event.wait(min(backoff, 30.0))
                backoff = min(backoff * 2, 30.0)

    def _full_resync(self) -> None:
        """List everything, swap the store and replay the difference to handlers."""
        resp = self._normalize(self.list_func(*self.list_args, **self.list_kwargs)) or {}
        items = [item for item in (self._normalize(i) for i in resp.get("items") or []) if item]
        resource_version = (resp.get("metadata") or {}).get("resourceVersion")

        # list items of typed APIs carry neither apiVersion nor kind
        item_api_version = resp.get("apiVersion")
        for item in items:
            if item_api_version and "apiVersion" not in item:
                item["apiVersion"] = item_api_version

        previous = self.store.replace(items)
        with self._lock:
            if resource_version:
                self._resource_version = resource_version
            self._has_synced = True

        current_keys = set()
        for item in items:
            key = meta_namespace_key(item)
            current_keys.add(key)
            old = previous.get(key)
            if old is None:
                self._dispatch_add(item)
            elif _resource_version(old) != _resource_version(item):
                self._dispatch_update(old, item)
        for key, old in previous.items():
            if key not in current_keys:
                self._dispatch_delete(DeletedFinalStateUnknown(key=key, obj=old))

    def _run_watch_loop(self) -> None:
        """Stream watch events to keep the cache fresh."""
        w = watch.Watch()
        try:
            for event in w.stream(
                self.list_func,
                *self.list_args,
                resource_version=self._resource_version,
                timeout_seconds=self.watch_timeout_seconds,
                **self.list_kwargs,
            ):
                if self._stop_event.is_set():
                    break
                self._handle_event(event)
        finally:
            w.stop()

    def _handle_event(self, event: Dict[str, Any]) -> None:
        obj = self._normalize(event.get("object"))
        if obj is None:
            return

        metadata = obj.get("metadata", {})
        if not metadata.get("name"):
            return

        event_type = event.get("type")
        if event_type == "ERROR":
            logger.warning("Informer %s received watch error: %s", self.kind, obj)
            return

        if event_type == "DELETED":
            previous = self.store.delete(meta_namespace_key(obj))
            self._dispatch_delete(previous or obj)
        else:
            previous = self.store.upsert(obj)
            if previous is None:
                self._dispatch_add(obj)
            else:
                self._dispatch_update(previous, obj)

        with self._lock:
            if metadata.get("resourceVersion"):
                self._resource_version = metadata["resourceVersion"]

    def _snapshot_handlers(self) -> List[_Handlers]:
        with self._lock:
            return list(self._handlers)

    def _dispatch_add(self, obj: Dict[str, Any]) -> None:
        for handlers in self._snapshot_handlers():
            if handlers.on_add:
                handlers.on_add(obj)

    def _dispatch_update(self, old: Dict[str, Any], new: Dict[str, Any]) -> None:
        for handlers in self._snapshot_handlers():
            if handlers.on_update:
                handlers.on_update(old, new)

    def _dispatch_delete(self, obj: Any) -> None:
        for handlers in self._snapshot_handlers():
            if handlers.on_delete:
                handlers.on_delete(obj)


__all__ = ["ResourceInformer", "DeletedFinalStateUnknown"]
