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

"""Thread-safe object store backing every watch cache."""

import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from apisix_ingress.constants import ENDPOINT_SLICE_SERVICE_LABEL
from apisix_ingress.kube.errors import ResourceNotFound

IndexFunc = Callable[[Dict[str, Any]], List[str]]

POD_IP_INDEX = "ip"
SERVICE_INDEX = "service"


def meta_namespace_key(obj: Dict[str, Any]) -> str:
    """Return ``namespace/name`` (or ``name`` for cluster scoped objects)."""
    metadata = obj.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        raise ValueError("object has no metadata.name")
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_meta_namespace_key(key: str) -> Tuple[str, str]:
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


class ObjectStore:
    """
    Keyed store of raw (camelCase) Kubernetes objects with optional indexes.

    Indexes are computed on write so lookups such as "pod by IP" or "slices of
    a service" stay O(1) for readers.
    """

    def __init__(self, kind: str, indexers: Optional[Dict[str, IndexFunc]] = None):
        self.kind = kind
        self._items: Dict[str, Dict[str, Any]] = {}
        self._indexers: Dict[str, IndexFunc] = dict(indexers or {})
        self._indices: Dict[str, Dict[str, Set[str]]] = {name: {} for name in self._indexers}
        self._lock = threading.RLock()

    def _unindex(self, key: str, obj: Dict[str, Any]) -> None:
        for name, func in self._indexers.items():
            for value in func(obj):
                bucket = self._indices[name].get(value)
                if bucket is None:
                    continue
                bucket.discard(key)
                if not bucket:
                    del self._indices[name][value]

    def _index(self, key: str, obj: Dict[str, Any]) -> None:
        for name, func in self._indexers.items():
            for value in func(obj):
                self._indices[name].setdefault(value, set()).add(key)

    def upsert(self, obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert or replace; return the previous object, if any."""
        key = meta_namespace_key(obj)
        with self._lock:
            previous = self._items.get(key)
            if previous is not None:
                self._unindex(key, previous)
            self._items[key] = obj
            self._index(key, obj)
        return previous

    def delete(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            previous = self._items.pop(key, None)
            if previous is not None:
                self._unindex(key, previous)
        return previous

    def replace(self, objs: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        """Swap the whole content (relist); return the previous content."""
        items = {meta_namespace_key(obj): obj for obj in objs}
        with self._lock:
            previous = self._items
            self._items = {}
            self._indices = {name: {} for name in self._indexers}
            for key, obj in items.items():
                self._items[key] = obj
                self._index(key, obj)
        return previous

    def get_by_key(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._items.get(key)

    def get(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        key = f"{namespace}/{name}" if namespace else name
        return self.get_by_key(key)

    def must_get(self, namespace: str, name: str) -> Dict[str, Any]:
        obj = self.get(namespace, name)
        if obj is None:
            key = f"{namespace}/{name}" if namespace else name
            raise ResourceNotFound(self.kind, key)
        return obj

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._items.values())

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items.keys())

    def by_index(self, index_name: str, value: str) -> List[Dict[str, Any]]:
        with self._lock:
            keys = self._indices.get(index_name, {}).get(value, set())
            return [self._items[key] for key in sorted(keys) if key in self._items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def pod_ip_index(obj: Dict[str, Any]) -> List[str]:
    ip = (obj.get("status") or {}).get("podIP")
    namespace = (obj.get("metadata") or {}).get("namespace", "")
    return [f"{namespace}/{ip}"] if ip else []


def endpoint_slice_service_index(obj: Dict[str, Any]) -> List[str]:
    metadata = obj.get("metadata") or {}
    service = (metadata.get("labels") or {}).get(ENDPOINT_SLICE_SERVICE_LABEL)
    if not service:
        return []
    return [f"{metadata.get('namespace', '')}/{service}"]


__all__ = [
    "ObjectStore",
    "POD_IP_INDEX",
    "SERVICE_INDEX",
    "meta_namespace_key",
    "split_meta_namespace_key",
    "pod_ip_index",
    "endpoint_slice_service_index",
]
