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
Thin APISIX Admin API client.

One ``Cluster`` per gateway cluster exposes a ``ResourceClient`` per object
kind with Get/List/Create/Update/Delete verbs. ``Create``/``Update`` accept a
``should_compare`` hint: when set, the current object is read first and the
write is skipped if the content already matches, which is what a full resync
pass wants ("ensure present", not "must be new").
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, Field

from apisix_ingress.apisix.models import (
    SSL,
    Consumer,
    GatewayObject,
    GlobalRule,
    PluginConfig,
    Route,
    StreamRoute,
    Upstream,
)
from apisix_ingress.constants import ReconcileErrorCodes

logger = logging.getLogger(__name__)

ADMIN_KEY_HEADER = "X-API-KEY"

T = TypeVar("T", bound=GatewayObject)


class GatewayError(Exception):
    """Admin API call failed (transport error or unexpected status)."""

    code = ReconcileErrorCodes.GATEWAY_REQUEST_FAILED

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(GatewayError):
    code = ReconcileErrorCodes.GATEWAY_OBJECT_NOT_FOUND


class StillInUseError(GatewayError):
    """Deleting an upstream/plugin config that other objects still reference."""

    code = ReconcileErrorCodes.GATEWAY_OBJECT_IN_USE


class ClusterOptions(BaseModel):
    name: str
    base_url: str
    admin_key: Optional[str] = None
    timeout: float = Field(default=5.0, gt=0)


def _unwrap_item(item: Any) -> Optional[Dict[str, Any]]:
    # v3 answers {"key":..., "value": {...}}; v2 nests it under "node".
    if not isinstance(item, dict):
        return None
    if "node" in item and isinstance(item["node"], dict):
        item = item["node"]
    value = item.get("value")
    return value if isinstance(value, dict) else None


def _unwrap_list(body: Any) -> List[Dict[str, Any]]:
    if not isinstance(body, dict):
        return []
    if isinstance(body.get("list"), list):
        items = body["list"]
    elif isinstance(body.get("node"), dict):
        items = body["node"].get("nodes") or []
    else:
        items = []
    values = []
    for item in items:
        value = _unwrap_item(item)
        if value is not None:
            values.append(value)
    return values


class ResourceClient(Generic[T]):
    """Verbs for one object kind on one cluster."""

    def __init__(self, cluster: "Cluster", path: str, model: Type[T]):
        self.cluster = cluster
        self.path = path
        self.model = model

    def _url(self, identity: Optional[str] = None) -> str:
        if identity:
            return f"/{self.path}/{identity}"
        return f"/{self.path}"

    def get(self, identity: str) -> Optional[T]:
        """Return the object or None when the gateway does not know it."""
        resp = self.cluster.request("GET", self._url(identity))
        if resp.status_code == 404:
            return None
        self.cluster.raise_for_status(resp, f"get {self.model.kind} {identity}")
        value = _unwrap_item(resp.json())
        if value is None:
            return None
        return self.model.model_validate(value)

    def list(self) -> List[T]:
        resp = self.cluster.request("GET", self._url())
        if resp.status_code == 404:
            return []
        self.cluster.raise_for_status(resp, f"list {self.model.kind}")
        return [self.model.model_validate(value) for value in _unwrap_list(resp.json())]

    def _put(self, obj: T) -> T:
        if isinstance(obj, Consumer):
            url = self._url()
        else:
            url = self._url(obj.identity())
        resp = self.cluster.request("PUT", url, json=obj.to_payload())
        self.cluster.raise_for_status(resp, f"put {self.model.kind} {obj.identity()}")
        value = _unwrap_item(resp.json()) if resp.content else None
        return self.model.model_validate(value) if value else obj

    def _unchanged(self, obj: T) -> Optional[T]:
        current = self.get(obj.identity())
        if current is not None and current.model_dump() == obj.model_dump():
            return current
        return None

    def create(self, obj: T, should_compare: bool = False) -> T:
        if should_compare:
            current = self._unchanged(obj)
            if current is not None:
                logger.debug(
                    "%s %s already present on cluster %s, skip create",
                    self.model.kind,
                    obj.identity(),
                    self.cluster.name,
                )
                return current
        logger.debug("create %s %s on cluster %s", self.model.kind, obj.identity(), self.cluster.name)
        return self._put(obj)

    def update(self, obj: T, should_compare: bool = False) -> T:
        if should_compare:
            current = self._unchanged(obj)
            if current is not None:
                return current
        logger.debug("update %s %s on cluster %s", self.model.kind, obj.identity(), self.cluster.name)
        return self._put(obj)

    def delete(self, obj: T) -> None:
        identity = obj.identity()
        resp = self.cluster.request("DELETE", self._url(identity))
        if resp.status_code == 404:
            logger.debug("%s %s already absent on cluster %s", self.model.kind, identity, self.cluster.name)
            return
        if resp.status_code == 400 and "still using" in resp.text:
            raise StillInUseError(
                f"{self.model.kind} {identity} is still in use: {resp.text}",
                status_code=resp.status_code,
            )
        self.cluster.raise_for_status(resp, f"delete {self.model.kind} {identity}")


class Cluster:
    """A single APISIX cluster reachable through its Admin API."""

    def __init__(self, options: ClusterOptions, transport: Optional[httpx.BaseTransport] = None):
        self.name = options.name
        self.options = options
        headers = {"Content-Type": "application/json"}
        if options.admin_key:
            headers[ADMIN_KEY_HEADER] = options.admin_key
        self._http = httpx.Client(
            base_url=options.base_url.rstrip("/"),
            headers=headers,
            timeout=options.timeout,
            transport=transport,
        )
        self.routes: ResourceClient[Route] = ResourceClient(self, "routes", Route)
        self.stream_routes: ResourceClient[StreamRoute] = ResourceClient(self, "stream_routes", StreamRoute)
        self.upstreams: ResourceClient[Upstream] = ResourceClient(self, "upstreams", Upstream)
        self.ssls: ResourceClient[SSL] = ResourceClient(self, "ssls", SSL)
        self.plugin_configs: ResourceClient[PluginConfig] = ResourceClient(self, "plugin_configs", PluginConfig)
        self.global_rules: ResourceClient[GlobalRule] = ResourceClient(self, "global_rules", GlobalRule)
        self.consumers: ResourceClient[Consumer] = ResourceClient(self, "consumers", Consumer)

    def resource(self, kind: str) -> ResourceClient:
        """Return the client for a canonical object kind (``route``, ``ssl``...)."""
        mapping = {
            Route.kind: self.routes,
            StreamRoute.kind: self.stream_routes,
            Upstream.kind: self.upstreams,
            SSL.kind: self.ssls,
            PluginConfig.kind: self.plugin_configs,
            GlobalRule.kind: self.global_rules,
            Consumer.kind: self.consumers,
        }
        try:
            return mapping[kind]
        except KeyError:
            raise ValueError(f"unknown gateway object kind {kind!r}") from None

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise GatewayError(f"{method} {url} on cluster {self.name} failed: {exc}") from exc

    def raise_for_status(self, resp: httpx.Response, action: str) -> None:
        if resp.status_code == 404:
            raise NotFoundError(f"{action}: not found", status_code=404)
        if resp.status_code >= 300:
            raise GatewayError(
                f"{action} failed with status {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
            )

    def ping(self) -> bool:
        try:
            resp = self._http.get("/routes")
        except httpx.HTTPError:
            return False
        return resp.status_code < 500

    def close(self) -> None:
        self._http.close()


class AdminClient:
    """Registry of gateway clusters keyed by name."""

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self._transport = transport
        self._clusters: Dict[str, Cluster] = {}
        self._lock = threading.Lock()

    def add_cluster(self, options: ClusterOptions) -> Cluster:
        cluster = Cluster(options, transport=self._transport)
        with self._lock:
            previous = self._clusters.get(options.name)
            self._clusters[options.name] = cluster
        if previous is not None:
            previous.close()
        logger.info("registered APISIX cluster %s (%s)", options.name, options.base_url)
        return cluster

    def update_cluster(self, options: ClusterOptions) -> Cluster:
        with self._lock:
            known = options.name in self._clusters
        if not known:
            raise GatewayError(f"cluster {options.name} not found")
        return self.add_cluster(options)

    def cluster(self, name: str) -> Cluster:
        with self._lock:
            cluster = self._clusters.get(name)
        if cluster is None:
            err = GatewayError(f"cluster {name} not found")
            err.code = ReconcileErrorCodes.GATEWAY_CLUSTER_UNKNOWN
            raise err
        return cluster

    def close(self) -> None:
        with self._lock:
            clusters = list(self._clusters.values())
            self._clusters.clear()
        for cluster in clusters:
            cluster.close()


__all__ = [
    "GatewayError",
    "NotFoundError",
    "StillInUseError",
    "ClusterOptions",
    "ResourceClient",
    "Cluster",
    "AdminClient",
]
