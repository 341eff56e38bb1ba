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
ApisixUpstream controller.

Upstreams are owned by the routes that reference them; an ApisixUpstream only
shapes their configuration. This controller therefore never creates or deletes
gateway upstreams. It rewrites the configuration of the ones that exist and
leaves their nodes alone (endpoint changes are handled elsewhere).
"""

import logging
from typing import Any, Dict, Optional, Set

from apisix_ingress.apisix.client import Cluster
from apisix_ingress.apisix.models import (
    RESOLVE_GRANULARITY_ENDPOINT,
    RESOLVE_GRANULARITY_SERVICE,
    Upstream,
    compose_external_upstream_name,
    compose_upstream_name,
    gen_id,
)
from apisix_ingress.controllers.base import BaseController
from apisix_ingress.controllers.context import KIND_SERVICE, ControllerContext
from apisix_ingress.controllers.events import Event, EventType
from apisix_ingress.controllers.reverse_index import ReverseIndex
from apisix_ingress.kube.store import meta_namespace_key
from apisix_ingress.kube.versioned import APISIX_V2, KIND_UPSTREAM, VersionedResource
from apisix_ingress.translation.upstream import EXTERNAL_TYPE_SERVICE

logger = logging.getLogger(__name__)


def external_service_references(au: Optional[VersionedResource]) -> Set[str]:
    if au is None:
        return set()
    return {
        f"{au.namespace}/{node['name']}"
        for node in au.spec.get("externalNodes") or []
        if node.get("type") == EXTERNAL_TYPE_SERVICE and node.get("name")
    }


class UpstreamController(BaseController):
    kind = KIND_UPSTREAM
    resource = "upstream"

    def __init__(self, ctx: ControllerContext):
        super().__init__(ctx)
        self.service_index = ReverseIndex(KIND_SERVICE)

    def reconcile(self, event: Event, obj: VersionedResource) -> None:
        self._sync_relationship(event, obj)
        spec = obj.spec
        if not spec:
            return
        should_compare = event.type.is_sync_event()
        cluster = self.ctx.cluster()
        if obj.group_version == APISIX_V2 and (spec.get("externalNodes") or spec.get("discovery")):
            if event.type is EventType.DELETE:
                # the referencing routes fail (and clean up) once the object is gone
                return
            self._sync_external(cluster, obj, should_compare)
            return
        self._sync_service_upstreams(cluster, obj, event.type is EventType.DELETE, should_compare)

    def _sync_external(self, cluster: Cluster, au: VersionedResource, should_compare: bool) -> None:
        name = compose_external_upstream_name(au.namespace, au.name)
        existing = cluster.upstreams.get(gen_id(name))
        if existing is None:
            logger.debug("external upstream %s not referenced by any route yet", name)
            return
        ups = self.ctx.translator.translate_external_apisix_upstream(au.namespace, au.name)
        ups.desc = existing.desc
        ups.labels = existing.labels
        cluster.upstreams.update(ups, should_compare=should_compare)

    def _sync_service_upstreams(
        self, cluster: Cluster, au: VersionedResource, deleting: bool, should_compare: bool
    ) -> None:
        service = self.ctx.translator.services.must_get(au.namespace, au.name)
        port_settings: Dict[int, Dict[str, Any]] = {
            int(item["port"]): item for item in au.spec.get("portLevelSettings") or [] if "port" in item
        }
        subsets = [""] + [item.get("name", "") for item in au.spec.get("subsets") or []]
        for port in (service.get("spec") or {}).get("ports") or []:
            number = int(port.get("port") or 0)
            cfg: Dict[str, Any] = {}
            if not deleting:
                cfg = port_settings.get(number, au.spec)
            for subset in subsets:
                for granularity in (RESOLVE_GRANULARITY_ENDPOINT, RESOLVE_GRANULARITY_SERVICE):
                    name = compose_upstream_name(au.namespace, au.name, subset, number, granularity)
                    self._update_upstream(cluster, name, cfg, au, should_compare)

    def _update_upstream(
        self,
        cluster: Cluster,
        name: str,
        cfg: Dict[str, Any],
        au: VersionedResource,
        should_compare: bool,
    ) -> None:
        existing = cluster.upstreams.get(gen_id(name))
        if existing is None:
            return
        ups: Upstream = self.ctx.translator.translate_upstream_config(cfg, au.namespace, au.group_version)
        ups.id = existing.id
        ups.name = existing.name
        ups.desc = existing.desc
        ups.labels = existing.labels
        ups.nodes = existing.nodes
        logger.debug("updating upstream %s since ApisixUpstream %s changed", name, au.key)
        cluster.upstreams.update(ups, should_compare=should_compare)

    # External services

    def _sync_relationship(self, event: Event, obj: VersionedResource) -> None:
        if event.type is EventType.DELETE:
            self.service_index.remove(event.key)
        else:
            self.service_index.set(event.key, external_service_references(obj))

    def on_service_update(self, old_raw: Any, new_raw: Any) -> None:
        key = meta_namespace_key(new_raw)
        if not self.ctx.is_watching_namespace(key):
            return
        if (old_raw.get("spec") or {}) == (new_raw.get("spec") or {}):
            return
        dependents = self.service_index.dependents(key)
        if dependents:
            logger.debug("Service %s changed, resync ApisixUpstreams %s", key, sorted(dependents))
            self.enqueue_keys(dependents)

    def resource_sync(self, interval: float, namespace: str = "") -> int:
        mapping = {}
        for raw in self.store.list():
            au = self._wrap(raw)
            if au is not None:
                mapping[au.key] = external_service_references(au)
        self.service_index.rebuild(mapping)
        return super().resource_sync(interval, namespace)


__all__ = ["UpstreamController", "external_service_references"]
