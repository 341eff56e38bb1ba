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

"""ApisixRoute controller and the Service/ApisixUpstream relations it tracks."""

import logging
import threading
from typing import Any, List, Optional, Set, Tuple

from apisix_ingress.apisix.models import compose_plugin_config_name, gen_id
from apisix_ingress.controllers.base import BaseController, plugin_secret_references
from apisix_ingress.controllers.context import KIND_SERVICE, ControllerContext
from apisix_ingress.controllers.events import Event, EventType, RelatedEvent
from apisix_ingress.controllers.reverse_index import ReverseIndex
from apisix_ingress.kube.errors import ResourceNotFound
from apisix_ingress.kube.store import meta_namespace_key
from apisix_ingress.kube.versioned import (
    APISIX_V2,
    KIND_PLUGIN_CONFIG,
    KIND_ROUTE,
    KIND_UPSTREAM,
    VersionedResource,
)
from apisix_ingress.translation.context import TranslateContext

logger = logging.getLogger(__name__)


def route_references(ar: Optional[VersionedResource]) -> Tuple[Set[str], Set[str]]:
    """Return the ``namespace/name`` keys of the Services and ApisixUpstreams ``ar`` uses."""
    services: Set[str] = set()
    upstreams: Set[str] = set()
    if ar is None:
        return services, upstreams
    namespace = ar.namespace
    for rule in ar.spec.get("http") or []:
        for backend in rule.get("backends") or []:
            if backend.get("serviceName"):
                services.add(f"{namespace}/{backend['serviceName']}")
        for upstream in rule.get("upstreams") or []:
            if upstream.get("name"):
                upstreams.add(f"{namespace}/{upstream['name']}")
    for rule in ar.spec.get("stream") or []:
        backend = rule.get("backend") or {}
        if backend.get("serviceName"):
            services.add(f"{namespace}/{backend['serviceName']}")
    return services, upstreams


class RouteController(BaseController):
    """
    Reconciles ApisixRoutes.

    Besides the route queue it owns a "related" queue: when a Service or an
    ApisixUpstream shows up, every route referencing it is re-enqueued so a
    route created before its backend converges without waiting for a resync.
    """

    kind = KIND_ROUTE
    resource = "route"
    tracks_secrets = True

    def __init__(self, ctx: ControllerContext):
        super().__init__(ctx)
        self.related_queue = ctx.new_queue(f"{KIND_ROUTE}Related")
        self.service_index = ReverseIndex(KIND_SERVICE)
        self.upstream_index = ReverseIndex(KIND_UPSTREAM)
        self._related_threads: List[threading.Thread] = []

    # Translation

    def translate(self, obj: VersionedResource) -> TranslateContext:
        if obj.group_version == APISIX_V2:
            self._check_plugin_configs(obj)
        return self.ctx.translator.translate_route(obj)

    def translate_delete(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.generate_route_delete_mark(obj)

    def translate_old(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.translate_old_route(obj)

    def _check_plugin_configs(self, ar: VersionedResource) -> None:
        """Referenced plugin configs must exist on the gateway before routes point at them."""
        cluster = self.ctx.cluster()
        for rule in ar.spec.get("http") or []:
            name = rule.get("plugin_config_name")
            if not name:
                continue
            if cluster.plugin_configs.get(gen_id(compose_plugin_config_name(ar.namespace, name))) is None:
                logger.error("plugin config %s/%s referenced by %s not found", ar.namespace, name, ar.key)
                raise ResourceNotFound(KIND_PLUGIN_CONFIG, f"{ar.namespace}/{name}")

    def secret_references(self, obj: VersionedResource) -> Set[str]:
        refs: Set[str] = set()
        for rule in obj.spec.get("http") or []:
            refs |= plugin_secret_references(obj.namespace, rule.get("plugins"))
        return refs

    def reconcile(self, event: Event, obj: VersionedResource) -> None:
        self.sync_relationship(event, obj)
        super().reconcile(event, obj)

    # Relations

    def sync_relationship(self, event: Event, obj: VersionedResource) -> None:
        """Move the route between backends by the difference of its old and new references."""
        if event.type is EventType.DELETE:
            old, new = event.tombstone, None
        elif event.type is EventType.UPDATE:
            old, new = event.old_object, obj
        else:
            old, new = None, obj
        old_services, old_upstreams = route_references(old)
        new_services, new_upstreams = route_references(new)
        if event.type.is_add_event():
            # the previous references are unknown, start over
            self.service_index.set(event.key, new_services)
            self.upstream_index.set(event.key, new_upstreams)
            return
        self.service_index.update(event.key, old_services, new_services)
        self.upstream_index.update(event.key, old_upstreams, new_upstreams)

    def rebuild_relationships(self) -> None:
        services, upstreams = {}, {}
        for raw in self.store.list():
            ar = self._wrap(raw)
            if ar is None or not self.ctx.is_watching_namespace(ar.key) or not self.is_effective(ar):
                continue
            services[ar.key], upstreams[ar.key] = route_references(ar)
        self.service_index.rebuild(services)
        self.upstream_index.rebuild(upstreams)

    def resource_sync(self, interval: float, namespace: str = "") -> int:
        self.rebuild_relationships()
        return super().resource_sync(interval, namespace)

    # Related objects

    def on_service_add(self, raw: Any) -> None:
        key = meta_namespace_key(raw)
        if not self.ctx.is_watching_namespace(key):
            return
        logger.debug("Service add event arrived: %s", key)
        self.related_queue.add(RelatedEvent(KIND_SERVICE, key))

    def on_apisix_upstream_add(self, raw: Any) -> None:
        key = meta_namespace_key(raw)
        if not self.ctx.is_watching_namespace(key):
            return
        self.related_queue.add(RelatedEvent(KIND_UPSTREAM, key))

    def on_apisix_upstream_update(self, old_raw: Any, new_raw: Any) -> None:
        self.on_apisix_upstream_add(new_raw)

    def handle_related(self, event: RelatedEvent) -> int:
        """Enqueue every route depending on the changed object; return how many."""
        if event.kind == KIND_SERVICE:
            route_keys = self.service_index.dependents(event.key)
        else:
            route_keys = self.upstream_index.dependents(event.key)
        logger.debug("%s %s changed, resync dependent routes %s", event.kind, event.key, sorted(route_keys))
        return self.enqueue_keys(route_keys)

    def run(self) -> None:
        super().run()
        for i in range(self.workers):
            thread = threading.Thread(
                target=self._run_related_worker,
                name=f"{self.resource}-related-worker-{i}",
                daemon=True,
            )
            thread.start()
            self._related_threads.append(thread)

    def shutdown(self) -> None:
        super().shutdown()
        self.related_queue.shutdown()

    def _run_related_worker(self) -> None:
        while True:
            event, shutdown = self.related_queue.get()
            if shutdown:
                return
            try:
                self.handle_related(event)
            finally:
                self.related_queue.done(event)
            self.related_queue.forget(event)


__all__ = ["RouteController", "route_references"]
