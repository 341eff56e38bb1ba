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
Refresh upstream nodes when the endpoints of a Service change.

Endpoints and EndpointSlices are both reduced to the key of their Service;
the worker then rebuilds the endpoint granularity upstreams of every port and
subset that already exist on the gateway.
"""

import logging
from typing import Any, Dict, Optional

from apisix_ingress.apisix.models import RESOLVE_GRANULARITY_ENDPOINT, compose_upstream_name, gen_id
from apisix_ingress.constants import ENDPOINT_SLICE_SERVICE_LABEL
from apisix_ingress.controllers.base import BaseController
from apisix_ingress.controllers.context import KIND_ENDPOINTS
from apisix_ingress.controllers.events import Event, EventType
from apisix_ingress.kube.informer import DeletedFinalStateUnknown
from apisix_ingress.kube.store import split_meta_namespace_key

logger = logging.getLogger(__name__)


def service_key_of(raw: Dict[str, Any], slices: bool) -> Optional[str]:
    metadata = raw.get("metadata") or {}
    if slices:
        name = (metadata.get("labels") or {}).get(ENDPOINT_SLICE_SERVICE_LABEL)
    else:
        name = metadata.get("name")
    if not name:
        return None
    namespace = metadata.get("namespace") or ""
    return f"{namespace}/{name}"


class EndpointsController(BaseController):
    kind = KIND_ENDPOINTS
    resource = "endpoints"
    records_status = False

    @property
    def slices(self) -> bool:
        return self.ctx.config.kubernetes.watch_endpoint_slices

    def _enqueue(self, raw: Any, action: str) -> None:
        if isinstance(raw, DeletedFinalStateUnknown):
            raw = raw.obj
        key = service_key_of(raw, self.slices)
        if key is None or not self.ctx.is_watching_namespace(key):
            return
        # every notification of a service maps to the same queue item
        self.queue.add(Event(EventType.UPDATE, key))
        self.ctx.metrics.incr_events(self.resource, action)

    def on_add(self, raw: Any) -> None:
        self._enqueue(raw, "add")

    def on_update(self, old_raw: Any, new_raw: Any) -> None:
        if old_raw.get("subsets") == new_raw.get("subsets") and old_raw.get("endpoints") == new_raw.get(
            "endpoints"
        ):
            return
        self._enqueue(new_raw, "update")

    def on_delete(self, raw: Any) -> None:
        self._enqueue(raw, "delete")

    def sync(self, event: Event) -> None:
        namespace, name = split_meta_namespace_key(event.key)
        translator = self.ctx.translator
        service = translator.services.get(namespace, name)
        if service is None:
            logger.debug("service %s is gone, nothing to refresh", event.key)
            return
        subsets = [""]
        au = translator.get_apisix_upstream(namespace, name)
        if au is not None:
            subsets += [item.get("name", "") for item in au.spec.get("subsets") or []]

        upstreams = self.ctx.cluster().upstreams
        for port in (service.get("spec") or {}).get("ports") or []:
            number = int(port.get("port") or 0)
            for subset in subsets:
                ups_name = compose_upstream_name(namespace, name, subset, number, RESOLVE_GRANULARITY_ENDPOINT)
                existing = upstreams.get(gen_id(ups_name))
                if existing is None:
                    continue
                nodes = translator.translate_service_upstream(namespace, name, subset, number).nodes
                if existing.nodes == nodes:
                    continue
                logger.debug("refresh nodes of upstream %s: %s", ups_name, nodes)
                existing.nodes = nodes
                upstreams.update(existing)

    def resource_sync(self, interval: float, namespace: str = "") -> int:
        # node lists are refreshed by the routes' own resync
        return 0


__all__ = ["EndpointsController", "service_key_of"]
