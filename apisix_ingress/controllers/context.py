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

"""Dependencies shared by every controller, handed over explicitly."""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from apisix_ingress.apisix.client import AdminClient, Cluster
from apisix_ingress.config import INGRESS_CLASS_APISIX, INGRESS_CLASS_APISIX_AND_ALL, AppConfig
from apisix_ingress.controllers.workqueue import ItemFastSlowRateLimiter, RateLimitingQueue
from apisix_ingress.kube.endpoints import EndpointLister
from apisix_ingress.kube.status import StatusRecorder
from apisix_ingress.kube.store import ObjectStore, split_meta_namespace_key
from apisix_ingress.metrics import MetricsCollector
from apisix_ingress.translation.translator import Translator

KIND_SERVICE = "Service"
KIND_SECRET = "Secret"
KIND_POD = "Pod"
KIND_ENDPOINTS = "Endpoints"
KIND_ENDPOINT_SLICE = "EndpointSlice"


@dataclass
class ControllerContext:
    """
    Everything a controller needs: configuration, watch caches, the
    translator, the gateway client, the status recorder and metrics.
    """

    config: AppConfig
    stores: Dict[str, ObjectStore]
    endpoints: EndpointLister
    translator: Translator
    admin: AdminClient
    status: StatusRecorder
    metrics: MetricsCollector = field(default_factory=MetricsCollector)
    status_pool: Optional[ThreadPoolExecutor] = None
    stop_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cluster_name(self) -> str:
        return self.config.apisix.default_cluster_name

    def cluster(self) -> Cluster:
        return self.admin.cluster(self.cluster_name)

    def store(self, kind: str) -> ObjectStore:
        store = self.stores.get(kind)
        if store is None:
            store = ObjectStore(kind)
            self.stores[kind] = store
        return store

    def new_queue(self, name: str, **kwargs: Any) -> RateLimitingQueue:
        settings = self.config.controller
        return RateLimitingQueue(
            name,
            ItemFastSlowRateLimiter(
                settings.rate_limit_fast,
                settings.rate_limit_slow,
                settings.rate_limit_max_fast_attempts,
            ),
            **kwargs,
        )

    def is_watching_namespace(self, key: str) -> bool:
        namespaces = self.config.kubernetes.watch_namespaces
        if not namespaces:
            return True
        namespace, _ = split_meta_namespace_key(key)
        # cluster scoped objects are always watched
        return not namespace or namespace in namespaces

    def match_crd_ingress_class(self, ingress_class: str) -> bool:
        configured = self.config.kubernetes.ingress_class
        if configured == INGRESS_CLASS_APISIX_AND_ALL:
            return True
        if not ingress_class:
            return configured == INGRESS_CLASS_APISIX
        return ingress_class == configured

    def match_ingress_class(self, ingress_class: str) -> bool:
        configured = self.config.kubernetes.ingress_class
        if not ingress_class:
            return configured == INGRESS_CLASS_APISIX_AND_ALL
        if configured == INGRESS_CLASS_APISIX_AND_ALL:
            configured = INGRESS_CLASS_APISIX
        return ingress_class == configured


__all__ = [
    "ControllerContext",
    "KIND_SERVICE",
    "KIND_SECRET",
    "KIND_POD",
    "KIND_ENDPOINTS",
    "KIND_ENDPOINT_SLICE",
]
