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
Wire watch caches, the translator, the gateway client and every controller.

``Provider`` is the only place that knows about the Kubernetes API objects;
controllers only see the ``ControllerContext`` it builds.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config

from apisix_ingress.apisix.client import AdminClient, ClusterOptions
from apisix_ingress.config import AppConfig
from apisix_ingress.controllers.base import BaseController
from apisix_ingress.controllers.cluster_config import ClusterConfigController
from apisix_ingress.controllers.consumer import ConsumerController
from apisix_ingress.controllers.context import (
    KIND_ENDPOINT_SLICE,
    KIND_ENDPOINTS,
    KIND_POD,
    KIND_SECRET,
    KIND_SERVICE,
    ControllerContext,
)
from apisix_ingress.controllers.endpoints import EndpointsController
from apisix_ingress.controllers.global_rule import GlobalRuleController
from apisix_ingress.controllers.ingress import IngressController
from apisix_ingress.controllers.plugin_config import PluginConfigController
from apisix_ingress.controllers.resync import ResyncScheduler
from apisix_ingress.controllers.route import RouteController
from apisix_ingress.controllers.secret import SecretController
from apisix_ingress.controllers.tls import TLSController
from apisix_ingress.controllers.upstream import UpstreamController
from apisix_ingress.kube.endpoints import EndpointLister
from apisix_ingress.kube.informer import ResourceInformer
from apisix_ingress.kube.status import StatusRecorder
from apisix_ingress.kube.store import (
    POD_IP_INDEX,
    SERVICE_INDEX,
    ObjectStore,
    endpoint_slice_service_index,
    pod_ip_index,
)
from apisix_ingress.kube.versioned import (
    APISIX_V2,
    INGRESS_VERSION_ALIASES,
    KIND_CLUSTER_CONFIG,
    KIND_CONSUMER,
    KIND_GLOBAL_RULE,
    KIND_INGRESS,
    KIND_PLUGIN_CONFIG,
    KIND_ROUTE,
    KIND_TLS,
    KIND_UPSTREAM,
    NETWORKING_V1,
    RESOURCE_PLURALS,
    SUPPORTED_VERSIONS,
)
from apisix_ingress.metrics import MetricsCollector
from apisix_ingress.translation.translator import Translator

logger = logging.getLogger(__name__)


def load_kube_client(kubeconfig: Optional[str]) -> k8s_client.ApiClient:
    """In-cluster configuration unless a kubeconfig path is given."""
    if kubeconfig:
        k8s_config.load_kube_config(config_file=kubeconfig)
    else:
        k8s_config.load_incluster_config()
    return k8s_client.ApiClient()


class Provider:
    """Owns the lifecycle of informers, controllers and the resync loop."""

    def __init__(
        self,
        config: AppConfig,
        api_client: Optional[k8s_client.ApiClient] = None,
        admin: Optional[AdminClient] = None,
        metrics: Optional[MetricsCollector] = None,
        is_leader: Callable[[], bool] = lambda: True,
    ):
        self.config = config
        self.api_client = api_client or load_kube_client(config.kubernetes.kubeconfig)
        self.admin = admin or AdminClient()
        self.metrics = metrics or MetricsCollector()

        self.core_api = k8s_client.CoreV1Api(self.api_client)
        self.custom_api = k8s_client.CustomObjectsApi(self.api_client)

        self.informers: Dict[str, ResourceInformer] = {}
        self.stores: Dict[str, ObjectStore] = {}
        self._build_stores()

        endpoints = EndpointLister(
            endpoints=None if config.kubernetes.watch_endpoint_slices else self.stores[KIND_ENDPOINTS],
            endpoint_slices=self.stores[KIND_ENDPOINT_SLICE] if config.kubernetes.watch_endpoint_slices else None,
        )
        translator = Translator(
            services=self.stores[KIND_SERVICE],
            secrets=self.stores[KIND_SECRET],
            pods=self.stores[KIND_POD],
            endpoints=endpoints,
            apisix_upstreams=self.stores[KIND_UPSTREAM],
            admin=self.admin,
            cluster_name=config.apisix.default_cluster_name,
        )
        self.ctx = ControllerContext(
            config=config,
            stores=self.stores,
            endpoints=endpoints,
            translator=translator,
            admin=self.admin,
            status=StatusRecorder(
                self.custom_api,
                disabled=config.kubernetes.disable_status_updates,
                is_leader=is_leader,
            ),
            metrics=self.metrics,
            status_pool=ThreadPoolExecutor(
                max_workers=config.controller.status_workers,
                thread_name_prefix="status",
            ),
        )
        self.controllers: List[BaseController] = []
        self._build_controllers()
        self.resync = ResyncScheduler(
            [c for c in self.controllers if not isinstance(c, EndpointsController)],
            config.kubernetes.resync_interval,
            stop_event=self.ctx.stop_event,
        )

    # Wiring

    def _build_stores(self) -> None:
        self.stores[KIND_SERVICE] = ObjectStore(KIND_SERVICE)
        self.stores[KIND_SECRET] = ObjectStore(KIND_SECRET)
        self.stores[KIND_POD] = ObjectStore(KIND_POD, {POD_IP_INDEX: pod_ip_index})
        self.stores[KIND_ENDPOINTS] = ObjectStore(KIND_ENDPOINTS)
        self.stores[KIND_ENDPOINT_SLICE] = ObjectStore(
            KIND_ENDPOINT_SLICE, {SERVICE_INDEX: endpoint_slice_service_index}
        )
        for kind in RESOURCE_PLURALS:
            self.stores[kind] = ObjectStore(kind)

    def _informer(self, kind: str, list_func: Callable[..., Any], *args: Any) -> ResourceInformer:
        informer = ResourceInformer(
            kind,
            list_func,
            list_args=args,
            store=self.stores[kind],
            watch_timeout_seconds=self.config.kubernetes.watch_timeout_seconds,
            api_client=self.api_client,
        )
        self.informers[kind] = informer
        return informer

    def _custom_informer(self, kind: str, group_version: str) -> ResourceInformer:
        group, version = group_version.split("/", 1)
        return self._informer(
            kind,
            self.custom_api.list_cluster_custom_object,
            group,
            version,
            RESOURCE_PLURALS[kind],
        )

    def _ingress_informer(self) -> ResourceInformer:
        group_version = INGRESS_VERSION_ALIASES[self.config.kubernetes.ingress_version]
        if group_version == NETWORKING_V1:
            networking = k8s_client.NetworkingV1Api(self.api_client)
            return self._informer(KIND_INGRESS, networking.list_ingress_for_all_namespaces)
        # older Ingress versions are gone from the typed client
        return self._custom_informer(KIND_INGRESS, group_version)

    def _build_controllers(self) -> None:
        kube = self.config.kubernetes
        services = self._informer(KIND_SERVICE, self.core_api.list_service_for_all_namespaces)
        secrets = self._informer(KIND_SECRET, self.core_api.list_secret_for_all_namespaces)
        self._informer(KIND_POD, self.core_api.list_pod_for_all_namespaces)
        if kube.watch_endpoint_slices:
            discovery = k8s_client.DiscoveryV1Api(self.api_client)
            endpoints = self._informer(KIND_ENDPOINT_SLICE, discovery.list_endpoint_slice_for_all_namespaces)
        else:
            endpoints = self._informer(KIND_ENDPOINTS, self.core_api.list_endpoints_for_all_namespaces)

        controllers: List[BaseController] = []
        for kind, controller_cls in (
            (KIND_UPSTREAM, UpstreamController),
            (KIND_ROUTE, RouteController),
            (KIND_TLS, TLSController),
            (KIND_CONSUMER, ConsumerController),
            (KIND_PLUGIN_CONFIG, PluginConfigController),
            (KIND_CLUSTER_CONFIG, ClusterConfigController),
            (KIND_GLOBAL_RULE, GlobalRuleController),
        ):
            if kube.api_version not in SUPPORTED_VERSIONS[kind]:
                logger.info("%s is not served in %s, skip its controller", kind, kube.api_version)
                continue
            informer = self._custom_informer(kind, kube.api_version)
            controller = controller_cls(self.ctx)
            informer.add_event_handler(controller.on_add, controller.on_update, controller.on_delete)
            controllers.append(controller)

        ingress = IngressController(self.ctx)
        self._ingress_informer().add_event_handler(ingress.on_add, ingress.on_update, ingress.on_delete)
        controllers.append(ingress)

        endpoint_controller = EndpointsController(self.ctx)
        endpoints.add_event_handler(
            endpoint_controller.on_add, endpoint_controller.on_update, endpoint_controller.on_delete
        )
        controllers.append(endpoint_controller)

        for controller in controllers:
            if isinstance(controller, RouteController):
                services.add_event_handler(on_add=controller.on_service_add)
                if KIND_UPSTREAM in self.informers:
                    self.informers[KIND_UPSTREAM].add_event_handler(
                        on_add=controller.on_apisix_upstream_add,
                        on_update=controller.on_apisix_upstream_update,
                    )
            elif isinstance(controller, UpstreamController) and kube.api_version == APISIX_V2:
                services.add_event_handler(on_update=controller.on_service_update)

        secret_controller = SecretController(controllers)
        secrets.add_event_handler(secret_controller.on_add, secret_controller.on_update, secret_controller.on_delete)
        self.controllers = controllers

    # Lifecycle

    def start(self) -> None:
        apisix = self.config.apisix
        self.admin.add_cluster(
            ClusterOptions(
                name=apisix.default_cluster_name,
                base_url=apisix.default_cluster_base_url,
                admin_key=apisix.default_cluster_admin_key,
                timeout=apisix.admin_api_timeout,
            )
        )
        for informer in self.informers.values():
            informer.start()
        for controller in self.controllers:
            controller.run()
        self.resync.start()
        logger.info("provider started with %d controller(s)", len(self.controllers))

    def has_synced(self) -> bool:
        return all(informer.has_synced for informer in self.informers.values())

    def stop(self) -> None:
        self.ctx.stop_event.set()
        for informer in self.informers.values():
            informer.stop()
        for controller in self.controllers:
            controller.shutdown()
        for controller in self.controllers:
            controller.join(timeout=5)
        if self.ctx.status_pool is not None:
            self.ctx.status_pool.shutdown(wait=False, cancel_futures=True)
        self.admin.close()
        logger.info("provider stopped")


__all__ = ["Provider", "load_kube_client"]
