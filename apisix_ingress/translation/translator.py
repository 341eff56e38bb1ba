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

"""The translator facade used by every controller."""

from __future__ import annotations

from typing import Optional

from apisix_ingress.apisix.client import AdminClient, Cluster
from apisix_ingress.kube.endpoints import EndpointLister
from apisix_ingress.kube.store import ObjectStore
from apisix_ingress.translation.consumer import ConsumerTranslatorMixin
from apisix_ingress.translation.ingress import IngressTranslatorMixin
from apisix_ingress.translation.plugin import PluginTranslatorMixin
from apisix_ingress.translation.route import RouteTranslatorMixin
from apisix_ingress.translation.tls import TLSTranslatorMixin
from apisix_ingress.translation.upstream import UpstreamTranslatorMixin


class Translator(
    RouteTranslatorMixin,
    UpstreamTranslatorMixin,
    TLSTranslatorMixin,
    PluginTranslatorMixin,
    ConsumerTranslatorMixin,
    IngressTranslatorMixin,
):
    """
    Turns source objects into canonical gateway objects.

    Reads referenced objects (Services, Secrets, Pods, endpoints and
    ApisixUpstreams) from the watch caches only; the gateway is consulted
    solely to resolve the state an object left behind (``translate_old_*``).
    """

    def __init__(
        self,
        services: ObjectStore,
        secrets: ObjectStore,
        pods: ObjectStore,
        endpoints: EndpointLister,
        apisix_upstreams: ObjectStore,
        admin: Optional[AdminClient] = None,
        cluster_name: str = "default",
    ):
        self.services = services
        self.secrets = secrets
        self.pods = pods
        self.endpoints = endpoints
        self.apisix_upstreams = apisix_upstreams
        self.admin = admin
        self.cluster_name = cluster_name

    def gateway_cluster(self) -> Cluster:
        if self.admin is None:
            raise RuntimeError("translator has no gateway client configured")
        return self.admin.cluster(self.cluster_name)


__all__ = ["Translator"]
