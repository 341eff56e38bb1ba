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

"""Uniform view over Endpoints and EndpointSlice objects of a Service."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from apisix_ingress.kube.store import SERVICE_INDEX, ObjectStore

HostPort = Tuple[str, int]


@dataclass
class Endpoint:
    """Ready backend addresses of one Service, grouped by port name."""

    namespace: str
    service_name: str
    ports: Dict[str, List[HostPort]] = field(default_factory=dict)

    def nodes_for_port(self, port_name: str) -> List[HostPort]:
        return list(self.ports.get(port_name or "", []))

    def __len__(self) -> int:
        return sum(len(nodes) for nodes in self.ports.values())


def endpoint_from_endpoints(obj: Dict[str, Any]) -> Endpoint:
    metadata = obj.get("metadata") or {}
    ep = Endpoint(namespace=metadata.get("namespace", ""), service_name=metadata.get("name", ""))
    for subset in obj.get("subsets") or []:
        addresses = [addr.get("ip") for addr in subset.get("addresses") or [] if addr.get("ip")]
        for port in subset.get("ports") or []:
            nodes = ep.ports.setdefault(port.get("name") or "", [])
            nodes.extend((ip, int(port.get("port") or 0)) for ip in addresses)
    return ep


def endpoint_from_slices(namespace: str, service_name: str, slices: List[Dict[str, Any]]) -> Endpoint:
    ep = Endpoint(namespace=namespace, service_name=service_name)
    for slice_ in slices:
        addresses: List[str] = []
        for item in slice_.get("endpoints") or []:
            conditions = item.get("conditions") or {}
            if conditions.get("ready") is False:
                continue
            addresses.extend(item.get("addresses") or [])
        for port in slice_.get("ports") or []:
            nodes = ep.ports.setdefault(port.get("name") or "", [])
            nodes.extend((ip, int(port.get("port") or 0)) for ip in addresses)
    return ep


class EndpointLister:
    """Reads endpoints of a Service from whichever cache is in use."""

    def __init__(
        self,
        endpoints: Optional[ObjectStore] = None,
        endpoint_slices: Optional[ObjectStore] = None,
    ):
        self.endpoints = endpoints
        self.endpoint_slices = endpoint_slices

    def get(self, namespace: str, service_name: str) -> Optional[Endpoint]:
        if self.endpoint_slices is not None:
            slices = self.endpoint_slices.by_index(SERVICE_INDEX, f"{namespace}/{service_name}")
            if not slices:
                return None
            return endpoint_from_slices(namespace, service_name, slices)
        if self.endpoints is None:
            return None
        obj = self.endpoints.get(namespace, service_name)
        if obj is None:
            return None
        return endpoint_from_endpoints(obj)


__all__ = [
    "Endpoint",
    "EndpointLister",
    "endpoint_from_endpoints",
    "endpoint_from_slices",
]
