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

import pytest

from apisix_ingress.kube.endpoints import EndpointLister
from apisix_ingress.kube.errors import ResourceNotFound
from apisix_ingress.kube.store import (
    POD_IP_INDEX,
    SERVICE_INDEX,
    ObjectStore,
    endpoint_slice_service_index,
    meta_namespace_key,
    pod_ip_index,
    split_meta_namespace_key,
)
from tests.fixtures.objects import endpoints, meta, pod, service


def _slice(name, service_name, ips, ready=True):
    return {
        "apiVersion": "discovery.k8s.io/v1",
        "kind": "EndpointSlice",
        "metadata": meta(name, labels={"kubernetes.io/service-name": service_name}),
        "endpoints": [{"addresses": [ip], "conditions": {"ready": ready}} for ip in ips],
        "ports": [{"name": "http", "port": 8080}],
    }


def test_keys():
    assert meta_namespace_key(service("web")) == "default/web"
    assert meta_namespace_key({"metadata": {"name": "cluster-wide"}}) == "cluster-wide"
    assert split_meta_namespace_key("default/web") == ("default", "web")
    assert split_meta_namespace_key("cluster-wide") == ("", "cluster-wide")
    with pytest.raises(ValueError):
        split_meta_namespace_key("a/b/c")


def test_upsert_get_and_delete():
    store = ObjectStore("Service")
    assert store.upsert(service("web")) is None
    assert store.upsert(service("web", cluster_ip="10.96.0.11")) is not None
    assert store.get("default", "web")["spec"]["clusterIP"] == "10.96.0.11"
    assert len(store) == 1

    store.delete("default/web")
    assert store.get("default", "web") is None
    with pytest.raises(ResourceNotFound) as exc_info:
        store.must_get("default", "web")
    assert exc_info.value.kind == "Service"
    assert exc_info.value.key == "default/web"


def test_index_follows_updates():
    store = ObjectStore("Pod", {POD_IP_INDEX: pod_ip_index})
    store.upsert(pod("web-0", "10.0.0.1"))
    assert [p["metadata"]["name"] for p in store.by_index(POD_IP_INDEX, "default/10.0.0.1")] == ["web-0"]

    store.upsert(pod("web-0", "10.0.0.2"))
    assert store.by_index(POD_IP_INDEX, "default/10.0.0.1") == []
    assert len(store.by_index(POD_IP_INDEX, "default/10.0.0.2")) == 1

    store.replace([pod("web-1", "10.0.0.3")])
    assert store.by_index(POD_IP_INDEX, "default/10.0.0.2") == []
    assert store.keys() == ["default/web-1"]


def test_endpoint_lister_reads_endpoints():
    store = ObjectStore("Endpoints")
    store.upsert(endpoints("web", ips=("10.0.0.1", "10.0.0.2")))
    lister = EndpointLister(endpoints=store)

    ep = lister.get("default", "web")
    assert ep.nodes_for_port("http") == [("10.0.0.1", 8080), ("10.0.0.2", 8080)]
    assert len(ep) == 2
    assert lister.get("default", "absent") is None


def test_endpoint_lister_reads_slices_and_skips_unready():
    store = ObjectStore("EndpointSlice", {SERVICE_INDEX: endpoint_slice_service_index})
    store.upsert(_slice("web-abc", "web", ["10.0.0.1"]))
    store.upsert(_slice("web-def", "web", ["10.0.0.2"], ready=False))
    lister = EndpointLister(endpoint_slices=store)

    ep = lister.get("default", "web")
    assert ep.nodes_for_port("http") == [("10.0.0.1", 8080)]
    assert lister.get("default", "other") is None
