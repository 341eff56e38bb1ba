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

from apisix_ingress.apisix.models import GlobalRule, Upstream, UpstreamNode, gen_id
from apisix_ingress.config import AppConfig, KubernetesConfig
from apisix_ingress.controllers.cluster_config import ClusterConfigController
from apisix_ingress.controllers.endpoints import EndpointsController, service_key_of
from apisix_ingress.controllers.events import Event, EventType
from apisix_ingress.controllers.ingress import IngressController
from apisix_ingress.controllers.resync import ResyncScheduler, get_sync_delay
from apisix_ingress.controllers.route import RouteController
from apisix_ingress.controllers.secret import SecretController
from apisix_ingress.controllers.tls import TLSController
from apisix_ingress.controllers.upstream import UpstreamController
from apisix_ingress.kube.status import StatusRecorder
from apisix_ingress.kube.versioned import (
    APISIX_V2,
    KIND_CLUSTER_CONFIG,
    KIND_INGRESS,
    KIND_TLS,
    KIND_UPSTREAM,
)
from tests.fixtures.controllers import FakeCustomObjectsApi, drain
from tests.fixtures.gateway import BASE_URL
from tests.fixtures.objects import crd, endpoints, ingress, ingress_rule, secret, service

WEB_UPSTREAM = "default_web_80"


def seed_upstream(gateway, name=WEB_UPSTREAM, hosts=("10.0.0.1",)):
    ups = Upstream(
        id=gen_id(name),
        name=name,
        nodes=[UpstreamNode(host=host, port=8080) for host in hosts],
    )
    gateway.objects["upstreams"][ups.id] = ups.to_payload()


@pytest.fixture
def web(stores):
    stores["Service"].upsert(service("web"))
    stores["Endpoints"].upsert(endpoints("web"))


# Ingress class and namespace selection


@pytest.mark.parametrize(
    ("configured", "ingress_class", "expected"),
    [
        ("apisix", "", True),
        ("apisix", "apisix", True),
        ("apisix", "nginx", False),
        ("apisix-and-all", "", True),
        ("apisix-and-all", "nginx", True),
        ("custom", "", False),
        ("custom", "custom", True),
    ],
)
def test_match_crd_ingress_class(ctx, configured, ingress_class, expected):
    ctx.config = AppConfig(kubernetes=KubernetesConfig(ingress_class=configured))
    assert ctx.match_crd_ingress_class(ingress_class) is expected


@pytest.mark.parametrize(
    ("configured", "ingress_class", "expected"),
    [
        ("apisix", "", False),
        ("apisix", "apisix", True),
        ("apisix", "nginx", False),
        ("apisix-and-all", "", True),
        ("apisix-and-all", "apisix", True),
        ("apisix-and-all", "nginx", False),
        ("custom", "custom", True),
    ],
)
def test_match_ingress_class(ctx, configured, ingress_class, expected):
    ctx.config = AppConfig(kubernetes=KubernetesConfig(ingress_class=configured))
    assert ctx.match_ingress_class(ingress_class) is expected


def test_is_watching_namespace(ctx):
    assert ctx.is_watching_namespace("default/web")
    ctx.config = AppConfig(kubernetes=KubernetesConfig(watch_namespaces=["apps"]))
    assert ctx.is_watching_namespace("apps/web")
    assert not ctx.is_watching_namespace("default/web")
    assert ctx.is_watching_namespace("cluster-scoped")


# Secrets


def test_secret_change_requeues_tls(ctx, stores):
    tls = TLSController(ctx)
    cert = secret("web-cert", **{"tls.crt": "CERT", "tls.key": "KEY"})
    stores["Secret"].upsert(cert)
    obj = crd(KIND_TLS, "web", {"hosts": ["web.example.com"], "secret": {"name": "web-cert", "namespace": "default"}})
    stores[KIND_TLS].upsert(obj)
    tls.on_add(obj)
    drain(tls)

    secrets = SecretController([tls, RouteController(ctx)])
    assert len(secrets.dependents) == 2

    secrets.on_update(cert, dict(cert))
    assert len(tls.queue) == 0

    rotated = secret("web-cert", resource_version="2", **{"tls.crt": "NEW", "tls.key": "KEY"})
    secrets.on_update(cert, rotated)
    event, _ = tls.queue.get(timeout=0.01)
    assert event == Event(EventType.ADD, "default/web", APISIX_V2)
    tls.shutdown()


# ApisixUpstream


def test_upstream_update_keeps_nodes(ctx, stores, web, gateway):
    controller = UpstreamController(ctx)
    seed_upstream(gateway, hosts=("10.0.0.1", "10.0.0.2"))
    au = crd(KIND_UPSTREAM, "web", {"retries": 3, "scheme": "https"})
    stores[KIND_UPSTREAM].upsert(au)
    controller.on_add(au)
    drain(controller)

    ups = gateway.get("upstreams", gen_id(WEB_UPSTREAM))
    assert ups["retries"] == 3
    assert ups["scheme"] == "https"
    assert [node["host"] for node in ups["nodes"]] == ["10.0.0.1", "10.0.0.2"]
    # upstreams no route references are left alone
    assert gateway.writes() == [("PUT", "upstreams", gen_id(WEB_UPSTREAM))]
    controller.shutdown()


def test_upstream_delete_resets_config(ctx, stores, web, gateway):
    controller = UpstreamController(ctx)
    seed_upstream(gateway)
    gateway.objects["upstreams"][gen_id(WEB_UPSTREAM)]["retries"] = 3
    controller.on_delete(crd(KIND_UPSTREAM, "web", {"retries": 3}))
    drain(controller)

    ups = gateway.get("upstreams", gen_id(WEB_UPSTREAM))
    assert "retries" not in ups
    assert [node["host"] for node in ups["nodes"]] == ["10.0.0.1"]
    controller.shutdown()


def test_external_upstream_delete_is_noop(ctx, gateway):
    controller = UpstreamController(ctx)
    au = crd(KIND_UPSTREAM, "ext", {"externalNodes": [{"type": "Domain", "name": "httpbin.org"}]})
    controller.on_delete(au)
    drain(controller)
    assert gateway.writes() == []
    controller.shutdown()


def test_service_update_requeues_external_upstreams(ctx, stores):
    controller = UpstreamController(ctx)
    au = crd(KIND_UPSTREAM, "ext", {"externalNodes": [{"type": "Service", "name": "backend"}]})
    stores[KIND_UPSTREAM].upsert(au)
    assert controller.resource_sync(600) == 1
    drain(controller)
    assert controller.service_index.dependents("default/backend") == {"default/ext"}

    old = service("backend", type="ExternalName", externalName="a.example.com")
    controller.on_service_update(old, dict(old))
    assert len(controller.queue) == 0

    new = service("backend", type="ExternalName", externalName="b.example.com")
    controller.on_service_update(old, new)
    event, _ = controller.queue.get(timeout=0.01)
    assert event == Event(EventType.ADD, "default/ext", APISIX_V2)
    controller.shutdown()


# Endpoints


def test_service_key_of():
    assert service_key_of(endpoints("web"), slices=False) == "default/web"
    endpoint_slice = {"metadata": {"name": "web-x1", "namespace": "default", "labels": {"kubernetes.io/service-name": "web"}}}
    assert service_key_of(endpoint_slice, slices=True) == "default/web"
    assert service_key_of({"metadata": {"name": "web-x1"}}, slices=True) is None


def test_endpoints_change_refreshes_nodes(ctx, stores, web, gateway):
    controller = EndpointsController(ctx)
    seed_upstream(gateway)
    old = stores["Endpoints"].get("default", "web")
    new = endpoints("web", ips=("10.0.0.1", "10.0.0.2"), resource_version="2")
    stores["Endpoints"].upsert(new)

    controller.on_update(old, new)
    assert drain(controller) == [Event(EventType.UPDATE, "default/web")]

    ups = gateway.get("upstreams", gen_id(WEB_UPSTREAM))
    assert [node["host"] for node in ups["nodes"]] == ["10.0.0.1", "10.0.0.2"]
    controller.shutdown()


def test_endpoints_update_without_changes_is_dropped(ctx, stores, web):
    controller = EndpointsController(ctx)
    old = stores["Endpoints"].get("default", "web")
    controller.on_update(old, endpoints("web", resource_version="2"))
    assert len(controller.queue) == 0
    assert controller.resource_sync(600) == 0


def test_endpoints_of_unused_service(ctx, stores, web, gateway):
    controller = EndpointsController(ctx)
    controller.on_add(stores["Endpoints"].get("default", "web"))
    drain(controller)
    assert gateway.writes() == []
    controller.shutdown()


# ApisixClusterConfig


def cluster_config(name="default", **spec):
    return crd(KIND_CLUSTER_CONFIG, name, spec, namespace=None)


def test_cluster_config_of_other_cluster_is_ignored(ctx, stores, gateway):
    controller = ClusterConfigController(ctx)
    obj = cluster_config("staging", monitoring={"prometheus": {"enable": True}})
    stores[KIND_CLUSTER_CONFIG].upsert(obj)
    controller.on_add(obj)
    drain(controller)
    assert gateway.writes() == []


def test_cluster_config_delete_is_ignored(ctx, gateway):
    controller = ClusterConfigController(ctx)
    controller.on_delete(cluster_config(monitoring={"prometheus": {"enable": True}}))
    drain(controller)
    assert gateway.writes() == []


def test_cluster_config_updates_admin_and_global_rule(ctx, stores, gateway, admin):
    controller = ClusterConfigController(ctx)
    obj = cluster_config(
        admin={"baseURL": BASE_URL, "adminKey": "edd1c9f034335f136f87ad84b625c8f1"},
        monitoring={"prometheus": {"enable": True, "preferName": True}},
    )
    stores[KIND_CLUSTER_CONFIG].upsert(obj)
    controller.on_add(obj)
    assert drain(controller) == [Event(EventType.ADD, "default", APISIX_V2)]

    assert admin.cluster("default").options.admin_key == "edd1c9f034335f136f87ad84b625c8f1"
    rule = GlobalRule.model_validate(gateway.get("global_rules", gen_id("default")))
    assert rule.plugins == {"prometheus": {"prefer_name": True}}


# Ingress


def test_ingress_class_selection(ctx):
    controller = IngressController(ctx)
    controller.on_add(ingress("no-class", [], ingress_class=None))
    controller.on_add(ingress("nginx", [], ingress_class="nginx"))
    controller.on_add(ingress("mine", []))

    event, _ = controller.queue.get(timeout=0.01)
    assert event.key == "default/mine"
    assert len(controller.queue) == 0


def test_ingress_lifecycle(ctx, stores, web, gateway):
    api = FakeCustomObjectsApi()
    ctx.status = StatusRecorder(api)
    controller = IngressController(ctx)
    ing = ingress("web", [ingress_rule("web.example.com", "/api", "web")])
    stores[KIND_INGRESS].upsert(ing)
    controller.on_add(ing)
    drain(controller)

    (route_id,) = gateway.objects["routes"]
    assert gateway.get("routes", route_id)["uris"] == ["/api"]
    assert gateway.get("upstreams", gen_id(WEB_UPSTREAM)) is not None
    assert api.calls == []

    # backends may be gone by the time the Ingress is deleted
    stores[KIND_INGRESS].delete("default/web")
    stores["Service"].delete("default/web")
    controller.on_delete(ing)
    drain(controller)

    assert gateway.objects["routes"] == {}
    assert gateway.objects["upstreams"] == {}
    controller.shutdown()


# Resync


@pytest.mark.parametrize(
    ("interval", "count", "expected"),
    [
        (600, 0, 0.0),
        (600, -1, 0.0),
        (600, 1000, 0.0),
        (600, 600, 1.0),
        (600, 4, 150.0),
    ],
)
def test_get_sync_delay(interval, count, expected):
    assert get_sync_delay(interval, count) == expected


class CountingController:
    def __init__(self, kind, scheduled):
        self.kind = kind
        self.scheduled = scheduled
        self.intervals = []

    def resource_sync(self, interval, namespace=""):
        self.intervals.append(interval)
        return self.scheduled


def test_resync_all():
    routes, tls = CountingController("ApisixRoute", 3), CountingController("ApisixTls", 2)
    scheduler = ResyncScheduler([routes, tls], interval=300)

    assert scheduler.resync_all() == 5
    assert routes.intervals == tls.intervals == [300]
