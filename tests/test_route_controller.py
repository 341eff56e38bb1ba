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

import copy

import pytest
from urllib3.exceptions import MaxRetryError

from apisix_ingress.apisix.models import gen_id
from apisix_ingress.controllers.events import Event, EventType
from apisix_ingress.controllers.route import RouteController, route_references
from apisix_ingress.kube.errors import ResourceNotFound
from apisix_ingress.kube.status import StatusRecorder
from apisix_ingress.kube.versioned import APISIX_V2, APISIX_V2BETA3, KIND_ROUTE, wrap
from tests.fixtures.controllers import FakeCustomObjectsApi, drain
from tests.fixtures.manifests import load_manifests
from tests.fixtures.objects import apisix_route, backend, endpoints, http_rule, service

ROUTE_KEY = "default/httpbin"


@pytest.fixture
def controller(ctx):
    controller = RouteController(ctx)
    yield controller
    controller.shutdown()


@pytest.fixture
def httpbin(stores):
    manifests = load_manifests("httpbin.yaml")
    stores["Service"].upsert(manifests["Service"])
    stores["Endpoints"].upsert(manifests["Endpoints"])
    stores[KIND_ROUTE].upsert(manifests["ApisixRoute"])
    return manifests["ApisixRoute"]


@pytest.fixture
def web(stores):
    stores["Service"].upsert(service("web"))
    stores["Endpoints"].upsert(endpoints("web"))


def test_add_event_creates_routes_and_upstream(controller, httpbin, gateway, ctx):
    controller.on_add(httpbin)
    assert drain(controller) == [Event(EventType.ADD, ROUTE_KEY, APISIX_V2)]

    get = gateway.get("routes", gen_id("default_httpbin_get"))
    headers = gateway.get("routes", gen_id("default_httpbin_headers"))
    upstream = gateway.get("upstreams", gen_id("default_httpbin_80"))
    assert get["uris"] == ["/get*"]
    assert headers["plugins"] == {"response-rewrite": {"headers": {"X-Served-By": "apisix"}}}
    assert get["upstream_id"] == upstream["id"]
    assert [node["host"] for node in upstream["nodes"]] == ["10.244.0.7", "10.244.0.8"]
    # the upstream goes first so the routes never point at a missing object
    assert gateway.writes()[0] == ("PUT", "upstreams", gen_id("default_httpbin_80"))
    assert ctx.metrics.sync_operations("route", "success") == 1
    assert ctx.metrics.events("route", "add") == 1


def test_update_with_same_resource_version_is_dropped(controller, httpbin):
    controller.on_update(httpbin, copy.deepcopy(httpbin))
    assert len(controller.queue) == 0


def test_status_only_update_is_dropped(controller, httpbin):
    curr = copy.deepcopy(httpbin)
    curr["metadata"]["resourceVersion"] = "13"
    curr["status"] = {"conditions": [{"type": "ResourcesAvailable", "status": "True"}]}
    controller.on_update(httpbin, curr)
    assert len(controller.queue) == 0


def test_update_removing_a_rule_deletes_its_route(controller, httpbin, gateway, stores):
    controller.on_add(httpbin)
    drain(controller)

    curr = copy.deepcopy(httpbin)
    curr["metadata"]["resourceVersion"] = "13"
    curr["metadata"]["generation"] = 2
    curr["spec"]["http"] = curr["spec"]["http"][:1]
    stores[KIND_ROUTE].upsert(curr)
    controller.on_update(httpbin, curr)
    assert [e.type for e in drain(controller)] == [EventType.UPDATE]

    assert ("DELETE", "routes", gen_id("default_httpbin_headers")) in gateway.writes()
    assert gateway.get("routes", gen_id("default_httpbin_headers")) is None
    assert gateway.get("routes", gen_id("default_httpbin_get")) is not None
    # still referenced by the remaining rule
    assert gateway.get("upstreams", gen_id("default_httpbin_80")) is not None


def test_delete_removes_routes_and_upstreams(controller, httpbin, gateway, stores):
    controller.on_add(httpbin)
    drain(controller)

    stores[KIND_ROUTE].delete(ROUTE_KEY)
    controller.on_delete(httpbin)
    drain(controller)

    assert gateway.objects["routes"] == {}
    assert gateway.objects["upstreams"] == {}
    assert controller.service_index.dependents("default/httpbin") == set()


def test_stale_delete_is_discarded(controller, httpbin, gateway):
    controller.on_delete(httpbin)
    drain(controller)
    assert gateway.writes() == []


def test_missing_object_of_own_kind_is_forgotten(controller):
    event = Event(EventType.ADD, ROUTE_KEY, APISIX_V2)
    controller.handle_sync_err(event, ResourceNotFound(KIND_ROUTE, ROUTE_KEY))
    assert controller.queue.num_requeues(event) == 0
    assert controller.queue.pending_delayed() == 0


def test_missing_backend_service_is_retried(controller, stores, gateway, ctx):
    ar = apisix_route("web", http=[http_rule("rule1", backends=[backend("web")])])
    stores[KIND_ROUTE].upsert(ar)
    controller.on_add(ar)
    (event,) = drain(controller)

    assert controller.queue.num_requeues(event) == 1
    assert controller.queue.pending_delayed() == 1
    assert ctx.metrics.sync_operations("route", "failure") == 1
    assert gateway.writes() == []


def test_translate_error_is_not_retried(controller, stores, web, ctx):
    ar = apisix_route("web", http=[http_rule("rule1", backends=[backend("web")])] * 2)
    stores[KIND_ROUTE].upsert(ar)
    controller.on_add(ar)
    (event,) = drain(controller)

    assert controller.queue.num_requeues(event) == 0
    assert controller.queue.pending_delayed() == 0
    assert ctx.metrics.sync_operations("route", "failure") == 1


def test_missing_plugin_config_blocks_the_route(controller, stores, web, gateway):
    ar = apisix_route("web", http=[http_rule("rule1", backends=[backend("web")], plugin_config_name="cors")])
    stores[KIND_ROUTE].upsert(ar)
    controller.on_add(ar)
    (event,) = drain(controller)
    assert controller.queue.num_requeues(event) == 1
    assert gateway.objects["routes"] == {}

    plugin_config_id = gen_id("default_cors")
    gateway.objects["plugin_configs"][plugin_config_id] = {"id": plugin_config_id, "name": "default_cors"}
    controller.sync(event)

    route = gateway.get("routes", gen_id("default_web_rule1"))
    assert route["plugin_config_id"] == plugin_config_id


def test_service_add_requeues_dependent_routes(controller, stores):
    ar = apisix_route("web", http=[http_rule("rule1", backends=[backend("web")])])
    stores[KIND_ROUTE].upsert(ar)
    controller.on_add(ar)
    drain(controller)

    svc = service("web")
    stores["Service"].upsert(svc)
    controller.on_service_add(svc)
    related, _ = controller.related_queue.get(timeout=0.01)

    assert controller.handle_related(related) == 1
    event, _ = controller.queue.get(timeout=0.01)
    assert event == Event(EventType.ADD, "default/web", APISIX_V2)


def test_route_references():
    ar = apisix_route(
        "mixed",
        http=[http_rule("a", backends=[backend("web")], upstreams=[{"name": "ext"}])],
        stream=[{"name": "tcp", "backend": backend("redis", 6379)}],
    )
    services, upstreams = route_references(wrap(KIND_ROUTE, ar))
    assert services == {"default/web", "default/redis"}
    assert upstreams == {"default/ext"}


def test_resource_sync_spreads_events(controller, stores):
    stores[KIND_ROUTE].upsert(apisix_route("a", http=[]))
    stores[KIND_ROUTE].upsert(apisix_route("b", http=[]))
    other = apisix_route("c", http=[])
    other["spec"]["ingressClassName"] = "nginx"
    stores[KIND_ROUTE].upsert(other)

    assert controller.resource_sync(600) == 2
    assert len(controller.queue) == 1
    assert controller.queue.pending_delayed() == 1
    event, _ = controller.queue.get(timeout=0.01)
    assert event == Event(EventType.SYNC, "default/a", APISIX_V2)


def test_sync_event_for_deleted_object_is_ignored(controller, gateway):
    controller.process(Event(EventType.SYNC, "default/gone", APISIX_V2))
    assert gateway.writes() == []


def test_ingress_class_filter(controller):
    ar = apisix_route("web", http=[])
    ar["spec"]["ingressClassName"] = "nginx"
    controller.on_add(ar)
    assert len(controller.queue) == 0

    # older group versions predate the class selector
    legacy = apisix_route("web", http=[], api_version=APISIX_V2BETA3)
    legacy["spec"]["ingressClassName"] = "nginx"
    controller.on_add(legacy)
    assert len(controller.queue) == 1


def test_watch_namespaces(controller, ctx):
    ctx.config.kubernetes.watch_namespaces = ["apps"]
    controller.on_add(apisix_route("web", http=[]))
    controller.on_add(apisix_route("web", http=[], namespace="apps"))

    event, _ = controller.queue.get(timeout=0.01)
    assert event.key == "apps/web"
    assert len(controller.queue) == 0


def test_status_records_synced_condition(ctx, httpbin):
    api = FakeCustomObjectsApi()
    ctx.status = StatusRecorder(api)
    controller = RouteController(ctx)
    controller.on_add(httpbin)
    drain(controller)
    controller.shutdown()

    ((group, version, namespace, plural, name, body),) = api.calls
    assert (group, version, namespace, plural, name) == ("apisix.apache.org", "v2", "default", "apisixroutes", "httpbin")
    (condition,) = body["status"]["conditions"]
    assert condition["reason"] == "ResourcesSynced"
    assert condition["status"] == "True"
    assert condition["observedGeneration"] == 1


def test_status_records_aborted_condition(ctx, stores):
    api = FakeCustomObjectsApi()
    ctx.status = StatusRecorder(api)
    controller = RouteController(ctx)
    ar = apisix_route("web", http=[http_rule("rule1", backends=[backend("absent")])])
    stores[KIND_ROUTE].upsert(ar)
    controller.on_add(ar)
    drain(controller)
    controller.shutdown()

    (condition,) = api.calls[0][5]["status"]["conditions"]
    assert condition["reason"] == "ResourceSyncAborted"
    assert condition["status"] == "False"
    assert condition["message"] == 'Service "default/absent" not found'


def test_status_skipped_for_outdated_object(ctx, stores):
    api = FakeCustomObjectsApi()
    ctx.status = StatusRecorder(api)
    controller = RouteController(ctx)
    stores[KIND_ROUTE].upsert(apisix_route("web", http=[], resource_version="2"))

    controller.record_status(wrap(KIND_ROUTE, apisix_route("web", http=[])), None)
    assert api.calls == []


def test_status_transport_error_does_not_fail_the_sync(ctx, httpbin, caplog):
    class UnreachableApi(FakeCustomObjectsApi):
        def replace_namespaced_custom_object_status(self, *args):
            raise MaxRetryError(pool=None, url="/apis/apisix.apache.org/v2")

    ctx.status = StatusRecorder(UnreachableApi())
    controller = RouteController(ctx)
    controller.on_add(httpbin)
    (event,) = drain(controller)
    controller.shutdown()

    assert ctx.metrics.sync_operations("route", "success") == 1
    assert ctx.metrics.sync_operations("route", "failure") == 0
    assert controller.queue.num_requeues(event) == 0
    assert controller.queue.pending_delayed() == 0
    assert "failed to record status of ApisixRoute default/httpbin" in caplog.text
