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

from apisix_ingress.apisix.models import Route, gen_id
from apisix_ingress.kube.errors import ResourceNotFound
from apisix_ingress.kube.versioned import KIND_INGRESS, NETWORKING_V1BETA1, wrap
from apisix_ingress.translation.annotations import translate_annotations
from apisix_ingress.translation.errors import TranslateError
from apisix_ingress.translation.ingress import REGEX_PRIORITY, ingress_tls_name
from tests.fixtures.objects import endpoints, ingress, ingress_rule, meta, secret, service

PREFIX = "k8s.apisix.apache.org/"


@pytest.fixture
def web(stores):
    stores["Service"].upsert(service("web"))
    stores["Endpoints"].upsert(endpoints("web", ips=("10.0.0.1",)))


def test_translate_ingress_exact_and_prefix(translator, web):
    ing = ingress(
        "web",
        [
            ingress_rule("example.com", "/api", "web"),
            ingress_rule("example.com", "/static/", "web", path_type="Prefix"),
        ],
    )
    tctx = translator.translate_ingress(wrap(KIND_INGRESS, ing))

    api, static = tctx.routes
    assert api.host == "example.com"
    assert api.uris == ["/api"]
    assert static.uris == ["/static/", "/static/*"]
    assert api.name == f"ing_default_web_{gen_id('example.com/api')}"
    assert len(tctx.upstreams) == 1
    ups = tctx.upstreams[0]
    assert ups.id == gen_id("default_web_80")
    assert api.upstream_id == ups.id
    assert (ups.timeout.connect, ups.timeout.read, ups.timeout.send) == (60, 60, 60)


def test_prefix_without_trailing_slash(translator, web):
    ing = ingress("web", [ingress_rule("", "/foo", "web", path_type="Prefix")])
    route = translator.translate_ingress(wrap(KIND_INGRESS, ing)).routes[0]
    assert route.host is None
    assert route.uris == ["/foo", "/foo/*"]


def test_regex_path(translator, web):
    ing = ingress(
        "web",
        [ingress_rule("example.com", "/v[0-9]+/users", "web", path_type="ImplementationSpecific")],
        annotations={PREFIX + "use-regex": "true"},
    )
    route = translator.translate_ingress(wrap(KIND_INGRESS, ing)).routes[0]
    assert route.uris == ["/*"]
    assert route.vars == [["uri", "~~", "/v[0-9]+/users"]]
    assert route.priority == REGEX_PRIORITY


def test_annotations_become_plugins_and_upstream_settings(translator, web):
    ing = ingress(
        "web",
        [ingress_rule("example.com", "/", "web")],
        annotations={
            PREFIX + "enable-cors": "true",
            PREFIX + "http-to-https": "true",
            PREFIX + "allowlist-source-range": "10.0.0.0/8,192.168.0.0/16",
            PREFIX + "upstream-scheme": "HTTPS",
            PREFIX + "upstream-retries": "2",
            PREFIX + "upstream-read-timeout": "15s",
            PREFIX + "plugin-config-name": "common",
            PREFIX + "enable-websocket": "true",
        },
    )
    tctx = translator.translate_ingress(wrap(KIND_INGRESS, ing))
    route, ups = tctx.routes[0], tctx.upstreams[0]
    assert route.plugins["cors"] == {"allow_origins": "*", "allow_methods": "*", "allow_headers": "*"}
    assert route.plugins["redirect"] == {"http_to_https": True}
    assert route.plugins["ip-restriction"] == {"whitelist": ["10.0.0.0/8", "192.168.0.0/16"]}
    assert route.plugin_config_id == gen_id("default_common")
    assert route.enable_websocket is True
    assert ups.scheme == "https"
    assert ups.retries == 2
    assert (ups.timeout.connect, ups.timeout.read) == (60, 15)


def test_translate_annotations_edge_cases():
    result = translate_annotations(
        {
            PREFIX + "upstream-scheme": "ftp",
            PREFIX + "upstream-retries": "many",
            PREFIX + "enable-csrf": "true",
            PREFIX + "http-block-methods": "DELETE,PUT",
            PREFIX + "auth-type": "keyAuth",
            PREFIX + "rewrite-target-regex": "/app/(.*)",
            PREFIX + "rewrite-target-regex-template": "/$1",
        }
    )
    assert result.upstream.scheme == ""
    assert result.upstream.retries == 0
    assert "csrf" not in result.plugins
    assert result.plugins["fault-injection"] == {
        "abort": {"http_status": 405, "vars": [[["request_method", "in", ["DELETE", "PUT"]]]]}
    }
    assert result.plugins["key-auth"] == {}
    assert result.plugins["proxy-rewrite"] == {"regex_uri": ["/app/(.*)", "/$1"]}
    assert translate_annotations(None).plugins == {}


def test_service_namespace_annotation(translator, stores):
    stores["Service"].upsert(service("shared", namespace="platform"))
    ing = ingress(
        "web",
        [ingress_rule("example.com", "/", "shared")],
        annotations={PREFIX + "svc-namespace": "platform"},
    )
    ups = translator.translate_ingress(wrap(KIND_INGRESS, ing)).upstreams[0]
    assert ups.name == "platform_shared_80"


def test_ingress_tls(translator, stores, web):
    stores["Secret"].upsert(secret("web-tls", **{"tls.crt": "CERT", "tls.key": "KEY"}))
    tls = [{"hosts": ["example.com"], "secretName": "web-tls"}]
    ing = ingress("web", [ingress_rule("example.com", "/", "web")], tls=tls)
    tctx = translator.translate_ingress(wrap(KIND_INGRESS, ing))

    name = ingress_tls_name("default", "web", "web-tls", ["example.com"])
    assert name.startswith("web-tls-")
    assert tctx.ssls[0].id == gen_id(f"default_{name}")
    assert tctx.ssls[0].snis == ["example.com"]

    other = ingress_tls_name("default", "web", "web-tls", ["other.example.com"])
    assert other != name


def test_ingress_malformed_secret_is_a_translate_error(translator, stores, web):
    stores["Secret"].upsert(secret("web-tls", **{"tls.crt": "CERT"}))
    ing = ingress("web", [ingress_rule("example.com", "/", "web")], tls=[{"hosts": ["a"], "secretName": "web-tls"}])
    with pytest.raises(TranslateError, match="missing key field"):
        translator.translate_ingress(wrap(KIND_INGRESS, ing))


def test_ingress_missing_secret(translator, web):
    ing = ingress("web", [ingress_rule("example.com", "/", "web")], tls=[{"hosts": ["a"], "secretName": "absent"}])
    with pytest.raises(ResourceNotFound):
        translator.translate_ingress(wrap(KIND_INGRESS, ing))

    # deletion only needs identities
    tctx = translator.translate_ingress(wrap(KIND_INGRESS, ing), skip_verify=True)
    assert len(tctx.ssls) == 1
    assert tctx.ssls[0].cert == ""


def test_skip_verify_tolerates_missing_service(translator):
    ing = ingress("web", [ingress_rule("example.com", "/", "gone", port=8080)])
    # a numeric port needs no lookup, the upstream just has no nodes yet
    assert translator.translate_ingress(wrap(KIND_INGRESS, ing)).upstreams[0].nodes == []

    named = ingress_rule("example.com", "/", "gone")
    named["http"]["paths"][0]["backend"]["service"]["port"] = {"name": "http"}
    with pytest.raises(ResourceNotFound):
        translator.translate_ingress(wrap(KIND_INGRESS, ingress("web", [named])))

    tctx = translator.translate_ingress(wrap(KIND_INGRESS, ing), skip_verify=True)
    assert tctx.upstreams[0].id == gen_id("default_gone_8080")
    assert tctx.routes[0].upstream_id == tctx.upstreams[0].id


def test_v1beta1_backend(translator, web):
    raw = {
        "apiVersion": NETWORKING_V1BETA1,
        "kind": "Ingress",
        "metadata": meta("web"),
        "spec": {
            "rules": [
                {
                    "host": "example.com",
                    "http": {"paths": [{"path": "/", "backend": {"serviceName": "web", "servicePort": "http"}}]},
                }
            ]
        },
    }
    tctx = translator.translate_ingress(wrap(KIND_INGRESS, raw))
    assert tctx.upstreams[0].id == gen_id("default_web_80")


def test_translate_old_ingress(translator, cluster):
    ing = ingress("web", [ingress_rule("example.com", "/api", "web")])
    route_id = gen_id(f"ing_default_web_{gen_id('example.com/api')}")
    cluster.routes.create(Route(id=route_id, upstream_id="u1", plugin_config_id="pc1"))

    old = translator.translate_old_ingress(wrap(KIND_INGRESS, ing))
    assert [r.id for r in old.routes] == [route_id]
    assert [u.id for u in old.upstreams] == ["u1"]
    assert [p.id for p in old.plugin_configs] == ["pc1"]
