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

from apisix_ingress.apisix.models import UpstreamNode, gen_id
from apisix_ingress.kube.errors import ResourceNotFound
from apisix_ingress.kube.versioned import APISIX_V2BETA3
from apisix_ingress.translation.errors import TranslateError
from tests.fixtures.objects import crd, endpoints, pod, secret, service


def test_translate_upstream_config_defaults(translator):
    ups = translator.translate_upstream_config({}, "default")
    assert ups.scheme == "http"
    assert ups.type == "roundrobin"
    assert ups.checks is None
    assert ups.retries is None
    assert ups.timeout is None


def test_translate_upstream_config_full(translator):
    cfg = {
        "scheme": "https",
        "loadbalancer": {"type": "chash", "hashOn": "header", "key": "user-agent"},
        "retries": 3,
        "timeout": {"connect": "5s", "read": "1m"},
        "passHost": "rewrite",
        "upstreamHost": "internal.example.com",
        "healthCheck": {
            "active": {
                "type": "https",
                "timeout": "2s",
                "httpPath": "/healthz",
                "healthy": {"interval": "3s", "successes": 2, "httpCodes": [200]},
                "unhealthy": {"interval": "1s", "httpFailures": 3, "httpCodes": [502, 503]},
            },
            "passive": {"healthy": {"successes": 5}},
        },
    }
    ups = translator.translate_upstream_config(cfg, "default")
    assert ups.scheme == "https"
    assert ups.type == "chash"
    assert ups.hash_on == "header"
    assert ups.key == "user-agent"
    assert ups.retries == 3
    assert (ups.timeout.connect, ups.timeout.read, ups.timeout.send) == (5, 60, 60)
    assert ups.pass_host == "rewrite"
    assert ups.upstream_host == "internal.example.com"
    assert ups.checks.active.type == "https"
    assert ups.checks.active.timeout == 2.0
    assert ups.checks.active.http_path == "/healthz"
    assert ups.checks.active.healthy.interval == 3
    assert ups.checks.active.unhealthy.http_statuses == [502, 503]
    assert ups.checks.passive.healthy.successes == 5


def test_v2beta3_ignores_pass_host(translator):
    ups = translator.translate_upstream_config(
        {"passHost": "bogus"}, "default", group_version=APISIX_V2BETA3
    )
    assert ups.pass_host is None


@pytest.mark.parametrize(
    "cfg, field",
    [
        ({"scheme": "ftp"}, "scheme"),
        ({"loadbalancer": {"type": "random"}}, "loadbalancer.type"),
        ({"loadbalancer": {"type": "chash", "hashOn": "ip"}}, "loadbalancer.hashOn"),
        ({"retries": -1}, "retries"),
        ({"timeout": {"read": "soon"}}, "timeout.read"),
        ({"passHost": "rewrite"}, "upstreamHost"),
        ({"healthCheck": {"passive": {}}}, "healthCheck.active"),
        ({"healthCheck": {"active": {"healthy": {"interval": "500ms"}}}}, "healthCheck.active.healthy.interval"),
        ({"healthCheck": {"active": {"port": 70000}}}, "healthCheck.active.port"),
        (
            {"healthCheck": {"active": {"unhealthy": {"interval": "1s", "httpFailures": 255}}}},
            "healthCheck.active.unhealthy.httpFailures",
        ),
        (
            {"healthCheck": {"active": {"healthy": {"interval": "1s", "httpCodes": []}}}},
            "healthCheck.active.healthy.httpCodes",
        ),
    ],
)
def test_translate_upstream_config_errors(translator, cfg, field):
    with pytest.raises(TranslateError) as exc_info:
        translator.translate_upstream_config(cfg, "default")
    assert exc_info.value.field == field


def test_client_tls_from_secret(translator, stores):
    stores["Secret"].upsert(secret("client-cert", cert="CERT", key="KEY"))
    ups = translator.translate_upstream_config({"tlsSecret": {"name": "client-cert"}}, "default")
    assert ups.tls.client_cert == "CERT"
    assert ups.tls.client_key == "KEY"

    with pytest.raises(ResourceNotFound):
        translator.translate_upstream_config({"tlsSecret": {"name": "absent"}}, "default")

    stores["Secret"].upsert(secret("only-ca", **{"ca.crt": "CA"}))
    with pytest.raises(TranslateError):
        translator.translate_upstream_config({"tlsSecret": {"name": "only-ca"}}, "default")


def test_translate_service_endpoint_and_service_granularity(translator, stores):
    stores["Service"].upsert(service("web", ports=((80, "http"),), cluster_ip="10.96.0.10"))
    stores["Endpoints"].upsert(endpoints("web", ips=("10.0.0.1", "10.0.0.2"), ports=((8080, "http"),)))

    ups = translator.translate_service("default", "web", "", "endpoint", "10.96.0.10", 80)
    assert ups.name == "default_web_80"
    assert ups.id == gen_id("default_web_80")
    assert ups.nodes == [
        UpstreamNode(host="10.0.0.1", port=8080, weight=100),
        UpstreamNode(host="10.0.0.2", port=8080, weight=100),
    ]

    ups = translator.translate_service("default", "web", "", "service", "10.96.0.10", 80)
    assert ups.name == "default_web_80_service"
    assert ups.nodes == [UpstreamNode(host="10.96.0.10", port=80, weight=100)]


def test_translate_service_applies_apisix_upstream(translator, stores):
    stores["Service"].upsert(service("web", ports=((80, "http"), (443, "https"))))
    stores["Endpoints"].upsert(endpoints("web", ports=((8080, "http"), (8443, "https"))))
    stores["ApisixUpstream"].upsert(
        crd(
            "ApisixUpstream",
            "web",
            {
                "retries": 2,
                "portLevelSettings": [{"port": 443, "scheme": "https"}],
            },
        )
    )

    plain = translator.translate_service("default", "web", "", "endpoint", "", 80)
    assert plain.retries == 2
    assert plain.scheme == "http"

    secure = translator.translate_service("default", "web", "", "endpoint", "", 443)
    assert secure.scheme == "https"
    assert secure.retries is None
    assert secure.nodes == [UpstreamNode(host="10.0.0.1", port=8443, weight=100)]


def test_subset_filters_nodes_by_pod_labels(translator, stores):
    stores["Service"].upsert(service("web"))
    stores["Endpoints"].upsert(endpoints("web", ips=("10.0.0.1", "10.0.0.2", "10.0.0.3")))
    stores["Pod"].upsert(pod("web-v1", "10.0.0.1", labels={"version": "v1"}))
    stores["Pod"].upsert(pod("web-v2", "10.0.0.2", labels={"version": "v2"}))
    stores["ApisixUpstream"].upsert(
        crd("ApisixUpstream", "web", {"subsets": [{"name": "v1", "labels": {"version": "v1"}}]})
    )

    ups = translator.translate_service("default", "web", "v1", "endpoint", "", 80)
    assert ups.name == "default_web_v1_80"
    assert [node.host for node in ups.nodes] == ["10.0.0.1"]


def test_subset_without_apisix_upstream_selects_nothing(translator, stores):
    stores["Service"].upsert(service("web"))
    stores["Endpoints"].upsert(endpoints("web"))
    ups = translator.translate_service("default", "web", "v1", "endpoint", "", 80)
    assert ups.nodes == []


def test_headless_service_with_service_granularity(translator, stores):
    stores["Service"].upsert(service("headless", cluster_ip="None"))
    with pytest.raises(TranslateError):
        translator.get_service_cluster_ip_and_port(
            {"serviceName": "headless", "servicePort": 80, "resolveGranularity": "service"}, "default"
        )


def test_unknown_service_port(translator, stores):
    stores["Service"].upsert(service("web"))
    with pytest.raises(TranslateError) as exc_info:
        translator.get_service_cluster_ip_and_port({"serviceName": "web", "servicePort": 9090}, "default")
    assert exc_info.value.field == "service.spec.ports"
    assert translator.get_service_cluster_ip_and_port({"serviceName": "web", "servicePort": "http"}, "default") == (
        "10.96.0.10",
        80,
    )


def test_external_upstream(translator, stores):
    stores["Service"].upsert(service("legacy", type="ExternalName", externalName="legacy.example.com"))
    stores["ApisixUpstream"].upsert(
        crd(
            "ApisixUpstream",
            "ext",
            {
                "scheme": "https",
                "externalNodes": [
                    {"type": "Domain", "name": "httpbin.org", "weight": 10},
                    {"type": "Service", "name": "legacy", "port": 8443},
                ],
            },
        )
    )
    ups = translator.translate_external_apisix_upstream("default", "ext")
    assert ups.name == "default_ext"
    assert ups.id == gen_id("default_ext")
    assert ups.nodes == [
        UpstreamNode(host="httpbin.org", port=443, weight=10),
        UpstreamNode(host="legacy.example.com", port=8443, weight=100),
    ]


def test_external_upstream_errors(translator, stores):
    with pytest.raises(ResourceNotFound):
        translator.translate_external_apisix_upstream("default", "absent")

    stores["ApisixUpstream"].upsert(crd("ApisixUpstream", "empty", {"retries": 1}))
    with pytest.raises(TranslateError):
        translator.translate_external_apisix_upstream("default", "empty")

    stores["ApisixUpstream"].upsert(
        crd("ApisixUpstream", "old", {"externalNodes": [{"type": "Domain", "name": "a.b"}]}, api_version=APISIX_V2BETA3)
    )
    with pytest.raises(TranslateError):
        translator.translate_external_apisix_upstream("default", "old")

    stores["Service"].upsert(service("internal"))
    stores["ApisixUpstream"].upsert(
        crd("ApisixUpstream", "bad", {"externalNodes": [{"type": "Service", "name": "internal"}]})
    )
    with pytest.raises(TranslateError):
        translator.translate_external_apisix_upstream("default", "bad")
