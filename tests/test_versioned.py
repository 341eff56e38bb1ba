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

from apisix_ingress.kube.versioned import (
    APISIX_V2,
    APISIX_V2BETA3,
    KIND_GLOBAL_RULE,
    KIND_INGRESS,
    KIND_ROUTE,
    UnknownVersionError,
    WrongVariantError,
    parse_version_token,
    wrap,
)
from tests.fixtures.objects import apisix_route, crd, ingress, ingress_rule


def test_wrap_tags_group_version():
    ar = wrap(KIND_ROUTE, apisix_route("httpbin", http=[], api_version=APISIX_V2BETA3, resource_version="42"))
    assert ar.group_version == APISIX_V2BETA3
    assert ar.key == "default/httpbin"
    assert ar.version_token() == 42
    assert ar.v2beta3()["metadata"]["name"] == "httpbin"
    with pytest.raises(WrongVariantError):
        ar.v2()


def test_wrap_rejects_unknown_variants():
    with pytest.raises(UnknownVersionError):
        wrap(KIND_ROUTE, apisix_route("httpbin", api_version="apisix.apache.org/v1"))
    with pytest.raises(UnknownVersionError):
        wrap(KIND_GLOBAL_RULE, crd("ApisixGlobalRule", "rules", {}, api_version=APISIX_V2BETA3))
    with pytest.raises(UnknownVersionError):
        wrap(KIND_ROUTE, "not an object")
    with pytest.raises(UnknownVersionError):
        wrap("ApisixUnknown", apisix_route("httpbin"))


def test_dispatch_requires_every_variant():
    ar = wrap(KIND_ROUTE, apisix_route("httpbin"))
    with pytest.raises(ValueError, match="v2beta3"):
        ar.dispatch({APISIX_V2: lambda obj: "v2"})
    assert ar.dispatch({APISIX_V2: lambda obj: "v2", APISIX_V2BETA3: lambda obj: "v2beta3"}) == "v2"


def test_version_token_ignores_non_numeric_versions():
    assert parse_version_token("") == 0
    assert parse_version_token(None) == 0
    assert parse_version_token("abc") == 0
    assert parse_version_token("1024") == 1024


def test_ingress_class_prefers_annotation():
    raw = ingress(
        "web",
        [ingress_rule("example.com", "/", "web")],
        ingress_class="nginx",
        annotations={"kubernetes.io/ingress.class": "apisix"},
    )
    assert wrap(KIND_INGRESS, raw).ingress_class == "apisix"

    raw = ingress("web", [ingress_rule("example.com", "/", "web")], ingress_class=None)
    assert wrap(KIND_INGRESS, raw).ingress_class == ""


def test_crd_ingress_class_from_spec():
    raw = apisix_route("httpbin", http=[])
    raw["spec"]["ingressClassName"] = "apisix"
    assert wrap(KIND_ROUTE, raw).ingress_class == "apisix"
