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
Canonical APISIX objects produced by translation.

Field names follow the Admin API JSON bodies so ``model_dump`` output can be
sent as is. Plugin configuration is schema-less on this side and kept as
plain dictionaries.
"""

from __future__ import annotations

import zlib
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from apisix_ingress.constants import DEFAULT_OBJECT_DESC, MANAGED_BY_LABEL, MANAGED_BY_VALUE

Plugins = Dict[str, Any]

DEFAULT_WEIGHT = 100
DEFAULT_UPSTREAM_TIMEOUT = 60

LB_ROUNDROBIN = "roundrobin"
LB_CHASH = "chash"
LB_EWMA = "ewma"
LB_LEAST_CONN = "least_conn"
LB_TYPES = (LB_ROUNDROBIN, LB_CHASH, LB_EWMA, LB_LEAST_CONN)

HASH_ON_VARS = "vars"
HASH_ON_HEADER = "header"
HASH_ON_COOKIE = "cookie"
HASH_ON_CONSUMER = "consumer"
HASH_ON_VARS_COMBINATION = "vars_combinations"
HASH_ON_TYPES = (HASH_ON_VARS, HASH_ON_HEADER, HASH_ON_COOKIE, HASH_ON_CONSUMER, HASH_ON_VARS_COMBINATION)

SCHEME_HTTP = "http"
SCHEME_HTTPS = "https"
SCHEME_GRPC = "grpc"
SCHEME_GRPCS = "grpcs"
SCHEME_TCP = "tcp"
SCHEME_UDP = "udp"
HTTP_SCHEMES = (SCHEME_HTTP, SCHEME_HTTPS, SCHEME_GRPC, SCHEME_GRPCS)

HEALTH_CHECK_HTTP = "http"
HEALTH_CHECK_HTTPS = "https"
HEALTH_CHECK_TCP = "tcp"
HEALTH_CHECK_TYPES = (HEALTH_CHECK_HTTP, HEALTH_CHECK_HTTPS, HEALTH_CHECK_TCP)
HEALTH_CHECK_MAX_CONSECUTIVE_NUMBER = 254
ACTIVE_HEALTH_CHECK_MIN_INTERVAL = 1

PASS_HOST_PASS = "pass"
PASS_HOST_NODE = "node"
PASS_HOST_REWRITE = "rewrite"
PASS_HOST_TYPES = (PASS_HOST_PASS, PASS_HOST_NODE, PASS_HOST_REWRITE)

RESOLVE_GRANULARITY_ENDPOINT = "endpoint"
RESOLVE_GRANULARITY_SERVICE = "service"


def gen_id(raw: str) -> str:
    """Return the deterministic object ID for a composed name (CRC32, hex)."""
    if not raw:
        return ""
    return format(zlib.crc32(raw.encode("utf-8")) & 0xFFFFFFFF, "x")


def compose_route_name(namespace: str, name: str, rule: str) -> str:
    return f"{namespace}_{name}_{rule}"


def compose_stream_route_name(namespace: str, name: str, rule: str) -> str:
    return f"{namespace}_{name}_{rule}_tcp"


def compose_upstream_name(
    namespace: str,
    service: str,
    subset: str,
    port: int,
    granularity: str = RESOLVE_GRANULARITY_ENDPOINT,
) -> str:
    parts = [namespace, service]
    if subset:
        parts.append(subset)
    parts.append(str(port))
    if granularity == RESOLVE_GRANULARITY_SERVICE:
        parts.append(RESOLVE_GRANULARITY_SERVICE)
    return "_".join(parts)


def compose_external_upstream_name(namespace: str, name: str) -> str:
    return f"{namespace}_{name}"


def compose_plugin_config_name(namespace: str, name: str) -> str:
    return f"{namespace}_{name}"


def compose_global_rule_name(namespace: str, name: str) -> str:
    return f"{namespace}_{name}"


def compose_consumer_name(namespace: str, name: str) -> str:
    """Consumer usernames only accept ``[a-zA-Z0-9_]``."""
    return f"{namespace.replace('-', '_')}_{name.replace('-', '_')}"


def compose_ssl_name(namespace: str, name: str) -> str:
    return f"{namespace}_{name}"


def compose_ingress_route_name(namespace: str, name: str, host: str, path: str) -> str:
    return f"ing_{namespace}_{name}_{gen_id(host + path)}"


def _default_labels() -> Dict[str, str]:
    return {MANAGED_BY_LABEL: MANAGED_BY_VALUE}


class GatewayObject(BaseModel):
    """Common base: every object exposes the identity used for diffing."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: ClassVar[str] = ""

    def identity(self) -> str:
        return getattr(self, "id", "") or ""

    def to_payload(self) -> Dict[str, Any]:
        """Admin API request body."""
        return self.model_dump(exclude_none=True)


class UpstreamTimeout(BaseModel):
    connect: int = DEFAULT_UPSTREAM_TIMEOUT
    send: int = DEFAULT_UPSTREAM_TIMEOUT
    read: int = DEFAULT_UPSTREAM_TIMEOUT


class UpstreamNode(BaseModel):
    host: str
    port: int
    weight: int = DEFAULT_WEIGHT


class ActiveHealthy(BaseModel):
    interval: Optional[int] = None
    http_statuses: Optional[List[int]] = None
    successes: Optional[int] = None


class ActiveUnhealthy(BaseModel):
    interval: Optional[int] = None
    http_statuses: Optional[List[int]] = None
    http_failures: Optional[int] = None
    tcp_failures: Optional[int] = None
    timeouts: Optional[int] = None


class PassiveHealthy(BaseModel):
    http_statuses: Optional[List[int]] = None
    successes: Optional[int] = None


class PassiveUnhealthy(BaseModel):
    http_statuses: Optional[List[int]] = None
    http_failures: Optional[int] = None
    tcp_failures: Optional[int] = None
    timeouts: Optional[float] = None


class ActiveHealthCheck(BaseModel):
    type: str = HEALTH_CHECK_HTTP
    timeout: Optional[float] = None
    concurrency: Optional[int] = None
    host: Optional[str] = None
    port: Optional[int] = None
    http_path: Optional[str] = None
    https_verify_certificate: bool = True
    req_headers: Optional[List[str]] = None
    healthy: Optional[ActiveHealthy] = None
    unhealthy: Optional[ActiveUnhealthy] = None


class PassiveHealthCheck(BaseModel):
    type: str = HEALTH_CHECK_HTTP
    healthy: Optional[PassiveHealthy] = None
    unhealthy: Optional[PassiveUnhealthy] = None


class UpstreamHealthCheck(BaseModel):
    active: Optional[ActiveHealthCheck] = None
    passive: Optional[PassiveHealthCheck] = None


class ClientTLS(BaseModel):
    client_cert: str
    client_key: str


class Route(GatewayObject):
    kind: ClassVar[str] = "route"

    id: str = ""
    name: str = ""
    desc: Optional[str] = DEFAULT_OBJECT_DESC
    labels: Dict[str, str] = Field(default_factory=_default_labels)
    host: Optional[str] = None
    hosts: Optional[List[str]] = None
    uri: Optional[str] = None
    uris: Optional[List[str]] = None
    priority: Optional[int] = None
    timeout: Optional[UpstreamTimeout] = None
    vars: Optional[List[List[Any]]] = None
    methods: Optional[List[str]] = None
    enable_websocket: Optional[bool] = None
    remote_addrs: Optional[List[str]] = None
    plugins: Plugins = Field(default_factory=dict)
    plugin_config_id: Optional[str] = None
    upstream_id: Optional[str] = None
    filter_func: Optional[str] = None


class StreamRoute(GatewayObject):
    kind: ClassVar[str] = "stream_route"

    id: str = ""
    name: Optional[str] = None
    desc: Optional[str] = DEFAULT_OBJECT_DESC
    labels: Dict[str, str] = Field(default_factory=_default_labels)
    server_port: Optional[int] = None
    sni: Optional[str] = None
    upstream_id: Optional[str] = None
    plugins: Plugins = Field(default_factory=dict)


class Upstream(GatewayObject):
    kind: ClassVar[str] = "upstream"

    id: str = ""
    name: str = ""
    desc: Optional[str] = DEFAULT_OBJECT_DESC
    labels: Dict[str, str] = Field(default_factory=_default_labels)
    type: str = LB_ROUNDROBIN
    hash_on: Optional[str] = None
    key: Optional[str] = None
    checks: Optional[UpstreamHealthCheck] = None
    nodes: List[UpstreamNode] = Field(default_factory=list)
    scheme: str = SCHEME_HTTP
    retries: Optional[int] = None
    timeout: Optional[UpstreamTimeout] = None
    tls: Optional[ClientTLS] = None
    pass_host: Optional[str] = None
    upstream_host: Optional[str] = None
    service_name: Optional[str] = None
    discovery_type: Optional[str] = None
    discovery_args: Optional[Dict[str, Any]] = None


class SSLClient(BaseModel):
    ca: str
    depth: Optional[int] = None
    skip_mtls_uri_regex: Optional[List[str]] = None


class SSL(GatewayObject):
    kind: ClassVar[str] = "ssl"

    id: str = ""
    snis: List[str] = Field(default_factory=list)
    cert: str = ""
    key: str = ""
    status: int = 1
    labels: Dict[str, str] = Field(default_factory=_default_labels)
    client: Optional[SSLClient] = None


class PluginConfig(GatewayObject):
    kind: ClassVar[str] = "plugin_config"

    id: str = ""
    name: str = ""
    desc: Optional[str] = DEFAULT_OBJECT_DESC
    labels: Dict[str, str] = Field(default_factory=_default_labels)
    plugins: Plugins = Field(default_factory=dict)


class GlobalRule(GatewayObject):
    kind: ClassVar[str] = "global_rule"

    id: str = ""
    plugins: Plugins = Field(default_factory=dict)


class Consumer(GatewayObject):
    kind: ClassVar[str] = "consumer"

    username: str = ""
    desc: Optional[str] = DEFAULT_OBJECT_DESC
    labels: Dict[str, str] = Field(default_factory=_default_labels)
    plugins: Plugins = Field(default_factory=dict)

    def identity(self) -> str:
        return self.username


OBJECT_TYPES = {
    cls.kind: cls for cls in (Route, StreamRoute, Upstream, SSL, PluginConfig, GlobalRule, Consumer)
}


__all__ = [
    "Plugins",
    "DEFAULT_WEIGHT",
    "DEFAULT_UPSTREAM_TIMEOUT",
    "LB_TYPES",
    "LB_CHASH",
    "LB_ROUNDROBIN",
    "HASH_ON_TYPES",
    "HTTP_SCHEMES",
    "HEALTH_CHECK_TYPES",
    "HEALTH_CHECK_MAX_CONSECUTIVE_NUMBER",
    "ACTIVE_HEALTH_CHECK_MIN_INTERVAL",
    "PASS_HOST_TYPES",
    "PASS_HOST_REWRITE",
    "RESOLVE_GRANULARITY_ENDPOINT",
    "RESOLVE_GRANULARITY_SERVICE",
    "gen_id",
    "compose_route_name",
    "compose_stream_route_name",
    "compose_upstream_name",
    "compose_external_upstream_name",
    "compose_plugin_config_name",
    "compose_global_rule_name",
    "compose_consumer_name",
    "compose_ssl_name",
    "compose_ingress_route_name",
    "GatewayObject",
    "UpstreamTimeout",
    "UpstreamNode",
    "ActiveHealthy",
    "ActiveUnhealthy",
    "PassiveHealthy",
    "PassiveUnhealthy",
    "ActiveHealthCheck",
    "PassiveHealthCheck",
    "UpstreamHealthCheck",
    "ClientTLS",
    "Route",
    "StreamRoute",
    "Upstream",
    "SSLClient",
    "SSL",
    "PluginConfig",
    "GlobalRule",
    "Consumer",
    "OBJECT_TYPES",
]
