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

"""ApisixRoute translation: HTTP routes, stream routes and their upstreams."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from apisix_ingress.apisix.models import (
    DEFAULT_WEIGHT,
    RESOLVE_GRANULARITY_ENDPOINT,
    Plugins,
    Route,
    StreamRoute,
    Upstream,
    compose_external_upstream_name,
    compose_plugin_config_name,
    compose_route_name,
    compose_stream_route_name,
    compose_upstream_name,
    gen_id,
)
from apisix_ingress.kube.versioned import APISIX_V2, APISIX_V2BETA3, VersionedResource
from apisix_ingress.translation.context import TranslateContext
from apisix_ingress.translation.errors import DuplicatedRuleNameError, TranslateError
from apisix_ingress.translation.helpers import (
    decode_secret_data,
    find_service_port,
    insert_key_in_map,
    validate_remote_addrs,
)
from apisix_ingress.translation.upstream import translate_timeout

logger = logging.getLogger(__name__)

SCOPE_QUERY = "Query"
SCOPE_HEADER = "Header"
SCOPE_PATH = "Path"
SCOPE_COOKIE = "Cookie"
SCOPE_VARIABLE = "Variable"

OP_EQUAL = "Equal"
OP_NOT_EQUAL = "NotEqual"
OP_GREATER_THAN = "GreaterThan"
OP_GREATER_THAN_EQUAL = "GreaterThanEqual"
OP_LESS_THAN = "LessThan"
OP_LESS_THAN_EQUAL = "LessThanEqual"
OP_IN = "In"
OP_NOT_IN = "NotIn"
OP_REGEX_MATCH = "RegexMatch"
OP_REGEX_NOT_MATCH = "RegexNotMatch"
OP_REGEX_MATCH_CASE_INSENSITIVE = "RegexMatchCaseInsensitive"
OP_REGEX_NOT_MATCH_CASE_INSENSITIVE = "RegexNotMatchCaseInsensitive"

# operator -> (inverted, lua-resty-expr operator)
OPERATORS: Dict[str, Tuple[bool, str]] = {
    OP_EQUAL: (False, "=="),
    OP_NOT_EQUAL: (False, "~="),
    OP_GREATER_THAN: (False, ">"),
    OP_GREATER_THAN_EQUAL: (False, ">="),
    OP_LESS_THAN: (False, "<"),
    OP_LESS_THAN_EQUAL: (False, "<="),
    OP_IN: (False, "in"),
    OP_NOT_IN: (True, "in"),
    OP_REGEX_MATCH: (False, "~~"),
    OP_REGEX_NOT_MATCH: (True, "~~"),
    OP_REGEX_MATCH_CASE_INSENSITIVE: (False, "~*"),
    OP_REGEX_NOT_MATCH_CASE_INSENSITIVE: (True, "~*"),
}

AUTH_PLUGINS = {
    "keyAuth": "key-auth",
    "basicAuth": "basic-auth",
    "wolfRBAC": "wolf-rbac",
    "jwtAuth": "jwt-auth",
    "hmacAuth": "hmac-auth",
    "ldapAuth": "ldap-auth",
}
# auth types whose route level payload is carried over
AUTH_PAYLOAD_FIELDS = {"keyAuth": "keyAuth", "jwtAuth": "jwtAuth", "ldapAuth": "ldapAuth"}

TRAFFIC_SPLIT_PLUGIN = "traffic-split"


def translate_route_match_exprs(exprs: List[Dict[str, Any]]) -> List[List[Any]]:
    """Convert match expressions into APISIX ``vars``."""
    result: List[List[Any]] = []
    for expr in exprs:
        subject = expr.get("subject") or {}
        scope = subject.get("scope") or ""
        name = subject.get("name") or ""
        if not name and scope != SCOPE_PATH:
            raise TranslateError("match.exprs", "empty subject name")
        if scope == SCOPE_QUERY:
            var = "arg_" + name
        elif scope == SCOPE_HEADER:
            var = "http_" + name.lower().replace("-", "_")
        elif scope == SCOPE_COOKIE:
            var = "cookie_" + name
        elif scope == SCOPE_PATH:
            var = "uri"
        elif scope == SCOPE_VARIABLE:
            var = name
        else:
            raise TranslateError("match.exprs", "bad subject name")

        op = expr.get("op")
        if op not in OPERATORS:
            raise TranslateError("match.exprs", "unknown operator")
        inverted, operator = OPERATORS[op]
        this: List[Any] = [var]
        if inverted:
            this.append("!")
        this.append(operator)
        if op in (OP_IN, OP_NOT_IN):
            if expr.get("set") is None:
                raise TranslateError("match.exprs", "empty set value")
            this.append(list(expr["set"]))
        elif expr.get("value") is not None:
            this.append(expr["value"])
        else:
            raise TranslateError("match.exprs", "neither set nor value is provided")
        result.append(this)
    return result


def _authentication_plugins(auth: Optional[Dict[str, Any]], allow_ldap: bool) -> Plugins:
    if not auth or not auth.get("enable"):
        return {}
    auth_type = auth.get("type")
    if auth_type == "ldapAuth" and not allow_ldap:
        auth_type = None
    plugin = AUTH_PLUGINS.get(auth_type, "basic-auth")
    payload_field = AUTH_PAYLOAD_FIELDS.get(auth_type)
    if payload_field:
        return {plugin: copy.deepcopy(auth.get(payload_field) or {})}
    return {plugin: {}}


class RouteTranslatorMixin:
    """
    ApisixRoute translation.

    Expects the host class to provide ``secrets`` and ``services`` stores, the
    upstream translation helpers and ``gateway_cluster()`` for read-back.
    """

    def translate_route(self, ar: VersionedResource) -> TranslateContext:
        ctx = TranslateContext()
        ar.dispatch(
            {
                APISIX_V2: lambda obj: self._translate_route_spec(ctx, ar, allow_external=True),
                APISIX_V2BETA3: lambda obj: self._translate_route_spec(ctx, ar, allow_external=False),
            }
        )
        return ctx

    def _translate_route_spec(self, ctx: TranslateContext, ar: VersionedResource, allow_external: bool) -> None:
        self._translate_http_routes(ctx, ar, allow_external)
        self._translate_stream_routes(ctx, ar)

    def translate_plugins(self, namespace: str, plugins: Optional[List[Dict[str, Any]]]) -> Plugins:
        """Enabled plugins as a name -> config map, secret values merged in."""
        result: Plugins = {}
        for plugin in plugins or []:
            if not plugin.get("enable"):
                continue
            config = plugin.get("config")
            if config is None:
                result[plugin["name"]] = {}
                continue
            config = copy.deepcopy(config)
            secret_ref = plugin.get("secretRef")
            if secret_ref:
                secret = self.secrets.must_get(namespace, secret_ref)
                logger.debug(
                    "merge secret %s/%s into config of plugin %s", namespace, secret_ref, plugin["name"]
                )
                for key, value in decode_secret_data(secret).items():
                    insert_key_in_map(key, value, config)
            result[plugin["name"]] = config
        return result

    def _translate_http_routes(self, ctx: TranslateContext, ar: VersionedResource, allow_external: bool) -> None:
        namespace = ar.namespace
        seen = set()
        for part in ar.spec.get("http") or []:
            rule_name = part.get("name", "")
            if rule_name in seen:
                raise DuplicatedRuleNameError(rule_name)
            seen.add(rule_name)

            timeout = None
            if part.get("timeout") is not None:
                timeout = translate_timeout(part["timeout"], "timeout")

            plugins = self.translate_plugins(namespace, part.get("plugins"))
            plugins.update(_authentication_plugins(part.get("authentication"), allow_ldap=allow_external))

            match = part.get("match") or {}
            exprs = None
            if match.get("exprs") is not None:
                exprs = translate_route_match_exprs(match["exprs"])
            try:
                validate_remote_addrs(match.get("remoteAddrs"))
            except ValueError as exc:
                logger.error("ApisixRoute %s with invalid remote addrs: %s", ar.key, exc)
                raise TranslateError("match.remoteAddrs", str(exc)) from exc

            route = Route()
            route.name = compose_route_name(namespace, ar.name, rule_name)
            route.id = gen_id(route.name)
            route.priority = part.get("priority")
            route.remote_addrs = match.get("remoteAddrs") or None
            route.vars = exprs or None
            route.hosts = match.get("hosts") or None
            route.uris = match.get("paths") or None
            route.methods = match.get("methods") or None
            route.enable_websocket = part.get("websocket")
            route.plugins = plugins
            route.timeout = timeout
            route.filter_func = match.get("filter_func") or None
            if part.get("plugin_config_name"):
                route.plugin_config_id = gen_id(
                    compose_plugin_config_name(namespace, part["plugin_config_name"])
                )
            route.labels.update(ar.labels)
            ctx.add_route(route)

            backends = part.get("backends") or []
            if backends:
                self._translate_route_backends(ctx, namespace, route, backends)
            if allow_external:
                self._translate_route_external_upstreams(ctx, namespace, route, part, backends)

    def _translate_route_backends(
        self, ctx: TranslateContext, namespace: str, route: Route, backends: List[Dict[str, Any]]
    ) -> None:
        # the first backend is the route's own upstream, the rest go to traffic-split
        backend = backends[0]
        cluster_ip, port = self.get_service_cluster_ip_and_port(backend, namespace)
        granularity = backend.get("resolveGranularity") or RESOLVE_GRANULARITY_ENDPOINT
        subset = backend.get("subset") or ""
        upstream_name = compose_upstream_name(namespace, backend["serviceName"], subset, port, granularity)
        route.upstream_id = gen_id(upstream_name)

        if len(backends) > 1:
            weight = backend.get("weight")
            if weight is None:
                weight = DEFAULT_WEIGHT
            route.plugins[TRAFFIC_SPLIT_PLUGIN] = self.translate_traffic_split_plugin(
                ctx, namespace, weight, backends[1:]
            )
        if not ctx.check_upstream_exist(route.upstream_id):
            ctx.add_upstream(
                self.translate_service(namespace, backend["serviceName"], subset, granularity, cluster_ip, port)
            )

    def translate_traffic_split_plugin(
        self,
        ctx: TranslateContext,
        namespace: str,
        default_weight: int,
        backends: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        weighted: List[Dict[str, Any]] = []
        for backend in backends:
            cluster_ip, port = self.get_service_cluster_ip_and_port(backend, namespace)
            ups = self.translate_service(
                namespace,
                backend["serviceName"],
                backend.get("subset") or "",
                backend.get("resolveGranularity") or RESOLVE_GRANULARITY_ENDPOINT,
                cluster_ip,
                port,
            )
            ctx.add_upstream(ups)
            weight = backend.get("weight")
            weighted.append({"upstream_id": ups.id, "weight": DEFAULT_WEIGHT if weight is None else weight})
        # the route's own upstream takes the remaining share
        weighted.append({"weight": default_weight})
        return {"rules": [{"weighted_upstreams": weighted}]}

    def _translate_route_external_upstreams(
        self,
        ctx: TranslateContext,
        namespace: str,
        route: Route,
        part: Dict[str, Any],
        backends: List[Dict[str, Any]],
    ) -> None:
        refs = part.get("upstreams") or []
        if not refs:
            return
        if not backends:
            route.upstream_id = gen_id(compose_external_upstream_name(namespace, refs[0]["name"]))

        translated: List[Tuple[Upstream, int]] = []
        for i, ref in enumerate(refs):
            try:
                ups = self.translate_external_apisix_upstream(namespace, ref["name"])
            except TranslateError as exc:
                logger.error(
                    "failed to translate ApisixUpstream %s/%s at upstreams[%d]: %s",
                    namespace,
                    ref["name"],
                    i,
                    exc,
                )
                continue
            weight = ref.get("weight")
            translated.append((ups, DEFAULT_WEIGHT if weight is None else weight))
        if not translated:
            return

        weighted: List[Dict[str, Any]] = []
        if not backends:
            if len(translated) > 1:
                # the first upstream is the route's default
                weighted.append({"weight": translated[0][1]})
                weighted.extend({"upstream_id": ups.id, "weight": w} for ups, w in translated[1:])
        else:
            existing = route.plugins.get(TRAFFIC_SPLIT_PLUGIN)
            if existing:
                weighted = existing["rules"][0]["weighted_upstreams"]
            if not weighted:
                weight = backends[0].get("weight")
                weighted.append({"weight": DEFAULT_WEIGHT if weight is None else weight})
            weighted.extend({"upstream_id": ups.id, "weight": w} for ups, w in translated)
        if weighted:
            route.plugins[TRAFFIC_SPLIT_PLUGIN] = {"rules": [{"weighted_upstreams": weighted}]}

        for ups, _ in translated:
            ctx.add_upstream(ups)

    def _translate_stream_routes(self, ctx: TranslateContext, ar: VersionedResource) -> None:
        namespace = ar.namespace
        seen = set()
        for part in ar.spec.get("stream") or []:
            rule_name = part.get("name", "")
            if rule_name in seen:
                raise DuplicatedRuleNameError(rule_name)
            seen.add(rule_name)

            backend = part.get("backend") or {}
            cluster_ip, port = self.get_service_cluster_ip_and_port(backend, namespace)
            match = part.get("match") or {}

            sr = StreamRoute()
            sr.id = gen_id(compose_stream_route_name(namespace, ar.name, rule_name))
            sr.server_port = match.get("ingressPort")
            sr.sni = match.get("host") or None
            ups = self.translate_service(
                namespace,
                backend.get("serviceName", ""),
                backend.get("subset") or "",
                backend.get("resolveGranularity") or RESOLVE_GRANULARITY_ENDPOINT,
                cluster_ip,
                port,
            )
            sr.upstream_id = ups.id
            sr.plugins = self.translate_plugins(namespace, part.get("plugins"))
            ctx.add_stream_route(sr)
            ctx.add_upstream(ups)

    # Deletion

    def _backend_port_number(self, namespace: str, backend: Dict[str, Any]) -> int:
        port = backend.get("servicePort")
        if isinstance(port, int):
            return port
        service = self.services.get(namespace, backend.get("serviceName", ""))
        if service is None:
            return 0
        found = find_service_port(service, port)
        return int(found["port"]) if found else 0

    def generate_route_delete_mark(self, ar: VersionedResource) -> TranslateContext:
        """IDs and names only; safe when the backends are already gone."""
        ctx = TranslateContext()
        namespace = ar.namespace
        for part in ar.spec.get("http") or []:
            route = Route()
            route.name = compose_route_name(namespace, ar.name, part.get("name", ""))
            route.id = gen_id(route.name)
            route.plugins = {
                plugin["name"]: copy.deepcopy(plugin.get("config") or {})
                for plugin in part.get("plugins") or []
                if plugin.get("enable")
            }
            if part.get("plugin_config_name"):
                route.plugin_config_id = gen_id(
                    compose_plugin_config_name(namespace, part["plugin_config_name"])
                )
            ctx.add_route(route)

            backends = part.get("backends") or []
            if backends:
                backend = backends[0]
                ctx.add_upstream(
                    self.generate_upstream_delete_mark(
                        namespace,
                        backend.get("serviceName", ""),
                        backend.get("subset") or "",
                        self._backend_port_number(namespace, backend),
                        backend.get("resolveGranularity") or RESOLVE_GRANULARITY_ENDPOINT,
                    )
                )
            for ref in part.get("upstreams") or []:
                name = compose_external_upstream_name(namespace, ref.get("name", ""))
                ctx.add_upstream(Upstream(id=gen_id(name), name=name))

        for part in ar.spec.get("stream") or []:
            backend = part.get("backend") or {}
            match = part.get("match") or {}
            ups = self.generate_upstream_delete_mark(
                namespace,
                backend.get("serviceName", ""),
                backend.get("subset") or "",
                self._backend_port_number(namespace, backend),
                backend.get("resolveGranularity") or RESOLVE_GRANULARITY_ENDPOINT,
            )
            sr = StreamRoute(
                id=gen_id(compose_stream_route_name(namespace, ar.name, part.get("name", ""))),
                server_port=match.get("ingressPort"),
                sni=match.get("host") or None,
                upstream_id=ups.id,
            )
            ctx.add_stream_route(sr)
            ctx.add_upstream(ups)
        return ctx

    def translate_old_route(self, ar: VersionedResource) -> TranslateContext:
        """What the gateway currently holds for the rules named by ``ar``."""
        old = TranslateContext()
        cluster = self.gateway_cluster()
        for part in ar.spec.get("stream") or []:
            name = compose_stream_route_name(ar.namespace, ar.name, part.get("name", ""))
            sr = cluster.stream_routes.get(gen_id(name))
            if sr is None:
                continue
            if sr.upstream_id:
                old.add_upstream(Upstream(id=sr.upstream_id))
            old.add_stream_route(sr)
        for part in ar.spec.get("http") or []:
            name = compose_route_name(ar.namespace, ar.name, part.get("name", ""))
            route = cluster.routes.get(gen_id(name))
            if route is None:
                continue
            if route.upstream_id:
                old.add_upstream(Upstream(id=route.upstream_id))
            old.add_route(route)
        return old


__all__ = [
    "RouteTranslatorMixin",
    "translate_route_match_exprs",
    "OPERATORS",
    "SCOPE_PATH",
    "OP_REGEX_MATCH",
]
