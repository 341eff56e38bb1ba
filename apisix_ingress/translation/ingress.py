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
Ingress translation (networking/v1, networking/v1beta1, extensions/v1beta1).

Each rule path becomes one Route named ``ing_<ns>_<name>_<id(host+path)>``;
TLS sections become SSL objects through the ApisixTls translation.
"""

from __future__ import annotations

import base64
import copy
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from apisix_ingress.apisix.models import (
    DEFAULT_UPSTREAM_TIMEOUT,
    RESOLVE_GRANULARITY_ENDPOINT,
    SSL,
    PluginConfig,
    Route,
    Upstream,
    UpstreamTimeout,
    compose_ingress_route_name,
    compose_plugin_config_name,
    compose_ssl_name,
    compose_upstream_name,
    gen_id,
)
from apisix_ingress.kube.errors import ResourceNotFound
from apisix_ingress.kube.versioned import (
    EXTENSIONS_V1BETA1,
    NETWORKING_V1,
    NETWORKING_V1BETA1,
    VersionedResource,
)
from apisix_ingress.translation.annotations import IngressAnnotations, translate_annotations
from apisix_ingress.translation.context import TranslateContext
from apisix_ingress.translation.errors import TranslateError
from apisix_ingress.translation.helpers import find_service_port
from apisix_ingress.translation.route import OP_REGEX_MATCH, SCOPE_PATH, translate_route_match_exprs

logger = logging.getLogger(__name__)

PATH_TYPE_PREFIX = "Prefix"
PATH_TYPE_IMPLEMENTATION_SPECIFIC = "ImplementationSpecific"
REGEX_PRIORITY = 100

_ALPHANUMS = "bcdfghjklmnpqrstvwxz2456789"


def _safe_encode(value: str, limit: int) -> str:
    return "".join(_ALPHANUMS[ord(ch) % len(_ALPHANUMS)] for ch in value[:limit])


def ingress_tls_name(namespace: str, ingress_name: str, secret_name: str, hosts: List[str]) -> str:
    """Per-TLS-section name; unique per namespace so SSL IDs never collide."""
    payload = json.dumps(
        {"namespace": namespace, "secret": secret_name, "hosts": list(hosts)},
        sort_keys=True,
    ).encode("utf-8")
    digest = base64.urlsafe_b64encode(hashlib.sha1(payload).digest()).decode("ascii")
    return f"{ingress_name}-tls-{_safe_encode(digest, 6)}"


# Backend reference: (service name, port as int number or str name)
Backend = Tuple[str, Any]


def _backend_v1(backend: Dict[str, Any]) -> Optional[Backend]:
    service = backend.get("service")
    if not service:
        return None
    port = service.get("port") or {}
    return service.get("name", ""), port.get("name") or port.get("number") or 0


def _backend_v1beta1(backend: Dict[str, Any]) -> Optional[Backend]:
    if not backend.get("serviceName"):
        return None
    return backend["serviceName"], backend.get("servicePort") or 0


class IngressTranslatorMixin:
    """Needs the ``services`` store, the upstream and TLS helpers and ``gateway_cluster()``."""

    def translate_ingress(self, ing: VersionedResource, skip_verify: bool = False) -> TranslateContext:
        return ing.dispatch(
            {
                NETWORKING_V1: lambda obj: self._translate_ingress_spec(ing, _backend_v1, skip_verify),
                NETWORKING_V1BETA1: lambda obj: self._translate_ingress_spec(ing, _backend_v1beta1, skip_verify),
                EXTENSIONS_V1BETA1: lambda obj: self._translate_ingress_spec(ing, _backend_v1beta1, skip_verify),
            }
        )

    def _translate_ingress_tls(
        self, namespace: str, ingress_name: str, tls: Dict[str, Any], tolerate_missing: bool
    ) -> SSL:
        hosts = tls.get("hosts") or []
        secret_name = tls.get("secretName", "")
        name = ingress_tls_name(namespace, ingress_name, secret_name, hosts)
        try:
            return self._translate_ssl_spec(
                namespace,
                name,
                {"hosts": hosts, "secret": {"name": secret_name, "namespace": namespace}},
            )
        except ResourceNotFound:
            if not tolerate_missing:
                raise
            return SSL(id=gen_id(compose_ssl_name(namespace, name)))

    def _translate_ingress_spec(self, ing: VersionedResource, read_backend, skip_verify: bool) -> TranslateContext:
        ctx = TranslateContext()
        annotations = translate_annotations(ing.annotations)

        for tls in ing.spec.get("tls") or []:
            try:
                ctx.add_ssl(self._translate_ingress_tls(ing.namespace, ing.name, tls, skip_verify))
            except (ResourceNotFound, TranslateError) as exc:
                logger.error("failed to translate tls of ingress %s: %s", ing.key, exc)
                raise

        namespace = annotations.service_namespace or ing.namespace
        for rule in ing.spec.get("rules") or []:
            http = rule.get("http")
            if not http:
                continue
            host = rule.get("host") or ""
            for path_rule in http.get("paths") or []:
                ups = None
                backend = read_backend(path_rule.get("backend") or {})
                if backend is not None:
                    if skip_verify:
                        ups = self._default_upstream_from_ingress(namespace, *backend)
                    else:
                        ups = self._upstream_from_ingress(namespace, *backend)
                    self._apply_upstream_annotations(ups, annotations)
                    ctx.add_upstream(ups)
                ctx.add_route(self._ingress_route(ing, host, path_rule, annotations, ups))
        return ctx

    def _ingress_route(
        self,
        ing: VersionedResource,
        host: str,
        path_rule: Dict[str, Any],
        annotations: IngressAnnotations,
        ups: Optional[Upstream],
    ) -> Route:
        path = path_rule.get("path") or ""
        uris = [path]
        exprs = []
        path_type = path_rule.get("pathType")
        if path_type == PATH_TYPE_PREFIX:
            # /foo/bar must match /foo/bar/baz but not /foo/barbaz
            uris.append(path + "*" if path.endswith("/") else path + "/*")
        elif path_type == PATH_TYPE_IMPLEMENTATION_SPECIFIC and annotations.use_regex:
            exprs.append({"subject": {"scope": SCOPE_PATH}, "op": OP_REGEX_MATCH, "value": path})
            uris = ["/*"]

        route = Route()
        route.name = compose_ingress_route_name(ing.namespace, ing.name, host, path)
        route.id = gen_id(route.name)
        route.host = host or None
        route.uris = uris
        route.enable_websocket = annotations.enable_websocket or None
        if exprs:
            route.vars = translate_route_match_exprs(exprs)
            route.priority = REGEX_PRIORITY
        if annotations.plugins:
            route.plugins = copy.deepcopy(annotations.plugins)
        if annotations.plugin_config_name:
            route.plugin_config_id = gen_id(
                compose_plugin_config_name(ing.namespace, annotations.plugin_config_name)
            )
        if ups is not None:
            route.upstream_id = ups.id
        return route

    def _apply_upstream_annotations(self, ups: Upstream, annotations: IngressAnnotations) -> None:
        settings = annotations.upstream
        if settings.scheme:
            ups.scheme = settings.scheme
        if settings.retries > 0:
            ups.retries = settings.retries
        if ups.timeout is None:
            ups.timeout = UpstreamTimeout(
                connect=DEFAULT_UPSTREAM_TIMEOUT,
                read=DEFAULT_UPSTREAM_TIMEOUT,
                send=DEFAULT_UPSTREAM_TIMEOUT,
            )
        if settings.timeout_connect > 0:
            ups.timeout.connect = settings.timeout_connect
        if settings.timeout_read > 0:
            ups.timeout.read = settings.timeout_read
        if settings.timeout_send > 0:
            ups.timeout.send = settings.timeout_send

    def _ingress_port_number(self, namespace: str, service_name: str, port: Any, strict: bool) -> int:
        if not isinstance(port, str):
            return int(port or 0)
        if strict:
            service = self.services.must_get(namespace, service_name)
        else:
            service = self.services.get(namespace, service_name)
            if service is None:
                return 0
        found = find_service_port(service, port)
        if found is None:
            if strict:
                raise TranslateError("service", "port not found")
            return 0
        return int(found["port"])

    def _upstream_from_ingress(self, namespace: str, service_name: str, port: Any) -> Upstream:
        number = self._ingress_port_number(namespace, service_name, port, strict=True)
        ups = self.translate_service_upstream(namespace, service_name, "", number)
        ups.name = compose_upstream_name(namespace, service_name, "", number, RESOLVE_GRANULARITY_ENDPOINT)
        ups.id = gen_id(ups.name)
        return ups

    def _default_upstream_from_ingress(self, namespace: str, service_name: str, port: Any) -> Upstream:
        number = self._ingress_port_number(namespace, service_name, port, strict=False)
        name = compose_upstream_name(namespace, service_name, "", number, RESOLVE_GRANULARITY_ENDPOINT)
        return Upstream(id=gen_id(name), name=name)

    def translate_old_ingress(self, ing: VersionedResource) -> TranslateContext:
        """Gateway read-back of the routes an Ingress produced before."""
        old = TranslateContext()
        for tls in ing.spec.get("tls") or []:
            try:
                old.add_ssl(self._translate_ingress_tls(ing.namespace, ing.name, tls, True))
            except TranslateError as exc:
                logger.error("failed to translate tls of ingress %s: %s", ing.key, exc)
                continue
        cluster = self.gateway_cluster()
        for rule in ing.spec.get("rules") or []:
            host = rule.get("host") or ""
            for path_rule in (rule.get("http") or {}).get("paths") or []:
                name = compose_ingress_route_name(ing.namespace, ing.name, host, path_rule.get("path") or "")
                route = cluster.routes.get(gen_id(name))
                if route is None:
                    continue
                if route.upstream_id:
                    old.add_upstream(Upstream(id=route.upstream_id))
                if route.plugin_config_id:
                    old.add_plugin_config(PluginConfig(id=route.plugin_config_id))
                old.add_route(route)
        return old


__all__ = ["IngressTranslatorMixin", "ingress_tls_name", "REGEX_PRIORITY"]
