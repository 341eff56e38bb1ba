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
Upstream translation.

Covers the ApisixUpstream configuration block (scheme, load balancer, health
checks, retries, timeouts, client TLS, host passing, service discovery) and
the resolution of a Service backend into upstream nodes, either through its
ready endpoints or through its cluster IP.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from apisix_ingress.apisix.models import (
    ACTIVE_HEALTH_CHECK_MIN_INTERVAL,
    DEFAULT_UPSTREAM_TIMEOUT,
    DEFAULT_WEIGHT,
    HASH_ON_TYPES,
    HEALTH_CHECK_HTTP,
    HEALTH_CHECK_MAX_CONSECUTIVE_NUMBER,
    HEALTH_CHECK_TYPES,
    HTTP_SCHEMES,
    LB_CHASH,
    LB_ROUNDROBIN,
    LB_TYPES,
    PASS_HOST_REWRITE,
    PASS_HOST_TYPES,
    RESOLVE_GRANULARITY_SERVICE,
    SCHEME_HTTP,
    ActiveHealthCheck,
    ActiveHealthy,
    ActiveUnhealthy,
    ClientTLS,
    PassiveHealthCheck,
    PassiveHealthy,
    PassiveUnhealthy,
    Upstream,
    UpstreamHealthCheck,
    UpstreamNode,
    UpstreamTimeout,
    compose_external_upstream_name,
    compose_upstream_name,
    gen_id,
)
from apisix_ingress.kube.errors import ResourceNotFound
from apisix_ingress.kube.store import POD_IP_INDEX
from apisix_ingress.kube.versioned import (
    APISIX_V2,
    APISIX_V2BETA3,
    KIND_UPSTREAM,
    VersionedResource,
    wrap,
)
from apisix_ingress.translation.errors import TranslateError
from apisix_ingress.translation.helpers import (
    find_service_port,
    is_subset_of,
    parse_duration,
    scheme_to_port,
)
from apisix_ingress.translation.tls import SecretFormatError, extract_key_pair

logger = logging.getLogger(__name__)

EXTERNAL_TYPE_DOMAIN = "Domain"
EXTERNAL_TYPE_SERVICE = "Service"
HEADLESS_CLUSTER_IPS = ("", "None")


def _duration_seconds(value: Any, field: str) -> float:
    try:
        seconds = parse_duration(value)
    except ValueError:
        raise TranslateError(field, "invalid value") from None
    return seconds or 0.0


def _check_consecutive(value: Optional[int], field: str) -> Optional[int]:
    if value is None:
        return None
    if value < 0 or value > HEALTH_CHECK_MAX_CONSECUTIVE_NUMBER:
        raise TranslateError(field, "invalid value")
    return value


def _check_status_codes(codes: Optional[List[int]], field: str) -> Optional[List[int]]:
    # present but empty is rejected; absent means the gateway default
    if codes is not None and len(codes) < 1:
        raise TranslateError(field, "empty")
    return codes


def _health_check_type(value: Optional[str], field: str) -> str:
    if not value:
        return HEALTH_CHECK_HTTP
    if value not in HEALTH_CHECK_TYPES:
        raise TranslateError(field, "invalid value")
    return value


class UpstreamTranslatorMixin:
    """
    Upstream related translation.

    Expects the host class to provide the ``services``, ``secrets``, ``pods``,
    ``apisix_upstreams`` stores and an ``endpoints`` lister.
    """

    # ApisixUpstream configuration

    def translate_upstream_config(
        self,
        cfg: Dict[str, Any],
        namespace: str,
        group_version: str = APISIX_V2,
        ups: Optional[Upstream] = None,
    ) -> Upstream:
        """Apply an ApisixUpstream configuration block onto ``ups`` (a new one by default)."""
        if ups is None:
            ups = Upstream()
        cfg = cfg or {}
        self._translate_upstream_scheme(cfg.get("scheme"), ups)
        self._translate_upstream_load_balancer(cfg.get("loadbalancer"), ups)
        self._translate_upstream_health_check(cfg.get("healthCheck"), ups)
        self._translate_upstream_retries_and_timeout(cfg.get("retries"), cfg.get("timeout"), ups)
        self._translate_client_tls(cfg.get("tlsSecret"), namespace, ups)
        if group_version == APISIX_V2:
            self._translate_upstream_pass_host(cfg.get("passHost"), cfg.get("upstreamHost"), ups)
            self._translate_upstream_discovery(cfg.get("discovery"), ups)
        return ups

    def _translate_upstream_scheme(self, scheme: Optional[str], ups: Upstream) -> None:
        if not scheme:
            ups.scheme = SCHEME_HTTP
            return
        if scheme not in HTTP_SCHEMES:
            raise TranslateError("scheme", "invalid value")
        ups.scheme = scheme

    def _translate_upstream_load_balancer(self, lb: Optional[Dict[str, Any]], ups: Upstream) -> None:
        if not lb or not lb.get("type"):
            ups.type = LB_ROUNDROBIN
            return
        lb_type = lb["type"]
        if lb_type not in LB_TYPES:
            raise TranslateError("loadbalancer.type", "invalid value")
        ups.type = lb_type
        if lb_type == LB_CHASH:
            ups.key = lb.get("key")
            hash_on = lb.get("hashOn")
            if hash_on not in HASH_ON_TYPES:
                raise TranslateError("loadbalancer.hashOn", "invalid value")
            ups.hash_on = hash_on

    def _translate_upstream_health_check(self, config: Optional[Dict[str, Any]], ups: Upstream) -> None:
        if not config or (config.get("active") is None and config.get("passive") is None):
            return
        checks = UpstreamHealthCheck()
        if config.get("passive") is not None:
            checks.passive = self._translate_passive_health_check(config["passive"])
        if config.get("active") is None:
            raise TranslateError("healthCheck.active", "not exist")
        checks.active = self._translate_active_health_check(config["active"])
        ups.checks = checks

    def _translate_active_health_check(self, config: Dict[str, Any]) -> ActiveHealthCheck:
        active = ActiveHealthCheck(type=_health_check_type(config.get("type"), "healthCheck.active.Type"))
        timeout = _duration_seconds(config.get("timeout"), "healthCheck.active.timeout")
        if timeout:
            active.timeout = timeout

        port = config.get("port") or 0
        if port < 0 or port > 65535:
            raise TranslateError("healthCheck.active.port", "invalid value")
        active.port = port or None
        concurrency = config.get("concurrency") or 0
        if concurrency < 0:
            raise TranslateError("healthCheck.active.concurrency", "invalid value")
        active.concurrency = concurrency or None

        active.host = config.get("host") or None
        active.http_path = config.get("httpPath") or None
        active.req_headers = config.get("requestHeaders") or None
        strict_tls = config.get("strictTLS")
        active.https_verify_certificate = strict_tls is None or bool(strict_tls)

        healthy = config.get("healthy")
        if healthy is not None:
            interval = _duration_seconds(healthy.get("interval"), "healthCheck.active.healthy.interval")
            active.healthy = ActiveHealthy(
                successes=_check_consecutive(
                    healthy.get("successes"), "healthCheck.active.healthy.successes"
                ),
                http_statuses=_check_status_codes(
                    healthy.get("httpCodes"), "healthCheck.active.healthy.httpCodes"
                ),
            )
            if interval < ACTIVE_HEALTH_CHECK_MIN_INTERVAL:
                raise TranslateError("healthCheck.active.healthy.interval", "invalid value")
            active.healthy.interval = int(interval)

        unhealthy = config.get("unhealthy")
        if unhealthy is not None:
            interval = _duration_seconds(unhealthy.get("interval"), "healthCheck.active.unhealthy.interval")
            active.unhealthy = ActiveUnhealthy(
                http_failures=_check_consecutive(
                    unhealthy.get("httpFailures"), "healthCheck.active.unhealthy.httpFailures"
                ),
                tcp_failures=_check_consecutive(
                    unhealthy.get("tcpFailures"), "healthCheck.active.unhealthy.tcpFailures"
                ),
                timeouts=unhealthy.get("timeouts"),
                http_statuses=_check_status_codes(
                    unhealthy.get("httpCodes"), "healthCheck.active.unhealthy.httpCodes"
                ),
            )
            if interval < ACTIVE_HEALTH_CHECK_MIN_INTERVAL:
                raise TranslateError("healthCheck.active.unhealthy.interval", "invalid value")
            active.unhealthy.interval = int(interval)
        return active

    def _translate_passive_health_check(self, config: Dict[str, Any]) -> PassiveHealthCheck:
        passive = PassiveHealthCheck(type=_health_check_type(config.get("type"), "healthCheck.passive.Type"))
        healthy = config.get("healthy")
        if healthy is not None:
            passive.healthy = PassiveHealthy(
                successes=_check_consecutive(
                    healthy.get("successes"), "healthCheck.passive.healthy.successes"
                ),
                http_statuses=_check_status_codes(
                    healthy.get("httpCodes"), "healthCheck.passive.healthy.httpCodes"
                ),
            )
        unhealthy = config.get("unhealthy")
        if unhealthy is not None:
            passive.unhealthy = PassiveUnhealthy(
                http_failures=_check_consecutive(
                    unhealthy.get("httpFailures"), "healthCheck.passive.unhealthy.httpFailures"
                ),
                tcp_failures=_check_consecutive(
                    unhealthy.get("tcpFailures"), "healthCheck.passive.unhealthy.tcpFailures"
                ),
                timeouts=unhealthy.get("timeouts"),
                http_statuses=_check_status_codes(
                    unhealthy.get("httpCodes"), "healthCheck.passive.unhealthy.httpCodes"
                ),
            )
        return passive

    def _translate_upstream_retries_and_timeout(
        self,
        retries: Optional[int],
        timeout: Optional[Dict[str, Any]],
        ups: Upstream,
    ) -> None:
        if retries is not None and retries < 0:
            raise TranslateError("retries", "invalid value")
        ups.retries = retries
        if timeout is None:
            return
        ups.timeout = translate_timeout(timeout, "timeout")

    def _translate_client_tls(self, config: Optional[Dict[str, Any]], namespace: str, ups: Upstream) -> None:
        if not config:
            return
        secret = self.secrets.must_get(config.get("namespace") or namespace, config.get("name", ""))
        try:
            cert, key = extract_key_pair(secret, True)
        except SecretFormatError as exc:
            raise TranslateError("tlsSecret", f"extract cert and key from secret failed, {exc}") from exc
        ups.tls = ClientTLS(client_cert=cert, client_key=key or "")

    def _translate_upstream_pass_host(
        self, pass_host: Optional[str], upstream_host: Optional[str], ups: Upstream
    ) -> None:
        if not pass_host:
            return
        if pass_host not in PASS_HOST_TYPES:
            raise TranslateError("passHost", "invalid value")
        ups.pass_host = pass_host
        if pass_host == PASS_HOST_REWRITE:
            if not upstream_host:
                raise TranslateError("upstreamHost", "empty")
            ups.upstream_host = upstream_host

    def _translate_upstream_discovery(self, discovery: Optional[Dict[str, Any]], ups: Upstream) -> None:
        if not discovery:
            return
        ups.service_name = discovery.get("serviceName")
        ups.discovery_type = discovery.get("type")
        ups.discovery_args = discovery.get("args") or None

    # Service backends

    def get_apisix_upstream(self, namespace: str, name: str) -> Optional[VersionedResource]:
        raw = self.apisix_upstreams.get(namespace, name)
        if raw is None:
            return None
        return wrap(KIND_UPSTREAM, raw)

    def get_service_cluster_ip_and_port(
        self, backend: Dict[str, Any], namespace: str
    ) -> Tuple[str, int]:
        """Resolve the cluster IP and the numeric port a route backend points at."""
        service_name = backend.get("serviceName", "")
        service = self.services.must_get(namespace, service_name)
        spec = service.get("spec") or {}
        cluster_ip = spec.get("clusterIP") or ""
        if backend.get("resolveGranularity") == RESOLVE_GRANULARITY_SERVICE and cluster_ip in HEADLESS_CLUSTER_IPS:
            logger.error(
                "ApisixRoute refers to headless service %s/%s with service resolve granularity",
                namespace,
                service_name,
            )
            raise TranslateError("backend", "conflict headless service and backend resolve granularity")
        port = find_service_port(service, backend.get("servicePort"))
        if port is None:
            logger.error(
                "ApisixRoute refers to non-existent port %s of service %s/%s",
                backend.get("servicePort"),
                namespace,
                service_name,
            )
            raise TranslateError("service.spec.ports", "port not defined")
        return cluster_ip, int(port["port"])

    def translate_service(
        self,
        namespace: str,
        service_name: str,
        subset: str,
        granularity: str,
        cluster_ip: str,
        port: int,
    ) -> Upstream:
        """Upstream for one Service port, shaped by its ApisixUpstream when one exists."""
        ups = self.translate_service_upstream(namespace, service_name, subset, port)
        if granularity == RESOLVE_GRANULARITY_SERVICE:
            ups.nodes = [UpstreamNode(host=cluster_ip, port=port, weight=DEFAULT_WEIGHT)]
        ups.name = compose_upstream_name(namespace, service_name, subset, port, granularity)
        ups.id = gen_id(ups.name)
        return ups

    def translate_service_upstream(self, namespace: str, service_name: str, subset: str, port: int) -> Upstream:
        au = self.get_apisix_upstream(namespace, service_name)
        if au is None and subset:
            # a subset without its ApisixUpstream selects nothing
            return Upstream()

        labels: Optional[Dict[str, str]] = None
        if au is not None and subset:
            for item in au.spec.get("subsets") or []:
                if item.get("name") == subset:
                    labels = item.get("labels") or {}
                    break

        nodes = self.translate_endpoint_nodes(namespace, service_name, port, labels)
        if au is None or not au.spec:
            return Upstream(nodes=nodes)

        cfg = au.spec
        for setting in au.spec.get("portLevelSettings") or []:
            if setting.get("port") == port:
                cfg = setting
                break
        ups = self.translate_upstream_config(cfg, namespace, au.group_version)
        ups.nodes = nodes
        return ups

    def translate_endpoint_nodes(
        self,
        namespace: str,
        service_name: str,
        port: int,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[UpstreamNode]:
        """One node per ready address behind the Service port; empty when nothing is known yet."""
        endpoint = self.endpoints.get(namespace, service_name)
        if endpoint is None:
            return []
        service = self.services.get(namespace, service_name)
        if service is None:
            return []
        service_port = find_service_port(service, port)
        if service_port is None:
            raise TranslateError("service.spec.ports", "port not defined")
        nodes = [
            UpstreamNode(host=host, port=node_port, weight=DEFAULT_WEIGHT)
            for host, node_port in endpoint.nodes_for_port(service_port.get("name") or "")
        ]
        if labels is not None:
            nodes = self._filter_nodes_by_labels(nodes, labels, namespace)
        return nodes

    def _filter_nodes_by_labels(
        self, nodes: List[UpstreamNode], labels: Dict[str, str], namespace: str
    ) -> List[UpstreamNode]:
        filtered = []
        for node in nodes:
            pods = self.pods.by_index(POD_IP_INDEX, f"{namespace}/{node.host}")
            if not pods:
                logger.error("failed to find pod by ip %s, ignore it", node.host)
                continue
            pod_labels = (pods[0].get("metadata") or {}).get("labels") or {}
            if is_subset_of(labels, pod_labels):
                filtered.append(node)
        return filtered

    def generate_upstream_delete_mark(
        self, namespace: str, service_name: str, subset: str, port: Any, granularity: str
    ) -> Upstream:
        name = compose_upstream_name(namespace, service_name, subset, port if port is not None else 0, granularity)
        return Upstream(id=gen_id(name), name=name)

    # External upstreams

    def translate_external_apisix_upstream(self, namespace: str, name: str) -> Upstream:
        au = self.get_apisix_upstream(namespace, name)
        if au is None:
            raise ResourceNotFound(KIND_UPSTREAM, f"{namespace}/{name}")
        return au.dispatch(
            {
                APISIX_V2: lambda obj: self._translate_external_upstream_v2(au),
                APISIX_V2BETA3: lambda obj: self._reject_external_upstream(au),
            }
        )

    def _reject_external_upstream(self, au: VersionedResource) -> Upstream:
        raise TranslateError("upstreams", f"{au.key} must be {APISIX_V2} to serve as external upstream")

    def _translate_external_upstream_v2(self, au: VersionedResource) -> Upstream:
        spec = au.spec
        if not spec.get("externalNodes") and not spec.get("discovery"):
            raise TranslateError(
                "ApisixUpstream", f"{au.key} has empty ExternalNodes or Discovery configuration"
            )
        ups = self.translate_upstream_config(spec, au.namespace, au.group_version)
        ups.name = compose_external_upstream_name(au.namespace, au.name)
        ups.id = gen_id(ups.name)
        # discovery_type and nodes are mutually exclusive on the gateway
        if spec.get("externalNodes"):
            ups.nodes = ups.nodes + self.translate_external_nodes(au)
        return ups

    def translate_external_nodes(self, au: VersionedResource) -> List[UpstreamNode]:
        spec = au.spec
        nodes = []
        for i, node in enumerate(spec.get("externalNodes") or []):
            weight = node.get("weight")
            if weight is None:
                weight = DEFAULT_WEIGHT
            port = node.get("port")
            if port is None:
                port = scheme_to_port(spec.get("scheme"))
            node_type = node.get("type")
            if node_type == EXTERNAL_TYPE_DOMAIN:
                nodes.append(UpstreamNode(host=node.get("name", ""), port=port, weight=weight))
            elif node_type == EXTERNAL_TYPE_SERVICE:
                service = self.services.must_get(au.namespace, node.get("name", ""))
                service_spec = service.get("spec") or {}
                if service_spec.get("type") != "ExternalName":
                    raise TranslateError(
                        f"externalNodes[{i}]",
                        f"must refer to an ExternalName service: {node.get('name')}",
                    )
                nodes.append(UpstreamNode(host=service_spec.get("externalName", ""), port=port, weight=weight))
        return nodes


def translate_timeout(timeout: Dict[str, Any], field: str) -> UpstreamTimeout:
    """Connect/send/read timeouts in seconds; an unset phase keeps the default."""
    result = UpstreamTimeout()
    for phase in ("connect", "read", "send"):
        seconds = _duration_seconds(timeout.get(phase), f"{field}.{phase}")
        if seconds < 0:
            raise TranslateError(f"{field}.{phase}", "invalid value")
        setattr(result, phase, int(seconds) if seconds > 0 else DEFAULT_UPSTREAM_TIMEOUT)
    return result


__all__ = [
    "UpstreamTranslatorMixin",
    "EXTERNAL_TYPE_DOMAIN",
    "EXTERNAL_TYPE_SERVICE",
    "translate_timeout",
]
