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
Ingress annotations.

Only keys under ``k8s.apisix.apache.org/`` are considered. Malformed values
are logged and ignored so one bad annotation does not block the Ingress.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from apisix_ingress.apisix.models import HTTP_SCHEMES
from apisix_ingress.constants import ANNOTATIONS_PREFIX
from apisix_ingress.translation.helpers import parse_duration

logger = logging.getLogger(__name__)

USE_REGEX = ANNOTATIONS_PREFIX + "use-regex"
ENABLE_WEBSOCKET = ANNOTATIONS_PREFIX + "enable-websocket"
PLUGIN_CONFIG_NAME = ANNOTATIONS_PREFIX + "plugin-config-name"
UPSTREAM_SCHEME = ANNOTATIONS_PREFIX + "upstream-scheme"
UPSTREAM_RETRIES = ANNOTATIONS_PREFIX + "upstream-retries"
UPSTREAM_CONNECT_TIMEOUT = ANNOTATIONS_PREFIX + "upstream-connect-timeout"
UPSTREAM_READ_TIMEOUT = ANNOTATIONS_PREFIX + "upstream-read-timeout"
UPSTREAM_SEND_TIMEOUT = ANNOTATIONS_PREFIX + "upstream-send-timeout"
SVC_NAMESPACE = ANNOTATIONS_PREFIX + "svc-namespace"

ENABLE_CORS = ANNOTATIONS_PREFIX + "enable-cors"
CORS_ALLOW_ORIGIN = ANNOTATIONS_PREFIX + "cors-allow-origin"
CORS_ALLOW_HEADERS = ANNOTATIONS_PREFIX + "cors-allow-headers"
CORS_ALLOW_METHODS = ANNOTATIONS_PREFIX + "cors-allow-methods"
ENABLE_CSRF = ANNOTATIONS_PREFIX + "enable-csrf"
CSRF_KEY = ANNOTATIONS_PREFIX + "csrf-key"
HTTP_TO_HTTPS = ANNOTATIONS_PREFIX + "http-to-https"
HTTP_REDIRECT = ANNOTATIONS_PREFIX + "http-redirect"
HTTP_REDIRECT_CODE = ANNOTATIONS_PREFIX + "http-redirect-code"
REWRITE_TARGET = ANNOTATIONS_PREFIX + "rewrite-target"
REWRITE_TARGET_REGEX = ANNOTATIONS_PREFIX + "rewrite-target-regex"
REWRITE_TARGET_REGEX_TEMPLATE = ANNOTATIONS_PREFIX + "rewrite-target-regex-template"
ENABLE_RESPONSE_REWRITE = ANNOTATIONS_PREFIX + "enable-response-rewrite"
RESPONSE_REWRITE_STATUS_CODE = ANNOTATIONS_PREFIX + "response-rewrite-status-code"
RESPONSE_REWRITE_BODY = ANNOTATIONS_PREFIX + "response-rewrite-body"
RESPONSE_REWRITE_BODY_BASE64 = ANNOTATIONS_PREFIX + "response-rewrite-body-base64"
RESPONSE_REWRITE_ADD_HEADER = ANNOTATIONS_PREFIX + "response-rewrite-add-header"
RESPONSE_REWRITE_SET_HEADER = ANNOTATIONS_PREFIX + "response-rewrite-set-header"
RESPONSE_REWRITE_REMOVE_HEADER = ANNOTATIONS_PREFIX + "response-rewrite-remove-header"
FORWARD_AUTH_URI = ANNOTATIONS_PREFIX + "auth-uri"
FORWARD_AUTH_SSL_VERIFY = ANNOTATIONS_PREFIX + "auth-ssl-verify"
FORWARD_AUTH_REQUEST_HEADERS = ANNOTATIONS_PREFIX + "auth-request-headers"
FORWARD_AUTH_UPSTREAM_HEADERS = ANNOTATIONS_PREFIX + "auth-upstream-headers"
FORWARD_AUTH_CLIENT_HEADERS = ANNOTATIONS_PREFIX + "auth-client-headers"
ALLOWLIST_SOURCE_RANGE = ANNOTATIONS_PREFIX + "allowlist-source-range"
BLOCKLIST_SOURCE_RANGE = ANNOTATIONS_PREFIX + "blocklist-source-range"
HTTP_ALLOW_METHODS = ANNOTATIONS_PREFIX + "http-allow-methods"
HTTP_BLOCK_METHODS = ANNOTATIONS_PREFIX + "http-block-methods"
AUTH_TYPE = ANNOTATIONS_PREFIX + "auth-type"

DEFAULT_REDIRECT_CODE = 301
METHOD_NOT_ALLOWED = 405


@dataclass
class UpstreamAnnotations:
    scheme: str = ""
    retries: int = 0
    timeout_connect: int = 0
    timeout_read: int = 0
    timeout_send: int = 0


@dataclass
class IngressAnnotations:
    use_regex: bool = False
    enable_websocket: bool = False
    plugin_config_name: str = ""
    service_namespace: str = ""
    upstream: UpstreamAnnotations = field(default_factory=UpstreamAnnotations)
    plugins: Dict[str, Any] = field(default_factory=dict)


class Extractor:
    """Typed reads over an annotation map."""

    def __init__(self, annotations: Optional[Dict[str, str]]):
        self.annotations = annotations or {}

    def get_string(self, name: str) -> str:
        return self.annotations.get(name, "")

    def get_strings(self, name: str) -> Optional[List[str]]:
        value = self.get_string(name)
        if not value:
            return None
        return value.split(",")

    def get_bool(self, name: str) -> bool:
        return self.annotations.get(name) == "true"

    def get_int(self, name: str) -> Optional[int]:
        value = self.get_string(name)
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning("Invalid integer annotation %s='%s'; ignoring.", name, value)
            return None

    def get_seconds(self, name: str) -> int:
        value = self.get_string(name)
        if not value:
            return 0
        try:
            seconds = parse_duration(value) or 0
        except ValueError:
            logger.warning("Invalid duration annotation %s='%s'; ignoring.", name, value)
            return 0
        return max(int(seconds), 0)


def _cors(e: Extractor) -> Optional[Dict[str, Any]]:
    if not e.get_bool(ENABLE_CORS):
        return None
    return {
        "allow_origins": e.get_string(CORS_ALLOW_ORIGIN) or "*",
        "allow_methods": e.get_string(CORS_ALLOW_METHODS) or "*",
        "allow_headers": e.get_string(CORS_ALLOW_HEADERS) or "*",
    }


def _csrf(e: Extractor) -> Optional[Dict[str, Any]]:
    if not e.get_bool(ENABLE_CSRF):
        return None
    key = e.get_string(CSRF_KEY)
    if not key:
        logger.warning("Annotation %s requires %s; ignoring.", ENABLE_CSRF, CSRF_KEY)
        return None
    return {"key": key}


def _redirect(e: Extractor) -> Optional[Dict[str, Any]]:
    if e.get_bool(HTTP_TO_HTTPS):
        return {"http_to_https": True}
    uri = e.get_string(HTTP_REDIRECT)
    if not uri:
        return None
    code = e.get_int(HTTP_REDIRECT_CODE)
    return {"uri": uri, "ret_code": code or DEFAULT_REDIRECT_CODE}


def _proxy_rewrite(e: Extractor) -> Optional[Dict[str, Any]]:
    target = e.get_string(REWRITE_TARGET)
    regex = e.get_string(REWRITE_TARGET_REGEX)
    template = e.get_string(REWRITE_TARGET_REGEX_TEMPLATE)
    if target:
        return {"uri": target}
    if regex and template:
        return {"regex_uri": [regex, template]}
    return None


def _response_rewrite(e: Extractor) -> Optional[Dict[str, Any]]:
    if not e.get_bool(ENABLE_RESPONSE_REWRITE):
        return None
    cfg: Dict[str, Any] = {}
    status_code = e.get_int(RESPONSE_REWRITE_STATUS_CODE)
    if status_code:
        cfg["status_code"] = status_code
    body = e.get_string(RESPONSE_REWRITE_BODY)
    if body:
        cfg["body"] = body
        cfg["body_base64"] = e.get_bool(RESPONSE_REWRITE_BODY_BASE64)
    headers: Dict[str, Any] = {}
    added = e.get_strings(RESPONSE_REWRITE_ADD_HEADER)
    if added:
        headers["add"] = added
    to_set = {}
    for item in e.get_strings(RESPONSE_REWRITE_SET_HEADER) or []:
        name, sep, value = item.partition(":")
        if sep:
            to_set[name.strip()] = value.strip()
    if to_set:
        headers["set"] = to_set
    removed = e.get_strings(RESPONSE_REWRITE_REMOVE_HEADER)
    if removed:
        headers["remove"] = removed
    if headers:
        cfg["headers"] = headers
    return cfg


def _forward_auth(e: Extractor) -> Optional[Dict[str, Any]]:
    uri = e.get_string(FORWARD_AUTH_URI)
    if not uri:
        return None
    cfg: Dict[str, Any] = {
        "uri": uri,
        "ssl_verify": e.get_string(FORWARD_AUTH_SSL_VERIFY) != "false",
    }
    for key, name in (
        ("request_headers", FORWARD_AUTH_REQUEST_HEADERS),
        ("upstream_headers", FORWARD_AUTH_UPSTREAM_HEADERS),
        ("client_headers", FORWARD_AUTH_CLIENT_HEADERS),
    ):
        values = e.get_strings(name)
        if values:
            cfg[key] = values
    return cfg


def _ip_restriction(e: Extractor) -> Optional[Dict[str, Any]]:
    cfg: Dict[str, Any] = {}
    allow = e.get_strings(ALLOWLIST_SOURCE_RANGE)
    if allow:
        cfg["whitelist"] = allow
    block = e.get_strings(BLOCKLIST_SOURCE_RANGE)
    if block:
        cfg["blacklist"] = block
    return cfg or None


def _fault_injection(e: Extractor) -> Optional[Dict[str, Any]]:
    allow = e.get_strings(HTTP_ALLOW_METHODS)
    block = e.get_strings(HTTP_BLOCK_METHODS)
    if allow:
        expr = ["request_method", "!", "in", allow]
    elif block:
        expr = ["request_method", "in", block]
    else:
        return None
    return {"abort": {"http_status": METHOD_NOT_ALLOWED, "vars": [[expr]]}}


def _auth(e: Extractor) -> Dict[str, Any]:
    auth_type = e.get_string(AUTH_TYPE)
    if auth_type == "keyAuth":
        return {"key-auth": {}}
    if auth_type == "basicAuth":
        return {"basic-auth": {}}
    return {}


PLUGIN_PARSERS = {
    "cors": _cors,
    "csrf": _csrf,
    "redirect": _redirect,
    "proxy-rewrite": _proxy_rewrite,
    "response-rewrite": _response_rewrite,
    "forward-auth": _forward_auth,
    "ip-restriction": _ip_restriction,
    "fault-injection": _fault_injection,
}


def translate_annotations(annotations: Optional[Dict[str, str]]) -> IngressAnnotations:
    e = Extractor(annotations)
    result = IngressAnnotations(
        use_regex=e.get_bool(USE_REGEX),
        enable_websocket=e.get_bool(ENABLE_WEBSOCKET),
        plugin_config_name=e.get_string(PLUGIN_CONFIG_NAME),
        service_namespace=e.get_string(SVC_NAMESPACE),
    )

    scheme = e.get_string(UPSTREAM_SCHEME).lower()
    if scheme and scheme not in HTTP_SCHEMES:
        logger.warning("Invalid upstream scheme annotation '%s'; ignoring.", scheme)
        scheme = ""
    result.upstream = UpstreamAnnotations(
        scheme=scheme,
        retries=max(e.get_int(UPSTREAM_RETRIES) or 0, 0),
        timeout_connect=e.get_seconds(UPSTREAM_CONNECT_TIMEOUT),
        timeout_read=e.get_seconds(UPSTREAM_READ_TIMEOUT),
        timeout_send=e.get_seconds(UPSTREAM_SEND_TIMEOUT),
    )

    for name, parser in PLUGIN_PARSERS.items():
        cfg = parser(e)
        if cfg is not None:
            result.plugins[name] = cfg
    result.plugins.update(_auth(e))
    return result


__all__ = ["IngressAnnotations", "UpstreamAnnotations", "Extractor", "translate_annotations"]
