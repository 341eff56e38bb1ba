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

"""ApisixConsumer translation."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from apisix_ingress.apisix.models import Consumer, compose_consumer_name
from apisix_ingress.kube.versioned import APISIX_V2, APISIX_V2BETA3, VersionedResource
from apisix_ingress.translation.context import TranslateContext
from apisix_ingress.translation.errors import TranslateError
from apisix_ingress.translation.helpers import decode_secret_data

logger = logging.getLogger(__name__)

# The field exp must be a positive integer.
JWT_AUTH_EXP_DEFAULT = 86400

HMAC_AUTH_ALGORITHM_DEFAULT = "hmac-sha256"
HMAC_AUTH_CLOCK_SKEW_DEFAULT = 0
HMAC_AUTH_KEEP_HEADERS_DEFAULT = False
HMAC_AUTH_ENCODE_URI_PARAMS_DEFAULT = True
HMAC_AUTH_VALIDATE_REQUEST_BODY_DEFAULT = False
HMAC_AUTH_MAX_REQ_BODY_DEFAULT = 524288


def _missing(key: str) -> str:
    return f'key "{key}" not found or invalid in secret'


def _parse_int(raw: Optional[str]) -> int:
    try:
        return int(raw or 0)
    except ValueError:
        return 0


def _parse_bool(data: Dict[str, str], key: str, default: bool) -> bool:
    if key not in data:
        return default
    return data[key] == "true"


def _key_auth(value: Dict[str, Any]) -> Dict[str, Any]:
    return {"key": value.get("key", "")}


def _key_auth_from_secret(data: Dict[str, str]) -> Dict[str, Any]:
    if not data.get("key"):
        raise ValueError(_missing("key"))
    return {"key": data["key"]}


def _basic_auth(value: Dict[str, Any]) -> Dict[str, Any]:
    return {"username": value.get("username", ""), "password": value.get("password", "")}


def _basic_auth_from_secret(data: Dict[str, str]) -> Dict[str, Any]:
    if not data.get("username"):
        raise ValueError(_missing("username"))
    if not data.get("password"):
        raise ValueError(_missing("password"))
    return {"username": data["username"], "password": data["password"]}


def _jwt_auth(value: Dict[str, Any]) -> Dict[str, Any]:
    exp = value.get("exp") or 0
    cfg = {
        "key": value.get("key", ""),
        "secret": value.get("secret"),
        "public_key": value.get("public_key"),
        "private_key": value.get("private_key"),
        "algorithm": value.get("algorithm"),
        "exp": exp if exp >= 1 else JWT_AUTH_EXP_DEFAULT,
        "base64_secret": bool(value.get("base64_secret")),
    }
    if value.get("lifetime_grace_period"):
        cfg["lifetime_grace_period"] = value["lifetime_grace_period"]
    return {k: v for k, v in cfg.items() if v is not None}


def _jwt_auth_from_secret(data: Dict[str, str]) -> Dict[str, Any]:
    if not data.get("key"):
        raise ValueError(_missing("key"))
    return _jwt_auth(
        {
            "key": data["key"],
            "secret": data.get("secret") or None,
            "public_key": data.get("public_key") or None,
            "private_key": data.get("private_key") or None,
            "algorithm": data.get("algorithm") or None,
            "exp": _parse_int(data.get("exp")),
            "base64_secret": data.get("base64_secret") == "true",
            "lifetime_grace_period": _parse_int(data.get("lifetime_grace_period")),
        }
    )


def _wolf_rbac(value: Dict[str, Any]) -> Dict[str, Any]:
    return {k: value[k] for k in ("server", "appid", "header_prefix") if value.get(k)}


def _hmac_auth(value: Dict[str, Any]) -> Dict[str, Any]:
    cfg = {
        "access_key": value.get("access_key", ""),
        "secret_key": value.get("secret_key", ""),
        "algorithm": value.get("algorithm") or HMAC_AUTH_ALGORITHM_DEFAULT,
        "clock_skew": value.get("clock_skew", HMAC_AUTH_CLOCK_SKEW_DEFAULT),
        "signed_headers": value.get("signed_headers"),
        "keep_headers": value.get("keep_headers", HMAC_AUTH_KEEP_HEADERS_DEFAULT),
        "encode_uri_params": value.get("encode_uri_params", HMAC_AUTH_ENCODE_URI_PARAMS_DEFAULT),
        "validate_request_body": value.get("validate_request_body", HMAC_AUTH_VALIDATE_REQUEST_BODY_DEFAULT),
        "max_req_body": value.get("max_req_body", HMAC_AUTH_MAX_REQ_BODY_DEFAULT),
    }
    return {k: v for k, v in cfg.items() if v is not None}


def _hmac_auth_from_secret(data: Dict[str, str]) -> Dict[str, Any]:
    if not data.get("access_key"):
        raise ValueError(_missing("access_key"))
    if not data.get("secret_key"):
        raise ValueError(_missing("secret_key"))
    clock_skew = _parse_int(data.get("clock_skew"))
    max_req_body = _parse_int(data.get("max_req_body")) if data.get("max_req_body") else HMAC_AUTH_MAX_REQ_BODY_DEFAULT
    signed_headers = [h.strip() for h in data.get("signed_headers", "").split(",") if h.strip()]
    return _hmac_auth(
        {
            "access_key": data["access_key"],
            "secret_key": data["secret_key"],
            "algorithm": data.get("algorithm") or HMAC_AUTH_ALGORITHM_DEFAULT,
            "clock_skew": clock_skew if clock_skew >= 0 else HMAC_AUTH_CLOCK_SKEW_DEFAULT,
            "signed_headers": signed_headers or None,
            "keep_headers": _parse_bool(data, "keep_headers", HMAC_AUTH_KEEP_HEADERS_DEFAULT),
            "encode_uri_params": _parse_bool(data, "encode_uri_params", HMAC_AUTH_ENCODE_URI_PARAMS_DEFAULT),
            "validate_request_body": _parse_bool(
                data, "validate_request_body", HMAC_AUTH_VALIDATE_REQUEST_BODY_DEFAULT
            ),
            "max_req_body": max_req_body if max_req_body >= 0 else HMAC_AUTH_MAX_REQ_BODY_DEFAULT,
        }
    )


def _ldap_auth(value: Dict[str, Any]) -> Dict[str, Any]:
    return {"user_dn": value.get("user_dn", "")}


def _ldap_auth_from_secret(data: Dict[str, str]) -> Dict[str, Any]:
    if not data.get("user_dn"):
        raise ValueError(_missing("user_dn"))
    return {"user_dn": data["user_dn"]}


Builder = Callable[[Dict[str, Any]], Dict[str, Any]]

# (spec field, plugin name, from inline value, from secret data), in lookup order
AUTH_TYPES: List[Tuple[str, str, Builder, Builder]] = [
    ("keyAuth", "key-auth", _key_auth, _key_auth_from_secret),
    ("basicAuth", "basic-auth", _basic_auth, _basic_auth_from_secret),
    ("jwtAuth", "jwt-auth", _jwt_auth, _jwt_auth_from_secret),
    ("wolfRBAC", "wolf-rbac", _wolf_rbac, _wolf_rbac),
    ("hmacAuth", "hmac-auth", _hmac_auth, _hmac_auth_from_secret),
    ("ldapAuth", "ldap-auth", _ldap_auth, _ldap_auth_from_secret),
]


class ConsumerTranslatorMixin:
    """Needs the ``secrets`` store."""

    def translate_consumer(self, ac: VersionedResource) -> TranslateContext:
        ctx = TranslateContext()
        consumer = ac.dispatch(
            {
                APISIX_V2: lambda obj: self._translate_consumer_spec(ac, allow_ldap=True),
                APISIX_V2BETA3: lambda obj: self._translate_consumer_spec(ac, allow_ldap=False),
            }
        )
        ctx.add_consumer(consumer)
        return ctx

    def _translate_consumer_spec(self, ac: VersionedResource, allow_ldap: bool) -> Consumer:
        params = ac.spec.get("authParameter") or {}
        plugins: Dict[str, Any] = {}
        # only one authentication type is allowed per consumer
        for field, plugin, from_value, from_secret in AUTH_TYPES:
            cfg = params.get(field)
            if cfg is None or (field == "ldapAuth" and not allow_ldap):
                continue
            plugins[plugin] = self._translate_auth(ac.namespace, field, cfg, from_value, from_secret)
            break

        consumer = Consumer(username=compose_consumer_name(ac.namespace, ac.name), plugins=plugins)
        consumer.labels.update(ac.labels)
        return consumer

    def _translate_auth(
        self,
        namespace: str,
        field: str,
        cfg: Dict[str, Any],
        from_value: Builder,
        from_secret: Builder,
    ) -> Dict[str, Any]:
        if cfg.get("value") is not None:
            return from_value(cfg["value"])
        secret_ref = cfg.get("secretRef") or {}
        secret = self.secrets.must_get(namespace, secret_ref.get("name", ""))
        try:
            return from_secret(decode_secret_data(secret))
        except ValueError as exc:
            logger.error("invalid %s config of consumer in namespace %s: %s", field, namespace, exc)
            raise TranslateError(f"authParameter.{field}", str(exc)) from exc

    def generate_consumer_delete_mark(self, ac: VersionedResource) -> TranslateContext:
        ctx = TranslateContext()
        ctx.add_consumer(Consumer(username=compose_consumer_name(ac.namespace, ac.name)))
        return ctx


__all__ = [
    "ConsumerTranslatorMixin",
    "JWT_AUTH_EXP_DEFAULT",
    "HMAC_AUTH_ALGORITHM_DEFAULT",
    "HMAC_AUTH_MAX_REQ_BODY_DEFAULT",
]
