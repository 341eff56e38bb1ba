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

"""ApisixTls and Secret key pair translation."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from apisix_ingress.apisix.models import SSL, SSLClient, compose_ssl_name, gen_id
from apisix_ingress.kube.versioned import APISIX_V2, APISIX_V2BETA3, VersionedResource
from apisix_ingress.translation.context import TranslateContext
from apisix_ingress.translation.errors import TranslateError
from apisix_ingress.translation.helpers import decode_secret_data

logger = logging.getLogger(__name__)

SECRET_CERT_KEY = "cert"
SECRET_KEY_KEY = "key"
TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"
CA_CERT_KEY = "ca.crt"


class SecretFormatError(ValueError):
    pass


def extract_key_pair(secret: Dict[str, Any], has_private_key: bool) -> Tuple[str, Optional[str]]:
    """
    Return (cert, key) from an APISIX style (cert/key) or kubernetes.io/tls
    (tls.crt/tls.key) secret. A CA-only secret (ca.crt) is accepted when no
    private key is expected; the key is then None.
    """
    data = decode_secret_data(secret)
    if SECRET_CERT_KEY in data:
        cert_key, private_key_key = SECRET_CERT_KEY, SECRET_KEY_KEY
    elif TLS_CERT_KEY in data:
        cert_key, private_key_key = TLS_CERT_KEY, TLS_PRIVATE_KEY_KEY
    elif CA_CERT_KEY in data and not has_private_key:
        return data[CA_CERT_KEY], None
    else:
        raise SecretFormatError("unknown secret format")

    cert = data.get(cert_key)
    if not cert:
        raise SecretFormatError("missing cert field")
    if not has_private_key:
        return cert, None
    key = data.get(private_key_key)
    if not key:
        raise SecretFormatError("missing key field")
    return cert, key


class TLSTranslatorMixin:
    """Builds SSL objects; relies on the ``secrets`` store of the translator."""

    def translate_ssl(self, tls: VersionedResource) -> SSL:
        return tls.dispatch(
            {
                APISIX_V2: lambda obj: self._translate_ssl_spec(tls.namespace, tls.name, tls.spec),
                APISIX_V2BETA3: lambda obj: self._translate_ssl_spec(tls.namespace, tls.name, tls.spec),
            }
        )

    def _translate_ssl_spec(self, namespace: str, name: str, spec: Dict[str, Any]) -> SSL:
        secret_ref = spec.get("secret") or {}
        secret = self.secrets.must_get(secret_ref.get("namespace") or namespace, secret_ref.get("name", ""))
        try:
            cert, key = extract_key_pair(secret, True)
        except SecretFormatError as exc:
            raise TranslateError("secret", f"extract cert and key from secret failed, {exc}") from exc

        ssl = SSL(
            id=gen_id(compose_ssl_name(namespace, name)),
            snis=[str(host) for host in spec.get("hosts") or []],
            cert=cert,
            key=key or "",
        )
        client = spec.get("client")
        if client:
            ca_ref = client.get("caSecret") or {}
            ca_secret = self.secrets.must_get(ca_ref.get("namespace") or namespace, ca_ref.get("name", ""))
            try:
                ca, _ = extract_key_pair(ca_secret, False)
            except SecretFormatError as exc:
                raise TranslateError("client.caSecret", f"extract ca from secret failed, {exc}") from exc
            ssl.client = SSLClient(
                ca=ca,
                depth=client.get("depth"),
                skip_mtls_uri_regex=client.get("skip_mtls_uri_regex"),
            )
        return ssl

    def translate_tls(self, tls: VersionedResource) -> TranslateContext:
        ctx = TranslateContext()
        ctx.add_ssl(self.translate_ssl(tls))
        return ctx

    def generate_tls_delete_mark(self, tls: VersionedResource) -> TranslateContext:
        ctx = TranslateContext()
        ctx.add_ssl(SSL(id=gen_id(compose_ssl_name(tls.namespace, tls.name))))
        return ctx


__all__ = ["SecretFormatError", "extract_key_pair", "TLSTranslatorMixin"]
