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

"""ApisixTls controller."""

from typing import Set

from apisix_ingress.controllers.base import BaseController
from apisix_ingress.kube.versioned import KIND_TLS, VersionedResource
from apisix_ingress.translation.context import TranslateContext


class TLSController(BaseController):
    kind = KIND_TLS
    resource = "TLS"
    tracks_secrets = True

    def translate(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.translate_tls(obj)

    def translate_delete(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.generate_tls_delete_mark(obj)

    def secret_references(self, obj: VersionedResource) -> Set[str]:
        refs = set()
        secret = obj.spec.get("secret") or {}
        if secret.get("name"):
            refs.add(f"{secret.get('namespace') or obj.namespace}/{secret['name']}")
        ca = (obj.spec.get("client") or {}).get("caSecret") or {}
        if ca.get("name"):
            refs.add(f"{ca.get('namespace') or obj.namespace}/{ca['name']}")
        return refs


__all__ = ["TLSController"]
