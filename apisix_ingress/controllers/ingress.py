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

"""Controller for native Ingress objects."""

from typing import Set

from apisix_ingress.controllers.base import BaseController
from apisix_ingress.kube.versioned import KIND_INGRESS, VersionedResource
from apisix_ingress.translation.context import TranslateContext


class IngressController(BaseController):
    kind = KIND_INGRESS
    resource = "ingress"
    tracks_secrets = True
    # Ingress status carries load balancer addresses, not sync conditions
    records_status = False

    def is_effective(self, obj: VersionedResource) -> bool:
        return self.ctx.match_ingress_class(obj.ingress_class)

    def translate(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.translate_ingress(obj)

    def translate_delete(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.translate_ingress(obj, skip_verify=True)

    def translate_old(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.translate_old_ingress(obj)

    def secret_references(self, obj: VersionedResource) -> Set[str]:
        return {
            f"{obj.namespace}/{tls['secretName']}"
            for tls in obj.spec.get("tls") or []
            if tls.get("secretName")
        }


__all__ = ["IngressController"]
