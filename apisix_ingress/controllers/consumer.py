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

"""ApisixConsumer controller."""

from typing import Set

from apisix_ingress.controllers.base import BaseController
from apisix_ingress.kube.versioned import KIND_CONSUMER, VersionedResource
from apisix_ingress.translation.context import TranslateContext


class ConsumerController(BaseController):
    kind = KIND_CONSUMER
    resource = "consumer"
    tracks_secrets = True

    def translate(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.translate_consumer(obj)

    def translate_delete(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.generate_consumer_delete_mark(obj)

    def secret_references(self, obj: VersionedResource) -> Set[str]:
        refs = set()
        for cfg in (obj.spec.get("authParameter") or {}).values():
            name = ((cfg or {}).get("secretRef") or {}).get("name")
            if name:
                refs.add(f"{obj.namespace}/{name}")
        return refs


__all__ = ["ConsumerController"]
