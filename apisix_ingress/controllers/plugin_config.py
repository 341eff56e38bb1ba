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

"""ApisixPluginConfig controller."""

from typing import Set

from apisix_ingress.controllers.base import BaseController, plugin_secret_references
from apisix_ingress.kube.versioned import KIND_PLUGIN_CONFIG, VersionedResource
from apisix_ingress.translation.context import TranslateContext


class PluginConfigController(BaseController):
    kind = KIND_PLUGIN_CONFIG
    resource = "PluginConfig"
    tracks_secrets = True

    def translate(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.translate_plugin_config(obj)

    def translate_delete(self, obj: VersionedResource) -> TranslateContext:
        return self.ctx.translator.generate_plugin_config_delete_mark(obj)

    def secret_references(self, obj: VersionedResource) -> Set[str]:
        return plugin_secret_references(obj.namespace, obj.spec.get("plugins"))


__all__ = ["PluginConfigController"]
