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

"""Plugin sets: ApisixPluginConfig, ApisixGlobalRule and ApisixClusterConfig."""

from __future__ import annotations

from typing import Any, Dict

from apisix_ingress.apisix.models import (
    GlobalRule,
    PluginConfig,
    compose_global_rule_name,
    compose_plugin_config_name,
    gen_id,
)
from apisix_ingress.kube.versioned import APISIX_V2, APISIX_V2BETA3, VersionedResource
from apisix_ingress.translation.context import TranslateContext

PROMETHEUS_PLUGIN = "prometheus"
SKYWALKING_PLUGIN = "skywalking"


class PluginTranslatorMixin:
    """Needs ``translate_plugins`` from the route translator."""

    def translate_plugin_config(self, apc: VersionedResource) -> TranslateContext:
        ctx = TranslateContext()
        ctx.add_plugin_config(
            apc.dispatch(
                {
                    APISIX_V2: lambda obj: self._translate_plugin_config_spec(apc),
                    APISIX_V2BETA3: lambda obj: self._translate_plugin_config_spec(apc),
                }
            )
        )
        return ctx

    def _translate_plugin_config_spec(self, apc: VersionedResource) -> PluginConfig:
        pc = PluginConfig()
        pc.name = compose_plugin_config_name(apc.namespace, apc.name)
        pc.id = gen_id(pc.name)
        pc.plugins = self.translate_plugins(apc.namespace, apc.spec.get("plugins"))
        return pc

    def generate_plugin_config_delete_mark(self, apc: VersionedResource) -> TranslateContext:
        ctx = TranslateContext()
        name = compose_plugin_config_name(apc.namespace, apc.name)
        ctx.add_plugin_config(PluginConfig(id=gen_id(name), name=name))
        return ctx

    def translate_global_rule(self, agr: VersionedResource) -> TranslateContext:
        ctx = TranslateContext()
        rule = agr.dispatch(
            {
                APISIX_V2: lambda obj: GlobalRule(
                    id=gen_id(compose_global_rule_name(agr.namespace, agr.name)),
                    plugins=self.translate_plugins(agr.namespace, agr.spec.get("plugins")),
                ),
            }
        )
        ctx.add_global_rule(rule)
        return ctx

    def generate_global_rule_delete_mark(self, agr: VersionedResource) -> TranslateContext:
        ctx = TranslateContext()
        ctx.add_global_rule(GlobalRule(id=gen_id(compose_global_rule_name(agr.namespace, agr.name))))
        return ctx

    def translate_cluster_config(self, acc: VersionedResource) -> GlobalRule:
        """Cluster wide plugins derived from the monitoring switches."""
        return acc.dispatch(
            {
                APISIX_V2: lambda obj: self._translate_cluster_config_spec(acc),
                APISIX_V2BETA3: lambda obj: self._translate_cluster_config_spec(acc),
            }
        )

    def _translate_cluster_config_spec(self, acc: VersionedResource) -> GlobalRule:
        plugins: Dict[str, Any] = {}
        monitoring = acc.spec.get("monitoring") or {}
        prometheus = monitoring.get("prometheus") or {}
        if prometheus.get("enable"):
            plugins[PROMETHEUS_PLUGIN] = {"prefer_name": bool(prometheus.get("preferName"))}
        skywalking = monitoring.get("skywalking") or {}
        if skywalking.get("enable"):
            plugins[SKYWALKING_PLUGIN] = {"sample_ratio": skywalking.get("sampleRatio", 1)}
        return GlobalRule(id=gen_id(acc.name), plugins=plugins)


__all__ = ["PluginTranslatorMixin", "PROMETHEUS_PLUGIN", "SKYWALKING_PLUGIN"]
