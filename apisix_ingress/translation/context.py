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

"""Objects collected during one translation pass."""

from dataclasses import dataclass, field
from typing import List

from apisix_ingress.apisix.models import (
    SSL,
    Consumer,
    GlobalRule,
    PluginConfig,
    Route,
    StreamRoute,
    Upstream,
)


@dataclass
class TranslateContext:
    routes: List[Route] = field(default_factory=list)
    stream_routes: List[StreamRoute] = field(default_factory=list)
    upstreams: List[Upstream] = field(default_factory=list)
    ssls: List[SSL] = field(default_factory=list)
    plugin_configs: List[PluginConfig] = field(default_factory=list)
    global_rules: List[GlobalRule] = field(default_factory=list)
    consumers: List[Consumer] = field(default_factory=list)

    def add_route(self, route: Route) -> None:
        self.routes.append(route)

    def add_stream_route(self, route: StreamRoute) -> None:
        self.stream_routes.append(route)

    def add_upstream(self, upstream: Upstream) -> None:
        # several rules may share one backend
        if self.check_upstream_exist(upstream.id):
            return
        self.upstreams.append(upstream)

    def check_upstream_exist(self, upstream_id: str) -> bool:
        return any(ups.id == upstream_id for ups in self.upstreams)

    def add_ssl(self, ssl: SSL) -> None:
        self.ssls.append(ssl)

    def add_plugin_config(self, plugin_config: PluginConfig) -> None:
        if self.check_plugin_config_exist(plugin_config.id):
            return
        self.plugin_configs.append(plugin_config)

    def check_plugin_config_exist(self, plugin_config_id: str) -> bool:
        return any(pc.id == plugin_config_id for pc in self.plugin_configs)

    def add_global_rule(self, rule: GlobalRule) -> None:
        self.global_rules.append(rule)

    def add_consumer(self, consumer: Consumer) -> None:
        self.consumers.append(consumer)


__all__ = ["TranslateContext"]
