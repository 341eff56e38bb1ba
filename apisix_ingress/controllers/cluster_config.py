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
ApisixClusterConfig controller.

Only the configuration named after the default gateway cluster is honoured.
Its admin settings re-point the Admin API client and its monitoring switches
become a cluster wide global rule.
"""

import logging

from apisix_ingress.apisix.client import ClusterOptions
from apisix_ingress.controllers.base import BaseController
from apisix_ingress.controllers.events import Event, EventType
from apisix_ingress.kube.versioned import KIND_CLUSTER_CONFIG, VersionedResource

logger = logging.getLogger(__name__)


class ClusterConfigController(BaseController):
    kind = KIND_CLUSTER_CONFIG
    resource = "clusterConfig"

    def reconcile(self, event: Event, obj: VersionedResource) -> None:
        if obj.name != self.ctx.cluster_name:
            logger.info(
                "ignore ApisixClusterConfig %s, only the default cluster %s is managed",
                obj.name,
                self.ctx.cluster_name,
            )
            return
        if event.type is EventType.DELETE:
            logger.error("ApisixClusterConfig delete event for the default cluster is ignored")
            return

        admin = obj.spec.get("admin") or {}
        if admin.get("baseURL"):
            options = ClusterOptions(
                name=obj.name,
                base_url=admin["baseURL"],
                admin_key=admin.get("adminKey"),
                timeout=self.ctx.config.apisix.admin_api_timeout,
            )
            logger.info("updating cluster %s to %s", options.name, options.base_url)
            self.ctx.admin.update_cluster(options)

        rule = self.ctx.translator.translate_cluster_config(obj)
        logger.debug("translated global rule of cluster %s: %s", obj.name, rule)
        global_rules = self.ctx.cluster().global_rules
        if event.type.is_add_event():
            global_rules.create(rule, should_compare=event.type.is_sync_event())
        else:
            global_rules.update(rule)


__all__ = ["ClusterConfigController"]
