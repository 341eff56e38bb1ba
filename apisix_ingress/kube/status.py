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

"""Write synced/aborted conditions back onto custom resources."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from kubernetes.client import ApiException, CustomObjectsApi

from apisix_ingress.constants import (
    CONDITION_TYPE,
    REASON_RESOURCE_SYNC_ABORTED,
    REASON_RESOURCE_SYNCED,
    SUCCESS_MESSAGE,
)
from apisix_ingress.kube.versioned import CLUSTER_SCOPED_KINDS, RESOURCE_PLURALS, VersionedResource

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_condition(error: Optional[BaseException], generation: int) -> Dict[str, Any]:
    if error is None:
        return {
            "type": CONDITION_TYPE,
            "reason": REASON_RESOURCE_SYNCED,
            "status": "True",
            "message": SUCCESS_MESSAGE,
            "observedGeneration": generation,
        }
    return {
        "type": CONDITION_TYPE,
        "reason": REASON_RESOURCE_SYNC_ABORTED,
        "status": "False",
        "message": str(error),
        "observedGeneration": generation,
    }


def find_condition(conditions: List[Dict[str, Any]], condition_type: str) -> Optional[Dict[str, Any]]:
    for condition in conditions:
        if condition.get("type") == condition_type:
            return condition
    return None


def condition_changed(conditions: List[Dict[str, Any]], new: Dict[str, Any]) -> bool:
    """Return True when writing ``new`` would change the condition set."""
    existing = find_condition(conditions, new["type"])
    if existing is None:
        return True
    if int(existing.get("observedGeneration") or 0) > new["observedGeneration"]:
        return False
    for field in ("reason", "status", "message", "observedGeneration"):
        if existing.get(field) != new[field]:
            return True
    return False


def set_condition(conditions: List[Dict[str, Any]], new: Dict[str, Any], now: Callable[[], str] = _now) -> None:
    existing = find_condition(conditions, new["type"])
    if existing is None:
        condition = dict(new)
        condition.setdefault("lastTransitionTime", now())
        conditions.append(condition)
        return
    if existing.get("status") != new["status"]:
        existing["status"] = new["status"]
        existing["lastTransitionTime"] = now()
    existing["reason"] = new["reason"]
    existing["message"] = new["message"]
    existing["observedGeneration"] = new["observedGeneration"]


class StatusRecorder:
    """
    Record the outcome of a reconciliation on the source object's status.

    Writes are best effort: failures are logged and never propagate into the
    reconciliation result.
    """

    def __init__(
        self,
        custom_api: Optional[CustomObjectsApi],
        disabled: bool = False,
        is_leader: Callable[[], bool] = lambda: True,
    ):
        self.custom_api = custom_api
        self.disabled = disabled
        self.is_leader = is_leader

    @property
    def enabled(self) -> bool:
        return not self.disabled and self.custom_api is not None and self.is_leader()

    def record(
        self,
        resource: VersionedResource,
        error: Optional[BaseException],
        generation: Optional[int] = None,
    ) -> bool:
        """Return True when a status write was issued and accepted."""
        if not self.enabled:
            return False

        obj = resource.deep_copy()
        status = obj.setdefault("status", {}) or {}
        obj["status"] = status
        conditions = status.setdefault("conditions", []) or []
        status["conditions"] = conditions

        condition = build_condition(error, resource.generation if generation is None else generation)
        if not condition_changed(conditions, condition):
            return False
        set_condition(conditions, condition)

        group, version = resource.group_version.split("/", 1)
        plural = RESOURCE_PLURALS[resource.kind]
        try:
            if resource.kind in CLUSTER_SCOPED_KINDS:
                self.custom_api.replace_cluster_custom_object_status(
                    group, version, plural, resource.name, obj
                )
            else:
                self.custom_api.replace_namespaced_custom_object_status(
                    group, version, resource.namespace, plural, resource.name, obj
                )
        except ApiException as exc:
            logger.error(
                "failed to record status change for %s %s: %s",
                resource.kind,
                resource.key,
                exc,
            )
            return False
        return True


__all__ = [
    "StatusRecorder",
    "build_condition",
    "condition_changed",
    "find_condition",
    "set_condition",
]
