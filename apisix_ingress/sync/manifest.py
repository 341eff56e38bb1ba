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
Manifests, their diff and their application to a gateway cluster.

A manifest is everything one source object produces, grouped per gateway
object kind. Reconciling an event is ``diff(new, old)`` followed by
``sync_manifests`` of the three resulting manifests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from apisix_ingress.apisix.client import Cluster, StillInUseError
from apisix_ingress.apisix.models import (
    SSL,
    Consumer,
    GatewayObject,
    GlobalRule,
    PluginConfig,
    Route,
    StreamRoute,
    Upstream,
)
from apisix_ingress.translation.context import TranslateContext

logger = logging.getLogger(__name__)

# Referenced objects first so that nothing points at a missing ID.
CREATE_ORDER = ("ssls", "upstreams", "plugin_configs", "consumers", "routes", "stream_routes", "global_rules")
# Referencing objects first so that upstreams/plugin configs are free to go.
DELETE_ORDER = ("ssls", "routes", "stream_routes", "consumers", "upstreams", "plugin_configs", "global_rules")
# Deleting these fails while something still references them; that is expected.
SHARED_KINDS = ("upstreams", "plugin_configs")


@dataclass
class Manifest:
    routes: List[Route] = field(default_factory=list)
    stream_routes: List[StreamRoute] = field(default_factory=list)
    upstreams: List[Upstream] = field(default_factory=list)
    ssls: List[SSL] = field(default_factory=list)
    plugin_configs: List[PluginConfig] = field(default_factory=list)
    global_rules: List[GlobalRule] = field(default_factory=list)
    consumers: List[Consumer] = field(default_factory=list)

    @classmethod
    def from_context(cls, ctx: Optional[TranslateContext]) -> Optional["Manifest"]:
        if ctx is None:
            return None
        return cls(
            routes=list(ctx.routes),
            stream_routes=list(ctx.stream_routes),
            upstreams=list(ctx.upstreams),
            ssls=list(ctx.ssls),
            plugin_configs=list(ctx.plugin_configs),
            global_rules=list(ctx.global_rules),
            consumers=list(ctx.consumers),
        )

    def objects(self, kind: str) -> List[GatewayObject]:
        return getattr(self, kind)

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            f.name: [obj.model_dump(exclude_none=True) for obj in getattr(self, f.name)]
            for f in fields(self)
            if getattr(self, f.name)
        }

    def is_empty(self) -> bool:
        return all(not getattr(self, f.name) for f in fields(self))

    def __len__(self) -> int:
        return sum(len(getattr(self, f.name)) for f in fields(self))


def diff_objects(
    olds: Optional[Sequence[GatewayObject]],
    news: Optional[Sequence[GatewayObject]],
) -> Tuple[list, list, list]:
    """Split one kind into (added, updated, deleted) by identity and content."""
    if not olds:
        return list(news or []), [], []
    if not news:
        return [], [], list(olds)

    old_by_id: Dict[str, GatewayObject] = {obj.identity(): obj for obj in olds}
    new_ids = set()
    added, updated = [], []
    for obj in news:
        new_ids.add(obj.identity())
        previous = old_by_id.get(obj.identity())
        if previous is None:
            added.append(obj)
        elif previous.model_dump() != obj.model_dump():
            updated.append(obj)
    deleted = [obj for obj in olds if obj.identity() not in new_ids]
    return added, updated, deleted


def diff(
    new: Optional[Manifest], old: Optional[Manifest]
) -> Tuple[Optional[Manifest], Optional[Manifest], Optional[Manifest]]:
    """
    Compute (added, updated, deleted).

    A missing ``old`` means everything is added; a missing ``new`` means
    everything is deleted.
    """
    if old is None:
        return new, None, None
    if new is None:
        return None, None, old
    added, updated, deleted = Manifest(), Manifest(), Manifest()
    for f in fields(Manifest):
        a, u, d = diff_objects(getattr(old, f.name), getattr(new, f.name))
        setattr(added, f.name, a)
        setattr(updated, f.name, u)
        setattr(deleted, f.name, d)
    return added, updated, deleted


def dump_diff(
    added: Optional[Manifest], updated: Optional[Manifest], deleted: Optional[Manifest]
) -> str:
    """Render a diff as YAML for debug logs."""
    return yaml.safe_dump(
        {
            "added": added.to_dict() if added else {},
            "updated": updated.to_dict() if updated else {},
            "deleted": deleted.to_dict() if deleted else {},
        },
        sort_keys=False,
    )


class SyncError(Exception):
    """Every per-object failure of one sync pass."""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        super().__init__(
            f"{len(self.errors)} error(s) occurred: " + "; ".join(str(err) for err in self.errors)
        )


def sync_manifests(
    cluster: Cluster,
    added: Optional[Manifest],
    updated: Optional[Manifest],
    deleted: Optional[Manifest],
    should_compare: bool = False,
) -> None:
    """
    Apply a diff to ``cluster``.

    Every object is attempted even when an earlier one failed; the failures
    are raised together as ``SyncError``.
    """
    errors: List[Exception] = []

    if added is not None:
        for kind in CREATE_ORDER:
            client = None
            for obj in added.objects(kind):
                client = client or cluster.resource(obj.kind)
                try:
                    client.create(obj, should_compare=should_compare)
                except Exception as exc:
                    errors.append(exc)

    if updated is not None:
        for kind in CREATE_ORDER:
            client = None
            for obj in updated.objects(kind):
                client = client or cluster.resource(obj.kind)
                try:
                    client.update(obj)
                except Exception as exc:
                    errors.append(exc)

    if deleted is not None:
        for kind in DELETE_ORDER:
            client = None
            for obj in deleted.objects(kind):
                client = client or cluster.resource(obj.kind)
                try:
                    client.delete(obj)
                except StillInUseError as exc:
                    if kind not in SHARED_KINDS:
                        errors.append(exc)
                        continue
                    logger.info("%s %s is still referenced by other objects, keep it", obj.kind, obj.identity())
                except Exception as exc:
                    if kind == "routes":
                        logger.warning(
                            "failed to delete route %s, this may affect upstream deletions: %s",
                            obj.identity(),
                            exc,
                        )
                    errors.append(exc)

    if errors:
        raise SyncError(errors)


__all__ = [
    "Manifest",
    "SyncError",
    "CREATE_ORDER",
    "DELETE_ORDER",
    "diff",
    "diff_objects",
    "dump_diff",
    "sync_manifests",
]
