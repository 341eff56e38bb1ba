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

"""Events flowing from watch callbacks to controller workers."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from apisix_ingress.kube.versioned import VersionedResource


class EventType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    # emitted by the periodic resync
    SYNC = "sync"

    def is_add_event(self) -> bool:
        return self in (EventType.ADD, EventType.SYNC)

    def is_sync_event(self) -> bool:
        return self is EventType.SYNC


@dataclass(frozen=True)
class Event:
    """
    A unit of work for a controller.

    Controller queues collapse events by object key, see ``merge_events``.
    """

    type: EventType
    key: str
    group_version: str = ""
    old_object: Optional[VersionedResource] = field(default=None, compare=False, repr=False)
    tombstone: Optional[VersionedResource] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class RelatedEvent:
    """A change of an object other controllers depend on (Service, ApisixUpstream...)."""

    kind: str
    key: str
    payload: Any = field(default=None, compare=False, repr=False)


def event_key(event: Event) -> str:
    return event.key


def merge_events(pending: Event, incoming: Event) -> Event:
    """
    The event kept when ``incoming`` arrives while ``pending`` still waits.

    The newest event wins. Collapsed updates keep the oldest previous version
    so the diff covers every change since the last reconciliation.
    """
    if pending.type is EventType.UPDATE and incoming.type is EventType.UPDATE:
        return replace(incoming, old_object=pending.old_object or incoming.old_object)
    return incoming


__all__ = ["EventType", "Event", "RelatedEvent", "event_key", "merge_events"]
