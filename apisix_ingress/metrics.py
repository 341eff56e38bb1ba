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

"""In-process counters describing reconciliation activity."""

import threading
from collections import defaultdict
from typing import Any, Dict, Tuple


class MetricsCollector:
    """Thread-safe counters keyed by (resource, label)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sync_operations: Dict[Tuple[str, str], int] = defaultdict(int)
        self._events: Dict[Tuple[str, str], int] = defaultdict(int)
        self._status_updates: Dict[Tuple[str, str], int] = defaultdict(int)
        self._queue_depth: Dict[str, int] = {}

    def incr_sync_operation(self, resource: str, result: str) -> None:
        with self._lock:
            self._sync_operations[(resource, result)] += 1

    def incr_events(self, resource: str, event: str) -> None:
        with self._lock:
            self._events[(resource, event)] += 1

    def incr_status_updates(self, resource: str, result: str) -> None:
        with self._lock:
            self._status_updates[(resource, result)] += 1

    def set_queue_depth(self, queue: str, depth: int) -> None:
        with self._lock:
            self._queue_depth[queue] = depth

    def sync_operations(self, resource: str, result: str) -> int:
        with self._lock:
            return self._sync_operations.get((resource, result), 0)

    def events(self, resource: str, event: str) -> int:
        with self._lock:
            return self._events.get((resource, event), 0)

    def snapshot(self) -> Dict[str, Any]:
        """Nested plain dicts, ready to be served as JSON."""
        with self._lock:
            return {
                "sync_operations": _nest(self._sync_operations),
                "events": _nest(self._events),
                "status_updates": _nest(self._status_updates),
                "queue_depth": dict(self._queue_depth),
            }


def _nest(counters: Dict[Tuple[str, str], int]) -> Dict[str, Dict[str, int]]:
    nested: Dict[str, Dict[str, int]] = {}
    for (resource, label), value in counters.items():
        nested.setdefault(resource, {})[label] = value
    return nested


__all__ = ["MetricsCollector"]
