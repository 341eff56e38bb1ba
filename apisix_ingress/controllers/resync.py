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

"""Periodic full resync of every controller."""

import logging
import threading
from typing import Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


def get_sync_delay(interval: float, count: int) -> float:
    """
    Spacing in seconds between two Sync events of one resync pass.

    The interval is split evenly across ``count`` objects; spacing below one
    second is not worth a timer and becomes zero.
    """
    if count <= 0:
        return 0.0
    delay = interval / count
    if delay < 1.0:
        return 0.0
    return delay


class Resyncable(Protocol):
    kind: str

    def resource_sync(self, interval: float, namespace: str = "") -> int:
        ...


class ResyncScheduler:
    """Call ``resource_sync`` on every controller once per ``interval``."""

    def __init__(
        self,
        controllers: Iterable[Resyncable],
        interval: float,
        stop_event: Optional[threading.Event] = None,
    ):
        self.controllers = list(controllers)
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="resync", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self.stop_event.wait(self.interval):
            self.resync_all()

    def resync_all(self) -> int:
        total = 0
        for controller in self.controllers:
            scheduled = controller.resource_sync(self.interval)
            logger.info("scheduled %d %s object(s) for resync", scheduled, controller.kind)
            total += scheduled
        return total


__all__ = ["get_sync_delay", "ResyncScheduler"]
