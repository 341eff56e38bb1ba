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

"""Re-enqueue the objects that read a Secret when it changes."""

import logging
from typing import Any, Iterable, List

from apisix_ingress.controllers.base import BaseController
from apisix_ingress.kube.informer import DeletedFinalStateUnknown
from apisix_ingress.kube.store import meta_namespace_key

logger = logging.getLogger(__name__)


class SecretController:
    """
    Fan a Secret change out to the controllers tracking it.

    The callbacks only push onto the dependents' queues, so they are safe to
    run on the informer thread.
    """

    def __init__(self, dependents: Iterable[BaseController]):
        self.dependents: List[BaseController] = [c for c in dependents if c.secret_index is not None]

    def on_add(self, raw: Any) -> None:
        self._notify(meta_namespace_key(raw))

    def on_update(self, old_raw: Any, new_raw: Any) -> None:
        if old_raw.get("data") == new_raw.get("data") and old_raw.get("stringData") == new_raw.get("stringData"):
            return
        self._notify(meta_namespace_key(new_raw))

    def on_delete(self, raw: Any) -> None:
        if isinstance(raw, DeletedFinalStateUnknown):
            raw = raw.obj
        self._notify(meta_namespace_key(raw))

    def _notify(self, key: str) -> int:
        queued = 0
        for controller in self.dependents:
            dependents = controller.secret_index.dependents(key)
            if not dependents:
                continue
            logger.debug("Secret %s changed, resync %s %s", key, controller.kind, sorted(dependents))
            queued += controller.enqueue_keys(dependents)
        return queued


__all__ = ["SecretController"]
