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

"""Bidirectional owner <-> backend index (route key <-> "namespace/service")."""

import threading
from typing import Dict, Iterable, Mapping, Set


class ReverseIndex:
    """
    Track which owners reference which backends.

    Both directions are kept so an owner's references can be replaced in one
    step and a backend's dependents can be listed without scanning. ``rebuild``
    replaces everything, which is what the periodic resync uses.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._forward: Dict[str, Set[str]] = {}
        self._reverse: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def update(self, owner: str, old: Iterable[str], new: Iterable[str]) -> None:
        """Move ``owner`` from the ``old`` backends to the ``new`` ones."""
        old_set, new_set = set(old or ()), set(new or ())
        with self._lock:
            for backend in old_set - new_set:
                self._unlink(owner, backend)
            for backend in new_set - old_set:
                self._link(owner, backend)

    def set(self, owner: str, backends: Iterable[str]) -> None:
        """Replace whatever ``owner`` referenced with ``backends``."""
        with self._lock:
            for backend in list(self._forward.get(owner, ())):
                self._unlink(owner, backend)
            for backend in backends or ():
                self._link(owner, backend)

    def remove(self, owner: str) -> None:
        self.set(owner, ())

    def dependents(self, backend: str) -> Set[str]:
        with self._lock:
            return set(self._reverse.get(backend, ()))

    def backends(self, owner: str) -> Set[str]:
        with self._lock:
            return set(self._forward.get(owner, ()))

    def rebuild(self, mapping: Mapping[str, Iterable[str]]) -> None:
        forward: Dict[str, Set[str]] = {}
        reverse: Dict[str, Set[str]] = {}
        for owner, backends in mapping.items():
            for backend in backends or ():
                forward.setdefault(owner, set()).add(backend)
                reverse.setdefault(backend, set()).add(owner)
        with self._lock:
            self._forward = forward
            self._reverse = reverse

    def __len__(self) -> int:
        with self._lock:
            return len(self._reverse)

    def _link(self, owner: str, backend: str) -> None:
        self._forward.setdefault(owner, set()).add(backend)
        self._reverse.setdefault(backend, set()).add(owner)

    def _unlink(self, owner: str, backend: str) -> None:
        owners = self._reverse.get(backend)
        if owners is not None:
            owners.discard(owner)
            if not owners:
                del self._reverse[backend]
        backends = self._forward.get(owner)
        if backends is not None:
            backends.discard(backend)
            if not backends:
                del self._forward[owner]


__all__ = ["ReverseIndex"]
