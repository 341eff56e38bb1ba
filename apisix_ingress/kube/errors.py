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

"""Errors raised while reading the local watch caches."""

from apisix_ingress.constants import ReconcileErrorCodes


class ResourceNotFound(Exception):
    """A cluster object is not (yet) present in its watch cache."""

    code = ReconcileErrorCodes.REFERENCE_NOT_FOUND

    def __init__(self, kind: str, key: str):
        super().__init__(f'{kind} "{key}" not found')
        self.kind = kind
        self.key = key


__all__ = ["ResourceNotFound"]
