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

"""Translation failures."""

from apisix_ingress.constants import ReconcileErrorCodes


class TranslateError(Exception):
    """A source field is malformed or semantically invalid."""

    code = ReconcileErrorCodes.TRANSLATION_FAILED

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.field}: {self.reason}"


class DuplicatedRuleNameError(TranslateError):
    def __init__(self, rule_name: str):
        super().__init__("name", rule_name)
        self.rule_name = rule_name

    def __str__(self) -> str:
        return "duplicated route rule name"


__all__ = ["TranslateError", "DuplicatedRuleNameError"]
