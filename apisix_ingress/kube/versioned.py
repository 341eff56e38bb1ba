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
Multi-version resource handles.

A kind such as ``ApisixRoute`` may be installed in several schema versions at
once. ``wrap`` turns a raw object into a ``VersionedResource`` tagged with its
group version; consumers branch on the tag through ``dispatch``, which insists
on one handler per supported variant so a newly supported version cannot be
silently ignored.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, TypeVar

from apisix_ingress.constants import INGRESS_CLASS_ANNOTATION, ReconcileErrorCodes

R = TypeVar("R")

APISIX_V2 = "apisix.apache.org/v2"
APISIX_V2BETA3 = "apisix.apache.org/v2beta3"
NETWORKING_V1 = "networking.k8s.io/v1"
NETWORKING_V1BETA1 = "networking.k8s.io/v1beta1"
EXTENSIONS_V1BETA1 = "extensions/v1beta1"

KIND_ROUTE = "ApisixRoute"
KIND_UPSTREAM = "ApisixUpstream"
KIND_TLS = "ApisixTls"
KIND_CONSUMER = "ApisixConsumer"
KIND_PLUGIN_CONFIG = "ApisixPluginConfig"
KIND_CLUSTER_CONFIG = "ApisixClusterConfig"
KIND_GLOBAL_RULE = "ApisixGlobalRule"
KIND_INGRESS = "Ingress"

SUPPORTED_VERSIONS: Dict[str, Tuple[str, ...]] = {
    KIND_ROUTE: (APISIX_V2, APISIX_V2BETA3),
    KIND_UPSTREAM: (APISIX_V2, APISIX_V2BETA3),
    KIND_TLS: (APISIX_V2, APISIX_V2BETA3),
    KIND_CONSUMER: (APISIX_V2, APISIX_V2BETA3),
    KIND_PLUGIN_CONFIG: (APISIX_V2, APISIX_V2BETA3),
    KIND_CLUSTER_CONFIG: (APISIX_V2, APISIX_V2BETA3),
    KIND_GLOBAL_RULE: (APISIX_V2,),
    KIND_INGRESS: (NETWORKING_V1, NETWORKING_V1BETA1, EXTENSIONS_V1BETA1),
}

RESOURCE_PLURALS: Dict[str, str] = {
    KIND_ROUTE: "apisixroutes",
    KIND_UPSTREAM: "apisixupstreams",
    KIND_TLS: "apisixtlses",
    KIND_CONSUMER: "apisixconsumers",
    KIND_PLUGIN_CONFIG: "apisixpluginconfigs",
    KIND_CLUSTER_CONFIG: "apisixclusterconfigs",
    KIND_GLOBAL_RULE: "apisixglobalrules",
    KIND_INGRESS: "ingresses",
}

CLUSTER_SCOPED_KINDS = frozenset({KIND_CLUSTER_CONFIG})

# Short names used in configuration files.
INGRESS_VERSION_ALIASES = {
    "networking/v1": NETWORKING_V1,
    "networking/v1beta1": NETWORKING_V1BETA1,
    "extensions/v1beta1": EXTENSIONS_V1BETA1,
}


class UnknownVersionError(ValueError):
    """The raw object is not a supported variant of the kind."""

    code = ReconcileErrorCodes.UNKNOWN_GROUP_VERSION


class WrongVariantError(TypeError):
    """A variant accessor was used on a handle of another variant."""

    code = ReconcileErrorCodes.WRONG_VARIANT


def parse_version_token(resource_version: Optional[str]) -> int:
    """
    Parse a resourceVersion into the integer used for ordering.

    Non numeric values map to 0 so they never win against a real version.
    """
    if not resource_version:
        return 0
    try:
        return int(resource_version)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True, eq=False)
class VersionedResource:
    """Immutable handle over one schema variant of a resource kind."""

    kind: str
    group_version: str
    obj: Dict[str, Any] = field(repr=False)

    def variant(self) -> str:
        return self.group_version

    def as_variant(self, group_version: str) -> Dict[str, Any]:
        if group_version != self.group_version:
            raise WrongVariantError(
                f"{self.kind} {self.key} is {self.group_version}, not {group_version}"
            )
        return self.obj

    def v2(self) -> Dict[str, Any]:
        return self.as_variant(APISIX_V2)

    def v2beta3(self) -> Dict[str, Any]:
        return self.as_variant(APISIX_V2BETA3)

    def dispatch(self, handlers: Mapping[str, Callable[[Dict[str, Any]], R]]) -> R:
        """Call the handler registered for this handle's variant."""
        expected = SUPPORTED_VERSIONS[self.kind]
        missing = [gv for gv in expected if gv not in handlers]
        if missing:
            raise ValueError(f"no handler for {self.kind} variants: {', '.join(missing)}")
        return handlers[self.group_version](self.obj)

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.obj.get("metadata") or {}

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace") or ""

    @property
    def name(self) -> str:
        return self.metadata.get("name") or ""

    @property
    def key(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def uid(self) -> str:
        return self.metadata.get("uid") or ""

    @property
    def generation(self) -> int:
        return int(self.metadata.get("generation") or 0)

    @property
    def resource_version(self) -> str:
        return self.metadata.get("resourceVersion") or ""

    def version_token(self) -> int:
        return parse_version_token(self.resource_version)

    @property
    def labels(self) -> Dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.get("annotations") or {}

    @property
    def spec(self) -> Dict[str, Any]:
        return self.obj.get("spec") or {}

    @property
    def status(self) -> Dict[str, Any]:
        return self.obj.get("status") or {}

    @property
    def ingress_class(self) -> str:
        """The ingress class selector; the legacy annotation wins for Ingress."""
        if self.kind == KIND_INGRESS:
            annotated = self.annotations.get(INGRESS_CLASS_ANNOTATION)
            if annotated:
                return annotated
        return self.spec.get("ingressClassName") or ""

    def deep_copy(self) -> Dict[str, Any]:
        return copy.deepcopy(self.obj)


def wrap(kind: str, raw: Any) -> VersionedResource:
    """Wrap a raw object, rejecting anything that is not a known variant."""
    if kind not in SUPPORTED_VERSIONS:
        raise UnknownVersionError(f"invalid type: unknown kind {kind}")
    if not isinstance(raw, dict):
        raise UnknownVersionError(f"invalid type: {type(raw).__name__}")
    group_version = raw.get("apiVersion")
    if group_version not in SUPPORTED_VERSIONS[kind]:
        raise UnknownVersionError(f"invalid type: {kind} {group_version}")
    return VersionedResource(kind=kind, group_version=group_version, obj=raw)


__all__ = [
    "APISIX_V2",
    "APISIX_V2BETA3",
    "NETWORKING_V1",
    "NETWORKING_V1BETA1",
    "EXTENSIONS_V1BETA1",
    "KIND_ROUTE",
    "KIND_UPSTREAM",
    "KIND_TLS",
    "KIND_CONSUMER",
    "KIND_PLUGIN_CONFIG",
    "KIND_CLUSTER_CONFIG",
    "KIND_GLOBAL_RULE",
    "KIND_INGRESS",
    "SUPPORTED_VERSIONS",
    "RESOURCE_PLURALS",
    "CLUSTER_SCOPED_KINDS",
    "INGRESS_VERSION_ALIASES",
    "UnknownVersionError",
    "WrongVariantError",
    "VersionedResource",
    "parse_version_token",
    "wrap",
]
