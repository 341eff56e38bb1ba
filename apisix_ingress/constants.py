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

"""Shared constants for the reconciler."""

MANAGED_BY_LABEL = "managed-by"
MANAGED_BY_VALUE = "apisix-ingress-controller"
DEFAULT_OBJECT_DESC = "Created by apisix-ingress-controller, DO NOT modify it manually"

ANNOTATIONS_PREFIX = "k8s.apisix.apache.org/"
INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"
ENDPOINT_SLICE_SERVICE_LABEL = "kubernetes.io/service-name"

# Status condition written back onto custom resources.
CONDITION_TYPE = "ResourcesAvailable"
REASON_RESOURCE_SYNCED = "ResourcesSynced"
REASON_RESOURCE_SYNC_ABORTED = "ResourceSyncAborted"
SUCCESS_MESSAGE = "Sync Successfully"


class ReconcileErrorCodes:
    """Canonical error codes attached to reconciliation failures."""

    TRANSLATION_FAILED = "RECONCILE::TRANSLATION_FAILED"
    REFERENCE_NOT_FOUND = "RECONCILE::REFERENCE_NOT_FOUND"
    GATEWAY_REQUEST_FAILED = "GATEWAY::REQUEST_FAILED"
    GATEWAY_OBJECT_NOT_FOUND = "GATEWAY::OBJECT_NOT_FOUND"
    GATEWAY_OBJECT_IN_USE = "GATEWAY::OBJECT_STILL_IN_USE"
    GATEWAY_CLUSTER_UNKNOWN = "GATEWAY::CLUSTER_UNKNOWN"
    UNKNOWN_GROUP_VERSION = "KUBE::UNKNOWN_GROUP_VERSION"
    WRONG_VARIANT = "KUBE::WRONG_VARIANT"


__all__ = [
    "MANAGED_BY_LABEL",
    "MANAGED_BY_VALUE",
    "DEFAULT_OBJECT_DESC",
    "ANNOTATIONS_PREFIX",
    "INGRESS_CLASS_ANNOTATION",
    "ENDPOINT_SLICE_SERVICE_LABEL",
    "CONDITION_TYPE",
    "REASON_RESOURCE_SYNCED",
    "REASON_RESOURCE_SYNC_ABORTED",
    "SUCCESS_MESSAGE",
    "ReconcileErrorCodes",
]
