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

"""Watch caches, translator and controller context wired to the fake gateway."""

from typing import Dict

import pytest

from apisix_ingress.config import AppConfig
from apisix_ingress.controllers.context import (
    KIND_ENDPOINT_SLICE,
    KIND_ENDPOINTS,
    KIND_POD,
    KIND_SECRET,
    KIND_SERVICE,
    ControllerContext,
)
from apisix_ingress.kube.endpoints import EndpointLister
from apisix_ingress.kube.status import StatusRecorder
from apisix_ingress.kube.store import (
    POD_IP_INDEX,
    SERVICE_INDEX,
    ObjectStore,
    endpoint_slice_service_index,
    pod_ip_index,
)
from apisix_ingress.kube.versioned import KIND_UPSTREAM, RESOURCE_PLURALS
from apisix_ingress.translation.translator import Translator


@pytest.fixture
def stores() -> Dict[str, ObjectStore]:
    result = {
        KIND_SERVICE: ObjectStore(KIND_SERVICE),
        KIND_SECRET: ObjectStore(KIND_SECRET),
        KIND_POD: ObjectStore(KIND_POD, {POD_IP_INDEX: pod_ip_index}),
        KIND_ENDPOINTS: ObjectStore(KIND_ENDPOINTS),
        KIND_ENDPOINT_SLICE: ObjectStore(KIND_ENDPOINT_SLICE, {SERVICE_INDEX: endpoint_slice_service_index}),
    }
    for kind in RESOURCE_PLURALS:
        result[kind] = ObjectStore(kind)
    return result


@pytest.fixture
def endpoint_lister(stores):
    return EndpointLister(endpoints=stores[KIND_ENDPOINTS])


@pytest.fixture
def translator(stores, endpoint_lister, admin):
    return Translator(
        services=stores[KIND_SERVICE],
        secrets=stores[KIND_SECRET],
        pods=stores[KIND_POD],
        endpoints=endpoint_lister,
        apisix_upstreams=stores[KIND_UPSTREAM],
        admin=admin,
    )


@pytest.fixture
def app_config():
    return AppConfig()


@pytest.fixture
def ctx(app_config, stores, endpoint_lister, translator, admin):
    return ControllerContext(
        config=app_config,
        stores=stores,
        endpoints=endpoint_lister,
        translator=translator,
        admin=admin,
        status=StatusRecorder(None),
    )


class FakeCustomObjectsApi:
    """Records status writes instead of talking to an API server."""

    def __init__(self):
        self.calls = []

    def replace_namespaced_custom_object_status(self, group, version, namespace, plural, name, body):
        self.calls.append((group, version, namespace, plural, name, body))
        return body

    def replace_cluster_custom_object_status(self, group, version, plural, name, body):
        self.calls.append((group, version, "", plural, name, body))
        return body


def drain(controller, queue=None):
    """Process every event currently queued; return them in order."""
    queue = queue or controller.queue
    processed = []
    while True:
        event, _ = queue.get(timeout=0.01)
        if event is None:
            return processed
        controller.process(event)
        processed.append(event)
