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
Health, readiness and metrics endpoints.

The app is created with the readiness probe and the metrics collector it
reports on; both are kept on ``app.state``.
"""

from typing import Callable, Optional

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse

from apisix_ingress.metrics import MetricsCollector

router = APIRouter(tags=["Health"])


@router.get("/healthz")
def healthz():
    """Liveness: the process is serving requests."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request):
    """Readiness: every watch cache finished its initial list."""
    if request.app.state.is_ready():
        return {"status": "ready"}
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "syncing"},
    )


@router.get("/metrics")
def metrics(request: Request):
    return request.app.state.metrics.snapshot()


def create_app(
    is_ready: Callable[[], bool],
    metrics_collector: Optional[MetricsCollector] = None,
) -> FastAPI:
    app = FastAPI(title="APISIX ingress reconciler", docs_url=None, redoc_url=None)
    app.state.is_ready = is_ready
    app.state.metrics = metrics_collector or MetricsCollector()
    app.include_router(router)
    return app


__all__ = ["create_app", "router"]
