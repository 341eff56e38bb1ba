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
Configuration loading for the APISIX ingress reconciler.

Settings are read from a TOML file (``~/.apisix-ingress/config.toml`` by
default, or the path in ``APISIX_INGRESS_CONFIG_PATH``) and validated with
pydantic. The loaded ``AppConfig`` is handed to the controller context once at
startup; nothing below the bootstrap reads the module globals.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "APISIX_INGRESS_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path.home() / ".apisix-ingress" / "config.toml"

INGRESS_CLASS_APISIX = "apisix"
INGRESS_CLASS_APISIX_AND_ALL = "apisix-and-all"

INGRESS_NETWORKING_V1 = "networking/v1"
INGRESS_NETWORKING_V1BETA1 = "networking/v1beta1"
INGRESS_EXTENSIONS_V1BETA1 = "extensions/v1beta1"

APISIX_V2 = "apisix.apache.org/v2"
APISIX_V2BETA3 = "apisix.apache.org/v2beta3"

MIN_RESYNC_INTERVAL_SECONDS = 60


class ServerConfig(BaseModel):
    """Health/metrics HTTP server settings."""

    host: str = Field(default="0.0.0.0", description="Interface the health server binds to.")
    port: int = Field(default=8080, ge=1, le=65535, description="Port the health server listens on.")
    log_level: str = Field(default="INFO", description="Root logger level.")


class KubernetesConfig(BaseModel):
    """Cluster side settings: what to watch and how."""

    kubeconfig: Optional[str] = Field(
        default=None,
        description="Path to a kubeconfig file. In-cluster configuration is used when unset.",
    )
    watch_namespaces: List[str] = Field(
        default_factory=list,
        description="Namespaces to watch. Empty means every namespace.",
    )
    ingress_class: str = Field(
        default=INGRESS_CLASS_APISIX,
        description="Ingress class handled by this instance.",
    )
    ingress_version: Literal["networking/v1", "networking/v1beta1", "extensions/v1beta1"] = Field(
        default=INGRESS_NETWORKING_V1,
        description="Group version used to watch native Ingress objects.",
    )
    api_version: Literal["apisix.apache.org/v2", "apisix.apache.org/v2beta3"] = Field(
        default=APISIX_V2,
        description="Group version used to watch APISIX custom resources.",
    )
    resync_interval: int = Field(
        default=6 * 60 * 60,
        description="Seconds between two full resync passes.",
    )
    watch_endpoint_slices: bool = Field(
        default=False,
        description="Resolve endpoints from EndpointSlices instead of Endpoints.",
    )
    disable_status_updates: bool = Field(
        default=False,
        description="Skip writing status conditions back to custom resources.",
    )
    watch_timeout_seconds: int = Field(default=60, ge=1)

    @model_validator(mode="after")
    def validate_resync_interval(self) -> "KubernetesConfig":
        if self.resync_interval < MIN_RESYNC_INTERVAL_SECONDS:
            raise ValueError(
                f"kubernetes.resync_interval must be at least {MIN_RESYNC_INTERVAL_SECONDS} seconds."
            )
        return self


class ApisixConfig(BaseModel):
    """Admin API settings of the default gateway cluster."""

    default_cluster_name: str = Field(default="default")
    default_cluster_base_url: str = Field(
        default="http://127.0.0.1:9180/apisix/admin",
        description="Base URL of the APISIX Admin API.",
    )
    default_cluster_admin_key: Optional[str] = Field(default=None)
    admin_api_timeout: float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def validate_base_url(self) -> "ApisixConfig":
        if not self.default_cluster_base_url.strip():
            raise ValueError("apisix.default_cluster_base_url must not be empty.")
        if not self.default_cluster_name.strip():
            raise ValueError("apisix.default_cluster_name must not be empty.")
        return self


class ControllerConfig(BaseModel):
    """Workqueue and worker tuning."""

    workers: int = Field(default=1, ge=1)
    status_workers: int = Field(default=2, ge=1)
    rate_limit_fast: float = Field(default=1.0, gt=0, description="Fast retry delay in seconds.")
    rate_limit_slow: float = Field(default=60.0, gt=0, description="Slow retry delay in seconds.")
    rate_limit_max_fast_attempts: int = Field(default=5, ge=0)

    @model_validator(mode="after")
    def validate_rate_limits(self) -> "ControllerConfig":
        if self.rate_limit_slow < self.rate_limit_fast:
            raise ValueError("controller.rate_limit_slow must not be lower than rate_limit_fast.")
        return self


class AppConfig(BaseModel):
    """Top level configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    apisix: ApisixConfig = Field(default_factory=ApisixConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)


_config: Optional[AppConfig] = None
_config_path: Optional[Path] = None


def _resolve_config_path(path: Optional[str | Path] = None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def _load_toml_data(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.info("Config file %s not found; using defaults.", path)
        return {}
    with path.open("rb") as fh:
        return tomllib.load(fh)


def load_config(path: Optional[str | Path] = None) -> AppConfig:
    """
    Load configuration from a TOML file and cache it module wide.

    Args:
        path: Optional explicit path; falls back to the environment variable
            and then to the default location.

    Returns:
        AppConfig: validated configuration

    Raises:
        ValueError: when the file content does not validate
    """
    global _config, _config_path

    resolved = _resolve_config_path(path)
    data = _load_toml_data(resolved)
    try:
        config = AppConfig(**data)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration in {resolved}: {exc}") from exc

    _config = config
    _config_path = resolved
    logger.info("Loaded configuration from %s", resolved)
    return config


def get_config() -> AppConfig:
    """Return the cached configuration, loading it on first use."""
    if _config is None:
        return load_config(_config_path)
    return _config


def get_config_path() -> Optional[Path]:
    return _config_path


__all__ = [
    "AppConfig",
    "ServerConfig",
    "KubernetesConfig",
    "ApisixConfig",
    "ControllerConfig",
    "APISIX_V2",
    "APISIX_V2BETA3",
    "INGRESS_CLASS_APISIX",
    "INGRESS_CLASS_APISIX_AND_ALL",
    "INGRESS_NETWORKING_V1",
    "INGRESS_NETWORKING_V1BETA1",
    "INGRESS_EXTENSIONS_V1BETA1",
    "load_config",
    "get_config",
    "get_config_path",
]
