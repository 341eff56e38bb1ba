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

import textwrap

import pytest

from apisix_ingress import config as config_module
from apisix_ingress.config import AppConfig, ApisixConfig, ControllerConfig, KubernetesConfig


def _reset_config(monkeypatch):
    monkeypatch.setattr(config_module, "_config", None, raising=False)
    monkeypatch.setattr(config_module, "_config_path", None, raising=False)


def test_load_config_from_file(tmp_path, monkeypatch):
    _reset_config(monkeypatch)
    toml = textwrap.dedent(
        """
        [server]
        port = 9090
        log_level = "DEBUG"

        [kubernetes]
        watch_namespaces = ["apps", "infra"]
        ingress_class = "apisix-and-all"
        resync_interval = 600
        watch_endpoint_slices = true

        [apisix]
        default_cluster_base_url = "http://apisix-admin:9180/apisix/admin"
        default_cluster_admin_key = "edd1c9f034335f136f87ad84b625c8f1"

        [controller]
        workers = 4
        """
    )
    config_path = tmp_path / "config.toml"
    config_path.write_text(toml)

    loaded = config_module.load_config(config_path)
    assert loaded.server.port == 9090
    assert loaded.server.log_level == "DEBUG"
    assert loaded.kubernetes.watch_namespaces == ["apps", "infra"]
    assert loaded.kubernetes.ingress_class == "apisix-and-all"
    assert loaded.kubernetes.resync_interval == 600
    assert loaded.kubernetes.watch_endpoint_slices is True
    assert loaded.apisix.default_cluster_name == "default"
    assert loaded.apisix.default_cluster_admin_key == "edd1c9f034335f136f87ad84b625c8f1"
    assert loaded.controller.workers == 4
    assert loaded.controller.rate_limit_fast == 1.0
    assert loaded.controller.rate_limit_slow == 60.0
    assert config_module.get_config() is loaded
    assert config_module.get_config_path() == config_path


def test_load_config_uses_env_path(tmp_path, monkeypatch):
    _reset_config(monkeypatch)
    config_path = tmp_path / "from-env.toml"
    config_path.write_text('[kubernetes]\ningress_class = "internal"\n')
    monkeypatch.setenv(config_module.CONFIG_ENV_VAR, str(config_path))

    loaded = config_module.load_config()
    assert loaded.kubernetes.ingress_class == "internal"


def test_missing_file_falls_back_to_defaults(tmp_path, monkeypatch):
    _reset_config(monkeypatch)
    loaded = config_module.load_config(tmp_path / "absent.toml")
    assert loaded == AppConfig()
    assert loaded.kubernetes.api_version == "apisix.apache.org/v2"
    assert loaded.kubernetes.resync_interval == 6 * 60 * 60


def test_invalid_file_content_is_reported(tmp_path, monkeypatch):
    _reset_config(monkeypatch)
    config_path = tmp_path / "config.toml"
    config_path.write_text('[kubernetes]\napi_version = "apisix.apache.org/v1"\n')
    with pytest.raises(ValueError, match="Invalid configuration"):
        config_module.load_config(config_path)


def test_resync_interval_has_a_floor():
    with pytest.raises(ValueError):
        KubernetesConfig(resync_interval=30)
    assert KubernetesConfig(resync_interval=60).resync_interval == 60


def test_admin_base_url_required():
    with pytest.raises(ValueError):
        ApisixConfig(default_cluster_base_url="  ")
    with pytest.raises(ValueError):
        ApisixConfig(default_cluster_name="")


def test_slow_retry_not_faster_than_fast_retry():
    with pytest.raises(ValueError):
        ControllerConfig(rate_limit_fast=10, rate_limit_slow=5)
