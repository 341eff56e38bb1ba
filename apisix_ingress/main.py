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

"""Process entry point: load configuration, start the provider, serve health."""

import argparse
import logging
from typing import List, Optional

import uvicorn

from apisix_ingress.api.health import create_app
from apisix_ingress.config import load_config
from apisix_ingress.controllers.provider import Provider

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="apisix-ingress",
        description="Reconcile Kubernetes ingress resources into Apache APISIX.",
    )
    parser.add_argument("--config", help="Path to the TOML configuration file.")
    parser.add_argument("--log-level", help="Override server.log_level.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    config = load_config(args.config)
    level = (args.log_level or config.server.log_level).upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)

    provider = Provider(config)
    provider.start()
    app = create_app(provider.has_synced, provider.metrics)
    try:
        uvicorn.run(
            app,
            host=config.server.host,
            port=config.server.port,
            log_level=level.lower(),
        )
    finally:
        provider.stop()


__all__ = ["main", "parse_args"]


if __name__ == "__main__":
    main()
