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
Parsing and transformation helpers shared by the translators.

Kubernetes hands over durations as Go duration strings, secret payloads as
base64 and ports as int-or-string; these helpers turn them into the plain
values APISIX expects.
"""

from __future__ import annotations

import base64
import binascii
import ipaddress
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Union

from apisix_ingress.apisix.models import SCHEME_GRPCS, SCHEME_HTTPS

logger = logging.getLogger(__name__)

DURATION_PART_PATTERN = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
DURATION_UNITS: Dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """
    Convert a Go duration string (e.g., 1m30s, 500ms) to seconds.

    Bare numbers are taken as seconds. Returns None for a missing value and
    raises ValueError when the string cannot be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip()
    sign = 1.0
    if text[:1] in ("+", "-"):
        if text[0] == "-":
            sign = -1.0
        text = text[1:]
    if text == "0":
        return 0.0
    total = 0.0
    pos = 0
    for match in DURATION_PART_PATTERN.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return sign * total


def insert_key_in_map(key: str, value: Any, target: Dict[str, Any]) -> None:
    """Set ``value`` under a dotted ``key`` (a.b.c), creating nested maps."""
    parts = key.split(".")
    current = target
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def decode_secret_data(secret: Dict[str, Any]) -> Dict[str, str]:
    """Return the decoded payload of a Secret; ``stringData`` wins over ``data``."""
    result: Dict[str, str] = {}
    for key, raw in (secret.get("data") or {}).items():
        if raw is None:
            continue
        try:
            result[key] = base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("Secret key '%s' is not valid base64; using the raw value.", key)
            result[key] = str(raw)
    for key, raw in (secret.get("stringData") or {}).items():
        result[key] = raw
    return result


def validate_remote_addrs(addrs: Optional[Iterable[str]]) -> None:
    """Every entry must be an IP address or a CIDR block."""
    for addr in addrs or []:
        try:
            if "/" in addr:
                ipaddress.ip_network(addr, strict=False)
            else:
                ipaddress.ip_address(addr)
        except ValueError as exc:
            raise ValueError(f"invalid ip address {addr}") from exc


def is_subset_of(labels: Optional[Dict[str, str]], other: Optional[Dict[str, str]]) -> bool:
    """True when every label in ``labels`` is present with the same value in ``other``."""
    other = other or {}
    return all(other.get(k) == v for k, v in (labels or {}).items())


def scheme_to_port(scheme: Optional[str]) -> int:
    if scheme in (SCHEME_HTTPS, SCHEME_GRPCS):
        return 443
    return 80


def find_service_port(service: Dict[str, Any], port: Union[int, str, None]) -> Optional[Dict[str, Any]]:
    """Find a Service port by number (int) or by name (str)."""
    ports: List[Dict[str, Any]] = (service.get("spec") or {}).get("ports") or []
    if isinstance(port, str):
        return next((p for p in ports if p.get("name") == port), None)
    return next((p for p in ports if p.get("port") == port), None)


__all__ = [
    "parse_duration",
    "insert_key_in_map",
    "decode_secret_data",
    "validate_remote_addrs",
    "is_subset_of",
    "scheme_to_port",
    "find_service_port",
]
