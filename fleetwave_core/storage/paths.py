from __future__ import annotations

from pathlib import Path
from typing import Iterable
from urllib.parse import urlparse


def _strip_slashes(value: str) -> str:
    return value.strip("/")


def _join_parts(parts: Iterable[str]) -> str:
    return "/".join(_strip_slashes(part) for part in parts if part)


def has_uri_scheme(value: str) -> bool:
    return bool(urlparse(value).scheme)


def join_uri(base_uri: str, *parts: str) -> str:
    parsed = urlparse(base_uri)
    if parsed.scheme == "file":
        safe_parts = [_strip_slashes(part) for part in parts if part]
        return str(Path(parsed.path).joinpath(*safe_parts))
    if parsed.scheme and parsed.netloc:
        base = base_uri.rstrip("/")
        return f"{base}/{_join_parts(parts)}"
    if parsed.scheme:
        # memory:// and similar schemes without a netloc
        return f"{base_uri.rstrip('/')}/{_join_parts(parts)}"
    safe_parts = [_strip_slashes(part) for part in parts if part]
    return str(Path(base_uri).joinpath(*safe_parts))


def devices_uri(base_uri: str) -> str:
    return join_uri(base_uri, "control", "devices.json")


def deployments_uri(base_uri: str) -> str:
    return join_uri(base_uri, "control", "deployments.json")


def catchup_uri(base_uri: str) -> str:
    return join_uri(base_uri, "control", "catchup.json")


def audit_log_uri(base_uri: str) -> str:
    return join_uri(base_uri, "audit", "events.jsonl")
