from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, Dict

import yaml

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


def load_yaml(path: str | Path) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def dump_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, sort_keys=True)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def format_iso(dt: datetime.datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(datetime.timezone.utc).strftime(ISO_FORMAT)


def parse_iso(s: str | None) -> datetime.datetime | None:
    """Parse an ISO8601 UTC timestamp to an aware datetime."""
    if not s:
        return None
    for fmt in (ISO_FORMAT, "%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S"):
        try:
            return datetime.datetime.strptime(s, fmt).replace(tzinfo=datetime.timezone.utc)
        except ValueError:
            continue
    raise ValueError(f"Cannot parse timestamp: {s}")


def from_epoch_millis(millis: int) -> datetime.datetime:
    return _EPOCH + datetime.timedelta(milliseconds=millis)
