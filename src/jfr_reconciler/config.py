from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from jfr_reconciler.finalizer import DEFAULT_FINALIZER
from jfr_reconciler.utils import load_yaml

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


@dataclass
class ReconcilerConfig:
    bucket: str = "jfr-recordings"
    project: str = ""
    finalizer: str = DEFAULT_FINALIZER
    target_ready_requeue_sec: float = 1.0
    active_poll_requeue_sec: float = 10.0
    http_timeout_sec: float = 10.0
    auth_token: Optional[str] = None
    workers: int = 4
    resync_sec: float = 60.0
    max_state_validation_failures: int = 5
    discord_webhook_url: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "ReconcilerConfig":
        """Build from lower-case field names, converting to the field's type."""
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(values) - set(known))
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        defaults = cls()
        kwargs: Dict[str, Any] = {}
        for name, raw in values.items():
            if raw is None or raw == "":
                continue
            default = getattr(defaults, name)
            if isinstance(default, bool):
                kwargs[name] = str(raw).lower() == "true"
            elif isinstance(default, int):
                kwargs[name] = int(raw)
            elif isinstance(default, float):
                kwargs[name] = float(raw)
            else:
                kwargs[name] = str(raw)
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ReconcilerConfig":
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            env_name = f.name.upper()
            if env_name in environ:
                values[f.name] = environ[env_name]
        return cls.from_mapping(values)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ReconcilerConfig":
        return cls.from_mapping(load_yaml(path))


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
