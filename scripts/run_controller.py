#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from google.cloud import storage

from jfr_reconciler.config import ReconcilerConfig, configure_logging
from jfr_reconciler.controller import Controller
from jfr_reconciler.models import RequestKey
from jfr_reconciler.reconciler import build_reconciler


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the Recording reconciler against a GCS resource bucket."
    )
    parser.add_argument(
        "--config",
        type=str,
        default="",
        help="Optional YAML config. Environment variables are used when omitted.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Reconcile every Recording once, print the results and exit.",
    )
    parser.add_argument(
        "--key",
        type=str,
        default="",
        help="Reconcile a single Recording (namespace/name) once and exit.",
    )
    parser.add_argument(
        "--delete",
        type=str,
        default="",
        help="Mark a Recording (namespace/name) for deletion and exit.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Worker threads. Overrides the config value when set.",
    )
    return parser.parse_args()


def _load_config(args: argparse.Namespace) -> ReconcilerConfig:
    cfg = ReconcilerConfig.from_yaml(args.config) if args.config else ReconcilerConfig.from_env()
    if args.workers > 0:
        cfg.workers = args.workers
    return cfg


def main() -> None:
    args = parse_args()
    cfg = _load_config(args)
    configure_logging(cfg.log_level)

    bucket = storage.Client(project=cfg.project or None).bucket(cfg.bucket)
    reconciler = build_reconciler(cfg, bucket)

    if args.delete:
        key = RequestKey.parse(args.delete)
        if not reconciler.store.request_deletion(key):
            raise SystemExit(f"Recording not found: {key}")
        print(f"deletion requested: {key}")
        return

    if args.key:
        key = RequestKey.parse(args.key)
        result = reconciler.reconcile(key)
        phase = result.phase.value if result.phase else None
        print(json.dumps({str(key): {"phase": phase, "requeue_after": result.requeue_after}}, indent=2))
        return

    controller = Controller(reconciler, reconciler.store, workers=cfg.workers, resync_sec=cfg.resync_sec)
    if args.once:
        print(json.dumps(controller.run_once(), indent=2, sort_keys=True))
        return
    controller.run_forever()


if __name__ == "__main__":
    main()
