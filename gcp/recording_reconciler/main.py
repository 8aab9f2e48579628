"""Recording Reconciler: Cloud Function front end.

Deployed as a Cloud Function (gen2) with two triggers:
  - GCS object events on the resource bucket: a write to
    namespaces/<ns>/recordings/<name>.json reconciles that Recording.
  - Cloud Scheduler (Pub/Sub, or plain HTTP): sweeps every Recording, which
    is how active recordings get polled between change events.

requeue_after values are reported in the response and logs; the scheduler
sweep is what actually brings an active recording back around.
"""

import json
import logging

import functions_framework
from google.cloud import storage

from jfr_reconciler.config import ReconcilerConfig, configure_logging
from jfr_reconciler.controller import sweep
from jfr_reconciler.models import RequestKey
from jfr_reconciler.reconciler import build_reconciler
from jfr_reconciler.store import key_from_object_name

logger = logging.getLogger("reconciler")

CONFIG = ReconcilerConfig.from_env()
configure_logging(CONFIG.log_level)

_storage_client = None
_reconciler = None


def _get_storage_client():
    global _storage_client
    if _storage_client is None:
        _storage_client = storage.Client(project=CONFIG.project or None)
    return _storage_client


def _get_reconciler():
    # Module-level so cached sessions survive between invocations on a warm instance
    global _reconciler
    if _reconciler is None:
        bucket = _get_storage_client().bucket(CONFIG.bucket)
        _reconciler = build_reconciler(CONFIG, bucket)
    return _reconciler


def reconcile_one(key):
    """Reconcile a single key. Returns a JSON-able result entry."""
    try:
        result = _get_reconciler().reconcile(key)
    except Exception as e:
        logger.error(f"Error reconciling {key}: {e}", exc_info=True)
        return {"error": str(e)}
    if result.requeue_after is not None:
        logger.info(f"[{key}] Requeue requested after {result.requeue_after:.0f}s")
    return {"requeue_after": result.requeue_after}


def reconcile_all():
    """Sweep every Recording in the bucket."""
    logger.info(f"Reconciler sweep starting (project={CONFIG.project}, bucket={CONFIG.bucket})")
    reconciler = _get_reconciler()
    keys = list(reconciler.store.list_recording_keys())
    logger.info(f"Discovered {len(keys)} recording(s)")

    results = sweep(reconciler, keys)

    errors = {k: v for k, v in results.items() if "error" in v}
    logger.info(f"Reconciliation complete. Errors: {len(errors)}")
    for key, entry in errors.items():
        logger.info(f"  {key}: {entry['error']}")
    return results


def key_from_request_json(payload):
    """A RequestKey from {"namespace": ..., "name": ...}, or None."""
    if not isinstance(payload, dict):
        return None
    namespace = payload.get("namespace")
    name = payload.get("name")
    if not namespace or not name:
        return None
    return RequestKey(namespace, name)


def key_from_event_data(data):
    """A RequestKey from a GCS object event payload, or None for other events."""
    if not isinstance(data, dict):
        return None
    return key_from_object_name(data.get("name", ""))


@functions_framework.http
def reconcile_http(request):
    """HTTP entry point. A JSON body naming one Recording reconciles just that one."""
    key = key_from_request_json(request.get_json(silent=True))
    if key is not None:
        results = {str(key): reconcile_one(key)}
    else:
        results = reconcile_all()
    return json.dumps({"status": "ok", "results": results}), 200


@functions_framework.cloud_event
def reconcile_event(cloud_event):
    """Cloud Event entry point (GCS object change, or Pub/Sub from Cloud Scheduler)."""
    key = key_from_event_data(cloud_event.data)
    if key is not None:
        reconcile_one(key)
    else:
        reconcile_all()


if __name__ == "__main__":
    reconcile_all()
