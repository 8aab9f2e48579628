"""Resolves a Recording's FlightRecorder reference down to a network endpoint."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Tuple

from google.api_core.exceptions import NotFound
from google.cloud import compute_v1

from jfr_reconciler.errors import TargetServiceNotFoundError
from jfr_reconciler.models import Endpoint, FlightRecorder, Recording, Service

logger = logging.getLogger("reconciler.resolver")

_compute_client = None


def _get_compute_client():
    global _compute_client
    if _compute_client is None:
        _compute_client = compute_v1.InstancesClient()
    return _compute_client


def make_instance_checker(project: str) -> Callable[[str, str], bool]:
    """Build a Compute Engine existence check bound to ``project``."""

    def vm_exists(instance_name: str, zone: str) -> bool:
        try:
            _get_compute_client().get(project=project, zone=zone, instance=instance_name)
            return True
        except NotFound:
            return False
        except Exception as e:
            logger.warning(f"VM existence check failed for {instance_name}: {e}")
            return True  # Fail-safe: assume exists if check fails

    return vm_exists


class TargetResolver:
    def __init__(self, store, instance_checker: Callable[[str, str], bool]):
        self.store = store
        self.instance_checker = instance_checker

    def flight_recorder_for(self, recording: Recording) -> Optional[FlightRecorder]:
        """The referenced FlightRecorder, or None if unset or missing."""
        ref = recording.spec.flight_recorder
        if not ref:
            logger.info(f"[{recording.key}] FlightRecorder reference missing from Recording")
            return None
        jfr = self.store.get_flight_recorder(recording.namespace, ref)
        if jfr is None:
            logger.info(f"[{recording.key}] FlightRecorder {ref} referenced from Recording not found")
        return jfr

    def endpoint_for(self, jfr: FlightRecorder) -> Tuple[Service, Endpoint]:
        """Service and endpoint behind a FlightRecorder whose target is known."""
        target = jfr.target
        if target is None:
            raise ValueError(f"FlightRecorder {jfr.namespace}/{jfr.name} has no target yet")
        svc = self.store.get_service(target.namespace, target.name)
        if svc is None:
            raise TargetServiceNotFoundError(
                f"Service {target.namespace}/{target.name} for FlightRecorder {jfr.name} not found"
            )
        return svc, Endpoint(address=svc.cluster_ip, port=jfr.port)

    def live_instances(self, svc: Service) -> int:
        return sum(1 for e in svc.endpoints if self.instance_checker(e.instance, e.zone))
