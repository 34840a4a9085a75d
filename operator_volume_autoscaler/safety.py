"""
Checks that must all pass before a PVC is expanded.

They run in a fixed order and stop at the first failure:
  1. the PVC isn't already being resized
  2. the PVC is out of its cooldown since the last expansion
  3. the PVC is below the policy's maxSize
  4. the PVC's StorageClass allows volume expansion

A failed check is a normal outcome, not an error: the PVC is simply left
alone until the next poll.
"""

import logging

from dateutil.parser import isoparse
from kubernetes.client.exceptions import ApiException

from . import events
from .quantity import format_quantity

logger = logging.getLogger(__name__)

RESIZE_CONDITIONS = ('Resizing', 'FileSystemResizePending')


class SafetyCheckFailed(Exception):
    """Raised with a human readable reason when a PVC must not be expanded right now."""


def check_can_expand(policy, pvc, pvc_status, current_bytes, max_bytes, storagev1, recorder, moment,
                     request_timeout=None):
    check_not_resizing(pvc)
    check_cooldown(pvc_status, policy.cooldown, moment)
    check_below_max_size(policy, pvc, current_bytes, max_bytes, recorder)
    check_storage_class(policy, pvc, storagev1, recorder, request_timeout)


def check_not_resizing(pvc):
    for condition in (pvc.status and pvc.status.conditions) or []:
        if condition.type in RESIZE_CONDITIONS and condition.status == 'True':
            raise SafetyCheckFailed(f"PVC is already being resized (condition: {condition.type})")


def check_cooldown(pvc_status, cooldown, moment):
    last_scale_time = pvc_status.get('lastScaleTime')
    if not last_scale_time:
        return
    try:
        last_scaled = isoparse(last_scale_time)
    except ValueError:
        logger.warning(f"Ignoring unreadable lastScaleTime {last_scale_time!r}, treating the PVC as never scaled")
        return
    elapsed = (moment - last_scaled).total_seconds()
    if elapsed < cooldown:
        raise SafetyCheckFailed(f"cooldown not elapsed ({round(cooldown - elapsed)}s remaining)")


def check_below_max_size(policy, pvc, current_bytes, max_bytes, recorder):
    if current_bytes >= max_bytes:
        max_size = policy.spec.get('maxSize') or format_quantity(max_bytes)
        recorder.warning(policy, events.REASON_MAX_SIZE_REACHED,
                         f"PVC {pvc.metadata.namespace}/{pvc.metadata.name} has reached maxSize {max_size}")
        raise SafetyCheckFailed(f"PVC already at maxSize {max_size}")


def check_storage_class(policy, pvc, storagev1, recorder, request_timeout=None):
    # PVCs bound without a StorageClass have nothing to look up
    storage_class_name = pvc.spec.storage_class_name
    if not storage_class_name:
        return
    try:
        storage_class = storagev1.read_storage_class(name=storage_class_name, _request_timeout=request_timeout)
    except ApiException as e:
        raise SafetyCheckFailed(f"failed to get StorageClass {storage_class_name}: {e.reason}") from e
    if not storage_class.allow_volume_expansion:
        recorder.warning(policy, events.REASON_STORAGE_CLASS_NOT_EXPANDABLE,
                         f"StorageClass {storage_class_name} does not allow volume expansion")
        raise SafetyCheckFailed(f"StorageClass {storage_class_name} does not allow volume expansion")
