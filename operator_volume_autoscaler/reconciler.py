"""
One reconcile pass over one VolumeAutoscaler.

Fetch the policy, resolve its PVCs, then for each PVC independently: read
usage from Prometheus, compare against the threshold, run the safety checks,
and patch the PVC to its new size. Failures are isolated per PVC; one PVC
failing never stops the others from being evaluated, and the status write at
the end always covers the whole pass.

reconcile() returns how many seconds to wait before polling this policy
again, which is how the polling cadence is driven.
"""

import logging
import time

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from . import events
from .growth import calculate_new_size
from .metrics import (
    POLL_ERROR_PATCH,
    POLL_ERROR_QUERY,
    POLL_ERROR_RESOLVE,
    POLL_ERRORS_TOTAL,
    PVC_USAGE_PERCENT,
    RECONCILE_DURATION_SECONDS,
    SCALE_EVENTS_TOTAL,
)
from .policy import (
    CONDITION_READY,
    DEFAULT_METRICS_URL,
    GROUP,
    PLURAL,
    REASON_INVALID_SPEC,
    REASON_METRICS_UNAVAILABLE,
    REASON_NO_VOLUMES,
    REASON_POLLING,
    VERSION,
    Policy,
    PolicyError,
)
from .prometheus import PrometheusError
from .quantity import format_quantity, format_time, now, quantity_to_bytes
from .resolver import ResolutionError, resolve_pvcs
from .safety import SafetyCheckFailed, check_can_expand

logger = logging.getLogger(__name__)

ERROR_REQUEUE_SECONDS = 30.0

USED_BYTES = 'kubelet_volume_stats_used_bytes'
CAPACITY_BYTES = 'kubelet_volume_stats_capacity_bytes'
HEALTH_ABNORMAL = 'kubelet_volume_stats_health_abnormal'
INODES_USED = 'kubelet_volume_stats_inodes_used'
INODES_TOTAL = 'kubelet_volume_stats_inodes'


class ReconcileTimeoutError(Exception):
    """The reconcile ran past its deadline and was abandoned part way through."""


def volume_query(metric, pvc):
    return f'{metric}{{namespace="{pvc.metadata.namespace}",persistentvolumeclaim="{pvc.metadata.name}"}}'


def percent(part, whole):
    # Rounds half away from zero, so 79.5% counts as 80%
    return int(part / whole * 100 + 0.5)


def pvc_current_bytes(pvc):
    """Return the PVC's provisioned size, falling back to its request before it is bound."""
    capacity = (pvc.status and pvc.status.capacity) or {}
    size = capacity.get('storage')
    if size is None:
        size = ((pvc.spec.resources and pvc.spec.resources.requests) or {}).get('storage', '0')
    return quantity_to_bytes(size)


class Reconciler:
    def __init__(self, custom_api, v1, storagev1, prometheus_clients, recorder=None,
                 default_metrics_url=DEFAULT_METRICS_URL, error_requeue=ERROR_REQUEUE_SECONDS,
                 request_timeout=None, clock=now):
        self.custom_api = custom_api
        self.v1 = v1
        self.storagev1 = storagev1
        self.prometheus_clients = prometheus_clients
        self.recorder = recorder or events.EventRecorder(v1, request_timeout)
        self.default_metrics_url = default_metrics_url
        self.error_requeue = error_requeue
        self.request_timeout = request_timeout
        self.clock = clock

    def reconcile(self, namespace, name, deadline=None):
        """Run one pass for the policy namespace/name.

        Returns the requeue delay in seconds, or None if the policy no longer
        exists. Raises ReconcileTimeoutError if deadline (a time.monotonic()
        value) passes mid-pass.
        """
        with RECONCILE_DURATION_SECONDS.time():
            return self._reconcile(namespace, name, deadline)

    def _reconcile(self, namespace, name, deadline):
        obj = self.get_policy(namespace, name)
        if obj is None:
            logger.info(f"VolumeAutoscaler {namespace}.{name} is gone, not polling it any more")
            return None

        policy = Policy(obj, self.default_metrics_url)
        moment = self.clock()
        policy.status['observedGeneration'] = policy.generation
        logger.debug(f"Reconciling VolumeAutoscaler {policy} (generation {policy.generation})")

        try:
            max_bytes = policy.max_bytes
            increase_minimum = policy.increase_minimum_bytes
        except PolicyError as e:
            logger.error(f"VolumeAutoscaler {policy} is invalid: {e}")
            policy.set_condition(CONDITION_READY, False, REASON_INVALID_SPEC, str(e), moment)
            return self.write_status(policy)

        try:
            pvcs = resolve_pvcs(self.v1, policy, self.request_timeout)
        except ResolutionError as e:
            logger.error(f"Failed to resolve PVCs for VolumeAutoscaler {policy}: {e}")
            POLL_ERRORS_TOTAL.labels(policy.namespace, policy.name, POLL_ERROR_RESOLVE).inc()
            policy.set_condition(CONDITION_READY, False, REASON_NO_VOLUMES, str(e), moment)
            return self.write_status(policy)
        if not pvcs:
            logger.info(f"No PVCs found for VolumeAutoscaler {policy}, will retry in {policy.poll_interval}s")
            policy.set_condition(CONDITION_READY, False, REASON_NO_VOLUMES, "no matching PVCs found", moment)
            return self.write_status(policy)

        prom = self.prometheus_clients.get(policy.metrics_url)
        policy.status['lastPollTime'] = format_time(moment)

        previous = policy.previous_pvc_statuses()
        updated = {}
        all_healthy = True
        try:
            for pvc in pvcs:
                if deadline is not None and time.monotonic() >= deadline:
                    raise ReconcileTimeoutError(f"VolumeAutoscaler {policy} ran past its deadline")
                entry = self.reconcile_pvc(policy, prom, pvc, previous.get(pvc.metadata.name), max_bytes,
                                           increase_minimum, moment)
                if entry is False:
                    all_healthy = False
                elif entry is not None:
                    updated[pvc.metadata.name] = entry
        except Exception:
            # PVCs grown earlier in this pass must keep their lastScaleTime, or the retry grows them again
            policy.set_pvc_statuses(previous, updated)
            self.write_status(policy)
            raise
        policy.set_pvc_statuses(previous, updated)

        if all_healthy:
            policy.set_condition(CONDITION_READY, True, REASON_POLLING,
                                 "successfully polling volume metrics", moment)
        else:
            policy.set_condition(CONDITION_READY, False, REASON_METRICS_UNAVAILABLE,
                                 "some metrics queries failed", moment)
        return self.write_status(policy)

    def reconcile_pvc(self, policy, prom, pvc, previous_entry, max_bytes, increase_minimum, moment):
        """Evaluate and maybe expand one PVC.

        Returns its new status entry, None if it was skipped without a
        metrics failure, or False if a metrics query failed.
        """
        pvc_name = f"{pvc.metadata.namespace}.{pvc.metadata.name}"

        try:
            used_bytes = prom.query(volume_query(USED_BYTES, pvc))
            capacity_bytes = prom.query(volume_query(CAPACITY_BYTES, pvc))
        except PrometheusError as e:
            logger.error(f"Failed to query metrics for PVC {pvc_name}: {e}")
            POLL_ERRORS_TOTAL.labels(policy.namespace, policy.name, POLL_ERROR_QUERY).inc()
            return False

        if capacity_bytes <= 0:
            logger.info(f"PVC {pvc_name} reports capacity {capacity_bytes}, skipping")
            return None

        usage_percent = percent(used_bytes, capacity_bytes)
        PVC_USAGE_PERCENT.labels(pvc.metadata.namespace, pvc.metadata.name, policy.name).set(usage_percent)

        current_bytes = pvc_current_bytes(pvc)
        entry = {
            'name': pvc.metadata.name,
            'currentSize': format_quantity(current_bytes),
            'usageBytes': int(used_bytes),
            'usagePercent': usage_percent,
        }
        for field in ('lastScaleTime', 'lastScaleSize'):
            if previous_entry and previous_entry.get(field):
                entry[field] = previous_entry[field]

        if usage_percent < policy.threshold_percent:
            logger.debug(f"PVC {pvc_name} at {usage_percent}%, below threshold {policy.threshold_percent}%")
            return entry
        logger.info(f"PVC {pvc_name} at {usage_percent}% exceeds threshold {policy.threshold_percent}%")

        try:
            check_can_expand(policy, pvc, entry, current_bytes, max_bytes, self.storagev1, self.recorder,
                             moment, self.request_timeout)
        except SafetyCheckFailed as e:
            logger.info(f"Not expanding PVC {pvc_name}: {e}")
            return entry

        if self.is_unhealthy(prom, pvc):
            logger.warning(f"PVC {pvc_name} is unhealthy, skipping expansion")
            self.recorder.warning(policy, events.REASON_VOLUME_UNHEALTHY,
                                  f"PVC {pvc.metadata.namespace}/{pvc.metadata.name} is unhealthy, skipping expansion")
            return entry

        if policy.inode_threshold_percent > 0:
            self.log_inode_usage(policy, prom, pvc)

        new_bytes = calculate_new_size(current_bytes, policy.increase_percent, max_bytes, increase_minimum)
        current_size = format_quantity(current_bytes)
        # Capped sizes are written exactly as the user spelled maxSize
        new_size = policy.spec['maxSize'] if new_bytes == max_bytes else format_quantity(new_bytes)

        logger.info(f"Expanding PVC {pvc_name} from {current_size} to {new_size}")
        patch = {"spec": {"resources": {"requests": {"storage": new_size}}}}
        try:
            self.v1.patch_namespaced_persistent_volume_claim(
                namespace        = pvc.metadata.namespace,
                name             = pvc.metadata.name,
                body             = patch,
                _request_timeout = self.request_timeout
            )
        except (ApiException, HTTPError) as e:
            reason = e.reason if isinstance(e, ApiException) else str(e)
            logger.error(f"Failed to patch PVC {pvc_name}: {reason}")
            self.recorder.warning(policy, events.REASON_EXPAND_FAILED,
                                  f"Failed to expand PVC {pvc.metadata.namespace}/{pvc.metadata.name}: {reason}")
            POLL_ERRORS_TOTAL.labels(policy.namespace, policy.name, POLL_ERROR_PATCH).inc()
            return entry

        entry['lastScaleTime'] = format_time(self.clock())
        entry['lastScaleSize'] = new_size
        policy.status['totalScaleEvents'] = policy.status.get('totalScaleEvents', 0) + 1
        SCALE_EVENTS_TOTAL.labels(pvc.metadata.namespace, pvc.metadata.name, policy.name).inc()
        self.recorder.normal(policy, events.REASON_EXPANDED,
                             f"Expanded PVC {pvc.metadata.namespace}/{pvc.metadata.name} from {current_size} "
                             f"to {new_size} (usage: {usage_percent}%)")
        return entry

    def is_unhealthy(self, prom, pvc):
        # No health metric means nothing to go on, so only a positive reading counts
        try:
            return prom.query(volume_query(HEALTH_ABNORMAL, pvc)) > 0
        except PrometheusError as e:
            logger.debug(f"No health reading for PVC {pvc.metadata.namespace}.{pvc.metadata.name}: {e}")
            return False

    def log_inode_usage(self, policy, prom, pvc):
        try:
            inodes_used = prom.query(volume_query(INODES_USED, pvc))
            inodes_total = prom.query(volume_query(INODES_TOTAL, pvc))
        except PrometheusError as e:
            logger.debug(f"No inode readings for PVC {pvc.metadata.namespace}.{pvc.metadata.name}: {e}")
            return
        if inodes_total <= 0:
            return
        inode_percent = percent(inodes_used, inodes_total)
        if inode_percent >= policy.inode_threshold_percent:
            logger.info(f"PVC {pvc.metadata.namespace}.{pvc.metadata.name} inode usage {inode_percent}% "
                        f"exceeds threshold {policy.inode_threshold_percent}%")

    def get_policy(self, namespace, name):
        """Return the VolumeAutoscaler as a dict, or None if it has been deleted."""
        try:
            return self.custom_api.get_namespaced_custom_object(
                group            = GROUP,
                version          = VERSION,
                namespace        = namespace,
                plural           = PLURAL,
                name             = name,
                _request_timeout = self.request_timeout
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def write_status(self, policy):
        """Write the whole status block back and return the delay until the next poll."""
        try:
            self.custom_api.replace_namespaced_custom_object_status(
                group            = GROUP,
                version          = VERSION,
                namespace        = policy.namespace,
                plural           = PLURAL,
                name             = policy.name,
                body             = policy.obj,
                _request_timeout = self.request_timeout
            )
        except (ApiException, HTTPError) as e:
            reason = e.reason if isinstance(e, ApiException) else str(e)
            logger.error(f"Failed to update status of VolumeAutoscaler {policy}: {reason}")
            return self.error_requeue
        return policy.poll_interval
