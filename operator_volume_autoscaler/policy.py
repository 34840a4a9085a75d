"""
The VolumeAutoscaler custom resource.

Policies come back from the CustomObjectsApi as plain dicts. Policy wraps one
of those dicts, applies defaults on read, and owns the status block that is
written back at the end of every reconcile.
"""

import copy
import logging

from .quantity import format_time, parse_duration, quantity_to_bytes

logger = logging.getLogger(__name__)

GROUP = 'autoscaling.volume-autoscaler.io'
VERSION = 'v1alpha1'
PLURAL = 'volumeautoscalers'
KIND = 'VolumeAutoscaler'
API_VERSION = f'{GROUP}/{VERSION}'

DEFAULT_THRESHOLD_PERCENT = 80
DEFAULT_INCREASE_PERCENT = 20
DEFAULT_POLL_INTERVAL = 60.0
DEFAULT_COOLDOWN = 300.0
DEFAULT_METRICS_URL = 'http://prometheus.monitoring.svc.cluster.local:9090'

CONDITION_READY = 'Ready'
REASON_POLLING = 'Polling'
REASON_NO_VOLUMES = 'NoVolumesFound'
REASON_METRICS_UNAVAILABLE = 'MetricsUnavailable'
REASON_INVALID_SPEC = 'InvalidSpec'


class PolicyError(Exception):
    """The policy spec can't be evaluated as written."""


class Policy:
    def __init__(self, obj, default_metrics_url=DEFAULT_METRICS_URL):
        self.obj = obj
        metadata = obj.get('metadata') or {}
        self.name = metadata.get('name')
        self.namespace = metadata.get('namespace')
        self.uid = metadata.get('uid')
        self.generation = metadata.get('generation', 0)

        spec = obj.get('spec') or {}
        self.spec = spec
        target = spec.get('target') or {}
        self.target_name = target.get('name') or None
        self.target_selector = target.get('selector') or None

        # Zero means unset for the percentage fields, same as the CRD defaults
        self.threshold_percent = spec.get('thresholdPercent') or DEFAULT_THRESHOLD_PERCENT
        self.increase_percent = spec.get('increasePercent') or DEFAULT_INCREASE_PERCENT
        self.inode_threshold_percent = spec.get('inodeThresholdPercent') or 0
        self.metrics_url = spec.get('metricsURL') or default_metrics_url

        self.poll_interval = self._duration('pollInterval', DEFAULT_POLL_INTERVAL)
        self.cooldown = self._duration('cooldownPeriod', DEFAULT_COOLDOWN)

    def __str__(self):
        return f"{self.namespace}.{self.name}"

    def _duration(self, field, default):
        value = self.spec.get(field)
        if not value:
            return default
        try:
            seconds = parse_duration(value)
        except ValueError:
            logger.warning(f"VolumeAutoscaler {self} has invalid {field} {value!r}, using {default}s")
            return default
        if seconds <= 0:
            logger.warning(f"VolumeAutoscaler {self} has non-positive {field} {value!r}, using {default}s")
            return default
        return seconds

    @property
    def max_bytes(self):
        max_size = self.spec.get('maxSize')
        if not max_size:
            raise PolicyError("maxSize is required")
        try:
            return quantity_to_bytes(max_size)
        except ValueError as e:
            raise PolicyError(f"invalid maxSize {max_size!r}") from e

    @property
    def increase_minimum_bytes(self):
        """The configured floor in bytes, or None so the default applies at evaluation time."""
        increase_minimum = self.spec.get('increaseMinimum')
        if not increase_minimum:
            return None
        try:
            return quantity_to_bytes(increase_minimum)
        except ValueError as e:
            raise PolicyError(f"invalid increaseMinimum {increase_minimum!r}") from e

    @property
    def status(self):
        status = self.obj.get('status')
        if status is None:
            status = self.obj['status'] = {}
        return status

    def involved_object(self):
        return {
            'apiVersion': API_VERSION,
            'kind': KIND,
            'name': self.name,
            'namespace': self.namespace,
            'uid': self.uid,
        }

    def previous_pvc_statuses(self):
        """Read back the per-PVC entries from the last written status, keyed by PVC name.

        These carry lastScaleTime and lastScaleSize from one reconcile to the
        next, so cooldowns survive operator restarts.
        """
        return {entry['name']: copy.deepcopy(entry) for entry in self.status.get('pvcs') or [] if entry.get('name')}

    def set_pvc_statuses(self, previous, updated):
        """Store per-PVC entries: updated ones replace previous ones in place, new ones go last.

        Entries that weren't updated this cycle are kept as they were.
        """
        pvcs = []
        for name, entry in previous.items():
            pvcs.append(updated.get(name, entry))
        for name, entry in updated.items():
            if name not in previous:
                pvcs.append(entry)
        self.status['pvcs'] = pvcs

    def get_condition(self, cond_type):
        for condition in self.status.get('conditions') or []:
            if condition.get('type') == cond_type:
                return condition
        return None

    def set_condition(self, cond_type, ready, reason, message, moment):
        """Add or update a condition. lastTransitionTime only moves when the status flips."""
        cond_status = 'True' if ready else 'False'
        conditions = self.status.setdefault('conditions', [])
        condition = self.get_condition(cond_type)
        if condition is None:
            condition = {'type': cond_type}
            conditions.append(condition)
        if condition.get('status') != cond_status or not condition.get('lastTransitionTime'):
            condition['lastTransitionTime'] = format_time(moment)
        condition['status'] = cond_status
        condition['reason'] = reason
        condition['message'] = message
        condition['observedGeneration'] = self.generation
