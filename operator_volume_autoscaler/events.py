"""Kubernetes Events attached to a VolumeAutoscaler, so `kubectl describe` shows what happened."""

import logging
import random

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from .quantity import now

logger = logging.getLogger(__name__)

COMPONENT = 'volume-autoscaler'

NORMAL = 'Normal'
WARNING = 'Warning'

REASON_EXPANDED = 'Expanded'
REASON_EXPAND_FAILED = 'ExpandFailed'
REASON_MAX_SIZE_REACHED = 'MaxSizeReached'
REASON_STORAGE_CLASS_NOT_EXPANDABLE = 'StorageClassNotExpandable'
REASON_VOLUME_UNHEALTHY = 'VolumeUnhealthy'


class EventRecorder:
    def __init__(self, v1, request_timeout=None):
        self.v1 = v1
        self.request_timeout = request_timeout

    def normal(self, policy, reason, message):
        self.record(policy, NORMAL, reason, message)

    def warning(self, policy, reason, message):
        self.record(policy, WARNING, reason, message)

    def record(self, policy, event_type, reason, message):
        """Create an Event on the policy. Failing to record one is logged, never raised."""
        logger.debug(f"Recording {event_type} event {reason} on VolumeAutoscaler {policy}: {message}")
        timestamp = now()
        involved = policy.involved_object()
        body = client.CoreV1Event(
            metadata = client.V1ObjectMeta(
                namespace = policy.namespace,
                name      = f"{policy.name}.{''.join(random.choice('0123456789abcdef') for _ in range(16))}",
            ),
            involved_object = client.V1ObjectReference(
                api_version = involved['apiVersion'],
                kind        = involved['kind'],
                name        = involved['name'],
                namespace   = involved['namespace'],
                uid         = involved['uid'],
            ),
            reason          = reason,
            message         = message,
            type            = event_type,
            source          = client.V1EventSource(component=COMPONENT),
            first_timestamp = timestamp,
            last_timestamp  = timestamp,
            count           = 1,
        )
        try:
            self.v1.create_namespaced_event(namespace=policy.namespace, body=body, _request_timeout=self.request_timeout)
        except ApiException as e:
            logger.error(f"Failed to record event {reason} on VolumeAutoscaler {policy}: {e.reason}")
        except HTTPError as e:
            logger.error(f"Failed to record event {reason} on VolumeAutoscaler {policy}: {e}")
