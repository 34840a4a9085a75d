from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import MaxRetryError
from unittest.mock import MagicMock

from operator_volume_autoscaler.events import EventRecorder
from operator_volume_autoscaler.policy import Policy

from .conftest import make_policy


def test_record_attaches_event_to_policy():
  v1 = MagicMock()
  recorder = EventRecorder(v1)
  recorder.warning(Policy(make_policy(name='db', namespace='data')), 'MaxSizeReached', 'PVC data/db-0 has reached maxSize 50Gi')

  kwargs = v1.create_namespaced_event.call_args.kwargs
  assert kwargs['namespace'] == 'data'
  event = kwargs['body']
  assert event.type == 'Warning'
  assert event.reason == 'MaxSizeReached'
  assert event.involved_object.kind == 'VolumeAutoscaler'
  assert event.involved_object.name == 'db'
  assert event.involved_object.uid == 'some-uid'
  assert event.metadata.name.startswith('db.')
  assert event.source.component == 'volume-autoscaler'

def test_normal_event():
  v1 = MagicMock()
  EventRecorder(v1).normal(Policy(make_policy()), 'Expanded', 'Expanded PVC')
  assert v1.create_namespaced_event.call_args.kwargs['body'].type == 'Normal'

def test_record_failure_is_swallowed():
  v1 = MagicMock()
  v1.create_namespaced_event.side_effect = ApiException(status=403, reason='Forbidden')
  EventRecorder(v1).normal(Policy(make_policy()), 'Expanded', 'Expanded PVC')
  v1.create_namespaced_event.assert_called_once()

def test_transport_failure_is_swallowed():
  v1 = MagicMock()
  v1.create_namespaced_event.side_effect = MaxRetryError(None, '/api/v1/namespaces/default/events', 'connection refused')
  EventRecorder(v1).normal(Policy(make_policy()), 'Expanded', 'Expanded PVC')
  v1.create_namespaced_event.assert_called_once()

def test_request_timeout_is_passed():
  v1 = MagicMock()
  EventRecorder(v1, request_timeout=15).normal(Policy(make_policy()), 'Expanded', 'Expanded PVC')
  assert v1.create_namespaced_event.call_args.kwargs['_request_timeout'] == 15
