import copy
import re
import pytest
from datetime import datetime, timezone
from kubernetes import client
from unittest import mock

from operator_volume_autoscaler.prometheus import NoResultsError
from operator_volume_autoscaler.reconciler import Reconciler


NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


def make_pvc(name, size='10Gi', namespace='default', storage_class='expandable', conditions=None, labels=None):
  """Build a real V1PersistentVolumeClaim, bound at size."""
  return client.V1PersistentVolumeClaim(
    metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
    spec=client.V1PersistentVolumeClaimSpec(
      storage_class_name=storage_class,
      resources=client.V1VolumeResourceRequirements(requests={'storage': size}),
    ),
    status=client.V1PersistentVolumeClaimStatus(
      capacity={'storage': size},
      conditions=[client.V1PersistentVolumeClaimCondition(type=t, status=s) for t, s in (conditions or [])],
    ),
  )


def make_policy(name='some-policy', namespace='default', status=None, **spec):
  """Build a VolumeAutoscaler dict the way CustomObjectsApi returns it."""
  spec.setdefault('target', {'name': 'some-pvc'})
  spec.setdefault('maxSize', '50Gi')
  obj = {
    'apiVersion': 'autoscaling.volume-autoscaler.io/v1alpha1',
    'kind': 'VolumeAutoscaler',
    'metadata': {'name': name, 'namespace': namespace, 'uid': 'some-uid', 'generation': 1},
    'spec': spec,
  }
  if status is not None:
    obj['status'] = status
  return obj


@pytest.fixture()
def v1():
  v1 = mock.MagicMock()
  v1.read_namespaced_persistent_volume_claim.return_value = make_pvc('some-pvc')
  v1.list_namespaced_persistent_volume_claim.return_value = client.V1PersistentVolumeClaimList(items=[])
  return v1

@pytest.fixture()
def storagev1():
  storagev1 = mock.MagicMock()
  storage_class = mock.MagicMock()
  storage_class.allow_volume_expansion = True
  storagev1.read_storage_class.return_value = storage_class
  return storagev1

@pytest.fixture()
def custom_api():
  custom_api = mock.MagicMock()
  custom_api.get_namespaced_custom_object.return_value = make_policy()
  return custom_api

@pytest.fixture()
def recorder():
  return mock.MagicMock()

@pytest.fixture()
def prom():
  return MockPrometheus()

@pytest.fixture()
def prometheus_clients(prom):
  cache = mock.MagicMock()
  cache.get.return_value = prom
  return cache

@pytest.fixture()
def reconciler(custom_api, v1, storagev1, prometheus_clients, recorder):
  return Reconciler(
    custom_api=custom_api,
    v1=v1,
    storagev1=storagev1,
    prometheus_clients=prometheus_clients,
    recorder=recorder,
    clock=lambda: NOW,
  )

@pytest.fixture()
def written_status(custom_api):
  """Returns a function giving the status block of the last status write."""
  def last():
    body = custom_api.replace_namespaced_custom_object_status.call_args.kwargs['body']
    return copy.deepcopy(body['status'])
  return last


class MockPrometheus():
  """Answers kubelet_volume_stats_* queries per PVC, like Prometheus would."""
  def __init__(self):
    self.values = {}
    self.failures = {}
    self.queries = []

  def usage(self, pvc, used, capacity):
    """Set used and capacity bytes for a PVC."""
    self.values[('kubelet_volume_stats_used_bytes', pvc)] = float(used)
    self.values[('kubelet_volume_stats_capacity_bytes', pvc)] = float(capacity)

  def set(self, pvc, metric, value):
    self.values[(metric, pvc)] = float(value)

  def fail(self, pvc, metric, error):
    self.failures[(metric, pvc)] = error

  def query(self, promql):
    self.queries.append(promql)
    metric = promql.split('{')[0]
    pvc = re.search(r'persistentvolumeclaim="([^"]+)"', promql).group(1)
    if (metric, pvc) in self.failures:
      raise self.failures[(metric, pvc)]
    if (metric, pvc) not in self.values:
      raise NoResultsError(f"no results for query: {promql}")
    return self.values[(metric, pvc)]

  def queried(self, metric, pvc):
    return any(q.startswith(metric + '{') and f'persistentvolumeclaim="{pvc}"' in q for q in self.queries)
