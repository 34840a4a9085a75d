import logging
from unittest.mock import MagicMock

from operator_volume_autoscaler import operator_volume_autoscaler
from operator_volume_autoscaler.controller import Controller


def test_get_settings_defaults():
  settings = operator_volume_autoscaler.get_settings({})
  assert settings == {
    'debug': False,
    'log_file': None,
    'namespace': None,
    'max_workers': 4,
    'reconcile_timeout': 120,
    'error_requeue': 30,
    'request_timeout': 30,
    'metrics_port': 8080,
    'default_metrics_url': 'http://prometheus.monitoring.svc.cluster.local:9090',
    'heartbeat_file': '/tmp/heartbeat',
  }

def test_get_settings_from_environment():
  settings = operator_volume_autoscaler.get_settings({
    'OPERATOR_DEBUG': '1',
    'WATCH_NAMESPACE': 'data',
    'MAX_WORKERS': '8',
    'RECONCILE_TIMEOUT_SECONDS': '45',
    'ERROR_REQUEUE_SECONDS': '10',
    'REQUEST_TIMEOUT_SECONDS': '5',
    'METRICS_PORT': '9100',
    'DEFAULT_METRICS_URL': 'http://thanos:9090',
  })
  assert settings['debug'] == True
  assert settings['namespace'] == 'data'
  assert settings['max_workers'] == 8
  assert settings['reconcile_timeout'] == 45
  assert settings['error_requeue'] == 10
  assert settings['request_timeout'] == 5
  assert settings['metrics_port'] == 9100
  assert settings['default_metrics_url'] == 'http://thanos:9090'

def test_setup_logging(tmpdir):
  root = logging.getLogger()
  handlers, level = list(root.handlers), root.level
  try:
    operator_volume_autoscaler.setup_logging(debug=True, log_file=f"{tmpdir}/operator.log")
    assert root.level == logging.DEBUG
    assert logging.getLogger('kubernetes').level == logging.WARNING
    assert any(isinstance(h, logging.FileHandler) for h in root.handlers)
  finally:
    for handler in root.handlers[:]:
      if handler not in handlers:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

def test_ready_check(tmpdir):
  custom_api, v1, storagev1 = MagicMock(), MagicMock(), MagicMock()
  check_file = f"{tmpdir}/heartbeat"
  operator_volume_autoscaler.ready_check(custom_api, v1, storagev1, check_file=check_file)
  custom_api.list_cluster_custom_object.assert_called_once()
  v1.list_persistent_volume_claim_for_all_namespaces.assert_called_once()
  storagev1.list_storage_class.assert_called_once()
  with open(check_file) as f:
    assert f.readlines() == ['ready\n']

def test_ready_check_single_namespace(tmpdir):
  custom_api, v1, storagev1 = MagicMock(), MagicMock(), MagicMock()
  operator_volume_autoscaler.ready_check(custom_api, v1, storagev1, namespace='data', check_file=f"{tmpdir}/heartbeat")
  custom_api.list_namespaced_custom_object.assert_called_once()
  v1.list_namespaced_persistent_volume_claim.assert_called_once()

def test_health_check(tmpdir):
  check_file = f"{tmpdir}/heartbeat"
  operator_volume_autoscaler.health_check(check_file=check_file)
  with open(check_file) as f:
    assert f.readlines() == ['running\n']

def test_build_controller(tmpdir):
  settings = operator_volume_autoscaler.get_settings({'HEARTBEAT_FILE': f"{tmpdir}/heartbeat", 'MAX_WORKERS': '2'})
  controller = operator_volume_autoscaler.build_controller(settings, MagicMock(), MagicMock(), MagicMock())
  assert isinstance(controller, Controller)
  assert controller.max_workers == 2
  assert controller.reconciler.default_metrics_url == settings['default_metrics_url']
  controller.heartbeat()
  with open(f"{tmpdir}/heartbeat") as f:
    assert f.readlines() == ['running\n']

def test_build_controller_passes_request_timeout(tmpdir):
  settings = operator_volume_autoscaler.get_settings({'HEARTBEAT_FILE': f"{tmpdir}/heartbeat", 'REQUEST_TIMEOUT_SECONDS': '7'})
  controller = operator_volume_autoscaler.build_controller(settings, MagicMock(), MagicMock(), MagicMock())
  assert controller.reconciler.request_timeout == 7
  assert controller.reconciler.recorder.request_timeout == 7
