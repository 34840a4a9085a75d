#!/usr/bin/env python3

"""
Grow PersistentVolumeClaims before they run out of space.

operator-volume-autoscaler watches VolumeAutoscaler resources
(autoscaling.volume-autoscaler.io/v1alpha1). Each one names a PVC, or a label
selector for several PVCs in its namespace. Every pollInterval the operator
reads usage for those PVCs from Prometheus (kubelet_volume_stats_*) and, once
usage crosses thresholdPercent, patches the PVC to a bigger size, never past
maxSize.

The operator is expected to run as a single-replica Deployment in Kubernetes.
It needs a ClusterRole that can watch VolumeAutoscalers and update their
status, get/list/patch PVCs, get StorageClasses and create Events.

Log level defaults to INFO but will be lowered to DEBUG if ${OPERATOR_DEBUG}
environment variable is set. See get_settings() for the other variables.
"""

import logging
import os
import signal

from kubernetes import client, config
from prometheus_client import start_http_server

from .controller import Controller
from .policy import DEFAULT_METRICS_URL, GROUP, PLURAL, VERSION
from .prometheus import PrometheusClientCache
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_NAMESPACE = '/var/run/secrets/kubernetes.io/serviceaccount/namespace'


def get_settings(environ=os.environ):
    """Read operator settings from environment variables."""
    return {
        'debug': bool(environ.get('OPERATOR_DEBUG')),
        'log_file': environ.get('OPERATOR_LOG_FILE'),
        'namespace': environ.get('WATCH_NAMESPACE') or None,
        'max_workers': int(environ.get('MAX_WORKERS') or 4),
        'reconcile_timeout': float(environ.get('RECONCILE_TIMEOUT_SECONDS') or 120),
        'error_requeue': float(environ.get('ERROR_REQUEUE_SECONDS') or 30),
        'request_timeout': float(environ.get('REQUEST_TIMEOUT_SECONDS') or 30),
        'metrics_port': int(environ.get('METRICS_PORT') or 8080),
        'default_metrics_url': environ.get('DEFAULT_METRICS_URL') or DEFAULT_METRICS_URL,
        'heartbeat_file': environ.get('HEARTBEAT_FILE') or '/tmp/heartbeat',
    }


def setup_logging(debug=False, log_file=None):
    """Log to stdout, and also to log_file if given."""
    log_formatter = logging.Formatter('%(asctime)s %(levelname)s: %(message)s')
    root_logger = logging.getLogger()
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    root_logger.addHandler(console_handler)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(log_formatter)
        root_logger.addHandler(file_handler)
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    # otherwise they inherit the root loglevel, very spammy
    logging.getLogger('kubernetes').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def load_kube_config():
    """Find the kubeconfig dynamically, allows for local testing."""
    if os.path.exists(SERVICE_ACCOUNT_NAMESPACE):
        logger.info("Working in kubernetes environment")
        config.load_incluster_config()
    else:
        logger.info("Working in local environment talking to a remote kubernetes cluster")
        config.load_kube_config()


def ready_check(custom_api, v1, storagev1, namespace=None, check_file='/tmp/heartbeat'):
    """Verifies dependencies and writes out the heartbeat file."""
    # Verify network and permissions by making each of the major API calls
    if namespace:
        custom_api.list_namespaced_custom_object(GROUP, VERSION, namespace, PLURAL, limit=1)
        v1.list_namespaced_persistent_volume_claim(namespace, limit=1)
    else:
        custom_api.list_cluster_custom_object(GROUP, VERSION, PLURAL, limit=1)
        v1.list_persistent_volume_claim_for_all_namespaces(limit=1)
    storagev1.list_storage_class(limit=1)
    # If we got this far without exception, we are ready
    with open(check_file, 'w') as f:
        f.write('ready\n')


def health_check(check_file='/tmp/heartbeat'):
    """Writes out the heartbeat file."""
    with open(check_file, 'w') as f:
        f.write('running\n')


def build_controller(settings, custom_api, v1, storagev1):
    reconciler = Reconciler(
        custom_api          = custom_api,
        v1                  = v1,
        storagev1           = storagev1,
        prometheus_clients  = PrometheusClientCache(),
        default_metrics_url = settings['default_metrics_url'],
        error_requeue       = settings['error_requeue'],
        request_timeout     = settings['request_timeout'],
    )
    return Controller(
        reconciler        = reconciler,
        custom_api        = custom_api,
        namespace         = settings['namespace'],
        max_workers       = settings['max_workers'],
        reconcile_timeout = settings['reconcile_timeout'],
        error_requeue     = settings['error_requeue'],
        heartbeat         = lambda: health_check(settings['heartbeat_file']),
    )


def main():
    settings = get_settings()
    setup_logging(settings['debug'], settings['log_file'])
    logger.info("Started Volume Autoscaler Operator")

    load_kube_config()
    custom_api = client.CustomObjectsApi()
    v1 = client.CoreV1Api()
    storagev1 = client.StorageV1Api()

    # Verify networking and permissions
    ready_check(custom_api, v1, storagev1, settings['namespace'], settings['heartbeat_file'])
    start_http_server(settings['metrics_port'])
    logger.info(f"Serving metrics on :{settings['metrics_port']}")

    controller = build_controller(settings, custom_api, v1, storagev1)

    def shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        controller.stop()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    logger.info("Loaded up Kubernetes clients... let's continue")
    controller.run()
    logger.info("Bye.")


if __name__ == "__main__":
    main()
