"""
Drive Reconciler from VolumeAutoscaler watch events and its own requeues.

A watch thread feeds keys (namespace, name) into a WorkQueue; a fixed pool
of worker threads takes keys off it and reconciles them. The reconciler
decides when a policy is looked at next by returning a delay, which is put
straight back on the queue. There is no other timer.
"""

import logging
import threading
import time

from kubernetes import watch
from kubernetes.client.exceptions import ApiException

from .policy import GROUP, PLURAL, VERSION
from .reconciler import ERROR_REQUEUE_SECONDS, ReconcileTimeoutError
from .workqueue import ShutDown, WorkQueue

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 300
WATCH_RETRY_SECONDS = 5
HEARTBEAT_SECONDS = 10


class Controller:
    def __init__(self, reconciler, custom_api, namespace=None, max_workers=4, reconcile_timeout=120,
                 error_requeue=ERROR_REQUEUE_SECONDS, heartbeat=None, queue=None):
        self.reconciler = reconciler
        self.custom_api = custom_api
        self.namespace = namespace
        self.max_workers = max_workers
        self.reconcile_timeout = reconcile_timeout
        self.error_requeue = error_requeue
        self.heartbeat = heartbeat
        self.queue = queue or WorkQueue()
        self.stop_event = threading.Event()
        self._generations = {}
        self._watcher = None

    def handle_event(self, event):
        """Enqueue on create and spec changes, forget on delete.

        Status writes also produce MODIFIED events; those don't bump
        metadata.generation and are ignored, otherwise every status write
        would trigger another reconcile.
        """
        event_type = event.get('type')
        obj = event.get('object') or {}
        metadata = obj.get('metadata') or {}
        key = (metadata.get('namespace'), metadata.get('name'))
        generation = metadata.get('generation')

        if event_type == 'DELETED':
            logger.info(f"VolumeAutoscaler {key[0]}.{key[1]} deleted")
            self._generations.pop(key, None)
            self.queue.forget(key)
        elif event_type in ('ADDED', 'MODIFIED'):
            if self._generations.get(key) == generation:
                return
            logger.info(f"VolumeAutoscaler {key[0]}.{key[1]} {event_type.lower()} at generation {generation}")
            self._generations[key] = generation
            self.queue.add(key)

    def watch_policies(self):
        """Watch VolumeAutoscalers until stopped, reconnecting whenever the stream ends or fails."""
        resource_version = None
        while not self.stop_event.is_set():
            if self.namespace:
                list_func, kwargs = self.custom_api.list_namespaced_custom_object, {'namespace': self.namespace}
            else:
                list_func, kwargs = self.custom_api.list_cluster_custom_object, {}
            if resource_version:
                kwargs['resource_version'] = resource_version
            watcher = watch.Watch()
            self._watcher = watcher
            try:
                for event in watcher.stream(list_func, group=GROUP, version=VERSION, plural=PLURAL,
                                            timeout_seconds=WATCH_TIMEOUT_SECONDS, **kwargs):
                    if event.get('type') == 'ERROR':
                        logger.warning(f"Watch returned an error, restarting: {event.get('raw_object')}")
                        resource_version = None
                        break
                    self.handle_event(event)
                    resource_version = watcher.resource_version
                    if self.stop_event.is_set():
                        break
            except ApiException as e:
                if e.status == 410:
                    logger.info("Watch resourceVersion expired, relisting")
                    resource_version = None
                    continue
                logger.error(f"Watching VolumeAutoscalers failed: {e.reason}")
                self.stop_event.wait(WATCH_RETRY_SECONDS)
            except Exception:
                logger.exception("Watching VolumeAutoscalers failed")
                self.stop_event.wait(WATCH_RETRY_SECONDS)
            finally:
                watcher.stop()

    def process(self, key):
        """Reconcile one key and requeue it for whenever the reconciler asks."""
        namespace, name = key
        deadline = time.monotonic() + self.reconcile_timeout
        try:
            delay = self.reconciler.reconcile(namespace, name, deadline=deadline)
        except ReconcileTimeoutError as e:
            logger.warning(f"{e}, retrying in {self.error_requeue}s")
            delay = self.error_requeue
        except Exception:
            # Nothing a single policy does may take the operator down
            logger.exception(f"Reconciling VolumeAutoscaler {namespace}.{name} failed, retrying in {self.error_requeue}s")
            delay = self.error_requeue

        if delay is None:
            self._generations.pop(key, None)
            self.queue.forget(key)
        else:
            logger.debug(f"Next poll of VolumeAutoscaler {namespace}.{name} in {delay}s")
            self.queue.add_after(key, delay)

    def work(self):
        while True:
            try:
                key = self.queue.get(timeout=1)
            except ShutDown:
                return
            if key is None:
                continue
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def run(self):
        """Start the watch and the workers, and block until stop() is called."""
        logger.info(f"Starting {self.max_workers} workers, watching {self.namespace or 'all namespaces'}")
        watcher = threading.Thread(target=self.watch_policies, name='watch', daemon=True)
        watcher.start()
        workers = [threading.Thread(target=self.work, name=f'worker-{i}', daemon=True)
                   for i in range(self.max_workers)]
        for worker in workers:
            worker.start()

        while not self.stop_event.wait(HEARTBEAT_SECONDS):
            if self.heartbeat:
                self.heartbeat()

        logger.info("Stopping, waiting for in-flight reconciles to finish")
        self.queue.shutdown()
        for worker in workers:
            worker.join()

    def stop(self):
        self.stop_event.set()
        if self._watcher:
            self._watcher.stop()
