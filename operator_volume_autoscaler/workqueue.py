"""
A work queue keyed by object, with delayed re-adds.

Guarantees the reconcile loop relies on:
  * a key is handed to at most one worker at a time
  * adding a key that is already waiting keeps the earliest due time
  * adding a key that is being worked on defers it until done() is called
"""

import heapq
import itertools
import threading
import time


class ShutDown(Exception):
    """Raised by get() once the queue has been shut down."""


class WorkQueue:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._due = {}          # key -> monotonic time it becomes ready
        self._heap = []         # (due, seq, key), may hold stale entries
        self._seq = itertools.count()
        self._processing = set()
        self._shutting_down = False

    def add(self, key):
        self.add_after(key, 0)

    def add_after(self, key, delay):
        with self._cond:
            if self._shutting_down:
                return
            due = self._clock() + max(delay, 0)
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            heapq.heappush(self._heap, (due, next(self._seq), key))
            self._cond.notify_all()

    def forget(self, key):
        """Drop any pending add for key. An in-flight reconcile is left to finish."""
        with self._cond:
            self._due.pop(key, None)

    def get(self, timeout=None):
        """Block until a key is ready and not being processed, mark it processing and return it.

        Returns None if timeout passes first.
        """
        give_up = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    raise ShutDown()
                key, wait = self._pop_ready()
                if key is not None:
                    self._processing.add(key)
                    return key
                if give_up is not None:
                    remaining = give_up - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key):
        with self._cond:
            self._processing.discard(key)
            self._cond.notify_all()

    def shutdown(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def pending(self):
        with self._cond:
            return dict(self._due)

    def _pop_ready(self):
        """Return (key, None) for a ready key, or (None, seconds until the next one could be)."""
        now = self._clock()
        busy = []
        key = None
        wait = None
        while self._heap:
            due, seq, candidate = self._heap[0]
            if self._due.get(candidate) != due:
                heapq.heappop(self._heap)  # superseded or forgotten
                continue
            if due > now:
                wait = due - now
                break
            heapq.heappop(self._heap)
            if candidate in self._processing:
                busy.append((due, seq, candidate))
                continue
            del self._due[candidate]
            key = candidate
            break
        for entry in busy:
            heapq.heappush(self._heap, entry)
        return key, wait
