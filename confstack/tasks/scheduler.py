# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import heapq
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from confstack.controller.reconciler import Reconciler, Result
from confstack.db.store import StoreClient, WatchEvent
from confstack.resource.types import NamespacedName, Object
from confstack.tasks.coordination import ScheduleTokens

logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 0.005
BACKOFF_MAX_SECONDS = 1000.0


class BackoffTracker:
    """Per-key exponential backoff for failures that carry no explicit requeue delay"""

    def __init__(self, base: float = BACKOFF_BASE_SECONDS, maximum: float = BACKOFF_MAX_SECONDS):
        self.base = base
        self.maximum = maximum
        self._failures: Dict[NamespacedName, int] = {}

    def next_delay(self, key: NamespacedName) -> float:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self.base * (2**failures), self.maximum)

    def forget(self, key: NamespacedName):
        self._failures.pop(key, None)

    def failures(self, key: NamespacedName) -> int:
        return self._failures.get(key, 0)


def next_delay_for(result: Result, key: NamespacedName, backoff: BackoffTracker) -> Optional[float]:
    """
    Translate a reconcile outcome into the delay before the next pass, or None for no further pass.

    An explicit requeue-after wins; an error without one falls back to backoff.
    """
    if result.requeue_after is not None:
        if result.error is None:
            backoff.forget(key)
        return max(result.requeue_after.total_seconds(), 0.0)
    if result.error is not None or result.requeue:
        return backoff.next_delay(key)
    backoff.forget(key)
    return None


class ReconcileScheduler(ABC):
    """Delivers reconcile requests keyed by parent identity"""

    @abstractmethod
    def enqueue(self, key: NamespacedName, delay: Optional[timedelta] = None):
        """
        Request a reconcile pass for ``key``

        Args:
            key: Namespace and name of the parent resource
            delay: Optional delay before the pass may start
        """
        pass

    def watch(self, store: StoreClient, parent_kind: str):
        """Enqueue the parent whenever it, or a child it controls, changes"""

        def on_event(event: WatchEvent, obj: Object):
            if obj.kind == parent_kind:
                self.enqueue(obj.key)
                return
            for ref in obj.metadata.owner_references:
                if ref.controller and ref.kind == parent_kind:
                    self.enqueue(NamespacedName(namespace=obj.namespace, name=ref.name))

        store.watch(on_event)


class LocalReconcileScheduler(ReconcileScheduler):
    """
    In-process work queue.

    A key is never processed by two passes at once: a key enqueued while its
    pass is running is marked dirty and queued again once the pass finishes.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        clock: Callable[[], float] = time.monotonic,
        backoff: Optional[BackoffTracker] = None,
    ):
        self.reconciler = reconciler
        self._clock = clock
        self.backoff = backoff or BackoffTracker()
        self._heap: List[Tuple[float, int, NamespacedName]] = []
        self._due: Dict[NamespacedName, float] = {}
        self._processing: Set[NamespacedName] = set()
        self._dirty: Dict[NamespacedName, float] = {}
        self._counter = 0
        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self.results: Dict[NamespacedName, Result] = {}

    def enqueue(self, key: NamespacedName, delay: Optional[timedelta] = None):
        seconds = delay.total_seconds() if delay is not None else 0.0
        with self._lock:
            self._add(key, self._clock() + seconds)
        self._wakeup.set()

    def _add(self, key: NamespacedName, due: float):
        if key in self._processing:
            self._dirty[key] = min(due, self._dirty.get(key, due))
            return
        current = self._due.get(key)
        if current is not None and current <= due:
            return
        self._due[key] = due
        self._counter += 1
        heapq.heappush(self._heap, (due, self._counter, key))

    def _pop_due(self, now: float) -> Optional[NamespacedName]:
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                due, _, key = heapq.heappop(self._heap)
                # superseded by an earlier entry for the same key
                if self._due.get(key) != due:
                    continue
                del self._due[key]
                self._processing.add(key)
                return key
            return None

    def next_due(self) -> Optional[float]:
        with self._lock:
            return min(self._due.values()) if self._due else None

    def pending(self) -> int:
        with self._lock:
            return len(self._due)

    def process(self, key: NamespacedName) -> Result:
        try:
            result = self.reconciler.reconcile(key)
        except Exception as e:
            logger.error(f"Reconcile of {key} raised: {e}", exc_info=True)
            result = Result(error=e)

        self.results[key] = result
        delay = next_delay_for(result, key, self.backoff)
        with self._lock:
            self._processing.discard(key)
            if delay is not None:
                self._add(key, self._clock() + delay)
            dirty_due = self._dirty.pop(key, None)
            if dirty_due is not None:
                self._add(key, dirty_due)
        if delay is not None:
            logger.debug(f"Next reconcile of {key} in {delay:.3f}s")
        return result

    def run_pending(self) -> int:
        """Run every pass that is due now; returns the number of passes run"""
        passes = 0
        while True:
            key = self._pop_due(self._clock())
            if key is None:
                return passes
            self.process(key)
            passes += 1

    def run_forever(self, stop_event: threading.Event, poll_interval: float = 1.0):
        logger.info("Local reconcile scheduler started")
        while not stop_event.is_set():
            self.run_pending()
            next_due = self.next_due()
            timeout = poll_interval if next_due is None else min(max(next_due - self._clock(), 0.0), poll_interval)
            self._wakeup.wait(timeout)
            self._wakeup.clear()
        logger.info("Local reconcile scheduler stopped")


class CeleryReconcileScheduler(ReconcileScheduler):
    """
    Dispatches reconcile passes to Celery workers.

    Each enqueue supersedes the pass previously scheduled for the same key, so
    a parent never has more than one pending chain of passes.
    """

    def __init__(self, tokens: Optional[ScheduleTokens] = None):
        self.tokens = tokens or ScheduleTokens()

    def enqueue(self, key: NamespacedName, delay: Optional[timedelta] = None):
        from confstack.tasks.reconcile_tasks import reconcile_stack_task

        countdown = delay.total_seconds() if delay is not None else None
        token = self.tokens.issue(key)
        task = reconcile_stack_task.apply_async(
            args=[key.namespace, key.name], kwargs={"token": token}, countdown=countdown
        )
        logger.debug(f"Scheduled reconcile task {task.id} for {key}")
        return task.id


def create_reconcile_scheduler(scheduler_type: str, reconciler: Optional[Reconciler] = None) -> ReconcileScheduler:
    """
    Factory function to create a reconcile scheduler

    Args:
        scheduler_type: "local" or "celery"
        reconciler: required by the local scheduler, which runs passes in-process
    """
    if scheduler_type == "celery":
        return CeleryReconcileScheduler()
    elif scheduler_type == "local":
        if reconciler is None:
            raise ValueError("Local scheduler requires a reconciler")
        return LocalReconcileScheduler(reconciler)
    else:
        raise ValueError(f"Unknown scheduler type: {scheduler_type}")
