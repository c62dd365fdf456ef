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

"""
Celery tasks entry points
This module only handles task orchestration and requeue scheduling
All reconcile logic is delegated to the Reconciler
"""

import logging
from typing import Any, Dict, Optional

from confstack.config import settings
from confstack.controller.reconciler import Reconciler, ReconcilerConfig, Result
from confstack.resource.types import GroupVersionKind, NamespacedName
from confstack.tasks.coordination import ReconcileLock, ScheduleTokens
from confstack.tasks.scheduler import BACKOFF_BASE_SECONDS, BACKOFF_MAX_SECONDS, CeleryReconcileScheduler
from config.celery import app

logger = logging.getLogger(__name__)

_reconciler: Optional[Reconciler] = None


def get_reconciler() -> Reconciler:
    """Reconciler shared by all tasks of a worker process"""
    global _reconciler
    if _reconciler is None:
        from confstack.db.sql_store import SQLStoreClient

        _reconciler = Reconciler(
            SQLStoreClient(),
            GroupVersionKind.from_api_version(settings.parent_api_version, settings.parent_kind),
            ReconcilerConfig.from_settings(settings),
        )
    return _reconciler


def result_to_dict(result: Result) -> Dict[str, Any]:
    return {
        "requeue": result.requeue,
        "requeue_after": result.requeue_after.total_seconds() if result.requeue_after is not None else None,
        "error": str(result.error) if result.error is not None else None,
    }


@app.task(bind=True, max_retries=None)
def reconcile_stack_task(self, namespace: str, name: str, token: Optional[str] = None) -> Dict[str, Any]:
    """
    Run one reconcile pass and schedule the next one

    Args:
        namespace: Namespace of the parent resource
        name: Name of the parent resource
        token: Schedule token issued by CeleryReconcileScheduler; a pass whose
            token has been superseded exits without reconciling
    """
    key = NamespacedName(namespace=namespace, name=name)
    tokens = ScheduleTokens()
    if token is not None and not tokens.is_current(key, token):
        logger.debug(f"Reconcile of {key} superseded by a newer schedule, dropping")
        return {"superseded": True}

    lock = ReconcileLock(key)
    if not lock.acquire():
        logger.info(f"Reconcile of {key} already running, retrying in {settings.lock_retry_countdown}s")
        raise self.retry(countdown=settings.lock_retry_countdown)
    try:
        result = get_reconciler().reconcile(key)
    finally:
        lock.release()

    if result.requeue_after is not None:
        CeleryReconcileScheduler(tokens).enqueue(key, result.requeue_after)
        logger.info(f"Reconcile of {key} requeued in {result.requeue_after}")
    elif result.error is not None or result.requeue:
        countdown = min(BACKOFF_BASE_SECONDS * (2**self.request.retries), BACKOFF_MAX_SECONDS)
        logger.error(f"Reconcile of {key} failed, retrying in {countdown:.3f}s: {result.error}")
        raise self.retry(exc=result.error, countdown=countdown)
    else:
        tokens.clear(key)

    return result_to_dict(result)


@app.task
def resync_stacks_task():
    """Periodic task enqueueing every parent resource, so missed notifications are eventually observed"""
    try:
        logger.info("Starting configuration stack resync")

        scheduler = CeleryReconcileScheduler()
        parents = get_reconciler().store.list(settings.parent_kind)
        for parent in parents:
            scheduler.enqueue(parent.key)

        logger.info(f"Configuration stack resync enqueued {len(parents)} stacks")

    except Exception as e:
        logger.error(f"Configuration stack resync failed: {e}", exc_info=True)
        raise
