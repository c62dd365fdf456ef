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
Per-key coordination of Celery reconcile passes, backed by Redis

Two guarantees the broker alone does not give:
- ReconcileLock: at most one pass per parent runs at a time across workers
- ScheduleTokens: at most one pending chain of passes per parent. Every
  scheduled pass carries a token; scheduling a new pass replaces the token,
  and a pass whose token was replaced exits without reconciling.
"""

import logging
import uuid
from typing import Dict, Optional

import redis
from redis.exceptions import LockError

from confstack.config import settings
from confstack.resource.types import NamespacedName

logger = logging.getLogger(__name__)

LOCK_PREFIX = "confstack:reconcile-lock:"
TOKEN_PREFIX = "confstack:schedule-token:"

_clients: Dict[str, redis.Redis] = {}


def get_redis_client(redis_url: Optional[str] = None) -> redis.Redis:
    """Redis client shared per URL within a process"""
    url = redis_url or settings.redis_url
    if url not in _clients:
        _clients[url] = redis.from_url(url, decode_responses=True)
    return _clients[url]


class ReconcileLock:
    """
    Non-blocking Redis lock held for the duration of one reconcile pass

    The lock expires after ``expire_time`` seconds so a crashed worker cannot
    block its parent forever.
    """

    def __init__(self, key: NamespacedName, redis_url: Optional[str] = None, expire_time: Optional[float] = None):
        self._key = f"{LOCK_PREFIX}{key}"
        self._redis_url = redis_url or settings.redis_url
        self._expire_time = expire_time or settings.reconcile_timeout + settings.lock_expire_margin
        self._redis_client = None
        self._lock = None

    def acquire(self) -> bool:
        """Try once to take the lock; returns False if another pass holds it"""
        if self._redis_client is None:
            self._redis_client = get_redis_client(self._redis_url)
        self._lock = self._redis_client.lock(self._key, timeout=self._expire_time)
        return bool(self._lock.acquire(blocking=False))

    def release(self):
        if self._lock is None:
            return
        try:
            self._lock.release()
        except LockError as e:
            # expired and possibly taken over by another pass
            logger.warning(f"Lock {self._key} was lost before release: {e}")
        finally:
            self._lock = None


class ScheduleTokens:
    """Tracks the single live schedule token of every parent"""

    def __init__(self, redis_url: Optional[str] = None):
        self._redis_url = redis_url or settings.redis_url

    def _client(self) -> redis.Redis:
        return get_redis_client(self._redis_url)

    def issue(self, key: NamespacedName) -> str:
        """Create a new token for ``key``, superseding every pass scheduled before"""
        token = uuid.uuid4().hex
        self._client().set(f"{TOKEN_PREFIX}{key}", token)
        return token

    def is_current(self, key: NamespacedName, token: str) -> bool:
        return self._client().get(f"{TOKEN_PREFIX}{key}") == token

    def clear(self, key: NamespacedName):
        self._client().delete(f"{TOKEN_PREFIX}{key}")
