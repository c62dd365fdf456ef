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

import time
from datetime import timedelta
from typing import Callable, Optional, Union

from confstack.exceptions import DeadlineExceededError


class Deadline:
    """
    Absolute point in time (on a monotonic clock) that bounds a reconcile pass.

    The deadline is passed explicitly to every store call; callers check it
    before starting I/O and again after blocking reads complete.
    """

    def __init__(self, expires_at: float, clock: Callable[[], float] = time.monotonic):
        self.expires_at = expires_at
        self._clock = clock

    @classmethod
    def after(cls, timeout: Union[timedelta, float], clock: Callable[[], float] = time.monotonic) -> "Deadline":
        if isinstance(timeout, timedelta):
            timeout = timeout.total_seconds()
        return cls(clock() + timeout, clock=clock)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def check(self, operation: str):
        if self.expired():
            raise DeadlineExceededError(operation)


def check_deadline(deadline: Optional[Deadline], operation: str):
    if deadline is not None:
        deadline.check(operation)
