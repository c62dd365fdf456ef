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

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional, Tuple

from confstack.controller.apply import apply
from confstack.db.store import StoreClient
from confstack.exceptions import (
    ApplyError,
    DeadlineExceededError,
    GenerationError,
    PatchError,
    ReconcileError,
    ignore_not_found,
)
from confstack.resource.conditions import reconcile_success, set_conditions
from confstack.resource.kustomize import KustomizeOperation
from confstack.resource.patchers import (
    ChildResourcePatcher,
    KustomizationPatcher,
    default_child_resource_patchers,
    default_kustomization_patchers,
    run_patchers,
)
from confstack.resource.types import GroupVersionKind, NamespacedName
from confstack.utils.deadline import Deadline

logger = logging.getLogger(__name__)

DEFAULT_RECONCILE_TIMEOUT = timedelta(minutes=1)
DEFAULT_SHORT_WAIT = timedelta(seconds=30)
DEFAULT_LONG_WAIT = timedelta(minutes=3)
DEFAULT_ROOT_PATH = "resources"

ERR_GET_RESOURCE = "could not get the custom resource"


@dataclass(frozen=True)
class ReconcilerConfig:
    """
    Construction-time configuration of a Reconciler

    Attributes:
        short_wait: delay before retrying after a failed generation, patch or apply
        long_wait: delay before re-reconciling after a fully successful pass
        reconcile_timeout: wall-clock bound of a single pass
        resource_path: root path of the child manifests
        additional_kustomization_patchers: run after the name prefixer and label propagator
        additional_child_patchers: run after the owner reference adder
    """

    short_wait: timedelta = DEFAULT_SHORT_WAIT
    long_wait: timedelta = DEFAULT_LONG_WAIT
    reconcile_timeout: timedelta = DEFAULT_RECONCILE_TIMEOUT
    resource_path: str = DEFAULT_ROOT_PATH
    additional_kustomization_patchers: Tuple[KustomizationPatcher, ...] = ()
    additional_child_patchers: Tuple[ChildResourcePatcher, ...] = ()

    @classmethod
    def from_settings(cls, settings, **overrides) -> "ReconcilerConfig":
        values = dict(
            short_wait=timedelta(seconds=settings.short_wait),
            long_wait=timedelta(seconds=settings.long_wait),
            reconcile_timeout=timedelta(seconds=settings.reconcile_timeout),
            resource_path=settings.resource_path,
        )
        values.update(overrides)
        return cls(**values)


@dataclass
class Result:
    """Outcome of one reconcile pass; tells the scheduler when to run the next one"""

    requeue: bool = False
    requeue_after: Optional[timedelta] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None


class Reconciler:
    """Converges the child resources of one kind of parent resource"""

    def __init__(
        self,
        store: StoreClient,
        of: GroupVersionKind,
        config: Optional[ReconcilerConfig] = None,
        kustomize_operation: Optional[KustomizeOperation] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self._clock = clock
        self.gvk = of
        self.config = config or ReconcilerConfig()
        self.kustomize_operation = kustomize_operation or KustomizeOperation(
            self.config.resource_path,
            default_kustomization_patchers() + list(self.config.additional_kustomization_patchers),
        )
        self.child_resource_patchers = default_child_resource_patchers() + list(self.config.additional_child_patchers)

    def reconcile(self, request: NamespacedName) -> Result:
        deadline = Deadline.after(self.config.reconcile_timeout, clock=self._clock)
        try:
            return self._reconcile(request, deadline)
        except DeadlineExceededError as e:
            logger.error(f"Reconcile of {self.gvk.kind} {request} timed out: {e}")
            return Result(error=e)

    def _reconcile(self, request: NamespacedName, deadline: Deadline) -> Result:
        try:
            parent = self.store.get(self.gvk.kind, request.namespace, request.name, deadline=deadline)
        except DeadlineExceededError:
            raise
        except Exception as e:
            # a missing parent is done; other errors go back to the scheduler
            err = ignore_not_found(e)
            if err is None:
                logger.debug(f"{self.gvk.kind} {request} not found, nothing to do")
                return Result(requeue=False)
            error = ReconcileError(f"{ERR_GET_RESOURCE}: {err}")
            error.__cause__ = err
            logger.error(f"Failed to get {self.gvk.kind} {request}: {err}")
            return Result(error=error)

        if parent.was_deleted():
            logger.debug(f"{parent} is being deleted, skipping")
            return Result(requeue=False)

        logger.info(f"Reconciling {parent} at version {parent.metadata.resource_version}")

        try:
            children = self.kustomize_operation.run_kustomize(parent)
        except Exception as e:
            return self._retry_later(parent, GenerationError(f"kustomize operation failed: {e}"), e)

        deadline.check(f"patching children of {parent}")
        try:
            children = run_patchers(self.child_resource_patchers, parent, children)
        except Exception as e:
            return self._retry_later(parent, PatchError(f"child resource patchers failed: {e}"), e)

        for child in children:
            try:
                apply(self.store, child, deadline=deadline)
            except DeadlineExceededError:
                raise
            except Exception as e:
                return self._retry_later(parent, ApplyError(f"apply failed for {child}: {e}"), e)

        set_conditions(parent, reconcile_success())
        result = Result(requeue=True, requeue_after=self.config.long_wait)
        try:
            self.store.update_status(parent, deadline=deadline)
        except DeadlineExceededError:
            raise
        except Exception as e:
            logger.error(f"Failed to update status of {parent}: {e}")
            result.error = e
            return result

        logger.info(f"Reconciled {parent}: {len(children)} child resources converged")
        return result

    def _retry_later(self, parent, error: ReconcileError, cause: Exception) -> Result:
        error.__cause__ = cause
        logger.error(f"Reconcile of {parent} failed, retrying in {self.config.short_wait}: {error}")
        return Result(requeue=True, requeue_after=self.config.short_wait, error=error)
