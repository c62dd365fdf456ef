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


class StoreError(Exception):
    """Base class for cluster-state store failures"""


class NotFoundError(StoreError):
    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class AlreadyExistsError(StoreError):
    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} already exists")


class ConflictError(StoreError):
    """Raised when a write carries a stale resource version"""

    def __init__(self, kind: str, namespace: str, name: str, expected: str, actual: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"the object {kind} {namespace}/{name} has been modified; "
            f"resource version {expected} is stale (current {actual})"
        )


class DeadlineExceededError(StoreError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"deadline exceeded before {operation}")


class ReconcileError(Exception):
    """Base class for failures of a reconcile pass"""


class GenerationError(ReconcileError):
    """The resource generator could not produce child manifests"""


class PatchError(ReconcileError):
    """A patcher in a chain rejected its input"""


class ApplyError(ReconcileError):
    """A child resource could not be converged"""


def ignore_not_found(err: Exception):
    """Return ``None`` for a not-found error, otherwise the error itself"""
    if isinstance(err, NotFoundError):
        return None
    return err
