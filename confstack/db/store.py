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

import copy
import itertools
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from confstack.exceptions import AlreadyExistsError, ConflictError, NotFoundError
from confstack.resource.merge import apply_merge_patch, create_merge_patch
from confstack.resource.types import Object, OwnerReference, utc_now
from confstack.utils.deadline import Deadline, check_deadline

logger = logging.getLogger(__name__)


class WatchEvent(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"


WatchHandler = Callable[[WatchEvent, Object], None]


def patchable_document(obj: Object) -> Dict[str, Any]:
    """The part of an object a merge patch may touch: labels, annotations, owner references and content"""
    doc = copy.deepcopy(obj.content)
    metadata = {}
    if obj.metadata.labels:
        metadata["labels"] = dict(obj.metadata.labels)
    if obj.metadata.annotations:
        metadata["annotations"] = dict(obj.metadata.annotations)
    if obj.metadata.owner_references:
        metadata["ownerReferences"] = [ref.to_dict() for ref in obj.metadata.owner_references]
    if metadata:
        doc["metadata"] = metadata
    return doc


def merge_patched(current: Object, desired: Object, merge_base: Object) -> Optional[Object]:
    """
    Compute the merge patch from ``merge_base`` to ``desired`` and apply it to ``current``.

    Returns the patched object, or None when the patch would not change anything.
    """
    patch = create_merge_patch(patchable_document(merge_base), patchable_document(desired))
    if not patch:
        return None

    current_doc = patchable_document(current)
    merged_doc = apply_merge_patch(current_doc, patch)
    if merged_doc == current_doc:
        return None

    merged = current.deep_copy()
    metadata = merged_doc.pop("metadata", None) or {}
    merged.metadata.labels = dict(metadata.get("labels") or {})
    merged.metadata.annotations = dict(metadata.get("annotations") or {})
    merged.metadata.owner_references = [OwnerReference.from_dict(ref) for ref in metadata.get("ownerReferences") or []]
    merged.content = merged_doc
    return merged


def check_resource_version(current: Object, obj: Object):
    """Reject writes whose resource version does not match the stored one"""
    expected = obj.metadata.resource_version
    if expected is not None and expected != current.metadata.resource_version:
        raise ConflictError(
            current.kind, current.namespace, current.name, expected, current.metadata.resource_version
        )


class StoreClient(ABC):
    """Typed access to the cluster-state backend, keyed by (kind, namespace, name)"""

    def __init__(self):
        self._watchers: List[WatchHandler] = []

    @abstractmethod
    def get(self, kind: str, namespace: str, name: str, deadline: Optional[Deadline] = None) -> Object:
        """
        Fetch a stored object

        Raises:
            NotFoundError: no object is stored under the key
        """
        pass

    @abstractmethod
    def list(self, kind: str, namespace: Optional[str] = None, deadline: Optional[Deadline] = None) -> List[Object]:
        pass

    @abstractmethod
    def create(self, obj: Object, deadline: Optional[Deadline] = None):
        """
        Store a new object. On success ``obj`` carries the assigned uid and resource version.

        Raises:
            AlreadyExistsError: an object with the same key exists
        """
        pass

    @abstractmethod
    def patch(self, obj: Object, merge_base: Object, deadline: Optional[Deadline] = None):
        """
        Merge-patch the stored object with the fields of ``obj`` that differ from ``merge_base``.

        Raises:
            NotFoundError: the object is not stored
            ConflictError: ``obj`` carries a stale resource version
        """
        pass

    @abstractmethod
    def update_status(self, obj: Object, deadline: Optional[Deadline] = None):
        """
        Replace the stored status block with ``obj.status``

        Raises:
            NotFoundError: the object is not stored
            ConflictError: ``obj`` carries a stale resource version
        """
        pass

    @abstractmethod
    def mark_deleted(self, kind: str, namespace: str, name: str, deadline: Optional[Deadline] = None) -> Object:
        """Request deletion by setting the deletion timestamp; removal itself is left to garbage collection"""
        pass

    def watch(self, handler: WatchHandler):
        self._watchers.append(handler)

    def _notify(self, event: WatchEvent, obj: Object):
        for handler in list(self._watchers):
            try:
                handler(event, obj.deep_copy())
            except Exception as e:
                logger.error(f"Watch handler failed for {event.value} {obj}: {e}")


class InMemoryStoreClient(StoreClient):
    """Thread-safe in-process backend, for tests and single-process deployments"""

    def __init__(self):
        super().__init__()
        self._objects: Dict[Tuple[str, str, str], Object] = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _current(self, kind: str, namespace: str, name: str) -> Object:
        current = self._objects.get((kind, namespace, name))
        if current is None:
            raise NotFoundError(kind, namespace, name)
        return current

    def get(self, kind: str, namespace: str, name: str, deadline: Optional[Deadline] = None) -> Object:
        check_deadline(deadline, f"get {kind} {namespace}/{name}")
        with self._lock:
            return self._current(kind, namespace, name).deep_copy()

    def list(self, kind: str, namespace: Optional[str] = None, deadline: Optional[Deadline] = None) -> List[Object]:
        check_deadline(deadline, f"list {kind}")
        with self._lock:
            return [
                obj.deep_copy()
                for (obj_kind, obj_namespace, _), obj in sorted(self._objects.items())
                if obj_kind == kind and (namespace is None or obj_namespace == namespace)
            ]

    def create(self, obj: Object, deadline: Optional[Deadline] = None):
        check_deadline(deadline, f"create {obj}")
        key = (obj.kind, obj.namespace, obj.name)
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(*key)
            stored = obj.deep_copy()
            stored.metadata.uid = str(uuid.uuid4())
            stored.metadata.resource_version = self._next_version()
            stored.metadata.creation_timestamp = utc_now()
            stored.metadata.deletion_timestamp = None
            self._objects[key] = stored
            self._sync_metadata(obj, stored)
        self._notify(WatchEvent.ADDED, stored)

    def patch(self, obj: Object, merge_base: Object, deadline: Optional[Deadline] = None):
        check_deadline(deadline, f"patch {obj}")
        with self._lock:
            current = self._current(obj.kind, obj.namespace, obj.name)
            check_resource_version(current, obj)
            merged = merge_patched(current, obj, merge_base)
            if merged is None:
                self._sync_metadata(obj, current)
                return
            merged.metadata.resource_version = self._next_version()
            self._objects[(obj.kind, obj.namespace, obj.name)] = merged
            self._sync_metadata(obj, merged)
        self._notify(WatchEvent.MODIFIED, merged)

    def update_status(self, obj: Object, deadline: Optional[Deadline] = None):
        check_deadline(deadline, f"update status of {obj}")
        with self._lock:
            current = self._current(obj.kind, obj.namespace, obj.name)
            check_resource_version(current, obj)
            if current.status == obj.status:
                self._sync_metadata(obj, current)
                return
            updated = current.deep_copy()
            updated.status = copy.deepcopy(obj.status)
            updated.metadata.resource_version = self._next_version()
            self._objects[(obj.kind, obj.namespace, obj.name)] = updated
            self._sync_metadata(obj, updated)
        self._notify(WatchEvent.MODIFIED, updated)

    def mark_deleted(self, kind: str, namespace: str, name: str, deadline: Optional[Deadline] = None) -> Object:
        check_deadline(deadline, f"delete {kind} {namespace}/{name}")
        with self._lock:
            current = self._current(kind, namespace, name)
            if current.was_deleted():
                return current.deep_copy()
            updated = current.deep_copy()
            updated.metadata.deletion_timestamp = utc_now()
            updated.metadata.resource_version = self._next_version()
            self._objects[(kind, namespace, name)] = updated
        self._notify(WatchEvent.MODIFIED, updated)
        return updated.deep_copy()

    @staticmethod
    def _sync_metadata(obj: Object, stored: Object):
        obj.metadata.uid = stored.metadata.uid
        obj.metadata.resource_version = stored.metadata.resource_version
        obj.metadata.creation_timestamp = stored.metadata.creation_timestamp
