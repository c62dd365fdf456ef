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
Unstructured resource model shared by the store, the generator and the reconciler.

Objects are kept in a manifest-like shape: apiVersion, kind, metadata, status and
any other top-level fields (spec, data, ...) kept verbatim in ``content``.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an RFC3339 timestamp (or pass a datetime through), always returning an aware datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class GroupVersionKind:
    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.kind}.{self.api_version}"


@dataclass(frozen=True)
class NamespacedName:
    namespace: str
    name: str

    @classmethod
    def parse(cls, value: str) -> "NamespacedName":
        """Parse ``namespace/name``; a bare name lands in the default namespace"""
        namespace, _, name = value.rpartition("/")
        return cls(namespace=namespace or "default", name=name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )


@dataclass
class ObjectMeta:
    name: str
    namespace: str = ""
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    owner_references: List[OwnerReference] = field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name}
        if self.namespace:
            data["namespace"] = self.namespace
        if self.uid:
            data["uid"] = self.uid
        if self.resource_version:
            data["resourceVersion"] = self.resource_version
        if self.labels:
            data["labels"] = dict(self.labels)
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        if self.owner_references:
            data["ownerReferences"] = [ref.to_dict() for ref in self.owner_references]
        if self.creation_timestamp:
            data["creationTimestamp"] = format_timestamp(self.creation_timestamp)
        if self.deletion_timestamp:
            data["deletionTimestamp"] = format_timestamp(self.deletion_timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectMeta":
        resource_version = data.get("resourceVersion")
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", "") or "",
            uid=data.get("uid"),
            resource_version=str(resource_version) if resource_version is not None else None,
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            owner_references=[OwnerReference.from_dict(ref) for ref in data.get("ownerReferences") or []],
            creation_timestamp=parse_timestamp(data.get("creationTimestamp")),
            deletion_timestamp=parse_timestamp(data.get("deletionTimestamp")),
        )


_RESERVED_KEYS = ("apiVersion", "kind", "metadata", "status")


@dataclass
class Object:
    """A parent or child resource in unstructured form"""

    api_version: str
    kind: str
    metadata: ObjectMeta
    content: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(self.api_version, self.kind)

    @property
    def spec(self) -> Dict[str, Any]:
        return self.content.get("spec") or {}

    def was_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def deep_copy(self) -> "Object":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": self.metadata.to_dict(),
        }
        data.update(copy.deepcopy(self.content))
        if self.status:
            data["status"] = copy.deepcopy(self.status)
        return data

    @classmethod
    def from_dict(cls, manifest: Dict[str, Any]) -> "Object":
        if not isinstance(manifest, dict):
            raise ValueError(f"manifest must be a mapping, got {type(manifest).__name__}")
        kind = manifest.get("kind")
        metadata = manifest.get("metadata") or {}
        if not kind:
            raise ValueError("manifest has no kind")
        if not metadata.get("name"):
            raise ValueError(f"{kind} manifest has no metadata.name")
        return cls(
            api_version=manifest.get("apiVersion", "v1"),
            kind=kind,
            metadata=ObjectMeta.from_dict(metadata),
            content={k: copy.deepcopy(v) for k, v in manifest.items() if k not in _RESERVED_KEYS},
            status=copy.deepcopy(manifest.get("status") or {}),
        )

    def __str__(self) -> str:
        return f"{self.kind} {self.key}"
