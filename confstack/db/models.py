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
import random
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel, UniqueConstraint

from confstack.resource.types import Object, ObjectMeta, OwnerReference, parse_timestamp, utc_now


def random_id():
    """Generate a random ID string"""
    return "".join(random.sample(uuid.uuid4().hex, 16))


class ResourceRecord(SQLModel, table=True):
    """One stored object of the cluster-state backend, keyed by (kind, namespace, name)"""

    __tablename__ = "resource"
    __table_args__ = (UniqueConstraint("kind", "namespace", "name", name="uq_resource_kind_namespace_name"),)

    id: str = Field(default_factory=lambda: "res" + random_id(), primary_key=True, max_length=24)
    uid: str = Field(default_factory=lambda: str(uuid.uuid4()), max_length=36, index=True)
    api_version: str = Field(max_length=256)
    kind: str = Field(max_length=256, index=True)
    namespace: str = Field(default="", max_length=256)
    name: str = Field(max_length=256)
    resource_version: int = Field(default=1)
    labels: dict = Field(default_factory=dict, sa_column=Column(JSON))
    annotations: dict = Field(default_factory=dict, sa_column=Column(JSON))
    owner_references: list = Field(default_factory=list, sa_column=Column(JSON))
    content: dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: dict = Field(default_factory=dict, sa_column=Column(JSON))
    deletion_timestamp: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    gmt_created: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True)))
    gmt_updated: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True)))

    def to_object(self) -> Object:
        return Object(
            api_version=self.api_version,
            kind=self.kind,
            metadata=ObjectMeta(
                name=self.name,
                namespace=self.namespace,
                uid=self.uid,
                resource_version=str(self.resource_version),
                labels=dict(self.labels or {}),
                annotations=dict(self.annotations or {}),
                owner_references=[OwnerReference.from_dict(ref) for ref in self.owner_references or []],
                creation_timestamp=parse_timestamp(self.gmt_created),
                deletion_timestamp=parse_timestamp(self.deletion_timestamp),
            ),
            content=copy.deepcopy(self.content or {}),
            status=copy.deepcopy(self.status or {}),
        )

    @classmethod
    def from_object(cls, obj: Object) -> "ResourceRecord":
        return cls(
            api_version=obj.api_version,
            kind=obj.kind,
            namespace=obj.metadata.namespace,
            name=obj.metadata.name,
            labels=dict(obj.metadata.labels),
            annotations=dict(obj.metadata.annotations),
            owner_references=[ref.to_dict() for ref in obj.metadata.owner_references],
            content=copy.deepcopy(obj.content),
            status=copy.deepcopy(obj.status),
        )
