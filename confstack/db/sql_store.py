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
import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from confstack.db.models import ResourceRecord
from confstack.db.store import StoreClient, WatchEvent, check_resource_version, merge_patched
from confstack.exceptions import AlreadyExistsError, ConflictError, NotFoundError
from confstack.resource.types import Object, utc_now
from confstack.utils.deadline import Deadline, check_deadline

logger = logging.getLogger(__name__)


class SQLStoreClient(StoreClient):
    """
    Cluster-state backend persisted in the ``resource`` table.

    Every write is a conditional ``UPDATE ... WHERE resource_version = :current``,
    so two writers racing on the same row cannot both succeed; the loser gets a
    ConflictError and retries in a later pass.
    """

    def __init__(self, session_factory=None):
        super().__init__()
        if session_factory is None:
            from confstack.config import SyncSessionLocal

            session_factory = SyncSessionLocal
        self._session_factory = session_factory

    def _get_record(self, session: Session, kind: str, namespace: str, name: str) -> ResourceRecord:
        stmt = select(ResourceRecord).where(
            ResourceRecord.kind == kind,
            ResourceRecord.namespace == namespace,
            ResourceRecord.name == name,
        )
        result = session.execute(stmt)
        record = result.scalars().first()
        if record is None:
            raise NotFoundError(kind, namespace, name)
        return record

    def _conditional_update(self, session: Session, record: ResourceRecord, **values) -> int:
        """Write ``values`` only if the row still holds the version we read; returns the new version"""
        kind, namespace, name = record.kind, record.namespace, record.name
        read_version = record.resource_version
        stmt = (
            update(ResourceRecord)
            .where(
                ResourceRecord.id == record.id,
                ResourceRecord.resource_version == read_version,
            )
            .values(resource_version=read_version + 1, gmt_updated=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount != 1:
            session.rollback()
            raise ConflictError(kind, namespace, name, str(read_version), "unknown")
        session.commit()
        return read_version + 1

    def get(self, kind: str, namespace: str, name: str, deadline: Optional[Deadline] = None) -> Object:
        check_deadline(deadline, f"get {kind} {namespace}/{name}")
        with self._session_factory() as session:
            obj = self._get_record(session, kind, namespace, name).to_object()
        check_deadline(deadline, f"reading {kind} {namespace}/{name}")
        return obj

    def list(self, kind: str, namespace: Optional[str] = None, deadline: Optional[Deadline] = None) -> List[Object]:
        check_deadline(deadline, f"list {kind}")
        stmt = select(ResourceRecord).where(ResourceRecord.kind == kind)
        if namespace is not None:
            stmt = stmt.where(ResourceRecord.namespace == namespace)
        stmt = stmt.order_by(ResourceRecord.namespace, ResourceRecord.name)
        with self._session_factory() as session:
            result = session.execute(stmt)
            objects = [record.to_object() for record in result.scalars().all()]
        check_deadline(deadline, f"reading {kind} list")
        return objects

    def create(self, obj: Object, deadline: Optional[Deadline] = None):
        check_deadline(deadline, f"create {obj}")
        record = ResourceRecord.from_object(obj)
        with self._session_factory() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise AlreadyExistsError(obj.kind, obj.namespace, obj.name) from e
            stored = record.to_object()

        obj.metadata.uid = stored.metadata.uid
        obj.metadata.resource_version = stored.metadata.resource_version
        obj.metadata.creation_timestamp = stored.metadata.creation_timestamp
        logger.debug(f"Created {obj} at version {stored.metadata.resource_version}")
        self._notify(WatchEvent.ADDED, stored)

    def patch(self, obj: Object, merge_base: Object, deadline: Optional[Deadline] = None):
        check_deadline(deadline, f"patch {obj}")
        with self._session_factory() as session:
            record = self._get_record(session, obj.kind, obj.namespace, obj.name)
            current = record.to_object()
            check_resource_version(current, obj)

            merged = merge_patched(current, obj, merge_base)
            if merged is None:
                obj.metadata.resource_version = current.metadata.resource_version
                logger.debug(f"Patch of {obj} is a no-op")
                return

            new_version = self._conditional_update(
                session,
                record,
                labels=merged.metadata.labels,
                annotations=merged.metadata.annotations,
                owner_references=[ref.to_dict() for ref in merged.metadata.owner_references],
                content=merged.content,
            )

        merged.metadata.resource_version = str(new_version)
        obj.metadata.uid = merged.metadata.uid
        obj.metadata.resource_version = merged.metadata.resource_version
        logger.debug(f"Patched {obj} to version {new_version}")
        self._notify(WatchEvent.MODIFIED, merged)

    def update_status(self, obj: Object, deadline: Optional[Deadline] = None):
        check_deadline(deadline, f"update status of {obj}")
        with self._session_factory() as session:
            record = self._get_record(session, obj.kind, obj.namespace, obj.name)
            current = record.to_object()
            check_resource_version(current, obj)

            if current.status == obj.status:
                obj.metadata.resource_version = current.metadata.resource_version
                return

            new_version = self._conditional_update(session, record, status=copy.deepcopy(obj.status))

        updated = current
        updated.status = copy.deepcopy(obj.status)
        updated.metadata.resource_version = str(new_version)
        obj.metadata.resource_version = updated.metadata.resource_version
        self._notify(WatchEvent.MODIFIED, updated)

    def mark_deleted(self, kind: str, namespace: str, name: str, deadline: Optional[Deadline] = None) -> Object:
        check_deadline(deadline, f"delete {kind} {namespace}/{name}")
        with self._session_factory() as session:
            record = self._get_record(session, kind, namespace, name)
            current = record.to_object()
            if current.was_deleted():
                return current

            now = utc_now()
            new_version = self._conditional_update(session, record, deletion_timestamp=now)

        current.metadata.deletion_timestamp = now
        current.metadata.resource_version = str(new_version)
        self._notify(WatchEvent.MODIFIED, current)
        return current.deep_copy()
