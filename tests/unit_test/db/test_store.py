"""
Unit tests for the cluster-state store clients.

Every test runs against both the in-memory store and the SQL store (on an
in-memory SQLite database), so the two backends are held to the same semantics:

1. Create/get/list with server-assigned uid and resource version
2. Merge patches that only touch fields present in the desired state
3. No-op writes that leave the resource version untouched
4. Optimistic concurrency on stale resource versions
5. Deletion timestamps, watch notifications and deadlines
"""

import pytest

from confstack.db.store import WatchEvent
from confstack.exceptions import AlreadyExistsError, ConflictError, DeadlineExceededError, NotFoundError
from confstack.utils.deadline import Deadline
from tests.unit_test.helpers import FakeClock, make_config_map, make_sql_store


class TestCreateAndRead:
    """Test suite for creating and reading objects"""

    def test_create_assigns_uid_and_version(self, any_store):
        """Create fills in the server-side metadata on the caller's object"""
        obj = make_config_map("settings", {"mode": "dev"})
        any_store.create(obj)

        assert obj.metadata.uid
        assert obj.metadata.resource_version is not None

        stored = any_store.get("ConfigMap", "default", "settings")
        assert stored.metadata.uid == obj.metadata.uid
        assert stored.metadata.resource_version == obj.metadata.resource_version
        assert stored.metadata.creation_timestamp is not None
        assert stored.content == {"data": {"mode": "dev"}}

    def test_create_existing_raises(self, any_store):
        """A second create under the same key fails"""
        any_store.create(make_config_map("settings", {"mode": "dev"}))

        with pytest.raises(AlreadyExistsError):
            any_store.create(make_config_map("settings", {"mode": "prod"}))

        assert any_store.get("ConfigMap", "default", "settings").content["data"]["mode"] == "dev"

    def test_get_missing_raises_not_found(self, any_store):
        """Getting an unknown key raises NotFoundError"""
        with pytest.raises(NotFoundError) as exc_info:
            any_store.get("ConfigMap", "default", "missing")

        assert exc_info.value.name == "missing"

    def test_get_returns_independent_copy(self, any_store):
        """Mutating a read object does not change the stored one"""
        any_store.create(make_config_map("settings", {"mode": "dev"}))

        obj = any_store.get("ConfigMap", "default", "settings")
        obj.content["data"]["mode"] = "changed"

        assert any_store.get("ConfigMap", "default", "settings").content["data"]["mode"] == "dev"

    def test_list_filters_by_kind_and_namespace(self, any_store):
        """List returns objects of one kind, optionally in one namespace, ordered by key"""
        any_store.create(make_config_map("b", {}, namespace="team-a"))
        any_store.create(make_config_map("a", {}, namespace="team-a"))
        any_store.create(make_config_map("c", {}, namespace="team-b"))

        names = [obj.name for obj in any_store.list("ConfigMap")]
        assert names == ["a", "b", "c"]

        names = [obj.name for obj in any_store.list("ConfigMap", namespace="team-a")]
        assert names == ["a", "b"]

        assert any_store.list("Secret") == []


class TestPatch:
    """Test suite for merge patches"""

    def test_patch_changes_only_desired_fields(self, any_store):
        """Fields absent from the desired state survive the patch"""
        any_store.create(make_config_map("settings", {"mode": "dev", "owner": "ops"}, labels={"team": "ops"}))
        existing = any_store.get("ConfigMap", "default", "settings")

        desired = make_config_map("settings", {"mode": "prod"}, labels={"app": "web"})
        desired.metadata.resource_version = existing.metadata.resource_version
        any_store.patch(desired, merge_base=existing)

        stored = any_store.get("ConfigMap", "default", "settings")
        assert stored.content["data"] == {"mode": "prod", "owner": "ops"}
        assert stored.metadata.labels == {"team": "ops", "app": "web"}
        assert stored.metadata.resource_version != existing.metadata.resource_version
        assert desired.metadata.resource_version == stored.metadata.resource_version

    def test_noop_patch_keeps_version(self, any_store):
        """A patch without differences does not bump the resource version"""
        obj = make_config_map("settings", {"mode": "dev"})
        any_store.create(obj)
        existing = any_store.get("ConfigMap", "default", "settings")

        desired = make_config_map("settings", {"mode": "dev"})
        desired.metadata.resource_version = existing.metadata.resource_version
        any_store.patch(desired, merge_base=existing)

        assert any_store.get("ConfigMap", "default", "settings").metadata.resource_version == obj.metadata.resource_version

    def test_stale_version_conflicts(self, any_store):
        """A patch carrying an outdated resource version is rejected"""
        any_store.create(make_config_map("settings", {"mode": "dev"}))
        stale = any_store.get("ConfigMap", "default", "settings")

        fresh = make_config_map("settings", {"mode": "staging"})
        fresh.metadata.resource_version = stale.metadata.resource_version
        any_store.patch(fresh, merge_base=stale)

        desired = make_config_map("settings", {"mode": "prod"})
        desired.metadata.resource_version = stale.metadata.resource_version
        with pytest.raises(ConflictError):
            any_store.patch(desired, merge_base=stale)

        assert any_store.get("ConfigMap", "default", "settings").content["data"]["mode"] == "staging"

    def test_patch_missing_object_raises_not_found(self, any_store):
        """Patching an object that is not stored fails"""
        desired = make_config_map("settings", {"mode": "prod"})
        with pytest.raises(NotFoundError):
            any_store.patch(desired, merge_base=desired)


class TestStatusAndDeletion:
    """Test suite for status writes and deletion requests"""

    def test_update_status_replaces_status_block(self, any_store):
        """Status writes replace the status and bump the version only when it changes"""
        obj = make_config_map("settings", {"mode": "dev"})
        any_store.create(obj)
        created_version = obj.metadata.resource_version

        obj.status = {"phase": "Ready"}
        any_store.update_status(obj)
        stored = any_store.get("ConfigMap", "default", "settings")
        assert stored.status == {"phase": "Ready"}
        assert stored.metadata.resource_version != created_version

        bumped_version = stored.metadata.resource_version
        any_store.update_status(stored)
        assert any_store.get("ConfigMap", "default", "settings").metadata.resource_version == bumped_version

    def test_update_status_stale_version_conflicts(self, any_store):
        """Status writes are subject to the same version check as patches"""
        obj = make_config_map("settings", {"mode": "dev"})
        any_store.create(obj)
        stale = any_store.get("ConfigMap", "default", "settings")

        obj.status = {"phase": "Ready"}
        any_store.update_status(obj)

        stale.status = {"phase": "Failed"}
        with pytest.raises(ConflictError):
            any_store.update_status(stale)

    def test_update_status_keeps_content(self, any_store):
        """Status writes never touch content or labels"""
        obj = make_config_map("settings", {"mode": "dev"}, labels={"team": "ops"})
        any_store.create(obj)

        obj.content["data"]["mode"] = "ignored"
        obj.status = {"phase": "Ready"}
        any_store.update_status(obj)

        stored = any_store.get("ConfigMap", "default", "settings")
        assert stored.content["data"]["mode"] == "dev"
        assert stored.metadata.labels == {"team": "ops"}

    def test_mark_deleted_sets_timestamp_once(self, any_store):
        """Deletion is requested by setting a timestamp; repeated requests are no-ops"""
        any_store.create(make_config_map("settings", {"mode": "dev"}))

        deleted = any_store.mark_deleted("ConfigMap", "default", "settings")
        assert deleted.was_deleted()

        stored = any_store.get("ConfigMap", "default", "settings")
        assert stored.was_deleted()

        again = any_store.mark_deleted("ConfigMap", "default", "settings")
        assert again.metadata.resource_version == stored.metadata.resource_version

    def test_mark_deleted_missing_raises(self, any_store):
        with pytest.raises(NotFoundError):
            any_store.mark_deleted("ConfigMap", "default", "missing")


class TestWatchAndDeadline:
    """Test suite for watch notifications and deadline checks"""

    def test_watch_reports_changes_only(self, any_store):
        """Handlers see creates and real modifications, never no-op writes"""
        events = []
        any_store.watch(lambda event, obj: events.append((event, obj.name)))

        obj = make_config_map("settings", {"mode": "dev"})
        any_store.create(obj)
        existing = any_store.get("ConfigMap", "default", "settings")

        same = make_config_map("settings", {"mode": "dev"})
        any_store.patch(same, merge_base=existing)

        changed = make_config_map("settings", {"mode": "prod"})
        any_store.patch(changed, merge_base=existing)

        assert events == [(WatchEvent.ADDED, "settings"), (WatchEvent.MODIFIED, "settings")]

    def test_failing_watch_handler_does_not_fail_write(self, any_store):
        """A broken handler is logged and the write still succeeds"""

        def broken(event, obj):
            raise RuntimeError("handler failed")

        any_store.watch(broken)
        any_store.create(make_config_map("settings", {"mode": "dev"}))

        assert any_store.get("ConfigMap", "default", "settings").name == "settings"

    def test_expired_deadline_aborts_before_io(self, any_store):
        """No store call starts once the deadline has passed"""
        clock = FakeClock()
        deadline = Deadline.after(5, clock=clock)
        any_store.create(make_config_map("settings", {"mode": "dev"}), deadline=deadline)

        clock.advance(10)
        with pytest.raises(DeadlineExceededError):
            any_store.get("ConfigMap", "default", "settings", deadline=deadline)
        with pytest.raises(DeadlineExceededError):
            any_store.create(make_config_map("other", {}), deadline=deadline)

        with pytest.raises(NotFoundError):
            any_store.get("ConfigMap", "default", "other")


class TestSQLConditionalUpdate:
    """Test suite for the conditional UPDATE guarding SQL writes"""

    def test_concurrent_write_conflicts(self):
        """A row changed between read and write is not overwritten"""
        store = make_sql_store()
        store.create(make_config_map("settings", {"mode": "dev"}))

        with store._session_factory() as session:
            record = store._get_record(session, "ConfigMap", "default", "settings")

            existing = store.get("ConfigMap", "default", "settings")
            concurrent = make_config_map("settings", {"mode": "staging"})
            store.patch(concurrent, merge_base=existing)

            with pytest.raises(ConflictError):
                store._conditional_update(session, record, content={"data": {"mode": "prod"}})

        assert store.get("ConfigMap", "default", "settings").content["data"]["mode"] == "staging"
