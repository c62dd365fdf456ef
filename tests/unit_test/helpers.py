"""
Builders shared by the unit tests.
"""

import textwrap

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel

from confstack.db.models import ResourceRecord  # noqa: F401
from confstack.db.sql_store import SQLStoreClient
from confstack.resource.types import GroupVersionKind, Object, ObjectMeta

PARENT_GVK = GroupVersionKind(group="stacks.confstack.io", version="v1alpha1", kind="ConfigurationStack")

MANIFESTS = {
    "01-settings.yaml": """
        apiVersion: v1
        kind: ConfigMap
        metadata:
          name: settings
          labels:
            tier: backend
        data:
          mode: production
        """,
    "02-workers.yaml": """
        apiVersion: v1
        kind: ConfigMap
        metadata:
          name: workers
        data:
          replicas: "3"
        ---
        apiVersion: v1
        kind: ConfigMap
        metadata:
          name: scheduler
        data:
          interval: "30s"
        """,
}

CHILD_NAMES = ["web-settings", "web-workers", "web-scheduler"]


def write_manifests(directory, manifests=None):
    directory.mkdir(parents=True, exist_ok=True)
    for filename, content in (manifests or MANIFESTS).items():
        (directory / filename).write_text(textwrap.dedent(content))
    return directory


def make_parent(name="web", namespace="default", labels=None, spec=None) -> Object:
    return Object(
        api_version=PARENT_GVK.api_version,
        kind=PARENT_GVK.kind,
        metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {"app": name}),
        content={"spec": spec or {"size": "small"}},
    )


def make_config_map(name, data, namespace="default", labels=None) -> Object:
    return Object(
        api_version="v1",
        kind="ConfigMap",
        metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
        content={"data": dict(data)},
    )


def make_sql_store() -> SQLStoreClient:
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    return SQLStoreClient(sessionmaker(bind=engine, class_=Session, expire_on_commit=False))


class FakeClock:
    """Monotonic clock advanced by hand"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRedis:
    """Dict-backed redis client covering the commands the reconcile tasks use"""

    def __init__(self):
        self.values = {}
        self.held = set()

    def get(self, name):
        return self.values.get(name)

    def set(self, name, value):
        self.values[name] = value
        return True

    def delete(self, *names):
        for name in names:
            self.values.pop(name, None)

    def lock(self, name, timeout=None):
        return FakeRedisLock(self, name, timeout)


class FakeRedisLock:
    def __init__(self, client: FakeRedis, name: str, timeout=None):
        self.client = client
        self.name = name
        self.timeout = timeout
        self.owned = False

    def acquire(self, blocking=None):
        if self.name in self.client.held:
            return False
        self.client.held.add(self.name)
        self.owned = True
        return True

    def release(self):
        from redis.exceptions import LockError

        if not self.owned:
            raise LockError("Cannot release an unlocked lock")
        self.client.held.discard(self.name)
        self.owned = False
