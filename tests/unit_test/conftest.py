"""
Shared fixtures for the reconciler unit tests.
"""

import pytest

from confstack.controller.reconciler import Reconciler, ReconcilerConfig
from confstack.db.store import InMemoryStoreClient
from tests.unit_test.helpers import PARENT_GVK, make_parent, make_sql_store, write_manifests


@pytest.fixture
def store():
    return InMemoryStoreClient()


@pytest.fixture(params=["memory", "sql"])
def any_store(request):
    """Every store implementation, to check they share the same semantics"""
    if request.param == "sql":
        return make_sql_store()
    return InMemoryStoreClient()


@pytest.fixture
def resource_dir(tmp_path):
    return write_manifests(tmp_path / "resources")


@pytest.fixture
def parent(store):
    obj = make_parent()
    store.create(obj)
    return obj


@pytest.fixture
def reconciler(store, resource_dir):
    return Reconciler(store, PARENT_GVK, ReconcilerConfig(resource_path=str(resource_dir)))
