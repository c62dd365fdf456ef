"""
Unit tests for the kustomization and child resource patcher chains.
"""

from unittest.mock import Mock

import pytest

from confstack.exceptions import PatchError
from confstack.resource.kustomize import Kustomization
from confstack.resource.patchers import (
    LABEL_PARENT_KIND,
    LABEL_PARENT_NAME,
    LABEL_PARENT_NAMESPACE,
    label_propagator,
    name_prefixer,
    owner_reference_adder,
    run_patchers,
)
from confstack.resource.types import OwnerReference
from tests.unit_test.helpers import make_config_map, make_parent


@pytest.fixture
def stored_parent():
    parent = make_parent(labels={"app": "web", "env": "prod"})
    parent.metadata.uid = "parent-uid"
    return parent


class TestRunPatchers:
    """Test suite for chain execution"""

    def test_patchers_run_in_order(self, stored_parent):
        chain = [lambda p, v: v + ["first"], lambda p, v: v + ["second"]]

        assert run_patchers(chain, stored_parent, []) == ["first", "second"]

    def test_first_failure_aborts_chain(self, stored_parent):
        """Patchers after a failing one never run"""
        failing = Mock(side_effect=PatchError("boom"))
        after = Mock()

        with pytest.raises(PatchError):
            run_patchers([failing, after], stored_parent, [])

        after.assert_not_called()

    def test_empty_chain_returns_input(self, stored_parent):
        value = Kustomization()
        assert run_patchers([], stored_parent, value) is value


class TestKustomizationPatchers:
    """Test suite for the name prefixer and label propagator"""

    def test_name_prefixer(self, stored_parent):
        original = Kustomization()

        patched = name_prefixer(stored_parent, original)

        assert patched.name_prefix == "web-"
        assert original.name_prefix == ""

    def test_label_propagator(self, stored_parent):
        original = Kustomization(common_labels={"tier": "backend"})

        patched = label_propagator(stored_parent, original)

        assert patched.common_labels == {
            "tier": "backend",
            "app": "web",
            "env": "prod",
            LABEL_PARENT_KIND: "ConfigurationStack",
            LABEL_PARENT_NAMESPACE: "default",
            LABEL_PARENT_NAME: "web",
        }
        assert original.common_labels == {"tier": "backend"}


class TestOwnerReferenceAdder:
    """Test suite for controller owner references"""

    def test_adds_controller_reference(self, stored_parent):
        children = [make_config_map("web-a", {}), make_config_map("web-b", {})]

        patched = owner_reference_adder(stored_parent, children)

        for child in patched:
            assert child.metadata.owner_references == [
                OwnerReference(
                    api_version="stacks.confstack.io/v1alpha1",
                    kind="ConfigurationStack",
                    name="web",
                    uid="parent-uid",
                    controller=True,
                    block_owner_deletion=True,
                )
            ]
        assert all(not child.metadata.owner_references for child in children)

    def test_reference_is_not_duplicated(self, stored_parent):
        patched = owner_reference_adder(stored_parent, [make_config_map("web-a", {})])

        again = owner_reference_adder(stored_parent, patched)

        assert len(again[0].metadata.owner_references) == 1

    def test_keeps_non_controller_references(self, stored_parent):
        child = make_config_map("web-a", {})
        other = OwnerReference(api_version="v1", kind="Namespace", name="default", uid="ns-uid")
        child.metadata.owner_references = [other]

        patched = owner_reference_adder(stored_parent, [child])

        assert [ref.uid for ref in patched[0].metadata.owner_references] == ["ns-uid", "parent-uid"]

    def test_parent_without_uid_fails(self):
        with pytest.raises(PatchError):
            owner_reference_adder(make_parent(), [make_config_map("web-a", {})])

    def test_child_controlled_by_other_owner_fails(self, stored_parent):
        child = make_config_map("web-a", {})
        child.metadata.owner_references = [
            OwnerReference(api_version="v1", kind="ConfigurationStack", name="api", uid="other-uid", controller=True)
        ]

        with pytest.raises(PatchError):
            owner_reference_adder(stored_parent, [child])
