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
Patcher chains.

A patcher is a plain function ``(parent, value) -> value``. Chains are ordered
sequences of patchers applied one after another; the first patcher that raises
aborts the chain. Patchers never mutate their input, they return copies.

Two chains exist:
- kustomization patchers customise the Kustomization used by the generator
- child resource patchers transform the generated children before apply
"""

import copy
from typing import TYPE_CHECKING, Callable, List, Sequence, TypeVar

from confstack.exceptions import PatchError
from confstack.resource.types import Object, OwnerReference

if TYPE_CHECKING:
    from confstack.resource.kustomize import Kustomization

T = TypeVar("T")

KustomizationPatcher = Callable[[Object, "Kustomization"], "Kustomization"]
ChildResourcePatcher = Callable[[Object, List[Object]], List[Object]]

LABEL_PARENT_KIND = "confstack.io/parent-kind"
LABEL_PARENT_NAMESPACE = "confstack.io/parent-namespace"
LABEL_PARENT_NAME = "confstack.io/parent-name"


def run_patchers(patchers: Sequence[Callable[[Object, T], T]], parent: Object, value: T) -> T:
    """Apply ``patchers`` in order; the first failure aborts the chain"""
    for patcher in patchers:
        value = patcher(parent, value)
    return value


# Kustomization patchers


def name_prefixer(parent: Object, kustomization: "Kustomization") -> "Kustomization":
    """Prefix every child name with the parent name so children of different parents never collide"""
    result = copy.deepcopy(kustomization)
    result.name_prefix = f"{parent.name}-"
    return result


def label_propagator(parent: Object, kustomization: "Kustomization") -> "Kustomization":
    """Copy the parent's labels onto every child, plus labels identifying the parent"""
    result = copy.deepcopy(kustomization)
    result.common_labels.update(parent.metadata.labels)
    result.common_labels.update(
        {
            LABEL_PARENT_KIND: parent.kind,
            LABEL_PARENT_NAMESPACE: parent.namespace,
            LABEL_PARENT_NAME: parent.name,
        }
    )
    return result


# Child resource patchers


def owner_reference_adder(parent: Object, children: List[Object]) -> List[Object]:
    """Make the parent the controller owner of every child"""
    if not parent.metadata.uid:
        raise PatchError(f"{parent} has no uid, cannot reference it as owner")

    ref = OwnerReference(
        api_version=parent.api_version,
        kind=parent.kind,
        name=parent.name,
        uid=parent.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )

    patched = []
    for child in children:
        child = child.deep_copy()
        others = [r for r in child.metadata.owner_references if r.uid != ref.uid]
        for other in others:
            if other.controller:
                raise PatchError(f"{child} is already controlled by {other.kind} {other.name} ({other.uid})")
        child.metadata.owner_references = others + [copy.deepcopy(ref)]
        patched.append(child)
    return patched


def default_kustomization_patchers() -> List[KustomizationPatcher]:
    return [name_prefixer, label_propagator]


def default_child_resource_patchers() -> List[ChildResourcePatcher]:
    return [owner_reference_adder]
