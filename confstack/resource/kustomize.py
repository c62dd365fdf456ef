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
Resource generation

Child manifests are plain YAML files under a root path. For every parent a
Kustomization (name prefix, common labels and annotations, namespace) is built
by the kustomization patcher chain and applied to each manifest.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from confstack.exceptions import GenerationError
from confstack.resource.patchers import KustomizationPatcher, run_patchers
from confstack.resource.types import Object

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


@dataclass
class Kustomization:
    name_prefix: str = ""
    name_suffix: str = ""
    namespace: str = ""
    common_labels: Dict[str, str] = field(default_factory=dict)
    common_annotations: Dict[str, str] = field(default_factory=dict)

    def apply(self, obj: Object) -> Object:
        """Return a customised copy of ``obj``"""
        result = obj.deep_copy()
        result.metadata.name = f"{self.name_prefix}{obj.metadata.name}{self.name_suffix}"
        if self.namespace:
            result.metadata.namespace = self.namespace
        result.metadata.labels = {**obj.metadata.labels, **self.common_labels}
        result.metadata.annotations = {**obj.metadata.annotations, **self.common_annotations}
        return result


class KustomizeOperation:
    """Generates the child resources of a parent from the manifests under ``resource_path``"""

    def __init__(self, resource_path: str, patchers: Optional[Sequence[KustomizationPatcher]] = None):
        self.resource_path = resource_path
        self.patchers: List[KustomizationPatcher] = list(patchers or [])

    def run_kustomize(self, parent: Object) -> List[Object]:
        """
        Produce the ordered child manifests for ``parent``

        Raises:
            GenerationError: the manifests cannot be read or a kustomization patcher fails
        """
        try:
            kustomization = run_patchers(self.patchers, parent, Kustomization(namespace=parent.namespace))
        except Exception as e:
            raise GenerationError(f"kustomization patchers failed: {e}") from e

        children = [kustomization.apply(manifest) for manifest in self.load_manifests()]
        logger.debug(f"Generated {len(children)} child resources for {parent}")
        return children

    def load_manifests(self) -> List[Object]:
        root = Path(self.resource_path)
        if not root.exists():
            raise GenerationError(f"resource path {self.resource_path} does not exist")

        if root.is_file():
            files = [root]
        else:
            files = sorted(p for p in root.rglob("*") if p.is_file() and p.suffix in MANIFEST_SUFFIXES)

        manifests = []
        for path in files:
            manifests.extend(self._load_file(path))
        return manifests

    @staticmethod
    def _load_file(path: Path) -> List[Object]:
        try:
            with path.open("r", encoding="utf-8") as f:
                documents: List[Any] = list(yaml.safe_load_all(f))
        except (OSError, yaml.YAMLError) as e:
            raise GenerationError(f"failed to read {path}: {e}") from e

        objects = []
        for document in documents:
            if document is None:
                continue
            try:
                objects.append(Object.from_dict(document))
            except ValueError as e:
                raise GenerationError(f"invalid manifest in {path}: {e}") from e
        return objects
