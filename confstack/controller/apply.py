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

import logging
from typing import Optional

from confstack.db.store import StoreClient
from confstack.exceptions import NotFoundError
from confstack.resource.types import Object
from confstack.utils.deadline import Deadline

logger = logging.getLogger(__name__)


def apply(store: StoreClient, desired: Object, deadline: Optional[Deadline] = None):
    """
    Converge one child resource: create it if absent, merge-patch it otherwise.

    Calling it repeatedly with the same desired state is a no-op after the first
    call. A stale resource version surfaces as ConflictError; the caller retries
    in a later pass with a fresh read.
    """
    try:
        existing = store.get(desired.kind, desired.namespace, desired.name, deadline=deadline)
    except NotFoundError:
        logger.debug(f"Creating {desired}")
        store.create(desired, deadline=deadline)
        return

    desired.metadata.resource_version = existing.metadata.resource_version
    logger.debug(f"Patching {desired} at version {existing.metadata.resource_version}")
    store.patch(desired, merge_base=existing, deadline=deadline)
