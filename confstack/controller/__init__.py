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
K8s-Inspired Configuration Stack Controller

Key components:
- Reconciler: runs one bounded reconcile pass for a parent resource
- apply: idempotent create-or-merge-patch of a single child resource

Every pass recomputes the desired children from scratch; failures are never
rolled back, the next pass converges what the previous one left behind.
"""

from .apply import apply
from .reconciler import Reconciler, ReconcilerConfig, Result

__all__ = [
    'Reconciler',
    'ReconcilerConfig',
    'Result',
    'apply',
]
