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
Celery Beat schedule configuration for configuration stack reconciliation
"""

from confstack.config import settings

CELERY_BEAT_SCHEDULE = {
    # Enqueue every configuration stack so changes missed by watchers are still reconciled
    'resync-configuration-stacks': {
        'task': 'confstack.tasks.reconcile_tasks.resync_stacks_task',
        'schedule': settings.resync_interval,
        'options': {
            'expires': max(settings.resync_interval - 5, 1),  # Avoid overlapping resyncs
        }
    },
}

CELERY_TIMEZONE = 'UTC'
