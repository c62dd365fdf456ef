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

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from confstack.resource.types import Object, format_timestamp, parse_timestamp, utc_now


class ConditionType(str, Enum):
    SYNCED = "Synced"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionReason(str, Enum):
    RECONCILE_SUCCESS = "ReconcileSuccess"


@dataclass
class Condition:
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: datetime = field(default_factory=utc_now)

    def equal(self, other: "Condition") -> bool:
        """Compare two conditions ignoring their transition time"""
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_timestamp(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", ConditionStatus.UNKNOWN.value),
            reason=data.get("reason", ""),
            message=data.get("message", "") or "",
            last_transition_time=parse_timestamp(data.get("lastTransitionTime")) or utc_now(),
        )


def reconcile_success() -> Condition:
    """Condition recorded on a parent after a fully successful reconcile pass"""
    return Condition(
        type=ConditionType.SYNCED.value,
        status=ConditionStatus.TRUE.value,
        reason=ConditionReason.RECONCILE_SUCCESS.value,
    )


def get_conditions(obj: Object) -> List[Condition]:
    return [Condition.from_dict(c) for c in obj.status.get("conditions") or []]


def get_condition(obj: Object, condition_type: str) -> Optional[Condition]:
    for condition in get_conditions(obj):
        if condition.type == condition_type:
            return condition
    return None


def set_conditions(obj: Object, *conditions: Condition):
    """
    Set the supplied conditions on the object's status, replacing any existing
    condition of the same type. A condition that only differs in its transition
    time leaves the existing entry untouched.
    """
    current = get_conditions(obj)
    for new in conditions:
        for i, existing in enumerate(current):
            if existing.type != new.type:
                continue
            if not existing.equal(new):
                current[i] = new
            break
        else:
            current.append(new)
    obj.status["conditions"] = [c.to_dict() for c in current]
