from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    TASK_QUEUED = "task_queued"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"


@dataclass
class TaskEvent:
    event: EventType
    task_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {"task_id": self.task_id, **self.data}

    def to_sse(self) -> dict[str, str]:
        return {"event": self.event.value, "data": json.dumps(self.payload())}
