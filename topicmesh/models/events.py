from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from topicmesh.models.research import utc_now


class EventType(str, Enum):
    STATUS = "status"
    PROGRESS = "progress"
    CONTENT = "content"
    ERROR = "error"
    COMPLETE = "complete"
    HEARTBEAT = "heartbeat"


@dataclass
class ProgressEvent:
    type: EventType
    topic_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "topic_id": self.topic_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def format(self) -> str:
        return f"event: {self.type.value}\ndata: {json.dumps(self.to_dict())}\n\n"
