from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    RESEARCH_START = "research_start"
    CLASSIFY = "classify"
    PHASE = "phase"
    PLAN = "plan"
    SEARCH_START = "search_start"
    SEARCH_PROGRESS = "search_progress"
    SEARCH_COMPLETE = "search_complete"
    SEARCH_ERROR = "search_error"
    SYNTHESIZE_START = "synthesize_start"
    SYNTHESIZE_PROGRESS = "synthesize_progress"
    SYNTHESIZE_COMPLETE = "synthesize_complete"
    GAP_FOUND = "gap_found"
    ROUND_START = "round_start"
    RESEARCH_COMPLETE = "research_complete"
    ERROR = "error"


@dataclass
class ResearchEvent:
    event: EventType
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event.value,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.to_dict())}\n\n"
