from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Literal

from sidecar.models.research import PendingInjection

EntryKind = Literal["user_prompt", "tool_use", "tool_output", "injection"]


@dataclass(slots=True)
class ConversationEntry:
    kind: EntryKind
    content: str
    timestamp: float
    tool_name: str | None = None
    truncated: bool = False
    research_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "content": self.content,
            "timestamp": self.timestamp,
            "tool_name": self.tool_name,
            "truncated": self.truncated,
        }


@dataclass(slots=True)
class ErrorRecord:
    signature: str
    category: str
    at: float


@dataclass(slots=True)
class SessionResearch:
    query: str
    task_id: str
    performed_at: float
    confidence: float = 0.5
    injected: bool = False


@dataclass(slots=True)
class FocusRecord:
    area: str
    turns: int
    resolved_at: float


@dataclass(slots=True)
class StuckIndicator:
    is_stuck: bool
    focus_area: str | None
    turns: int


@dataclass(slots=True)
class StrategicContext:
    tech_stack: list[str]
    directories_active: list[str]
    focus_history: list[FocusRecord]
    session_duration: float
    tool_use_count: int
    complementary_areas: list[str]


@dataclass(slots=True)
class WatcherContext:
    session_id: str
    project_path: str | None
    recent_messages: list[ConversationEntry]
    topics: list[str]
    current_task: str | None
    recent_errors: list[str]
    research_queries: list[str]


@dataclass(slots=True)
class SessionContext:
    session_id: str
    started_at: float
    last_activity_at: float
    window_size: int = 100
    project_path: str | None = None
    messages: deque[ConversationEntry] = field(init=False)
    message_count: int = 0
    topics: dict[str, None] = field(default_factory=dict)
    tech_stack: dict[str, None] = field(default_factory=dict)
    current_task: str | None = None
    task_history: list[str] = field(default_factory=list)
    recent_errors: list[ErrorRecord] = field(default_factory=list)
    error_categories: Counter[str] = field(default_factory=Counter)
    last_error_category: str | None = None
    error_repeats: int = 0
    research_history: list[SessionResearch] = field(default_factory=list)
    pending_injections: list[PendingInjection] = field(default_factory=list)
    focus_area: str | None = None
    focus_turns: int = 0
    focus_history: list[FocusRecord] = field(default_factory=list)
    files_touched: dict[str, None] = field(default_factory=dict)
    directories_active: dict[str, None] = field(default_factory=dict)
    tool_use_count: int = 0
    tool_uses_since_strategic: int = 0
    last_analyzed_at: float | None = None
    last_strategic_at: float | None = None
    injected_count: int = 0
    injected_tokens: int = 0
    last_injection_at: float | None = None
    is_active: bool = True

    def __post_init__(self) -> None:
        self.messages = deque(maxlen=self.window_size)

    def snapshot(self) -> dict[str, Any]:
        return {
            "message_count": self.message_count,
            "topics": list(self.topics),
            "tech_stack": list(self.tech_stack),
            "current_task": self.current_task,
            "task_history": list(self.task_history),
            "recent_errors": [error.signature for error in self.recent_errors],
            "error_categories": dict(self.error_categories),
            "research_queries": [item.query for item in self.research_history],
            "focus_area": self.focus_area,
            "focus_turns": self.focus_turns,
            "files_touched": len(self.files_touched),
            "tool_use_count": self.tool_use_count,
        }
