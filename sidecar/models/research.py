from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

ResearchDepth = Literal["quick", "medium", "deep"]
ResearchType = Literal["direct", "alternative", "validation"]
PivotUrgency = Literal["low", "medium", "high"]

RESEARCH_DEPTHS: tuple[str, ...] = ("quick", "medium", "deep")


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INJECTED = "injected"


class TriggerSource(str, Enum):
    USER_PROMPT = "user_prompt"
    TOOL_OUTPUT = "tool_output"
    MANUAL = "manual"
    SCHEDULED = "scheduled"


_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.INJECTED}),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.INJECTED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Task status only moves forward; recovery goes through the store directly."""
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass(slots=True)
class ResearchSource:
    title: str
    url: str
    snippet: str = ""
    relevance: float = 0.5
    quality_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "snippet": self.snippet,
            "relevance": self.relevance,
            "quality_score": self.quality_score,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ResearchSource:
        quality = payload.get("quality_score")
        return cls(
            title=str(payload.get("title") or ""),
            url=str(payload.get("url") or ""),
            snippet=str(payload.get("snippet") or ""),
            relevance=float(payload.get("relevance", 0.5) or 0.0),
            quality_score=float(quality) if isinstance(quality, (int, float)) else None,
        )


@dataclass(slots=True)
class PivotSuggestion:
    alternative: str
    reason: str
    urgency: PivotUrgency = "low"

    def to_dict(self) -> dict[str, Any]:
        return {"alternative": self.alternative, "reason": self.reason, "urgency": self.urgency}

    @classmethod
    def from_dict(cls, payload: Any) -> PivotSuggestion | None:
        if not isinstance(payload, dict) or not payload.get("alternative"):
            return None
        urgency = payload.get("urgency")
        return cls(
            alternative=str(payload["alternative"]),
            reason=str(payload.get("reason") or ""),
            urgency=urgency if urgency in ("low", "medium", "high") else "low",
        )


@dataclass(slots=True)
class ResearchResult:
    summary: str
    full_content: str = ""
    key_points: list[str] = field(default_factory=list)
    sources: list[ResearchSource] = field(default_factory=list)
    tokens_used: int = 0
    confidence: float = 0.5
    pivot: PivotSuggestion | None = None
    finding_id: str | None = None
    domain: str | None = None
    deduplicated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "full_content": self.full_content,
            "key_points": list(self.key_points),
            "sources": [source.to_dict() for source in self.sources],
            "tokens_used": self.tokens_used,
            "confidence": self.confidence,
            "pivot": self.pivot.to_dict() if self.pivot else None,
            "finding_id": self.finding_id,
            "domain": self.domain,
            "deduplicated": self.deduplicated,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ResearchResult:
        return cls(
            summary=str(payload.get("summary") or ""),
            full_content=str(payload.get("full_content") or ""),
            key_points=[str(p) for p in payload.get("key_points") or []],
            sources=[
                ResearchSource.from_dict(item)
                for item in payload.get("sources") or []
                if isinstance(item, dict)
            ],
            tokens_used=int(payload.get("tokens_used") or 0),
            confidence=float(payload.get("confidence", 0.5) or 0.0),
            pivot=PivotSuggestion.from_dict(payload.get("pivot")),
            finding_id=payload.get("finding_id"),
            domain=payload.get("domain"),
            deduplicated=bool(payload.get("deduplicated", False)),
        )


@dataclass(slots=True)
class ResearchTask:
    id: str
    query: str
    depth: ResearchDepth
    status: TaskStatus
    trigger: TriggerSource
    priority: int
    created_at: float
    session_id: str | None = None
    context: str | None = None
    started_at: float | None = None
    completed_at: float | None = None
    result: ResearchResult | None = None
    error: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "query": self.query,
            "depth": self.depth,
            "status": self.status.value,
            "trigger": self.trigger.value,
            "priority": self.priority,
            "created_at": self.created_at,
            "session_id": self.session_id,
            "context": self.context,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class ResearchFinding:
    id: str
    query: str
    summary: str
    created_at: float
    key_points: list[str] = field(default_factory=list)
    full_content: str = ""
    sources: list[ResearchSource] = field(default_factory=list)
    domain: str | None = None
    depth: ResearchDepth = "medium"
    confidence: float = 0.5
    last_accessed_at: float | None = None
    project_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "query": self.query,
            "summary": self.summary,
            "key_points": list(self.key_points),
            "full_content": self.full_content,
            "sources": [source.to_dict() for source in self.sources],
            "domain": self.domain,
            "depth": self.depth,
            "confidence": self.confidence,
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "project_path": self.project_path,
        }


@dataclass(slots=True)
class PendingInjection:
    query: str
    summary: str
    relevance: float
    priority: int
    queued_at: float
    task_id: str | None = None
    finding_id: str | None = None
    sources: list[ResearchSource] = field(default_factory=list)
    pivot: PivotSuggestion | None = None
    key_points: list[str] = field(default_factory=list)
    full_content: str = ""
    level: int = 1
    trigger_reason: str = "error"


@dataclass(slots=True)
class SourceQualityEntry:
    domain: str
    topic: str
    reliability_score: float
    citation_count: int
    helpful_count: int
    last_cited_at: float | None = None


@dataclass(slots=True)
class UrlCacheEntry:
    normalized_url: str
    url: str
    title: str
    content: str
    content_length: int
    scraped_at: float
    expires_at: float
    hit_count: int = 0


@dataclass(slots=True)
class InjectionLogEntry:
    finding_id: str
    session_id: str
    injected_at: float
    injection_level: int = 1
    trigger_reason: str = "error"
    followup_injected: bool = False
    effectiveness_score: float | None = None
    resolved_issue: bool = False
    id: int | None = None
