from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class UserPromptEvent(BaseModel):
    session_id: str
    prompt: str
    project_path: str | None = None


class ToolUseEvent(BaseModel):
    session_id: str
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_output: str = ""
    project_path: str | None = None


class EventResponseModel(BaseModel):
    injection: str | None = None
    research_queued: bool = False
    queued_query: str | None = None
    reason: str | None = None


class ResearchRequest(BaseModel):
    query: str = Field(..., min_length=3)
    depth: Literal["quick", "medium", "deep"] | None = None
    session_id: str | None = None
    priority: int = Field(default=5, ge=1, le=10)
    context: str | None = None


class FetchRequest(BaseModel):
    url: str = Field(..., min_length=1)
    query: str | None = None
    max_length: int | None = Field(default=None, ge=500, le=100000)
    store: bool = True
    session_id: str | None = None


class OutcomeReport(BaseModel):
    session_id: str
    injection_id: int
    issue_resolved: bool = False
    task_completed: bool = False
    same_error_repeated: bool = False
    user_ignored: bool = False
    followup_needed: bool = False


_COOLDOWN_CHOICES = {30.0, 60.0, 120.0, 300.0}


class SettingsUpdate(BaseModel):
    autonomous_research_enabled: bool | None = None
    min_confidence_direct: float | None = Field(default=None, ge=0.0, le=1.0)
    min_confidence_alternative: float | None = Field(default=None, ge=0.5, le=0.95)
    min_confidence_validation: float | None = Field(default=None, ge=0.5, le=0.95)
    relevance_threshold: float | None = Field(default=None, ge=0.5, le=0.95)
    trigger_cooldown_seconds: float | None = None
    injection_cooldown_seconds: float | None = None
    max_injections_per_session: int | None = Field(default=None, ge=1, le=20)
    max_tokens_per_injection: int | None = Field(default=None, ge=50, le=1000)
    max_total_tokens_per_session: int | None = Field(default=None, ge=100, le=5000)
    max_concurrent_tasks: int | None = Field(default=None, ge=1, le=8)
    static_score_gate_enabled: bool | None = None
    relevance_gate_enabled: bool | None = None

    @field_validator("trigger_cooldown_seconds", "injection_cooldown_seconds")
    @classmethod
    def _cooldown_choice(cls, value: float | None) -> float | None:
        if value is not None and float(value) not in _COOLDOWN_CHOICES:
            raise ValueError("cooldown must be one of 30, 60, 120 or 300 seconds")
        return value
