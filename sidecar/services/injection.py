"""Admission, budgeting, formatting and progressive disclosure of research injections."""

from __future__ import annotations

import html
import math
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from loguru import logger

from sidecar.config import Settings, settings as default_settings
from sidecar.llm_client import Oracle
from sidecar.models.research import (
    InjectionLogEntry,
    PendingInjection,
    PivotSuggestion,
    ResearchSource,
    ResearchTask,
    TriggerSource,
)
from sidecar.models.session import SessionContext
from sidecar.services.background import BackgroundRunner
from sidecar.services.database import ResearchDatabase
from sidecar.services.dedup import tokenize
from sidecar.services.logger import log_event, log_injection
from sidecar.services.prompt_store import PromptCatalog
from sidecar.services.session_store import SessionStore

if TYPE_CHECKING:
    from sidecar.services.task_queue import TaskQueue

MAX_CITATIONS = 3
MIN_BODY_CHARS = 40
_NUMBER = re.compile(r"(?<![\d.])(0(?:\.\d+)?|1(?:\.0+)?|\.\d+)(?![\d.])")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4) if text else 0


def text_overlap(a: str, b: str) -> float:
    left, right = tokenize(a), tokenize(b)
    if not left or not right:
        return 0.0
    return len(left & right) / min(len(left), len(right))


def static_score(
    *,
    confidence: float,
    completed_at: float | None,
    priority: int,
    source_count: int,
    now: float,
    summary: str | None = None,
    context_text: str | None = None,
) -> tuple[float, list[str]]:
    score = max(0.0, min(confidence, 1.0)) * 0.3
    reasons = [f"confidence {confidence:.2f}"]

    if completed_at is not None:
        age = now - completed_at
        if age < 300:
            score += 0.3
            reasons.append("fresh (<5m)")
        elif age < 900:
            score += 0.2
            reasons.append("recent (<15m)")
        elif age < 1800:
            score += 0.1
            reasons.append("recent (<30m)")

    if priority >= 8:
        score += 0.2
        reasons.append("high priority")
    elif priority >= 6:
        score += 0.1
        reasons.append("medium priority")

    if source_count >= 5:
        score += 0.15
        reasons.append(f"{source_count} sources")
    elif source_count >= 3:
        score += 0.1
        reasons.append(f"{source_count} sources")

    if summary and context_text:
        overlap = text_overlap(summary, context_text)
        if overlap > 0:
            score += overlap * 0.25
            reasons.append(f"context overlap {overlap:.2f}")

    return min(score, 1.0), reasons


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."


def _body_for_level(pending: PendingInjection) -> str:
    if pending.level >= 3 and pending.full_content:
        return pending.full_content
    if pending.level == 2 and pending.key_points:
        points = " ".join(f"- {point}" for point in pending.key_points)
        return f"{pending.summary} Key points: {points}"
    return pending.summary


def _render(
    query: str,
    body: str,
    sources: list[ResearchSource],
    pivot: PivotSuggestion | None,
    finding_id: str | None,
) -> str:
    lines = [f'<research-context query="{html.escape(query, quote=True)}">', body]
    if sources:
        lines.append("Sources:")
        lines.extend(f"- {_truncate(s.title, 80)} ({s.url})" for s in sources)
    if pivot is not None:
        lines.append(f"Pivot ({pivot.urgency}): {pivot.alternative} - {pivot.reason}")
    if finding_id:
        lines.append(f"More detail: finding {finding_id}")
    lines.append("</research-context>")
    return "\n".join(lines)


def format_injection(pending: PendingInjection, *, max_tokens: int) -> str | None:
    """Render a pending injection inside the token limit, or None if it cannot fit.

    Optional parts are dropped in order (extra citations, all citations, pivot,
    detail pointer) before giving up; the body is truncated to the room left.
    """
    max_chars = max_tokens * 4
    query = _truncate(pending.query, 120)
    body = _body_for_level(pending)
    detail = pending.finding_id if pending.level < 3 else None
    sources = pending.sources[:MAX_CITATIONS]
    variants = [
        (sources, pending.pivot, detail),
        (sources[:1], pending.pivot, detail),
        ([], pending.pivot, detail),
        ([], None, detail),
        ([], None, None),
    ]
    for variant_sources, pivot, finding_id in variants:
        frame = _render(query, "", variant_sources, pivot, finding_id)
        room = max_chars - len(frame)
        if room >= MIN_BODY_CHARS:
            return _render(query, _truncate(body, room), variant_sources, pivot, finding_id)
    return None


def parse_relevance(raw_text: str) -> float | None:
    match = _NUMBER.search(raw_text)
    if match is None:
        return None
    return max(0.0, min(1.0, float(match.group(1))))


@dataclass(slots=True)
class BudgetCheck:
    allowed: bool
    reason: str = ""


@dataclass(slots=True)
class InjectionDelivery:
    text: str
    tokens: int
    level: int
    finding_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class ScoredCandidate:
    task: ResearchTask
    score: float
    reasons: list[str] = field(default_factory=list)


class InjectionManager:
    def __init__(
        self,
        sessions: SessionStore,
        *,
        database: ResearchDatabase | None = None,
        oracle: Oracle | None = None,
        task_queue: TaskQueue | None = None,
        runner: BackgroundRunner | None = None,
        prompts: PromptCatalog | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions = sessions
        self.database = database
        self.oracle = oracle
        self.task_queue = task_queue
        self.runner = runner or BackgroundRunner()
        self.prompts = prompts or PromptCatalog()
        self.settings = settings or default_settings
        self.clock = clock

    # --- Budget ---

    def check_budget(self, session: SessionContext) -> BudgetCheck:
        if session.injected_count >= self.settings.max_injections_per_session:
            return BudgetCheck(False, "injection count limit reached")
        if session.injected_tokens >= self.settings.max_total_tokens_per_session:
            return BudgetCheck(False, "session token budget exhausted")
        if session.last_injection_at is not None:
            elapsed = self.clock() - session.last_injection_at
            if elapsed < self.settings.injection_cooldown_seconds:
                return BudgetCheck(False, f"cooldown ({self.settings.injection_cooldown_seconds - elapsed:.0f}s left)")
        return BudgetCheck(True)

    # --- Scoring and admission ---

    @staticmethod
    def context_text(session: SessionContext) -> str:
        parts = [session.current_task or ""]
        parts.extend(error.signature for error in session.recent_errors[-3:])
        return " ".join(part for part in parts if part)

    def score(self, task: ResearchTask, context_text: str | None = None) -> ScoredCandidate:
        result = task.result
        value, reasons = static_score(
            confidence=result.confidence if result else 0.0,
            completed_at=task.completed_at,
            priority=task.priority,
            source_count=len(result.sources) if result else 0,
            now=self.clock(),
            summary=result.summary if result else None,
            context_text=context_text,
        )
        return ScoredCandidate(task=task, score=value, reasons=reasons)

    def select_best(self, tasks: list[ResearchTask], context_text: str | None = None) -> ScoredCandidate | None:
        scored = [self.score(task, context_text) for task in tasks if task.result is not None]
        eligible = [c for c in scored if c.score >= self.settings.min_candidate_score]
        if not eligible:
            return None
        return max(eligible, key=lambda c: c.score)

    async def check_relevance(self, session: SessionContext, task: ResearchTask) -> float | None:
        """Oracle rating in [0, 1] of how well a finding serves the current task; None if unavailable."""
        if self.oracle is None or task.result is None:
            return None
        prompt = self.prompts.render(
            "injection.relevance",
            current_task=session.current_task or "unknown",
            recent_errors="; ".join(e.signature for e in session.recent_errors[-3:]) or "none",
            topics=", ".join(list(session.topics)[:10]) or "none",
            query=task.query,
            summary=task.result.summary[:800],
        )
        try:
            raw = await self.oracle.complete(prompt, caller="injection.relevance", max_tokens=20)
        except Exception as exc:
            logger.warning(f"Relevance oracle call failed for task {task.id}: {exc!r}")
            return None
        return parse_relevance(raw)

    async def admit(self, session_id: str, task: ResearchTask) -> PendingInjection | None:
        """Gate a completed task and queue it for delivery on the session's next event."""
        session = self.sessions.get(session_id)
        if session is None or task.result is None:
            return None
        result = task.result

        static: float | None = None
        if self.settings.static_score_gate_enabled:
            candidate = self.score(task, self.context_text(session))
            static = candidate.score
            if static < self.settings.min_candidate_score:
                log_event("injection_rejected", "static score below minimum", task_id=task.id, score=static)
                return None

        relevance: float | None = None
        if self.settings.relevance_gate_enabled:
            relevance = await self.check_relevance(session, task)
            if relevance is not None and relevance < self.settings.relevance_threshold:
                log_event("injection_rejected", "task relevance below threshold", task_id=task.id, relevance=relevance)
                return None

        pending = PendingInjection(
            query=task.query,
            summary=result.summary,
            relevance=relevance if relevance is not None else (static if static is not None else result.confidence),
            priority=task.priority,
            queued_at=self.clock(),
            task_id=task.id,
            finding_id=result.finding_id,
            sources=list(result.sources),
            pivot=result.pivot,
            key_points=list(result.key_points),
            full_content=result.full_content,
            trigger_reason=_trigger_reason(task.trigger),
        )
        if not self.sessions.queue_injection(session_id, pending):
            return None
        log_event("injection_queued", task.query, session_id=session_id, task_id=task.id, relevance=pending.relevance)
        return pending

    # --- Delivery ---

    def deliver(self, session_id: str) -> InjectionDelivery | None:
        """Pop and render the best pending injection if the session budget allows it."""
        session = self.sessions.get(session_id)
        if session is None or not session.pending_injections:
            return None
        check = self.check_budget(session)
        if not check.allowed:
            logger.debug(f"Injection for {session_id} held back: {check.reason}")
            return None

        remaining = self.settings.max_total_tokens_per_session - session.injected_tokens
        limit = min(self.settings.max_tokens_per_injection, remaining)
        while True:
            pending = self.sessions.peek_injection(session_id)
            if pending is None:
                return None
            text = format_injection(pending, max_tokens=limit)
            if text is not None:
                break
            self.sessions.discard_injection(session_id)
            log_event(
                "injection_dropped",
                "does not fit the remaining token budget",
                session_id=session_id,
                task_id=pending.task_id,
                max_tokens=limit,
            )

        self.sessions.pop_injection(session_id)
        tokens = estimate_tokens(text)
        self.sessions.record_delivery(session_id, tokens)
        self.runner.submit(self._record_delivery(session_id, pending), name=f"log-injection-{session_id}")
        log_injection(
            session_id,
            pending.query,
            tokens=tokens,
            level=pending.level,
            session_tokens=session.injected_tokens,
            trigger_reason=pending.trigger_reason,
        )
        return InjectionDelivery(
            text=text,
            tokens=tokens,
            level=pending.level,
            finding_id=pending.finding_id,
            task_id=pending.task_id,
        )

    async def _record_delivery(self, session_id: str, pending: PendingInjection) -> None:
        if self.database is not None and pending.finding_id:
            result = await self.database.log_injection(
                InjectionLogEntry(
                    finding_id=pending.finding_id,
                    session_id=session_id,
                    injected_at=self.clock(),
                    injection_level=pending.level,
                    trigger_reason=pending.trigger_reason,
                )
            )
            if not result.ok:
                logger.warning(f"Injection log write failed for {session_id}: {result.error}")
        if self.task_queue is not None and pending.task_id:
            await self.task_queue.mark_injected(pending.task_id)

    # --- Progressive disclosure ---

    async def queue_followup(self, session_id: str, finding_id: str, level: int) -> PendingInjection | None:
        """Queue the same finding again at a deeper disclosure level."""
        session = self.sessions.get(session_id)
        if session is None or self.database is None or not 1 < level <= 3:
            return None
        if any(p.finding_id == finding_id for p in session.pending_injections):
            return None
        finding = await self.database.get_finding(finding_id, touch_at=self.clock())
        if finding is None:
            return None
        pending = PendingInjection(
            query=finding.query,
            summary=finding.summary,
            relevance=finding.confidence,
            priority=8,
            queued_at=self.clock(),
            finding_id=finding.id,
            sources=list(finding.sources),
            key_points=list(finding.key_points),
            full_content=finding.full_content,
            level=level,
            trigger_reason="followup",
        )
        self.sessions.queue_injection(session_id, pending)
        log_event("followup_queued", finding.query, session_id=session_id, level=level)
        return pending


def _trigger_reason(trigger: TriggerSource) -> str:
    return {
        TriggerSource.TOOL_OUTPUT: "error",
        TriggerSource.SCHEDULED: "proactive",
        TriggerSource.MANUAL: "manual",
        TriggerSource.USER_PROMPT: "manual",
    }.get(trigger, "error")
