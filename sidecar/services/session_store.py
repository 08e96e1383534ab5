from __future__ import annotations

import asyncio
import json
import posixpath
import time
from typing import Any, Callable

from loguru import logger

from sidecar import rules
from sidecar.config import Settings, settings as default_settings
from sidecar.models.research import PendingInjection
from sidecar.models.session import (
    ConversationEntry,
    ErrorRecord,
    FocusRecord,
    SessionContext,
    SessionResearch,
    StrategicContext,
    StuckIndicator,
    WatcherContext,
)
from sidecar.services.background import BackgroundRunner
from sidecar.services.database import ResearchDatabase

MAX_TOPICS = 50
MAX_TECH = 30
MAX_FILES = 100
MAX_DIRECTORIES = 50
MAX_TASK_HISTORY = 10
MAX_FOCUS_HISTORY = 10
MAX_RESEARCH_HISTORY = 50
EXTRACTION_SAMPLE_CHARS = 5000


def _add_bounded(ordered: dict[str, None], key: str, limit: int) -> None:
    """Insert into an insertion-ordered set, evicting the oldest keys past the limit."""
    ordered.pop(key, None)
    ordered[key] = None
    while len(ordered) > limit:
        ordered.pop(next(iter(ordered)))


def _trim(items: list[Any], limit: int) -> None:
    if len(items) > limit:
        del items[: len(items) - limit]


class SessionStore:
    """In-memory per-session context; persistence is handed to the background runner."""

    def __init__(
        self,
        *,
        database: ResearchDatabase | None = None,
        runner: BackgroundRunner | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.database = database
        self.runner = runner
        self.settings = settings or default_settings
        self.clock = clock
        self._sessions: dict[str, SessionContext] = {}
        self._sweeper: asyncio.Task[None] | None = None

    # --- Lifecycle ---

    def get(self, session_id: str) -> SessionContext | None:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[SessionContext]:
        return list(self._sessions.values())

    def get_or_create(self, session_id: str, project_path: str | None = None) -> SessionContext:
        session = self._sessions.get(session_id)
        if session is not None:
            if project_path and not session.project_path:
                session.project_path = project_path
            return session

        now = self.clock()
        session = SessionContext(
            session_id=session_id,
            started_at=now,
            last_activity_at=now,
            window_size=self.settings.session_window_size,
            project_path=project_path,
        )
        self._sessions[session_id] = session
        logger.info(f"Session {session_id} started (project={project_path})")
        self._persist(session)
        return session

    def end_session(self, session_id: str) -> SessionContext | None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        session.is_active = False
        self._persist(session)
        logger.info(
            f"Session {session_id} ended after {session.message_count} messages, "
            f"{len(session.research_history)} research tasks"
        )
        return session

    def prune_inactive(self, max_age: float | None = None) -> list[str]:
        max_age = self.settings.session_timeout_seconds if max_age is None else max_age
        cutoff = self.clock() - max_age
        stale = [sid for sid, s in self._sessions.items() if s.last_activity_at < cutoff]
        for session_id in stale:
            self.end_session(session_id)
        if stale:
            logger.info(f"Pruned {len(stale)} inactive sessions")
        return stale

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="session-sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.session_prune_interval_seconds)
            self.prune_inactive()

    def _persist(self, session: SessionContext) -> None:
        if self.database is None or self.runner is None:
            return
        self.runner.submit(self._write_snapshot(session), name=f"persist-session-{session.session_id}")

    async def _write_snapshot(self, session: SessionContext) -> None:
        result = await self.database.upsert_session(
            session.session_id,
            started_at=session.started_at,
            last_activity_at=session.last_activity_at,
            project_path=session.project_path,
            is_active=session.is_active,
            injections_count=session.injected_count,
            injections_tokens=session.injected_tokens,
            snapshot=session.snapshot(),
        )
        if not result.ok:
            logger.warning(f"Session {session.session_id} snapshot not persisted: {result.error}")

    # --- Events ---

    def _append(self, session: SessionContext, entry: ConversationEntry) -> None:
        session.messages.append(entry)
        session.message_count += 1
        session.last_activity_at = entry.timestamp

    def add_user_prompt(self, session_id: str, prompt: str, project_path: str | None = None) -> SessionContext:
        session = self.get_or_create(session_id, project_path)
        self._append(session, ConversationEntry(kind="user_prompt", content=prompt, timestamp=self.clock()))

        sample = prompt[:EXTRACTION_SAMPLE_CHARS]
        for topic in rules.extract_topics(sample):
            _add_bounded(session.topics, topic, MAX_TOPICS)
        task = rules.detect_task(sample)
        if task and task != session.current_task:
            if session.current_task:
                session.task_history.append(session.current_task)
                _trim(session.task_history, MAX_TASK_HISTORY)
            session.current_task = task
        self._record_tech(session, sample)
        return session

    def add_tool_use(
        self,
        session_id: str,
        tool_name: str,
        tool_input: dict[str, Any] | None,
        tool_output: str | None,
        project_path: str | None = None,
    ) -> SessionContext:
        session = self.get_or_create(session_id, project_path)
        tool_input = tool_input or {}
        now = self.clock()

        input_text = json.dumps(tool_input, default=str)[: self.settings.tool_input_max_chars]
        self._append(
            session,
            ConversationEntry(kind="tool_use", content=f"{tool_name}: {input_text}", timestamp=now, tool_name=tool_name),
        )
        output = tool_output or ""
        limit = self.settings.tool_output_max_chars
        self._append(
            session,
            ConversationEntry(
                kind="tool_output",
                content=output[:limit],
                timestamp=now,
                tool_name=tool_name,
                truncated=len(output) > limit,
            ),
        )

        session.tool_use_count += 1
        session.tool_uses_since_strategic += 1
        self._track_files(session, tool_name, tool_input)
        self._track_focus(session, self._focus_for(tool_name, tool_input), now)

        sample = f"{input_text}\n{output[:EXTRACTION_SAMPLE_CHARS]}"
        for topic in rules.extract_topics(sample):
            _add_bounded(session.topics, topic, MAX_TOPICS)
        self._record_tech(session, sample)
        self._record_errors(session, tool_name, output[:EXTRACTION_SAMPLE_CHARS], now)
        return session

    def _record_tech(self, session: SessionContext, text: str) -> None:
        for name in rules.all_matches(rules.TECH_RULES, text):
            _add_bounded(session.tech_stack, name, MAX_TECH)

    def _record_errors(self, session: SessionContext, tool_name: str, text: str, now: float) -> None:
        errors = rules.extract_errors(text)
        if not errors:
            return
        for error in errors:
            category = rules.classify_error(error)
            session.recent_errors.append(
                ErrorRecord(signature=f"[{tool_name}] {error[:200]}", category=category, at=now)
            )
            session.error_categories[category] += 1
        _trim(session.recent_errors, self.settings.session_max_errors)

        lead = rules.classify_error(errors[0])
        if lead == session.last_error_category:
            session.error_repeats += 1
        else:
            session.error_repeats = 0
            session.last_error_category = lead

    def _track_files(self, session: SessionContext, tool_name: str, tool_input: dict[str, Any]) -> None:
        for field_name in rules.FILE_INPUT_FIELDS:
            value = tool_input.get(field_name)
            if not isinstance(value, str) or not value:
                continue
            if tool_name in rules.DIRECTORY_TOOLS and field_name == "path":
                _add_bounded(session.directories_active, value.rstrip("/") or "/", MAX_DIRECTORIES)
                continue
            _add_bounded(session.files_touched, value, MAX_FILES)
            directory = posixpath.dirname(value)
            if directory:
                _add_bounded(session.directories_active, directory, MAX_DIRECTORIES)

    @staticmethod
    def _focus_for(tool_name: str, tool_input: dict[str, Any]) -> str | None:
        if tool_name in rules.FILE_FOCUS_TOOLS:
            path = tool_input.get("file_path") or tool_input.get("notebook_path")
            if isinstance(path, str) and path:
                return posixpath.basename(path) or path
            return None
        if tool_name == "Bash":
            command = tool_input.get("command")
            if isinstance(command, str):
                found = rules.first_match(rules.FOCUS_COMMAND_RULES, command)
                if found:
                    return found[0].name
        return None

    def _track_focus(self, session: SessionContext, area: str | None, now: float) -> None:
        if area is None:
            return
        if area == session.focus_area:
            session.focus_turns += 1
            return
        if session.focus_area:
            session.focus_history.append(FocusRecord(area=session.focus_area, turns=session.focus_turns, resolved_at=now))
            _trim(session.focus_history, MAX_FOCUS_HISTORY)
        session.focus_area = area
        session.focus_turns = 1

    # --- Research and injections ---

    def record_research(self, session_id: str, query: str, task_id: str, confidence: float = 0.5) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.research_history.append(
            SessionResearch(query=query, task_id=task_id, performed_at=self.clock(), confidence=confidence)
        )
        _trim(session.research_history, MAX_RESEARCH_HISTORY)

    def queue_injection(self, session_id: str, injection: PendingInjection) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.pending_injections.append(injection)
        session.pending_injections.sort(key=lambda item: item.priority, reverse=True)
        return True

    def peek_injection(self, session_id: str) -> PendingInjection | None:
        session = self._sessions.get(session_id)
        if session is None or not session.pending_injections:
            return None
        return session.pending_injections[0]

    def pop_injection(self, session_id: str) -> PendingInjection | None:
        session = self._sessions.get(session_id)
        if session is None or not session.pending_injections:
            return None
        injection = session.pending_injections.pop(0)
        if injection.task_id:
            for research in session.research_history:
                if research.task_id == injection.task_id:
                    research.injected = True
        self._append(
            session,
            ConversationEntry(
                kind="injection",
                content=f"[{injection.query}] {injection.summary[:200]}",
                timestamp=self.clock(),
                research_id=injection.task_id,
            ),
        )
        return injection

    def discard_injection(self, session_id: str) -> PendingInjection | None:
        session = self._sessions.get(session_id)
        if session is None or not session.pending_injections:
            return None
        return session.pending_injections.pop(0)

    def record_delivery(self, session_id: str, tokens: int) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.injected_count += 1
        session.injected_tokens += tokens
        session.last_injection_at = self.clock()
        self._persist(session)

    # --- Reads for the trigger engine ---

    def watcher_context(self, session_id: str, max_messages: int = 10) -> WatcherContext | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return WatcherContext(
            session_id=session_id,
            project_path=session.project_path,
            recent_messages=list(session.messages)[-max_messages:],
            topics=list(session.topics)[:20],
            current_task=session.current_task,
            recent_errors=[error.signature for error in session.recent_errors[-5:]],
            research_queries=[item.query for item in session.research_history[-10:]],
        )

    def mark_analyzed(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_analyzed_at = self.clock()

    def stuck_indicator(self, session_id: str, threshold: int | None = None) -> StuckIndicator:
        threshold = self.settings.stuck_threshold if threshold is None else threshold
        session = self._sessions.get(session_id)
        if session is None or not session.focus_area:
            return StuckIndicator(is_stuck=False, focus_area=None, turns=0)
        return StuckIndicator(
            is_stuck=session.focus_turns >= threshold,
            focus_area=session.focus_area,
            turns=session.focus_turns,
        )

    def is_stuck(self, session_id: str, threshold: int | None = None) -> bool:
        return self.stuck_indicator(session_id, threshold).is_stuck

    def should_trigger_strategic_analysis(self, session_id: str, threshold: int | None = None) -> bool:
        threshold = self.settings.strategic_threshold if threshold is None else threshold
        session = self._sessions.get(session_id)
        if session is None or session.tool_uses_since_strategic < threshold:
            return False
        if session.last_strategic_at is None:
            return True
        return self.clock() - session.last_strategic_at >= self.settings.strategic_min_interval_seconds

    def mark_strategic_analysis(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_strategic_at = self.clock()
            session.tool_uses_since_strategic = 0

    def suggest_complementary_areas(self, session: SessionContext) -> list[str]:
        return rules.complementary_areas(
            set(session.tech_stack), set(session.directories_active), set(session.files_touched)
        )

    def strategic_context(self, session_id: str) -> StrategicContext | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return StrategicContext(
            tech_stack=list(session.tech_stack),
            directories_active=list(session.directories_active)[-10:],
            focus_history=list(session.focus_history),
            session_duration=self.clock() - session.started_at,
            tool_use_count=session.tool_use_count,
            complementary_areas=self.suggest_complementary_areas(session),
        )

    def stats(self) -> dict[str, int]:
        sessions = list(self._sessions.values())
        return {
            "total_sessions": len(sessions),
            "active_sessions": sum(1 for s in sessions if s.is_active),
            "total_messages": sum(s.message_count for s in sessions),
            "total_research": sum(len(s.research_history) for s in sessions),
            "pending_injections": sum(len(s.pending_injections) for s in sessions),
        }
