from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, AsyncGenerator, Callable
from uuid import uuid4

from loguru import logger

from sidecar.agents.research_executor import ResearchExecutor, strip_years
from sidecar.agents.watcher import ConversationWatcher, WatcherDecision
from sidecar.config import Settings, settings as default_settings
from sidecar.llm_client import Oracle, create_oracle
from sidecar.models.events import EventType, TaskEvent
from sidecar.models.research import (
    ResearchDepth,
    ResearchFinding,
    ResearchSource,
    ResearchTask,
    TaskStatus,
    TriggerSource,
)
from sidecar.models.schemas import OutcomeReport, SettingsUpdate
from sidecar.rules import infer_domain
from sidecar.services.background import BackgroundRunner
from sidecar.services.database import ResearchDatabase
from sidecar.services.dedup import DeduplicationEngine
from sidecar.services.injection import InjectionManager
from sidecar.services.meta_learner import MetaLearner, OutcomeEvaluation
from sidecar.services.prompt_store import PromptCatalog
from sidecar.services.session_store import SessionStore
from sidecar.services.task_queue import QueueFullError, TaskQueue
from sidecar.services.vector_index import FindingVectorIndex
from sidecar.tools.content_extractor import ContentExtractor, HttpContentExtractor
from sidecar.tools.page_fetch import FetchedPage, FetchError, key_points, shape_page
from sidecar.tools.search_provider import SearchAdapter, load_adapters
from sidecar.tools.url_cache import UrlCache
from sidecar.tools.web_utils import extract_domain, is_valid_url

SUBSCRIBER_BUFFER = 100


@dataclass(slots=True)
class EventResponse:
    injection: str | None = None
    research_queued: bool = False
    queued_query: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SessionOrchestrator:
    """Composition root wiring session tracking, triggers, research, injection and learning.

    Flow per tool-use event:
      1. Update the session context
      2. Deliver a pending injection if the budget allows
      3. Quick rule check; a hit enqueues research in the background
      4. Otherwise schedule proactive and oracle analysis after the response

    Completed tasks are gated by the injection manager and queued on the
    session for the next event.
    """

    def __init__(
        self,
        *,
        database: ResearchDatabase,
        sessions: SessionStore,
        dedup: DeduplicationEngine,
        watcher: ConversationWatcher,
        queue: TaskQueue,
        injections: InjectionManager,
        learner: MetaLearner,
        url_cache: UrlCache,
        extractor: ContentExtractor,
        runner: BackgroundRunner,
        vector_index: FindingVectorIndex | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.database = database
        self.sessions = sessions
        self.dedup = dedup
        self.watcher = watcher
        self.queue = queue
        self.injections = injections
        self.learner = learner
        self.url_cache = url_cache
        self.extractor = extractor
        self.runner = runner
        self.vector_index = vector_index
        self.settings = settings or default_settings
        self.clock = clock
        self._sync_tasks: set[str] = set()
        self._subscribers: set[asyncio.Queue[TaskEvent]] = set()
        self.queue.add_listener(self._on_task_event)

    # --- Lifecycle ---

    async def start(self) -> None:
        await self.database.connect()
        if self.vector_index is not None and self.settings.semantic_dedup_enabled:
            await self.vector_index.initialize()
        evicted = await self.url_cache.evict_expired()
        if evicted:
            logger.info(f"Evicted {evicted} expired cached pages")
        removed = await self.database.cleanup(self.clock() - self.settings.data_retention_days * 86400)
        if any(removed.values()):
            logger.info(f"Removed rows past retention: {removed}")
        await self.sessions.start()
        await self.queue.start()
        logger.info("Research sidecar started")

    async def stop(self) -> None:
        await self.sessions.stop()
        await self.queue.stop()
        await self.runner.drain(timeout=5.0)
        await self.runner.shutdown()
        await self.database.close()
        logger.info("Research sidecar stopped")

    # --- Event ingestion (synchronous hot path) ---

    def handle_user_prompt(self, session_id: str, prompt: str, project_path: str | None = None) -> EventResponse:
        self.sessions.add_user_prompt(session_id, prompt, project_path)
        delivery = self.injections.deliver(session_id)
        return EventResponse(
            injection=delivery.text if delivery else None,
            reason="user prompts never trigger passive research",
        )

    def handle_tool_use(
        self,
        session_id: str,
        tool_name: str,
        tool_input: dict[str, Any] | None,
        tool_output: str | None,
        project_path: str | None = None,
    ) -> EventResponse:
        self.sessions.add_tool_use(session_id, tool_name, tool_input, tool_output, project_path)
        delivery = self.injections.deliver(session_id)
        response = EventResponse(injection=delivery.text if delivery else None)

        decision = self.watcher.quick_analyze(session_id)
        if decision is not None and decision.should_research and decision.query:
            claimed, reason = self._claim(session_id, decision)
            response.reason = reason
            if claimed:
                self.watcher.record_trigger(session_id, decision)
                self.runner.submit(
                    self._start_research(session_id, decision, TriggerSource.TOOL_OUTPUT),
                    name=f"quick-research-{session_id}",
                )
                response.research_queued = True
                response.queued_query = decision.query
            return response

        self.runner.submit(self._background_analysis(session_id), name=f"analysis-{session_id}")
        response.reason = "analysis scheduled"
        return response

    def _claim(self, session_id: str, decision: WatcherDecision) -> tuple[bool, str]:
        if not self.settings.autonomous_research_enabled:
            return False, "autonomous research disabled"
        remaining = self.watcher.cooldown_remaining(session_id)
        if remaining > 0:
            return False, f"cooldown active ({remaining:.0f}s left)"
        session = self.sessions.get(session_id)
        if session is not None and self.dedup.has_recent_similar_research(session, decision.query):
            return False, "similar research already performed"
        if not self.dedup.begin_inflight(session_id, decision.query):
            return False, "similar research already in flight"
        return True, decision.reason

    # --- Background work ---

    async def _background_analysis(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return

        decision = self.watcher.check_proactive_triggers(session_id)
        trigger = TriggerSource.SCHEDULED
        if decision is None:
            decision = await self.watcher.analyze(session_id, TriggerSource.TOOL_OUTPUT)
            trigger = TriggerSource.TOOL_OUTPUT
        if decision.should_research and decision.query and self.dedup.begin_inflight(session_id, decision.query):
            await self._start_research(session_id, decision, trigger)

        await self.learner.detect_implicit_feedback(session, stuck=self.sessions.is_stuck(session_id))
        await self._escalate_disclosure(session_id)

    async def _start_research(self, session_id: str, decision: WatcherDecision, trigger: TriggerSource) -> None:
        query = decision.query
        depth = self.learner.recommend_depth(query, infer_domain(query)).depth
        context = decision.alternative_hint or decision.reason or None
        try:
            task = await self.queue.enqueue(
                query,
                depth=depth,
                trigger=trigger,
                session_id=session_id,
                priority=decision.priority,
                context=context,
            )
        except QueueFullError as exc:
            self.dedup.end_inflight(session_id, query)
            logger.warning(f"Research for {session_id} dropped: {exc}")
            return
        if task.query != query or task.status not in (TaskStatus.QUEUED, TaskStatus.RUNNING):
            self.dedup.end_inflight(session_id, query)
        self.sessions.record_research(session_id, task.query, task.id, decision.confidence)

    async def _escalate_disclosure(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        history = await self.database.injection_history(session_id, limit=1)
        if not history:
            return
        last = history[0]
        errors_since = any(error.at > last.injected_at for error in session.recent_errors)
        decision = await self.learner.should_inject_more_detail(
            last.finding_id,
            session_id,
            same_error_repeated=errors_since and session.error_repeats >= 1,
            stuck=self.sessions.is_stuck(session_id),
            retry_count=session.error_repeats,
        )
        if decision.should_inject:
            await self.injections.queue_followup(session_id, last.finding_id, decision.next_level)

    async def _on_task_event(self, event: TaskEvent, task: ResearchTask) -> None:
        for subscriber in list(self._subscribers):
            if subscriber.full():
                subscriber.get_nowait()
            subscriber.put_nowait(event)

        if event.event not in (EventType.TASK_COMPLETED, EventType.TASK_FAILED):
            return
        if task.session_id:
            self.dedup.end_inflight(task.session_id, task.query)

        elapsed = (task.completed_at or self.clock()) - (task.started_at or task.created_at)
        result = task.result
        self.learner.record_query_performance(
            task.query,
            task.depth,
            elapsed=elapsed,
            successful=event.event == EventType.TASK_COMPLETED,
            confidence=result.confidence if result else 0.0,
            sources_used=len(result.sources) if result else 0,
            domain=result.domain if result else infer_domain(task.query),
        )

        if event.event == EventType.TASK_COMPLETED and task.session_id and task.id not in self._sync_tasks:
            await self.injections.admit(task.session_id, task)
        self._sync_tasks.discard(task.id)

    async def stream_events(self) -> AsyncGenerator[TaskEvent, None]:
        """Yield task lifecycle events as they happen until the consumer stops iterating."""
        subscriber: asyncio.Queue[TaskEvent] = asyncio.Queue(maxsize=SUBSCRIBER_BUFFER)
        self._subscribers.add(subscriber)
        try:
            while True:
                yield await subscriber.get()
        finally:
            self._subscribers.discard(subscriber)

    # --- Manual research ---

    async def request_research(
        self,
        query: str,
        *,
        depth: ResearchDepth | None = None,
        session_id: str | None = None,
        priority: int = 5,
        context: str | None = None,
        wait: bool = False,
        timeout: float | None = None,
    ) -> ResearchTask:
        """Queue deliberate research; with wait=True block until it finishes or the timeout elapses."""
        clean = strip_years(query)
        if len(clean) < 3:
            raise ValueError("query too short after cleanup")
        depth = depth or self.learner.recommend_depth(clean, infer_domain(clean)).depth
        task = await self.queue.enqueue(
            clean,
            depth=depth,
            trigger=TriggerSource.MANUAL,
            session_id=session_id,
            priority=priority,
            context=context,
        )
        if session_id and self.sessions.get(session_id) is not None:
            self.sessions.record_research(session_id, task.query, task.id)
        if not wait:
            return task
        if task.status in (TaskStatus.QUEUED, TaskStatus.RUNNING):
            self._sync_tasks.add(task.id)
        return await self.queue.wait_for(task.id, timeout or self.settings.depth_timeout(depth))

    # --- Direct page fetch ---

    async def fetch_url(
        self,
        url: str,
        *,
        query: str | None = None,
        max_length: int | None = None,
        store: bool = True,
        session_id: str | None = None,
    ) -> FetchedPage:
        """Fetch one page through the URL cache, optionally focused on a query and kept as a finding."""
        url = url.strip()
        if url and "://" not in url:
            url = f"https://{url}"
        if not is_valid_url(url):
            raise ValueError(f"invalid URL: {url or '(empty)'}")
        max_length = max_length or self.settings.fetch_max_length

        cached = await self.url_cache.get(url)
        try:
            entry = cached or await self.url_cache.fetch(
                url, self.extractor, timeout=self.settings.fetch_timeout_seconds
            )
        except ValueError:
            raise
        except Exception as exc:
            raise FetchError(f"could not fetch {url}: {exc!r}") from exc
        if not entry.content.strip():
            raise ValueError(f"page returned empty content: {url}")
        title = entry.title or extract_domain(url)
        page = shape_page(url, title, entry.content, query=query, max_length=max_length)
        page.cached = cached is not None

        if store:
            now = self.clock()
            finding = ResearchFinding(
                id=uuid4().hex,
                query=query or f"Fetched: {url}",
                summary=f"Content from {title}: {page.content[:200]}...",
                created_at=now,
                key_points=key_points(page.content),
                full_content=page.content,
                sources=[ResearchSource(title=title, url=url, snippet=page.content[:300], relevance=1.0)],
                domain=infer_domain(f"{query or ''} {title}"),
                depth="quick",
                confidence=0.95,
                last_accessed_at=now,
                project_path=self._project_path(session_id),
            )
            await self.database.save_finding(finding)
            page.finding_id = finding.id
        logger.info(
            f"Fetched {url}: {len(page.content)} chars"
            f"{' (truncated)' if page.truncated else ''}{' from cache' if page.cached else ''}"
        )
        return page

    def _project_path(self, session_id: str | None) -> str | None:
        session = self.sessions.get(session_id) if session_id else None
        return session.project_path if session else None

    # --- Sessions ---

    def end_session(self, session_id: str) -> dict[str, Any] | None:
        session = self.sessions.end_session(session_id)
        self.watcher.reset_cooldown(session_id)
        return session.snapshot() if session else None

    def session_snapshot(self, session_id: str) -> dict[str, Any] | None:
        session = self.sessions.get(session_id)
        return session.snapshot() if session else None

    async def stored_session(self, session_id: str) -> dict[str, Any] | None:
        """The last persisted record of a session, including ended and pruned ones."""
        return await self.database.get_session(session_id)

    # --- Queries ---

    async def status(self) -> dict[str, Any]:
        return {
            "status": "running",
            "autonomous_research_enabled": self.settings.autonomous_research_enabled,
            "oracle_available": self.watcher.oracle is not None,
            "semantic_dedup": bool(self.vector_index and self.vector_index.is_ready()),
            "sessions": self.sessions.stats(),
            "queue": self.queue.stats(),
            "tasks": await self.database.task_counts(),
            "injections": await self.database.injection_stats(),
            "url_cache": await self.url_cache.stats(),
            "background_pending": self.runner.pending,
        }

    async def list_tasks(self, limit: int = 50, status: TaskStatus | None = None) -> list[ResearchTask]:
        return await self.database.list_tasks(limit=limit, status=status)

    async def get_task(self, task_id: str) -> ResearchTask | None:
        return await self.queue.get_task(task_id)

    async def search_tasks(self, text: str, limit: int = 20) -> list[ResearchTask]:
        return await self.database.search_tasks(text, limit=limit)

    async def list_findings(
        self, limit: int = 20, *, domain: str | None = None, text: str | None = None
    ) -> list[ResearchFinding]:
        if text:
            return await self.database.search_findings(text, limit=limit)
        if domain:
            return await self.database.findings_by_domain(domain, limit=limit)
        return await self.database.recent_findings(limit=limit)

    async def get_finding(self, finding_id: str, level: int = 1) -> dict[str, Any] | None:
        finding = await self.database.get_finding(finding_id, touch_at=self.clock())
        if finding is None:
            return None
        payload: dict[str, Any] = {
            "id": finding.id,
            "query": finding.query,
            "summary": finding.summary,
            "domain": finding.domain,
            "depth": finding.depth,
            "confidence": finding.confidence,
            "created_at": finding.created_at,
            "sources": [source.to_dict() for source in finding.sources],
            "level": level,
        }
        if level >= 2:
            payload["key_points"] = list(finding.key_points)
        if level >= 3:
            payload["full_content"] = finding.full_content
        return payload

    async def learning_insights(self) -> dict[str, Any]:
        insights = await self.learner.analyze_approach_patterns()
        return {
            "performance_by_depth": self.learner.performance_by_depth(),
            "successful_patterns": insights.successful_patterns,
            "failed_patterns": insights.failed_patterns,
            "recommended_sources": insights.recommended_sources,
            "avg_confidence_by_depth": insights.avg_confidence_by_depth,
        }

    # --- Outcomes ---

    async def record_outcome(self, report: OutcomeReport) -> OutcomeEvaluation | None:
        entry = await self.database.get_injection(report.injection_id)
        if entry is None or entry.session_id != report.session_id:
            return None
        return await self.learner.evaluate_outcome(
            report.injection_id,
            issue_resolved=report.issue_resolved,
            task_completed=report.task_completed,
            same_error_repeated=report.same_error_repeated,
            user_ignored=report.user_ignored,
            followup_needed=report.followup_needed,
        )

    # --- Runtime settings ---

    def get_settings(self) -> dict[str, Any]:
        return {name: getattr(self.settings, name) for name in SettingsUpdate.model_fields}

    def update_settings(self, update: SettingsUpdate) -> dict[str, Any]:
        changes = update.model_dump(exclude_none=True)
        for name, value in changes.items():
            setattr(self.settings, name, value)
        if changes:
            logger.info(f"Runtime settings updated: {changes}")
        return self.get_settings()


def create_orchestrator(
    settings: Settings | None = None,
    *,
    adapters: list[SearchAdapter] | None = None,
    oracle: Oracle | None = None,
    extractor: ContentExtractor | None = None,
    database: ResearchDatabase | None = None,
    vector_index: FindingVectorIndex | None = None,
    clock: Callable[[], float] = time.time,
) -> SessionOrchestrator:
    """Build one instance of every component and wire them together."""
    settings = settings or default_settings
    oracle = oracle if oracle is not None else create_oracle(settings)
    if vector_index is None and settings.semantic_dedup_enabled:
        vector_index = FindingVectorIndex(settings.chroma_persist_dir)

    runner = BackgroundRunner()
    prompts = PromptCatalog()
    database = database or ResearchDatabase(settings.database_path)
    sessions = SessionStore(database=database, runner=runner, settings=settings, clock=clock)
    dedup = DeduplicationEngine(database=database, vector_index=vector_index, settings=settings, clock=clock)
    url_cache = UrlCache(database, settings=settings, clock=clock)
    extractor = extractor or HttpContentExtractor(max_chars=settings.page_content_max_chars)
    if adapters is None:
        adapters = load_adapters(settings.search_adapter_paths)
    executor = ResearchExecutor(
        adapters,
        extractor=extractor,
        url_cache=url_cache,
        database=database,
        oracle=oracle,
        dedup=dedup,
        vector_index=vector_index,
        prompts=prompts,
        settings=settings,
        clock=clock,
    )
    queue = TaskQueue(database, executor, runner=runner, settings=settings, clock=clock)
    watcher = ConversationWatcher(sessions, dedup, oracle, prompts=prompts, settings=settings, clock=clock)
    injections = InjectionManager(
        sessions,
        database=database,
        oracle=oracle,
        task_queue=queue,
        runner=runner,
        prompts=prompts,
        settings=settings,
        clock=clock,
    )
    learner = MetaLearner(database, settings=settings, clock=clock)
    return SessionOrchestrator(
        database=database,
        sessions=sessions,
        dedup=dedup,
        watcher=watcher,
        queue=queue,
        injections=injections,
        learner=learner,
        url_cache=url_cache,
        extractor=extractor,
        runner=runner,
        vector_index=vector_index,
        settings=settings,
        clock=clock,
    )
