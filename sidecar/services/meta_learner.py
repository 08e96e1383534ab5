"""Learn from injection outcomes: effectiveness scores, source reliability and depth choice."""

from __future__ import annotations

import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal

from loguru import logger

from sidecar.config import Settings, settings as default_settings
from sidecar.models.research import RESEARCH_DEPTHS, ResearchDepth, ResearchSource, SourceQualityEntry
from sidecar.models.session import SessionContext
from sidecar.services.database import ResearchDatabase
from sidecar.services.dedup import tokenize
from sidecar.services.logger import log_event
from sidecar.tools.web_utils import extract_domain

Feedback = Literal["positive", "negative", "neutral"]

_COMPARISON = re.compile(r"\b(vs|versus|compare|comparison|difference|between)\b", re.IGNORECASE)
_HOW_TO = re.compile(r"\b(how to|how do|implement|create|build|setup|configure)\b", re.IGNORECASE)
_SIMPLE_LOOKUP = re.compile(r"\b(what is|definition|meaning|explain)\b", re.IGNORECASE)

IMPLICIT_SCORES: dict[str, float] = {"positive": 0.5, "negative": -0.5, "neutral": 0.0}


@dataclass(slots=True)
class QueryPerformance:
    query: str
    depth: ResearchDepth
    elapsed: float
    successful: bool
    confidence: float
    sources_used: int
    recorded_at: float
    domain: str | None = None
    helpful: bool | None = None


@dataclass(slots=True)
class OutcomeEvaluation:
    injection_id: int
    helpful: bool
    score: float
    reason: str


@dataclass(slots=True)
class DepthRecommendation:
    depth: ResearchDepth
    confidence: float
    reason: str


@dataclass(slots=True)
class ApproachInsights:
    successful_patterns: list[str] = field(default_factory=list)
    failed_patterns: list[str] = field(default_factory=list)
    recommended_sources: list[str] = field(default_factory=list)
    avg_confidence_by_depth: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class FollowupDecision:
    should_inject: bool
    next_level: int
    finding_id: str | None = None


def explicit_score(
    *,
    issue_resolved: bool = False,
    task_completed: bool = False,
    same_error_repeated: bool = False,
    user_ignored: bool = False,
    followup_needed: bool = False,
) -> tuple[float, list[str]]:
    score = 0.0
    reasons: list[str] = []
    if issue_resolved:
        score += 0.5
        reasons.append("error resolved")
    if task_completed:
        score += 0.3
        reasons.append("task completed")
    if same_error_repeated:
        score -= 0.4
        reasons.append("same error repeated")
    if user_ignored:
        score -= 0.2
        reasons.append("user ignored injection")
    if followup_needed:
        score -= 0.1
        reasons.append("followup needed")
    return max(-1.0, min(1.0, score)), reasons


class MetaLearner:
    def __init__(
        self,
        database: ResearchDatabase,
        *,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.database = database
        self.settings = settings or default_settings
        self.clock = clock
        self._history: deque[QueryPerformance] = deque(maxlen=max(self.settings.query_history_limit, 1))

    # --- Outcome evaluation ---

    async def evaluate_outcome(
        self,
        injection_id: int,
        *,
        issue_resolved: bool = False,
        task_completed: bool = False,
        same_error_repeated: bool = False,
        user_ignored: bool = False,
        followup_needed: bool = False,
    ) -> OutcomeEvaluation:
        """Score an injection from explicit outcome signals and propagate it to its sources."""
        score, reasons = explicit_score(
            issue_resolved=issue_resolved,
            task_completed=task_completed,
            same_error_repeated=same_error_repeated,
            user_ignored=user_ignored,
            followup_needed=followup_needed,
        )
        helpful = score > 0
        await self.database.record_effectiveness(injection_id, score, issue_resolved)
        if followup_needed:
            await self.database.mark_followup(injection_id)
        await self._propagate(injection_id, helpful)
        reason = ", ".join(reasons) or "no clear signals"
        log_event("outcome_evaluated", reason, injection_id=injection_id, score=score, helpful=helpful)
        return OutcomeEvaluation(injection_id=injection_id, helpful=helpful, score=score, reason=reason)

    async def _propagate(self, injection_id: int, helpful: bool) -> None:
        entry = await self.database.get_injection(injection_id)
        if entry is None:
            return
        finding = await self.database.get_finding(entry.finding_id)
        if finding is None:
            return
        self.mark_helpful(finding.query, helpful)
        await self.update_source_scores(finding.sources, finding.domain, helpful)

    async def detect_implicit_feedback(self, session: SessionContext, *, stuck: bool) -> list[tuple[int, Feedback]]:
        """Infer outcomes of injections old enough to judge but never explicitly rated."""
        cutoff = self.clock() - self.settings.feedback_delay_seconds
        pending = await self.database.unevaluated_injections(session.session_id, injected_before=cutoff)
        results: list[tuple[int, Feedback]] = []
        for injection in pending:
            if injection.id is None:
                continue
            finding = await self.database.get_finding(injection.finding_id)
            if finding is None:
                continue

            errors = [e.signature for e in session.recent_errors if e.at > injection.injected_at]
            query_terms = tokenize(finding.query)
            related = any(query_terms & tokenize(error) for error in errors)

            feedback: Feedback = "neutral"
            if not errors:
                feedback = "positive"
            elif related and session.error_repeats > 2:
                feedback = "negative"
            elif stuck and injection.injection_level == 1:
                feedback = "negative"
                await self.database.mark_followup(injection.id)

            score = IMPLICIT_SCORES[feedback]
            await self.database.record_effectiveness(injection.id, score, feedback == "positive")
            if feedback != "neutral":
                self.mark_helpful(finding.query, feedback == "positive")
                await self.update_source_scores(finding.sources, finding.domain, feedback == "positive")
            results.append((injection.id, feedback))

        if results:
            logger.debug(
                f"Implicit feedback for {session.session_id}: "
                + ", ".join(f"{injection_id}={feedback}" for injection_id, feedback in results)
            )
        return results

    async def should_inject_more_detail(
        self,
        finding_id: str,
        session_id: str,
        *,
        same_error_repeated: bool,
        stuck: bool,
        retry_count: int,
    ) -> FollowupDecision:
        last = await self.database.last_injection_for_finding(finding_id, session_id)
        if last is None:
            return FollowupDecision(False, 2, finding_id)
        if last.injection_level >= 3:
            return FollowupDecision(False, 3, finding_id)
        should = same_error_repeated or (stuck and retry_count >= 2) or last.followup_injected
        return FollowupDecision(should, last.injection_level + 1, finding_id)

    # --- Query performance ---

    def record_query_performance(
        self,
        query: str,
        depth: ResearchDepth,
        *,
        elapsed: float,
        successful: bool,
        confidence: float,
        sources_used: int,
        domain: str | None = None,
    ) -> QueryPerformance:
        record = QueryPerformance(
            query=query,
            depth=depth,
            elapsed=elapsed,
            successful=successful,
            confidence=confidence,
            sources_used=sources_used,
            recorded_at=self.clock(),
            domain=domain,
        )
        self._history.append(record)
        return record

    def mark_helpful(self, query: str, helpful: bool) -> bool:
        for record in reversed(self._history):
            if record.query == query:
                record.helpful = helpful
                return True
        return False

    def performance_by_depth(self) -> dict[str, dict[str, float]]:
        result: dict[str, dict[str, float]] = {}
        for depth in RESEARCH_DEPTHS:
            records = [r for r in self._history if r.depth == depth]
            if not records:
                result[depth] = {"avg_time": 0.0, "success_rate": 0.0, "avg_confidence": 0.0, "samples": 0}
                continue
            result[depth] = {
                "avg_time": sum(r.elapsed for r in records) / len(records),
                "success_rate": sum(1 for r in records if r.successful) / len(records),
                "avg_confidence": sum(r.confidence for r in records) / len(records),
                "samples": len(records),
            }
        return result

    # --- Source quality ---

    async def update_source_scores(
        self, sources: Iterable[ResearchSource], topic: str | None, helpful: bool
    ) -> list[SourceQualityEntry]:
        updated: list[SourceQualityEntry] = []
        seen: set[str] = set()
        for source in sources:
            domain = extract_domain(source.url)
            if not domain or domain in seen:
                continue
            seen.add(domain)
            updated.append(await self.database.record_source_citation(domain, topic, helpful, self.clock()))
        return updated

    async def reliable_sources(self, limit: int = 10) -> list[SourceQualityEntry]:
        return await self.database.reliable_sources(None, limit=limit)

    # --- Recommendations ---

    def recommend_depth(self, query: str, domain: str | None = None) -> DepthRecommendation:
        words = len(query.split())
        comparison = bool(_COMPARISON.search(query))
        how_to = bool(_HOW_TO.search(query))

        recommendation = DepthRecommendation("medium", 0.5, "default recommendation")
        if _SIMPLE_LOOKUP.search(query) and words < 8:
            recommendation = DepthRecommendation("quick", 0.7, "simple lookup detected")
        elif comparison or (how_to and words > 15):
            reason = "comparison detected" if comparison else "complex implementation detected"
            recommendation = DepthRecommendation("deep", 0.7, reason)
        elif how_to:
            recommendation = DepthRecommendation("medium", 0.6, "how-to question detected")

        if domain:
            learned = self._learned_depth(domain)
            if learned is not None:
                recommendation = learned
        return recommendation

    def _learned_depth(self, domain: str) -> DepthRecommendation | None:
        rated = [r for r in self._history if r.domain == domain and r.helpful is not None]
        if len(rated) < 5:
            return None
        best_depth: ResearchDepth | None = None
        best_rate = 0.0
        for depth in RESEARCH_DEPTHS:
            samples = [r for r in rated if r.depth == depth]
            if len(samples) < 2:
                continue
            rate = sum(1 for r in samples if r.helpful) / len(samples)
            if rate > best_rate:
                best_depth, best_rate = depth, rate
        if best_depth is None or best_rate <= 0.6:
            return None
        return DepthRecommendation(
            best_depth,
            min(0.9, 0.5 + best_rate / 2),
            f"learned from {len(rated)} past queries in {domain} domain",
        )

    async def analyze_approach_patterns(self) -> ApproachInsights:
        by_depth = self.performance_by_depth()
        insights = ApproachInsights(
            avg_confidence_by_depth={depth: values["avg_confidence"] for depth, values in by_depth.items()}
        )
        succeeded = [r for r in self._history if r.helpful is True]
        failed = [r for r in self._history if r.helpful is False]

        if len(succeeded) >= 3:
            counts = {depth: sum(1 for r in succeeded if r.depth == depth) for depth in RESEARCH_DEPTHS}
            depth, count = max(counts.items(), key=lambda item: item[1])
            if count > len(succeeded) * 0.4:
                insights.successful_patterns.append(
                    f"{depth} depth works well ({count}/{len(succeeded)} successes)"
                )
        if len(failed) >= 3:
            avg_sources = sum(r.sources_used for r in failed) / len(failed)
            if avg_sources < 2:
                insights.failed_patterns.append("failed queries often had fewer than 2 sources")

        insights.recommended_sources = [entry.domain for entry in await self.reliable_sources(limit=5)]
        return insights
