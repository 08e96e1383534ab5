"""Trigger decisions: when does watching a session justify external research?"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

from sidecar import rules
from sidecar.config import Settings, settings as default_settings
from sidecar.llm_client import Oracle, extract_json_object
from sidecar.models.research import ResearchType, TriggerSource
from sidecar.models.session import SessionContext
from sidecar.services.dedup import DeduplicationEngine
from sidecar.services.logger import log_event
from sidecar.services.prompt_store import PromptCatalog
from sidecar.services.session_store import SessionStore

RESEARCH_TYPES: tuple[str, ...] = ("direct", "alternative", "validation")
DIGEST_ENTRIES = 8


@dataclass(slots=True)
class WatcherDecision:
    should_research: bool
    research_type: ResearchType = "direct"
    confidence: float = 0.0
    priority: int = 0
    reason: str = ""
    query: str | None = None
    alternative_hint: str | None = None
    blocked_by: str | None = None
    source: str = "oracle"

    @classmethod
    def no_research(cls, reason: str) -> WatcherDecision:
        return cls(should_research=False, confidence=0.0, priority=0, reason=reason, source="rule")


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def extract_error_query(text: str) -> str:
    found = rules.first_match(rules.ERROR_QUERY_RULES, text)
    if found is not None:
        rule, match = found
        subject = " ".join(match.group(1).split())[:100]
        if rule.name.startswith("missing_module"):
            return f"install or fix {subject} module"
        return f"fix {subject}"
    first_line = next((line.strip() for line in text.splitlines() if line.strip()), text.strip())
    return f"troubleshoot {first_line[:100]}"


def extract_deprecation_query(text: str) -> str:
    found = rules.first_match(rules.DEPRECATION_QUERY_RULES, text)
    if found is None:
        return "deprecated API migration guide"
    rule, match = found
    subject = match.group(1)
    if rule.name == "named_deprecated":
        return f"{subject} deprecated alternative replacement"
    return f"{subject} replacement migration guide"


def parse_decision(raw_text: str, *, fallback_query: str | None = None) -> WatcherDecision:
    """Turn an oracle reply into a decision, with a keyword heuristic for malformed replies."""
    payload = extract_json_object(raw_text)
    if payload is None:
        lowered = raw_text.lower()
        wants = "research" in lowered and "no research" not in lowered
        return WatcherDecision(
            should_research=wants and fallback_query is not None,
            research_type="direct",
            confidence=0.4,
            priority=5,
            reason="heuristic: unparseable oracle reply",
            query=fallback_query,
            source="heuristic",
        )

    research_type = payload.get("researchType", payload.get("research_type"))
    if research_type not in RESEARCH_TYPES:
        research_type = "direct"
    query = str(payload.get("query") or "").strip() or None
    should = bool(payload.get("shouldResearch", payload.get("should_research", False)))
    reason = str(payload.get("reason") or "")
    if should and query is None:
        should = False
        reason = reason or "oracle asked for research without a query"
    return WatcherDecision(
        should_research=should,
        research_type=research_type,
        confidence=_clamp(payload.get("confidence"), 0.0, 1.0, 0.0),
        priority=int(_clamp(payload.get("priority"), 1, 10, 5)),
        reason=reason,
        query=query,
        alternative_hint=payload.get("alternativeHint") or None,
        blocked_by=payload.get("blockedBy") or None,
    )


class ConversationWatcher:
    def __init__(
        self,
        sessions: SessionStore,
        dedup: DeduplicationEngine,
        oracle: Oracle | None,
        *,
        prompts: PromptCatalog | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions = sessions
        self.dedup = dedup
        self.oracle = oracle
        self.prompts = prompts or PromptCatalog()
        self.settings = settings or default_settings
        self.clock = clock
        self._last_trigger: dict[str, float] = {}

    # --- Cooldown ---

    def cooldown_remaining(self, session_id: str) -> float:
        last = self._last_trigger.get(session_id)
        if last is None:
            return 0.0
        return max(0.0, self.settings.trigger_cooldown_seconds - (self.clock() - last))

    def reset_cooldown(self, session_id: str) -> None:
        self._last_trigger.pop(session_id, None)

    def confidence_floor(self, research_type: str) -> float:
        return {
            "direct": self.settings.min_confidence_direct,
            "alternative": self.settings.min_confidence_alternative,
            "validation": self.settings.min_confidence_validation,
        }.get(research_type, self.settings.min_confidence_direct)

    def apply_floor(self, decision: WatcherDecision) -> WatcherDecision:
        floor = self.confidence_floor(decision.research_type)
        if decision.should_research and decision.confidence < floor:
            decision.should_research = False
            decision.reason = f"{decision.reason} (confidence {decision.confidence:.2f} below {floor:.2f})".strip()
        return decision

    def record_trigger(self, session_id: str, decision: WatcherDecision) -> None:
        self._last_trigger[session_id] = self.clock()
        log_event(
            "research_triggered",
            decision.reason,
            session_id=session_id,
            query=decision.query,
            research_type=decision.research_type,
            confidence=decision.confidence,
            priority=decision.priority,
            source=decision.source,
        )

    # --- Zero-latency rules ---

    def quick_analyze(self, session_id: str) -> WatcherDecision | None:
        session = self.sessions.get(session_id)
        if session is None or not session.messages:
            return None
        # Injections delivered on this event sit after the tool output.
        latest = next((entry for entry in reversed(session.messages) if entry.kind != "injection"), None)
        if latest is None or latest.kind != "tool_output" or not latest.content:
            return None
        text = latest.content

        if rules.first_match(rules.QUICK_ERROR_RULES, text):
            return WatcherDecision(
                should_research=True,
                research_type="direct",
                confidence=0.6,
                priority=7,
                reason="error detected in tool output",
                query=extract_error_query(text),
                source="quick",
            )
        if rules.first_match(rules.DEPRECATION_RULES, text):
            return WatcherDecision(
                should_research=True,
                research_type="validation",
                confidence=0.5,
                priority=5,
                reason="deprecation warning in tool output",
                query=extract_deprecation_query(text),
                source="quick",
            )
        return None

    def check_proactive_triggers(self, session_id: str) -> WatcherDecision | None:
        session = self.sessions.get(session_id)
        if session is None or not self.settings.autonomous_research_enabled:
            return None
        if self.cooldown_remaining(session_id) > 0:
            return None

        stuck = self.sessions.stuck_indicator(session_id)
        if stuck.is_stuck and stuck.focus_area:
            query = f"alternative approaches to {stuck.focus_area}"
            if self.dedup.has_recent_similar_research(session, query):
                return None
            decision = WatcherDecision(
                should_research=True,
                research_type="alternative",
                confidence=0.7,
                priority=6,
                reason=f"stuck on {stuck.focus_area} for {stuck.turns} turns",
                query=query,
                alternative_hint=f"Consider a different approach to {stuck.focus_area}",
                source="proactive",
            )
            self.record_trigger(session_id, decision)
            return decision

        if self.sessions.should_trigger_strategic_analysis(session_id):
            context = self.sessions.strategic_context(session_id)
            self.sessions.mark_strategic_analysis(session_id)
            if context is None or not context.complementary_areas:
                return None
            area = context.complementary_areas[0]
            tech = ", ".join(context.tech_stack[:3])
            query = f"{area} for {tech} project" if tech else f"{area} best practices"
            if self.dedup.has_recent_similar_research(session, query):
                return None
            decision = WatcherDecision(
                should_research=True,
                research_type="validation",
                confidence=0.5,
                priority=4,
                reason=f"strategic check after {context.tool_use_count} tool uses",
                query=query,
                source="proactive",
            )
            self.record_trigger(session_id, decision)
            return decision
        return None

    # --- Oracle analysis ---

    async def analyze(self, session_id: str, trigger: TriggerSource = TriggerSource.TOOL_OUTPUT) -> WatcherDecision:
        if trigger == TriggerSource.USER_PROMPT:
            return WatcherDecision.no_research("user prompts never trigger passive research")
        if not self.settings.autonomous_research_enabled:
            return WatcherDecision.no_research("autonomous research disabled")
        session = self.sessions.get(session_id)
        if session is None:
            return WatcherDecision.no_research("unknown session")
        remaining = self.cooldown_remaining(session_id)
        if remaining > 0:
            return WatcherDecision.no_research(f"cooldown active ({remaining:.0f}s left)")
        if self.dedup.recent_activity_researched(session):
            return WatcherDecision.no_research("recent activity already researched")
        if self.oracle is None:
            return WatcherDecision.no_research("oracle unavailable")

        prompt = self.build_prompt(session)
        try:
            raw = await self.oracle.complete(prompt, caller="watcher.analyze")
        except Exception as exc:
            logger.warning(f"Watcher oracle call failed for {session_id}: {exc!r}")
            return WatcherDecision.no_research("oracle error")
        finally:
            self.sessions.mark_analyzed(session_id)

        fallback_query = (
            extract_error_query(session.recent_errors[-1].signature) if session.recent_errors else None
        )
        decision = self.apply_floor(parse_decision(raw, fallback_query=fallback_query))
        if decision.should_research and decision.query and self.dedup.has_recent_similar_research(
            session, decision.query
        ):
            return WatcherDecision.no_research("similar research already performed")
        if decision.should_research:
            self.record_trigger(session_id, decision)
        return decision

    def build_prompt(self, session: SessionContext) -> str:
        stuck = self.sessions.stuck_indicator(session.session_id)
        strategic = self.sessions.strategic_context(session.session_id)
        recent = list(session.messages)[-DIGEST_ENTRIES:]
        activity = "\n".join(
            f"[{entry.kind}{'/' + entry.tool_name if entry.tool_name else ''}] {entry.content[:300]}"
            for entry in recent
        )
        return self.prompts.render(
            "watcher.analysis",
            current_task=session.current_task or "unknown",
            topics=", ".join(list(session.topics)[:20]) or "none",
            tech_stack=", ".join(session.tech_stack) or "unknown",
            focus=f"{session.focus_area} ({session.focus_turns} turns)" if session.focus_area else "none",
            stuck="yes" if stuck.is_stuck else "no",
            complementary=", ".join(strategic.complementary_areas) if strategic else "none",
            recent_errors="\n".join(f"- {e.signature}" for e in session.recent_errors[-5:]) or "- none",
            prior_research="\n".join(f"- {r.query}" for r in session.research_history[-10:]) or "- none",
            recent_activity=activity or "(no activity)",
        )
