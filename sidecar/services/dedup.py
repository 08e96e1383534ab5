from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Literal

from loguru import logger

from sidecar.config import Settings, settings as default_settings
from sidecar.models.session import SessionContext
from sidecar.services.database import ResearchDatabase
from sidecar.services.vector_index import VectorIndex

_PUNCTUATION = re.compile(r"[^\w\s]")


def tokenize(text: str) -> set[str]:
    """Lowercased words longer than three characters, punctuation removed."""
    cleaned = _PUNCTUATION.sub(" ", text.lower())
    return {word for word in cleaned.split() if len(word) > 3}


def jaccard(a: str | set[str], b: str | set[str]) -> float:
    left = tokenize(a) if isinstance(a, str) else a
    right = tokenize(b) if isinstance(b, str) else b
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def normalize_query(query: str) -> str:
    return " ".join(sorted(tokenize(query)))


@dataclass(slots=True)
class DuplicateMatch:
    method: Literal["semantic", "lexical"]
    similarity: float
    matched_query: str
    finding_id: str | None = None


class DeduplicationEngine:
    """Decides whether a candidate query repeats recent or in-flight research."""

    def __init__(
        self,
        *,
        database: ResearchDatabase | None = None,
        vector_index: VectorIndex | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.database = database
        self.vector_index = vector_index
        self.settings = settings or default_settings
        self.clock = clock
        self._inflight: dict[str, dict[str, str]] = {}

    # --- Lexical ---

    def matches_history(
        self, query: str, history: Iterable[tuple[str, float]], *, window: float | None = None
    ) -> str | None:
        """Return the first history query within the window that the candidate repeats."""
        window = self.settings.recent_research_window_seconds if window is None else window
        cutoff = self.clock() - window
        tokens = tokenize(query)
        for previous, at in history:
            if at < cutoff:
                continue
            if jaccard(tokens, previous) > self.settings.history_similarity_threshold:
                return previous
        return None

    def has_recent_similar_research(
        self, session: SessionContext, query: str, *, max_age: float | None = None
    ) -> bool:
        max_age = self.settings.recent_research_window_seconds if max_age is None else max_age
        cutoff = self.clock() - max_age
        tokens = tokenize(query)
        return any(
            item.performed_at >= cutoff
            and jaccard(tokens, item.query) > self.settings.session_similarity_threshold
            for item in session.research_history
        )

    def recent_activity_researched(self, session: SessionContext, *, entries: int = 5) -> bool:
        """True when the last few window entries restate research the session already has."""
        recent = list(session.messages)[-entries:]
        if not recent:
            return False
        content = " ".join(entry.content for entry in recent)
        return self.has_recent_similar_research(session, content)

    # --- Semantic / store-backed ---

    async def find_duplicate(self, query: str, *, window: float | None = None) -> DuplicateMatch | None:
        """Semantic match against recent findings when the index is ready, lexical otherwise."""
        window = self.settings.semantic_window_seconds if window is None else window
        since = self.clock() - window

        if self.vector_index is not None and self.vector_index.is_ready():
            try:
                hits = await self.vector_index.query(query, top_k=3, since=since)
            except Exception as exc:
                logger.warning(f"Semantic dedup failed, falling back to lexical: {exc!r}")
            else:
                for hit in hits:
                    if hit.created_at >= since and hit.score >= self.settings.semantic_similarity_threshold:
                        return DuplicateMatch(
                            method="semantic",
                            similarity=hit.score,
                            matched_query=hit.query,
                            finding_id=hit.finding_id,
                        )
                return None

        if self.database is None:
            return None
        tokens = tokenize(query)
        best: DuplicateMatch | None = None
        for finding in await self.database.recent_findings(limit=50, since=since):
            score = jaccard(tokens, finding.query)
            if score > self.settings.history_similarity_threshold and (best is None or score > best.similarity):
                best = DuplicateMatch(
                    method="lexical",
                    similarity=score,
                    matched_query=finding.query,
                    finding_id=finding.id,
                )
        return best

    # --- In-flight guard ---

    def inflight_match(self, session_id: str, query: str) -> str | None:
        normalized = normalize_query(query)
        tokens = set(normalized.split())
        for key, original in self._inflight.get(session_id, {}).items():
            if key == normalized or jaccard(tokens, set(key.split())) > self.settings.inflight_similarity_threshold:
                return original
        return None

    def begin_inflight(self, session_id: str, query: str) -> bool:
        """Register a query as executing; False when a similar one already is."""
        if self.inflight_match(session_id, query) is not None:
            return False
        self._inflight.setdefault(session_id, {})[normalize_query(query)] = query
        return True

    def end_inflight(self, session_id: str, query: str) -> None:
        entries = self._inflight.get(session_id)
        if not entries:
            return
        entries.pop(normalize_query(query), None)
        if not entries:
            self._inflight.pop(session_id, None)

    def inflight_count(self, session_id: str | None = None) -> int:
        if session_id is not None:
            return len(self._inflight.get(session_id, {}))
        return sum(len(v) for v in self._inflight.values())
