from __future__ import annotations

import asyncio
import math
import re
import time
from dataclasses import dataclass, field
from typing import Callable
from uuid import uuid4

from loguru import logger

from sidecar.config import Settings, settings as default_settings
from sidecar.llm_client import Oracle, extract_json_object
from sidecar.models.research import (
    PivotSuggestion,
    ResearchFinding,
    ResearchResult,
    ResearchSource,
    ResearchTask,
)
from sidecar.rules import infer_domain
from sidecar.services.database import ResearchDatabase
from sidecar.services.dedup import DeduplicationEngine, jaccard
from sidecar.services.prompt_store import PromptCatalog
from sidecar.services.vector_index import VectorIndex
from sidecar.tools.content_extractor import ContentExtractor
from sidecar.tools.search_provider import SearchAdapter, SearchHit, search_all
from sidecar.tools.url_cache import UrlCache
from sidecar.tools.web_utils import clean_content, extract_domain

_YEAR_PATTERN = re.compile(r"\b20[12]\d\b")
PAGE_EXCERPT_CHARS = 1500


class ResearchError(RuntimeError):
    """A research attempt produced nothing usable."""


@dataclass(frozen=True, slots=True)
class DepthProfile:
    max_results: int
    max_pages: int


DEPTH_PROFILES: dict[str, DepthProfile] = {
    "quick": DepthProfile(max_results=5, max_pages=2),
    "medium": DepthProfile(max_results=10, max_pages=4),
    "deep": DepthProfile(max_results=20, max_pages=8),
}


@dataclass(slots=True)
class Synthesis:
    summary: str
    key_points: list[str] = field(default_factory=list)
    confidence: float = 0.5
    pivot: PivotSuggestion | None = None
    tokens_used: int = 0


def strip_years(query: str) -> str:
    """Drop explicit years so manual queries are not pinned to stale results."""
    return " ".join(_YEAR_PATTERN.sub(" ", query).split())


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4) if text else 0


class ResearchExecutor:
    """Search, fetch, synthesize and persist one research task."""

    def __init__(
        self,
        adapters: list[SearchAdapter],
        *,
        extractor: ContentExtractor,
        url_cache: UrlCache,
        database: ResearchDatabase,
        oracle: Oracle | None = None,
        dedup: DeduplicationEngine | None = None,
        vector_index: VectorIndex | None = None,
        prompts: PromptCatalog | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.adapters = adapters
        self.extractor = extractor
        self.url_cache = url_cache
        self.database = database
        self.oracle = oracle
        self.dedup = dedup
        self.vector_index = vector_index
        self.prompts = prompts or PromptCatalog()
        self.settings = settings or default_settings
        self.clock = clock

    async def __call__(self, task: ResearchTask) -> ResearchResult:
        return await self.execute(task)

    async def execute(self, task: ResearchTask) -> ResearchResult:
        reused = await self._reuse_recent_finding(task)
        if reused is not None:
            return reused

        if not self.adapters:
            raise ResearchError("no search adapters configured")
        profile = DEPTH_PROFILES.get(task.depth, DEPTH_PROFILES["medium"])
        response = await search_all(
            self.adapters,
            task.query,
            max_results=profile.max_results,
            max_parallel=self.settings.search_max_parallel_requests,
        )
        if not response.results:
            failures = ", ".join(f"{name}: {err}" for name, err in response.failures.items()) or "empty results"
            raise ResearchError(f"no results from any source ({failures})")

        hits = response.results
        pages = await self._fetch_pages(hits[: profile.max_pages], budget=self.settings.depth_target(task.depth))
        domain = infer_domain(task.query)
        sources = await self._build_sources(hits, domain)
        related = await self._related_context(task.query)

        material = self._source_material(sources, pages)
        synthesis = await self._synthesize(task, sources, material, related)
        now = self.clock()
        finding = ResearchFinding(
            id=uuid4().hex,
            query=task.query,
            summary=synthesis.summary,
            created_at=now,
            key_points=synthesis.key_points,
            full_content=clean_content(material, max_length=self.settings.page_content_max_chars),
            sources=sources,
            domain=domain,
            depth=task.depth,
            confidence=synthesis.confidence,
            last_accessed_at=now,
        )
        await self.database.save_finding(finding)
        await self._index(finding)
        logger.info(
            f"Research {task.id} complete: {len(sources)} sources, {len(pages)} pages, "
            f"confidence={synthesis.confidence:.2f}"
        )
        return ResearchResult(
            summary=finding.summary,
            full_content=finding.full_content,
            key_points=list(finding.key_points),
            sources=sources,
            tokens_used=synthesis.tokens_used,
            confidence=synthesis.confidence,
            pivot=synthesis.pivot,
            finding_id=finding.id,
            domain=domain,
        )

    async def _reuse_recent_finding(self, task: ResearchTask) -> ResearchResult | None:
        if self.dedup is None:
            return None
        match = await self.dedup.find_duplicate(task.query)
        if match is None or match.finding_id is None:
            return None
        finding = await self.database.get_finding(match.finding_id, touch_at=self.clock())
        if finding is None:
            return None
        logger.info(
            f"Research {task.id} reused finding {finding.id} "
            f"({match.method}, similarity={match.similarity:.2f})"
        )
        return ResearchResult(
            summary=finding.summary,
            full_content=finding.full_content,
            key_points=list(finding.key_points),
            sources=list(finding.sources),
            confidence=finding.confidence,
            finding_id=finding.id,
            domain=finding.domain,
            deduplicated=True,
        )

    async def _fetch_pages(self, hits: list[SearchHit], *, budget: float) -> dict[str, str]:
        semaphore = asyncio.Semaphore(max(self.settings.fetch_max_parallel_requests, 1))

        async def fetch(hit: SearchHit) -> tuple[str, str]:
            async with semaphore:
                entry = await self.url_cache.fetch(hit.url, self.extractor, timeout=budget)
            return hit.url, entry.content

        raw = await asyncio.gather(*(fetch(hit) for hit in hits), return_exceptions=True)
        pages: dict[str, str] = {}
        for hit, item in zip(hits, raw):
            if isinstance(item, BaseException):
                logger.debug(f"Page fetch failed for {hit.url}: {item!r}")
                continue
            url, content = item
            if content:
                pages[url] = content
        return pages

    async def _build_sources(self, hits: list[SearchHit], domain: str) -> list[ResearchSource]:
        scores = await self.database.source_scores((extract_domain(hit.url) for hit in hits), topic=domain)
        sources: list[ResearchSource] = []
        for index, hit in enumerate(hits):
            relevance = hit.relevance if hit.relevance is not None else max(0.1, 1.0 - index * 0.05)
            sources.append(
                ResearchSource(
                    title=hit.title or extract_domain(hit.url),
                    url=hit.url,
                    snippet=hit.snippet,
                    relevance=relevance,
                    quality_score=scores.get(extract_domain(hit.url)),
                )
            )
        return sources

    async def _related_context(self, query: str) -> list[str]:
        findings = await self.database.recent_findings(limit=20)
        related = [f for f in findings if 0.2 < jaccard(query, f.query)]
        return [f"{f.query}: {f.summary[:300]}" for f in related[:2]]

    @staticmethod
    def _source_material(sources: list[ResearchSource], pages: dict[str, str]) -> str:
        blocks: list[str] = []
        for index, source in enumerate(sources, start=1):
            body = pages.get(source.url, "")[:PAGE_EXCERPT_CHARS] or source.snippet
            blocks.append(f"[{index}] {source.title} ({source.url})\n{body}")
        return "\n\n".join(blocks)

    async def _synthesize(
        self, task: ResearchTask, sources: list[ResearchSource], material: str, related: list[str]
    ) -> Synthesis:
        if self.oracle is not None:
            context_lines = []
            if task.context:
                context_lines.append(f"Session context: {task.context}")
            if related:
                context_lines.append("Related earlier findings:\n" + "\n".join(f"- {r}" for r in related))
            prompt = self.prompts.render(
                "executor.synthesis",
                query=task.query,
                context_block="\n".join(context_lines),
                sources=material[: self.settings.page_content_max_chars],
            )
            try:
                raw = await self.oracle.complete(prompt, caller="executor.synthesize")
            except Exception as exc:
                logger.warning(f"Synthesis oracle call failed for {task.id}: {exc!r}")
            else:
                payload = extract_json_object(raw)
                if payload and str(payload.get("summary") or "").strip():
                    points = payload.get("keyPoints", payload.get("key_points")) or []
                    try:
                        confidence = max(0.0, min(1.0, float(payload.get("confidence", 0.6))))
                    except (TypeError, ValueError):
                        confidence = 0.6
                    return Synthesis(
                        summary=str(payload["summary"]).strip(),
                        key_points=[str(p) for p in points if str(p).strip()][:8],
                        confidence=confidence,
                        pivot=PivotSuggestion.from_dict(payload.get("pivot")),
                        tokens_used=estimate_tokens(prompt) + estimate_tokens(raw),
                    )
                logger.warning(f"Synthesis reply for {task.id} was not usable JSON; using snippets")

        return self._snippet_synthesis(sources)

    @staticmethod
    def _snippet_synthesis(sources: list[ResearchSource]) -> Synthesis:
        snippets = [s.snippet.strip() for s in sources if s.snippet.strip()]
        summary = " ".join(snippets[:3])[:600] or f"Found {len(sources)} sources; see citations."
        return Synthesis(
            summary=summary,
            key_points=[f"{s.title}: {s.snippet[:160]}".strip() for s in sources[:5]],
            confidence=min(0.3 + 0.05 * len(sources), 0.6),
        )

    async def _index(self, finding: ResearchFinding) -> None:
        if self.vector_index is None or not self.vector_index.is_ready():
            return
        try:
            await self.vector_index.add_finding(finding)
        except Exception as exc:
            logger.warning(f"Vector index add failed for {finding.id}: {exc!r}")
