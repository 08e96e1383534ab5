from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from sidecar.models.research import ResearchFinding

COLLECTION_NAME = "research_findings"


@dataclass(slots=True)
class VectorHit:
    finding_id: str
    query: str
    score: float
    created_at: float


class VectorIndex(Protocol):
    def is_ready(self) -> bool: ...

    async def add_finding(self, finding: ResearchFinding) -> None: ...

    async def query(self, text: str, *, top_k: int = 5, since: float | None = None) -> list[VectorHit]: ...


class FindingVectorIndex:
    """Chroma collection of finding queries and summaries, scored by cosine similarity."""

    def __init__(self, persist_dir: str):
        self.persist_dir = Path(persist_dir)
        self._collection: Any | None = None
        self._lock = asyncio.Lock()

    def is_ready(self) -> bool:
        return self._collection is not None

    async def initialize(self) -> bool:
        async with self._lock:
            if self._collection is not None:
                return True

            def _open() -> Any:
                import chromadb

                self.persist_dir.mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(path=str(self.persist_dir))
                return client.get_or_create_collection(
                    name=COLLECTION_NAME,
                    metadata={"hnsw:space": "cosine"},
                )

            try:
                self._collection = await asyncio.to_thread(_open)
            except Exception as exc:
                logger.warning(f"Vector index unavailable, using lexical dedup: {exc!r}")
                self._collection = None
                return False
            logger.info(f"Vector index ready at {self.persist_dir}")
            return True

    async def add_finding(self, finding: ResearchFinding) -> None:
        collection = self._collection
        if collection is None:
            return

        def _sync_upsert() -> None:
            collection.upsert(
                ids=[finding.id],
                documents=[f"{finding.query}\n{finding.summary}"],
                metadatas=[
                    {
                        "query": finding.query,
                        "created_at": float(finding.created_at),
                        "domain": finding.domain or "general",
                    }
                ],
            )

        await asyncio.to_thread(_sync_upsert)

    async def query(self, text: str, *, top_k: int = 5, since: float | None = None) -> list[VectorHit]:
        collection = self._collection
        if collection is None:
            return []

        def _sync_query() -> list[VectorHit]:
            kwargs: dict[str, Any] = {
                "query_texts": [text],
                "n_results": max(int(top_k), 1),
                "include": ["metadatas", "distances"],
            }
            if since is not None:
                kwargs["where"] = {"created_at": {"$gte": float(since)}}
            if collection.count() == 0:
                return []
            result = collection.query(**kwargs)
            ids = (result.get("ids") or [[]])[0]
            metas = (result.get("metadatas") or [[]])[0]
            distances = (result.get("distances") or [[]])[0]
            hits: list[VectorHit] = []
            for idx, finding_id in enumerate(ids):
                metadata = metas[idx] if idx < len(metas) and isinstance(metas[idx], dict) else {}
                distance = float(distances[idx]) if idx < len(distances) else 1.0
                hits.append(
                    VectorHit(
                        finding_id=str(finding_id),
                        query=str(metadata.get("query", "")),
                        score=max(0.0, 1.0 - distance),
                        created_at=float(metadata.get("created_at", 0.0)),
                    )
                )
            return hits

        return await asyncio.to_thread(_sync_query)
