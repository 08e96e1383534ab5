"""SQLite persistence service using aiosqlite."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from sidecar.models.research import (
    InjectionLogEntry,
    ResearchFinding,
    ResearchResult,
    ResearchSource,
    ResearchTask,
    SourceQualityEntry,
    TaskStatus,
    TriggerSource,
    UrlCacheEntry,
)
from sidecar.services.logger import log_db_operation

SCHEMA = """
CREATE TABLE IF NOT EXISTS research_tasks (
    id TEXT PRIMARY KEY,
    query TEXT NOT NULL,
    depth TEXT NOT NULL DEFAULT 'medium',
    status TEXT NOT NULL DEFAULT 'queued',
    trigger_source TEXT NOT NULL DEFAULT 'manual',
    priority INTEGER NOT NULL DEFAULT 5,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON research_tasks(status);

CREATE TABLE IF NOT EXISTS research_findings (
    id TEXT PRIMARY KEY,
    query TEXT NOT NULL,
    summary TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_findings_created ON research_findings(created_at);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    started_at REAL NOT NULL,
    last_activity_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS injection_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    finding_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    injected_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_injection_session ON injection_log(session_id);

CREATE TABLE IF NOT EXISTS source_quality (
    domain TEXT NOT NULL,
    topic_category TEXT NOT NULL DEFAULT '',
    reliability_score REAL NOT NULL DEFAULT 0.5,
    citation_count INTEGER NOT NULL DEFAULT 0,
    helpful_count INTEGER NOT NULL DEFAULT 0,
    last_cited_at REAL,
    UNIQUE(domain, topic_category)
);

CREATE TABLE IF NOT EXISTS url_cache (
    normalized_url TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    scraped_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_url_cache_expires ON url_cache(expires_at);
"""

# Columns that may be missing from databases created by older builds.
# Each one is added in place on connect.
EXPECTED_COLUMNS: dict[str, dict[str, str]] = {
    "research_tasks": {
        "context": "TEXT",
        "session_id": "TEXT",
        "started_at": "REAL",
        "completed_at": "REAL",
        "result_json": "TEXT",
        "error": "TEXT",
        "attempts": "INTEGER NOT NULL DEFAULT 0",
    },
    "research_findings": {
        "key_points": "TEXT NOT NULL DEFAULT '[]'",
        "full_content": "TEXT NOT NULL DEFAULT ''",
        "sources": "TEXT NOT NULL DEFAULT '[]'",
        "domain": "TEXT",
        "depth": "TEXT NOT NULL DEFAULT 'medium'",
        "confidence": "REAL NOT NULL DEFAULT 0.5",
        "last_accessed_at": "REAL",
        "project_path": "TEXT",
    },
    "sessions": {
        "project_path": "TEXT",
        "is_active": "INTEGER NOT NULL DEFAULT 1",
        "injections_count": "INTEGER NOT NULL DEFAULT 0",
        "injections_tokens": "INTEGER NOT NULL DEFAULT 0",
        "snapshot": "TEXT NOT NULL DEFAULT '{}'",
    },
    "injection_log": {
        "injection_level": "INTEGER NOT NULL DEFAULT 1",
        "trigger_reason": "TEXT NOT NULL DEFAULT 'error'",
        "followup_injected": "INTEGER NOT NULL DEFAULT 0",
        "effectiveness_score": "REAL",
        "resolved_issue": "INTEGER NOT NULL DEFAULT 0",
    },
    "url_cache": {
        "title": "TEXT NOT NULL DEFAULT ''",
        "content": "TEXT NOT NULL DEFAULT ''",
        "content_length": "INTEGER NOT NULL DEFAULT 0",
        "hit_count": "INTEGER NOT NULL DEFAULT 0",
    },
}


@dataclass(slots=True)
class StoreResult:
    """Outcome of a best-effort write the caller may inspect or discard."""

    ok: bool
    value: Any = None
    error: str | None = None


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """Normalize JSON-string columns into dictionaries."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _coerce_json_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _row_get(row: aiosqlite.Row, name: str, default: Any = None) -> Any:
    if name in row.keys():
        value = row[name]
        return default if value is None else value
    return default


class ResearchDatabase:
    """Durable store for tasks, findings, sessions, injections, source quality and pages."""

    def __init__(self, path: str | Path):
        self.path = str(path)
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        if self.path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(SCHEMA)
        added = await self._add_missing_columns()
        await self._conn.commit()
        log_db_operation("connect", "*", "success", details=f"path={self.path} added_columns={added}")

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _add_missing_columns(self) -> int:
        conn = self._require()
        added = 0
        for table, columns in EXPECTED_COLUMNS.items():
            async with conn.execute(f"PRAGMA table_info({table})") as cursor:
                existing = {row["name"] for row in await cursor.fetchall()}
            for column, ddl in columns.items():
                if column in existing:
                    continue
                await conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
                added += 1
        return added

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    async def _write(self, sql: str, params: Iterable[Any] = ()) -> int:
        conn = self._require()
        async with self._write_lock:
            cursor = await conn.execute(sql, tuple(params))
            await conn.commit()
            rowcount = cursor.rowcount
            await cursor.close()
            return rowcount

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        async with self._require().execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self._require().execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    # --- Research tasks ---

    async def insert_task(self, task: ResearchTask) -> None:
        await self._write(
            """
            INSERT INTO research_tasks (
                id, query, context, depth, status, trigger_source, session_id, priority,
                created_at, started_at, completed_at, result_json, error, attempts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.query,
                task.context,
                task.depth,
                task.status.value,
                task.trigger.value,
                task.session_id,
                task.priority,
                task.created_at,
                task.started_at,
                task.completed_at,
                json.dumps(task.result.to_dict()) if task.result else None,
                task.error,
                task.attempts,
            ),
        )

    async def update_task(self, task: ResearchTask) -> None:
        await self._write(
            """
            UPDATE research_tasks
            SET status = ?, started_at = ?, completed_at = ?, result_json = ?, error = ?, attempts = ?
            WHERE id = ?
            """,
            (
                task.status.value,
                task.started_at,
                task.completed_at,
                json.dumps(task.result.to_dict()) if task.result else None,
                task.error,
                task.attempts,
                task.id,
            ),
        )

    async def set_task_status(self, task_id: str, status: TaskStatus) -> None:
        await self._write("UPDATE research_tasks SET status = ? WHERE id = ?", (status.value, task_id))

    async def get_task(self, task_id: str) -> ResearchTask | None:
        row = await self._fetchone("SELECT * FROM research_tasks WHERE id = ?", (task_id,))
        return _row_to_task(row) if row else None

    async def list_tasks(self, limit: int = 50, status: TaskStatus | None = None) -> list[ResearchTask]:
        if status is None:
            rows = await self._fetchall(
                "SELECT * FROM research_tasks ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM research_tasks WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (status.value, limit),
            )
        return [_row_to_task(row) for row in rows]

    async def tasks_with_status(self, status: TaskStatus) -> list[ResearchTask]:
        rows = await self._fetchall(
            "SELECT * FROM research_tasks WHERE status = ? ORDER BY priority DESC, created_at ASC",
            (status.value,),
        )
        return [_row_to_task(row) for row in rows]

    async def recover_stale_running(self, now: float) -> int:
        """Fail tasks left `running` by a previous process."""
        count = await self._write(
            """
            UPDATE research_tasks
            SET status = 'failed', error = 'interrupted by restart', completed_at = ?
            WHERE status = 'running'
            """,
            (now,),
        )
        log_db_operation("recover_stale_running", "research_tasks", "success", details=f"count={count}")
        return count

    async def task_counts(self) -> dict[str, int]:
        rows = await self._fetchall("SELECT status, COUNT(*) AS n FROM research_tasks GROUP BY status")
        return {row["status"]: int(row["n"]) for row in rows}

    async def search_tasks(self, text: str, limit: int = 20) -> list[ResearchTask]:
        rows = await self._fetchall(
            "SELECT * FROM research_tasks WHERE query LIKE ? ORDER BY created_at DESC LIMIT ?",
            (f"%{text}%", limit),
        )
        return [_row_to_task(row) for row in rows]

    # --- Findings ---

    async def save_finding(self, finding: ResearchFinding) -> None:
        await self._write(
            """
            INSERT OR REPLACE INTO research_findings (
                id, query, summary, key_points, full_content, sources, domain, depth,
                confidence, created_at, last_accessed_at, project_path
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                finding.id,
                finding.query,
                finding.summary,
                json.dumps(list(finding.key_points)),
                finding.full_content,
                json.dumps([source.to_dict() for source in finding.sources]),
                finding.domain,
                finding.depth,
                finding.confidence,
                finding.created_at,
                finding.last_accessed_at,
                finding.project_path,
            ),
        )

    async def get_finding(self, finding_id: str, *, touch_at: float | None = None) -> ResearchFinding | None:
        row = await self._fetchone("SELECT * FROM research_findings WHERE id = ?", (finding_id,))
        if row is None:
            return None
        finding = _row_to_finding(row)
        if touch_at is not None:
            await self._write(
                "UPDATE research_findings SET last_accessed_at = ? WHERE id = ?", (touch_at, finding_id)
            )
            finding.last_accessed_at = touch_at
        return finding

    async def recent_findings(self, limit: int = 20, since: float | None = None) -> list[ResearchFinding]:
        rows = await self._fetchall(
            """
            SELECT * FROM research_findings
            WHERE created_at >= ?
            ORDER BY created_at DESC LIMIT ?
            """,
            (since if since is not None else 0.0, limit),
        )
        return [_row_to_finding(row) for row in rows]

    async def findings_by_domain(self, domain: str, limit: int = 20) -> list[ResearchFinding]:
        rows = await self._fetchall(
            "SELECT * FROM research_findings WHERE domain = ? ORDER BY created_at DESC LIMIT ?",
            (domain, limit),
        )
        return [_row_to_finding(row) for row in rows]

    async def search_findings(self, text: str, limit: int = 20) -> list[ResearchFinding]:
        pattern = f"%{text}%"
        rows = await self._fetchall(
            """
            SELECT * FROM research_findings
            WHERE query LIKE ? OR summary LIKE ?
            ORDER BY created_at DESC LIMIT ?
            """,
            (pattern, pattern, limit),
        )
        return [_row_to_finding(row) for row in rows]

    # --- Sessions ---

    async def upsert_session(
        self,
        session_id: str,
        *,
        started_at: float,
        last_activity_at: float,
        project_path: str | None = None,
        is_active: bool = True,
        injections_count: int = 0,
        injections_tokens: int = 0,
        snapshot: dict[str, Any] | None = None,
    ) -> StoreResult:
        try:
            await self._write(
                """
                INSERT INTO sessions (
                    id, project_path, started_at, last_activity_at, is_active,
                    injections_count, injections_tokens, snapshot
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    project_path = COALESCE(excluded.project_path, sessions.project_path),
                    last_activity_at = MAX(sessions.last_activity_at, excluded.last_activity_at),
                    is_active = excluded.is_active,
                    injections_count = MAX(sessions.injections_count, excluded.injections_count),
                    injections_tokens = MAX(sessions.injections_tokens, excluded.injections_tokens),
                    snapshot = excluded.snapshot
                """,
                (
                    session_id,
                    project_path,
                    started_at,
                    last_activity_at,
                    int(is_active),
                    injections_count,
                    injections_tokens,
                    json.dumps(snapshot or {}),
                ),
            )
        except (aiosqlite.Error, RuntimeError) as exc:
            log_db_operation("upsert", "sessions", "failed", error=str(exc))
            return StoreResult(ok=False, error=str(exc))
        return StoreResult(ok=True, value=session_id)

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        if row is None:
            return None
        return {
            "id": row["id"],
            "project_path": _row_get(row, "project_path"),
            "started_at": row["started_at"],
            "last_activity_at": row["last_activity_at"],
            "is_active": bool(_row_get(row, "is_active", 1)),
            "injections_count": int(_row_get(row, "injections_count", 0)),
            "injections_tokens": int(_row_get(row, "injections_tokens", 0)),
            "snapshot": _coerce_json_object(_row_get(row, "snapshot")),
        }

    # --- Injection log ---

    async def log_injection(self, entry: InjectionLogEntry) -> StoreResult:
        conn = self._require()
        try:
            async with self._write_lock:
                cursor = await conn.execute(
                    """
                    INSERT INTO injection_log (
                        finding_id, session_id, injected_at, injection_level, trigger_reason,
                        followup_injected, effectiveness_score, resolved_issue
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.finding_id,
                        entry.session_id,
                        entry.injected_at,
                        entry.injection_level,
                        entry.trigger_reason,
                        int(entry.followup_injected),
                        entry.effectiveness_score,
                        int(entry.resolved_issue),
                    ),
                )
                await conn.commit()
                entry_id = cursor.lastrowid
                await cursor.close()
        except aiosqlite.Error as exc:
            log_db_operation("insert", "injection_log", "failed", error=str(exc))
            return StoreResult(ok=False, error=str(exc))
        entry.id = entry_id
        return StoreResult(ok=True, value=entry_id)

    async def get_injection(self, injection_id: int) -> InjectionLogEntry | None:
        row = await self._fetchone("SELECT * FROM injection_log WHERE id = ?", (injection_id,))
        return _row_to_injection(row) if row else None

    async def injection_history(self, session_id: str, limit: int = 50) -> list[InjectionLogEntry]:
        rows = await self._fetchall(
            "SELECT * FROM injection_log WHERE session_id = ? ORDER BY injected_at DESC LIMIT ?",
            (session_id, limit),
        )
        return [_row_to_injection(row) for row in rows]

    async def last_injection_for_finding(self, finding_id: str, session_id: str) -> InjectionLogEntry | None:
        row = await self._fetchone(
            """
            SELECT * FROM injection_log
            WHERE finding_id = ? AND session_id = ?
            ORDER BY injection_level DESC, injected_at DESC LIMIT 1
            """,
            (finding_id, session_id),
        )
        return _row_to_injection(row) if row else None

    async def unevaluated_injections(self, session_id: str, injected_before: float) -> list[InjectionLogEntry]:
        rows = await self._fetchall(
            """
            SELECT * FROM injection_log
            WHERE session_id = ? AND effectiveness_score IS NULL AND injected_at <= ?
            ORDER BY injected_at ASC
            """,
            (session_id, injected_before),
        )
        return [_row_to_injection(row) for row in rows]

    async def record_effectiveness(self, injection_id: int, score: float, resolved: bool) -> None:
        await self._write(
            "UPDATE injection_log SET effectiveness_score = ?, resolved_issue = ? WHERE id = ?",
            (score, int(resolved), injection_id),
        )

    async def mark_followup(self, injection_id: int) -> None:
        await self._write("UPDATE injection_log SET followup_injected = 1 WHERE id = ?", (injection_id,))

    async def injection_stats(self) -> dict[str, Any]:
        row = await self._fetchone(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN effectiveness_score IS NOT NULL THEN 1 ELSE 0 END) AS evaluated,
                   SUM(CASE WHEN effectiveness_score > 0 THEN 1 ELSE 0 END) AS helpful,
                   AVG(effectiveness_score) AS avg_score
            FROM injection_log
            """
        )
        if row is None:
            return {"total": 0, "evaluated": 0, "helpful": 0, "avg_score": None}
        return {
            "total": int(row["total"] or 0),
            "evaluated": int(row["evaluated"] or 0),
            "helpful": int(row["helpful"] or 0),
            "avg_score": row["avg_score"],
        }

    # --- Source quality ---

    async def record_source_citation(
        self, domain: str, topic: str | None, helpful: bool, cited_at: float
    ) -> SourceQualityEntry:
        increment = 1 if helpful else 0
        topic_key = topic or ""
        # SET expressions read the pre-update row, so both counters advance together.
        await self._write(
            """
            INSERT INTO source_quality (
                domain, topic_category, reliability_score, citation_count, helpful_count, last_cited_at
            ) VALUES (?, ?, ? / 2.0, 1, ?, ?)
            ON CONFLICT(domain, topic_category) DO UPDATE SET
                citation_count = source_quality.citation_count + 1,
                helpful_count = source_quality.helpful_count + excluded.helpful_count,
                reliability_score = CAST(source_quality.helpful_count + excluded.helpful_count AS REAL)
                    / (source_quality.citation_count + 2),
                last_cited_at = excluded.last_cited_at
            """,
            (domain, topic_key, float(increment), increment, cited_at),
        )
        entry = await self.get_source_quality(domain, topic)
        if entry is None:
            raise RuntimeError(f"source_quality row missing after upsert: {domain}")
        return entry

    async def get_source_quality(self, domain: str, topic: str | None = None) -> SourceQualityEntry | None:
        row = await self._fetchone(
            "SELECT * FROM source_quality WHERE domain = ? AND topic_category = ?",
            (domain, topic or ""),
        )
        return _row_to_source_quality(row) if row else None

    async def reliable_sources(
        self, topic: str | None = None, min_score: float = 0.5, limit: int = 10
    ) -> list[SourceQualityEntry]:
        if topic is None:
            rows = await self._fetchall(
                """
                SELECT * FROM source_quality WHERE reliability_score > ?
                ORDER BY reliability_score DESC, citation_count DESC LIMIT ?
                """,
                (min_score, limit),
            )
        else:
            rows = await self._fetchall(
                """
                SELECT * FROM source_quality WHERE reliability_score > ? AND topic_category = ?
                ORDER BY reliability_score DESC, citation_count DESC LIMIT ?
                """,
                (min_score, topic, limit),
            )
        return [_row_to_source_quality(row) for row in rows]

    async def source_scores(self, domains: Iterable[str], topic: str | None = None) -> dict[str, float]:
        unique = sorted({d for d in domains if d})
        if not unique:
            return {}
        placeholders = ", ".join("?" for _ in unique)
        rows = await self._fetchall(
            f"""
            SELECT domain, reliability_score FROM source_quality
            WHERE domain IN ({placeholders}) AND topic_category = ?
            """,
            (*unique, topic or ""),
        )
        return {row["domain"]: float(row["reliability_score"]) for row in rows}

    # --- URL cache ---

    async def get_cached_page(self, normalized_url: str) -> UrlCacheEntry | None:
        row = await self._fetchone("SELECT * FROM url_cache WHERE normalized_url = ?", (normalized_url,))
        return _row_to_cache_entry(row) if row else None

    async def put_cached_page(self, entry: UrlCacheEntry) -> None:
        await self._write(
            """
            INSERT INTO url_cache (
                normalized_url, url, title, content, content_length, scraped_at, expires_at, hit_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(normalized_url) DO UPDATE SET
                url = excluded.url,
                title = excluded.title,
                content = excluded.content,
                content_length = excluded.content_length,
                scraped_at = excluded.scraped_at,
                expires_at = excluded.expires_at
            """,
            (
                entry.normalized_url,
                entry.url,
                entry.title,
                entry.content,
                entry.content_length,
                entry.scraped_at,
                entry.expires_at,
                entry.hit_count,
            ),
        )

    async def bump_cache_hit(self, normalized_url: str) -> None:
        await self._write(
            "UPDATE url_cache SET hit_count = hit_count + 1 WHERE normalized_url = ?", (normalized_url,)
        )

    async def delete_cached_page(self, normalized_url: str) -> None:
        await self._write("DELETE FROM url_cache WHERE normalized_url = ?", (normalized_url,))

    async def delete_expired_pages(self, now: float) -> int:
        return await self._write("DELETE FROM url_cache WHERE expires_at <= ?", (now,))

    async def url_cache_stats(self) -> dict[str, Any]:
        row = await self._fetchone(
            """
            SELECT COUNT(*) AS entries, COALESCE(SUM(hit_count), 0) AS hits,
                   COALESCE(SUM(content_length), 0) AS bytes
            FROM url_cache
            """
        )
        return {
            "entries": int(row["entries"]) if row else 0,
            "hits": int(row["hits"]) if row else 0,
            "bytes": int(row["bytes"]) if row else 0,
        }

    # --- Maintenance ---

    async def cleanup(self, older_than: float) -> dict[str, int]:
        tasks = await self._write(
            """
            DELETE FROM research_tasks
            WHERE created_at < ? AND status IN ('completed', 'failed', 'injected')
            """,
            (older_than,),
        )
        sessions = await self._write(
            "DELETE FROM sessions WHERE is_active = 0 AND last_activity_at < ?", (older_than,)
        )
        pages = await self.delete_expired_pages(older_than)
        log_db_operation(
            "cleanup", "*", "success", details=f"tasks={tasks} sessions={sessions} pages={pages}"
        )
        return {"tasks": tasks, "sessions": sessions, "pages": pages}


def _row_to_task(row: aiosqlite.Row) -> ResearchTask:
    result_payload = _coerce_json_object(_row_get(row, "result_json"))
    return ResearchTask(
        id=row["id"],
        query=row["query"],
        depth=row["depth"],
        status=TaskStatus(row["status"]),
        trigger=TriggerSource(row["trigger_source"]),
        priority=int(row["priority"]),
        created_at=float(row["created_at"]),
        session_id=_row_get(row, "session_id"),
        context=_row_get(row, "context"),
        started_at=_row_get(row, "started_at"),
        completed_at=_row_get(row, "completed_at"),
        result=ResearchResult.from_dict(result_payload) if result_payload else None,
        error=_row_get(row, "error"),
        attempts=int(_row_get(row, "attempts", 0)),
    )


def _row_to_finding(row: aiosqlite.Row) -> ResearchFinding:
    return ResearchFinding(
        id=row["id"],
        query=row["query"],
        summary=row["summary"],
        created_at=float(row["created_at"]),
        key_points=[str(p) for p in _coerce_json_list(_row_get(row, "key_points"))],
        full_content=_row_get(row, "full_content", ""),
        sources=[
            ResearchSource.from_dict(item)
            for item in _coerce_json_list(_row_get(row, "sources"))
            if isinstance(item, dict)
        ],
        domain=_row_get(row, "domain"),
        depth=_row_get(row, "depth", "medium"),
        confidence=float(_row_get(row, "confidence", 0.5)),
        last_accessed_at=_row_get(row, "last_accessed_at"),
        project_path=_row_get(row, "project_path"),
    )


def _row_to_injection(row: aiosqlite.Row) -> InjectionLogEntry:
    return InjectionLogEntry(
        id=int(row["id"]),
        finding_id=row["finding_id"],
        session_id=row["session_id"],
        injected_at=float(row["injected_at"]),
        injection_level=int(_row_get(row, "injection_level", 1)),
        trigger_reason=_row_get(row, "trigger_reason", "error"),
        followup_injected=bool(_row_get(row, "followup_injected", 0)),
        effectiveness_score=_row_get(row, "effectiveness_score"),
        resolved_issue=bool(_row_get(row, "resolved_issue", 0)),
    )


def _row_to_source_quality(row: aiosqlite.Row) -> SourceQualityEntry:
    return SourceQualityEntry(
        domain=row["domain"],
        topic=row["topic_category"],
        reliability_score=float(row["reliability_score"]),
        citation_count=int(row["citation_count"]),
        helpful_count=int(row["helpful_count"]),
        last_cited_at=_row_get(row, "last_cited_at"),
    )


def _row_to_cache_entry(row: aiosqlite.Row) -> UrlCacheEntry:
    return UrlCacheEntry(
        normalized_url=row["normalized_url"],
        url=row["url"],
        title=_row_get(row, "title", ""),
        content=_row_get(row, "content", ""),
        content_length=int(_row_get(row, "content_length", 0)),
        scraped_at=float(row["scraped_at"]),
        expires_at=float(row["expires_at"]),
        hit_count=int(_row_get(row, "hit_count", 0)),
    )
