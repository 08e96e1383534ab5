"""Shaping a single fetched page: focus on a query, trim, and pull out key points."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any

DEFAULT_MAX_LENGTH = 12000
EXCERPT_CHARS = 500
CONTEXT_BEFORE = 2
CONTEXT_AFTER = 5
SECTION_BREAK = "---"

_BULLET = re.compile(r"^[-*•]\s+.{10,}")
_HEADING = re.compile(r"^#{1,3}\s+.+")


class FetchError(Exception):
    """The page could not be retrieved."""


@dataclass(slots=True)
class FetchedPage:
    url: str
    title: str
    content: str
    truncated: bool = False
    excerpt: str | None = None
    cached: bool = False
    finding_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _query_words(query: str) -> list[str]:
    return [word for word in query.lower().split() if len(word) > 2]


def _line_score(line: str, words: list[str]) -> float:
    lowered = line.lower()
    score = 0.0
    for word in words:
        if word in lowered:
            score += 1.0
            if re.search(rf"\b{re.escape(word)}\b", line, re.IGNORECASE):
                score += 0.5
    if score and line.startswith("#"):
        score += 0.5
    return score


def relevant_sections(content: str, query: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Keep the lines matching the query words plus a little surrounding context.

    Matches are taken best-first, ties in page order, and each contributes a
    window of lines followed by a section break. Content with no match comes
    back unchanged.
    """
    words = _query_words(query)
    lines = content.split("\n")
    scored = [(_line_score(line, words), index) for index, line in enumerate(lines)]
    scored = [item for item in scored if item[0] > 0]
    if not scored:
        return content
    scored.sort(key=lambda item: (-item[0], item[1]))

    picked: list[str] = []
    seen: set[int] = set()
    length = 0
    for _, index in scored:
        if length >= max_length:
            break
        for position in range(max(0, index - CONTEXT_BEFORE), min(len(lines), index + CONTEXT_AFTER + 1)):
            if position not in seen:
                seen.add(position)
                picked.append(lines[position])
                length += len(lines[position]) + 1
        if picked[-1] != SECTION_BREAK:
            picked.append(SECTION_BREAK)
            length += len(SECTION_BREAK) + 1
    return "\n".join(picked)


def key_points(content: str, limit: int = 5) -> list[str]:
    """Bullet items and headings that read like standalone statements."""
    points: list[str] = []
    for line in content.split("\n"):
        if not (_BULLET.match(line) or _HEADING.match(line)):
            continue
        cleaned = line.lstrip("-*•# ").strip()
        if 10 < len(cleaned) < 200:
            points.append(cleaned)
        if len(points) >= limit:
            break
    return points


def shape_page(url: str, title: str, content: str, *, query: str | None, max_length: int) -> FetchedPage:
    if query:
        content = relevant_sections(content, query, max_length)
    truncated = len(content) > max_length
    if truncated:
        content = content[:max_length]
    excerpt = content[:EXCERPT_CHARS].strip() + "..." if len(content) > EXCERPT_CHARS else None
    return FetchedPage(url=url, title=title, content=content, truncated=truncated, excerpt=excerpt)
