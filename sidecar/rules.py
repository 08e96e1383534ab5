"""Declarative pattern tables for session tracking and trigger decisions.

Every table is evaluated in its listed order. Tables used to pick a single
answer (task detection, error category, focus commands, depth) stop at the
first matching rule; extraction tables (topics, tech stack, error captures)
collect every match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence


@dataclass(frozen=True, slots=True)
class PatternRule:
    name: str
    pattern: re.Pattern[str]


@dataclass(frozen=True, slots=True)
class ComplementaryRule:
    name: str
    applies: Callable[[set[str], set[str], set[str]], bool]
    suggestion: str


def _rule(name: str, pattern: str, flags: int = re.IGNORECASE) -> PatternRule:
    return PatternRule(name=name, pattern=re.compile(pattern, flags))


def first_match(rules: Sequence[PatternRule], text: str) -> tuple[PatternRule, re.Match[str]] | None:
    for rule in rules:
        match = rule.pattern.search(text)
        if match:
            return rule, match
    return None


def all_matches(rules: Iterable[PatternRule], text: str) -> list[str]:
    return [rule.name for rule in rules if rule.pattern.search(text)]


# --- Topics -----------------------------------------------------------------

TOPIC_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b(react|vue|angular|svelte|nextjs|nuxt|remix)\b",
        r"\b(node|deno|bun|python|rust|go|typescript|javascript)\b",
        r"\b(docker|kubernetes|k8s|aws|gcp|azure|vercel|netlify)\b",
        r"\b(postgres|mysql|mongodb|redis|sqlite|prisma|drizzle)\b",
        r"\b(api|rest|graphql|grpc|websocket|https?)\b",
        r"\b(auth|authentication|authorization|oauth|jwt|session)\b",
        r"\b(test|testing|jest|vitest|pytest|playwright|cypress)\b",
        r"\b(css|tailwind|scss|sass|styled-components)\b",
        r"\b(webpack|vite|esbuild|rollup|turbopack)\b",
        r"\b(performance|optimization|caching|scaling)\b",
        r"\b(security|vulnerability|xss|csrf|injection)\b",
        r"\b(error|exception|bug|issue|problem)\b",
        r"\b(deploy|deployment|ci|cd|pipeline)\b",
        r"\b(database|migration|schema|query)\b",
    )
)


def extract_topics(text: str) -> list[str]:
    topics: list[str] = []
    for pattern in TOPIC_PATTERNS:
        for match in pattern.finditer(text):
            topic = match.group(1).lower()
            if topic not in topics:
                topics.append(topic)
    return topics


# --- Current task -----------------------------------------------------------

TASK_RULES: tuple[PatternRule, ...] = (
    _rule("request", r"(?:help me|i need to|i want to|let's|can you)\s+(.{10,100})"),
    _rule("imperative", r"(?:implement|create|build|fix|debug|add|update|refactor)\s+(.{10,100})"),
    _rule("progress", r"(?:working on|trying to)\s+(.{10,100})"),
)

_SENTENCE_END = re.compile(r"[.!?]")


def detect_task(text: str) -> str | None:
    found = first_match(TASK_RULES, text)
    if found is None:
        return None
    _, match = found
    task = _SENTENCE_END.split(match.group(1), maxsplit=1)[0].strip()
    return task or None


# --- Errors -----------------------------------------------------------------

ERROR_CAPTURE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:error|exception|failed)[:\s]+(.{10,200})", re.IGNORECASE),
    re.compile(r"(?:cannot|unable to|not found)(.{10,100})", re.IGNORECASE),
    re.compile(r"(permission denied.{0,100})", re.IGNORECASE),
    re.compile(r"((?:ENOENT|EACCES|ECONNREFUSED|ETIMEDOUT).{0,100})"),
    re.compile(r"((?:TypeError|ReferenceError|SyntaxError|RangeError).{0,150})"),
    re.compile(r"((?:ModuleNotFoundError|ImportError|AttributeError).{0,150})"),
)


def extract_errors(text: str, limit: int = 3) -> list[str]:
    errors: list[str] = []
    for pattern in ERROR_CAPTURE_PATTERNS:
        for match in pattern.finditer(text):
            snippet = match.group(1).strip()
            if snippet and snippet not in errors:
                errors.append(snippet)
            if len(errors) >= limit:
                return errors
    return errors


ERROR_CATEGORY_RULES: tuple[PatternRule, ...] = (
    _rule("not_found", r"not found|enoent|no such file|cannot find|404"),
    _rule("permission", r"permission|eacces|forbidden|unauthorized|403"),
    _rule("network", r"econnrefused|network|connection|socket|dns"),
    _rule("timeout", r"timeout|timed out|etimedout"),
    _rule("syntax", r"syntaxerror|syntax error|unexpected token|parse error"),
    _rule("type", r"typeerror|type error|is not a function|undefined is not|attributeerror"),
    _rule("import", r"modulenotfounderror|importerror|cannot find module|module not found"),
)


def classify_error(text: str) -> str:
    found = first_match(ERROR_CATEGORY_RULES, text)
    return found[0].name if found else "other"


# --- Quick trigger patterns ---------------------------------------------------

QUICK_ERROR_RULES: tuple[PatternRule, ...] = (
    _rule("error", r"error[:\s]"),
    _rule("exception", r"exception"),
    _rule("failed", r"failed"),
    _rule("cannot_find", r"cannot\s+find"),
    _rule("module_not_found", r"module\s+not\s+found"),
    _rule("undefined_is_not", r"undefined\s+is\s+not"),
    _rule("type_error", r"typeerror"),
    _rule("syntax_error", r"syntaxerror"),
    _rule("reference_error", r"referenceerror"),
    _rule("enoent", r"enoent"),
    _rule("eacces", r"eacces"),
    _rule("etimedout", r"etimedout"),
)

DEPRECATION_RULES: tuple[PatternRule, ...] = (
    _rule("deprecated", r"deprecated"),
    _rule("will_be_removed", r"will\s+be\s+removed"),
)

ERROR_QUERY_RULES: tuple[PatternRule, ...] = (
    _rule("missing_module", r"cannot find module ['\"]([^'\"]+)['\"]"),
    _rule("missing_module_py", r"no module named ['\"]?([\w.]+)"),
    _rule("typed_error", r"((?:Type|Reference|Syntax|Range|Attribute|Import|ModuleNotFound)Error:\s*.{5,120})", 0),
    _rule("error_line", r"(?:error|exception)[:\s]+(.{10,120})"),
)

DEPRECATION_QUERY_RULES: tuple[PatternRule, ...] = (
    _rule("named_deprecated", r"['\"`]?([\w.]+)['\"`]?\s+is\s+deprecated"),
    _rule("deprecated_named", r"deprecated[:\s]+['\"`]?([\w.]+)"),
)


# --- Focus ------------------------------------------------------------------

FILE_INPUT_FIELDS: tuple[str, ...] = ("file_path", "path", "file", "filename")
FILE_FOCUS_TOOLS: frozenset[str] = frozenset({"Read", "Edit", "Write", "MultiEdit", "NotebookEdit"})
DIRECTORY_TOOLS: frozenset[str] = frozenset({"Glob", "Grep", "LS"})

FOCUS_COMMAND_RULES: tuple[PatternRule, ...] = (
    _rule("testing", r"\b(npm test|yarn test|pnpm test|jest|vitest|pytest|go test|cargo test)\b"),
    _rule("build", r"\b(npm run build|yarn build|tsc|cargo build|go build|make)\b"),
    _rule("running", r"\b(npm start|npm run dev|node |python |uvicorn|cargo run)"),
    _rule("dependencies", r"\b(npm install|yarn add|pip install|poetry add|uv add)\b"),
)


# --- Tech stack ---------------------------------------------------------------

TECH_RULES: tuple[PatternRule, ...] = (
    _rule("typescript", r"typescript|\.tsx?\b|tsconfig"),
    _rule("javascript", r"javascript|\.jsx?\b|package\.json"),
    _rule("python", r"python|\.py\b|requirements\.txt|pyproject\.toml|\bvenv\b"),
    _rule("rust", r"\brust\b|cargo|\.rs\b"),
    _rule("go", r"golang|\.go\b|go\.mod"),
    _rule("react", r"\breact\b|\.jsx\b|\.tsx\b"),
    _rule("vue", r"\bvue\b|\.vue\b"),
    _rule("svelte", r"svelte"),
    _rule("nextjs", r"next\.js|nextjs|next\.config|app/layout"),
    _rule("express", r"express"),
    _rule("fastapi", r"fastapi"),
    _rule("django", r"django"),
    _rule("postgres", r"postgres|\bpg\b|psql"),
    _rule("mongodb", r"mongo"),
    _rule("redis", r"redis"),
    _rule("sqlite", r"sqlite"),
    _rule("docker", r"docker|dockerfile|compose\.ya?ml"),
    _rule("kubernetes", r"kubernetes|\bk8s\b|kubectl|helm"),
    _rule("aws", r"\baws\b|lambda|\bs3\b|dynamodb"),
)


# --- Complementary areas ------------------------------------------------------

_BACKEND_FRAMEWORKS = {"express", "fastapi", "django"}
_FRONTEND_FRAMEWORKS = {"react", "vue", "svelte"}
_DATABASES = {"postgres", "mongodb", "sqlite"}
_TEST_RUNNERS = {"jest", "pytest", "vitest"}


def _has_dir(directories: set[str], *names: str) -> bool:
    return any(name in directory.lower() for directory in directories for name in names)


COMPLEMENTARY_RULES: tuple[ComplementaryRule, ...] = (
    ComplementaryRule(
        name="backend_without_frontend",
        applies=lambda tech, dirs, files: bool(tech & _BACKEND_FRAMEWORKS)
        and not _has_dir(dirs, "frontend", "client", "ui"),
        suggestion="frontend integration patterns",
    ),
    ComplementaryRule(
        name="frontend_without_backend",
        applies=lambda tech, dirs, files: bool(tech & _FRONTEND_FRAMEWORKS)
        and not _has_dir(dirs, "api", "server", "backend"),
        suggestion="API design best practices",
    ),
    ComplementaryRule(
        name="database_present",
        applies=lambda tech, dirs, files: bool(tech & _DATABASES),
        suggestion="database query optimization",
    ),
    ComplementaryRule(
        name="no_tests",
        applies=lambda tech, dirs, files: not any("test" in f.lower() for f in files)
        and not tech & _TEST_RUNNERS,
        suggestion="testing strategies",
    ),
    ComplementaryRule(
        name="docker_without_orchestration",
        applies=lambda tech, dirs, files: "docker" in tech and "kubernetes" not in tech,
        suggestion="container orchestration options",
    ),
)


def complementary_areas(
    tech: set[str], directories: set[str], files: set[str], limit: int = 3
) -> list[str]:
    suggestions = [
        rule.suggestion for rule in COMPLEMENTARY_RULES if rule.applies(tech, directories, files)
    ]
    return suggestions[:limit]


# --- Domains ------------------------------------------------------------------

DOMAIN_RULES: tuple[PatternRule, ...] = (
    _rule("security", r"security|vulnerab|xss|csrf|auth|jwt|oauth|encrypt"),
    _rule("database", r"database|sql|postgres|mongo|redis|sqlite|query|migration|schema"),
    _rule("devops", r"docker|kubernetes|k8s|deploy|ci/cd|pipeline|aws|terraform"),
    _rule("testing", r"test|jest|pytest|vitest|mock|coverage"),
    _rule("frontend", r"react|vue|svelte|angular|css|tailwind|component|dom"),
    _rule("backend", r"api|server|express|fastapi|django|endpoint|rest|graphql"),
    _rule("performance", r"performance|optimi[sz]|cache|caching|latency|memory leak"),
    _rule("language", r"python|typescript|javascript|rust|golang|syntax|type error"),
)


def infer_domain(query: str) -> str:
    found = first_match(DOMAIN_RULES, query)
    return found[0].name if found else "general"


# --- URL cache TTL classes ----------------------------------------------------

URL_TTL_RULES: tuple[PatternRule, ...] = (
    _rule("docs", r"^(docs\.|developer\.|devdocs\.)|readthedocs\.io$|docs\.python\.org$|developer\.mozilla\.org$"),
    _rule("reference", r"(^|\.)(github\.com|gitlab\.com|stackoverflow\.com|stackexchange\.com|pypi\.org|npmjs\.com)$"),
    _rule("news", r"(^|\.)(news\.ycombinator\.com|reddit\.com|twitter\.com|x\.com|medium\.com|dev\.to)$"),
)
