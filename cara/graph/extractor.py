"""
Recovers structured records from free-form model output.

Parsing is layered: the whole text as JSON, then the first balanced
{...} / [...] span, then the first fenced code block. The first candidate
that both parses and normalises into the requested shape wins. Anything else
yields EMPTY, which callers treat as "nothing extracted this step".
"""

import json
import logging
import math
import re
from enum import Enum
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from cara.graph.state import (
    Document,
    GapLevel,
    Insight,
    Milestone,
    Plan,
    Priority,
    Resource,
    SkillGap,
    StateDelta,
)

logger = logging.getLogger(__name__)


class Shape(str, Enum):
    SKILL_GAPS = "skill_gaps"
    INSIGHT = "insight"
    PLAN = "plan"
    EVIDENCE = "evidence"


class _Empty:
    """Canonical "no data extracted" result. Falsy, and a singleton."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "EMPTY"


EMPTY = _Empty()

_NO_PARSE = object()


# ---------------------------------------------------------------------------
# Parse strategies (each total: returns _NO_PARSE instead of raising)
# ---------------------------------------------------------------------------

def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        return _NO_PARSE


def parse_whole(text: str) -> Any:
    return _loads(text.strip())


_CLOSERS = {"{": "}", "[": "]"}


def _span_from(text: str, start: int) -> str | None:
    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or ch != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return text[start : i + 1]
    return None


def parse_balanced_span(text: str) -> Any:
    """Parse the first balanced {...} or [...] span that is valid JSON."""
    for match in re.finditer(r"[\[{]", text):
        span = _span_from(text, match.start())
        if span is None:
            continue
        parsed = _loads(span)
        if parsed is not _NO_PARSE:
            return parsed
    return _NO_PARSE


_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_+-]*)[ \t]*\n?(.*?)```", re.DOTALL)


def parse_fenced_block(text: str) -> Any:
    match = _FENCE_RE.search(text)
    if match is None:
        return _NO_PARSE
    return _loads(match.group(2).strip())


STRATEGIES: tuple[Callable[[str], Any], ...] = (
    parse_whole,
    parse_balanced_span,
    parse_fenced_block,
)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _pick(data: dict, keys: Iterable[str]) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return int(round(value))
    if isinstance(value, str):
        # "70%", "3 weeks", "about 6"
        match = _NUMBER_RE.search(value)
        if match:
            return int(round(float(match.group())))
    return None


def _clamp(value: int, low: int, high: int | None = None) -> int:
    value = max(low, value)
    if high is not None:
        value = min(high, value)
    return value


def _as_str_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return ()
    items = []
    for item in value:
        if isinstance(item, dict):
            item = _pick(item, ("text", "title", "description", "observation", "challenge"))
        text = _as_text(item)
        if text:
            items.append(text)
    return tuple(items)


def _as_enum(value: Any, enum_cls, default):
    text = _as_text(value).lower()
    for member in enum_cls:
        if member.value.lower() == text:
            return member
    return default


def _unwrap(data: Any, containers: Iterable[str], want=list) -> Any:
    """Return the first container value of the wanted type, or the data itself."""
    if isinstance(data, dict):
        for key in containers:
            if isinstance(data.get(key), want):
                return data[key]
    return data


# ---------------------------------------------------------------------------
# Shape normalisers (return a record or None)
# ---------------------------------------------------------------------------

_SKILL_GAP_CONTAINERS = ("skillGaps", "skill_gaps", "gaps", "skills", "missingSkills")
_SKILL_NAME_KEYS = ("skillName", "skill_name", "skill", "name")


def _skill_gap(item: Any) -> SkillGap | None:
    if not isinstance(item, dict):
        return None
    name = _as_text(_pick(item, _SKILL_NAME_KEYS))
    if not name:
        return None
    confidence = _as_int(_pick(item, ("confidenceScore", "confidence_score", "confidence")))
    mentions = _as_int(_pick(item, ("mentionCount", "mention_count", "mentions", "frequency")))
    return SkillGap(
        skill_name=name,
        gap_level=_as_enum(
            _pick(item, ("gapLevel", "gap_level", "level", "severity")), GapLevel, GapLevel.MEDIUM
        ),
        confidence_score=_clamp(70 if confidence is None else confidence, 0, 100),
        mention_count=_clamp(1 if mentions is None else mentions, 0),
        context_summary=_as_text(
            _pick(item, ("contextSummary", "context_summary", "context", "summary", "description"))
        ),
    )


def normalise_skill_gaps(data: Any) -> tuple[SkillGap, ...] | None:
    data = _unwrap(data, _SKILL_GAP_CONTAINERS)
    if isinstance(data, dict) and _pick(data, _SKILL_NAME_KEYS) is not None:
        data = [data]
    if not isinstance(data, list):
        return None
    gaps: list[SkillGap] = []
    seen: set[str] = set()
    for item in data:
        gap = _skill_gap(item)
        if gap is None or gap.skill_name.lower() in seen:
            continue
        seen.add(gap.skill_name.lower())
        gaps.append(gap)
    return tuple(gaps) or None


_OBSERVATION_KEYS = ("keyObservations", "key_observations", "observations", "keyInsights", "insights")
_CHALLENGE_KEYS = ("commonChallenges", "common_challenges", "challenges", "obstacles")


def normalise_insight(data: Any) -> Insight | None:
    data = _unwrap(data, ("insights", "insight", "analysis"), want=dict)
    if not isinstance(data, dict):
        return None
    observations = _as_str_list(_pick(data, _OBSERVATION_KEYS))
    challenges = _as_str_list(_pick(data, _CHALLENGE_KEYS))
    if not observations and not challenges:
        return None
    rate = _as_int(_pick(data, ("successRate", "success_rate", "successLikelihood")))
    timeframe = _as_text(
        _pick(data, ("timeframe", "timeFrame", "transitionTime", "transition_time", "typicalTimeframe"))
    )
    return Insight(
        key_observations=observations,
        common_challenges=challenges,
        success_rate=None if rate is None else _clamp(rate, 0, 100),
        timeframe=timeframe or None,
    )


def default_resources(title: str) -> tuple[Resource, ...]:
    return (
        Resource(title=f"Learning resources for {title}", url="https://www.coursera.org/", kind="website"),
        Resource(title=f"Practice projects for {title}", url="https://github.com/", kind="website"),
    )


def _resources(value: Any, milestone_title: str) -> tuple[Resource, ...]:
    if not isinstance(value, list):
        return ()
    resources = []
    for item in value:
        if isinstance(item, str):
            item = {"title": item}
        if not isinstance(item, dict):
            continue
        title = _as_text(_pick(item, ("title", "name"))) or f"Resource for {milestone_title}"
        resources.append(
            Resource(
                title=title,
                url=_as_text(_pick(item, ("url", "link", "href"))) or "https://www.coursera.org/",
                kind=_as_text(_pick(item, ("kind", "type", "resourceType"))) or "website",
            )
        )
    return tuple(resources)


def normalise_plan(data: Any) -> Plan | None:
    if isinstance(data, dict) and isinstance(data.get("plan"), (dict, list)):
        data = data["plan"]
    data = _unwrap(data, ("milestones", "steps", "phases"))
    if not isinstance(data, list):
        return None

    drafts = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            continue
        title = _as_text(_pick(item, ("title", "name", "milestone")))
        if not title:
            continue
        stated = _as_int(_pick(item, ("order", "step", "sequence")))
        drafts.append((math.inf if stated is None else stated, index, title, item))
    if not drafts:
        return None

    milestones = []
    # Keep the stated order, then renumber 1..N
    for order, (_, _, title, item) in enumerate(sorted(drafts, key=lambda d: (d[0], d[1])), start=1):
        weeks = _as_int(_pick(item, ("durationWeeks", "duration_weeks", "weeks", "duration")))
        milestones.append(
            Milestone(
                title=title,
                description=_as_text(_pick(item, ("description", "details", "summary"))),
                priority=_as_enum(_pick(item, ("priority", "importance")), Priority, Priority.MEDIUM),
                duration_weeks=_clamp(2 if weeks is None else weeks, 1),
                order=order,
                resources=_resources(_pick(item, ("resources", "learningResources")), title)
                or default_resources(title),
            )
        )
    return Plan(milestones=tuple(milestones))


_EVIDENCE_CONTAINERS = ("stories", "evidence", "documents", "results", "sources", "transitionStories")


def normalise_evidence(data: Any) -> tuple[Document, ...] | None:
    data = _unwrap(data, _EVIDENCE_CONTAINERS)
    if not isinstance(data, list):
        return None
    documents = []
    for item in data:
        if not isinstance(item, dict):
            continue
        body = _as_text(_pick(item, ("body", "content", "snippet", "story", "text", "summary")))
        if not body:
            continue
        documents.append(
            Document(
                title=_as_text(_pick(item, ("title", "name", "headline"))),
                body=body,
                url=_as_text(_pick(item, ("url", "link", "source", "href"))),
            )
        )
    return tuple(documents) or None


_NORMALISERS: dict[Shape, Callable[[Any], Any]] = {
    Shape.SKILL_GAPS: normalise_skill_gaps,
    Shape.INSIGHT: normalise_insight,
    Shape.PLAN: normalise_plan,
    Shape.EVIDENCE: normalise_evidence,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def extract(raw_output: Any, shape: Shape):
    """Return the normalised record for `shape`, or EMPTY. Never raises."""
    if not isinstance(raw_output, str) or not raw_output.strip():
        logger.debug("Extraction (%s): no text", shape.value)
        return EMPTY

    normalise = _NORMALISERS[shape]
    parsed_any = False
    for strategy in STRATEGIES:
        candidate = strategy(raw_output)
        if candidate is _NO_PARSE:
            continue
        parsed_any = True
        try:
            record = normalise(candidate)
        except (ValidationError, ValueError, TypeError) as exc:
            logger.debug("Extraction (%s) via %s rejected: %s", shape.value, strategy.__name__, exc)
            continue
        if record is not None:
            return record

    if parsed_any:
        logger.debug("Extraction (%s): JSON found but did not match shape", shape.value)
    else:
        logger.debug("Extraction (%s): no JSON found", shape.value)
    return EMPTY


def extract_delta(raw_output: Any, shapes: Iterable[Shape]) -> StateDelta:
    """Run every expected shape over the same output and fold results into a delta."""
    fields: dict[str, Any] = {}
    for shape in shapes:
        record = extract(raw_output, shape)
        if record is EMPTY:
            continue
        if shape is Shape.EVIDENCE:
            fields["evidence"] = record
        elif shape is Shape.SKILL_GAPS:
            fields["skill_gaps"] = record
        elif shape is Shape.INSIGHT:
            fields["insights"] = record
        elif shape is Shape.PLAN:
            fields["plan"] = record
    return StateDelta(**fields)
