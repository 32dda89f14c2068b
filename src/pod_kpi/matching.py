"""
Fuzzy resolution of free-text project and pod names.

Scoring tiers, first match wins:

    exact name                          1000
    name ends with the query             900
    every query word in the name         500 < score < 600
    some query words in the name         200 < score < 300
    nothing                              None

Suffix ranks above all-words so "Q1 26 - Contributor Portal" beats a project
that merely mentions both words, and all-words ranks above partial so a name
sharing one early word ("... Contributor App") cannot win.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from rapidfuzz.distance import Levenshtein

EXACT_SCORE = 1000.0
SUFFIX_SCORE = 900.0
ALL_WORDS_BASE = 500.0
PARTIAL_BASE = 200.0
# Span of the all-words and partial tiers; below 100 so a tier never reaches the next.
TIER_SPAN = 99.0

POD_SIMILARITY_THRESHOLD = 0.5

_WS_RE = re.compile(r"\s+")


def normalize_text(value: Any) -> str:
    return _WS_RE.sub(" ", str(value or "").strip()).lower()


def _name_of(candidate: Any) -> str:
    if isinstance(candidate, str):
        return candidate
    if isinstance(candidate, Mapping):
        return str(candidate.get("name") or "")
    return str(getattr(candidate, "name", "") or "")


def score_match(candidate_name: Any, query: Any) -> float | None:
    """Score how well ``candidate_name`` matches ``query``. None means no match."""
    q = normalize_text(query)
    if not q:
        return None
    name = normalize_text(candidate_name)
    if not name:
        return None

    if name == q:
        return EXACT_SCORE
    if name.endswith(q):
        return SUFFIX_SCORE

    words = q.split(" ")
    matched = [word for word in words if word in name]
    if len(matched) == len(words):
        coverage = min(1.0, len(q) / len(name))
        return ALL_WORDS_BASE + coverage * TIER_SPAN
    if matched:
        return PARTIAL_BASE + (len(matched) / len(words)) * TIER_SPAN
    return None


@dataclass(frozen=True)
class ProjectMatch:
    pod: str
    project: Any
    score: float

    def as_dict(self) -> dict[str, Any]:
        return {"pod": self.pod, "project": self.project, "score": self.score}


def fuzzy_match_project(projects: Iterable[Any], query: Any) -> Any | None:
    """Best-scoring project within one list; earlier projects win ties."""
    best = None
    best_score = 0.0
    for project in projects:
        score = score_match(_name_of(project), query)
        if score is not None and score > best_score:
            best, best_score = project, score
    return best


def find_best_project_match(
    pod_projects: Mapping[str, Iterable[Any]] | Iterable[tuple[str, Iterable[Any]]],
    query: Any,
) -> ProjectMatch | None:
    """Best match across pods.

    Pods are scanned in the given order and only a strictly higher score
    replaces the current best, so on a tie the first pod enumerated wins.
    """
    if not normalize_text(query):
        return None

    items = pod_projects.items() if isinstance(pod_projects, Mapping) else pod_projects
    best: ProjectMatch | None = None
    for pod_name, projects in items:
        for project in projects:
            score = score_match(_name_of(project), query)
            if score is None:
                continue
            if best is None or score > best.score:
                best = ProjectMatch(pod=pod_name, project=project, score=score)
    return best


def fuzzy_match_pod(pod_names: Sequence[str], query: Any) -> str | None:
    """Resolve a typed pod name: exact, prefix, substring, then edit distance."""
    q = normalize_text(query)
    if not q:
        return None
    lowered = [(name, name.lower()) for name in pod_names]

    for name, low in lowered:
        if low == q:
            return name
    for name, low in lowered:
        if low.startswith(q):
            return name
    for name, low in lowered:
        if q in low:
            return name

    best = None
    best_score = 0.0
    for name, low in lowered:
        score = Levenshtein.normalized_similarity(q, low)
        if score > best_score and score > POD_SIMILARITY_THRESHOLD:
            best, best_score = name, score
    return best
