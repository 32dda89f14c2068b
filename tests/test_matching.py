from __future__ import annotations

import pytest

from pod_kpi.matching import (
    EXACT_SCORE,
    SUFFIX_SCORE,
    find_best_project_match,
    fuzzy_match_pod,
    fuzzy_match_project,
    score_match,
)

POD_PROJECTS = {
    "FTS": [
        {"id": "fts-1", "name": "Q1 2026 : Sonar cloud analysis for Contributor App"},
        {"id": "fts-2", "name": "Q1 2026 : Tagging system V2"},
        {"id": "fts-3", "name": "Q1 2026 : Data Pipeline Migration"},
    ],
    "Control Center": [
        {"id": "cc-1", "name": "Q1 26 - Contributor Portal"},
        {"id": "cc-2", "name": "Q1 26 - Admin Dashboard"},
    ],
    "Platform": [
        {"id": "pl-1", "name": "Apex Agent"},
        {"id": "pl-2", "name": "Infrastructure Upgrade"},
    ],
    "Talent Studio": [
        {"id": "ts-1", "name": "Q1 26 - Talent Search V3"},
        {"id": "ts-2", "name": "Contributor Onboarding Flow"},
    ],
}


def test_score_tiers_are_ordered():
    query = "Contributor Portal"
    exact = score_match("Contributor Portal", query)
    suffix = score_match("Q1 26 - Contributor Portal", query)
    all_words = score_match("New contributor portal system", query)
    partial = score_match("Contributor management system", query)

    assert exact == EXACT_SCORE
    assert suffix == SUFFIX_SCORE
    assert 500 < all_words < 600
    assert 200 < partial < 300
    assert exact > suffix > all_words > partial


def test_score_is_case_and_whitespace_insensitive():
    assert score_match("Apex   Agent", "  apex agent ") == EXACT_SCORE


def test_score_no_shared_words_is_none():
    assert score_match("Infrastructure Upgrade", "contributor portal") is None


@pytest.mark.parametrize("query", ["", "   ", None])
def test_blank_query_never_matches(query):
    assert score_match("Anything", query) is None
    assert find_best_project_match(POD_PROJECTS, query) is None
    assert fuzzy_match_project(POD_PROJECTS["FTS"], query) is None


def test_suffix_match_beats_early_partial_match_across_pods():
    match = find_best_project_match(POD_PROJECTS, "contributor portal")

    assert match is not None
    assert match.pod == "Control Center"
    assert match.project["id"] == "cc-1"
    assert match.score == SUFFIX_SCORE


def test_exact_match_in_later_pod():
    match = find_best_project_match(POD_PROJECTS, "apex agent")
    assert match.pod == "Platform"
    assert match.score == EXACT_SCORE


def test_suffix_match_with_quarter_prefix():
    match = find_best_project_match(POD_PROJECTS, "tagging system v2")
    assert match.pod == "FTS"
    assert match.project["id"] == "fts-2"


def test_all_words_beats_partial():
    match = find_best_project_match(POD_PROJECTS, "contributor onboarding")
    assert match.pod == "Talent Studio"
    assert match.project["id"] == "ts-2"


def test_no_match_returns_none():
    assert find_best_project_match(POD_PROJECTS, "quantum teleporter") is None


def test_tie_goes_to_first_pod_in_order():
    pods = [
        ("Control Center", [{"name": "Shared Tooling"}]),
        ("FTS", [{"name": "Shared Tooling"}]),
    ]
    assert find_best_project_match(pods, "shared tooling").pod == "Control Center"
    assert find_best_project_match(list(reversed(pods)), "shared tooling").pod == "FTS"


def test_fuzzy_match_project_within_pod():
    assert fuzzy_match_project(POD_PROJECTS["FTS"], "pipeline")["id"] == "fts-3"
    assert fuzzy_match_project(["alpha beta", "beta"], "beta") == "beta"


def test_fuzzy_match_pod_edit_distance_must_exceed_half():
    # one edit in four characters is 0.75, two edits is exactly 0.5
    assert fuzzy_match_pod(["abcd"], "abcx") == "abcd"
    assert fuzzy_match_pod(["abcd"], "abxy") is None


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("fts", "FTS"),
        ("control", "Control Center"),
        ("center", "Control Center"),
        ("talent studoi", "Talent Studio"),
        ("ftx", "FTS"),
        ("zzzzzz", None),
        ("", None),
    ],
)
def test_fuzzy_match_pod(query, expected):
    assert fuzzy_match_pod(list(POD_PROJECTS), query) == expected
