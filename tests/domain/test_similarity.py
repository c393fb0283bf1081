"""Tests for lexical duplicate-idea detection."""

import pytest

from capability_factory.domain.similarity import (
    clamp_limit,
    jaccard_similarity,
    rank_candidates,
    tokenize,
)

pytestmark = pytest.mark.unit


class TestTokenize:
    def test_lowercases_and_drops_short_tokens(self):
        assert tokenize("An AI Lead-Scoring widget, v2") == {"lead", "scoring", "widget"}

    def test_empty(self):
        assert tokenize("") == set()
        assert tokenize(None) == set()


class TestJaccard:
    def test_two_of_three(self):
        assert round(jaccard_similarity({"lead", "scoring", "widget"}, {"lead", "scoring"}), 4) == 0.6667

    def test_empty_set_is_zero(self):
        assert jaccard_similarity(set(), {"lead"}) == 0.0


class TestRankCandidates:
    def test_duplicate_warning_above_threshold(self):
        ranking = rank_candidates(
            {"lead", "scoring", "widget"},
            [("IDEA-a", "Lead scoring", "new", {"lead", "scoring"})],
        )

        assert ranking.ideas[0].similarity == 0.6667
        assert ranking.duplicate_warning == "Possible duplicate of IDEA-a (66% similar): Lead scoring"

    def test_no_warning_below_threshold(self):
        # 1 shared token out of 3 -> 0.3333
        ranking = rank_candidates(
            {"lead", "scoring"},
            [("IDEA-a", "Lead routing", "new", {"lead", "routing"})],
        )

        assert ranking.ideas[0].similarity == 0.3333
        assert ranking.duplicate_warning is None

    def test_approved_boost_and_ordering(self):
        tokens = {"lead", "scoring", "widget", "crm"}
        ranking = rank_candidates(
            tokens,
            [
                ("IDEA-b", "B", "new", {"lead", "scoring"}),
                ("IDEA-a", "A", "new", {"lead", "scoring"}),
                ("IDEA-c", "C", "approved", {"lead", "scoring"}),
            ],
        )

        assert [r.idea_id for r in ranking.ideas] == ["IDEA-c", "IDEA-a", "IDEA-b"]
        assert ranking.ideas[0].score == 0.55
        assert ranking.ideas[0].similarity == 0.5

    def test_zero_similarity_dropped_and_exclusion(self):
        ranking = rank_candidates(
            {"lead"},
            [
                ("IDEA-self", "Self", "new", {"lead"}),
                ("IDEA-other", "Other", "new", {"billing"}),
            ],
            exclude_idea_id="IDEA-self",
        )
        assert ranking.ideas == []
        assert ranking.duplicate_warning is None

    def test_limit_is_clamped(self):
        candidates = [(f"IDEA-{i:02d}", str(i), "new", {"lead"}) for i in range(20)]
        assert len(rank_candidates({"lead"}, candidates, limit=50).ideas) == 12
        assert len(rank_candidates({"lead"}, candidates, limit=0).ideas) == 1


@pytest.mark.parametrize("value,expected", [(None, 5), (0, 1), (7, 7), (99, 12)])
def test_clamp_limit(value, expected):
    assert clamp_limit(value) == expected
