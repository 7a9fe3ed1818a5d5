"""Unit tests for NameMatcher scoring."""

import pytest

from eris.errors import ConfigurationError
from eris.resolution.matcher import NATIVE_SCORERS, NameMatcher


class TestNameMatcher:
    """Tests for fuzzy scoring."""

    @pytest.mark.parametrize("scorer", sorted(NATIVE_SCORERS))
    def test_scores_are_unit_interval(self, scorer):
        matcher = NameMatcher(scorer)
        for left, right in [
            ("oyster yachts", "oyster yachts"),
            ("oyster yachts", "oyster marine"),
            ("oyster yachts", "zzz"),
        ]:
            assert 0.0 <= matcher.score(left, right) <= 1.0

    @pytest.mark.parametrize("scorer", sorted(NATIVE_SCORERS))
    def test_identical_names_score_one(self, scorer):
        assert NameMatcher(scorer).score("acme widgets", "acme widgets") == 1.0

    def test_token_order_ignored_by_default(self):
        matcher = NameMatcher()
        assert matcher.score("yachts oyster", "oyster yachts") == 1.0

    def test_empty_names_score_zero(self):
        matcher = NameMatcher()
        assert matcher.score("", "acme") == 0.0
        assert matcher.score("acme", "") == 0.0

    def test_unknown_scorer_rejected(self):
        with pytest.raises(ConfigurationError):
            NameMatcher("soundex")

    def test_custom_scorer_is_clamped(self):
        matcher = NameMatcher(lambda left, right: 1.7)
        assert matcher.score("a", "b") == 1.0


class TestRank:
    """Tests for ranking choices against a query."""

    def test_rank_applies_cutoff(self):
        matcher = NameMatcher()
        choices = {1: "oyster yachts", 2: "oyster yacht", 3: "completely different"}

        ranked = dict(matcher.rank("oyster yachts", choices, cutoff=0.65))

        assert set(ranked) == {1, 2}
        assert ranked[1] == 1.0
        assert 0.65 <= ranked[2] < 1.0

    def test_rank_with_custom_scorer(self):
        scores = {"alpha": 0.9, "beta": 0.5}
        matcher = NameMatcher(lambda query, choice: scores[choice])

        ranked = matcher.rank("query", {"a": "alpha", "b": "beta"}, cutoff=0.6)

        assert ranked == [("a", 0.9)]

    def test_rank_empty_inputs(self):
        matcher = NameMatcher()
        assert matcher.rank("", {1: "x"}, cutoff=0.5) == []
        assert matcher.rank("x", {}, cutoff=0.5) == []
