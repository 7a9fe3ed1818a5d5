"""Fuzzy name scoring for identity resolution.

Scores are always in ``[0, 1]``. The scorer is chosen by name from the
rapidfuzz scorers below, or any ``(str, str) -> float`` callable may be
injected (returning a value already in ``[0, 1]``).
"""

from typing import Callable, Mapping, TypeVar

from rapidfuzz import fuzz, process
from rapidfuzz.distance import JaroWinkler

from ..errors import ConfigurationError

K = TypeVar("K")

Scorer = Callable[[str, str], float]

# name -> (rapidfuzz scorer, scale of its output)
NATIVE_SCORERS: dict[str, tuple[Callable, float]] = {
    "token_sort_ratio": (fuzz.token_sort_ratio, 100.0),
    "token_set_ratio": (fuzz.token_set_ratio, 100.0),
    "ratio": (fuzz.ratio, 100.0),
    "wratio": (fuzz.WRatio, 100.0),
    "jaro_winkler": (JaroWinkler.normalized_similarity, 1.0),
}


class NameMatcher:
    """Scores normalized names against each other."""

    def __init__(self, scorer: str | Scorer = "token_sort_ratio"):
        if isinstance(scorer, str):
            if scorer not in NATIVE_SCORERS:
                raise ConfigurationError(
                    f"Unknown scorer {scorer!r}; expected one of {sorted(NATIVE_SCORERS)}"
                )
            self.name = scorer
            self._native: tuple[Callable, float] | None = NATIVE_SCORERS[scorer]
            self._custom: Scorer | None = None
        else:
            self.name = getattr(scorer, "__name__", "custom")
            self._native = None
            self._custom = scorer

    def score(self, left: str, right: str) -> float:
        """Similarity of two normalized names."""
        if not left or not right:
            return 0.0
        if self._native is not None:
            func, scale = self._native
            raw = func(left, right) / scale
        else:
            raw = self._custom(left, right)
        return round(min(max(raw, 0.0), 1.0), 6)

    def rank(
        self, query: str, choices: Mapping[K, str], cutoff: float
    ) -> list[tuple[K, float]]:
        """All choices scoring at least ``cutoff``, as (key, score) pairs.

        Order is unspecified; callers apply their own tie-breaking.
        """
        if not query or not choices:
            return []

        if self._native is not None:
            func, scale = self._native
            matches = process.extract(
                query,
                choices,
                scorer=func,
                score_cutoff=round(cutoff * scale, 6),
                limit=None,
            )
            return [
                (key, round(min(score / scale, 1.0), 6)) for _, score, key in matches
            ]

        ranked = []
        for key, choice in choices.items():
            score = self.score(query, choice)
            if score >= cutoff:
                ranked.append((key, score))
        return ranked
