"""
Vector similarity search.

Plain linear scans over the candidate list. The candidate set is the
per-device learned-pattern count (hundreds, not millions), so an exact O(n)
scan is the baseline and no approximate index is used.
"""

import math
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, List, Optional, Sequence, TypeVar

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    dot(a, b) / (|a| * |b|).

    Returns 0.0 for empty or mismatched-length vectors and for zero vectors;
    never raises.
    """
    if not a or not b or len(a) != len(b):
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    denominator = math.sqrt(norm_a * norm_b)
    if denominator == 0.0:
        return 0.0
    return max(-1.0, min(1.0, dot / denominator))


@dataclass
class SearchResult(Generic[T]):
    """A candidate and its similarity to the query."""
    item: T
    similarity: float


def find_best_match(
    query: Sequence[float],
    candidates: Iterable[T],
    min_similarity: float,
    vector_of: Callable[[T], Sequence[float]] = lambda c: c.vector,
) -> Optional[SearchResult[T]]:
    """
    Highest-similarity candidate at or above `min_similarity`.

    Ties keep the earlier candidate (strictly-greater replaces).
    """
    best: Optional[SearchResult[T]] = None
    for candidate in candidates:
        similarity = cosine_similarity(query, vector_of(candidate))
        if similarity >= min_similarity and (best is None or similarity > best.similarity):
            best = SearchResult(candidate, similarity)
    return best


def find_all_above(
    query: Sequence[float],
    candidates: Iterable[T],
    min_similarity: float,
    vector_of: Callable[[T], Sequence[float]] = lambda c: c.vector,
) -> List[SearchResult[T]]:
    """Every candidate at or above the threshold, most similar first."""
    results = [
        SearchResult(candidate, cosine_similarity(query, vector_of(candidate)))
        for candidate in candidates
    ]
    results = [r for r in results if r.similarity >= min_similarity]
    # sorted() is stable, so equal scores keep input order
    return sorted(results, key=lambda r: r.similarity, reverse=True)


def find_top_k(
    query: Sequence[float],
    candidates: Iterable[T],
    k: int = 3,
    min_similarity: float = 0.0,
    vector_of: Callable[[T], Sequence[float]] = lambda c: c.vector,
) -> List[SearchResult[T]]:
    """The k most similar candidates at or above the threshold."""
    if k <= 0:
        return []
    return find_all_above(query, candidates, min_similarity, vector_of)[:k]


@dataclass(frozen=True)
class SimilarityThresholds:
    """
    Decision thresholds for SMS pattern similarity.

    All comparisons are inclusive (similarity >= threshold).
    """
    non_payment: float = 0.97
    auto_apply: float = 0.95
    confirm: float = 0.92
    llm_trigger: float = 0.80
    grouping: float = 0.95
    small_group_merge: float = 0.70
    remote_default: float = 0.94

    def __post_init__(self):
        for name in ("non_payment", "auto_apply", "confirm", "llm_trigger",
                     "grouping", "small_group_merge", "remote_default"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")
        if not self.auto_apply >= self.confirm >= self.llm_trigger:
            raise ValueError("thresholds must satisfy auto_apply >= confirm >= llm_trigger")

    @classmethod
    def from_config(cls, section: dict) -> "SimilarityThresholds":
        known = {k: float(v) for k, v in (section or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def should_match_non_payment(self, similarity: float) -> bool:
        return similarity >= self.non_payment

    def should_auto_apply(self, similarity: float) -> bool:
        return similarity >= self.auto_apply

    def should_confirm(self, similarity: float) -> bool:
        return similarity >= self.confirm

    def should_trigger_llm(self, similarity: float) -> bool:
        return self.llm_trigger <= similarity < self.confirm

    def should_group(self, similarity: float) -> bool:
        return similarity >= self.grouping
