"""
Candidate ranking by objective function.

Ranking a batch runs three steps:

1. Filter: drop candidates for which any numeric feature is NaN or infinite.
   Raw values are inspected, even when normalization is requested.
2. Score: evaluate the formula (on normalized features if requested) for
   every surviving candidate. A non-numeric score aborts the call.
3. Sort: descending score, then each tie-break key in order, all compared
   with the shared tolerance. Python's sort is stable, so candidates equal
   on every key keep their input order.
"""
import functools
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterator, List, Optional, Sequence, Tuple, TypeVar

from formula import CompiledFormula, EvaluationError, FeatureSet, Number, box
from normalizer import NormalizedFeatureSet, normalize_features
from tolerances import compare_with_tolerance, resolve_tol

logger = logging.getLogger(__name__)

T = TypeVar("T")
TieBreaker = Callable[[Any], float]


@dataclass(frozen=True)
class RankedCandidate(Generic[T]):
    candidate: T
    score: float


@dataclass
class RankedResult(Generic[T]):
    """Ranked (candidate, score) pairs, best first."""
    entries: List[RankedCandidate] = field(default_factory=list)
    # Candidates dropped for a non-finite raw feature value
    excluded: List[Any] = field(default_factory=list)
    normalization: Optional[NormalizedFeatureSet] = None

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[RankedCandidate]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> RankedCandidate:
        return self.entries[index]

    @property
    def candidates(self) -> List[Any]:
        return [e.candidate for e in self.entries]

    @property
    def scores(self) -> List[float]:
        return [e.score for e in self.entries]

    @property
    def best(self) -> Optional[RankedCandidate]:
        return self.entries[0] if self.entries else None


class ObjectiveFunction(Generic[T]):
    """A compiled scoring formula plus the normalization switch."""

    def __init__(self, features: FeatureSet, expression: str, normalize: bool = False):
        self.formula = CompiledFormula(features, expression)
        self.normalize = normalize

    @property
    def features(self) -> FeatureSet:
        return self.formula.features

    @property
    def expression(self) -> str:
        return self.formula.expression

    def has_finite_features(self, candidate: T) -> bool:
        """False if any numeric feature of ``candidate`` is NaN or infinite."""
        for extractor in self.features.values():
            value = box(extractor(candidate))
            if isinstance(value, Number) and not math.isfinite(value.value):
                return False
        return True

    def filter_non_finite(self, candidates: Sequence[T]) -> List[T]:
        return [c for c in candidates if self.has_finite_features(c)]

    def rank(
        self,
        candidates: Sequence[T],
        *tie_breakers: TieBreaker,
        tol: Optional[float] = None,
    ) -> RankedResult:
        """Filter, score and sort a batch of candidates.

        Args:
            candidates: The batch; it is not modified.
            *tie_breakers: Secondary keys applied left to right, each descending.
            tol: Comparison tolerance, defaults to the process-wide tolerance.

        Returns:
            RankedResult; empty (not an error) when nothing survives filtering.

        Raises:
            EvaluationError: the formula yields a non-numeric score.
        """
        eps = resolve_tol(tol)
        batch = list(candidates)
        kept: List[T] = []
        kept_positions: List[int] = []
        excluded: List[T] = []
        for position, candidate in enumerate(batch):
            try:
                finite = self.has_finite_features(candidate)
            except EvaluationError as exc:
                raise EvaluationError(exc.detail, candidate_index=position) from exc
            if finite:
                kept.append(candidate)
                kept_positions.append(position)
            else:
                excluded.append(candidate)

        if not kept:
            logger.info(
                "Ranked 0 of %d candidates with '%s' (excluded=%d)",
                len(batch), self.expression, len(excluded),
            )
            return RankedResult(excluded=excluded)

        normalization = None
        if self.normalize:
            try:
                normalization = normalize_features(self.features, kept, eps)
            except EvaluationError as exc:
                if exc.candidate_index is None:
                    raise
                # Report the position in the input batch, not among survivors
                position = kept_positions[exc.candidate_index]
                raise EvaluationError(exc.detail, candidate_index=position) from exc

        keyed: List[Tuple[Tuple[float, ...], T]] = []
        for position, candidate in zip(kept_positions, kept):
            try:
                score = self.formula.evaluate_number(candidate, normalization)
                keys = (score,) + tuple(_tie_break_value(f(candidate)) for f in tie_breakers)
            except EvaluationError as exc:
                raise EvaluationError(exc.detail, candidate_index=position) from exc
            keyed.append((keys, candidate))

        def compare(a: Tuple[Tuple[float, ...], T], b: Tuple[Tuple[float, ...], T]) -> int:
            for x, y in zip(a[0], b[0]):
                # Descending: larger key first
                order = compare_with_tolerance(y, x, eps)
                if order != 0:
                    return order
            return 0

        keyed.sort(key=functools.cmp_to_key(compare))
        entries = [RankedCandidate(candidate, keys[0]) for keys, candidate in keyed]

        logger.info(
            "Ranked %d of %d candidates with '%s' (excluded=%d, normalized=%s, best=%.6g)",
            len(entries), len(batch), self.expression, len(excluded),
            self.normalize, entries[0].score,
        )
        return RankedResult(entries=entries, excluded=excluded, normalization=normalization)

    def sort(self, candidates: Sequence[T], *tie_breakers: TieBreaker) -> List[T]:
        """Ranked candidates without their scores."""
        return self.rank(candidates, *tie_breakers).candidates


def _tie_break_value(raw: Any) -> float:
    value = box(raw)
    if not isinstance(value, Number):
        raise EvaluationError(f"Tie-break key must be a number, got {value.kind} {value.value!r}")
    return value.value


def rank(
    candidates: Sequence[T],
    features: FeatureSet,
    expression: str,
    tie_breakers: Sequence[TieBreaker] = (),
    normalize: bool = False,
) -> RankedResult:
    """Compile ``expression`` over ``features`` and rank ``candidates``.

    Raises:
        CompileError: the formula is malformed or names an undeclared feature.
        EvaluationError: the formula yields a non-numeric score.
    """
    objective = ObjectiveFunction(features, expression, normalize=normalize)
    return objective.rank(candidates, *tie_breakers)
