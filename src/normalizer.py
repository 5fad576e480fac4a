"""
Per-batch min-max normalization of numeric feature extractors.

Each numeric extractor is rescaled to [0, 1] over the current candidate batch:
``(raw - min) / max(span, eps)``. A feature with no span (all values within
eps) normalizes to the constant 1.0 so it does not zero out every candidate.
Non-numeric extractors pass through unchanged. The result is rebuilt from
scratch for every batch.
"""
import logging
import warnings
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from formula import EvaluationError, Extractor, FeatureSet, Number, box
from tolerances import resolve_tol

logger = logging.getLogger(__name__)


class DegenerateBatchWarning(UserWarning):
    """Every candidate has the same value (within eps) for a numeric feature."""
    pass


@dataclass(frozen=True)
class FeatureRange:
    """Batch statistics of one numeric feature."""
    minimum: float
    maximum: float
    span: float
    degenerate: bool

    def normalize(self, raw: float) -> float:
        if self.degenerate:
            return 1.0
        return (raw - self.minimum) / self.span


@dataclass(frozen=True)
class NormalizedFeatureSet:
    """Batch-scoped copy of a feature set with numeric extractors rescaled."""
    extractors: Dict[str, Extractor]
    ranges: Dict[str, FeatureRange]

    def __getitem__(self, name: str) -> Extractor:
        return self.extractors[name]

    def __iter__(self):
        return iter(self.extractors)

    def __len__(self) -> int:
        return len(self.extractors)

    def keys(self):
        return self.extractors.keys()

    def is_normalized(self, name: str) -> bool:
        return name in self.ranges


def normalize_features(
    features: FeatureSet,
    candidates: Sequence[Any],
    tol: Optional[float] = None,
) -> NormalizedFeatureSet:
    """Build the normalized feature set for one candidate batch.

    A feature is numeric when its value for the first candidate is a number;
    every other candidate must then yield a number too.

    Args:
        features: Ordered mapping of feature name -> extractor.
        candidates: The batch; an empty batch leaves every extractor unchanged.
        tol: Tolerance eps, defaults to the process-wide tolerance.

    Returns:
        NormalizedFeatureSet with per-feature ranges for the numeric features.

    Raises:
        EvaluationError: a numeric feature yields a non-numeric value for
            some candidate.
    """
    eps = resolve_tol(tol)
    extractors: Dict[str, Extractor] = dict(features)
    ranges: Dict[str, FeatureRange] = {}
    if len(candidates) == 0:
        return NormalizedFeatureSet(extractors, ranges)

    for name, extractor in features.items():
        if not isinstance(box(extractor(candidates[0])), Number):
            continue

        values = []
        for index, candidate in enumerate(candidates):
            value = box(extractor(candidate))
            if not isinstance(value, Number):
                raise EvaluationError(
                    f"Feature '{name}' is numeric for the first candidate but "
                    f"yields {value.kind} {value.value!r}",
                    candidate_index=index,
                )
            values.append(value.value)

        minimum, maximum = min(values), max(values)
        degenerate = (maximum - minimum) <= eps
        feature_range = FeatureRange(
            minimum=minimum,
            maximum=maximum,
            span=max(maximum - minimum, eps),
            degenerate=degenerate,
        )
        ranges[name] = feature_range
        extractors[name] = _normalized_extractor(extractor, feature_range)

        if degenerate:
            warnings.warn(
                f"Feature '{name}' has no span over {len(candidates)} candidates "
                f"(value {minimum:g}); normalized to 1.0",
                DegenerateBatchWarning,
                stacklevel=2,
            )
        logger.debug(
            "Normalized feature %s: min=%g max=%g degenerate=%s",
            name, minimum, maximum, degenerate,
        )

    return NormalizedFeatureSet(extractors, ranges)


def _normalized_extractor(extractor: Extractor, feature_range: FeatureRange) -> Extractor:
    def normalized(candidate: Any) -> float:
        return feature_range.normalize(box(extractor(candidate)).value)
    return normalized
