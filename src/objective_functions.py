"""
Objective functions for single and paired clamping configurations.

The single clamping function ranks setup candidates of one operation; the pair
function ranks (first setup, second setup) combinations once every candidate
of each setup has been scored. Formula text and normalization are read from
the environment so they can be tuned without code changes.
"""
import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from clamping import ClampingConfiguration, deduplicate_configurations, euler_angles, with_ranking, y_flip
from formula import Extractor
from ranker import ObjectiveFunction, RankedResult

logger = logging.getLogger(__name__)

SINGLE_FORMULA_ENV = "CAM_SETUP_CLAMPING_OBJECTIVE_FUNCTION"
SINGLE_NORMALIZE_ENV = "CAM_SETUP_NORMALIZE_CLAMPING_OBJECTIVE_FUNCTION"
PAIR_FORMULA_ENV = "CAM_SETUP_CLAMPING_OBJECTIVE_FUNCTION_PAIR"
PAIR_NORMALIZE_ENV = "CAM_SETUP_NORMALIZE_CLAMPING_OBJECTIVE_FUNCTION_PAIR"

DEFAULT_SINGLE_FORMULA = "2*FM + LA + CA - CG - PM"
DEFAULT_PAIR_FORMULA = "FT - PT + OF1 + OF2"


@dataclass
class ObjectiveFunctionConfig:
    """Formula text and normalization switch of both clamping objective functions."""

    single_formula: str = DEFAULT_SINGLE_FORMULA
    normalize_single: bool = True
    pair_formula: str = DEFAULT_PAIR_FORMULA
    normalize_pair: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ObjectiveFunctionConfig":
        """Read the config; unset formulas keep their defaults, "1" enables normalization."""
        env = os.environ if environ is None else environ
        defaults = cls()

        def normalize_flag(key: str, default: bool) -> bool:
            if key not in env:
                return default
            return env[key].strip() == "1"

        return cls(
            single_formula=env.get(SINGLE_FORMULA_ENV) or defaults.single_formula,
            normalize_single=normalize_flag(SINGLE_NORMALIZE_ENV, defaults.normalize_single),
            pair_formula=env.get(PAIR_FORMULA_ENV) or defaults.pair_formula,
            normalize_pair=normalize_flag(PAIR_NORMALIZE_ENV, defaults.normalize_pair),
        )


@dataclass(frozen=True, eq=False)
class ClampingPair:
    """First and second setup of a two-setup machining plan."""
    one: ClampingConfiguration
    two: ClampingConfiguration


# ─── Feature sets ────────────────────────────────────────────────────────────

def single_clamping_features() -> Dict[str, Extractor]:
    return {
        "CG": lambda c: c.reference_gravity_center_height(),
        "LA": lambda c: c.reference_lever_arm_ratio,
        "FM": lambda c: len(c.fully_machinable),
        "PM": lambda c: len(c.partially_machinable),
        "CA": lambda c: c.reference_clamping_area(),
        "CT": lambda c: c.reference_clamping_thickness,
        "CH": lambda c: c.reference_clamping_height,
        "MD": lambda c: c.reference_bounding_box_dimension(max),
    }


def _partially_total(p: ClampingPair) -> int:
    # Partially machinable in both setups means fully covered by the pair
    shared = p.one.partially_machinable_intersection(p.two.partially_machinable)
    return len(p.one.partially_machinable) + len(p.two.partially_machinable) - 2 * len(shared)


def _fully_total(p: ClampingPair) -> int:
    shared_fully = p.one.fully_machinable_intersection(p.two.fully_machinable)
    shared_partially = p.one.partially_machinable_intersection(p.two.partially_machinable)
    return (len(p.one.fully_machinable) + len(p.two.fully_machinable)
            - len(shared_fully) + len(shared_partially))


def _relative_angles(p: ClampingPair):
    return euler_angles(p.two.reference_frame, relative_to=p.one.reference_frame)


def pair_clamping_features() -> Dict[str, Extractor]:
    return {
        "P1": lambda p: len(p.one.partially_machinable),
        "P2": lambda p: len(p.two.partially_machinable),
        "PT": _partially_total,
        "F1": lambda p: len(p.one.fully_machinable),
        "F2": lambda p: len(p.two.fully_machinable),
        "FT": _fully_total,
        "OF1": lambda p: p.one.objective_value,
        "OF2": lambda p: p.two.objective_value,
        "FLIP": lambda p: y_flip(p.one.reference_frame, p.two.reference_frame),
        "ROLL": lambda p: _relative_angles(p).roll,
        "PITCH": lambda p: _relative_angles(p).pitch,
        "YAW": lambda p: _relative_angles(p).yaw,
    }


def create_single_clamping_function(
    config: Optional[ObjectiveFunctionConfig] = None,
) -> ObjectiveFunction:
    """Compile the single clamping objective function.

    Raises:
        CompileError: the configured formula is invalid.
    """
    config = config or ObjectiveFunctionConfig.from_env()
    logger.info(
        "Single clamping objective: '%s' (normalize=%s)",
        config.single_formula, config.normalize_single,
    )
    return ObjectiveFunction(
        single_clamping_features(), config.single_formula, normalize=config.normalize_single,
    )


def create_pair_clamping_function(
    config: Optional[ObjectiveFunctionConfig] = None,
) -> ObjectiveFunction:
    """Compile the pair clamping objective function.

    Raises:
        CompileError: the configured formula is invalid.
    """
    config = config or ObjectiveFunctionConfig.from_env()
    logger.info(
        "Pair clamping objective: '%s' (normalize=%s)",
        config.pair_formula, config.normalize_pair,
    )
    return ObjectiveFunction(
        pair_clamping_features(), config.pair_formula, normalize=config.normalize_pair,
    )


# ─── Ranking ─────────────────────────────────────────────────────────────────

def rank_clamping_configurations(
    configurations: Sequence[ClampingConfiguration],
    objective: ObjectiveFunction,
    previous: Sequence[ClampingConfiguration] = (),
) -> List[ClampingConfiguration]:
    """Rank setup candidates and annotate them with priority and score.

    Candidates equivalent to a previous setup (or to an earlier candidate) are
    dropped first. Ties on the objective value are broken by the roll, pitch
    and yaw of the reference frame.

    Returns:
        New configurations, best first, with ``priority`` set to the rank
        index and ``objective_value`` to the score.
    """
    candidates = deduplicate_configurations(configurations, previous)
    result = objective.rank(
        candidates,
        lambda c: c.roll,
        lambda c: c.pitch,
        lambda c: c.yaw,
    )
    return [
        with_ranking(entry.candidate, index, entry.score)
        for index, entry in enumerate(result)
    ]


def make_clamping_pairs(
    first: Iterable[ClampingConfiguration],
    second: Iterable[ClampingConfiguration],
) -> List[ClampingPair]:
    """Every (first setup, second setup) combination, first-setup major."""
    second = list(second)
    return [ClampingPair(one, two) for one in first for two in second]


def rank_clamping_pairs(pairs: Sequence[ClampingPair], objective: ObjectiveFunction) -> RankedResult:
    return objective.rank(
        pairs,
        lambda p: p.one.roll,
        lambda p: p.one.pitch,
        lambda p: p.one.yaw,
        lambda p: p.two.roll,
        lambda p: p.two.pitch,
        lambda p: p.two.yaw,
        lambda p: p.two.clamping_height,
    )


def select_best_pair(
    pairs: Sequence[ClampingPair],
    objective: ObjectiveFunction,
) -> Optional[ClampingPair]:
    """Best ranked pair, or the first input pair when none survives filtering.

    Returns None only for an empty input.
    """
    if not pairs:
        return None
    result = rank_clamping_pairs(pairs, objective)
    if result.best is None:
        logger.warning(
            "No clamping pair could be ranked (%d excluded), using the first pair",
            len(result.excluded),
        )
        return pairs[0]
    return result.best.candidate
