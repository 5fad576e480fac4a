"""
Machine and stock feasibility checks.

``fits(part, machine_or_stock)`` is a pure predicate that can be applied to
ranked or unranked candidates. Machine selection and stock selection build on
it, ordering the feasible options the way the shop prefers them (smallest
suitable machine first, least wasted material first).

All lengths are in the part's length units, weights in pounds.
"""
import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np

from bodies import INCH_TO_MM, LENGTH_UNITS_MM
from geometry_primitives import BoundingBox
from tolerances import resolve_tol

logger = logging.getLogger(__name__)

# Pounds per unit of mass
WEIGHT_UNITS_LB = {
    "g": 0.00220462,
    "kg": 2.20462,
    "lb": 1.0,
}


def weight_to_lb(value: float, unit: str = "lb") -> float:
    """Convert a positive weight to pounds."""
    if unit not in WEIGHT_UNITS_LB:
        raise ValueError(f"Unknown weight unit '{unit}', expected one of {sorted(WEIGHT_UNITS_LB)}")
    if value <= 0.0:
        raise ValueError(f"Weight must be positive, got {value}")
    return value * WEIGHT_UNITS_LB[unit]


def blank_weight_lb(volume: float, units: str, density_lb_per_in3: float) -> float:
    """Weight of a blank from its volume in ``units``^3 and a density in lb/in^3."""
    if units not in LENGTH_UNITS_MM:
        raise ValueError(f"Unknown length unit '{units}'")
    if density_lb_per_in3 <= 0.0:
        raise ValueError(f"Density must be positive, got {density_lb_per_in3}")
    inches_per_unit = LENGTH_UNITS_MM[units] / INCH_TO_MM
    return volume * inches_per_unit ** 3 * density_lb_per_in3


# ─── Machines ────────────────────────────────────────────────────────────────

class MachineType(Enum):
    AXIS_3 = "3-Axis"
    AXIS_5 = "5-Axis"

    @classmethod
    def from_string(cls, text: str) -> "MachineType":
        for machine_type in cls:
            if machine_type.value == text:
                return machine_type
        raise ValueError(f"Invalid machine type '{text}', expected one of {[t.value for t in cls]}")

    def as_string(self) -> str:
        return self.value

    @property
    def order(self) -> int:
        return list(MachineType).index(self)


class Envelope(NamedTuple):
    x: float
    y: float
    z: float

    def volume(self) -> float:
        return self.x * self.y * self.z


@dataclass(frozen=True)
class PartEnvelope:
    """What the feasibility checks need to know about a part or blank."""
    x: float
    y: float
    z: float
    material: str
    weight_lb: float = 0.0

    @property
    def dimensions(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)

    @property
    def max_dimension(self) -> float:
        return max(self.dimensions)

    @property
    def min_dimension(self) -> float:
        return min(self.dimensions)

    def volume(self) -> float:
        return self.x * self.y * self.z


def part_envelope_from_box(box: BoundingBox, material: str, weight_lb: float = 0.0) -> PartEnvelope:
    return PartEnvelope(box.x_length, box.y_length, box.z_length, material, weight_lb)


@dataclass(frozen=True)
class Machine:
    """A milling machine from the shop library.

    ``max_vise_opening`` and ``max_weight_lb`` of None mean unlimited.
    """
    machine_id: str
    machine_type: MachineType
    max_work_envelope: Envelope
    min_work_envelope: Envelope = Envelope(0.0, 0.0, 0.0)
    is_available: bool = True
    supports_pre_finished_blank: bool = False
    supported_materials: Tuple[str, ...] = ()
    all_materials_supported: bool = False
    max_vise_opening: Optional[float] = None
    max_weight_lb: Optional[float] = None

    def is_material_supported(self, material: str) -> bool:
        # A library entry matches any material name that contains it
        return self.all_materials_supported or any(m in material for m in self.supported_materials)

    def is_vise_opening_supported(self, opening: float) -> bool:
        return self.max_vise_opening is None or opening <= self.max_vise_opening

    def is_weight_supported(self, weight_lb: float) -> bool:
        return self.max_weight_lb is None or weight_lb <= self.max_weight_lb

    def does_part_fit_in(self, x: float, y: float, z: float) -> bool:
        """The largest part dimension fits along every axis of the work envelope."""
        return max(x, y, z) <= min(self.max_work_envelope)

    def is_part_large_enough_for(self, x: float, y: float, z: float) -> bool:
        """The smallest part dimension reaches the largest minimum envelope dimension."""
        return min(x, y, z) >= max(self.min_work_envelope)

    def volume(self) -> float:
        return self.max_work_envelope.volume()


# ─── Stock ───────────────────────────────────────────────────────────────────

class StockKind(Enum):
    BLOCK = "block"
    BAR = "bar"
    PLATE = "plate"


# Dimension indices cut to length when the stock is ordered
_CUT_LENGTH_INDICES = {
    StockKind.BLOCK: (),
    StockKind.BAR: (2,),
    StockKind.PLATE: (1, 2),
}

# Swap sequences producing the six axis permutations of a prism
_ORIENTATIONS = ((), (1,), (1, 2), (2,), (2, 1), (3,))
_ROTATION_SWAPS = {1: (1, 2), 2: (0, 2), 3: (0, 1)}


@dataclass(frozen=True)
class Dimension:
    """Nominal stock dimension and the minimum stock removal on each side."""
    value: float = 0.0
    min_stock_removal: float = 0.0
    is_cut_length: bool = False

    @property
    def finished(self) -> float:
        return self.value - 2.0 * self.min_stock_removal


@dataclass(frozen=True)
class StockPrism:
    """Rectangular stock: a block, a bar (cut to length) or a plate (cut in two directions)."""
    stock_id: str
    kind: StockKind
    material: str
    dimensions: Tuple[Dimension, Dimension, Dimension]
    name: str = ""

    @classmethod
    def create(
        cls,
        stock_id: str,
        kind: StockKind,
        material: str,
        dimensions: Sequence[Union[Dimension, float]],
        name: str = "",
    ) -> "StockPrism":
        """Build a prism and flag its cut-length dimensions for ``kind``."""
        if len(dimensions) != 3:
            raise ValueError(f"A stock prism needs 3 dimensions, got {len(dimensions)}")
        cut = _CUT_LENGTH_INDICES[kind]
        dims = []
        for i, d in enumerate(dimensions):
            if not isinstance(d, Dimension):
                d = Dimension(float(d))
            dims.append(dataclasses.replace(d, is_cut_length=i in cut))
        return cls(stock_id, kind, material, tuple(dims), name)

    def values(self, include_stock_removal: bool = True) -> Tuple[float, float, float]:
        if include_stock_removal:
            return tuple(d.value for d in self.dimensions)
        return tuple(d.finished for d in self.dimensions)

    def volume(self, include_stock_removal: bool = True) -> float:
        return float(np.prod(self.values(include_stock_removal)))

    @property
    def cut_length_indices(self) -> Tuple[int, ...]:
        return tuple(i for i, d in enumerate(self.dimensions) if d.is_cut_length)

    def with_cut_lengths(self, lengths: Sequence[float], min_stock_removal: float) -> "StockPrism":
        """Set the cut-length dimensions, in order, to ``lengths``."""
        indices = self.cut_length_indices
        if len(lengths) != len(indices):
            raise ValueError(
                f"{self.kind.value} stock has {len(indices)} cut lengths, got {len(lengths)}"
            )
        dims = list(self.dimensions)
        for i, length in zip(indices, lengths):
            dims[i] = dataclasses.replace(dims[i], value=float(length), min_stock_removal=min_stock_removal)
        return dataclasses.replace(self, dimensions=tuple(dims))

    def rotated(self, axis: int) -> "StockPrism":
        """Quarter turn about dimension axis 1, 2 or 3 (swaps the two other dimensions)."""
        if axis not in _ROTATION_SWAPS:
            raise ValueError(f"Rotation axis must be 1, 2 or 3, got {axis}")
        i, j = _ROTATION_SWAPS[axis]
        dims = list(self.dimensions)
        dims[i], dims[j] = dims[j], dims[i]
        return dataclasses.replace(self, dimensions=tuple(dims))

    def orientations(self) -> List["StockPrism"]:
        """The six axis permutations of this prism."""
        result = []
        for swaps in _ORIENTATIONS:
            prism = self
            for axis in swaps:
                prism = prism.rotated(axis)
            result.append(prism)
        return result

    def cross_section_area(self, include_stock_removal: bool = True) -> float:
        """Area of the two non-cut dimensions of a bar; 0.0 for other kinds."""
        section = [d for d in self.dimensions if not d.is_cut_length]
        if len(section) != 2:
            return 0.0
        if include_stock_removal:
            return section[0].value * section[1].value
        return section[0].finished * section[1].finished


# ─── Feasibility ─────────────────────────────────────────────────────────────

def fits(
    part: PartEnvelope,
    machine_or_stock: Union[Machine, StockPrism],
    tol: Optional[float] = None,
) -> bool:
    """True if ``part`` can be processed on the machine or cut from the stock.

    Machine: material, weight and vise opening are supported and the part lies
    between the minimum and maximum work envelopes.
    Stock: same material and every finished dimension of the prism, in its
    current orientation, covers the matching part dimension (within tolerance).
    """
    if isinstance(machine_or_stock, Machine):
        machine = machine_or_stock
        return (machine.is_material_supported(part.material)
                and machine.is_weight_supported(part.weight_lb)
                and machine.is_vise_opening_supported(part.max_dimension)
                and machine.does_part_fit_in(*part.dimensions)
                and machine.is_part_large_enough_for(*part.dimensions))
    if isinstance(machine_or_stock, StockPrism):
        stock = machine_or_stock
        eps = resolve_tol(tol)
        if stock.material != part.material:
            return False
        return all(f >= p - eps for f, p in zip(stock.values(False), part.dimensions))
    raise TypeError(f"Expected a Machine or StockPrism, got {type(machine_or_stock).__name__}")


def select_machine(
    machines: Sequence[Machine],
    part: PartEnvelope,
    machine_type: MachineType,
    blank_from_stock: bool = True,
) -> Optional[Machine]:
    """Smallest available machine of ``machine_type`` that fits the part.

    A pre-finished blank (``blank_from_stock=False``) also requires machine
    support for pre-finished blanks. Returns None when no machine qualifies.
    """
    ordered = sorted(machines, key=lambda m: (m.machine_type.order, m.volume()))
    for machine in ordered:
        if not machine.is_available or machine.machine_type != machine_type:
            continue
        if not blank_from_stock and not machine.supports_pre_finished_blank:
            continue
        if fits(part, machine):
            logger.info(
                "Selected machine %s (%s) for %.1f x %.1f x %.1f %s",
                machine.machine_id, machine_type.as_string(),
                part.x, part.y, part.z, part.material,
            )
            return machine
    logger.info("No %s machine fits the part among %d machines", machine_type.as_string(), len(machines))
    return None


def stock_candidates(
    stocks: Sequence[StockPrism],
    part: PartEnvelope,
    min_extra_material: float = 0.0,
) -> List[StockPrism]:
    """Every cut and oriented variant of ``stocks`` for the part dimensions.

    Bars are cut to each part dimension, plates to each pair of part
    dimensions, plus ``min_extra_material`` on both ends.
    """
    dims = part.dimensions
    candidates: List[StockPrism] = []
    for stock in stocks:
        if stock.kind is StockKind.BLOCK:
            candidates.extend(stock.orientations())
        elif stock.kind is StockKind.BAR:
            for d in dims:
                cut = stock.with_cut_lengths([d + 2.0 * min_extra_material], min_extra_material)
                candidates.extend(cut.orientations())
        else:
            for i in range(len(dims) - 1):
                for j in range(i + 1, len(dims)):
                    cut = stock.with_cut_lengths(
                        [dims[i] + 2.0 * min_extra_material, dims[j] + 2.0 * min_extra_material],
                        min_extra_material,
                    )
                    candidates.extend(cut.orientations())
    return candidates


def _waste_key(part: PartEnvelope, by_bar_area: bool = False):
    def key(stock: StockPrism) -> Tuple[float, ...]:
        excess = tuple(v - p for v, p in zip(stock.values(True), part.dimensions))
        first = stock.cross_section_area(True) if by_bar_area else stock.volume(True) - part.volume()
        return (first,) + excess
    return key


def select_stock(
    stocks: Sequence[StockPrism],
    part: PartEnvelope,
    min_extra_material: float = 0.0,
    kinds: Sequence[StockKind] = (StockKind.BAR, StockKind.BLOCK),
    bar_min_area: bool = False,
    tol: Optional[float] = None,
) -> Optional[StockPrism]:
    """Best stock for the part, cut and oriented.

    Kinds are tried in the order given (bars before blocks by default; plates
    only when requested). Within a kind the candidate wasting the least volume
    wins, then the one with the least excess along each dimension. With
    ``bar_min_area`` bars are ordered by cross-section area instead of waste.

    Returns:
        The chosen StockPrism with cut lengths applied, or None.
    """
    candidates = stock_candidates(stocks, part, min_extra_material)
    for kind in kinds:
        feasible = [c for c in candidates if c.kind is kind and fits(part, c, tol)]
        if not feasible:
            continue
        feasible.sort(key=_waste_key(part, by_bar_area=bar_min_area and kind is StockKind.BAR))
        best = feasible[0]
        logger.info(
            "Selected %s stock %s (%.1f x %.1f x %.1f) out of %d feasible",
            kind.value, best.stock_id, *best.values(True), len(feasible),
        )
        return best
    logger.info("No stock fits the part among %d candidates", len(candidates))
    return None
