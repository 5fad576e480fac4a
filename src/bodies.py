"""
Analyzed bodies and their assembly context.

A Body wraps a trimesh.Trimesh. When the body is an occurrence inside an
assembly, its Occurrence records the owning part, the prototype part and the
rigid transform that maps occurrence coordinates into the reference
coordinate system, so derived clamping values can be re-expressed there.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import trimesh

from geometry_primitives import BoundingBox, CoordinateFrame, GeometryError

INCH_TO_MM = 25.4

# Millimetres per part length unit
LENGTH_UNITS_MM: Dict[str, float] = {
    "mm": 1.0,
    "cm": 10.0,
    "m": 1000.0,
    "in": INCH_TO_MM,
}


@dataclass(frozen=True)
class PartContext:
    """A part file context with its length unit."""
    name: str
    units: str = "mm"

    def __post_init__(self):
        if self.units not in LENGTH_UNITS_MM:
            raise ValueError(
                f"Unknown length unit '{self.units}'. "
                f"Expected one of {sorted(LENGTH_UNITS_MM)}.",
            )


def conversion_factor(owning: PartContext, prototype: PartContext) -> float:
    """Factor converting lengths in ``owning`` units to ``prototype`` units."""
    return LENGTH_UNITS_MM[owning.units] / LENGTH_UNITS_MM[prototype.units]


@dataclass(frozen=True, eq=False)
class Occurrence:
    """Placement of a prototype body inside an owning assembly part."""
    owning_part: PartContext
    prototype_part: PartContext
    # 4x4 rigid transform from occurrence coordinates to reference coordinates,
    # translation expressed in owning-part units
    transform: np.ndarray = field(default_factory=lambda: np.eye(4))

    @property
    def conversion_factor(self) -> float:
        return conversion_factor(self.owning_part, self.prototype_part)

    def to_reference_frame(self, frame: CoordinateFrame) -> CoordinateFrame:
        return frame.transformed(self.transform, self.conversion_factor)


@dataclass(eq=False)
class Body:
    """A solid body to be clamped, optionally an assembly occurrence."""
    mesh: trimesh.Trimesh
    name: str = "body"
    occurrence: Optional[Occurrence] = None

    @property
    def is_occurrence(self) -> bool:
        return self.occurrence is not None

    @property
    def conversion_factor(self) -> float:
        return self.occurrence.conversion_factor if self.occurrence is not None else 1.0

    @property
    def vertices(self) -> np.ndarray:
        verts = np.asarray(self.mesh.vertices, dtype=float)
        if len(verts) == 0:
            raise GeometryError(f"Body '{self.name}' has no vertices")
        return verts

    @property
    def centroid(self) -> np.ndarray:
        """Centre of mass for watertight meshes, surface centroid otherwise."""
        if len(self.mesh.vertices) == 0:
            raise GeometryError(f"Body '{self.name}' has no vertices")
        if self.mesh.is_watertight and self.mesh.volume > 0:
            return np.asarray(self.mesh.center_mass, dtype=float)
        return np.asarray(self.mesh.centroid, dtype=float)

    def bounding_box(self, frame: Optional[CoordinateFrame] = None) -> BoundingBox:
        return BoundingBox.from_points(self.vertices, frame)

    def volume(self) -> float:
        if not self.mesh.is_watertight:
            raise GeometryError(f"Body '{self.name}' is not watertight, volume is undefined")
        return float(abs(self.mesh.volume))
