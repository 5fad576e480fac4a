"""
Core geometry types for clamping-configuration analysis.

Built on NumPy for 3D vector math and Shapely for planar polygon properties.
Provides planes, lines, orthonormal coordinate frames, bounding boxes taken
along a frame, and PolygonFace (a planar face with area, centroid and area
inertia used for the lever-arm computation).
"""
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import Polygon
from shapely.geometry.polygon import orient


class GeometryError(ValueError):
    """A geometric query could not be answered (degenerate or empty input)."""
    pass


def unit_vector(v) -> np.ndarray:
    """Return ``v`` scaled to unit length."""
    arr = np.asarray(v, dtype=float)
    length = float(np.linalg.norm(arr))
    if length < 1e-12:
        raise GeometryError(f"Cannot normalize zero-length vector {arr.tolist()}")
    return arr / length


def average_point(*points) -> np.ndarray:
    return np.mean(np.asarray(points, dtype=float), axis=0)


@dataclass(frozen=True, eq=False)
class Plane:
    """Infinite plane through ``origin`` with unit ``normal``."""
    origin: np.ndarray
    normal: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "origin", np.asarray(self.origin, dtype=float))
        object.__setattr__(self, "normal", unit_vector(self.normal))

    def signed_distance(self, point) -> float:
        return float((np.asarray(point, dtype=float) - self.origin) @ self.normal)

    def project_point(self, point) -> np.ndarray:
        p = np.asarray(point, dtype=float)
        return p - self.signed_distance(p) * self.normal

    def project_vector(self, vector) -> np.ndarray:
        """Component of ``vector`` lying in the plane."""
        v = np.asarray(vector, dtype=float)
        return v - float(v @ self.normal) * self.normal

    def flipped(self) -> "Plane":
        return Plane(self.origin, -self.normal)

    def with_origin(self, origin) -> "Plane":
        return Plane(origin, self.normal)


@dataclass(frozen=True, eq=False)
class Line:
    """Infinite line through ``origin`` along unit ``direction``."""
    origin: np.ndarray
    direction: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "origin", np.asarray(self.origin, dtype=float))
        object.__setattr__(self, "direction", unit_vector(self.direction))

    def project_points(self, points) -> np.ndarray:
        """Project an (N, 3) array of points onto the line."""
        pts = np.atleast_2d(np.asarray(points, dtype=float))
        t = (pts - self.origin) @ self.direction
        return self.origin + np.outer(t, self.direction)


@dataclass(frozen=True, eq=False)
class CoordinateFrame:
    """Right-handed orthonormal coordinate system."""
    origin: np.ndarray
    x_axis: np.ndarray
    y_axis: np.ndarray
    z_axis: np.ndarray

    @classmethod
    def from_xy(cls, origin, x_vector, y_vector) -> "CoordinateFrame":
        """Build a frame from an X direction and a vector in the XY plane."""
        x = unit_vector(x_vector)
        z = unit_vector(np.cross(x, np.asarray(y_vector, dtype=float)))
        y = np.cross(z, x)
        return cls(np.asarray(origin, dtype=float), x, y, z)

    @classmethod
    def world(cls) -> "CoordinateFrame":
        return cls(np.zeros(3), np.array([1.0, 0.0, 0.0]),
                   np.array([0.0, 1.0, 0.0]), np.array([0.0, 0.0, 1.0]))

    @property
    def rotation(self) -> np.ndarray:
        """(3, 3) matrix whose columns are the frame axes in world space."""
        return np.column_stack([self.x_axis, self.y_axis, self.z_axis])

    @property
    def axes(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        return (self.x_axis, self.y_axis, self.z_axis)

    def to_local(self, points) -> np.ndarray:
        pts = np.asarray(points, dtype=float)
        return (pts - self.origin) @ self.rotation

    def to_world(self, local_points) -> np.ndarray:
        pts = np.asarray(local_points, dtype=float)
        return self.origin + pts @ self.rotation.T

    def with_origin(self, origin) -> "CoordinateFrame":
        return CoordinateFrame(np.asarray(origin, dtype=float),
                               self.x_axis, self.y_axis, self.z_axis)

    def transformed(self, matrix: np.ndarray, scale: float = 1.0) -> "CoordinateFrame":
        """Apply a rigid 4x4 transform, then scale the origin.

        Axes stay unit length; only positions are scaled.
        """
        m = np.asarray(matrix, dtype=float)
        rot = m[:3, :3]
        origin = scale * (rot @ self.origin + m[:3, 3])
        return CoordinateFrame.from_xy(origin, rot @ self.x_axis, rot @ self.y_axis)


class PolygonFace:
    """A planar polygonal face in 3D, optionally with holes.

    Area, centroid and second moments are computed in a 2D basis spanning the
    face plane, using Shapely for the polygon itself.
    """

    def __init__(
        self,
        exterior,
        holes: Sequence = (),
        normal=None,
    ):
        self.exterior = np.asarray(exterior, dtype=float)
        if self.exterior.ndim != 2 or self.exterior.shape[0] < 3 or self.exterior.shape[1] != 3:
            raise GeometryError("PolygonFace needs at least three 3D points")
        self.holes: List[np.ndarray] = [np.asarray(h, dtype=float) for h in holes]

        n = _newell_normal(self.exterior) if normal is None else np.asarray(normal, dtype=float)
        self.normal = unit_vector(n)
        self.basis_u, self.basis_v = _make_2d_basis(self.normal)
        self._anchor = self.exterior[0].copy()

        polygon = Polygon(
            self._to_2d(self.exterior),
            [self._to_2d(h) for h in self.holes],
        )
        if not polygon.is_valid or polygon.area <= 0.0:
            raise GeometryError("PolygonFace is degenerate (zero area or invalid)")
        self._polygon = orient(polygon, sign=1.0)

        c = self._polygon.centroid
        self._centroid_2d = np.array([c.x, c.y])
        self.area = float(self._polygon.area)
        self.centroid = self._anchor + c.x * self.basis_u + c.y * self.basis_v
        self._suu, self._svv, self._suv = self._central_second_moments()

    @property
    def origin(self) -> np.ndarray:
        return self.centroid

    @property
    def plane(self) -> Plane:
        return Plane(self.centroid, self.normal)

    def points(self) -> np.ndarray:
        """All vertices of the face (exterior and holes) as an (N, 3) array."""
        return np.vstack([self.exterior] + self.holes)

    def inertia_tensor(self) -> np.ndarray:
        """Area inertia tensor about the centroid, in world axes."""
        u, v = self.basis_u, self.basis_v
        polar = self._suu + self._svv
        return (
            polar * np.eye(3)
            - self._suu * np.outer(u, u)
            - self._svv * np.outer(v, v)
            - self._suv * (np.outer(u, v) + np.outer(v, u))
        )

    def radius_of_gyration(self, axis) -> float:
        """Radius of gyration about ``axis`` through the centroid."""
        a = unit_vector(axis)
        return float(np.sqrt(max(a @ self.inertia_tensor() @ a, 0.0) / self.area))

    def distance_to(self, other: "PolygonFace") -> float:
        """Distance between this face's plane and the origin of ``other``."""
        return abs(self.plane.signed_distance(other.origin))

    def flipped(self) -> "PolygonFace":
        return PolygonFace(self.exterior[::-1], [h[::-1] for h in self.holes], -self.normal)

    def _to_2d(self, points: np.ndarray) -> List[Tuple[float, float]]:
        d = np.asarray(points, dtype=float) - self._anchor
        return list(zip((d @ self.basis_u).tolist(), (d @ self.basis_v).tolist()))

    def _central_second_moments(self) -> Tuple[float, float, float]:
        """Second moments (int u^2, int v^2, int uv) about the centroid."""
        # Exterior is counter-clockwise and holes clockwise, so holes subtract.
        suu = svv = suv = 0.0
        rings = [self._polygon.exterior] + list(self._polygon.interiors)
        for ring in rings:
            uv = np.asarray(ring.coords, dtype=float) - self._centroid_2d
            u0, v0 = uv[:-1, 0], uv[:-1, 1]
            u1, v1 = uv[1:, 0], uv[1:, 1]
            cross = u0 * v1 - u1 * v0
            suu += float(np.sum(cross * (u0 * u0 + u0 * u1 + u1 * u1))) / 12.0
            svv += float(np.sum(cross * (v0 * v0 + v0 * v1 + v1 * v1))) / 12.0
            suv += float(np.sum(cross * (u0 * v1 + 2 * u0 * v0 + 2 * u1 * v1 + u1 * v0))) / 24.0
        return suu, svv, suv


class BoundingBox:
    """Box aligned with ``frame`` enclosing a point set."""

    def __init__(self, frame: CoordinateFrame, min_local, max_local):
        self.frame = frame
        self.min_local = np.asarray(min_local, dtype=float)
        self.max_local = np.asarray(max_local, dtype=float)

    @classmethod
    def from_points(cls, points, frame: Optional[CoordinateFrame] = None) -> "BoundingBox":
        pts = np.asarray(points, dtype=float)
        if pts.ndim != 2 or pts.shape[0] == 0 or pts.shape[1] != 3:
            raise GeometryError("Cannot compute a bounding box of an empty point set")
        if frame is None:
            frame = CoordinateFrame.world()
        local = frame.to_local(pts)
        return cls(frame, local.min(axis=0), local.max(axis=0))

    @property
    def lengths(self) -> np.ndarray:
        return self.max_local - self.min_local

    @property
    def x_length(self) -> float:
        return float(self.lengths[0])

    @property
    def y_length(self) -> float:
        return float(self.lengths[1])

    @property
    def z_length(self) -> float:
        return float(self.lengths[2])

    @property
    def center(self) -> np.ndarray:
        return self.frame.to_world((self.min_local + self.max_local) / 2.0)

    @property
    def min_corner(self) -> np.ndarray:
        return self.frame.to_world(self.min_local)

    def volume(self) -> float:
        return float(np.prod(self.lengths))

    def dimension(self, reduce: Callable[[Iterable[float]], float] = max) -> float:
        """Reduce the three box lengths, e.g. ``max`` or ``min``."""
        return float(reduce([self.x_length, self.y_length, self.z_length]))

    def corners(self) -> np.ndarray:
        """The eight box corners in world coordinates."""
        lo, hi = self.min_local, self.max_local
        local = np.array([
            [x, y, z]
            for x in (lo[0], hi[0])
            for y in (lo[1], hi[1])
            for z in (lo[2], hi[2])
        ])
        return self.frame.to_world(local)

    def faces(self) -> List[PolygonFace]:
        """The six box faces with outward normals (-X, +X, -Y, +Y, -Z, +Z)."""
        lo, hi = self.min_local, self.max_local
        faces = []
        for i in range(3):
            j, k = (i + 1) % 3, (i + 2) % 3
            for sign, level in ((-1.0, lo[i]), (1.0, hi[i])):
                quad = []
                for a, b in ((lo[j], lo[k]), (hi[j], lo[k]), (hi[j], hi[k]), (lo[j], hi[k])):
                    p = np.zeros(3)
                    p[i], p[j], p[k] = level, a, b
                    quad.append(p)
                if sign < 0:
                    quad.reverse()
                normal = sign * self.frame.axes[i]
                faces.append(PolygonFace(self.frame.to_world(np.array(quad)), normal=normal))
        return faces


# ─── Internal helpers ────────────────────────────────────────────────────────

def _newell_normal(points: np.ndarray) -> np.ndarray:
    """Area-weighted normal of a (possibly non-convex) planar polygon."""
    nxt = np.roll(points, -1, axis=0)
    return 0.5 * np.sum(np.cross(points, nxt), axis=0)


def _make_2d_basis(normal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Build an orthonormal (u, v) basis perpendicular to normal."""
    n = normal / np.linalg.norm(normal)
    if abs(n[2]) < 0.9:
        ref = np.array([0.0, 0.0, 1.0])
    else:
        ref = np.array([1.0, 0.0, 0.0])
    u = np.cross(n, ref)
    u /= np.linalg.norm(u)
    v = np.cross(n, u)
    v /= np.linalg.norm(v)
    return u, v
