"""
Clamping configuration feature computation.

Given a body (or only its bounding box), two opposing planar clamping faces
and the bottom support plane, derive everything the objective functions rank
on: clamping thickness, lever-arm ratio, gravity-centre height, the clamping
coordinate frame and their reference variants (re-expressed in the reference
coordinate system when the body is an assembly occurrence).

Configurations are immutable. Re-centering the frame returns a new
configuration with the references re-derived.
"""
import dataclasses
import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.spatial.transform import Rotation

from bodies import Body
from geometry_primitives import (
    BoundingBox,
    CoordinateFrame,
    GeometryError,
    Line,
    Plane,
    PolygonFace,
    average_point,
)
from tolerances import is_neighbour, resolve_tol

logger = logging.getLogger(__name__)

BodySource = Union[Body, BoundingBox]


@dataclass(frozen=True, eq=False)
class MachinableFeature:
    """A machining feature reachable from a clamping orientation."""
    name: str
    face_ids: Tuple[int, ...] = ()
    # (N, 2, 3) edge endpoints of every face of the feature
    edges: np.ndarray = field(default_factory=lambda: np.zeros((0, 2, 3)))

    def endpoints(self) -> np.ndarray:
        return np.asarray(self.edges, dtype=float).reshape(-1, 3)


def are_features_equivalent(a: MachinableFeature, b: MachinableFeature) -> bool:
    """Features are the same when they are built on the same prototype faces."""
    if a.face_ids or b.face_ids:
        return sorted(a.face_ids) == sorted(b.face_ids)
    return a.name == b.name


def feature_intersection(
    features: Sequence[MachinableFeature],
    others: Sequence[MachinableFeature],
) -> List[MachinableFeature]:
    """Members of ``features`` that have an equivalent in ``others``."""
    return [f for f in features if any(are_features_equivalent(f, o) for o in others)]


@dataclass(frozen=True, eq=False)
class ClampingFaces:
    """Two opposing clamping faces and the centred bottom support plane."""
    one: PolygonFace
    two: PolygonFace
    bottom_plane: Plane
    box: BoundingBox

    def is_outside_clamping_planes(self, point, tol: Optional[float] = None) -> bool:
        eps = resolve_tol(tol)
        return (self.one.plane.signed_distance(point) > eps
                or self.two.plane.signed_distance(point) > eps)


class EulerAngles(NamedTuple):
    roll: float
    pitch: float
    yaw: float


@dataclass(frozen=True, eq=False)
class ClampingConfiguration:
    """One candidate way of clamping a body in the vise."""
    body: Optional[Body]
    clamping_faces: ClampingFaces
    fully_machinable: Tuple[MachinableFeature, ...]
    partially_machinable: Tuple[MachinableFeature, ...]
    clamping_thickness: float
    clamping_height: float
    lever_arm_ratio: float
    clamping_frame: CoordinateFrame
    reference_frame: CoordinateFrame
    reference_clamping_thickness: float
    reference_clamping_height: float
    reference_lever_arm_ratio: float
    # Set once the configuration has been ranked
    priority: int = -1
    objective_value: float = math.nan

    @property
    def box(self) -> BoundingBox:
        return self.clamping_faces.box

    @property
    def conversion_factor(self) -> float:
        return self.body.conversion_factor if self.body is not None else 1.0

    def clamping_area(self) -> float:
        return self.clamping_faces.one.area

    def reference_clamping_area(self) -> float:
        return self.clamping_area() * self.conversion_factor ** 2

    def gravity_center_height(self) -> float:
        """Signed height of the body centroid above the clamping support."""
        center = self.body.centroid if self.body is not None else self.box.center
        bottom = self.clamping_faces.bottom_plane
        return float(bottom.normal @ (bottom.origin - center)) + self.clamping_height

    def reference_gravity_center_height(self) -> float:
        return self.gravity_center_height() * self.conversion_factor

    def bounding_box_dimension(self, reduce: Callable[[Iterable[float]], float] = max) -> float:
        return self.box.dimension(reduce)

    def reference_bounding_box_dimension(
        self, reduce: Callable[[Iterable[float]], float] = max,
    ) -> float:
        return self.bounding_box_dimension(reduce) * self.conversion_factor

    def max_clamping_face_distance_to_bottom(self) -> float:
        """Largest distance from a clamping-face vertex to the bottom plane."""
        points = np.vstack([self.clamping_faces.one.points(), self.clamping_faces.two.points()])
        bottom = self.clamping_faces.bottom_plane
        return float(np.max(np.abs((points - bottom.origin) @ bottom.normal)))

    def fully_machinable_intersection(
        self, features: Sequence[MachinableFeature],
    ) -> List[MachinableFeature]:
        return feature_intersection(self.fully_machinable, features)

    def partially_machinable_intersection(
        self, features: Sequence[MachinableFeature],
    ) -> List[MachinableFeature]:
        return feature_intersection(self.partially_machinable, features)

    @property
    def euler_angles(self) -> EulerAngles:
        return euler_angles(self.reference_frame)

    @property
    def roll(self) -> float:
        return self.euler_angles.roll

    @property
    def pitch(self) -> float:
        return self.euler_angles.pitch

    @property
    def yaw(self) -> float:
        return self.euler_angles.yaw


def build_clamping_faces(
    source: BodySource,
    one: PolygonFace,
    two: PolygonFace,
    bottom_plane: Plane,
) -> ClampingFaces:
    """Centre the bottom plane on the vise-centre line.

    The average of the clamping face origins is projected onto the bottom
    plane. Every body vertex (or box corner) is projected onto the line through
    that point along bottomNormal x faceNormal, and the bottom plane origin is
    moved to the midpoint of the two extreme projections.
    """
    if isinstance(source, Body):
        points = source.vertices
        box = source.bounding_box()
    else:
        points = source.corners()
        box = source

    origin = bottom_plane.project_point(average_point(one.origin, two.origin))
    direction = np.cross(bottom_plane.normal, one.normal)
    if np.linalg.norm(direction) < 1e-9:
        raise GeometryError("Clamping face is parallel to the bottom plane")

    vise_center_line = Line(origin, direction)
    projected = vise_center_line.project_points(points)
    t = projected @ vise_center_line.direction
    vise_center = average_point(projected[int(np.argmin(t))], projected[int(np.argmax(t))])

    return ClampingFaces(one, two, bottom_plane.with_origin(vise_center), box)


def compute_clamping_configuration(
    source: BodySource,
    one: PolygonFace,
    two: PolygonFace,
    bottom_plane: Plane,
    fully_machinable: Sequence[MachinableFeature] = (),
    partially_machinable: Sequence[MachinableFeature] = (),
    clamping_height: float = 0.0,
) -> ClampingConfiguration:
    """Compute the full clamping configuration for one pair of clamping faces.

    Args:
        source: The analyzed Body, or a BoundingBox for a box-only analysis.
        one: First clamping face (its normal becomes the frame Y axis).
        two: Opposing clamping face.
        bottom_plane: Support plane, normal pointing away from the body.
        fully_machinable: Features fully machinable in this orientation.
        partially_machinable: Features partially machinable in this orientation.
        clamping_height: Height at which the vise grips the body.

    Raises:
        GeometryError: if any geometric query fails; no partial result is returned.
    """
    faces = build_clamping_faces(source, one, two, bottom_plane)
    body = source if isinstance(source, Body) else None
    fully = tuple(fully_machinable)

    thickness = one.distance_to(two)
    la = lever_arm_ratio(one, fully)
    frame = CoordinateFrame.from_xy(
        faces.bottom_plane.origin,
        np.cross(faces.bottom_plane.normal, one.normal),
        one.normal,
    )
    ref_frame, ref_thickness, ref_height, ref_la = _derive_references(
        body, frame, thickness, float(clamping_height), la,
    )

    logger.debug(
        "Clamping configuration: thickness=%.3f height=%.3f lever_arm=%.4f fully=%d partially=%d",
        thickness, clamping_height, la, len(fully), len(partially_machinable),
    )
    return ClampingConfiguration(
        body=body,
        clamping_faces=faces,
        fully_machinable=fully,
        partially_machinable=tuple(partially_machinable),
        clamping_thickness=thickness,
        clamping_height=float(clamping_height),
        lever_arm_ratio=la,
        clamping_frame=frame,
        reference_frame=ref_frame,
        reference_clamping_thickness=ref_thickness,
        reference_clamping_height=ref_height,
        reference_lever_arm_ratio=ref_la,
    )


def lever_arm_ratio(face: PolygonFace, features: Sequence[MachinableFeature]) -> float:
    """Stability proxy: radius of gyration over sqrt(area) times longest lever arm.

    Without machinable features there is no lever arm and the ratio is 0.0.
    A zero lever arm makes the ratio infinite.
    """
    longest = longest_lever_arm(features, face.centroid, face.normal)
    if longest is None:
        return 0.0
    denominator = math.sqrt(face.area) * longest
    if denominator <= 0.0:
        return math.inf
    return face.radius_of_gyration(face.normal) / denominator


def longest_lever_arm(
    features: Sequence[MachinableFeature],
    centroid: np.ndarray,
    rotation_axis: np.ndarray,
) -> Optional[float]:
    """Largest distance from ``centroid`` to a feature edge endpoint, measured
    perpendicular to ``rotation_axis``. None when there are no endpoints."""
    endpoints = [f.endpoints() for f in features]
    endpoints = [e for e in endpoints if len(e)]
    if not endpoints:
        return None
    rotation_plane = Plane(np.zeros(3), rotation_axis)
    arms = np.vstack(endpoints) - np.asarray(centroid, dtype=float)
    in_plane = arms - np.outer(arms @ rotation_plane.normal, rotation_plane.normal)
    return float(np.max(np.linalg.norm(in_plane, axis=1)))


def with_frame(configuration: ClampingConfiguration, frame: CoordinateFrame) -> ClampingConfiguration:
    """Return a copy using ``frame`` as clamping frame, references re-derived."""
    ref_frame, ref_thickness, ref_height, ref_la = _derive_references(
        configuration.body,
        frame,
        configuration.clamping_thickness,
        configuration.clamping_height,
        configuration.lever_arm_ratio,
    )
    return dataclasses.replace(
        configuration,
        clamping_frame=frame,
        reference_frame=ref_frame,
        reference_clamping_thickness=ref_thickness,
        reference_clamping_height=ref_height,
        reference_lever_arm_ratio=ref_la,
    )


def center_frame(
    configuration: ClampingConfiguration,
    tol: Optional[float] = None,
) -> ClampingConfiguration:
    """Snap the frame origin to the bounding-box centre along non-up axes.

    The box is recomputed along the current clamping frame. The coordinate
    along the up direction (opposite the bottom normal) is left untouched.
    """
    frame = configuration.clamping_frame
    if configuration.body is not None:
        box = configuration.body.bounding_box(frame)
    else:
        box = BoundingBox.from_points(configuration.box.corners(), frame)

    center_local = (box.min_local + box.max_local) / 2.0
    up = -configuration.clamping_faces.bottom_plane.normal
    origin_local = np.zeros(3)
    for i, axis in enumerate(frame.axes):
        if is_neighbour(float(up @ axis), 0.0, tol):
            origin_local[i] = center_local[i]

    return with_frame(configuration, frame.with_origin(frame.to_world(origin_local)))


def with_ranking(
    configuration: ClampingConfiguration,
    priority: int,
    objective_value: float,
) -> ClampingConfiguration:
    return dataclasses.replace(
        configuration, priority=int(priority), objective_value=float(objective_value),
    )


def euler_angles(frame: CoordinateFrame, relative_to: Optional[CoordinateFrame] = None) -> EulerAngles:
    """Roll/pitch/yaw (extrinsic XYZ, radians) of ``frame``.

    With ``relative_to`` the angles describe the rotation from that frame.
    """
    rotation = frame.rotation
    if relative_to is not None:
        rotation = relative_to.rotation.T @ rotation
    with warnings.catch_warnings():
        # Gimbal lock still yields a valid decomposition
        warnings.simplefilter("ignore", UserWarning)
        roll, pitch, yaw = Rotation.from_matrix(rotation).as_euler("xyz")
    return EulerAngles(float(roll), float(pitch), float(yaw))


def y_flip(frame_a: CoordinateFrame, frame_b: CoordinateFrame) -> bool:
    """True when the two frames have opposing Y axes."""
    return float(frame_a.y_axis @ frame_b.y_axis) < 0.0


def are_equivalent(
    a: ClampingConfiguration,
    b: ClampingConfiguration,
    tol: Optional[float] = None,
) -> bool:
    """Tolerance-based equivalence of two clamping configurations.

    Reflexive and symmetric, not transitive.
    """
    eps = resolve_tol(tol)
    if not (is_neighbour(a.clamping_height, b.clamping_height, eps)
            and is_neighbour(a.clamping_thickness, b.clamping_thickness, eps)
            and is_neighbour(a.lever_arm_ratio, b.lever_arm_ratio, eps)):
        return False
    return (is_neighbour(a.reference_frame.origin, b.reference_frame.origin, eps)
            and is_neighbour(a.reference_frame.rotation, b.reference_frame.rotation, eps))


def deduplicate_configurations(
    configurations: Sequence[ClampingConfiguration],
    previous: Sequence[ClampingConfiguration] = (),
    tol: Optional[float] = None,
) -> List[ClampingConfiguration]:
    """Drop configurations equivalent to a previous setup or an earlier kept one."""
    kept: List[ClampingConfiguration] = []
    for config in configurations:
        if any(are_equivalent(config, p, tol) for p in previous):
            continue
        if any(are_equivalent(config, k, tol) for k in kept):
            continue
        kept.append(config)
    if len(kept) < len(configurations):
        logger.info(
            "Deduplicated clamping configurations: %d -> %d (previous setups: %d)",
            len(configurations), len(kept), len(previous),
        )
    return kept


# ─── Internal helpers ────────────────────────────────────────────────────────

def _derive_references(
    body: Optional[Body],
    frame: CoordinateFrame,
    thickness: float,
    height: float,
    lever_arm: float,
) -> Tuple[CoordinateFrame, float, float, float]:
    """Reference frame and scalars; identical to the raw values for prototypes."""
    if body is None or body.occurrence is None:
        return frame, thickness, height, lever_arm
    factor = body.occurrence.conversion_factor
    return (
        body.occurrence.to_reference_frame(frame),
        thickness * factor,
        height * factor,
        # Lever-arm ratio is an inverse length
        lever_arm / factor,
    )
