"""
Shared test fixtures for clamping-configuration and ranking tests.
"""
import sys
import warnings
from pathlib import Path

# Suppress trimesh internal RuntimeWarning for degenerate geometry
# (divide-by-zero in center_mass on zero-volume meshes).
warnings.filterwarnings(
    "ignore",
    message="invalid value encountered in divide",
    category=RuntimeWarning,
    module=r"trimesh\.triangles",
)

import numpy as np
import pytest
import trimesh

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bodies import Body
from clamping import MachinableFeature
from geometry_primitives import Plane
from tolerances import ABS_TOL_ENV


@pytest.fixture(autouse=True)
def default_tolerance(monkeypatch):
    """Every test starts from the default tolerance."""
    monkeypatch.delenv(ABS_TOL_ENV, raising=False)


@pytest.fixture
def box_mesh():
    """A 100x60x40mm box, centred on X/Y with its bottom at z=0."""
    mesh = trimesh.creation.box(extents=[100, 60, 40])
    mesh.apply_translation([0, 0, 20])
    return mesh


@pytest.fixture
def box_body(box_mesh):
    return Body(box_mesh, name="box")


@pytest.fixture
def vise_faces(box_body):
    """Clamping faces on the -Y / +Y sides and the bottom support plane.

    Returns (one, two, bottom_plane); the bottom normal points away from the body.
    """
    faces = box_body.bounding_box().faces()
    one, two = faces[2], faces[3]
    bottom_plane = Plane(np.zeros(3), [0.0, 0.0, -1.0])
    return one, two, bottom_plane


def make_feature(name, face_ids, endpoints=()):
    """A machinable feature with one edge per pair of endpoints."""
    pts = np.asarray(endpoints, dtype=float).reshape(-1, 2, 3) if len(endpoints) else np.zeros((0, 2, 3))
    return MachinableFeature(name=name, face_ids=tuple(face_ids), edges=pts)


@pytest.fixture
def corner_feature():
    """A feature whose single edge runs along the top +X edge of the -Y face."""
    return make_feature("corner_chamfer", [7], [[50, -30, 40], [50, -30, 0]])
