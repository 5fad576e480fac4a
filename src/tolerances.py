"""
Process-wide geometric and score tolerance.

A single absolute tolerance (epsilon) is shared by every geometric and score
comparison in the ranking engine. It is read from the ``CAM_SETUP_ABS_TOL``
environment variable and falls back to 1e-6 when the variable is absent or
does not hold a positive finite number.
"""
import logging
import math
import os
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

ABS_TOL_ENV = "CAM_SETUP_ABS_TOL"
DEFAULT_ABS_TOL = 1e-6


def get_abs_tol() -> float:
    """Return the configured absolute tolerance."""
    raw = os.environ.get(ABS_TOL_ENV)
    if raw is None or raw.strip() == "":
        return DEFAULT_ABS_TOL
    try:
        value = float(raw)
    except ValueError:
        logger.warning(
            "Invalid %s=%r, using default %.1e", ABS_TOL_ENV, raw, DEFAULT_ABS_TOL,
        )
        return DEFAULT_ABS_TOL
    if not math.isfinite(value) or value <= 0.0:
        logger.warning(
            "Out of range %s=%r, using default %.1e", ABS_TOL_ENV, raw, DEFAULT_ABS_TOL,
        )
        return DEFAULT_ABS_TOL
    return value


def resolve_tol(tol: Optional[float]) -> float:
    return get_abs_tol() if tol is None else float(tol)


def is_neighbour(a, b, tol: Optional[float] = None) -> bool:
    """True if scalars or arrays ``a`` and ``b`` agree within the tolerance."""
    eps = resolve_tol(tol)
    a_arr = np.asarray(a, dtype=float)
    b_arr = np.asarray(b, dtype=float)
    if a_arr.shape != b_arr.shape:
        return False
    with np.errstate(invalid="ignore"):
        close = (a_arr == b_arr) | (np.abs(a_arr - b_arr) <= eps)
    return bool(np.all(close))


def compare_with_tolerance(a: float, b: float, tol: Optional[float] = None) -> int:
    """Three-way comparison where values within the tolerance are equal.

    NaN sorts below every number and equal to another NaN.
    """
    a_nan = math.isnan(a)
    b_nan = math.isnan(b)
    if a_nan or b_nan:
        if a_nan and b_nan:
            return 0
        return -1 if a_nan else 1
    if a == b:
        # Covers equal infinities, whose difference is NaN.
        return 0
    if abs(a - b) <= resolve_tol(tol):
        return 0
    return -1 if a < b else 1
