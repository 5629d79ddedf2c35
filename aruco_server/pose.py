"""Pixel-space marker geometry to robot 2D pose."""

import math
from typing import Optional, Sequence

import numpy as np

from marker_pipeline.mp_types import MarkerObservation, Pose2D, ReferenceFrame

# Single-step wrap: one correction per call, not a modulo reduction.
THETA_BOUND = 3.14
WRAP_CONSTANT = 3.14


def wrap_angle(theta: float) -> float:
    """
    Bring theta back inside [-THETA_BOUND, THETA_BOUND] with at most one step.

    Values more than one WRAP_CONSTANT out of range stay out of range.
    """
    if theta > THETA_BOUND:
        theta -= WRAP_CONSTANT
    if theta < -THETA_BOUND:
        theta += WRAP_CONSTANT
    return theta


def compute_pose(corners, scale: float, reference: ReferenceFrame) -> Pose2D:
    """
    Compute the robot pose relative to ``reference`` from one marker quad.

    Args:
        corners: 4 pixel points in detector winding order (TL, TR, BR, BL),
            any shape reshapeable to (4, 2)
        scale: metres per pixel, > 0
        reference: frame the pose is expressed in

    Returns:
        Pose2D with x, y in metres and theta in radians
    """
    pts = np.asarray(corners, dtype=np.float64).reshape(4, 2)

    cx, cy = pts.mean(axis=0) * scale
    dx, dy = pts[1] - pts[0]
    theta = math.atan2(dy, dx)

    x = float(cx) - reference.origin_x
    y = float(cy) - reference.origin_y
    theta = wrap_angle(theta - reference.heading_offset)
    return Pose2D(x, y, theta)


def select_observation(
    markers: Sequence[MarkerObservation], target_id: int
) -> Optional[MarkerObservation]:
    # first match in detector order, no tie-break on size or confidence
    for obs in markers:
        if obs.marker_id == target_id:
            return obs
    return None
