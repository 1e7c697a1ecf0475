"""Affine alignment from a pair of reference points.

All points here are in pixels. The full alignment maps the detected pair
onto the goal pair; the refinement helpers each correct a single degree of
freedom of an existing matrix in canvas space (`correction · current`).
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math

from alignment.errors import DegenerateMatrixError, InvalidReferencePairError
from alignment.scoring import OvershootCorrection
from geometry.primitives import AffineMatrix, Point2D

logger = logging.getLogger(__name__)

# Below this the pair is treated as coincident.
_MIN_PAIR_DISTANCE = 1e-6


@dataclass(frozen=True)
class AlignmentParameters:
    angle: float           # radians
    scale: float
    translation: Point2D


@dataclass(frozen=True)
class RefinementStep:
    matrix: AffineMatrix
    converged: bool
    error: float


def _validate_pair(left: Point2D, right: Point2D, role: str) -> float:
    if not (left.is_finite() and right.is_finite()):
        raise InvalidReferencePairError(f"{role} reference pair is not finite")
    distance = left.distance_to(right)
    if distance < _MIN_PAIR_DISTANCE:
        raise InvalidReferencePairError(f"{role} reference points coincide")
    return distance


def alignment_parameters(detected_left: Point2D, detected_right: Point2D,
                         goal_left: Point2D, goal_right: Point2D,
                         eye_validity_ratio: float | None = None,
                         ) -> AlignmentParameters:
    """Rotation, scale and translation that carry detected onto goal.

    Args:
        detected_left, detected_right: Detected reference pair (pixels).
        goal_left, goal_right: Goal reference pair (pixels).
        eye_validity_ratio: If given, a detected pair shorter than this
            fraction of the goal distance is rejected as detection noise.

    Raises:
        InvalidReferencePairError: Coincident, non-finite or too-close pair.
    """
    current = _validate_pair(detected_left, detected_right, "detected")
    goal = _validate_pair(goal_left, goal_right, "goal")
    if eye_validity_ratio is not None and current < eye_validity_ratio * goal:
        raise InvalidReferencePairError(
            f"reference pair too close: {current:.2f}px < "
            f"{eye_validity_ratio:.2f} x {goal:.2f}px"
        )

    angle = -math.atan2(detected_right.y - detected_left.y,
                        detected_right.x - detected_left.x)
    scale = goal / current

    linear = AffineMatrix.rotation(angle).compose(AffineMatrix.scaling(scale))
    moved = linear.transform_point(detected_left.midpoint(detected_right))
    target = goal_left.midpoint(goal_right)
    return AlignmentParameters(angle, scale, Point2D(target.x - moved.x, target.y - moved.y))


def calculate_alignment_matrix(detected_left: Point2D, detected_right: Point2D,
                               goal_left: Point2D, goal_right: Point2D,
                               eye_validity_ratio: float | None = None,
                               ) -> AffineMatrix:
    """Full alignment: rotate(angle) · scale(scale), then translate midpoints.

    Deterministic for identical inputs.
    """
    params = alignment_parameters(detected_left, detected_right,
                                  goal_left, goal_right, eye_validity_ratio)
    linear = AffineMatrix.rotation(params.angle).compose(AffineMatrix.scaling(params.scale))
    matrix = AffineMatrix.translation(params.translation.x, params.translation.y).compose(linear)
    if not matrix.is_invertible():
        raise DegenerateMatrixError("alignment matrix is singular or not finite")
    return matrix


def refine_rotation(current: AffineMatrix, detected_left: Point2D,
                    detected_right: Point2D, threshold: float) -> RefinementStep:
    """Level the reference pair by rotating about its midpoint."""
    _validate_pair(detected_left, detected_right, "detected")
    dx = detected_right.x - detected_left.x
    dy = detected_right.y - detected_left.y
    if abs(dy) <= threshold:
        return RefinementStep(current, True, abs(dy))

    center = detected_left.midpoint(detected_right)
    correction = AffineMatrix.rotation(-math.atan2(dy, dx), center)
    logger.debug(f"Rotation correction {math.degrees(-math.atan2(dy, dx)):.3f} deg")
    return RefinementStep(correction.compose(current), False, abs(dy))


def refine_scale(current: AffineMatrix, detected_left: Point2D,
                 detected_right: Point2D, goal_distance: float,
                 threshold: float) -> RefinementStep:
    """Match the reference distance to `goal_distance` about the midpoint."""
    distance = _validate_pair(detected_left, detected_right, "detected")
    error = abs(goal_distance - distance)
    if error <= threshold:
        return RefinementStep(current, True, error)

    center = detected_left.midpoint(detected_right)
    correction = AffineMatrix.scaling(goal_distance / distance, center)
    logger.debug(f"Scale correction x{goal_distance / distance:.4f}")
    return RefinementStep(correction.compose(current), False, error)


def refine_translation(current: AffineMatrix,
                       overshoot: OvershootCorrection) -> RefinementStep:
    """Shift by the average overshoot of both points."""
    error = math.hypot(overshoot.average_overshoot_x, overshoot.average_overshoot_y)
    if not overshoot.needs_correction:
        return RefinementStep(current, True, error)

    correction = AffineMatrix.translation(-overshoot.average_overshoot_x,
                                          -overshoot.average_overshoot_y)
    return RefinementStep(correction.compose(current), False, error)
