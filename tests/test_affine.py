"""Tests for the affine alignment calculator and single-axis refinements."""

import math
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alignment.affine import (
    alignment_parameters,
    calculate_alignment_matrix,
    refine_rotation,
    refine_scale,
    refine_translation,
)
from alignment.errors import InvalidReferencePairError
from alignment.scoring import OvershootCorrection, StabilizationScore
from geometry.primitives import AffineMatrix, Point2D

CANVAS = 1000


def _px(x: float, y: float) -> Point2D:
    """Normalized -> pixel point on the 1000x1000 test canvas."""
    return Point2D(x * CANVAS, y * CANVAS)


def _close(a: Point2D, b: Point2D, tol: float = 1e-6) -> bool:
    return abs(a.x - b.x) <= tol and abs(a.y - b.y) <= tol


def test_widening_eyes_scales_up_without_rotation():
    det_l, det_r = _px(0.50, 0.40), _px(0.60, 0.40)
    goal_l, goal_r = _px(0.45, 0.40), _px(0.65, 0.40)

    params = alignment_parameters(det_l, det_r, goal_l, goal_r)
    assert params.scale > 1.0, f"Expected scale > 1, got {params.scale}"
    assert abs(params.angle) < 1e-9, f"Expected angle ~0, got {params.angle}"

    matrix = calculate_alignment_matrix(det_l, det_r, goal_l, goal_r)
    before = StabilizationScore.from_points(det_l, det_r, goal_l, goal_r, CANVAS)
    after = StabilizationScore.from_points(matrix.transform_point(det_l),
                                           matrix.transform_point(det_r),
                                           goal_l, goal_r, CANVAS)
    assert after.value < before.value, f"{after.value} !< {before.value}"


def test_alignment_maps_tilted_pair_onto_goal():
    det_l, det_r = Point2D(120, 340), Point2D(260, 300)
    goal_l, goal_r = Point2D(180, 200), Point2D(332, 200)
    matrix = calculate_alignment_matrix(det_l, det_r, goal_l, goal_r)
    assert _close(matrix.transform_point(det_l), goal_l)
    assert _close(matrix.transform_point(det_r), goal_r)


def test_alignment_is_deterministic():
    args = (Point2D(10.5, 20.25), Point2D(90.0, 27.0), Point2D(30, 40), Point2D(130, 40))
    assert calculate_alignment_matrix(*args) == calculate_alignment_matrix(*args)


def test_coincident_pair_is_rejected():
    try:
        calculate_alignment_matrix(Point2D(50, 50), Point2D(50, 50),
                                   Point2D(0, 0), Point2D(100, 0))
    except InvalidReferencePairError:
        return
    assert False, "Expected InvalidReferencePairError"


def test_eye_validity_ratio_rejects_short_pair():
    goal_l, goal_r = Point2D(0, 0), Point2D(100, 0)
    try:
        calculate_alignment_matrix(Point2D(0, 0), Point2D(60, 0), goal_l, goal_r,
                                   eye_validity_ratio=0.75)
    except InvalidReferencePairError as e:
        assert "too close" in str(e)
    else:
        assert False, "Expected rejection below 75% of goal distance"
    # Without a ratio the same pair just scales up.
    matrix = calculate_alignment_matrix(Point2D(0, 0), Point2D(60, 0), goal_l, goal_r)
    assert math.isclose(matrix.uniform_scale, 100 / 60)


def test_refine_rotation_levels_pair():
    left, right = Point2D(100, 100), Point2D(200, 110)
    step = refine_rotation(AffineMatrix.IDENTITY, left, right, threshold=0.1)
    assert not step.converged
    new_l = step.matrix.transform_point(left)
    new_r = step.matrix.transform_point(right)
    assert abs(new_r.y - new_l.y) < 1e-9
    # Midpoint stays put.
    assert _close(new_l.midpoint(new_r), left.midpoint(right))


def test_refine_rotation_converged_below_threshold():
    current = AffineMatrix.translation(3, 4)
    step = refine_rotation(current, Point2D(100, 100), Point2D(200, 100.05), threshold=0.1)
    assert step.converged
    assert step.matrix == current


def test_refine_scale_matches_goal_distance():
    left, right = Point2D(100, 100), Point2D(180, 100)
    step = refine_scale(AffineMatrix.IDENTITY, left, right, goal_distance=100.0,
                        threshold=1.0)
    assert not step.converged
    assert math.isclose(step.matrix.transform_point(left).distance_to(
        step.matrix.transform_point(right)), 100.0)
    assert refine_scale(AffineMatrix.IDENTITY, left, right, 80.5, 1.0).converged


def test_refine_translation_removes_average_overshoot():
    goal_l, goal_r = Point2D(100, 100), Point2D(200, 100)
    det_l, det_r = Point2D(104, 97), Point2D(206, 99)
    overshoot = OvershootCorrection.calculate(det_l, det_r, goal_l, goal_r, score=20.0)
    step = refine_translation(AffineMatrix.IDENTITY, overshoot)
    moved = step.matrix.transform_point(det_l.midpoint(det_r))
    assert _close(moved, goal_l.midpoint(goal_r))


if __name__ == "__main__":
    tests = [
        test_widening_eyes_scales_up_without_rotation,
        test_alignment_maps_tilted_pair_onto_goal,
        test_alignment_is_deterministic,
        test_coincident_pair_is_rejected,
        test_eye_validity_ratio_rejects_short_pair,
        test_refine_rotation_levels_pair,
        test_refine_rotation_converged_below_threshold,
        test_refine_scale_matches_goal_distance,
        test_refine_translation_removes_average_overshoot,
    ]

    passed = 0
    for test in tests:
        try:
            test()
            print(f"  PASS: {test.__name__}")
            passed += 1
        except AssertionError as e:
            print(f"  FAIL: {test.__name__}: {e}")
        except Exception as e:
            print(f"  ERROR: {test.__name__}: {e}")

    print(f"\n{passed}/{len(tests)} tests passed")
