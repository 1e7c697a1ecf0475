"""Alignment quality score and per-axis overshoot."""

from __future__ import annotations

from dataclasses import dataclass

import config
from geometry.primitives import Point2D


@dataclass(frozen=True)
class StabilizationScore:
    """Mean reference-point error, normalized to a 1000px canvas height.

    Lower is better: below 0.5 nothing needs correcting, below 20 the frame
    counts as successfully aligned.
    """
    value: float
    left_distance: float
    right_distance: float

    @classmethod
    def calculate(cls, left_distance: float, right_distance: float,
                  canvas_height: float) -> StabilizationScore:
        if canvas_height <= 0:
            raise ValueError(f"canvas_height must be positive, got {canvas_height}")
        value = ((left_distance + right_distance) / 2.0) * config.SCORE_SCALE / canvas_height
        return cls(value, left_distance, right_distance)

    @classmethod
    def from_points(cls, detected_left: Point2D, detected_right: Point2D,
                    goal_left: Point2D, goal_right: Point2D,
                    canvas_height: float) -> StabilizationScore:
        """Score pixel-space detections against pixel-space goals."""
        return cls.calculate(
            detected_left.distance_to(goal_left),
            detected_right.distance_to(goal_right),
            canvas_height,
        )

    @property
    def is_success(self) -> bool:
        return self.value < config.SUCCESS_SCORE_THRESHOLD

    @property
    def needs_correction(self) -> bool:
        return self.value >= config.NO_ACTION_SCORE_THRESHOLD


@dataclass(frozen=True)
class OvershootCorrection:
    """Signed `detected - goal` deltas for both reference points."""
    left_dx: float
    left_dy: float
    right_dx: float
    right_dy: float
    score: float
    no_action_threshold: float = config.NO_ACTION_SCORE_THRESHOLD

    @classmethod
    def calculate(cls, detected_left: Point2D, detected_right: Point2D,
                  goal_left: Point2D, goal_right: Point2D, score: float,
                  no_action_threshold: float = config.NO_ACTION_SCORE_THRESHOLD,
                  ) -> OvershootCorrection:
        return cls(
            left_dx=detected_left.x - goal_left.x,
            left_dy=detected_left.y - goal_left.y,
            right_dx=detected_right.x - goal_right.x,
            right_dy=detected_right.y - goal_right.y,
            score=score,
            no_action_threshold=no_action_threshold,
        )

    @property
    def average_overshoot_x(self) -> float:
        return (self.left_dx + self.right_dx) / 2.0

    @property
    def average_overshoot_y(self) -> float:
        return (self.left_dy + self.right_dy) / 2.0

    @property
    def same_direction_x(self) -> bool:
        return _same_sign(self.left_dx, self.right_dx)

    @property
    def same_direction_y(self) -> bool:
        return _same_sign(self.left_dy, self.right_dy)

    @property
    def needs_correction(self) -> bool:
        return (self.score >= self.no_action_threshold
                or self.same_direction_x
                or self.same_direction_y)


def _same_sign(a: float, b: float) -> bool:
    # Zero deltas carry no direction.
    return (a > 0 and b > 0) or (a < 0 and b < 0)


def confidence_from_score(score: float) -> float:
    """Map a score onto a 0.3..1.0 alignment confidence."""
    if score < config.NO_ACTION_SCORE_THRESHOLD:
        return 1.0
    if score < config.SUCCESS_SCORE_THRESHOLD:
        return 0.7 + (config.SUCCESS_SCORE_THRESHOLD - score) / config.SUCCESS_SCORE_THRESHOLD * 0.29
    return max(0.3, 0.7 - (score - config.SUCCESS_SCORE_THRESHOLD) / 100.0 * 0.4)
