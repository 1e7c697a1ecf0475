"""Crop regions for muscle-group framing of a body-aligned canvas.

Bounds are computed in normalized canvas coordinates from body keypoints,
padded, then grown into a square so every frame of a timelapse crops to
the same aspect ratio.
"""

from __future__ import annotations

from enum import Enum

import config
from alignment.errors import InvalidReferencePairError
from alignment.landmarks import BodyKeypointType, BodyLandmarks
from geometry.primitives import AffineMatrix, BoundingBox


class MuscleRegion(Enum):
    FULL_BODY = "FULL_BODY"
    UPPER_BODY = "UPPER_BODY"
    LOWER_BODY = "LOWER_BODY"
    ARMS = "ARMS"
    BACK = "BACK"

    @property
    def display_name(self) -> str:
        return _DISPLAY[self][0]

    @property
    def description(self) -> str:
        return _DISPLAY[self][1]

    @classmethod
    def from_string(cls, name: str | None) -> MuscleRegion:
        """Case-insensitive lookup, FULL_BODY when the name is unknown."""
        if name:
            key = name.strip().upper().replace(" ", "_").replace("-", "_")
            for member in cls:
                if member.value == key:
                    return member
        return cls.FULL_BODY


_DISPLAY = {
    MuscleRegion.FULL_BODY: ("Full Body", "Head to feet, full figure"),
    MuscleRegion.UPPER_BODY: ("Upper Body", "Head to hips, torso focus"),
    MuscleRegion.LOWER_BODY: ("Lower Body", "Hips to feet, leg focus"),
    MuscleRegion.ARMS: ("Arms", "Shoulder to wrist, arm definition"),
    MuscleRegion.BACK: ("Back", "Shoulders to hips, back muscles"),
}


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def _box(left: float, top: float, right: float, bottom: float) -> BoundingBox:
    left, top, right, bottom = _clamp(left), _clamp(top), _clamp(right), _clamp(bottom)
    if right <= left or bottom <= top:
        raise InvalidReferencePairError(
            f"empty muscle region ({left:.3f}, {top:.3f}, {right:.3f}, {bottom:.3f})"
        )
    return BoundingBox(left, top, right, bottom)


def _lowest_ankle(body: BodyLandmarks) -> float:
    estimate = body.hip_center.y + config.LOWER_BODY_ESTIMATE
    ankles = (body.keypoint(BodyKeypointType.LEFT_ANKLE),
              body.keypoint(BodyKeypointType.RIGHT_ANKLE))
    return max(a.y if a is not None else estimate for a in ankles)


def _head_top(body: BodyLandmarks, fallback_y: float) -> float:
    nose = body.keypoint(BodyKeypointType.NOSE)
    return (nose.y if nose is not None else fallback_y) - config.HEAD_MARGIN


def _full_body(body: BodyLandmarks) -> BoundingBox:
    return _box(
        min(body.left_shoulder.x, body.left_hip.x) - config.SIDE_MARGIN,
        _head_top(body, body.shoulder_center.y),
        max(body.right_shoulder.x, body.right_hip.x) + config.SIDE_MARGIN,
        _lowest_ankle(body) + config.ANKLE_MARGIN,
    )


def _upper_body(body: BodyLandmarks) -> BoundingBox:
    return _box(
        body.left_shoulder.x - config.SHOULDER_MARGIN,
        _head_top(body, body.neck_center.y),
        body.right_shoulder.x + config.SHOULDER_MARGIN,
        body.hip_center.y + config.HIP_MARGIN,
    )


def _lower_body(body: BodyLandmarks) -> BoundingBox:
    def xs(hip, knee_type, ankle_type):
        points = (body.keypoint(knee_type), body.keypoint(ankle_type))
        return [hip.x] + [p.x for p in points if p is not None]

    return _box(
        min(xs(body.left_hip, BodyKeypointType.LEFT_KNEE, BodyKeypointType.LEFT_ANKLE))
        - config.SIDE_MARGIN,
        body.hip_center.y - config.HIP_TOP_MARGIN,
        max(xs(body.right_hip, BodyKeypointType.RIGHT_KNEE, BodyKeypointType.RIGHT_ANKLE))
        + config.SIDE_MARGIN,
        _lowest_ankle(body) + config.ANKLE_MARGIN,
    )


def _arms(body: BodyLandmarks) -> BoundingBox:
    center_y = body.shoulder_center.y
    left_arm = [body.keypoint(BodyKeypointType.LEFT_ELBOW),
                body.keypoint(BodyKeypointType.LEFT_WRIST)]
    right_arm = [body.keypoint(BodyKeypointType.RIGHT_ELBOW),
                 body.keypoint(BodyKeypointType.RIGHT_WRIST)]
    lows = []
    for elbow, wrist in (left_arm, right_arm):
        lows.append(wrist.y if wrist is not None else center_y + config.ARM_LENGTH_ESTIMATE)
        lows.append(elbow.y if elbow is not None else center_y)

    return _box(
        min([body.left_shoulder.x] + [p.x for p in left_arm if p is not None])
        - config.ARM_SIDE_MARGIN,
        min(body.left_shoulder.y, body.right_shoulder.y) - config.SHOULDER_TOP_MARGIN,
        max([body.right_shoulder.x] + [p.x for p in right_arm if p is not None])
        + config.ARM_SIDE_MARGIN,
        max(lows) + config.WRIST_MARGIN,
    )


def _back(body: BodyLandmarks) -> BoundingBox:
    # Wider than UPPER_BODY to keep the lat spread in frame.
    return _box(
        body.left_shoulder.x - config.BACK_SIDE_MARGIN,
        _head_top(body, body.neck_center.y),
        body.right_shoulder.x + config.BACK_SIDE_MARGIN,
        body.hip_center.y + config.BACK_HIP_MARGIN,
    )


_REGION_BOUNDS = {
    MuscleRegion.FULL_BODY: _full_body,
    MuscleRegion.UPPER_BODY: _upper_body,
    MuscleRegion.LOWER_BODY: _lower_body,
    MuscleRegion.ARMS: _arms,
    MuscleRegion.BACK: _back,
}


def pad_bounds(bounds: BoundingBox, padding: float) -> BoundingBox:
    """Grow by `padding` times the box's own width/height, clamped to the canvas."""
    dx = bounds.width * padding
    dy = bounds.height * padding
    return BoundingBox(max(bounds.left - dx, 0.0), max(bounds.top - dy, 0.0),
                       min(bounds.right + dx, 1.0), min(bounds.bottom + dy, 1.0))


def square_bounds(bounds: BoundingBox) -> BoundingBox:
    """Square box of side max(width, height) on the same center.

    A box pushed past a canvas edge slides back inside; the side is capped
    at the full canvas.
    """
    size = max(bounds.width, bounds.height)
    half = size / 2.0
    center = bounds.center

    left, right = center.x - half, center.x + half
    if left < 0.0:
        left, right = 0.0, min(size, 1.0)
    elif right > 1.0:
        left, right = max(1.0 - size, 0.0), 1.0

    top, bottom = center.y - half, center.y + half
    if top < 0.0:
        top, bottom = 0.0, min(size, 1.0)
    elif bottom > 1.0:
        top, bottom = max(1.0 - size, 0.0), 1.0

    return BoundingBox(left, top, right, bottom)


def muscle_region_bounds(body: BodyLandmarks, region: MuscleRegion,
                         padding: float = config.MUSCLE_REGION_PADDING) -> BoundingBox:
    """Square crop box (normalized) framing `region` of an aligned body.

    Args:
        body: Body landmarks on the aligned canvas.
        region: Muscle group to frame.
        padding: Extra margin as a fraction of the raw region size.

    Raises:
        InvalidReferencePairError: The keypoints describe an empty region.
    """
    raw = _REGION_BOUNDS[region](body)
    return square_bounds(pad_bounds(raw, padding))


def crop_matrix(bounds: BoundingBox, canvas_width: int, canvas_height: int,
                output_size: int) -> AffineMatrix:
    """Canvas -> crop matrix stretching `bounds` onto an output square."""
    width = bounds.width * canvas_width
    height = bounds.height * canvas_height
    if width <= 0 or height <= 0:
        raise InvalidReferencePairError("crop region has no area")
    sx = output_size / width
    sy = output_size / height
    return AffineMatrix(scale_x=sx, translate_x=-bounds.left * canvas_width * sx,
                        scale_y=sy, translate_y=-bounds.top * canvas_height * sy)
