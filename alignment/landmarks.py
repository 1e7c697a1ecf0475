"""Reference landmark sets for face, body and landscape content.

Each variant exposes `reference_left()` / `reference_right()`, the two anchor
points the alignment is computed from. The variants are plain frozen
dataclasses joined into the `ReferenceLandmarks` union; callers dispatch on
type (or on the `kind` tag after deserialization).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

import numpy as np

import config
from geometry.primitives import BoundingBox, Point2D


class FeatureDetectorType(Enum):
    ORB = "ORB"
    AKAZE = "AKAZE"

    @property
    def display_name(self) -> str:
        return {"ORB": "ORB (Fast)", "AKAZE": "AKAZE (Quality)"}[self.value]

    @property
    def description(self) -> str:
        if self is FeatureDetectorType.ORB:
            return "Oriented FAST and Rotated BRIEF. Fast binary features."
        return "Accelerated-KAZE. Slower but more robust to scale and blur."

    @classmethod
    def from_string(cls, name: str | None) -> FeatureDetectorType:
        """Case-insensitive lookup, ORB when the name is unknown."""
        if name:
            for member in cls:
                if member.value == name.strip().upper():
                    return member
        return cls.ORB


@dataclass(frozen=True)
class FaceLandmarks:
    points: tuple[Point2D, ...]
    left_eye_center: Point2D
    right_eye_center: Point2D
    nose_tip: Point2D
    bounding_box: BoundingBox
    confidence: float = 1.0
    kind: str = field(default="face", init=False)

    def reference_left(self) -> Point2D:
        return self.left_eye_center

    def reference_right(self) -> Point2D:
        return self.right_eye_center


class BodyKeypointType(Enum):
    NOSE = "nose"
    LEFT_EYE = "left_eye"
    RIGHT_EYE = "right_eye"
    LEFT_EAR = "left_ear"
    RIGHT_EAR = "right_ear"
    LEFT_SHOULDER = "left_shoulder"
    RIGHT_SHOULDER = "right_shoulder"
    LEFT_ELBOW = "left_elbow"
    RIGHT_ELBOW = "right_elbow"
    LEFT_WRIST = "left_wrist"
    RIGHT_WRIST = "right_wrist"
    LEFT_HIP = "left_hip"
    RIGHT_HIP = "right_hip"
    LEFT_KNEE = "left_knee"
    RIGHT_KNEE = "right_knee"
    LEFT_ANKLE = "left_ankle"
    RIGHT_ANKLE = "right_ankle"


@dataclass(frozen=True)
class BodyKeypoint:
    type: BodyKeypointType
    position: Point2D
    confidence: float
    visible: bool = True


@dataclass(frozen=True)
class BodyLandmarks:
    keypoints: tuple[BodyKeypoint, ...]
    left_shoulder: Point2D
    right_shoulder: Point2D
    left_hip: Point2D
    right_hip: Point2D
    neck_center: Point2D
    bounding_box: BoundingBox
    confidence: float
    kind: str = field(default="body", init=False)

    def reference_left(self) -> Point2D:
        return self.left_shoulder

    def reference_right(self) -> Point2D:
        return self.right_shoulder

    @property
    def shoulder_center(self) -> Point2D:
        return self.left_shoulder.midpoint(self.right_shoulder)

    @property
    def hip_center(self) -> Point2D:
        return self.left_hip.midpoint(self.right_hip)

    @property
    def shoulder_distance(self) -> float:
        return self.left_shoulder.distance_to(self.right_shoulder)

    def keypoint(self, kind: BodyKeypointType) -> Point2D | None:
        """Position of the first keypoint of `kind`, None when absent."""
        for k in self.keypoints:
            if k.type is kind:
                return k.position
        return None


@dataclass(frozen=True)
class FeatureKeypoint:
    """One detected landscape feature in normalized coordinates."""
    position: Point2D
    response: float
    size: float
    angle: float
    octave: int

    def to_pixel(self, width: int, height: int) -> Point2D:
        return self.position.scaled(width, height)

    @classmethod
    def from_pixel(cls, x: float, y: float, width: int, height: int,
                   response: float = 0.0, size: float = 0.0,
                   angle: float = -1.0, octave: int = 0) -> FeatureKeypoint:
        return cls(Point2D(x / width, y / height), response, size, angle, octave)


_LEFT_FALLBACK = Point2D(0.25, 0.5)
_RIGHT_FALLBACK = Point2D(0.75, 0.5)


@dataclass(frozen=True)
class LandscapeLandmarks:
    """Feature keypoints of a landscape frame plus their descriptor matrix.

    Descriptors are row-aligned with `keypoints`: uint8 rows for binary
    detectors (ORB, AKAZE), float32 rows otherwise.
    """
    keypoints: tuple[FeatureKeypoint, ...]
    detector_type: FeatureDetectorType
    bounding_box: BoundingBox
    quality_score: float
    descriptors: np.ndarray | None = field(default=None, compare=False, repr=False)
    image_width: int = 0
    image_height: int = 0
    kind: str = field(default="landscape", init=False)

    @property
    def keypoint_count(self) -> int:
        return len(self.keypoints)

    def has_enough_keypoints(self) -> bool:
        return self.keypoint_count >= config.MIN_KEYPOINTS_REQUIRED

    def reference_left(self) -> Point2D:
        return _centroid([k.position for k in self.keypoints if k.position.x < 0.5],
                         _LEFT_FALLBACK)

    def reference_right(self) -> Point2D:
        return _centroid([k.position for k in self.keypoints if k.position.x >= 0.5],
                         _RIGHT_FALLBACK)

    def top_keypoints(self, n: int) -> list[FeatureKeypoint]:
        return sorted(self.keypoints, key=lambda k: k.response, reverse=True)[:n]

    def keypoints_in_region(self, region: BoundingBox) -> list[FeatureKeypoint]:
        return [k for k in self.keypoints
                if region.left <= k.position.x <= region.right
                and region.top <= k.position.y <= region.bottom]


def _centroid(points: list[Point2D], fallback: Point2D) -> Point2D:
    if not points:
        return fallback
    return Point2D(sum(p.x for p in points) / len(points),
                   sum(p.y for p in points) / len(points))


ReferenceLandmarks = Union[FaceLandmarks, BodyLandmarks, LandscapeLandmarks]


def landmark_confidence(landmarks: ReferenceLandmarks) -> float:
    if isinstance(landmarks, LandscapeLandmarks):
        return landmarks.quality_score
    return landmarks.confidence


def default_goal_points(output_size: int,
                        target_eye_distance: float = config.TARGET_EYE_DISTANCE,
                        vertical_offset: float = config.VERTICAL_OFFSET,
                        ) -> tuple[Point2D, Point2D]:
    """Goal reference pair in canvas pixels when no reference frame is set.

    The pair is horizontal, centered, and shifted up by `vertical_offset`.
    """
    cx = output_size / 2.0
    cy = output_size / 2.0 - vertical_offset * output_size
    half = target_eye_distance * output_size / 2.0
    return Point2D(cx - half, cy), Point2D(cx + half, cy)


def fallback_landmarks(goal_left: Point2D, goal_right: Point2D,
                       output_size: int, kind: str = "face") -> ReferenceLandmarks:
    """Synthetic landmark set placed exactly on the goal pair.

    Substituted when re-detection on an aligned frame fails, so later stages
    (crop, export) still have something to work with.
    """
    left = goal_left.scaled(1.0 / output_size)
    right = goal_right.scaled(1.0 / output_size)
    bbox = BoundingBox(0.0, 0.0, 1.0, 1.0)
    if kind == "body":
        mid = left.midpoint(right)
        return BodyLandmarks(
            keypoints=(
                BodyKeypoint(BodyKeypointType.LEFT_SHOULDER, left, 0.0, visible=False),
                BodyKeypoint(BodyKeypointType.RIGHT_SHOULDER, right, 0.0, visible=False),
            ),
            left_shoulder=left,
            right_shoulder=right,
            left_hip=Point2D(left.x, 1.0),
            right_hip=Point2D(right.x, 1.0),
            neck_center=mid,
            bounding_box=bbox,
            confidence=0.0,
        )
    nose = Point2D(*config.FALLBACK_NOSE_POSITION)
    return FaceLandmarks(
        points=(left, right, nose),
        left_eye_center=left,
        right_eye_center=right,
        nose_tip=nose,
        bounding_box=bbox,
        confidence=0.0,
    )
