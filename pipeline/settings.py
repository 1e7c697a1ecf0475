"""Immutable settings for face/body and landscape stabilization runs."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

import config
from alignment.landmarks import FeatureDetectorType
from alignment.muscle import MuscleRegion


class StabilizationMode(Enum):
    FAST = "fast"
    SLOW = "slow"

    @property
    def max_passes(self) -> int:
        if self is StabilizationMode.FAST:
            return config.FAST_MAX_PASSES
        return config.SLOW_MAX_PASSES

    @property
    def landscape_max_passes(self) -> int:
        if self is StabilizationMode.FAST:
            return config.LANDSCAPE_FAST_MAX_PASSES
        return config.LANDSCAPE_SLOW_MAX_PASSES


def _require(condition: bool, message: str):
    if not condition:
        raise ValueError(message)


@dataclass(frozen=True)
class StabilizationSettings:
    mode: StabilizationMode = StabilizationMode.FAST
    rotation_stop_threshold: float = config.ROTATION_STOP_THRESHOLD
    scale_error_threshold: float = config.SCALE_ERROR_THRESHOLD
    convergence_threshold: float = config.CONVERGENCE_THRESHOLD
    success_score_threshold: float = config.SUCCESS_SCORE_THRESHOLD
    no_action_score_threshold: float = config.NO_ACTION_SCORE_THRESHOLD
    min_face_size_ratio: float = config.MIN_FACE_SIZE_RATIO
    eye_validity_ratio: float = config.EYE_VALIDITY_RATIO

    def __post_init__(self):
        _require(self.rotation_stop_threshold > 0, "rotation_stop_threshold must be positive")
        _require(self.scale_error_threshold > 0, "scale_error_threshold must be positive")
        _require(self.convergence_threshold > 0, "convergence_threshold must be positive")
        _require(self.success_score_threshold > 0, "success_score_threshold must be positive")
        _require(0 < self.no_action_score_threshold < self.success_score_threshold,
                 "no_action_score_threshold must be below success_score_threshold")
        _require(0 < self.min_face_size_ratio <= 1, "min_face_size_ratio must be in (0, 1]")
        _require(0 < self.eye_validity_ratio <= 1, "eye_validity_ratio must be in (0, 1]")

    @property
    def max_passes(self) -> int:
        return self.mode.max_passes


@dataclass(frozen=True)
class AlignmentSettings:
    """Face/body canvas geometry plus the stabilization strategy."""
    min_confidence: float = config.ALIGNMENT_MIN_CONFIDENCE
    target_eye_distance: float = config.TARGET_EYE_DISTANCE
    output_size: int = config.OUTPUT_SIZE
    vertical_offset: float = config.VERTICAL_OFFSET
    stabilization: StabilizationSettings = field(default_factory=StabilizationSettings)
    # True: a lost re-detection raises DetectionLostError instead of
    # continuing with synthetic landmarks.
    fail_on_detection_loss: bool = False

    def __post_init__(self):
        _require(0 <= self.min_confidence <= 1, "min_confidence must be in [0, 1]")
        _require(0.1 <= self.target_eye_distance <= 0.9,
                 "target_eye_distance must be in [0.1, 0.9]")
        _require(config.MIN_OUTPUT_SIZE <= self.output_size <= config.MAX_OUTPUT_SIZE,
                 f"output_size must be in [{config.MIN_OUTPUT_SIZE}, {config.MAX_OUTPUT_SIZE}]")
        _require(-0.5 <= self.vertical_offset <= 0.5, "vertical_offset must be in [-0.5, 0.5]")

    def with_mode(self, mode: StabilizationMode) -> AlignmentSettings:
        return replace(self, stabilization=replace(self.stabilization, mode=mode))


@dataclass(frozen=True)
class LandscapeStabilizationSettings:
    mode: StabilizationMode = StabilizationMode.FAST
    min_match_quality_percentile: float = config.MIN_MATCH_QUALITY_PERCENTILE
    inlier_ratio_improvement_threshold: float = config.INLIER_RATIO_IMPROVEMENT_THRESHOLD
    mean_reprojection_error_threshold: float = config.MEAN_REPROJECTION_ERROR_THRESHOLD
    initial_ransac_threshold: float = config.INITIAL_RANSAC_THRESHOLD
    min_ransac_threshold: float = config.MIN_RANSAC_THRESHOLD
    ransac_reduction_factor: float = config.RANSAC_REDUCTION_FACTOR
    min_determinant: float = config.MIN_DETERMINANT
    max_determinant: float = config.MAX_DETERMINANT
    max_rotation_degrees: float = config.MAX_ROTATION_DEGREES
    max_scale_factor: float = config.MAX_SCALE_FACTOR
    min_scale_factor: float = config.MIN_SCALE_FACTOR
    determinant_change_threshold: float = config.DETERMINANT_CHANGE_THRESHOLD
    identity_blend_factor: float = config.IDENTITY_BLEND_FACTOR
    success_confidence_threshold: float = config.SUCCESS_CONFIDENCE_THRESHOLD

    def __post_init__(self):
        _require(0 < self.min_match_quality_percentile <= 1,
                 "min_match_quality_percentile must be in (0, 1]")
        _require(self.min_ransac_threshold > 0, "min_ransac_threshold must be positive")
        _require(self.initial_ransac_threshold >= self.min_ransac_threshold,
                 "initial_ransac_threshold must be >= min_ransac_threshold")
        _require(0 < self.ransac_reduction_factor < 1, "ransac_reduction_factor must be in (0, 1)")
        _require(0 < self.min_determinant < self.max_determinant,
                 "determinant bounds must satisfy 0 < min < max")
        _require(0 < self.min_scale_factor < self.max_scale_factor,
                 "scale bounds must satisfy 0 < min < max")
        _require(0 < self.max_rotation_degrees <= 180, "max_rotation_degrees must be in (0, 180]")
        _require(0 <= self.identity_blend_factor <= 1, "identity_blend_factor must be in [0, 1]")
        _require(0 <= self.success_confidence_threshold <= 1,
                 "success_confidence_threshold must be in [0, 1]")

    @property
    def max_passes(self) -> int:
        return self.mode.landscape_max_passes


@dataclass(frozen=True)
class LandscapeAlignmentSettings:
    detector_type: FeatureDetectorType = FeatureDetectorType.from_string(config.LANDSCAPE_DETECTOR)
    max_keypoints: int = config.MAX_KEYPOINTS
    min_matched_keypoints: int = config.MIN_MATCHED_KEYPOINTS
    ratio_test_threshold: float = config.RATIO_TEST_THRESHOLD
    ransac_reproj_threshold: float = config.RANSAC_REPROJ_THRESHOLD
    output_size: int = config.LANDSCAPE_OUTPUT_SIZE
    min_confidence: float = config.LANDSCAPE_MIN_CONFIDENCE
    use_cross_check: bool = config.USE_CROSS_CHECK
    min_inlier_ratio: float = config.MIN_INLIER_RATIO
    stabilization: LandscapeStabilizationSettings = field(
        default_factory=LandscapeStabilizationSettings)

    def __post_init__(self):
        _require(config.MIN_KEYPOINTS_REQUIRED <= self.max_keypoints <= config.MAX_KEYPOINTS_LIMIT,
                 f"max_keypoints must be in [{config.MIN_KEYPOINTS_REQUIRED}, "
                 f"{config.MAX_KEYPOINTS_LIMIT}]")
        _require(self.min_matched_keypoints >= 4, "min_matched_keypoints must be at least 4")
        _require(0.5 <= self.ratio_test_threshold <= 0.95,
                 "ratio_test_threshold must be in [0.5, 0.95]")
        _require(self.ransac_reproj_threshold > 0, "ransac_reproj_threshold must be positive")
        _require(config.MIN_OUTPUT_SIZE <= self.output_size <= config.LANDSCAPE_MAX_OUTPUT_SIZE,
                 f"output_size must be in [{config.MIN_OUTPUT_SIZE}, "
                 f"{config.LANDSCAPE_MAX_OUTPUT_SIZE}]")
        _require(0 <= self.min_confidence <= 1, "min_confidence must be in [0, 1]")
        _require(0 <= self.min_inlier_ratio <= 1, "min_inlier_ratio must be in [0, 1]")

    @classmethod
    def fast(cls) -> LandscapeAlignmentSettings:
        """Fewer keypoints, ratio test instead of cross-check."""
        return cls(max_keypoints=200, min_matched_keypoints=8,
                   ratio_test_threshold=0.8, use_cross_check=False)

    @classmethod
    def high_quality(cls) -> LandscapeAlignmentSettings:
        """AKAZE, more keypoints, stricter matching, SLOW refinement."""
        return cls(
            detector_type=FeatureDetectorType.AKAZE,
            max_keypoints=1000,
            min_matched_keypoints=20,
            ratio_test_threshold=0.7,
            use_cross_check=True,
            min_inlier_ratio=0.5,
            stabilization=LandscapeStabilizationSettings(mode=StabilizationMode.SLOW),
        )

    def with_mode(self, mode: StabilizationMode) -> LandscapeAlignmentSettings:
        return replace(self, stabilization=replace(self.stabilization, mode=mode))


@dataclass(frozen=True)
class MuscleAlignmentSettings:
    """Body alignment followed by a square crop around one muscle group."""
    region: MuscleRegion = MuscleRegion.from_string(config.MUSCLE_REGION)
    region_padding: float = config.MUSCLE_REGION_PADDING
    output_size: int = config.MUSCLE_OUTPUT_SIZE
    min_confidence: float = config.MUSCLE_MIN_CONFIDENCE
    body: AlignmentSettings = field(default_factory=AlignmentSettings)

    def __post_init__(self):
        _require(0 <= self.region_padding <= config.MUSCLE_MAX_REGION_PADDING,
                 f"region_padding must be in [0, {config.MUSCLE_MAX_REGION_PADDING}]")
        _require(config.MUSCLE_MIN_OUTPUT_SIZE <= self.output_size
                 <= config.MUSCLE_MAX_OUTPUT_SIZE,
                 f"output_size must be in [{config.MUSCLE_MIN_OUTPUT_SIZE}, "
                 f"{config.MUSCLE_MAX_OUTPUT_SIZE}]")
        _require(0 <= self.min_confidence <= 1, "min_confidence must be in [0, 1]")

    def with_mode(self, mode: StabilizationMode) -> MuscleAlignmentSettings:
        return replace(self, body=self.body.with_mode(mode))
