"""Tests for landscape keypoint detection and the homography pass loop."""

import sys
import os
import threading

import cv2
import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alignment.errors import (
    DegenerateHomographyError,
    InsufficientKeypointsError,
    StabilizationCancelled,
)
from alignment.landmarks import FeatureDetectorType, FeatureKeypoint, LandscapeLandmarks
from geometry.primitives import BoundingBox, HomographyMatrix, Point2D
from pipeline.feature_detect import FeatureDetector, quality_score
from pipeline import landscape_stabilizer
from pipeline.image_transform import OpenCVTransformer
from pipeline.landscape_stabilizer import LandscapeStabilizer
from pipeline.progress import EarlyStopReason, StabilizationStage
from pipeline.settings import LandscapeAlignmentSettings, StabilizationMode

WIDTH, HEIGHT = 640, 480
IMAGE = np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8)


def _make_landscape(points, descriptors) -> LandscapeLandmarks:
    keypoints = tuple(FeatureKeypoint.from_pixel(x, y, WIDTH, HEIGHT, response=1.0)
                      for x, y in points)
    return LandscapeLandmarks(
        keypoints=keypoints,
        detector_type=FeatureDetectorType.ORB,
        bounding_box=BoundingBox(0.0, 0.0, 1.0, 1.0),
        quality_score=0.8,
        descriptors=descriptors,
        image_width=WIDTH,
        image_height=HEIGHT,
    )


def _make_pair(n=40, shift=(12.0, -7.0), seed=0):
    rng = np.random.default_rng(seed)
    points = rng.uniform((50, 50), (550, 400), size=(n, 2))
    descriptors = rng.integers(0, 256, size=(n, 32), dtype=np.uint8)
    return (_make_landscape(points, descriptors),
            _make_landscape(points + np.array(shift), descriptors))


def _make_texture(seed=0) -> np.ndarray:
    """Blurred, contrast-stretched noise: dense, repeatable corners."""
    rng = np.random.default_rng(seed)
    noise = rng.integers(0, 256, size=(HEIGHT, WIDTH), dtype=np.uint8)
    blurred = cv2.GaussianBlur(noise, (0, 0), 2.0)
    return cv2.normalize(blurred, None, 0, 255, cv2.NORM_MINMAX)


class _RecordingTransformer:
    def __init__(self):
        self.homographies = []

    def apply_affine(self, image, matrix, output_size):
        raise AssertionError("landscape stabilization never applies affine matrices")

    def apply_homography(self, image, matrix, output_size):
        self.homographies.append((matrix, output_size))
        return np.zeros((output_size[1], output_size[0], 3), dtype=np.uint8)


def _settings(mode: StabilizationMode) -> LandscapeAlignmentSettings:
    return LandscapeAlignmentSettings().with_mode(mode)


def test_fast_mode_is_single_pass():
    source, reference = _make_pair()
    transformer = _RecordingTransformer()
    result = LandscapeStabilizer(transformer).stabilize(
        IMAGE, source, reference, _settings(StabilizationMode.FAST))

    assert result.passes_executed == 1
    assert result.passes[0].stage == StabilizationStage.INITIAL
    assert result.early_stop_reason is None
    assert abs(result.matrix.h13 - 12.0) < 1e-3 and abs(result.matrix.h23 + 7.0) < 1e-3
    assert result.success, f"confidence {result.confidence}"
    assert len(transformer.homographies) == 1, "The frame is rendered exactly once"
    assert transformer.homographies[0][1] == (WIDTH, HEIGHT)
    assert result.image.shape == (HEIGHT, WIDTH, 3)


def test_slow_mode_walks_every_stage_on_exact_fit():
    source, reference = _make_pair()
    transformer = _RecordingTransformer()
    result = LandscapeStabilizer(transformer).stabilize(
        IMAGE, source, reference, _settings(StabilizationMode.SLOW),
        reference_frame_id="ref")

    stages = [p.stage for p in result.passes]
    assert stages == [
        StabilizationStage.INITIAL,
        StabilizationStage.MATCH_QUALITY_REFINE,
        StabilizationStage.RANSAC_THRESHOLD_REFINE,
        StabilizationStage.PERSPECTIVE_STABILITY_REFINE,
    ], f"Got {stages}"
    assert result.early_stop_reason == EarlyStopReason.PERSPECTIVE_CONVERGED
    assert result.final_score == 0.0
    assert result.diagnostics.reference_frame_id == "ref"
    assert len(transformer.homographies) == 1


def test_slow_mode_respects_pass_cap():
    source, reference = _make_pair(n=80, seed=3)
    result = LandscapeStabilizer(_RecordingTransformer()).stabilize(
        IMAGE, source, reference, _settings(StabilizationMode.SLOW))
    assert result.passes_executed <= 10


def test_insufficient_keypoints_fail_before_rendering():
    source, reference = _make_pair(n=5)
    transformer = _RecordingTransformer()
    try:
        LandscapeStabilizer(transformer).stabilize(
            IMAGE, source, reference, _settings(StabilizationMode.FAST))
    except InsufficientKeypointsError:
        assert transformer.homographies == []
        return
    assert False, "Expected InsufficientKeypointsError"


def test_cancelled_before_initial_pass():
    source, reference = _make_pair()
    cancel = threading.Event()
    cancel.set()
    try:
        LandscapeStabilizer(_RecordingTransformer()).stabilize(
            IMAGE, source, reference, _settings(StabilizationMode.SLOW),
            cancel_event=cancel)
    except StabilizationCancelled:
        return
    assert False, "Expected StabilizationCancelled"


def test_quality_score_weights():
    assert quality_score([]) == 0.0
    strong = [FeatureKeypoint(Point2D(0.5, 0.5), 200.0, 7.0, 0.0, 0)] * 500
    assert abs(quality_score(strong) - 1.0) < 1e-9
    weak = [FeatureKeypoint(Point2D(0.5, 0.5), 50.0, 7.0, 0.0, 0)] * 250
    assert abs(quality_score(weak) - (0.5 * 0.7 + 0.5 * 0.3)) < 1e-9


def test_feature_detector_on_texture():
    detector = FeatureDetector(FeatureDetectorType.ORB, max_keypoints=300)
    landmarks = detector.detect(_make_texture())
    assert landmarks is not None
    assert 0 < landmarks.keypoint_count <= 300
    assert landmarks.descriptors.shape[0] == landmarks.keypoint_count
    assert (landmarks.image_width, landmarks.image_height) == (WIDTH, HEIGHT)
    for k in landmarks.keypoints:
        assert 0.0 <= k.position.x <= 1.0 and 0.0 <= k.position.y <= 1.0


def test_feature_detector_flat_image_returns_none():
    detector = FeatureDetector()
    assert detector.detect(np.full((HEIGHT, WIDTH), 128, dtype=np.uint8)) is None


def test_end_to_end_shift_is_recovered():
    reference_image = _make_texture(seed=11)
    shift = np.float32([[1, 0, 15], [0, 1, 10]])
    source_image = cv2.warpAffine(reference_image, shift, (WIDTH, HEIGHT))

    detector = FeatureDetector(FeatureDetectorType.ORB, max_keypoints=500)
    source = detector.detect(source_image)
    reference = detector.detect(reference_image)
    result = LandscapeStabilizer(OpenCVTransformer()).stabilize(
        source_image, source, reference, _settings(StabilizationMode.FAST))

    h = result.matrix
    assert isinstance(h, HomographyMatrix)
    assert abs(h.h13 + 15.0) < 1.5, f"h13={h.h13}"
    assert abs(h.h23 + 10.0) < 1.5, f"h23={h.h23}"
    assert result.image.shape == (HEIGHT, WIDTH)


def _make_rotated_pair(n=60, degrees=60.0, seed=6):
    """Reference points are the source rotated about the frame center."""
    rng = np.random.default_rng(seed)
    center = np.array([WIDTH / 2.0, HEIGHT / 2.0])
    points = rng.uniform(center - 100.0, center + 100.0, size=(n, 2))
    r = np.radians(degrees)
    rot = np.array([[np.cos(r), -np.sin(r)], [np.sin(r), np.cos(r)]])
    rotated = (points - center) @ rot.T + center
    descriptors = rng.integers(0, 256, size=(n, 32), dtype=np.uint8)
    return _make_landscape(points, descriptors), _make_landscape(rotated, descriptors)


def test_implausible_perspective_pass_never_replaces_best():
    source, reference = _make_rotated_pair()
    fast = LandscapeStabilizer(_RecordingTransformer()).stabilize(
        IMAGE, source, reference, _settings(StabilizationMode.FAST))
    slow = LandscapeStabilizer(_RecordingTransformer()).stabilize(
        IMAGE, source, reference, _settings(StabilizationMode.SLOW))

    perspective = [p for p in slow.passes
                   if p.stage == StabilizationStage.PERSPECTIVE_STABILITY_REFINE]
    assert perspective, "SLOW mode must reach the perspective stage"
    assert perspective[0].score_after > 50.0, "The identity blend loses most inliers"
    assert np.allclose(slow.matrix.to_array(), fast.matrix.to_array(), atol=1e-2), \
        f"Blended matrix leaked into the result: {slow.matrix}"
    assert abs(slow.matrix.approximate_rotation_degrees() - 60.0) < 0.1
    assert slow.final_score == 0.0
    assert slow.success and slow.confidence == 1.0


def test_confidence_is_best_inlier_ratio():
    source, reference = _make_pair(n=20, seed=8)
    result = LandscapeStabilizer(_RecordingTransformer()).stabilize(
        IMAGE, source, reference, _settings(StabilizationMode.SLOW))
    assert result.confidence == 1.0, f"confidence {result.confidence}"
    assert result.success, "An exact fit over 20 matches is a success"
    assert result.final_score == 0.0


def test_degenerate_refinement_stops_with_homography_invalid():
    source, reference = _make_pair()

    def _degenerate(*args, **kwargs):
        raise DegenerateHomographyError("singular matrix")

    original = landscape_stabilizer.refine_ransac_threshold
    landscape_stabilizer.refine_ransac_threshold = _degenerate
    try:
        result = LandscapeStabilizer(_RecordingTransformer()).stabilize(
            IMAGE, source, reference, _settings(StabilizationMode.SLOW))
    finally:
        landscape_stabilizer.refine_ransac_threshold = original

    stages = [p.stage for p in result.passes]
    assert stages == [
        StabilizationStage.INITIAL,
        StabilizationStage.MATCH_QUALITY_REFINE,
        StabilizationStage.RANSAC_THRESHOLD_REFINE,
    ], f"Got {stages}"
    assert result.early_stop_reason == EarlyStopReason.HOMOGRAPHY_INVALID
    assert len(result.diagnostics.pass_errors) == 1
    assert "singular matrix" in result.diagnostics.pass_errors[0]
    assert result.passes[-1].score_before == result.passes[-1].score_after
    assert abs(result.matrix.h13 - 12.0) < 1e-3, "The best earlier matrix is kept"
    assert result.success


if __name__ == "__main__":
    tests = [
        test_fast_mode_is_single_pass,
        test_slow_mode_walks_every_stage_on_exact_fit,
        test_slow_mode_respects_pass_cap,
        test_insufficient_keypoints_fail_before_rendering,
        test_cancelled_before_initial_pass,
        test_quality_score_weights,
        test_feature_detector_on_texture,
        test_feature_detector_flat_image_returns_none,
        test_end_to_end_shift_is_recovered,
        test_implausible_perspective_pass_never_replaces_best,
        test_confidence_is_best_inlier_ratio,
        test_degenerate_refinement_stops_with_homography_invalid,
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
