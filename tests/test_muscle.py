"""Tests for muscle-region bounds, crop matrices and the muscle aligner."""

import math
import sys
import os

import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alignment.errors import DetectionError, InvalidReferencePairError
from alignment.landmarks import BodyKeypoint, BodyKeypointType, BodyLandmarks
from alignment.muscle import (
    MuscleRegion,
    crop_matrix,
    muscle_region_bounds,
    pad_bounds,
    square_bounds,
)
from geometry.primitives import BoundingBox, Point2D
from pipeline.muscle_aligner import MuscleAligner
from pipeline.settings import (
    AlignmentSettings,
    MuscleAlignmentSettings,
    StabilizationMode,
    StabilizationSettings,
)

SIZE = 512
IMAGE = np.zeros((400, 400, 3), dtype=np.uint8)

# Source-pixel body on a 400x400 frame, shoulders level and 100px apart.
TRUE_BODY = {
    BodyKeypointType.NOSE: (150.0, 40.0),
    BodyKeypointType.LEFT_SHOULDER: (100.0, 100.0),
    BodyKeypointType.RIGHT_SHOULDER: (200.0, 100.0),
    BodyKeypointType.LEFT_HIP: (110.0, 220.0),
    BodyKeypointType.RIGHT_HIP: (190.0, 220.0),
    BodyKeypointType.LEFT_ANKLE: (120.0, 380.0),
    BodyKeypointType.RIGHT_ANKLE: (180.0, 380.0),
}


def _make_body(points: dict, confidence: float = 0.9) -> BodyLandmarks:
    """BodyLandmarks from {type: normalized (x, y)}; neck midway nose/shoulders."""
    def p(kind):
        return Point2D(*points[kind])

    shoulders = p(BodyKeypointType.LEFT_SHOULDER).midpoint(p(BodyKeypointType.RIGHT_SHOULDER))
    nose = points.get(BodyKeypointType.NOSE)
    neck = shoulders if nose is None else shoulders.midpoint(Point2D(*nose))
    keypoints = tuple(BodyKeypoint(kind, Point2D(*xy), confidence)
                      for kind, xy in points.items())
    return BodyLandmarks(
        keypoints=keypoints,
        left_shoulder=p(BodyKeypointType.LEFT_SHOULDER),
        right_shoulder=p(BodyKeypointType.RIGHT_SHOULDER),
        left_hip=p(BodyKeypointType.LEFT_HIP),
        right_hip=p(BodyKeypointType.RIGHT_HIP),
        neck_center=neck,
        bounding_box=BoundingBox.from_points([Point2D(*xy) for xy in points.values()]),
        confidence=confidence,
    )


def _standing_body() -> BodyLandmarks:
    points = {
        BodyKeypointType.NOSE: (0.5, 0.15),
        BodyKeypointType.LEFT_SHOULDER: (0.35, 0.3),
        BodyKeypointType.RIGHT_SHOULDER: (0.65, 0.3),
        BodyKeypointType.LEFT_ELBOW: (0.25, 0.45),
        BodyKeypointType.RIGHT_ELBOW: (0.75, 0.45),
        BodyKeypointType.LEFT_WRIST: (0.2, 0.55),
        BodyKeypointType.RIGHT_WRIST: (0.8, 0.58),
        BodyKeypointType.LEFT_HIP: (0.4, 0.6),
        BodyKeypointType.RIGHT_HIP: (0.6, 0.6),
        BodyKeypointType.LEFT_KNEE: (0.38, 0.75),
        BodyKeypointType.RIGHT_KNEE: (0.62, 0.75),
        BodyKeypointType.LEFT_ANKLE: (0.42, 0.9),
        BodyKeypointType.RIGHT_ANKLE: (0.58, 0.92),
    }
    return _make_body(points)


def _assert_box(box, expected, label):
    for name, got, want in zip(("left", "top", "right", "bottom"),
                               (box.left, box.top, box.right, box.bottom), expected):
        assert math.isclose(got, want, abs_tol=1e-9), f"{label} {name}: {got} != {want}"


def test_full_body_bounds():
    box = muscle_region_bounds(_standing_body(), MuscleRegion.FULL_BODY, padding=0.0)
    # Raw (0.32, 0.10, 0.68, 0.94) squared about its center.
    _assert_box(box, (0.08, 0.10, 0.92, 0.94), "full body")


def test_upper_body_bounds():
    box = muscle_region_bounds(_standing_body(), MuscleRegion.UPPER_BODY, padding=0.0)
    _assert_box(box, (0.235, 0.10, 0.765, 0.63), "upper body")


def test_arms_bounds_reach_the_wrists():
    box = muscle_region_bounds(_standing_body(), MuscleRegion.ARMS, padding=0.0)
    _assert_box(box, (0.15, 0.065, 0.85, 0.765), "arms")


def test_missing_ankles_use_hip_estimate():
    body = _make_body({
        BodyKeypointType.LEFT_SHOULDER: (0.35, 0.3),
        BodyKeypointType.RIGHT_SHOULDER: (0.65, 0.3),
        BodyKeypointType.LEFT_HIP: (0.4, 0.6),
        BodyKeypointType.RIGHT_HIP: (0.6, 0.6),
    })
    box = muscle_region_bounds(body, MuscleRegion.FULL_BODY, padding=0.0)
    # Top from the shoulder line, bottom 0.35 below the hips.
    _assert_box(box, (0.14, 0.25, 0.86, 0.97), "full body without ankles")


def test_every_region_is_square_and_inside_canvas():
    body = _standing_body()
    for region in MuscleRegion:
        box = muscle_region_bounds(body, region)
        assert math.isclose(box.width, box.height, abs_tol=1e-9), \
            f"{region.value}: {box.width} x {box.height}"
        assert 0.0 <= box.left < box.right <= 1.0, f"{region.value}: {box}"
        assert 0.0 <= box.top < box.bottom <= 1.0, f"{region.value}: {box}"


def test_padding_scales_with_region_and_clamps():
    _assert_box(pad_bounds(BoundingBox(0.2, 0.2, 0.6, 0.4), 0.1),
                (0.16, 0.18, 0.64, 0.42), "padded")
    _assert_box(pad_bounds(BoundingBox(0.0, 0.0, 0.5, 0.5), 0.2),
                (0.0, 0.0, 0.6, 0.6), "clamped")


def test_square_slides_back_inside_canvas():
    _assert_box(square_bounds(BoundingBox(0.0, 0.4, 0.2, 0.9)),
                (0.0, 0.4, 0.5, 0.9), "left edge")
    _assert_box(square_bounds(BoundingBox(0.9, 0.0, 1.0, 0.3)),
                (0.7, 0.0, 1.0, 0.3), "right edge")


def test_reversed_shoulders_give_empty_region():
    body = _make_body({
        BodyKeypointType.LEFT_SHOULDER: (0.8, 0.3),
        BodyKeypointType.RIGHT_SHOULDER: (0.2, 0.3),
        BodyKeypointType.LEFT_HIP: (0.6, 0.6),
        BodyKeypointType.RIGHT_HIP: (0.4, 0.6),
    })
    try:
        muscle_region_bounds(body, MuscleRegion.UPPER_BODY)
    except InvalidReferencePairError as e:
        assert "empty muscle region" in str(e)
        return
    assert False, "Expected InvalidReferencePairError for an inside-out region"


def test_region_from_string():
    assert MuscleRegion.from_string("upper body") is MuscleRegion.UPPER_BODY
    assert MuscleRegion.from_string("Lower-Body") is MuscleRegion.LOWER_BODY
    assert MuscleRegion.from_string("arms") is MuscleRegion.ARMS
    assert MuscleRegion.from_string("legs") is MuscleRegion.FULL_BODY
    assert MuscleRegion.from_string(None) is MuscleRegion.FULL_BODY
    assert MuscleRegion.BACK.display_name == "Back"


def test_crop_matrix_maps_bounds_onto_output():
    m = crop_matrix(BoundingBox(0.25, 0.25, 0.75, 0.75), SIZE, SIZE, 256)
    top_left = m.transform_point(Point2D(128.0, 128.0))
    bottom_right = m.transform_point(Point2D(384.0, 384.0))
    assert math.isclose(top_left.x, 0.0, abs_tol=1e-9)
    assert math.isclose(top_left.y, 0.0, abs_tol=1e-9)
    assert math.isclose(bottom_right.x, 256.0) and math.isclose(bottom_right.y, 256.0)


def test_muscle_settings_validation():
    for label, factory in (
        ("padding 0.6", lambda: MuscleAlignmentSettings(region_padding=0.6)),
        ("output 128", lambda: MuscleAlignmentSettings(output_size=128)),
        ("confidence 1.5", lambda: MuscleAlignmentSettings(min_confidence=1.5)),
    ):
        try:
            factory()
        except ValueError:
            continue
        assert False, f"Expected ValueError for {label}"
    slow = MuscleAlignmentSettings().with_mode(StabilizationMode.SLOW)
    assert slow.body.stabilization.mode is StabilizationMode.SLOW
    assert slow.region is MuscleRegion.FULL_BODY


class _RecordingTransformer:
    def __init__(self):
        self.calls = []

    @property
    def matrices(self):
        return [m for m, _ in self.calls]

    def apply_affine(self, image, matrix, output_size):
        self.calls.append((matrix, output_size))
        return np.zeros((output_size[1], output_size[0], 3), dtype=np.uint8)

    def apply_homography(self, image, matrix, output_size):
        raise AssertionError("muscle alignment never applies homographies")


class _ProjectingBodyDetector:
    """Projects TRUE_BODY through the last rendered matrix."""

    def __init__(self, transformer, fail_after=None):
        self.transformer = transformer
        self.fail_after = fail_after
        self.calls = 0

    def detect(self, image):
        self.calls += 1
        if self.fail_after is not None and self.calls > self.fail_after:
            return None
        m = self.transformer.matrices[-1]
        points = {}
        for kind, (x, y) in TRUE_BODY.items():
            p = m.transform_point(Point2D(x, y))
            points[kind] = (p.x / SIZE, p.y / SIZE)
        return _make_body(points)


def _source_body() -> BodyLandmarks:
    h, w = IMAGE.shape[:2]
    return _make_body({kind: (x / w, y / h) for kind, (x, y) in TRUE_BODY.items()})


def _muscle_settings(region=MuscleRegion.UPPER_BODY) -> MuscleAlignmentSettings:
    body = AlignmentSettings(output_size=SIZE,
                             stabilization=StabilizationSettings(mode=StabilizationMode.FAST))
    return MuscleAlignmentSettings(region=region, output_size=256, body=body)


def test_aligner_crops_in_a_single_warp_from_the_source():
    transformer = _RecordingTransformer()
    aligner = MuscleAligner(_ProjectingBodyDetector(transformer), transformer)
    result = aligner.align(IMAGE, _source_body(), _muscle_settings())

    stab = result.stabilization
    assert isinstance(result.landmarks, BodyLandmarks)
    expected_bounds = muscle_region_bounds(result.landmarks, MuscleRegion.UPPER_BODY, 0.1)
    assert result.bounds == expected_bounds
    expected = crop_matrix(expected_bounds, SIZE, SIZE, 256).compose(stab.matrix)
    assert np.allclose(result.matrix.to_array(), expected.to_array())
    assert transformer.calls[-1][1] == (256, 256), "The crop renders straight to the output"
    assert result.image.shape == (256, 256, 3)

    # Both shoulders land inside the crop.
    for kind in (BodyKeypointType.LEFT_SHOULDER, BodyKeypointType.RIGHT_SHOULDER):
        p = result.matrix.transform_point(Point2D(*TRUE_BODY[kind]))
        assert 0.0 < p.x < 256.0 and 0.0 < p.y < 256.0, f"{kind.value} at {p}"


def test_aligner_requires_body_on_canvas():
    transformer = _RecordingTransformer()
    aligner = MuscleAligner(_ProjectingBodyDetector(transformer, fail_after=0), transformer)
    try:
        aligner.align(IMAGE, _source_body(), _muscle_settings())
    except DetectionError:
        return
    assert False, "Expected DetectionError when no body is found after alignment"


if __name__ == "__main__":
    tests = [
        test_full_body_bounds,
        test_upper_body_bounds,
        test_arms_bounds_reach_the_wrists,
        test_missing_ankles_use_hip_estimate,
        test_every_region_is_square_and_inside_canvas,
        test_padding_scales_with_region_and_clamps,
        test_square_slides_back_inside_canvas,
        test_reversed_shoulders_give_empty_region,
        test_region_from_string,
        test_crop_matrix_maps_bounds_onto_output,
        test_muscle_settings_validation,
        test_aligner_crops_in_a_single_warp_from_the_source,
        test_aligner_requires_body_on_canvas,
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
