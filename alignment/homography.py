"""Feature matching and robust homography estimation for landscape frames.

Keypoint positions are normalized; every fit runs in pixel space using the
image size recorded on each `LandscapeLandmarks` (or `fallback_size` when the
detector did not record one).
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging

import cv2
import numpy as np

import config
from alignment.errors import (
    DegenerateHomographyError,
    InsufficientKeypointsError,
    InsufficientMatchesError,
)
from alignment.landmarks import LandscapeLandmarks
from geometry.primitives import HomographyMatrix
from pipeline.settings import LandscapeAlignmentSettings, LandscapeStabilizationSettings

logger = logging.getLogger(__name__)

MIN_MATCHES_FOR_HOMOGRAPHY = 4


@dataclass(frozen=True)
class FeatureMatch:
    source_index: int
    reference_index: int
    distance: float


@dataclass(frozen=True)
class HomographyFit:
    matrix: HomographyMatrix
    inlier_mask: np.ndarray = field(compare=False, repr=False)
    match_count: int = 0

    @property
    def inlier_count(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))

    @property
    def inlier_ratio(self) -> float:
        return self.inlier_count / self.match_count if self.match_count else 0.0


@dataclass(frozen=True)
class HomographyEstimate:
    matrix: HomographyMatrix
    matches: tuple[FeatureMatch, ...]
    inlier_count: int
    inlier_ratio: float
    confidence: float

    @property
    def match_count(self) -> int:
        return len(self.matches)


@dataclass(frozen=True)
class ReprojectionError:
    mean: float
    median: float
    max: float
    inlier_count: int
    total_count: int
    threshold: float


def image_size(landmarks: LandscapeLandmarks, fallback_size: int) -> tuple[int, int]:
    return (landmarks.image_width or fallback_size,
            landmarks.image_height or fallback_size)


def _norm_for(descriptors: np.ndarray) -> int:
    # ORB and AKAZE both produce packed binary descriptors.
    if descriptors.dtype == np.uint8:
        return cv2.NORM_HAMMING
    return cv2.NORM_L2


def match_features(source: LandscapeLandmarks, reference: LandscapeLandmarks,
                   ratio_test_threshold: float = config.RATIO_TEST_THRESHOLD,
                   use_cross_check: bool = config.USE_CROSS_CHECK) -> list[FeatureMatch]:
    """Brute-force descriptor matching.

    With cross-check only mutually-best pairs survive; otherwise Lowe's ratio
    test keeps a match when best < ratio * second best.

    Returns:
        Matches sorted by descriptor distance, best first.
    """
    src_desc, ref_desc = source.descriptors, reference.descriptors
    if src_desc is None or ref_desc is None or len(src_desc) == 0 or len(ref_desc) == 0:
        return []
    if src_desc.dtype != ref_desc.dtype:
        raise ValueError(
            f"Descriptor types differ: {src_desc.dtype} vs {ref_desc.dtype}"
        )

    norm = _norm_for(src_desc)
    if use_cross_check:
        matcher = cv2.BFMatcher(norm, crossCheck=True)
        raw = matcher.match(src_desc, ref_desc)
    else:
        matcher = cv2.BFMatcher(norm)
        raw = []
        for pair in matcher.knnMatch(src_desc, ref_desc, k=2):
            if len(pair) < 2:
                continue
            best, second = pair
            if best.distance < ratio_test_threshold * second.distance:
                raw.append(best)

    matches = [FeatureMatch(m.queryIdx, m.trainIdx, float(m.distance)) for m in raw]
    matches.sort(key=lambda m: m.distance)
    return matches


def _pixel_points(source: LandscapeLandmarks, reference: LandscapeLandmarks,
                  matches: list[FeatureMatch],
                  fallback_size: int) -> tuple[np.ndarray, np.ndarray]:
    sw, sh = image_size(source, fallback_size)
    rw, rh = image_size(reference, fallback_size)
    src = np.array([[source.keypoints[m.source_index].position.x * sw,
                     source.keypoints[m.source_index].position.y * sh]
                    for m in matches], dtype=np.float32).reshape(-1, 2)
    dst = np.array([[reference.keypoints[m.reference_index].position.x * rw,
                     reference.keypoints[m.reference_index].position.y * rh]
                    for m in matches], dtype=np.float32).reshape(-1, 2)
    return src, dst


def fit_homography(src_pts: np.ndarray, dst_pts: np.ndarray,
                   ransac_threshold: float) -> HomographyFit:
    """RANSAC fit of dst ~ H * src. Both arrays are Nx2 pixel coordinates."""
    n = len(src_pts)
    if n < MIN_MATCHES_FOR_HOMOGRAPHY:
        raise InsufficientMatchesError(n, MIN_MATCHES_FOR_HOMOGRAPHY)

    H, mask = cv2.findHomography(src_pts, dst_pts, cv2.RANSAC, ransac_threshold)
    if H is None:
        raise DegenerateHomographyError("no model found")
    if mask is None:
        mask = np.ones(n, dtype=bool)
    return HomographyFit(HomographyMatrix.from_array(H), mask.ravel().astype(bool), n)


def compute_homography(source: LandscapeLandmarks, reference: LandscapeLandmarks,
                       matches: list[FeatureMatch], ransac_threshold: float,
                       fallback_size: int = config.LANDSCAPE_OUTPUT_SIZE) -> HomographyFit:
    """Fit a fixed match set and reject unusable models.

    Raises:
        InsufficientMatchesError: Fewer than four matches.
        DegenerateHomographyError: Singular, extreme or outlier-dominated fit.
    """
    src, dst = _pixel_points(source, reference, matches, fallback_size)
    fit = fit_homography(src, dst, ransac_threshold)

    if not fit.matrix.is_valid():
        raise DegenerateHomographyError("singular matrix")
    det = fit.matrix.determinant()
    if not config.MIN_FIT_DETERMINANT <= abs(det) <= config.MAX_FIT_DETERMINANT:
        raise DegenerateHomographyError(f"determinant {det:.4f} out of range")
    if fit.inlier_ratio < config.MIN_FIT_INLIER_RATIO:
        raise DegenerateHomographyError(f"inlier ratio {fit.inlier_ratio:.2f} too low")
    return fit


def match_confidence(match_count: int, inlier_count: int,
                     min_inlier_ratio: float = config.MIN_INLIER_RATIO) -> float:
    """0..1 confidence from the number of matches and how many are inliers."""
    if match_count <= 0:
        return 0.0
    inlier_ratio = inlier_count / match_count
    match_factor = min(match_count / config.OPTIMAL_MATCH_COUNT, 1.0)
    if min_inlier_ratio >= 1.0:
        inlier_factor = 1.0 if inlier_ratio >= 1.0 else 0.0
    else:
        inlier_factor = (inlier_ratio - min_inlier_ratio) / (1.0 - min_inlier_ratio)
        inlier_factor = min(max(inlier_factor, 0.0), 1.0)
    confidence = (match_factor * config.MATCH_FACTOR_WEIGHT
                  + inlier_factor * config.INLIER_FACTOR_WEIGHT)
    return min(max(confidence, 0.0), 1.0)


def estimate_homography(source: LandscapeLandmarks, reference: LandscapeLandmarks,
                        settings: LandscapeAlignmentSettings,
                        ransac_threshold: float | None = None) -> HomographyEstimate:
    """Match two keypoint sets and fit a validated source -> reference homography.

    Args:
        source: Keypoints of the frame being aligned.
        reference: Keypoints of the reference frame.
        settings: Matching and validation parameters.
        ransac_threshold: Override of `settings.ransac_reproj_threshold`.

    Returns:
        HomographyEstimate with the matrix, matches and inlier statistics.

    Raises:
        InsufficientKeypointsError: Either set has fewer than
            MIN_KEYPOINTS_REQUIRED keypoints; no fit is attempted.
        InsufficientMatchesError: Fewer than `min_matched_keypoints` matches.
        DegenerateHomographyError: Singular matrix or too few inliers.
    """
    for role, landmarks in (("source", source), ("reference", reference)):
        if not landmarks.has_enough_keypoints():
            raise InsufficientKeypointsError(role, landmarks.keypoint_count,
                                             config.MIN_KEYPOINTS_REQUIRED)

    matches = match_features(source, reference, settings.ratio_test_threshold,
                             settings.use_cross_check)
    logger.debug(f"{len(matches)} matches from {source.keypoint_count}/"
                 f"{reference.keypoint_count} keypoints")
    if len(matches) < settings.min_matched_keypoints:
        raise InsufficientMatchesError(len(matches), settings.min_matched_keypoints)

    threshold = (settings.ransac_reproj_threshold if ransac_threshold is None
                 else ransac_threshold)
    fit = compute_homography(source, reference, matches, threshold, settings.output_size)
    if fit.inlier_ratio < settings.min_inlier_ratio:
        raise DegenerateHomographyError(
            f"inlier ratio {fit.inlier_ratio:.2f} < {settings.min_inlier_ratio:.2f}"
        )

    return HomographyEstimate(
        matrix=fit.matrix,
        matches=tuple(matches),
        inlier_count=fit.inlier_count,
        inlier_ratio=fit.inlier_ratio,
        confidence=match_confidence(len(matches), fit.inlier_count,
                                    settings.min_inlier_ratio),
    )


def reprojection_error(homography: HomographyMatrix, source: LandscapeLandmarks,
                       reference: LandscapeLandmarks, matches: list[FeatureMatch],
                       threshold: float = config.REPROJECTION_INLIER_THRESHOLD,
                       fallback_size: int = config.LANDSCAPE_OUTPUT_SIZE,
                       ) -> ReprojectionError:
    """Pixel distance between H * source and the matched reference points."""
    if not matches:
        return ReprojectionError(float("inf"), float("inf"), float("inf"), 0, 0, threshold)

    src, dst = _pixel_points(source, reference, matches, fallback_size)
    projected = cv2.perspectiveTransform(src.reshape(-1, 1, 2).astype(np.float64),
                                         homography.to_array()).reshape(-1, 2)
    errors = np.linalg.norm(projected - dst, axis=1)
    errors = np.where(np.isfinite(errors), errors, np.inf)
    return ReprojectionError(
        mean=float(np.mean(errors)),
        median=float(np.median(errors)),
        max=float(np.max(errors)),
        inlier_count=int(np.count_nonzero(errors <= threshold)),
        total_count=len(matches),
        threshold=threshold,
    )


# --- SLOW-mode refinements ---

@dataclass(frozen=True)
class MatchQualityRefinement:
    homography: HomographyMatrix
    matches: tuple[FeatureMatch, ...]
    inlier_count: int
    inlier_ratio: float
    improvement: float
    converged: bool


@dataclass(frozen=True)
class RansacRefinement:
    homography: HomographyMatrix
    threshold: float
    inlier_count: int
    inlier_ratio: float
    error: ReprojectionError
    converged: bool


@dataclass(frozen=True)
class PerspectiveRefinement:
    homography: HomographyMatrix
    determinant: float
    valid: bool
    blended: bool
    converged: bool
    issues: tuple[str, ...]


def keep_fraction(pass_number: int, settings: LandscapeStabilizationSettings) -> float:
    """Fraction of matches kept on a match-quality pass (INITIAL is pass 1)."""
    schedule = config.MATCH_KEEP_SCHEDULE
    index = min(max(pass_number, 1), len(schedule)) - 1
    return max(schedule[index], settings.min_match_quality_percentile)


def refine_match_quality(source: LandscapeLandmarks, reference: LandscapeLandmarks,
                         matches: list[FeatureMatch], previous_inlier_ratio: float,
                         pass_number: int, settings: LandscapeStabilizationSettings,
                         fallback_size: int = config.LANDSCAPE_OUTPUT_SIZE,
                         ) -> MatchQualityRefinement:
    """Drop the weakest matches and refit.

    Matches are ranked by the product of both keypoints' detector response.
    Converged once the inlier ratio stops improving.
    """
    valid = [m for m in matches
             if 0 <= m.source_index < source.keypoint_count
             and 0 <= m.reference_index < reference.keypoint_count]
    if len(valid) < MIN_MATCHES_FOR_HOMOGRAPHY:
        raise InsufficientMatchesError(len(valid), MIN_MATCHES_FOR_HOMOGRAPHY)

    ranked = sorted(valid, key=lambda m: (source.keypoints[m.source_index].response
                                          * reference.keypoints[m.reference_index].response),
                    reverse=True)
    keep = int(len(ranked) * keep_fraction(pass_number, settings))
    keep = min(max(keep, MIN_MATCHES_FOR_HOMOGRAPHY), len(ranked))
    kept = ranked[:keep]

    fit = compute_homography(source, reference, kept, settings.initial_ransac_threshold,
                             fallback_size)
    improvement = fit.inlier_ratio - previous_inlier_ratio
    return MatchQualityRefinement(
        homography=fit.matrix,
        matches=tuple(kept),
        inlier_count=fit.inlier_count,
        inlier_ratio=fit.inlier_ratio,
        improvement=improvement,
        converged=improvement < settings.inlier_ratio_improvement_threshold,
    )


def refine_ransac_threshold(source: LandscapeLandmarks, reference: LandscapeLandmarks,
                            matches: list[FeatureMatch], previous_threshold: float,
                            settings: LandscapeStabilizationSettings,
                            fallback_size: int = config.LANDSCAPE_OUTPUT_SIZE,
                            ) -> RansacRefinement:
    """Refit with a tighter RANSAC threshold.

    Converged when the mean inlier reprojection error drops below
    `mean_reprojection_error_threshold` or the threshold hits its floor.
    """
    threshold = max(previous_threshold * settings.ransac_reduction_factor,
                    settings.min_ransac_threshold)
    fit = compute_homography(source, reference, matches, threshold, fallback_size)
    inliers = [m for m, keep in zip(matches, fit.inlier_mask) if keep]
    error = reprojection_error(fit.matrix, source, reference, inliers,
                               threshold=threshold, fallback_size=fallback_size)
    converged = (error.mean < settings.mean_reprojection_error_threshold
                 or threshold <= settings.min_ransac_threshold)
    return RansacRefinement(fit.matrix, threshold, fit.inlier_count, fit.inlier_ratio,
                            error, converged)


def _is_convex(corners: list[tuple[float, float]]) -> bool:
    last_sign = 0
    for i in range(4):
        ax, ay = corners[i]
        bx, by = corners[(i + 1) % 4]
        cx, cy = corners[(i + 2) % 4]
        cross = (bx - ax) * (cy - by) - (by - ay) * (cx - bx)
        if abs(cross) <= config.HOMOGRAPHY_EPSILON:
            continue
        sign = 1 if cross > 0 else -1
        if last_sign and sign != last_sign:
            return False
        last_sign = sign
    return last_sign != 0


def corners_valid(homography: HomographyMatrix, width: float = 1.0,
                  height: float = 1.0) -> bool:
    """True if the image rectangle maps to a finite convex quadrilateral."""
    corners = [homography.transform_point(x, y)
               for x, y in ((0.0, 0.0), (width, 0.0), (width, height), (0.0, height))]
    if not np.all(np.isfinite(corners)):
        return False
    return _is_convex(corners)


def refine_perspective_stability(homography: HomographyMatrix,
                                 previous_determinant: float | None,
                                 settings: LandscapeStabilizationSettings,
                                 width: float = 1.0, height: float = 1.0,
                                 ) -> PerspectiveRefinement:
    """Reject implausible perspective by pulling the matrix toward identity.

    Converged when the matrix is plausible and its determinant moved less
    than `determinant_change_threshold` since the previous pass.
    """
    if not homography.is_valid():
        raise DegenerateHomographyError("singular matrix")

    det = homography.determinant()
    scale = homography.approximate_scale()
    rotation = homography.approximate_rotation_degrees()
    issues = []
    if not settings.min_determinant <= det <= settings.max_determinant:
        issues.append(f"determinant {det:.3f} outside "
                      f"[{settings.min_determinant}, {settings.max_determinant}]")
    if not settings.min_scale_factor <= scale <= settings.max_scale_factor:
        issues.append(f"scale {scale:.3f} outside "
                      f"[{settings.min_scale_factor}, {settings.max_scale_factor}]")
    if abs(rotation) > settings.max_rotation_degrees:
        issues.append(f"rotation {rotation:.1f} exceeds {settings.max_rotation_degrees}")
    if not corners_valid(homography, width, height):
        issues.append("corners map to a non-convex or infinite quadrilateral")

    valid = not issues
    refined = homography if valid else homography.blend_with_identity(settings.identity_blend_factor)
    if valid:
        converged = (previous_determinant is None
                     or abs(det - previous_determinant) < settings.determinant_change_threshold)
    else:
        converged = False
        logger.debug(f"Perspective issues: {'; '.join(issues)}")
    return PerspectiveRefinement(refined, refined.determinant(), valid, not valid,
                                 converged, tuple(issues))
