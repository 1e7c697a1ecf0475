"""Configuration constants for the timelapse stabilization engine."""

import os

# --- Logging ---
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"

# --- Scoring (canvas pixels, normalized to 1000px height) ---
SCORE_SCALE = 1000.0
SUCCESS_SCORE_THRESHOLD = 20.0   # strictly below is a success
NO_ACTION_SCORE_THRESHOLD = 0.5  # below this nothing is corrected

# --- Face/body refinement ---
ROTATION_STOP_THRESHOLD = 0.1  # px of vertical delta between reference points
SCALE_ERROR_THRESHOLD = 1.0    # px of reference distance error
CONVERGENCE_THRESHOLD = 0.05   # score change between passes
MIN_FACE_SIZE_RATIO = 0.1      # face bbox width / canvas width
EYE_VALIDITY_RATIO = 0.75      # detected distance / goal distance

# Pass budgets
FAST_MAX_PASSES = 4
SLOW_MAX_PASSES = 11
STAGE_PASS_BUDGET = 3
LANDSCAPE_FAST_MAX_PASSES = 1
LANDSCAPE_SLOW_MAX_PASSES = 10

# --- Face/body canvas ---
ALIGNMENT_MIN_CONFIDENCE = 0.7
TARGET_EYE_DISTANCE = 0.3       # fraction of output size
OUTPUT_SIZE = int(os.environ.get("STAB_OUTPUT_SIZE", "512"))
VERTICAL_OFFSET = 0.1           # goal midpoint shift above center, fraction of size
MIN_OUTPUT_SIZE = 128
MAX_OUTPUT_SIZE = 2048

# Synthetic landmarks substituted when re-detection fails
FALLBACK_NOSE_POSITION = (0.5, 0.6)

# --- Muscle region cropping (fractions of the aligned canvas) ---
MUSCLE_REGION = "FULL_BODY"
MUSCLE_REGION_PADDING = 0.1
MUSCLE_MAX_REGION_PADDING = 0.5
MUSCLE_OUTPUT_SIZE = 512
MUSCLE_MIN_OUTPUT_SIZE = 256
MUSCLE_MAX_OUTPUT_SIZE = 2048
MUSCLE_MIN_CONFIDENCE = 0.5
HEAD_MARGIN = 0.05
SIDE_MARGIN = 0.03
SHOULDER_MARGIN = 0.05
SHOULDER_TOP_MARGIN = 0.08
HIP_MARGIN = 0.03
HIP_TOP_MARGIN = 0.02
ANKLE_MARGIN = 0.02
WRIST_MARGIN = 0.03
ARM_SIDE_MARGIN = 0.05
BACK_SIDE_MARGIN = 0.08
BACK_HIP_MARGIN = 0.05
LOWER_BODY_ESTIMATE = 0.35   # hip to ankle when ankles are missing
ARM_LENGTH_ESTIMATE = 0.25   # shoulder to wrist when wrists are missing

# --- Landscape feature matching ---
LANDSCAPE_DETECTOR = "ORB"
MAX_KEYPOINTS = 500
MIN_KEYPOINTS_REQUIRED = 10
MAX_KEYPOINTS_LIMIT = 5000
RECOMMENDED_KEYPOINTS = 500
QUALITY_COUNT_WEIGHT = 0.7
QUALITY_RESPONSE_WEIGHT = 0.3
MAX_EXPECTED_RESPONSE = 100.0
MIN_MATCHED_KEYPOINTS = 10
RATIO_TEST_THRESHOLD = 0.75
RANSAC_REPROJ_THRESHOLD = 5.0
LANDSCAPE_OUTPUT_SIZE = 1080
LANDSCAPE_MAX_OUTPUT_SIZE = 4096
LANDSCAPE_MIN_CONFIDENCE = 0.5
USE_CROSS_CHECK = True
MIN_INLIER_RATIO = 0.3

# Homography sanity checks
HOMOGRAPHY_EPSILON = 1e-6
IDENTITY_TOLERANCE = 0.01
MIN_FIT_DETERMINANT = 0.01
MAX_FIT_DETERMINANT = 100.0
MIN_FIT_INLIER_RATIO = 0.2
OPTIMAL_MATCH_COUNT = 100
MATCH_FACTOR_WEIGHT = 0.4
INLIER_FACTOR_WEIGHT = 0.6
REPROJECTION_INLIER_THRESHOLD = 5.0  # px

# --- Landscape refinement ---
MATCH_KEEP_SCHEDULE = (1.0, 0.85, 0.70, 0.55, 0.40)  # fraction kept on pass 1..5+
MIN_MATCH_QUALITY_PERCENTILE = 0.5
INLIER_RATIO_IMPROVEMENT_THRESHOLD = 0.01
MEAN_REPROJECTION_ERROR_THRESHOLD = 1.0
INITIAL_RANSAC_THRESHOLD = 5.0
MIN_RANSAC_THRESHOLD = 1.5
RANSAC_REDUCTION_FACTOR = 0.6
MIN_DETERMINANT = 0.5
MAX_DETERMINANT = 2.0
MAX_ROTATION_DEGREES = 45.0
MAX_SCALE_FACTOR = 2.0
MIN_SCALE_FACTOR = 0.5
DETERMINANT_CHANGE_THRESHOLD = 0.01
IDENTITY_BLEND_FACTOR = 0.5
SUCCESS_CONFIDENCE_THRESHOLD = 0.7

# --- Progress sink ---
PROGRESS_QUEUE_TIMEOUT_SEC = 0.05
