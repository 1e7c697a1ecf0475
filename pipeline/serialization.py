"""JSON-ready dict forms of the records stored next to each processed frame."""

from __future__ import annotations

import base64
import json

import numpy as np

from alignment.landmarks import (
    BodyKeypoint,
    BodyKeypointType,
    BodyLandmarks,
    FaceLandmarks,
    FeatureDetectorType,
    FeatureKeypoint,
    LandscapeLandmarks,
    ReferenceLandmarks,
)
from geometry.primitives import AffineMatrix, BoundingBox, HomographyMatrix, Point2D
from pipeline.progress import AlignmentDiagnostics, StabilizationResult


def _point(p: Point2D) -> dict:
    return {"x": p.x, "y": p.y}


def _to_point(d: dict) -> Point2D:
    return Point2D(float(d["x"]), float(d["y"]))


def _box(b: BoundingBox) -> dict:
    return {"left": b.left, "top": b.top, "right": b.right, "bottom": b.bottom}


def _to_box(d: dict) -> BoundingBox:
    return BoundingBox(float(d["left"]), float(d["top"]), float(d["right"]), float(d["bottom"]))


def affine_to_dict(m: AffineMatrix) -> dict:
    return {
        "scale_x": m.scale_x, "skew_x": m.skew_x, "translate_x": m.translate_x,
        "skew_y": m.skew_y, "scale_y": m.scale_y, "translate_y": m.translate_y,
    }


def affine_from_dict(d: dict) -> AffineMatrix:
    return AffineMatrix(**{k: float(d[k]) for k in affine_to_dict(AffineMatrix.IDENTITY)})


_H_FIELDS = ("h11", "h12", "h13", "h21", "h22", "h23", "h31", "h32", "h33")


def homography_to_dict(m: HomographyMatrix) -> dict:
    return {name: getattr(m, name) for name in _H_FIELDS}


def homography_from_dict(d: dict) -> HomographyMatrix:
    return HomographyMatrix(*(float(d[name]) for name in _H_FIELDS))


def landmarks_to_dict(landmarks: ReferenceLandmarks) -> dict:
    """Tagged dict; the `kind` key selects the variant on load."""
    if isinstance(landmarks, FaceLandmarks):
        return {
            "kind": landmarks.kind,
            "points": [_point(p) for p in landmarks.points],
            "left_eye_center": _point(landmarks.left_eye_center),
            "right_eye_center": _point(landmarks.right_eye_center),
            "nose_tip": _point(landmarks.nose_tip),
            "bounding_box": _box(landmarks.bounding_box),
            "confidence": landmarks.confidence,
        }
    if isinstance(landmarks, BodyLandmarks):
        return {
            "kind": landmarks.kind,
            "keypoints": [
                {"type": k.type.value, "position": _point(k.position),
                 "confidence": k.confidence, "visible": k.visible}
                for k in landmarks.keypoints
            ],
            "left_shoulder": _point(landmarks.left_shoulder),
            "right_shoulder": _point(landmarks.right_shoulder),
            "left_hip": _point(landmarks.left_hip),
            "right_hip": _point(landmarks.right_hip),
            "neck_center": _point(landmarks.neck_center),
            "bounding_box": _box(landmarks.bounding_box),
            "confidence": landmarks.confidence,
        }
    if isinstance(landmarks, LandscapeLandmarks):
        d = {
            "kind": landmarks.kind,
            "keypoints": [
                {"position": _point(k.position), "response": k.response, "size": k.size,
                 "angle": k.angle, "octave": k.octave}
                for k in landmarks.keypoints
            ],
            "detector_type": landmarks.detector_type.value,
            "keypoint_count": landmarks.keypoint_count,
            "bounding_box": _box(landmarks.bounding_box),
            "quality_score": landmarks.quality_score,
            "image_width": landmarks.image_width,
            "image_height": landmarks.image_height,
        }
        if landmarks.descriptors is not None:
            desc = np.ascontiguousarray(landmarks.descriptors)
            d["descriptors"] = {
                "dtype": str(desc.dtype),
                "shape": list(desc.shape),
                "data": base64.b64encode(desc.tobytes()).decode("ascii"),
            }
        return d
    raise TypeError(f"Unsupported landmarks type: {type(landmarks).__name__}")


def landmarks_from_dict(d: dict) -> ReferenceLandmarks:
    kind = d.get("kind")
    if kind == "face":
        return FaceLandmarks(
            points=tuple(_to_point(p) for p in d["points"]),
            left_eye_center=_to_point(d["left_eye_center"]),
            right_eye_center=_to_point(d["right_eye_center"]),
            nose_tip=_to_point(d["nose_tip"]),
            bounding_box=_to_box(d["bounding_box"]),
            confidence=float(d.get("confidence", 1.0)),
        )
    if kind == "body":
        return BodyLandmarks(
            keypoints=tuple(
                BodyKeypoint(BodyKeypointType(k["type"]), _to_point(k["position"]),
                             float(k["confidence"]), bool(k.get("visible", True)))
                for k in d["keypoints"]
            ),
            left_shoulder=_to_point(d["left_shoulder"]),
            right_shoulder=_to_point(d["right_shoulder"]),
            left_hip=_to_point(d["left_hip"]),
            right_hip=_to_point(d["right_hip"]),
            neck_center=_to_point(d["neck_center"]),
            bounding_box=_to_box(d["bounding_box"]),
            confidence=float(d["confidence"]),
        )
    if kind == "landscape":
        descriptors = None
        if "descriptors" in d:
            packed = d["descriptors"]
            descriptors = np.frombuffer(base64.b64decode(packed["data"]),
                                        dtype=np.dtype(packed["dtype"])).reshape(packed["shape"])
        return LandscapeLandmarks(
            keypoints=tuple(
                FeatureKeypoint(_to_point(k["position"]), float(k["response"]),
                                float(k["size"]), float(k["angle"]), int(k["octave"]))
                for k in d["keypoints"]
            ),
            detector_type=FeatureDetectorType.from_string(d.get("detector_type")),
            bounding_box=_to_box(d["bounding_box"]),
            quality_score=float(d["quality_score"]),
            descriptors=descriptors,
            image_width=int(d.get("image_width", 0)),
            image_height=int(d.get("image_height", 0)),
        )
    raise ValueError(f"Unknown landmarks kind: {kind!r}")


def diagnostics_to_dict(diag: AlignmentDiagnostics) -> dict:
    return {
        "aligned_landmarks_detected": diag.aligned_landmarks_detected,
        "aligned_landmarks_error": diag.aligned_landmarks_error,
        "fallback_landmarks_generated": diag.fallback_landmarks_generated,
        "reference_frame_id": diag.reference_frame_id,
        "pass_errors": list(diag.pass_errors),
    }


def diagnostics_from_dict(d: dict) -> AlignmentDiagnostics:
    return AlignmentDiagnostics(
        aligned_landmarks_detected=bool(d.get("aligned_landmarks_detected", True)),
        aligned_landmarks_error=d.get("aligned_landmarks_error"),
        fallback_landmarks_generated=bool(d.get("fallback_landmarks_generated", False)),
        reference_frame_id=d.get("reference_frame_id"),
        pass_errors=tuple(d.get("pass_errors", ())),
    )


def result_to_dict(result: StabilizationResult) -> dict:
    """Summary of a run. The rendered image is not included."""
    if isinstance(result.matrix, HomographyMatrix):
        matrix = {"type": "homography", **homography_to_dict(result.matrix)}
    else:
        matrix = {"type": "affine", **affine_to_dict(result.matrix)}
    return {
        "success": result.success,
        "final_score": result.final_score,
        "initial_score": result.initial_score,
        "confidence": result.confidence,
        "mode": result.mode.value,
        "passes_executed": result.passes_executed,
        "early_stop_reason": result.early_stop_reason.value if result.early_stop_reason else None,
        "total_duration_ms": result.total_duration_ms,
        "final_eye_delta_y": result.final_eye_delta_y,
        "final_eye_distance": result.final_eye_distance,
        "goal_eye_distance": result.goal_eye_distance,
        "matrix": matrix,
        "passes": [
            {"pass_number": p.pass_number, "stage": p.stage.value,
             "score_before": p.score_before, "score_after": p.score_after,
             "converged": p.converged, "duration_ms": p.duration_ms}
            for p in result.passes
        ],
        "diagnostics": diagnostics_to_dict(result.diagnostics),
    }


def dumps(record: dict) -> str:
    # Strict JSON: non-finite floats raise ValueError.
    return json.dumps(record, indent=2, allow_nan=False, default=_json_default)


def _json_default(value):
    if isinstance(value, np.generic):
        return value.item()
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def loads(text: str) -> dict:
    return json.loads(text)
