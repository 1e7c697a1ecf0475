"""Points, boxes and 2D transforms shared by the alignment engine."""

from __future__ import annotations

from dataclasses import dataclass
import math

import numpy as np

import config


@dataclass(frozen=True)
class Point2D:
    """Immutable 2D point. Normalized (0..1) unless a caller says pixels."""
    x: float
    y: float

    def distance_to(self, other: Point2D) -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def midpoint(self, other: Point2D) -> Point2D:
        return Point2D((self.x + other.x) / 2.0, (self.y + other.y) / 2.0)

    def scaled(self, sx: float, sy: float | None = None) -> Point2D:
        """Scale both axes, e.g. normalized -> pixel coordinates."""
        return Point2D(self.x * sx, self.y * (sx if sy is None else sy))

    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y)

    def as_tuple(self) -> tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class BoundingBox:
    left: float
    top: float
    right: float
    bottom: float

    def __post_init__(self):
        if self.right < self.left or self.bottom < self.top:
            raise ValueError(
                f"Invalid bounding box ({self.left}, {self.top}, "
                f"{self.right}, {self.bottom})"
            )

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def center(self) -> Point2D:
        return Point2D((self.left + self.right) / 2.0, (self.top + self.bottom) / 2.0)

    @classmethod
    def from_points(cls, points: list[Point2D]) -> BoundingBox:
        if not points:
            raise ValueError("Cannot build a bounding box from no points")
        xs = [p.x for p in points]
        ys = [p.y for p in points]
        return cls(min(xs), min(ys), max(xs), max(ys))


@dataclass(frozen=True)
class AffineMatrix:
    """2x3 affine transform laid out as

        [scale_x  skew_x   translate_x]
        [skew_y   scale_y  translate_y]

    which is also the row layout cv2.warpAffine expects.
    """
    scale_x: float = 1.0
    skew_x: float = 0.0
    translate_x: float = 0.0
    skew_y: float = 0.0
    scale_y: float = 1.0
    translate_y: float = 0.0

    @classmethod
    def translation(cls, tx: float, ty: float) -> AffineMatrix:
        return cls(translate_x=tx, translate_y=ty)

    @classmethod
    def rotation(cls, angle: float, center: Point2D | None = None) -> AffineMatrix:
        """Rotation by `angle` radians, optionally about `center`."""
        c, s = math.cos(angle), math.sin(angle)
        rot = cls(c, -s, 0.0, s, c, 0.0)
        if center is None:
            return rot
        return cls._about(rot, center)

    @classmethod
    def scaling(cls, factor: float, center: Point2D | None = None) -> AffineMatrix:
        """Uniform scale, optionally about `center`."""
        sc = cls(scale_x=factor, scale_y=factor)
        if center is None:
            return sc
        return cls._about(sc, center)

    @classmethod
    def _about(cls, linear: AffineMatrix, center: Point2D) -> AffineMatrix:
        return (cls.translation(center.x, center.y)
                .compose(linear)
                .compose(cls.translation(-center.x, -center.y)))

    def compose(self, other: AffineMatrix) -> AffineMatrix:
        """Return self · other, i.e. `other` is applied first."""
        return AffineMatrix.from_array(self._full() @ other._full())

    def transform_point(self, point: Point2D) -> Point2D:
        return Point2D(
            self.scale_x * point.x + self.skew_x * point.y + self.translate_x,
            self.skew_y * point.x + self.scale_y * point.y + self.translate_y,
        )

    @property
    def determinant(self) -> float:
        return self.scale_x * self.scale_y - self.skew_x * self.skew_y

    @property
    def rotation_radians(self) -> float:
        return math.atan2(self.skew_y, self.scale_x)

    @property
    def uniform_scale(self) -> float:
        return math.hypot(self.scale_x, self.skew_y)

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.to_array())))

    def is_invertible(self) -> bool:
        return self.is_finite() and abs(self.determinant) > config.HOMOGRAPHY_EPSILON

    def to_array(self) -> np.ndarray:
        return np.array([
            [self.scale_x, self.skew_x, self.translate_x],
            [self.skew_y, self.scale_y, self.translate_y],
        ], dtype=np.float64)

    def _full(self) -> np.ndarray:
        return np.vstack([self.to_array(), [0.0, 0.0, 1.0]])

    @classmethod
    def from_array(cls, m: np.ndarray) -> AffineMatrix:
        m = np.asarray(m, dtype=np.float64)
        if m.shape not in ((2, 3), (3, 3)):
            raise ValueError(f"Affine matrix must be 2x3 or 3x3, got {m.shape}")
        return cls(float(m[0, 0]), float(m[0, 1]), float(m[0, 2]),
                   float(m[1, 0]), float(m[1, 1]), float(m[1, 2]))


AffineMatrix.IDENTITY = AffineMatrix()


@dataclass(frozen=True)
class HomographyMatrix:
    """3x3 projective transform, row-major h11..h33."""
    h11: float = 1.0
    h12: float = 0.0
    h13: float = 0.0
    h21: float = 0.0
    h22: float = 1.0
    h23: float = 0.0
    h31: float = 0.0
    h32: float = 0.0
    h33: float = 1.0

    def transform_point(self, x: float, y: float) -> tuple[float, float]:
        """Project (x, y). Points mapped to infinity come back as (inf, inf)."""
        w = self.h31 * x + self.h32 * y + self.h33
        if abs(w) < config.HOMOGRAPHY_EPSILON:
            return (math.inf, math.inf)
        return (
            (self.h11 * x + self.h12 * y + self.h13) / w,
            (self.h21 * x + self.h22 * y + self.h23) / w,
        )

    def transform_points(self, points: list[Point2D]) -> list[Point2D]:
        return [Point2D(*self.transform_point(p.x, p.y)) for p in points]

    def determinant(self) -> float:
        return float(np.linalg.det(self.to_array()))

    def is_valid(self) -> bool:
        """Finite and non-singular. Invalid matrices must never be applied."""
        m = self.to_array()
        if not np.all(np.isfinite(m)):
            return False
        return abs(self.determinant()) > config.HOMOGRAPHY_EPSILON

    def is_near_identity(self, tolerance: float = config.IDENTITY_TOLERANCE) -> bool:
        return bool(np.all(np.abs(self.to_array() - np.eye(3)) <= tolerance))

    def approximate_rotation_degrees(self) -> float:
        return math.degrees(math.atan2(self.h21, self.h11))

    def approximate_scale(self) -> float:
        return math.hypot(self.h11, self.h21)

    def blend_with_identity(self, t: float) -> HomographyMatrix:
        """Linear interpolation toward identity; t=1 gives identity."""
        return HomographyMatrix.from_array((1.0 - t) * self.to_array() + t * np.eye(3))

    def compose(self, other: HomographyMatrix) -> HomographyMatrix:
        return HomographyMatrix.from_array(self.to_array() @ other.to_array())

    def to_array(self) -> np.ndarray:
        return np.array([
            [self.h11, self.h12, self.h13],
            [self.h21, self.h22, self.h23],
            [self.h31, self.h32, self.h33],
        ], dtype=np.float64)

    @classmethod
    def from_array(cls, values) -> HomographyMatrix:
        """Build from a 3x3 array or a flat sequence of nine values."""
        flat = np.asarray(values, dtype=np.float64).reshape(-1)
        if flat.size != 9:
            raise ValueError(f"Homography needs 9 values, got {flat.size}")
        return cls(*(float(v) for v in flat))

    @classmethod
    def translation(cls, tx: float, ty: float) -> HomographyMatrix:
        return cls(h13=tx, h23=ty)

    @classmethod
    def scaling(cls, sx: float, sy: float | None = None) -> HomographyMatrix:
        return cls(h11=sx, h22=sx if sy is None else sy)

    @classmethod
    def rotation(cls, degrees: float) -> HomographyMatrix:
        r = math.radians(degrees)
        c, s = math.cos(r), math.sin(r)
        return cls(h11=c, h12=-s, h21=s, h22=c)


HomographyMatrix.IDENTITY = HomographyMatrix()
