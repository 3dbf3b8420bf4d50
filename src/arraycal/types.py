"""
Core data structures for arraycal.

Frozen dataclasses for detections, fiducial geometry and calibration
snapshots. Registration records hold non-owning handles into the
estimation graph; the graph owns the values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping

import numpy as np

from .errors import MalformedCalibration, MalformedDetection
from .geometry import PoseSE3


# ============================================================================
# Detections
# ============================================================================


@dataclass(frozen=True, slots=True, eq=False)
class FiducialSighting:
    """
    One fiducial seen in one image.

    points[i] is the image of the fiducial's i-th local point.
    """

    fiducial: str
    points: np.ndarray  # (n, 2) normalized or pixel coordinates


@dataclass(frozen=True, slots=True, eq=False)
class Detection:
    """
    All fiducials one camera saw at one instant.
    """

    source: str
    timestamp: float
    sightings: tuple[FiducialSighting, ...] = ()

    @property
    def fiducials(self) -> list[str]:
        return [s.fiducial for s in self.sightings]


def validate_detection(detection: Detection) -> Detection:
    """
    Check a detection before it enters the buffer.

    Returns a copy with float64 (n, 2) point arrays.

    Raises:
        MalformedDetection: empty or mis-shaped point arrays, non-finite
            values, or a missing source name
    """
    if not detection.source:
        raise MalformedDetection("Detection has no source name")
    if not np.isfinite(detection.timestamp):
        raise MalformedDetection(f"Non-finite timestamp from {detection.source}")

    sightings = []
    for sighting in detection.sightings:
        points = np.asarray(sighting.points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 2:
            raise MalformedDetection(
                f"Fiducial {sighting.fiducial} points must be (n, 2), got {points.shape}"
            )
        if points.shape[0] == 0:
            raise MalformedDetection(f"Fiducial {sighting.fiducial} has no points")
        if not np.all(np.isfinite(points)):
            raise MalformedDetection(f"Fiducial {sighting.fiducial} has non-finite points")
        sightings.append(FiducialSighting(sighting.fiducial, points))

    return Detection(detection.source, float(detection.timestamp), tuple(sightings))


# ============================================================================
# Geometry priors
# ============================================================================


@dataclass(frozen=True, slots=True, eq=False)
class FiducialInfo:
    """
    Point geometry of one marker in its local frame.
    """

    points: np.ndarray  # (n, 3)

    def __post_init__(self):
        points = np.asarray(self.points, dtype=np.float64)
        if points.size == 0:
            points = points.reshape(0, 3)
        if points.ndim != 2 or points.shape[1] != 3:
            raise MalformedCalibration(f"Fiducial points must be (n, 3), got {points.shape}")
        object.__setattr__(self, "points", points)

    @classmethod
    def from_axes(cls, points_x, points_y, points_z) -> FiducialInfo:
        """
        Build from separate x/y/z sequences; all three must match in length.
        """
        xs, ys, zs = (np.asarray(a, dtype=np.float64).reshape(-1) for a in (points_x, points_y, points_z))
        if not (len(xs) == len(ys) == len(zs)):
            raise MalformedCalibration(
                f"Point fields must have the same length, got {len(xs)}, {len(ys)}, {len(zs)}"
            )
        return cls(np.column_stack([xs, ys, zs]) if len(xs) else np.zeros((0, 3)))

    @property
    def n_points(self) -> int:
        return self.points.shape[0]


@dataclass(frozen=True, slots=True, eq=False)
class FiducialPrior:
    """
    What the calibration store knows about a fiducial: its geometry and,
    optionally, a reference pose.
    """

    info: FiducialInfo
    pose: PoseSE3 | None = None


@dataclass(frozen=True, slots=True, eq=False)
class CameraModel:
    """
    Pinhole intrinsics for cameras that report pixel coordinates.
    """

    matrix: np.ndarray  # 3x3
    distortion: np.ndarray = field(default_factory=lambda: np.zeros(5))


# ============================================================================
# Registrations
# ============================================================================


@dataclass(frozen=True, slots=True)
class NodeHandle:
    """
    Non-owning reference to an unknown (or constant) in the estimation graph.
    """

    index: int
    kind: Literal["pose", "points"]


@dataclass(frozen=True, slots=True, eq=False)
class CameraRegistration:
    name: str
    extrinsics: NodeHandle
    intrinsics: CameraModel | None = None  # constant; None = normalized image
    source: str = ""


@dataclass(frozen=True, slots=True, eq=False)
class FiducialRegistration:
    name: str
    extrinsics: NodeHandle
    intrinsics: NodeHandle
    info: FiducialInfo
    prior: int | None = None  # factor index of the soft prior, if any
    anchored: bool = False


@dataclass(slots=True, eq=False)
class TargetRegistration:
    """
    A fiducial on a moving object: one pose unknown per observed timestamp.
    """

    name: str
    intrinsics: NodeHandle
    info: FiducialInfo
    poses: dict[float, NodeHandle] = field(default_factory=dict)
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(6))

    @property
    def last_timestamp(self) -> float | None:
        return max(self.poses) if self.poses else None


# ============================================================================
# Snapshots
# ============================================================================


@dataclass(frozen=True, slots=True, eq=False)
class CameraCalibration:
    name: str
    extrinsics: PoseSE3
    intrinsics: CameraModel | None = None


@dataclass(frozen=True, slots=True, eq=False)
class FiducialCalibration:
    name: str
    extrinsics: PoseSE3
    intrinsics: FiducialInfo
    anchored: bool = False


@dataclass(frozen=True, slots=True, eq=False)
class TargetCalibration:
    name: str
    intrinsics: FiducialInfo
    trajectory: tuple[tuple[float, PoseSE3], ...]

    @property
    def latest(self) -> tuple[float, PoseSE3] | None:
        return self.trajectory[-1] if self.trajectory else None


@dataclass(frozen=True, slots=True, eq=False)
class CalibrationSnapshot:
    """
    Consistent copy of every registered estimate, taken under the
    optimization lock.
    """

    reference_frame: str
    cameras: Mapping[str, CameraCalibration]
    fiducials: Mapping[str, FiducialCalibration]
    targets: Mapping[str, TargetCalibration] = field(default_factory=dict)
    observations: int = 0
