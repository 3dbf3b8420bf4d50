"""
Rigid-body poses (SE3) for arraycal.

PoseSE3 is a frozen dataclass: rotation (3x3 orthonormal) + translation (3,).
Composition re-orthonormalizes the rotation so repeated products don't drift.
The tangent-space ordering is [angular, linear] everywhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

_SMALL_ANGLE = 1e-8


def orthonormalize(rotation: np.ndarray) -> np.ndarray:
    """
    Project a near-rotation matrix back onto SO(3).
    """
    u, _, vt = np.linalg.svd(np.asarray(rotation, dtype=np.float64))
    r = u @ vt
    if np.linalg.det(r) < 0:
        u[:, -1] *= -1
        r = u @ vt
    return r


def skew(v: np.ndarray) -> np.ndarray:
    """3x3 cross-product matrix of a 3-vector."""
    x, y, z = np.asarray(v, dtype=np.float64).reshape(3)
    return np.array([
        [0.0, -z, y],
        [z, 0.0, -x],
        [-y, x, 0.0],
    ])


@dataclass(frozen=True, eq=False)
class PoseSE3:
    """
    Rigid transform p' = R p + t.

    Composition a * b applies b first, then a.
    """

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        rotation = np.array(self.rotation, dtype=np.float64).reshape(3, 3)
        translation = np.array(self.translation, dtype=np.float64).reshape(3)
        object.__setattr__(self, "rotation", rotation)
        object.__setattr__(self, "translation", translation)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def identity(cls) -> PoseSE3:
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> PoseSE3:
        m = np.asarray(matrix, dtype=np.float64)
        return cls(orthonormalize(m[:3, :3]), m[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> PoseSE3:
        rotation = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))[0]
        return cls(rotation, np.asarray(tvec, dtype=np.float64).reshape(3))

    @classmethod
    def from_quaternion(cls, quaternion, translation=(0.0, 0.0, 0.0)) -> PoseSE3:
        """
        Build from a (w, x, y, z) unit quaternion.
        """
        w, x, y, z = quaternion
        rotation = Rotation.from_quat([x, y, z, w]).as_matrix()
        return cls(rotation, translation)

    @classmethod
    def exp(cls, xi: np.ndarray) -> PoseSE3:
        """
        Exponential map from a 6-vector [angular, linear] to a pose.
        """
        xi = np.asarray(xi, dtype=np.float64).reshape(6)
        omega, v = xi[:3], xi[3:]
        theta = float(np.linalg.norm(omega))
        w = skew(omega)
        if theta < _SMALL_ANGLE:
            rotation = np.eye(3) + w
            jac = np.eye(3) + 0.5 * w + (w @ w) / 6.0
        else:
            rotation = cv2.Rodrigues(omega.reshape(3, 1))[0]
            a = (1.0 - np.cos(theta)) / theta**2
            b = (theta - np.sin(theta)) / theta**3
            jac = np.eye(3) + a * w + b * (w @ w)
        return cls(orthonormalize(rotation), jac @ v)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def matrix(self) -> np.ndarray:
        """4x4 homogeneous transform."""
        t = np.eye(4, dtype=np.float64)
        t[0:3, 0:3] = self.rotation
        t[0:3, 3] = self.translation
        return t

    def copy(self) -> PoseSE3:
        return PoseSE3(self.rotation, self.translation)

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Rodrigues vector (3,) and translation (3,)."""
        rvec = cv2.Rodrigues(self.rotation)[0][:, 0]
        return rvec, self.translation.copy()

    def to_vector(self) -> np.ndarray:
        """
        6-element [rodrigues, translation] vector, same layout the graph
        optimizer uses for free pose parameters.
        """
        rvec, tvec = self.to_rvec_tvec()
        return np.hstack([rvec, tvec])

    @classmethod
    def from_vector(cls, vector: np.ndarray) -> PoseSE3:
        vector = np.asarray(vector, dtype=np.float64)
        return cls.from_rvec_tvec(vector[0:3], vector[3:6])

    def quaternion(self) -> np.ndarray:
        """(w, x, y, z) with non-negative w."""
        x, y, z, w = Rotation.from_matrix(self.rotation).as_quat()
        q = np.array([w, x, y, z])
        return -q if q[0] < 0 else q

    # ------------------------------------------------------------------
    # Group operations
    # ------------------------------------------------------------------

    def compose(self, other: PoseSE3) -> PoseSE3:
        rotation = orthonormalize(self.rotation @ other.rotation)
        translation = self.rotation @ other.translation + self.translation
        return PoseSE3(rotation, translation)

    def __mul__(self, other: PoseSE3) -> PoseSE3:
        if not isinstance(other, PoseSE3):
            return NotImplemented
        return self.compose(other)

    def inverse(self) -> PoseSE3:
        r_t = self.rotation.T
        return PoseSE3(r_t, -r_t @ self.translation)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply to an (n, 3) array of points."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ self.rotation.T + self.translation

    def log(self) -> np.ndarray:
        """
        Logarithm map to a 6-vector [angular, linear].

        Divided by a time step this is the body velocity that carries the
        identity to this pose.
        """
        omega = cv2.Rodrigues(self.rotation)[0][:, 0]
        theta = float(np.linalg.norm(omega))
        w = skew(omega)
        if theta < _SMALL_ANGLE:
            jac_inv = np.eye(3) - 0.5 * w + (w @ w) / 12.0
        else:
            half = 0.5 * theta
            coeff = (1.0 - half * np.cos(half) / np.sin(half)) / theta**2
            jac_inv = np.eye(3) - 0.5 * w + coeff * (w @ w)
        return np.hstack([omega, jac_inv @ self.translation])

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.rotation)) and np.all(np.isfinite(self.translation)))

    def allclose(self, other: PoseSE3, atol: float = 1e-6) -> bool:
        return bool(
            np.allclose(self.rotation, other.rotation, atol=atol)
            and np.allclose(self.translation, other.translation, atol=atol)
        )


def relative_velocity(previous: PoseSE3, current: PoseSE3, dt: float) -> np.ndarray:
    """
    Constant body velocity [angular, linear] taking previous to current in dt.
    """
    if dt <= 0:
        return np.zeros(6)
    return (previous.inverse() * current).log() / dt


def integrate_velocity(pose: PoseSE3, velocity: np.ndarray, dt: float) -> PoseSE3:
    """Predict a pose dt ahead under a constant body velocity."""
    return pose * PoseSE3.exp(np.asarray(velocity, dtype=np.float64) * dt)
