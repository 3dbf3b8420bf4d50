"""
Single-frame pose recovery from 2D-3D correspondences.

Pure functions - wraps cv2.solvePnP. Poses going in and out are in the
camera body convention (x forward, y left, z up); OpenCV works in the
optical convention (z forward, x right, y down). OPTICAL_TO_BODY is the
only place that difference is encoded.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from ..errors import InsufficientCorrespondences
from ..geometry import PoseSE3
from ..types import CameraModel

logger = logging.getLogger(__name__)

# Optical frame expressed in the body frame: body x = optical z,
# body y = -optical x, body z = -optical y.
OPTICAL_TO_BODY = PoseSE3.from_quaternion((0.5, -0.5, 0.5, -0.5))

MIN_CORRESPONDENCES = 4


def to_optical(pose: PoseSE3) -> PoseSE3:
    """Object pose relative to a camera body -> relative to its optical frame."""
    return OPTICAL_TO_BODY.inverse() * pose


def from_optical(pose: PoseSE3) -> PoseSE3:
    """Object pose relative to a camera optical frame -> relative to its body."""
    return OPTICAL_TO_BODY * pose


def camera_arrays(model: CameraModel | None) -> tuple[np.ndarray, np.ndarray]:
    """
    (matrix, distortion) for OpenCV; identity / no distortion when the
    camera reports normalized image coordinates.
    """
    if model is None:
        return np.eye(3, dtype=np.float64), np.zeros(5, dtype=np.float64)
    return (
        np.asarray(model.matrix, dtype=np.float64),
        np.asarray(model.distortion, dtype=np.float64).reshape(-1),
    )


def _rank(points: np.ndarray) -> int:
    centered = points - points.mean(axis=0)
    scale = max(float(np.abs(centered).max()), 1e-12)
    return int(np.linalg.matrix_rank(centered / scale, tol=1e-6))


def solve_pose(
    object_points: np.ndarray,
    image_points: np.ndarray,
    guess: PoseSE3 | None = None,
    camera: CameraModel | None = None,
    min_points: int = MIN_CORRESPONDENCES,
    max_error: float | None = None,
) -> PoseSE3 | None:
    """
    Recover the pose of an object relative to the camera body frame.

    Args:
        object_points: (n, 3) points in the object's local frame
        image_points: (n, 2) observations, same order as object_points
        guess: Initial object pose relative to the camera body. Used only
            when it puts the object in front of the camera.
        camera: Intrinsics, or None for normalized image coordinates
        min_points: Minimum number of correspondences
        max_error: Reject solutions whose RMS reprojection error exceeds
            this (same units as image_points)

    Returns:
        Object pose relative to the camera body, or None if the points are
        degenerate or the solve does not produce a valid pose.

    Raises:
        InsufficientCorrespondences: fewer than min_points correspondences
        ValueError: point counts don't match
    """
    object_points = np.asarray(object_points, dtype=np.float64).reshape(-1, 3)
    image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)

    if object_points.shape[0] != image_points.shape[0]:
        raise ValueError(
            f"Got {object_points.shape[0]} object points and {image_points.shape[0]} image points"
        )
    n = object_points.shape[0]
    if n < max(min_points, MIN_CORRESPONDENCES):
        raise InsufficientCorrespondences(n, max(min_points, MIN_CORRESPONDENCES))

    # Collinear geometry has no unique pose
    if _rank(object_points) < 2 or _rank(image_points) < 2:
        logger.debug("Degenerate correspondences, skipping solve")
        return None

    matrix, distortion = camera_arrays(camera)

    use_guess = False
    rvec = np.zeros((3, 1), dtype=np.float64)
    tvec = np.zeros((3, 1), dtype=np.float64)
    if guess is not None and guess.is_finite():
        guess_optical = to_optical(guess)
        if guess_optical.translation[2] > 0:
            r, t = guess_optical.to_rvec_tvec()
            rvec, tvec = r.reshape(3, 1), t.reshape(3, 1)
            use_guess = True

    try:
        if use_guess:
            ok, rvec, tvec = cv2.solvePnP(
                object_points,
                image_points,
                matrix,
                distortion,
                rvec,
                tvec,
                useExtrinsicGuess=True,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        else:
            ok, rvec, tvec = cv2.solvePnP(
                object_points,
                image_points,
                matrix,
                distortion,
                flags=cv2.SOLVEPNP_SQPNP,
            )
    except cv2.error as exc:
        logger.debug("solvePnP raised: %s", exc)
        return None

    if not ok or not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
        return None

    optical = PoseSE3.from_rvec_tvec(rvec, tvec)

    # Every point must end up in front of the camera
    depths = optical.transform_points(object_points)[:, 2]
    if np.any(depths <= 0):
        return None

    pose = from_optical(optical)
    if max_error is not None:
        error = reprojection_error(object_points, image_points, pose, camera)
        if error > max_error:
            logger.debug("Solve rejected, reprojection error %.4g > %.4g", error, max_error)
            return None

    return pose


def reprojection_error(
    object_points: np.ndarray,
    image_points: np.ndarray,
    pose: PoseSE3,
    camera: CameraModel | None = None,
) -> float:
    """
    RMS reprojection error of an object pose relative to the camera body.
    """
    matrix, distortion = camera_arrays(camera)
    rvec, tvec = to_optical(pose).to_rvec_tvec()
    projected, _ = cv2.projectPoints(
        np.asarray(object_points, dtype=np.float64).reshape(-1, 3),
        rvec,
        tvec,
        matrix,
        distortion,
    )
    error = projected[:, 0, :] - np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
    return float(np.sqrt(np.mean(np.sum(error**2, axis=1))))
