"""
Pytest configuration and shared fixtures.

Synthetic scenes: fiducials with known local geometry placed at known
world poses, viewed by cameras at known world poses. Image points are
produced by projecting through the camera optical frame, so a correct
calibration recovers the scene exactly.
"""

import logging
import tempfile
from pathlib import Path

import numpy as np
import pytest

from arraycal.calibration.pose_solver import to_optical
from arraycal.config import CalibratorConfig, FiducialCatalog
from arraycal.geometry import PoseSE3
from arraycal.types import Detection, FiducialInfo, FiducialSighting


def project(camera_pose, object_pose, points, matrix=None):
    """Image of object-local points seen by a camera (world poses)."""
    relative = to_optical(camera_pose.inverse() * object_pose)
    p = relative.transform_points(points)
    uv = p[:, :2] / p[:, 2:3]
    if matrix is not None:
        uv = uv @ np.asarray(matrix)[:2, :2].T + np.asarray(matrix)[:2, 2]
    return uv


def yaw(angle, translation):
    """Pose rotated about world z."""
    c, s = np.cos(angle), np.sin(angle)
    return PoseSE3(np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]]), translation)


class SyntheticScene:
    def __init__(self, cameras, fiducials, targets=None, matrix=None):
        self.cameras = cameras  # name -> PoseSE3
        self.fiducials = fiducials  # name -> (PoseSE3, FiducialInfo)
        self.targets = targets or {}  # name -> (callable t -> PoseSE3, FiducialInfo)
        self.matrix = matrix

    def pose_of(self, name, timestamp):
        if name in self.targets:
            trajectory, info = self.targets[name]
            return trajectory(timestamp), info
        return self.fiducials[name]

    def detection(self, camera, timestamp, names):
        sightings = []
        for name in names:
            pose, info = self.pose_of(name, timestamp)
            uv = project(self.cameras[camera], pose, info.points, self.matrix)
            sightings.append(FiducialSighting(name, uv))
        return Detection(camera, float(timestamp), tuple(sightings))

    def catalog(self, with_poses=()):
        catalog = FiducialCatalog()
        for name, (pose, info) in self.fiducials.items():
            catalog.add(name, info, pose if name in with_poses else None)
        for name, (_, info) in self.targets.items():
            catalog.add(name, info)
        return catalog


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging between tests."""
    yield
    logger = logging.getLogger("arraycal")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def sample_intrinsics_matrix():
    """Typical camera intrinsics matrix."""
    return np.array([
        [800.0, 0.0, 640.0],
        [0.0, 800.0, 360.0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


@pytest.fixture
def sample_distortion():
    """Typical distortion coefficients (k1, k2, p1, p2, k3)."""
    return np.array([0.1, -0.25, 0.001, -0.001, 0.1], dtype=np.float64)


@pytest.fixture
def square_info():
    """Planar 4-corner marker facing local +x, 20cm on a side."""
    s = 0.1
    return FiducialInfo(np.array([
        [0.0, -s, -s],
        [0.0, s, -s],
        [0.0, s, s],
        [0.0, -s, s],
    ]))


@pytest.fixture
def block_info():
    """Non-coplanar 6-point marker."""
    return FiducialInfo(np.array([
        [0.0, -0.1, -0.1],
        [0.0, 0.1, -0.1],
        [0.0, 0.1, 0.1],
        [0.0, -0.1, 0.1],
        [-0.05, 0.0, 0.0],
        [0.03, 0.05, -0.02],
    ]))


@pytest.fixture
def scene(block_info):
    """Two cameras looking along +x at three fiducials near the origin."""
    cameras = {
        "C0": PoseSE3(np.eye(3), [-2.0, 0.0, 0.0]),
        "C1": yaw(0.2, [-2.0, -0.6, 0.1]),
    }
    fiducials = {
        "F0": (PoseSE3.identity(), block_info),
        "F1": (yaw(-0.1, [0.1, 0.5, 0.2]), block_info),
        "F2": (yaw(0.15, [0.0, -0.4, -0.3]), block_info),
    }
    targets = {
        "T": (lambda t: PoseSE3(np.eye(3), [-0.5, 0.1 * t, 0.4]), block_info),
    }
    return SyntheticScene(cameras, fiducials, targets)


@pytest.fixture
def config():
    """Calibrator config processing every detection immediately."""
    return CalibratorConfig(max_lag=0.0, batch_period=1, target_names=("T",))
