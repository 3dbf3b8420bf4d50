"""
Tests for arraycal.calibration.pose_solver.
"""

import numpy as np
import pytest

from arraycal.calibration.pose_solver import reprojection_error, solve_pose
from arraycal.errors import InsufficientCorrespondences
from arraycal.geometry import PoseSE3
from arraycal.types import CameraModel

from conftest import project, yaw


@pytest.fixture
def relative_pose():
    """Marker 1.8m ahead of the camera body, slightly off-axis."""
    return yaw(0.15, [1.8, 0.2, -0.1])


class TestSolvePose:
    def test_recovers_pose_normalized(self, block_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, block_info.points)
        pose = solve_pose(block_info.points, image)
        assert pose is not None
        assert pose.allclose(relative_pose, atol=1e-6)

    def test_recovers_pose_planar_square(self, square_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, square_info.points)
        pose = solve_pose(square_info.points, image)
        assert pose is not None
        assert pose.allclose(relative_pose, atol=1e-5)

    def test_recovers_pose_with_intrinsics(self, block_info, relative_pose, sample_intrinsics_matrix):
        image = project(PoseSE3.identity(), relative_pose, block_info.points, sample_intrinsics_matrix)
        camera = CameraModel(sample_intrinsics_matrix)
        pose = solve_pose(block_info.points, image, camera=camera)
        assert pose is not None
        assert pose.allclose(relative_pose, atol=1e-5)

    def test_uses_guess(self, block_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, block_info.points)
        guess = relative_pose * PoseSE3.exp(np.array([0.02, -0.01, 0.03, 0.05, 0.0, -0.02]))
        pose = solve_pose(block_info.points, image, guess=guess)
        assert pose is not None
        assert pose.allclose(relative_pose, atol=1e-5)

    def test_guess_behind_camera_ignored(self, block_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, block_info.points)
        behind = PoseSE3(np.eye(3), [-3.0, 0.0, 0.0])
        pose = solve_pose(block_info.points, image, guess=behind)
        assert pose is not None
        assert pose.allclose(relative_pose, atol=1e-6)

    def test_insufficient_correspondences(self, block_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, block_info.points)
        with pytest.raises(InsufficientCorrespondences) as exc_info:
            solve_pose(block_info.points[:3], image[:3])
        assert exc_info.value.count == 3
        assert exc_info.value.required == 4

    def test_min_points_raises_threshold(self, block_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, block_info.points)
        with pytest.raises(InsufficientCorrespondences):
            solve_pose(block_info.points[:5], image[:5], min_points=6)

    def test_count_mismatch(self, block_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, block_info.points)
        with pytest.raises(ValueError):
            solve_pose(block_info.points, image[:5])

    def test_collinear_points_fail(self):
        points = np.array([[0.0, y, 0.0] for y in (-0.2, -0.1, 0.0, 0.1, 0.2)])
        pose = PoseSE3(np.eye(3), [2.0, 0.0, 0.0])
        image = project(PoseSE3.identity(), pose, points)
        assert solve_pose(points, image) is None

    def test_max_error_rejects(self, block_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, block_info.points)
        image[0] += 0.05
        assert solve_pose(block_info.points, image, max_error=1e-6) is None
        assert solve_pose(block_info.points, image) is not None


class TestReprojectionError:
    def test_zero_at_truth(self, block_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, block_info.points)
        assert reprojection_error(block_info.points, image, relative_pose) == pytest.approx(0.0, abs=1e-10)

    def test_positive_when_wrong(self, block_info, relative_pose):
        image = project(PoseSE3.identity(), relative_pose, block_info.points)
        wrong = relative_pose * PoseSE3(np.eye(3), [0.0, 0.1, 0.0])
        assert reprojection_error(block_info.points, image, wrong) > 0.01
