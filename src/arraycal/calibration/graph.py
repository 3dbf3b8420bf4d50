"""
Estimation graph: unknowns (nodes) linked by whitened residual factors.

GraphBackend is the capability the calibrator depends on. LeastSquaresGraph
implements it as a batch nonlinear least-squares solve with
scipy.optimize.least_squares and a sparse Jacobian pattern, one solve per
optimize() call. Not thread-safe; the caller serializes access.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Protocol, Sequence, Union

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..geometry import PoseSE3
from ..types import CameraModel, NodeHandle
from .pose_solver import camera_arrays, to_optical

logger = logging.getLogger(__name__)

NodeValue = Union[PoseSE3, np.ndarray]

POSE_PARAM_COUNT = 6


def sqrt_information(covariance) -> np.ndarray:
    """
    Whitening matrix W with W.T @ W = inv(covariance).

    Accepts a full matrix or the diagonal as a 1-D sequence.
    """
    cov = np.asarray(covariance, dtype=np.float64)
    if cov.ndim == 1:
        return np.diag(1.0 / np.sqrt(cov))
    lower = np.linalg.cholesky(np.linalg.inv(cov))
    return lower.T


# ============================================================================
# Factors
# ============================================================================


class Factor(ABC):
    """A residual block over one or more graph nodes."""

    nodes: tuple[NodeHandle, ...]
    dimension: int

    @abstractmethod
    def residual(self, values: Sequence[NodeValue]) -> np.ndarray:
        """Whitened residual given the current value of every node."""


class ObservationFactor(Factor):
    """
    Image measurements of a fiducial's points by a camera.

    Residual is the reprojection error divided by the per-coordinate
    standard deviation.
    """

    def __init__(
        self,
        camera: NodeHandle,
        fiducial: NodeHandle,
        intrinsics: NodeHandle,
        image_points: np.ndarray,
        variance: float,
        camera_model: CameraModel | None = None,
    ):
        self.camera = camera
        self.fiducial = fiducial
        self.intrinsics = intrinsics
        self.nodes = (camera, fiducial, intrinsics)
        self.image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
        self.dimension = self.image_points.size
        self.camera_model = camera_model
        self._sigma = float(np.sqrt(variance))
        self._matrix, self._distortion = camera_arrays(camera_model)

    def residual(self, values):
        camera_pose = values[self.camera.index]
        fiducial_pose = values[self.fiducial.index]
        points = np.ascontiguousarray(values[self.intrinsics.index], dtype=np.float64)

        relative = to_optical(camera_pose.inverse() * fiducial_pose)
        rvec, tvec = relative.to_rvec_tvec()
        projected, _ = cv2.projectPoints(points, rvec, tvec, self._matrix, self._distortion)
        return ((projected[:, 0, :] - self.image_points) / self._sigma).ravel()


class PosePrior(Factor):
    """Gaussian prior on a pose, in the tangent space of the prior mean."""

    def __init__(self, node: NodeHandle, mean: PoseSE3, covariance):
        self.nodes = (node,)
        self.mean = mean
        self.dimension = POSE_PARAM_COUNT
        self._whiten = sqrt_information(covariance)
        self._mean_inv = mean.inverse()

    def residual(self, values):
        error = (self._mean_inv * values[self.nodes[0].index]).log()
        return self._whiten @ error


class PointsPrior(Factor):
    """Isotropic prior holding point geometry near its loaded values."""

    def __init__(self, node: NodeHandle, mean: np.ndarray, variance: float):
        self.nodes = (node,)
        self.mean = np.asarray(mean, dtype=np.float64).reshape(-1, 3)
        self.dimension = self.mean.size
        self._sigma = float(np.sqrt(variance))

    def residual(self, values):
        return ((values[self.nodes[0].index] - self.mean) / self._sigma).ravel()


class BetweenFactor(Factor):
    """
    Relative pose constraint between consecutive poses of one body.

    With no expected motion this is a random walk.
    """

    def __init__(
        self,
        first: NodeHandle,
        second: NodeHandle,
        covariance,
        expected: PoseSE3 | None = None,
    ):
        self.nodes = (first, second)
        self.dimension = POSE_PARAM_COUNT
        self._whiten = sqrt_information(covariance)
        self._expected_inv = (expected or PoseSE3.identity()).inverse()

    def residual(self, values):
        first = values[self.nodes[0].index]
        second = values[self.nodes[1].index]
        error = (self._expected_inv * (first.inverse() * second)).log()
        return self._whiten @ error


# ============================================================================
# Backend interface
# ============================================================================


@dataclass(frozen=True)
class OptimizationSummary:
    initial_cost: float
    final_cost: float
    evaluations: int
    success: bool
    n_params: int
    n_residuals: int
    message: str = ""


class GraphBackend(Protocol):
    """Operations the calibrator needs from an estimation graph."""

    def add_node(self, value: NodeValue, fixed: bool = False) -> NodeHandle: ...

    def add_factor(self, factor: Factor) -> int: ...

    def add_prior(self, node: NodeHandle, value: NodeValue, covariance=None) -> int | None: ...

    def optimize(self) -> OptimizationSummary: ...

    def get_estimate(self, node: NodeHandle) -> NodeValue: ...


# ============================================================================
# Least-squares backend
# ============================================================================


class LeastSquaresGraph:
    """
    Batch pose graph solved with scipy's trust-region least squares.

    Free poses are parameterized as [rodrigues, translation]; free point
    sets as their flattened coordinates. Fixed nodes are constants.
    """

    def __init__(self, max_nfev: int = 100, ftol: float = 1e-8):
        self.max_nfev = max_nfev
        self.ftol = ftol
        self._values: list[NodeValue] = []
        self._fixed: list[bool] = []
        self._handles: list[NodeHandle] = []
        self._factors: list[Factor] = []

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_node(self, value: NodeValue, fixed: bool = False) -> NodeHandle:
        if isinstance(value, PoseSE3):
            handle = NodeHandle(len(self._values), "pose")
            self._values.append(value.copy())
        else:
            handle = NodeHandle(len(self._values), "points")
            self._values.append(np.array(value, dtype=np.float64).reshape(-1, 3))
        self._fixed.append(bool(fixed))
        self._handles.append(handle)
        return handle

    def add_factor(self, factor: Factor) -> int:
        for node in factor.nodes:
            self._check(node)
        self._factors.append(factor)
        return len(self._factors) - 1

    def add_prior(self, node: NodeHandle, value: NodeValue, covariance=None) -> int | None:
        """
        Anchor a node near a value.

        covariance=None is a hard prior: the node is set to value and held
        constant. Returns the factor index for soft priors.
        """
        self._check(node)
        if covariance is None:
            if node.kind == "pose":
                self._values[node.index] = value.copy()
            else:
                self._values[node.index] = np.array(value, dtype=np.float64).reshape(-1, 3)
            self._fixed[node.index] = True
            return None
        if node.kind == "pose":
            return self.add_factor(PosePrior(node, value, covariance))
        return self.add_factor(PointsPrior(node, value, float(covariance)))

    def get_estimate(self, node: NodeHandle) -> NodeValue:
        self._check(node)
        value = self._values[node.index]
        return value.copy()

    def is_fixed(self, node: NodeHandle) -> bool:
        self._check(node)
        return self._fixed[node.index]

    @property
    def n_nodes(self) -> int:
        return len(self._values)

    @property
    def n_factors(self) -> int:
        return len(self._factors)

    def _check(self, node: NodeHandle) -> None:
        if node.index < 0 or node.index >= len(self._values) or self._handles[node.index] != node:
            raise KeyError(f"Unknown graph node {node}")

    # ------------------------------------------------------------------
    # Parameter packing
    # ------------------------------------------------------------------

    def _layout(self) -> tuple[dict[int, slice], int]:
        offsets = {}
        n = 0
        for idx, value in enumerate(self._values):
            if self._fixed[idx]:
                continue
            size = POSE_PARAM_COUNT if isinstance(value, PoseSE3) else value.size
            offsets[idx] = slice(n, n + size)
            n += size
        return offsets, n

    def _pack(self, offsets: dict[int, slice], n_params: int) -> np.ndarray:
        x = np.zeros(n_params, dtype=np.float64)
        for idx, sl in offsets.items():
            value = self._values[idx]
            x[sl] = value.to_vector() if isinstance(value, PoseSE3) else value.ravel()
        return x

    def _unpack(self, x: np.ndarray, offsets: dict[int, slice]) -> list[NodeValue]:
        values = list(self._values)
        for idx, sl in offsets.items():
            if isinstance(self._values[idx], PoseSE3):
                values[idx] = PoseSE3.from_vector(x[sl])
            else:
                values[idx] = x[sl].reshape(-1, 3)
        return values

    def _sparsity(self, offsets: dict[int, slice], n_params: int, n_residuals: int) -> lil_matrix:
        """
        Build sparse Jacobian pattern for least_squares.
        """
        A = lil_matrix((n_residuals, n_params), dtype=int)
        row = 0
        for factor in self._factors:
            rows = slice(row, row + factor.dimension)
            for node in factor.nodes:
                cols = offsets.get(node.index)
                if cols is not None:
                    A[rows, cols] = 1
            row += factor.dimension
        return A

    def _residuals(self, x: np.ndarray, offsets: dict[int, slice]) -> np.ndarray:
        values = self._unpack(x, offsets)
        if not self._factors:
            return np.zeros(0)
        return np.concatenate([factor.residual(values) for factor in self._factors])

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def residuals(self) -> np.ndarray:
        """Whitened residual vector at the current estimates."""
        offsets, n_params = self._layout()
        return self._residuals(self._pack(offsets, n_params), offsets)

    def optimize(self) -> OptimizationSummary:
        """
        Run one batch solve to completion and store the new estimates.
        """
        offsets, n_params = self._layout()
        n_residuals = sum(f.dimension for f in self._factors)
        x0 = self._pack(offsets, n_params)
        initial = self._residuals(x0, offsets)
        initial_cost = 0.5 * float(initial @ initial)

        if n_params == 0 or n_residuals == 0:
            return OptimizationSummary(
                initial_cost=initial_cost,
                final_cost=initial_cost,
                evaluations=0,
                success=True,
                n_params=n_params,
                n_residuals=n_residuals,
                message="nothing to optimize",
            )

        sparsity = self._sparsity(offsets, n_params, n_residuals)

        result = least_squares(
            self._residuals,
            x0,
            jac_sparsity=sparsity,
            verbose=0,
            x_scale="jac",
            loss="linear",
            ftol=self.ftol,
            method="trf",
            max_nfev=self.max_nfev,
            args=(offsets,),
        )

        if np.all(np.isfinite(result.x)):
            self._values = self._unpack(result.x, offsets)
        else:
            logger.warning("Optimization produced non-finite parameters; keeping previous estimates")

        return OptimizationSummary(
            initial_cost=initial_cost,
            final_cost=float(result.cost),
            evaluations=int(result.nfev),
            success=bool(result.success),
            n_params=n_params,
            n_residuals=n_residuals,
            message=str(result.message),
        )
