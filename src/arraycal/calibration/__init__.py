"""
Calibration module for arraycal.

Single-frame pose solving and registration planning are pure functions.
The estimation graph holds state but no locks. Caller handles concurrency.
"""

from .pose_solver import (
    OPTICAL_TO_BODY,
    solve_pose,
    reprojection_error,
    to_optical,
    from_optical,
)

from .graph import (
    GraphBackend,
    LeastSquaresGraph,
    OptimizationSummary,
    ObservationFactor,
    PosePrior,
    PointsPrior,
    BetweenFactor,
)

from .registration import (
    DetectionPlan,
    RegistryView,
    plan_detection,
)

__all__ = [
    # Pose solver
    "OPTICAL_TO_BODY",
    "solve_pose",
    "reprojection_error",
    "to_optical",
    "from_optical",
    # Graph
    "GraphBackend",
    "LeastSquaresGraph",
    "OptimizationSummary",
    "ObservationFactor",
    "PosePrior",
    "PointsPrior",
    "BetweenFactor",
    # Registration
    "DetectionPlan",
    "RegistryView",
    "plan_detection",
]
