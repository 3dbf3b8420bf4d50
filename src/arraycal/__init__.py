# arraycal - Incremental camera/fiducial array calibration

__version__ = "0.1.0"

# Geometry
from arraycal.geometry import (
    PoseSE3,
    relative_velocity,
    integrate_velocity,
)

# Core types
from arraycal.types import (
    Detection,
    FiducialSighting,
    FiducialInfo,
    FiducialPrior,
    CameraModel,
    CalibrationSnapshot,
    CameraCalibration,
    FiducialCalibration,
    TargetCalibration,
)

# Errors
from arraycal.errors import (
    ArraycalError,
    InsufficientCorrespondences,
    MalformedDetection,
    MalformedCalibration,
    CalibrationWriteError,
    DuplicateRegistration,
)

# Configuration and calibration store
from arraycal.config import (
    CalibratorConfig,
    load_calibrator_config,
    save_calibrator_config,
    read_fiducial_calibration,
    write_fiducial_calibration,
    read_array_calibration,
    write_array_calibration,
    FiducialCatalog,
)

# Calibration
from arraycal.calibration.pose_solver import solve_pose, OPTICAL_TO_BODY
from arraycal.calibrator import ArrayCalibrator
from arraycal.driver import CalibrationDriver

# Detection logs
from arraycal.replay import (
    read_detection_log,
    write_detection_log,
    replay,
)

__all__ = [
    # Geometry
    "PoseSE3",
    "relative_velocity",
    "integrate_velocity",
    # Core types
    "Detection",
    "FiducialSighting",
    "FiducialInfo",
    "FiducialPrior",
    "CameraModel",
    "CalibrationSnapshot",
    "CameraCalibration",
    "FiducialCalibration",
    "TargetCalibration",
    # Errors
    "ArraycalError",
    "InsufficientCorrespondences",
    "MalformedDetection",
    "MalformedCalibration",
    "CalibrationWriteError",
    "DuplicateRegistration",
    # Configuration
    "CalibratorConfig",
    "load_calibrator_config",
    "save_calibrator_config",
    "read_fiducial_calibration",
    "write_fiducial_calibration",
    "read_array_calibration",
    "write_array_calibration",
    "FiducialCatalog",
    # Calibration
    "solve_pose",
    "OPTICAL_TO_BODY",
    "ArrayCalibrator",
    "CalibrationDriver",
    # Detection logs
    "read_detection_log",
    "write_detection_log",
    "replay",
]
