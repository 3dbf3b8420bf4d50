"""
Exception classes for arraycal.

Geometric solve failures are not exceptions: the solver returns None and
the caller drops the detection.
"""


class ArraycalError(Exception):
    """Base exception for arraycal"""


class InsufficientCorrespondences(ArraycalError, ValueError):
    """Fewer point correspondences than the single-frame solver needs"""

    def __init__(self, count: int, required: int):
        self.count = count
        self.required = required
        super().__init__(f"Need at least {required} correspondences, got {count}")


class MalformedDetection(ArraycalError, ValueError):
    """Detection rejected at ingestion (empty or mis-shaped point arrays)"""


class MalformedCalibration(ArraycalError, ValueError):
    """Calibration data with missing or mismatched point arrays"""


class CalibrationWriteError(ArraycalError, RuntimeError):
    """Calibration file could not be written; the previous file is untouched"""


class DuplicateRegistration(ArraycalError, KeyError):
    """An identifier was registered twice in the same registry"""
