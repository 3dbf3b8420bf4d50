"""
Periodic driver: the sole caller of ArrayCalibrator.process_until.

Runs on its own thread at config.update_rate. A slow batch optimization
simply delays the next cycle, which then drains a larger backlog.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable

from .calibrator import ArrayCalibrator

logger = logging.getLogger(__name__)


class CalibrationDriver:
    """
    Drive a calibrator from a background thread.

    Args:
        calibrator: Calibrator to drive
        output_path: Calibration file for write_now() and save on stop();
            defaults to the calibrator's configured output_path
        clock: Time source in the detections' time base
    """

    def __init__(
        self,
        calibrator: ArrayCalibrator,
        output_path: Path | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.calibrator = calibrator
        self.output_path = Path(output_path or calibrator.config.output_path)
        self.clock = clock
        self.period = 1.0 / calibrator.config.update_rate
        self.cycles = 0
        self.failures = 0
        self.error: Exception | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Driver already started")
        self._thread = threading.Thread(target=self._run, name="arraycal-driver", daemon=True)
        self._thread.start()

    def step(self) -> int:
        """Run one processing cycle at the current clock time."""
        drained = self.calibrator.process_until(self.clock())
        self.cycles += 1
        return drained

    def _run(self):
        while not self._stop.is_set():
            start = time.perf_counter()
            try:
                self.step()
            except Exception as e:
                # Next cycle drains whatever is still buffered
                self.error = e
                self.failures += 1
                logger.exception("Calibration cycle failed")

            # Pace to update rate
            elapsed = time.perf_counter() - start
            self._stop.wait(max(0.0, self.period - elapsed))

    def write_now(self, path: Path | None = None) -> Path:
        """Save the current calibration immediately."""
        return self.calibrator.save(path or self.output_path)

    def stop(self, save: bool = True, timeout: float | None = None) -> Path | None:
        """
        Stop the thread and, unless save is False, write the calibration.

        Returns:
            Path written, or None
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        if not save:
            return None
        return self.write_now()

    def __enter__(self) -> CalibrationDriver:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
