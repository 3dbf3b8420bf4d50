"""
Tests for arraycal.driver.
"""

import time

import pytest

from arraycal.calibrator import ArrayCalibrator
from arraycal.config import CalibratorConfig, read_array_calibration
from arraycal.driver import CalibrationDriver


@pytest.fixture
def calibrator(scene, temp_dir):
    config = CalibratorConfig(
        max_lag=0.5,
        batch_period=1,
        update_rate=50.0,
        output_path=str(temp_dir / "calibration.toml"),
    )
    return ArrayCalibrator(config, catalog=scene.catalog())


class TestCalibrationDriver:
    def test_step_uses_clock(self, calibrator, scene):
        now = [0.0]
        driver = CalibrationDriver(calibrator, clock=lambda: now[0])
        calibrator.buffer_detection(scene.detection("C0", 0.0, ["F0"]))
        calibrator.buffer_detection(scene.detection("C0", 1.0, ["F0"]))

        assert driver.step() == 0
        now[0] = 0.6
        assert driver.step() == 1
        now[0] = 2.0
        assert driver.step() == 1
        assert driver.cycles == 3
        assert calibrator.is_registered("C0")

    def test_write_now(self, calibrator, scene, temp_dir):
        driver = CalibrationDriver(calibrator, clock=lambda: 10.0)
        calibrator.buffer_detection(scene.detection("C0", 0.0, ["F0"]))
        driver.step()
        path = driver.write_now()
        assert path == temp_dir / "calibration.toml"
        assert set(read_array_calibration(path).fiducials) == {"F0"}

    def test_thread_processes_and_saves_on_stop(self, calibrator, scene, temp_dir):
        calibrator.buffer_detection(scene.detection("C0", 0.0, ["F0"]))
        calibrator.buffer_detection(scene.detection("C0", 1.0, ["F0"]))
        output = temp_dir / "final.toml"

        with CalibrationDriver(calibrator, output_path=output, clock=lambda: 100.0) as driver:
            deadline = time.monotonic() + 5.0
            while driver.cycles == 0 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert driver.running

        assert not driver.running
        assert driver.error is None
        loaded = read_array_calibration(output)
        assert set(loaded.cameras) == {"C0"}

    def test_keeps_cycling_after_error(self, calibrator, scene):
        calls = []
        process_until = calibrator.process_until

        def flaky(now):
            calls.append(now)
            if len(calls) == 1:
                raise ValueError("Residuals are not finite in the initial point")
            return process_until(now)

        calibrator.process_until = flaky
        calibrator.buffer_detection(scene.detection("C0", 0.0, ["F0"]))
        calibrator.buffer_detection(scene.detection("C0", 1.0, ["F0"]))

        driver = CalibrationDriver(calibrator, clock=lambda: 100.0)
        driver.start()
        try:
            deadline = time.monotonic() + 5.0
            while driver.cycles < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert driver.running
        finally:
            driver.stop(save=False)

        assert isinstance(driver.error, ValueError)
        assert driver.failures == 1
        assert driver.cycles >= 2
        assert calibrator.is_registered("F0")

    def test_stop_without_save(self, calibrator, temp_dir):
        driver = CalibrationDriver(calibrator, clock=lambda: 0.0)
        driver.start()
        assert driver.stop(save=False) is None
        assert not (temp_dir / "calibration.toml").exists()

    def test_start_twice(self, calibrator):
        driver = CalibrationDriver(calibrator, clock=lambda: 0.0)
        driver.start()
        try:
            with pytest.raises(RuntimeError):
                driver.start()
        finally:
            driver.stop(save=False)
