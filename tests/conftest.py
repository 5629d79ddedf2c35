import math
import threading

import numpy as np
import pytest

from aruco_server.config import ServerConfig
from aruco_server.server import DetectionTaskServer
from marker_pipeline.mp_types import CameraParameters, DetectionResult, MarkerObservation


def square_corners(cx, cy, half, theta=0.0):
    """TL, TR, BR, BL corners of a square centred at (cx, cy), rotated by theta."""
    c, s = math.cos(theta), math.sin(theta)
    offsets = [(-half, -half), (half, -half), (half, half), (-half, half)]
    return np.array([(cx + c * dx - s * dy, cy + s * dx + c * dy) for dx, dy in offsets])


def observation(marker_id, corners):
    return MarkerObservation(marker_id, np.asarray(corners, dtype=np.float64))


class FakeDetector:
    """Return a canned DetectionResult (or raise) and record every image seen."""

    def __init__(self, markers=None, error=None):
        self.markers = list(markers or [])
        self.error = error
        self.calls = []

    def detect(self, image):
        self.calls.append(image)
        if self.error is not None:
            raise self.error
        return DetectionResult(list(self.markers), [])


class BlockingDetector(FakeDetector):
    """FakeDetector that parks inside detect() until release is set."""

    def __init__(self, markers=None, error=None):
        super().__init__(markers, error)
        self.entered = threading.Event()
        self.release = threading.Event()

    def detect(self, image):
        self.entered.set()
        assert self.release.wait(timeout=5), "test never released the detector"
        return super().detect(image)


@pytest.fixture
def frame():
    return np.zeros((48, 64, 3), dtype=np.uint8)


@pytest.fixture
def camera_params():
    return CameraParameters(np.eye(3), np.zeros((5, 1)))


@pytest.fixture
def base_config():
    return ServerConfig(
        server_name="test",
        robot_marker_id=62,
        calibration_path=None,
        pixel_to_metric_scale=1.0,
        origin_x=0.0,
        origin_y=0.0,
        heading_offset=0.0,
        save_annotated=False,
    )


@pytest.fixture
def make_server(base_config, camera_params):
    servers = []

    def _make(detector, config=None):
        server = DetectionTaskServer(config or base_config, detector=detector, camera_params=camera_params)
        server.start()
        servers.append(server)
        return server

    yield _make

    for server in servers:
        server.stop()
