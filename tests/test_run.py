import logging
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import cv2
import numpy as np
import pytest

from aruco_server.output import OutputSink
from aruco_server.run import _localize_all, main
from aruco_server.server import TaskState

from conftest import BlockingDetector, observation, square_corners


def _write_marker_image(path: Path, marker_id: int = 62):
    dictionary = cv2.aruco.getPredefinedDictionary(cv2.aruco.DICT_6X6_250)
    marker = cv2.aruco.generateImageMarker(dictionary, marker_id, 200)
    canvas = np.full((400, 400), 255, dtype=np.uint8)
    canvas[100:300, 100:300] = marker
    cv2.imwrite(str(path), canvas)


def _write_calib(path: Path):
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    fs.write("Camera_Matrix", np.eye(3))
    fs.write("Distortion_Coefficients", np.zeros((5, 1)))
    fs.release()


def _results(out_dir: Path):
    csv_files = list(out_dir.glob("*/results.csv"))
    assert len(csv_files) == 1
    header, *rows = csv_files[0].read_text().strip().splitlines()
    keys = header.split(",")
    return [dict(zip(keys, row.split(","))) for row in rows]


@pytest.mark.skipif(not hasattr(cv2.aruco, "generateImageMarker"), reason="OpenCV < 4.7")
def test_cli_localizes_images_and_writes_results(tmp_path: Path):
    calib = tmp_path / "intrinsics.yml"
    _write_calib(calib)
    robot = tmp_path / "robot.png"
    _write_marker_image(robot, 62)
    other = tmp_path / "other.png"
    _write_marker_image(other, 11)
    out_dir = tmp_path / "sessions"

    code = main([
        str(robot), str(other),
        "--server-name", "cli-ok",
        "--calib", str(calib),
        "--out", str(out_dir),
        "--scale", "0.01",
        "--origin-x", "1.0",
        "--origin-y", "1.0",
    ])

    assert code == 0
    rows = _results(out_dir)
    assert [r["state"] for r in rows] == ["succeeded", "not_found"]
    assert float(rows[0]["x"]) == pytest.approx(0.995, abs=0.02)
    assert float(rows[0]["y"]) == pytest.approx(0.995, abs=0.02)
    assert list(out_dir.glob("*/annotated/task000001_pose.jpg"))
    assert list(out_dir.glob("*/logs/session.log"))


def test_cli_reports_unreadable_image_as_failure(tmp_path: Path):
    calib = tmp_path / "intrinsics.yml"
    _write_calib(calib)
    out_dir = tmp_path / "sessions"

    code = main([
        str(tmp_path / "missing.png"),
        "--server-name", "cli-missing",
        "--calib", str(calib),
        "--out", str(out_dir),
        "--no-save-annotated",
    ])

    assert code == 1
    assert [r["state"] for r in _results(out_dir)] == ["failed"]


def test_cli_exits_when_calibration_is_missing(tmp_path: Path):
    code = main([
        str(tmp_path / "any.png"),
        "--server-name", "cli-nocalib",
        "--calib", str(tmp_path / "missing.yml"),
        "--out", str(tmp_path / "sessions"),
    ])
    assert code == 2


def test_cli_publish_flag_mirrors_results(tmp_path: Path):
    calib = tmp_path / "intrinsics.yml"
    _write_calib(calib)
    publisher = MagicMock()

    with patch("aruco_server.run.MqttPublisher", return_value=publisher) as mqtt_cls:
        code = main([
            str(tmp_path / "missing.png"),
            "--server-name", "cli-publish",
            "--calib", str(calib),
            "--out", str(tmp_path / "sessions"),
            "--no-save-annotated",
            "--publish",
            "--broker-ip", "10.0.0.5",
        ])

    assert code == 1
    mqtt_cls.assert_called_once_with("10.0.0.5", "localization/pose", 1883)
    header, row = [c.args[0] for c in publisher.publish.call_args_list]
    assert header.startswith("recorded_at,task_id")
    assert ",failed," in row
    publisher.close.assert_called_once()


def test_cli_without_publish_flag_builds_no_publisher(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("PUBLISH", raising=False)
    calib = tmp_path / "intrinsics.yml"
    _write_calib(calib)

    with patch("aruco_server.run.MqttPublisher") as mqtt_cls:
        main([
            str(tmp_path / "missing.png"),
            "--server-name", "cli-nopublish",
            "--calib", str(calib),
            "--out", str(tmp_path / "sessions"),
            "--no-save-annotated",
        ])

    mqtt_cls.assert_not_called()


class _RecordingOutput(OutputSink):
    def __init__(self):
        self.statuses = []

    def open(self, session_dir):
        return None

    def write_result(self, ts_unix, status, image_path=None):
        self.statuses.append(status)

    def close(self):
        return None


def test_stop_request_cancels_in_flight_image_and_ends_loop(make_server, frame):
    detector = BlockingDetector([observation(62, square_corners(0, 0, 1))])
    server = make_server(detector)
    stop_event = threading.Event()
    out = _RecordingOutput()

    def _stop_once_detecting():
        detector.entered.wait(timeout=5)
        stop_event.set()

    threading.Thread(target=_stop_once_detecting, daemon=True).start()
    try:
        failures = _localize_all(
            server, [frame, frame], [out], logging.getLogger("test-run"), stop_event
        )
    finally:
        detector.release.set()

    assert failures == 0
    assert [s.state for s in out.statuses] == [TaskState.CANCELLED]
    assert server.running
    assert not server.busy
