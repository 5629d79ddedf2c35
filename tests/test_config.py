import json
from pathlib import Path

import pytest

from aruco_server.config import ServerConfig, load_config


def test_load_config_json(tmp_path: Path):
    cfg_path = tmp_path / "server.json"
    cfg_path.write_text(
        json.dumps(
            {
                "server_name": "robotA",
                "robot_marker_id": 7,
                "aruco_dict": "4x4_50",
                "pixel_to_metric_scale": 0.01,
                "origin_x": 1.5,
                "busy_policy": "QUEUE",
            }
        ),
        encoding="utf-8",
    )

    cfg = load_config(cfg_path)
    assert cfg.server_name == "robotA"
    assert cfg.robot_marker_id == 7
    assert cfg.aruco_dict == "4x4_50"
    assert cfg.busy_policy == "queue"
    ref = cfg.reference_frame()
    assert ref.pixel_to_metric_scale == pytest.approx(0.01)
    assert ref.origin_x == pytest.approx(1.5)
    assert ref.origin_y == pytest.approx(2.0)

    cfg.apply_overrides(server_name="robotB", robot_marker_id=None)
    assert cfg.server_name == "robotB"
    assert cfg.robot_marker_id == 7


def test_load_config_yaml_with_nested_reference(tmp_path: Path):
    cfg_path = tmp_path / "server.yaml"
    cfg_path.write_text(
        "robot_marker_id: 62\n"
        "calibration_path: null\n"
        "reference:\n"
        "  origin_x: 3.0\n"
        "  origin_y: 2.0\n"
        "  heading_offset: 0.5\n"
        "  pixel_to_metric_scale: 0.006\n",
        encoding="utf-8",
    )

    cfg = load_config(cfg_path)
    assert cfg.calibration_path is None
    assert cfg.heading_offset == pytest.approx(0.5)
    assert cfg.pixel_to_metric_scale == pytest.approx(0.006)


def test_load_config_rejects_bad_values(tmp_path: Path):
    bad_scale = tmp_path / "scale.json"
    bad_scale.write_text(json.dumps({"pixel_to_metric_scale": -1}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(bad_scale)

    bad_policy = tmp_path / "policy.json"
    bad_policy.write_text(json.dumps({"busy_policy": "drop"}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(bad_policy)

    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")


def test_config_defaults():
    cfg = ServerConfig()
    assert cfg.robot_marker_id == 62
    assert cfg.aruco_dict == "6x6_250"
    assert cfg.corner_refinement == "subpix"
    assert cfg.busy_policy == "reject"
    assert (cfg.origin_x, cfg.origin_y, cfg.heading_offset) == (3.0, 2.0, 0.0)
    assert cfg.pixel_to_metric_scale == pytest.approx(0.006)
