from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Optional

from marker_pipeline.mp_types import ReferenceFrame

BUSY_POLICIES = ("reject", "queue")


@dataclass
class ServerConfig:
    server_name: str = "localization"
    robot_marker_id: int = 62
    aruco_dict: str = "6x6_250"
    corner_refinement: str = "subpix"  # "none", "subpix", "contour"
    calibration_path: Optional[str] = "config/intrinsics.yml"
    # Reference frame: the robot's nominal start pose
    pixel_to_metric_scale: float = 0.006  # metres per pixel
    origin_x: float = 3.0
    origin_y: float = 2.0
    heading_offset: float = 0.0  # radians
    busy_policy: str = "reject"
    session_root: str = "data/sessions"
    save_annotated: bool = True
    show_annotated: bool = False
    log_level: str = "INFO"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "ServerConfig":
        for key, value in kwargs.items():
            if value is not None and hasattr(self, key):
                setattr(self, key, value)
        return self

    def validate(self) -> "ServerConfig":
        if self.busy_policy not in BUSY_POLICIES:
            raise ValueError(f"busy_policy must be one of {BUSY_POLICIES}, got {self.busy_policy!r}")
        self.reference_frame()
        return self

    def reference_frame(self) -> ReferenceFrame:
        return ReferenceFrame(
            origin_x=self.origin_x,
            origin_y=self.origin_y,
            heading_offset=self.heading_offset,
            pixel_to_metric_scale=self.pixel_to_metric_scale,
        )


def _load_yaml(path: Path) -> dict[str, Any]:
    import yaml

    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML config root must be a mapping")
    return data


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def load_config(path: str | Path) -> ServerConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = _load_yaml(p)
    else:
        with p.open("r", encoding="utf-8") as fp:
            raw = json.load(fp)

    if not isinstance(raw, dict):
        raise ValueError("Config root must be a JSON/YAML object")

    cfg = ServerConfig()
    cfg.server_name = str(raw.get("server_name", cfg.server_name))
    cfg.robot_marker_id = int(raw.get("robot_marker_id", cfg.robot_marker_id))
    cfg.aruco_dict = str(raw.get("aruco_dict", cfg.aruco_dict))
    cfg.corner_refinement = str(raw.get("corner_refinement", cfg.corner_refinement))
    cfg.calibration_path = _opt_str(raw.get("calibration_path", cfg.calibration_path))
    cfg.busy_policy = str(raw.get("busy_policy", cfg.busy_policy)).lower()
    cfg.session_root = str(raw.get("session_root", cfg.session_root))
    cfg.save_annotated = bool(raw.get("save_annotated", cfg.save_annotated))
    cfg.show_annotated = bool(raw.get("show_annotated", cfg.show_annotated))
    cfg.log_level = str(raw.get("log_level", cfg.log_level)).upper()

    # Reference frame may be given flat or nested under "reference"
    ref_raw = raw.get("reference", raw)
    if not isinstance(ref_raw, dict):
        raise ValueError("reference must be a mapping")
    cfg.pixel_to_metric_scale = float(ref_raw.get("pixel_to_metric_scale", cfg.pixel_to_metric_scale))
    cfg.origin_x = float(ref_raw.get("origin_x", cfg.origin_x))
    cfg.origin_y = float(ref_raw.get("origin_y", cfg.origin_y))
    cfg.heading_offset = float(ref_raw.get("heading_offset", cfg.heading_offset))

    return cfg.validate()
