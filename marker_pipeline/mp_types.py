from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Optional

import numpy as np


@dataclass
class MarkerObservation:
    marker_id: int
    corners: Any  # (4,2) ndarray, TL, TR, BR, BL

    @classmethod
    def from_detector(cls, marker_id, corners) -> Optional["MarkerObservation"]:
        """Normalize an OpenCV (1,4,2) corner array; None if not a quad."""
        pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
        if pts.shape[0] != 4:
            return None
        return cls(int(marker_id), pts)


@dataclass
class DetectionResult:
    markers: list[MarkerObservation] = field(default_factory=list)
    rejected: list = field(default_factory=list)


@dataclass(frozen=True)
class ReferenceFrame:
    origin_x: float = 0.0
    origin_y: float = 0.0
    heading_offset: float = 0.0  # radians
    pixel_to_metric_scale: float = 1.0

    def __post_init__(self):
        if not self.pixel_to_metric_scale > 0:
            raise ValueError(
                f"pixel_to_metric_scale must be positive, got {self.pixel_to_metric_scale}"
            )


@dataclass(frozen=True)
class Pose2D:
    x: float
    y: float
    theta: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class ImageInput:
    image: Any  # numpy array or None
    ok: bool = True
    error: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.ok and self.image is not None and getattr(self.image, "size", 0) > 0


@dataclass
class CameraParameters:
    camera_matrix: Any
    dist_coeffs: Any
    image_size: Optional[tuple[int, int]] = None
    source: Optional[str] = None
