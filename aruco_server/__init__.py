"""ArUco marker 2D localization service."""

from .config import ServerConfig
from .pose import compute_pose
from .server import DetectionTaskServer, TaskHandle, TaskState, TaskStatus

__all__ = [
    "DetectionTaskServer",
    "ServerConfig",
    "TaskHandle",
    "TaskState",
    "TaskStatus",
    "compute_pose",
]
