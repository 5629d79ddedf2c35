"""Debug rendering of a finished task: marker outline, reference-pose arrow, label."""

from __future__ import annotations

import logging
import math
from typing import Optional

import cv2
import numpy as np

from marker_pipeline.mp_types import ReferenceFrame
from marker_pipeline.services.storage import SessionStorage

from .logging_utils import task_logger
from .server import TaskCompletion

ARROW_LENGTH_PX = 60


def draw_annotations(image, completion: TaskCompletion, reference: ReferenceFrame):
    draw = image.copy()

    obs = completion.observation
    if obs is not None:
        corners = [np.asarray(obs.corners, dtype=np.float32).reshape(1, 4, 2)]
        ids = np.array([[obs.marker_id]], dtype=np.int32)
        cv2.aruco.drawDetectedMarkers(draw, corners, ids)

    # Reference pose, drawn back in pixel space
    scale = reference.pixel_to_metric_scale
    p1 = (int(reference.origin_x / scale), int(reference.origin_y / scale))
    p2 = (
        int(reference.origin_x / scale - ARROW_LENGTH_PX * math.sin(reference.heading_offset)),
        int(reference.origin_y / scale - ARROW_LENGTH_PX * math.cos(reference.heading_offset)),
    )
    cv2.arrowedLine(draw, p1, p2, (0, 255, 0), 6, cv2.LINE_8, 0, 0.4)
    cv2.putText(draw, "Robot", p1, cv2.FONT_HERSHEY_DUPLEX, 1, (255, 0, 0), 2)

    status = completion.status
    txt = f"task {status.task_id} {status.state.value}"
    if status.pose is not None:
        txt += f" x={status.pose.x:.3f} y={status.pose.y:.3f} th={status.pose.theta:.3f}"
    cv2.putText(draw, txt, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 255), 2, cv2.LINE_AA)
    return draw


class AnnotatedFrameHook:
    """Completion hook that persists and/or displays the annotated frame."""

    def __init__(
        self,
        reference: ReferenceFrame,
        storage: Optional[SessionStorage] = None,
        show: bool = False,
        window_name: str = "Output",
        logger: Optional[logging.Logger] = None,
    ):
        self.reference = reference
        self.storage = storage
        self.show = show
        self.window_name = window_name
        self.logger = logger or logging.getLogger(__name__)

    def __call__(self, completion: TaskCompletion) -> Optional[str]:
        if completion.image is None:
            return None
        draw = draw_annotations(completion.image, completion, self.reference)

        path = None
        if self.storage is not None:
            path = self.storage.save_annotated(completion.status.task_id, draw)
            task_logger(self.logger, completion.status.task_id).debug("annotated frame saved=%s", path)
        if self.show:
            cv2.imshow(self.window_name, draw)
            cv2.waitKey(1)
        return path
