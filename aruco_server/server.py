from __future__ import annotations

import itertools
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np

from marker_pipeline.mp_types import (
    CameraParameters,
    DetectionResult,
    MarkerObservation,
    Pose2D,
)
from marker_pipeline.services.calib import load_camera_parameters
from marker_pipeline.strategies.decode_image import ImageDecode
from marker_pipeline.strategies.detect_aruco import ArucoDetect

from .config import ServerConfig
from .errors import (
    CalibrationError,
    DetectorError,
    InvalidInput,
    LocalizationError,
    ServerBusy,
    ServerNotRunning,
    UnknownTask,
)
from .logging_utils import setup_logger, task_logger
from .pose import compute_pose, select_observation


class TaskState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (TaskState.PENDING, TaskState.ACTIVE)


@dataclass(frozen=True)
class TaskHandle:
    task_id: int


@dataclass(frozen=True)
class TaskStatus:
    task_id: int
    state: TaskState
    marker_id: int
    pose: Optional[Pose2D] = None
    error: Optional[LocalizationError] = None

    @property
    def terminal(self) -> bool:
        return self.state.is_terminal


@dataclass
class DetectionTask:
    task_id: int
    marker_id: int
    source: Any  # request image, dropped once the task stops needing it
    state: TaskState = TaskState.PENDING
    result: Optional[Pose2D] = None
    error: Optional[LocalizationError] = None

    def status(self) -> TaskStatus:
        pose = self.result if self.state is TaskState.SUCCEEDED else None
        return TaskStatus(self.task_id, self.state, self.marker_id, pose, self.error)


@dataclass
class TaskCompletion:
    """What completion hooks receive once a task has a detection outcome."""
    status: TaskStatus
    image: Any
    detections: DetectionResult
    observation: Optional[MarkerObservation]


CompletionHook = Callable[[TaskCompletion], None]


@dataclass
class _Outcome:
    state: TaskState
    pose: Optional[Pose2D] = None
    error: Optional[LocalizationError] = None
    image: Any = None
    detections: Optional[DetectionResult] = None
    observation: Optional[MarkerObservation] = None
class DetectionTaskServer:
    """
    Single-task ArUco localization server.

    One task is in flight at a time. Detection runs on a dedicated worker
    thread so ``submit``, ``cancel`` and ``poll`` return immediately. Every
    task-state transition happens under ``self._cond``; the lock is never
    held while decoding or detecting.
    """

    # finished tasks nobody polled are kept for this many terminal outcomes
    max_undelivered = 32

    def __init__(
        self,
        config: ServerConfig,
        detector=None,
        decoder: Optional[ImageDecode] = None,
        camera_params: Optional[CameraParameters] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config.validate()
        self.reference = config.reference_frame()
        self.logger = logger or setup_logger(config.server_name, config.log_level)
        self.detector = detector
        self.decoder = decoder or ImageDecode()
        self.camera_params = camera_params

        self._cond = threading.Condition()
        self._ids = itertools.count(1)
        self._tasks: dict[int, DetectionTask] = {}
        self._undelivered: OrderedDict[int, None] = OrderedDict()
        self._active: Optional[DetectionTask] = None
        self._queued: Optional[DetectionTask] = None
        self._hooks: list[CompletionHook] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._running = False

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> "DetectionTaskServer":
        if self._running:
            return self
        if self.camera_params is None:
            if not self.config.calibration_path:
                raise CalibrationError("No camera calibration file configured")
            self.camera_params = load_camera_parameters(self.config.calibration_path)
            self.logger.info("camera parameters loaded from %s", self.camera_params.source)
        if self.detector is None:
            self.detector = ArucoDetect(self.config.aruco_dict, self.config.corner_refinement)

        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"aruco-{self.config.server_name}"
        )
        with self._cond:
            self._running = True
        self.logger.info(
            "server started: marker_id=%d dict=%s policy=%s reference=%s",
            self.config.robot_marker_id,
            self.config.aruco_dict,
            self.config.busy_policy,
            self.reference,
        )
        return self

    def stop(self, wait: bool = True) -> None:
        with self._cond:
            if not self._running:
                return
            self._running = False
            for task in (self._queued, self._active):
                if task is not None and not task.state.is_terminal:
                    task.state = TaskState.CANCELLED
                    task.source = None
                    self._retire(task)
            self._queued = None
            self._active = None
            executor, self._executor = self._executor, None
            self._cond.notify_all()
        if executor is not None:
            executor.shutdown(wait=wait)
        self.logger.info("server stopped")

    def __enter__(self) -> "DetectionTaskServer":
        return self.start()

    def __exit__(self, *_exc) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def busy(self) -> bool:
        with self._cond:
            return self._active is not None

    def add_completion_hook(self, hook: CompletionHook) -> None:
        self._hooks.append(hook)

    # ------------------------------------------------------------------ requests

    def submit(self, image, target_marker_id: Optional[int] = None) -> TaskHandle:
        if target_marker_id is None:
            marker_id = self.config.robot_marker_id
        else:
            marker_id = int(target_marker_id)

        with self._cond:
            if not self._running:
                raise ServerNotRunning("server has not been started")
            if self._active is not None and self.config.busy_policy == "reject":
                raise ServerBusy(
                    f"task {self._active.task_id} is still {self._active.state.value}"
                )

            task = DetectionTask(next(self._ids), marker_id, image)
            self._tasks[task.task_id] = task
            if self._active is None:
                self._dispatch(task)
            else:
                replaced = self._queued
                if replaced is not None:
                    replaced.state = TaskState.CANCELLED
                    replaced.source = None
                    self._retire(replaced)
                    task_logger(self.logger, replaced.task_id).warning(
                        "Preempted: replaced by task %d", task.task_id
                    )
                self._queued = task
                task_logger(self.logger, task.task_id).info(
                    "queued behind task %d", self._active.task_id
                )
            self._cond.notify_all()

        task_logger(self.logger, task.task_id).info("submitted marker_id=%d", marker_id)
        return TaskHandle(task.task_id)

    def cancel(self, handle: TaskHandle) -> bool:
        """Preempt a pending or active task. Returns False if it had already finished."""
        with self._cond:
            task = self._lookup(handle)
            if task.state.is_terminal:
                return False
            previous = task.state
            task.state = TaskState.CANCELLED
            task.source = None
            self._retire(task)
            if self._queued is task:
                self._queued = None
            self._release_slot(task)
            self._cond.notify_all()

        task_logger(self.logger, task.task_id).warning("Preempted (was %s)", previous.value)
        return True

    def poll(self, handle: TaskHandle) -> TaskStatus:
        """
        Current status of a task. A terminal status is handed out once, after
        which the task record is dropped and the handle becomes unknown.
        """
        with self._cond:
            task = self._lookup(handle)
            return self._deliver(task)

    def wait(self, handle: TaskHandle, timeout: Optional[float] = None) -> TaskStatus:
        """Block until the task is terminal or ``timeout`` elapses, then poll it."""
        with self._cond:
            task = self._lookup(handle)
            self._cond.wait_for(lambda: task.state.is_terminal, timeout)
            return self._deliver(task)

    # ------------------------------------------------------------------ internals

    def _lookup(self, handle) -> DetectionTask:
        task_id = getattr(handle, "task_id", handle)
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTask(task_id)
        return task

    def _deliver(self, task: DetectionTask) -> TaskStatus:
        status = task.status()
        if status.terminal:
            self._tasks.pop(task.task_id, None)
            self._undelivered.pop(task.task_id, None)
        return status

    def _retire(self, task: DetectionTask) -> None:
        # caller holds self._cond; the oldest unpolled outcomes are dropped past the cap
        self._undelivered[task.task_id] = None
        while len(self._undelivered) > self.max_undelivered:
            old_id, _ = self._undelivered.popitem(last=False)
            self._tasks.pop(old_id, None)

    def _dispatch(self, task: DetectionTask) -> None:
        # caller holds self._cond
        self._active = task
        self._executor.submit(self._execute, task)

    def _release_slot(self, task: DetectionTask) -> None:
        # caller holds self._cond
        if self._active is not task:
            return
        self._active = None
        if self._queued is not None and self._running:
            nxt, self._queued = self._queued, None
            self._dispatch(nxt)

    def _execute(self, task: DetectionTask) -> None:
        log = task_logger(self.logger, task.task_id)
        with self._cond:
            if task.state.is_terminal:
                self._release_slot(task)
                return
            task.state = TaskState.ACTIVE
            source = task.source
            self._cond.notify_all()

        try:
            outcome = self._run_detection(task.marker_id, source)
        except Exception as exc:
            outcome = _Outcome(TaskState.FAILED, error=DetectorError(f"{type(exc).__name__}: {exc}"))

        completion = None
        with self._cond:
            try:
                if task.state.is_terminal:
                    log.info(
                        "discarding %s result, task already %s",
                        outcome.state.value, task.state.value,
                    )
                else:
                    task.state = outcome.state
                    task.result = outcome.pose
                    task.error = outcome.error
                    self._retire(task)
                    completion = TaskCompletion(
                        task.status(),
                        outcome.image,
                        outcome.detections or DetectionResult(),
                        outcome.observation,
                    )
            finally:
                task.source = None
                self._release_slot(task)
                self._cond.notify_all()

        if completion is None:
            return
        self._log_outcome(log, completion.status)
        self._notify_hooks(log, completion)

    def _run_detection(self, marker_id: int, source) -> _Outcome:
        try:
            decoded = self.decoder.apply(source)
        except Exception as exc:
            return _Outcome(TaskState.FAILED, error=InvalidInput(f"could not decode image: {exc}"))
        if not decoded.usable:
            return _Outcome(TaskState.FAILED, error=InvalidInput(decoded.error or "image is empty"))

        image = decoded.image
        try:
            detections = self.detector.detect(image)
            # observations that are not 4-corner quads are invalid and dropped
            quads = [m for m in detections.markers if np.asarray(m.corners).size == 8]
            obs = select_observation(quads, marker_id)
            pose = None
            if obs is not None:
                pose = compute_pose(obs.corners, self.reference.pixel_to_metric_scale, self.reference)
        except Exception as exc:
            return _Outcome(
                TaskState.FAILED,
                error=DetectorError(f"{type(exc).__name__}: {exc}"),
                image=image,
            )

        if obs is None:
            return _Outcome(TaskState.NOT_FOUND, image=image, detections=detections)
        return _Outcome(
            TaskState.SUCCEEDED, pose=pose, image=image, detections=detections, observation=obs
        )

    def _log_outcome(self, log: logging.LoggerAdapter, status: TaskStatus) -> None:
        if status.state is TaskState.SUCCEEDED:
            log.info(
                "Succeeded x=%.4f y=%.4f theta=%.4f",
                status.pose.x, status.pose.y, status.pose.theta,
            )
        elif status.state is TaskState.NOT_FOUND:
            log.info("marker %d not in frame", status.marker_id)
        else:
            log.warning("Failed: %s", status.error)

    def _notify_hooks(self, log: logging.LoggerAdapter, completion: TaskCompletion) -> None:
        for hook in list(self._hooks):
            try:
                hook(completion)
            except Exception as e:
                log.warning("completion hook %r failed: %s", hook, e)
