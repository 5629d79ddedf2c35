from marker_pipeline.services.calib import CalibrationError


class LocalizationError(Exception):
    """Base class for errors raised by the detection task server."""


class InvalidInput(LocalizationError):
    """The submitted image is empty or could not be decoded."""


class DetectorError(LocalizationError):
    """The marker detection routine raised."""


class ServerBusy(LocalizationError):
    """A task is already in flight and the server rejects new submissions."""


class ServerNotRunning(LocalizationError):
    pass


class UnknownTask(LocalizationError, KeyError):
    """The handle does not refer to a live task (never issued or already delivered)."""


__all__ = [
    "CalibrationError",
    "DetectorError",
    "InvalidInput",
    "LocalizationError",
    "ServerBusy",
    "ServerNotRunning",
    "UnknownTask",
]
