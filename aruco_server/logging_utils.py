import logging
from typing import Union

LOG_FORMAT = "%(asctime)s %(levelname)s [%(server)s] task=%(task)s %(message)s"


class ServerNameFilter(logging.Filter):
    """Stamp every record with the server name, and a task id placeholder when none is bound."""

    def __init__(self, server_name: str):
        super().__init__()
        self.server_name = server_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.server = self.server_name
        if not hasattr(record, "task"):
            record.task = "-"
        return True


def setup_logger(server_name: str, level: Union[int, str] = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(f"aruco_server.{server_name}")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(ServerNameFilter(server_name))
        logger.addHandler(handler)

    return logger


def add_file_handler(logger: logging.Logger, server_name: str, log_path: str) -> logging.Handler:
    handler = logging.FileHandler(log_path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(ServerNameFilter(server_name))
    logger.addHandler(handler)
    return handler


def task_logger(logger: logging.Logger, task_id: int) -> logging.LoggerAdapter:
    """Logger whose records carry ``task_id`` in the ``task`` field."""
    return logging.LoggerAdapter(logger, {"task": task_id})
