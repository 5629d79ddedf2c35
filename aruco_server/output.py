from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from marker_pipeline.services.csv_writer import CsvWriter

from .server import TaskStatus


class OutputSink(ABC):
    @abstractmethod
    def open(self, session_dir: Path) -> None: ...

    @abstractmethod
    def write_result(
        self,
        ts_unix: float,
        status: TaskStatus,
        image_path: Optional[str] = None,
    ) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class CsvOutput(OutputSink):
    def __init__(self, filename: str = "results.csv"):
        self.filename = filename
        self._writer: Optional[CsvWriter] = None

    def open(self, session_dir: Path) -> None:
        path = Path(session_dir) / self.filename
        self._writer = CsvWriter(str(path))
        self._writer.open()

    def write_result(
        self,
        ts_unix: float,
        status: TaskStatus,
        image_path: Optional[str] = None,
    ) -> None:
        if self._writer is None:
            return
        self._writer.append(
            ts_unix,
            status.task_id,
            status.marker_id,
            status.state.value,
            status.pose,
            image_path,
            None if status.error is None else str(status.error),
        )

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._writer = None


class PublisherOutput(OutputSink):
    """Forward each result as a CSV line to a publisher (e.g. MqttPublisher)."""

    def __init__(self, publisher):
        self.publisher = publisher
        self._published_header = False

    def open(self, session_dir: Path) -> None:
        return None

    def write_result(
        self,
        ts_unix: float,
        status: TaskStatus,
        image_path: Optional[str] = None,
    ) -> None:
        if not self._published_header:
            self.publisher.publish(",".join(CsvWriter.HEADER))
            self._published_header = True
        line = CsvWriter.to_csv_line(
            ts_unix,
            status.task_id,
            status.marker_id,
            status.state.value,
            status.pose,
            image_path,
            None if status.error is None else str(status.error),
        )
        self.publisher.publish(line)

    def close(self) -> None:
        self.publisher.close()


class NullOutput(OutputSink):
    def open(self, session_dir: Path) -> None:
        return None

    def write_result(
        self,
        ts_unix: float,
        status: TaskStatus,
        image_path: Optional[str] = None,
    ) -> None:
        return None

    def close(self) -> None:
        return None
