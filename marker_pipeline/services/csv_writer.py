import csv
import io


class CsvWriter:
    HEADER = [
        "recorded_at",
        "task_id", "marker_id", "state",
        "x", "y", "theta",
        "image_path", "error",
    ]

    def __init__(self, csv_path: str):
        self.csv_path = csv_path
        self._opened = False
        self._fh = None
        self._w = None

    def open(self):
        self._fh = open(self.csv_path, "w", newline="")
        self._w = csv.writer(self._fh)
        self._w.writerow(self.HEADER)
        self._opened = True

    @staticmethod
    def _row(ts_unix, task_id, marker_id, state, pose, img_path, error):
        if pose is None:
            xyt = [float("nan")] * 3
        else:
            xyt = [pose.x, pose.y, pose.theta]
        return [
            f"{ts_unix:.6f}",
            task_id, marker_id, state,
            *xyt,
            img_path or "", error or "",
        ]

    def append(self, ts_unix, task_id, marker_id, state, pose, img_path=None, error=None):
        self._w.writerow(self._row(ts_unix, task_id, marker_id, state, pose, img_path, error))
        self._fh.flush()

    @classmethod
    def to_csv_line(cls, ts_unix, task_id, marker_id, state, pose, img_path=None, error=None):
        buf = io.StringIO()
        w = csv.writer(buf)
        w.writerow(cls._row(ts_unix, task_id, marker_id, state, pose, img_path, error))
        return buf.getvalue().strip()

    def close(self):
        if self._opened and self._fh:
            self._fh.close()
            self._opened = False
            self._fh = None
            self._w = None
