from pathlib import Path

import cv2
import numpy as np

from ..mp_types import ImageInput


class ImageDecode:
    """
    Strategy: turn a request payload into a BGR pixel buffer.
    Accepts encoded bytes, a file path, a decoded ndarray or an ImageInput.
    Never raises for bad data; the failure is reported through ImageInput.ok.
    """

    def apply(self, source) -> ImageInput:
        if isinstance(source, ImageInput):
            if not source.ok or source.image is None:
                return source
            return ImageInput(self._to_bgr(source.image))
        if source is None:
            return ImageInput(None, ok=False, error="no image supplied")
        if isinstance(source, (bytes, bytearray, memoryview)):
            return self._decode_bytes(bytes(source))
        if isinstance(source, (str, Path)):
            return self._read_path(Path(source))
        if isinstance(source, np.ndarray):
            if source.size == 0:
                return ImageInput(source, ok=False, error="image is empty")
            return ImageInput(self._to_bgr(source))
        return ImageInput(None, ok=False, error=f"unsupported image type: {type(source).__name__}")

    def _decode_bytes(self, data: bytes) -> ImageInput:
        if not data:
            return ImageInput(None, ok=False, error="image is empty")
        buf = np.frombuffer(data, dtype=np.uint8)
        img = cv2.imdecode(buf, cv2.IMREAD_COLOR)
        if img is None:
            return ImageInput(None, ok=False, error="could not decode image bytes")
        return ImageInput(img)

    def _read_path(self, path: Path) -> ImageInput:
        if not path.exists():
            return ImageInput(None, ok=False, error=f"image not found: {path}")
        img = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if img is None:
            return ImageInput(None, ok=False, error=f"could not decode image: {path}")
        return ImageInput(img)

    @staticmethod
    def _to_bgr(img):
        if img.ndim == 2:
            return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
        if img.ndim == 3 and img.shape[2] == 4:
            return cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
        return img
