from pathlib import Path

import cv2

from ..mp_types import CameraParameters


class CalibrationError(RuntimeError):
    """Camera intrinsics could not be loaded; fatal at startup."""


# ROS/OpenCV sample files use the capitalized names, our own calib files the lowercase ones
_MATRIX_KEYS = ("camera_matrix", "Camera_Matrix")
_DIST_KEYS = ("dist_coeffs", "Distortion_Coefficients", "distortion_coefficients")


def _first_mat(fs, keys):
    for key in keys:
        node = fs.getNode(key)
        if node is None or node.empty():
            continue
        mat = node.mat()
        if mat is not None:
            return mat
    return None


def load_camera_parameters(path: str) -> CameraParameters:
    p = Path(path)
    if not p.is_file():
        raise CalibrationError(f"Invalid camera file: {p}")

    try:
        fs = cv2.FileStorage(str(p), cv2.FILE_STORAGE_READ)
    except cv2.error as exc:
        raise CalibrationError(f"Invalid camera file: {p}: {exc}") from exc
    try:
        if not fs.isOpened():
            raise CalibrationError(f"Invalid camera file: {p}")
        K = _first_mat(fs, _MATRIX_KEYS)
        dist = _first_mat(fs, _DIST_KEYS)
        if K is None or dist is None:
            raise CalibrationError(f"Camera matrix or distortion coefficients missing in {p}")

        size = None
        w_node, h_node = fs.getNode("image_width"), fs.getNode("image_height")
        if not w_node.empty() and not h_node.empty():
            size = (int(w_node.real()), int(h_node.real()))
    finally:
        fs.release()

    return CameraParameters(K, dist, size, str(p))
