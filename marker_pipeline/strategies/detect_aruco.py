import cv2
from ..mp_types import DetectionResult, MarkerObservation


def get_dict(name: str):
    """
    ArUco-only dictionary resolver (no AprilTag).
    Accepts "6x6_250" or "DICT_6X6_250"; unknown names raise ValueError.
    Works on OpenCV 4.12 (getPredefinedDictionary) and older (Dictionary_get).
    """
    key = (name or "").strip().lower()
    if key.startswith("dict_"):
        key = key[5:]
    table = {
        "4x4_50":   cv2.aruco.DICT_4X4_50,
        "4x4_100":  cv2.aruco.DICT_4X4_100,
        "4x4_250":  cv2.aruco.DICT_4X4_250,
        "5x5_50":   cv2.aruco.DICT_5X5_50,
        "5x5_100":  cv2.aruco.DICT_5X5_100,
        "5x5_250":  cv2.aruco.DICT_5X5_250,
        "6x6_50":   cv2.aruco.DICT_6X6_50,
        "6x6_100":  cv2.aruco.DICT_6X6_100,
        "6x6_250":  cv2.aruco.DICT_6X6_250,
        "7x7_50":   cv2.aruco.DICT_7X7_50,
        "7x7_100":  cv2.aruco.DICT_7X7_100,
        "7x7_250":  cv2.aruco.DICT_7X7_250,
    }
    if key not in table:
        raise ValueError(f"Unknown ArUco dictionary: {name!r}")
    code = table[key]

    if hasattr(cv2.aruco, "getPredefinedDictionary"):           # OpenCV >= 4.7
        return cv2.aruco.getPredefinedDictionary(code)
    elif hasattr(cv2.aruco, "Dictionary_get"):                   # Older OpenCV
        return cv2.aruco.Dictionary_get(code)
    else:                                                        # Very old fallback
        return cv2.aruco.Dictionary(code)


REFINEMENT_METHODS = {
    "none":    "CORNER_REFINE_NONE",
    "subpix":  "CORNER_REFINE_SUBPIX",
    "contour": "CORNER_REFINE_CONTOUR",
}


def _make_params(corner_refinement: str = "subpix"):
    """Create detector parameters across OpenCV versions."""
    if hasattr(cv2.aruco, "DetectorParameters_create"):
        params = cv2.aruco.DetectorParameters_create()
    else:
        params = cv2.aruco.DetectorParameters()
    attr = REFINEMENT_METHODS.get((corner_refinement or "none").lower())
    if attr is None:
        raise ValueError(f"Unknown corner refinement mode: {corner_refinement!r}")
    params.cornerRefinementMethod = getattr(cv2.aruco, attr)
    return params


class ArucoDetect:
    """
    Strategy: detect ArUco markers in a decoded image.
    Returns a DetectionResult; polygons that are not quads are dropped,
    rejected candidates are passed through untouched.
    """
    def __init__(self, dict_name: str = "6x6_250", corner_refinement: str = "subpix"):
        self.dictionary = get_dict(dict_name)
        self.params = _make_params(corner_refinement)
        self._detector = None
        # Prefer the newer ArucoDetector API if present
        if hasattr(cv2.aruco, "ArucoDetector"):
            self._detector = cv2.aruco.ArucoDetector(self.dictionary, self.params)

    def detect(self, image) -> DetectionResult:
        if self._detector is not None:
            corners, ids, rejected = self._detector.detectMarkers(image)
        else:
            corners, ids, rejected = cv2.aruco.detectMarkers(
                image, self.dictionary, parameters=self.params
            )

        markers: list[MarkerObservation] = []
        if ids is not None and len(ids) > 0:
            for i, mid in enumerate(ids.flatten()):
                obs = MarkerObservation.from_detector(mid, corners[i])
                if obs is not None:
                    markers.append(obs)
        return DetectionResult(markers, list(rejected) if rejected is not None else [])
