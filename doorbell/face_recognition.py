"""
Face descriptor extraction and aggregation

The extractor is an explicit capability handed to the sessions. Which backend
runs is decided by configuration; a backend that fails to load reports
ModelUnavailable instead of quietly switching to another one.
"""
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from doorbell import config
from doorbell.errors import EmptyInput, ModelUnavailable

logger = logging.getLogger(__name__)

BBox = Tuple[int, int, int, int]  # (x, y, w, h)


@dataclass(frozen=True)
class FaceExtraction:
    descriptor: np.ndarray
    bbox: BBox
    confidence: float


def select_face(boxes: Sequence[BBox]) -> Optional[BBox]:
    """Pick one face: largest area, then top-most, then left-most"""
    if len(boxes) == 0:
        return None
    return min(
        (tuple(int(v) for v in box) for box in boxes),
        key=lambda b: (-(b[2] * b[3]), b[1], b[0]),
    )


def estimate_sharpness(image: np.ndarray) -> float:
    """
    Laplacian variance mapped softly into [0,1].
    Flat or blurred frames score close to 0.
    """
    if image is None or image.size == 0:
        return 0.0
    img = np.asarray(image)
    if img.ndim == 3:
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    else:
        gray = img
    if gray.dtype != np.uint8:
        gray = np.clip(gray, 0, 255).astype(np.uint8)

    var = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    k = 250.0
    return var / (var + k)


def aggregate_descriptors(descriptors: Iterable[np.ndarray]) -> np.ndarray:
    """Element-wise mean of the enrollment descriptors"""
    vectors = [np.asarray(d, dtype=np.float64) for d in descriptors]
    if len(vectors) == 0:
        raise EmptyInput("Cannot aggregate zero descriptors")

    dimension = vectors[0].shape
    for vector in vectors[1:]:
        if vector.shape != dimension:
            raise ValueError(f"Descriptor shape mismatch: {vector.shape} != {dimension}")

    return np.mean(np.stack(vectors), axis=0)


class FaceExtractor:
    """Base class for descriptor backends"""

    name = "base"

    def __init__(self):
        self._ready = False

    def initialize(self):
        self._ready = True

    def is_ready(self) -> bool:
        return self._ready

    def _check_ready(self):
        if not self._ready:
            raise ModelUnavailable(f"{self.name} extractor is not initialized")

    def extract(self, image: np.ndarray) -> Optional[FaceExtraction]:
        """Descriptor for the most prominent face, or None if there is no face"""
        raise NotImplementedError


class ArcFaceExtractor(FaceExtractor):
    """ArcFace-based face recognition"""

    name = "arcface"

    def __init__(self, model_path: Path = None, cascade_path: Path = None):
        super().__init__()
        self.model_path = Path(model_path or config.ARCFACE_MODEL)
        self.cascade_path = Path(cascade_path or config.HAAR_CASCADE)
        self.arcface_session = None
        self.face_cascade = None

    def initialize(self):
        logger.info("Loading models from %s", self.model_path.parent)

        if not self.model_path.exists():
            raise ModelUnavailable(
                f"ArcFace model not found at {self.model_path}. "
                "Download the model or run with DOORBELL_EXTRACTOR=fake."
            )

        try:
            import onnxruntime as ort

            self.arcface_session = ort.InferenceSession(
                str(self.model_path),
                providers=['CPUExecutionProvider']
            )
        except Exception as e:
            raise ModelUnavailable(f"Failed to load ArcFace model: {e}") from e

        cascade_file = self.cascade_path
        if not cascade_file.exists():
            # opencv-python ships the stock cascades
            cascade_file = Path(cv2.data.haarcascades) / "haarcascade_frontalface_default.xml"
        self.face_cascade = cv2.CascadeClassifier(str(cascade_file))
        if self.face_cascade.empty():
            raise ModelUnavailable(f"Haar cascade at {cascade_file} is invalid")

        self._ready = True
        logger.info("All models loaded successfully")

    def detect_faces(self, image: np.ndarray) -> List[BBox]:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        faces = self.face_cascade.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=4,
            minSize=config.MIN_FACE_SIZE,
            flags=cv2.CASCADE_SCALE_IMAGE
        )
        return [tuple(int(v) for v in face) for face in faces]

    def crop_face(self, image: np.ndarray, bbox: BBox) -> Optional[np.ndarray]:
        """Padded crop resized to the ArcFace input, RGB"""
        height, width = image.shape[:2]
        x, y, w, h = bbox
        padding = int(0.1 * max(w, h))
        x1 = max(0, x - padding)
        y1 = max(0, y - padding)
        x2 = min(width, x + w + padding)
        y2 = min(height, y + h + padding)

        face_crop = image[y1:y2, x1:x2]
        if face_crop.size == 0 or face_crop.shape[0] < 10 or face_crop.shape[1] < 10:
            return None

        face_resized = cv2.resize(face_crop, config.FACE_INPUT_SIZE, interpolation=cv2.INTER_LINEAR)
        return cv2.cvtColor(face_resized, cv2.COLOR_BGR2RGB)

    def preprocess_face(self, face_rgb: np.ndarray) -> np.ndarray:
        """Preprocess for ArcFace"""
        face_normalized = (face_rgb.astype(np.float32) - 127.5) / 127.5
        face_tensor = np.transpose(face_normalized, (2, 0, 1))
        return np.expand_dims(face_tensor, axis=0)

    def extract(self, image: np.ndarray) -> Optional[FaceExtraction]:
        self._check_ready()

        boxes = self.detect_faces(image)
        bbox = select_face(boxes)
        if bbox is None:
            return None
        if len(boxes) > 1:
            logger.debug("%d faces in frame, using largest at %s", len(boxes), bbox)

        face_rgb = self.crop_face(image, bbox)
        if face_rgb is None:
            return None

        input_name = self.arcface_session.get_inputs()[0].name
        output = self.arcface_session.run(None, {input_name: self.preprocess_face(face_rgb)})[0]
        embedding = output[0].astype(np.float64)

        embedding_norm = np.linalg.norm(embedding)
        if embedding_norm < 1e-6:
            logger.warning("Embedding norm too small (%.6f), possible corruption", embedding_norm)
            return None

        # Haar cascade gives no score
        return FaceExtraction(embedding / embedding_norm, bbox, 1.0)


class FakeExtractor(FaceExtractor):
    """
    Extractor for tests and for running without model files.

    With a script, each extract() call consumes the next entry: a descriptor,
    None for "no face", or an exception instance to raise. Without a script,
    descriptors are derived from a hash of the pixels, so the same frame
    always maps to the same descriptor and a flat frame has no face.
    """

    name = "fake"

    def __init__(self, script: Iterable = None, dimension: int = 128,
                 fail_initialize: bool = False, ready: bool = True):
        super().__init__()
        self.dimension = dimension
        self.fail_initialize = fail_initialize
        self._script = list(script) if script is not None else None
        self.calls = 0
        if ready and not fail_initialize:
            self._ready = True

    def initialize(self):
        if self.fail_initialize:
            raise ModelUnavailable("fake extractor configured to fail")
        self._ready = True

    def extract(self, image: np.ndarray) -> Optional[FaceExtraction]:
        self._check_ready()
        self.calls += 1
        image = np.asarray(image)
        height, width = image.shape[:2] if image.ndim >= 2 else (1, 1)
        bbox = (0, 0, int(width), int(height))

        if self._script is not None:
            if not self._script:
                return None
            item = self._script.pop(0)
            if isinstance(item, BaseException):
                raise item
            if item is None:
                return None
            return FaceExtraction(np.asarray(item, dtype=np.float64), bbox, 1.0)

        if image.size == 0 or np.ptp(image) == 0:
            return None
        digest = hashlib.sha256(np.ascontiguousarray(image).tobytes()).digest()
        rng = np.random.default_rng(int.from_bytes(digest[:8], "little"))
        vector = rng.normal(size=self.dimension)
        return FaceExtraction(vector / np.linalg.norm(vector), bbox, 1.0)


def create_extractor(backend: str = None) -> FaceExtractor:
    backend = backend or config.EXTRACTOR_BACKEND
    if backend == "arcface":
        return ArcFaceExtractor()
    if backend == "fake":
        logger.warning("Using fake extractor: descriptors are not real face embeddings")
        return FakeExtractor()
    raise ValueError(f"Unknown extractor backend: {backend}")
