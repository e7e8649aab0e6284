"""
Server Configuration
"""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("DOORBELL_DATA_DIR", str(BASE_DIR / "data")))
IMAGES_DIR = DATA_DIR / "images"
MODELS_DIR = Path(os.getenv("DOORBELL_MODELS_DIR", str(BASE_DIR / "models")))

# Model paths
ARCFACE_MODEL = MODELS_DIR / "arcfaceresnet100-8.onnx"
HAAR_CASCADE = MODELS_DIR / "haarcascade_frontalface_default.xml"

# Database files
GALLERY_FILE = DATA_DIR / "gallery.json"
HISTORY_FILE = DATA_DIR / "history.json"
DOOR_FILE = DATA_DIR / "door.json"
SETTINGS_FILE = DATA_DIR / "settings.yaml"

# Backends: "arcface" needs the ONNX model, "fake" derives descriptors from pixels
EXTRACTOR_BACKEND = os.getenv("DOORBELL_EXTRACTOR", "arcface")
# "push" takes frames posted by the browser, "opencv" opens a local device
CAMERA_BACKEND = os.getenv("DOORBELL_CAMERA", "push")
CAMERA_DEVICE = int(os.getenv("CAMERA_DEVICE", "0"))

# Face recognition defaults (overridable from settings.yaml)
DISTANCE_THRESHOLD = 0.6
SAMPLE_INTERVAL_MS = 500
ENROLLMENT_DURATION_SEC = 30
ENROLLMENT_TARGET_FRAMES = 10
EXTRACTION_TIMEOUT_SEC = 5.0
BLUR_THRESHOLD = 0.15
MIN_FACE_SIZE = (30, 30)
FACE_INPUT_SIZE = (112, 112)

# Pushed frames older than this are treated as missing
FRAME_MAX_AGE_SEC = 2.0

# Image storage
MAX_IMAGES_PER_PERSON = 20
SNAPSHOT_PADDING = 0.3

# History
DEFAULT_HISTORY_PAGE_SIZE = 9

# Server settings
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def ensure_dirs(data_dir: Path = None):
    """Create the data directories if missing"""
    root = Path(data_dir) if data_dir else DATA_DIR
    for path in (root, root / "images", root / "exports"):
        path.mkdir(parents=True, exist_ok=True)
