import asyncio
import threading
from typing import List, Optional

import cv2
import numpy as np
import pytest

from doorbell.database import GalleryStore, HistoryStore
from doorbell.errors import CameraUnavailable
from doorbell.face_recognition import FaceExtraction, FaceExtractor
from doorbell.models import RecognitionConfig
from doorbell.services.video_source import CameraConstraints, VideoSource, VideoStream


class ScriptedStream(VideoStream):
    def __init__(self, source: "ScriptedVideoSource"):
        super().__init__()
        self.source = source

    def read_frame(self) -> Optional[np.ndarray]:
        if self.released:
            return None
        if self.source.read_error is not None:
            raise self.source.read_error
        return self.source.frame


class ScriptedVideoSource(VideoSource):
    """
    Always serves the same frame. Can refuse acquisition, take a while to
    open, or fail every read.
    """

    def __init__(self, frame: np.ndarray = None, fail: bool = False, delay: float = 0.0,
                 read_error: Exception = None):
        self.frame = frame if frame is not None else noise_frame()
        self.fail = fail
        self.delay = delay
        self.read_error = read_error
        self.streams: List[ScriptedStream] = []

    async def acquire(self, constraints: CameraConstraints = CameraConstraints()) -> VideoStream:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise CameraUnavailable("no camera attached")
        stream = ScriptedStream(self)
        self.streams.append(stream)
        return stream

    @property
    def open_streams(self) -> int:
        return sum(1 for s in self.streams if not s.released)


class BlockingExtractor(FaceExtractor):
    """extract() waits until release() is called"""

    name = "blocking"

    def __init__(self, descriptor=(1.0, 0.0, 0.0)):
        super().__init__()
        self._ready = True
        self.descriptor = np.asarray(descriptor, dtype=np.float64)
        self.started = threading.Event()
        self.gate = threading.Event()
        self.calls = 0

    def extract(self, image):
        self.calls += 1
        self.started.set()
        self.gate.wait(timeout=10)
        return FaceExtraction(self.descriptor, (0, 0, 10, 10), 1.0)

    def release(self):
        self.gate.set()


def noise_frame(seed: int = 0, size=(120, 160)) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(size[0], size[1], 3), dtype=np.uint8)


def flat_frame(value: int = 128, size=(120, 160)) -> np.ndarray:
    return np.full((size[0], size[1], 3), value, dtype=np.uint8)


def encode_png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode('.png', image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def gallery():
    return GalleryStore()


@pytest.fixture
def history():
    return HistoryStore()


@pytest.fixture
def recognition_config():
    # Long interval: tests drive tick() by hand
    return RecognitionConfig(
        distance_threshold=0.5,
        sample_interval_ms=60000,
        skip_blurred_frames=False,
        snapshot_policy="none",
    )


@pytest.fixture
def video_source():
    return ScriptedVideoSource()
