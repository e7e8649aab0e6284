"""
Video sources for the recognition sessions

A session acquires a stream when it starts and releases it on every exit
path. Two sources exist: a local OpenCV device, and frames pushed by the
browser over HTTP.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import cv2
import numpy as np

from doorbell import config
from doorbell.errors import CameraUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CameraConstraints:
    width: int = 640
    height: int = 480
    frame_rate: int = 24


class VideoStream:
    def __init__(self):
        self.released = False

    def read_frame(self) -> Optional[np.ndarray]:
        raise NotImplementedError

    def release(self):
        self.released = True


class VideoSource:
    async def acquire(self, constraints: CameraConstraints = CameraConstraints()) -> VideoStream:
        raise NotImplementedError


class OpenCVStream(VideoStream):
    def __init__(self, capture):
        super().__init__()
        self.capture = capture
        self._lock = threading.Lock()

    def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self.released:
                return None
            ok, frame = self.capture.read()
        return frame if ok else None

    def release(self):
        with self._lock:
            if not self.released:
                self.capture.release()
                super().release()


class OpenCVCamera(VideoSource):
    """Local capture device"""

    def __init__(self, device: int = config.CAMERA_DEVICE):
        self.device = device

    def _open(self, constraints: CameraConstraints) -> OpenCVStream:
        capture = cv2.VideoCapture(self.device)
        if not capture.isOpened():
            capture.release()
            raise CameraUnavailable(f"Cannot open camera device {self.device}")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        capture.set(cv2.CAP_PROP_FPS, constraints.frame_rate)
        logger.info("Opened camera %s at %dx%d", self.device, constraints.width, constraints.height)
        return OpenCVStream(capture)

    async def acquire(self, constraints: CameraConstraints = CameraConstraints()) -> VideoStream:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._open, constraints)


class PushedStream(VideoStream):
    def __init__(self, source: "PushedFrameSource"):
        super().__init__()
        self.source = source

    def read_frame(self) -> Optional[np.ndarray]:
        if self.released:
            return None
        return self.source.latest()

    def release(self):
        if not self.released:
            super().release()
            self.source._detach()


class PushedFrameSource(VideoSource):
    """Keeps the latest frame posted by the browser; stale frames read as None"""

    def __init__(self, max_age: float = config.FRAME_MAX_AGE_SEC, clock: Callable[[], float] = time.monotonic):
        self.max_age = max_age
        self.clock = clock
        self.active_streams = 0
        self._frame = None
        self._timestamp = None
        self._lock = threading.Lock()

    def push(self, image: np.ndarray):
        with self._lock:
            self._frame = image
            self._timestamp = self.clock()

    def latest(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._frame is None:
                return None
            if self.clock() - self._timestamp > self.max_age:
                return None
            return self._frame

    def _detach(self):
        with self._lock:
            self.active_streams = max(0, self.active_streams - 1)

    async def acquire(self, constraints: CameraConstraints = CameraConstraints()) -> VideoStream:
        with self._lock:
            self.active_streams += 1
        return PushedStream(self)


def create_video_source(backend: str = None) -> VideoSource:
    backend = backend or config.CAMERA_BACKEND
    if backend == "push":
        return PushedFrameSource()
    if backend == "opencv":
        return OpenCVCamera()
    raise ValueError(f"Unknown camera backend: {backend}")
