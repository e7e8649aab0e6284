"""
Enrollment Session

Captures frames for a fixed duration (or until the target frame count is
reached), keeps the ones that yield a descriptor, and stores their mean as
the person's descriptor. Nothing is written if no frame was usable or the
session is cancelled.
"""
import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np

from doorbell import config as app_config
from doorbell.database import GalleryStore, remove_files
from doorbell.errors import (
    CameraUnavailable,
    DimensionMismatch,
    GalleryWriteFailed,
    ModelUnavailable,
    NoUsableSamples,
    SessionStateError,
)
from doorbell.face_recognition import BBox, FaceExtractor, aggregate_descriptors
from doorbell.models import Person, RecognitionConfig
from doorbell.services.detection_session import constraints_for, run_extraction
from doorbell.services.image_service import save_image
from doorbell.services.video_source import VideoSource, VideoStream

logger = logging.getLogger(__name__)


class EnrollmentState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    CAPTURING = "capturing"
    FINISHING = "finishing"
    ERROR = "error"


@dataclass
class EnrollmentSample:
    descriptor: np.ndarray
    frame: np.ndarray
    bbox: BBox


def store_enrollment(gallery: GalleryStore, name: str, samples: Sequence[EnrollmentSample],
                     image_dir: Path = None, person_id: Optional[int] = None) -> Person:
    """Aggregate the samples and insert (or re-enroll) the person"""
    if not samples:
        raise NoUsableSamples(f"No usable face samples for {name!r}")

    descriptor = aggregate_descriptors(s.descriptor for s in samples)
    prefix = name.lower().replace(' ', '_') or "person"
    image_paths = [
        save_image(s.frame, prefix, directory=image_dir)
        for s in samples[:app_config.MAX_IMAGES_PER_PERSON]
    ]

    try:
        if person_id is None:
            return gallery.insert(name, descriptor, image_paths)
        previous = gallery.get(person_id)
        person = gallery.update(person_id, name=name, descriptor=descriptor, image_paths=image_paths)
    except (GalleryWriteFailed, DimensionMismatch):
        remove_files(image_paths)
        raise
    if person is None:
        remove_files(image_paths)
        raise KeyError(person_id)
    remove_files([p for p in previous.image_paths if p not in image_paths])
    return person


async def enroll_from_images(extractor: FaceExtractor, gallery: GalleryStore, name: str,
                             images: Sequence[np.ndarray], executor: Executor = None,
                             image_dir: Path = None, person_id: Optional[int] = None,
                             timeout: float = app_config.EXTRACTION_TIMEOUT_SEC) -> Person:
    """Enroll from uploaded still images instead of the live camera"""
    if not extractor.is_ready():
        raise ModelUnavailable(f"{extractor.name} extractor is not ready")

    samples: List[EnrollmentSample] = []
    for i, image in enumerate(images):
        extraction = await run_extraction(extractor, image, executor, timeout)
        if extraction is None:
            logger.info("No face in upload %d/%d", i + 1, len(images))
            continue
        samples.append(EnrollmentSample(extraction.descriptor, image, extraction.bbox))

    loop = asyncio.get_running_loop()
    person = await loop.run_in_executor(
        executor,
        lambda: store_enrollment(gallery, name, samples, image_dir=image_dir, person_id=person_id),
    )
    logger.info("Enrolled %s from %d/%d images", name, len(samples), len(images))
    return person


class EnrollmentSession:
    def __init__(
        self,
        extractor: FaceExtractor,
        video_source: VideoSource,
        gallery: GalleryStore,
        config: RecognitionConfig = None,
        executor: Executor = None,
        image_dir: Path = None,
    ):
        self.extractor = extractor
        self.video_source = video_source
        self.gallery = gallery
        self.config = config or RecognitionConfig()
        self.executor = executor
        self.image_dir = image_dir

        self.state = EnrollmentState.IDLE
        self.name: Optional[str] = None
        self.person_id: Optional[int] = None
        self.samples: List[EnrollmentSample] = []
        self.attempts = 0
        self.result: Optional[Person] = None
        self.error: Optional[str] = None
        self.error_kind: Optional[str] = None

        self._exception: Optional[Exception] = None
        self._stream: Optional[VideoStream] = None
        self._task: Optional[asyncio.Task] = None
        self._deadline: Optional[float] = None

    def _fail(self, exc: Exception, state: EnrollmentState = EnrollmentState.ERROR):
        self.state = state
        self.error = str(exc)
        self.error_kind = type(exc).__name__
        self._exception = exc
        logger.error("Enrollment of %s failed: %s", self.name, exc)

    def _release_stream(self):
        if self._stream is not None:
            self._stream.release()
            self._stream = None

    @property
    def seconds_remaining(self) -> float:
        if self.state is not EnrollmentState.CAPTURING or self._deadline is None:
            return 0.0
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    async def start(self, name: str, config: RecognitionConfig = None, person_id: Optional[int] = None):
        name = (name or "").strip()
        if not name:
            raise ValueError("name must not be empty")
        if self.state in (EnrollmentState.STARTING, EnrollmentState.CAPTURING, EnrollmentState.FINISHING):
            raise SessionStateError(f"Enrollment is {self.state.value}")
        if person_id is not None and self.gallery.get(person_id) is None:
            raise KeyError(person_id)

        self.state = EnrollmentState.STARTING
        if config is not None:
            self.config = config
        self.name = name
        self.person_id = person_id
        self.samples = []
        self.attempts = 0
        self.result = None
        self.error = None
        self.error_kind = None
        self._exception = None
        self._task = None

        if not self.extractor.is_ready():
            exc = ModelUnavailable(f"{self.extractor.name} extractor is not ready")
            self._fail(exc)
            raise exc

        try:
            stream = await self.video_source.acquire(constraints_for(self.config))
        except CameraUnavailable as e:
            self._fail(e)
            raise
        except Exception as e:
            exc = CameraUnavailable(f"Camera acquisition failed: {e}")
            self._fail(exc)
            raise exc from e

        if self.state is not EnrollmentState.STARTING:
            # cancel() arrived while the camera was opening
            stream.release()
            logger.info("Enrollment of %s abandoned before capture", name)
            return

        self._stream = stream
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self.config.enrollment_duration_sec
        self.state = EnrollmentState.CAPTURING
        self._task = loop.create_task(self._run())
        logger.info(
            "Enrollment of %s started: %d frames over %ds",
            name, self.config.enrollment_target_frames, self.config.enrollment_duration_sec,
        )

    async def _run(self) -> Optional[Person]:
        loop = asyncio.get_running_loop()
        interval = self.config.enrollment_interval_sec
        target = self.config.enrollment_target_frames
        try:
            while self.state is EnrollmentState.CAPTURING and len(self.samples) < target:
                remaining = self._deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(interval, remaining))
                await self.capture_tick()
            return await self.finish()
        except ModelUnavailable as e:
            self.samples = []
            self._fail(e)
            return None
        except Exception as e:
            logger.exception("Enrollment capture crashed")
            self.samples = []
            self._fail(e)
            return None
        finally:
            self._release_stream()

    async def capture_tick(self) -> bool:
        """Capture one frame; True if it yielded a descriptor"""
        if self.state is not EnrollmentState.CAPTURING:
            return False
        self.attempts += 1
        try:
            frame = self._stream.read_frame()
        except Exception as e:
            logger.debug("Dropping enrollment frame, read failed: %s", e)
            return False
        if frame is None:
            return False
        try:
            extraction = await run_extraction(
                self.extractor, frame, self.executor, self.config.extraction_timeout_sec,
            )
        except ModelUnavailable:
            raise
        except Exception as e:
            logger.debug("Dropping enrollment frame: %s", e)
            return False
        if extraction is None or self.state is not EnrollmentState.CAPTURING:
            return False

        self.samples.append(EnrollmentSample(extraction.descriptor, frame.copy(), extraction.bbox))
        logger.debug("Enrollment sample %d/%d", len(self.samples), self.config.enrollment_target_frames)
        return True

    async def finish(self) -> Optional[Person]:
        self.state = EnrollmentState.FINISHING
        self._release_stream()
        samples, self.samples = self.samples, []

        # Failures here leave nothing written; the session is ready again
        if not samples:
            self._fail(NoUsableSamples(
                f"No face found in {self.attempts} frames for {self.name!r}"
            ), EnrollmentState.IDLE)
            return None

        loop = asyncio.get_running_loop()
        try:
            person = await loop.run_in_executor(
                self.executor,
                lambda: store_enrollment(
                    self.gallery, self.name, samples, image_dir=self.image_dir, person_id=self.person_id,
                ),
            )
        except Exception as e:
            self._fail(e, EnrollmentState.IDLE)
            return None

        self.result = person
        self.state = EnrollmentState.IDLE
        logger.info(
            "Enrolled %s as person %s from %d/%d frames",
            person.name, person.person_id, len(samples), self.attempts,
        )
        return person

    async def cancel(self):
        """Discard the capture. No-op unless starting or capturing."""
        if self.state not in (EnrollmentState.STARTING, EnrollmentState.CAPTURING):
            return
        self.state = EnrollmentState.IDLE
        self.samples = []
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._release_stream()
        logger.info("Enrollment of %s cancelled", self.name)

    async def wait(self) -> Optional[Person]:
        """Wait for the capture to finish; raises the failure, None if cancelled"""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
                return None
        if self._exception is not None:
            raise self._exception
        return self.result

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "name": self.name,
            "person_id": self.person_id,
            "samples": len(self.samples),
            "attempts": self.attempts,
            "target_frames": self.config.enrollment_target_frames,
            "seconds_remaining": round(self.seconds_remaining, 1),
            "error": self.error,
            "error_kind": self.error_kind,
            "result": self.result.model_dump(mode="json", exclude={"descriptor"}) if self.result else None,
        }
