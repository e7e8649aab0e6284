"""
Live Detection Session

Samples the video stream on a fixed cadence, classifies each sampled frame
against the gallery and appends one history event per frame that shows a
face. At most one classification is in flight: a tick that arrives while the
previous frame is still being processed is skipped.
"""
import asyncio
import logging
import math
from concurrent.futures import Executor
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np

from doorbell.database import GalleryStore, HistoryStore, utcnow
from doorbell.errors import (
    CameraUnavailable,
    ExtractionTimeout,
    HistoryWriteFailed,
    ModelUnavailable,
    SessionStateError,
)
from doorbell.face_recognition import FaceExtraction, FaceExtractor, estimate_sharpness
from doorbell.matcher import IndexHolder, MatchResult
from doorbell.models import DetectionEvent, RecognitionConfig
from doorbell.services.image_service import save_snapshot
from doorbell.services.video_source import CameraConstraints, VideoSource, VideoStream

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class DetectionStats:
    ticks: int = 0
    skipped_ticks: int = 0
    samples: int = 0
    blurred: int = 0
    no_face: int = 0
    matches: int = 0
    events: int = 0
    failures: int = 0
    dropped_events: int = 0


async def run_extraction(extractor: FaceExtractor, frame: np.ndarray, executor: Optional[Executor],
                         timeout: float) -> Optional[FaceExtraction]:
    """Run a blocking extract() off the event loop with a time limit"""
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(executor, extractor.extract, frame)
    try:
        return await asyncio.wait_for(future, timeout)
    except asyncio.TimeoutError:
        raise ExtractionTimeout(f"Extraction took longer than {timeout:.1f}s") from None


def constraints_for(cfg: RecognitionConfig) -> CameraConstraints:
    width, height = cfg.resolution
    return CameraConstraints(width=width, height=height)


class DetectionSession:
    def __init__(
        self,
        extractor: FaceExtractor,
        video_source: VideoSource,
        gallery: GalleryStore,
        history: HistoryStore,
        config: RecognitionConfig = None,
        index_holder: IndexHolder = None,
        executor: Executor = None,
        snapshot_dir: Path = None,
    ):
        self.extractor = extractor
        self.video_source = video_source
        self.gallery = gallery
        self.history = history
        self.config = config or RecognitionConfig()
        self.index_holder = index_holder or IndexHolder()
        self.executor = executor
        self.snapshot_dir = snapshot_dir

        self.state = SessionState.IDLE
        self.error: Optional[str] = None
        self.error_kind: Optional[str] = None
        self.stats = DetectionStats()
        self.last_event: Optional[DetectionEvent] = None
        self.last_result: Optional[MatchResult] = None
        self.face_in_view = False

        self._stream: Optional[VideoStream] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[DetectionEvent], None]] = []

    def add_listener(self, callback: Callable[[DetectionEvent], None]):
        self._listeners.append(callback)

    def _fail(self, exc: Exception):
        self.state = SessionState.ERROR
        self.error = str(exc)
        self.error_kind = type(exc).__name__
        logger.error("Detection session failed: %s", exc)

    def _release_stream(self):
        if self._stream is not None:
            self._stream.release()
            self._stream = None

    async def start(self, config: RecognitionConfig = None):
        """Acquire the camera and begin sampling. Start failures are raised."""
        if self.state in (SessionState.STARTING, SessionState.RUNNING, SessionState.STOPPING):
            raise SessionStateError(f"Detection session is {self.state.value}")

        if config is not None:
            self.config = config
        self.state = SessionState.STARTING
        self.error = None
        self.error_kind = None
        self.stats = DetectionStats()
        self.face_in_view = False

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

        if self.state is not SessionState.STARTING:
            # stop() arrived while the camera was opening
            stream.release()
            logger.info("Detection start abandoned, session is %s", self.state.value)
            return

        self._stream = stream
        self.index_holder.sync(self.gallery)
        self.state = SessionState.RUNNING
        self._loop_task = asyncio.create_task(self._run())
        logger.info(
            "Detection started (interval=%dms, threshold=%.2f, gallery=%d)",
            self.config.sample_interval_ms, self.config.distance_threshold, len(self.gallery),
        )

    async def stop(self):
        """Cancel sampling and release the camera. Stopping twice is a no-op."""
        if self.state in (SessionState.IDLE, SessionState.STOPPING):
            return
        if self.state is SessionState.ERROR:
            self._release_stream()
            return

        self.state = SessionState.STOPPING
        await self._cancel_loop()

        # Let the frame being classified finish so it is persisted once or not at all
        if self._inflight is not None and not self._inflight.done():
            await asyncio.gather(self._inflight, return_exceptions=True)
        self._inflight = None

        self._release_stream()
        self.state = SessionState.IDLE
        logger.info("Detection stopped (%s)", asdict(self.stats))

    async def _cancel_loop(self):
        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self):
        interval = self.config.sample_interval_ms / 1000.0
        while self.state is SessionState.RUNNING:
            await asyncio.sleep(interval)
            if self.state is not SessionState.RUNNING:
                break
            self.tick()

    def tick(self) -> bool:
        """Start classifying the current frame; False if the tick was skipped"""
        if self.state is not SessionState.RUNNING:
            return False

        self.stats.ticks += 1
        if self._inflight is not None and not self._inflight.done():
            self.stats.skipped_ticks += 1
            logger.debug("Previous frame still in flight, skipping tick")
            return False

        try:
            frame = self._stream.read_frame()
        except Exception:
            self.stats.failures += 1
            logger.exception("Failed to read frame")
            return False
        if frame is None:
            return False

        captured_at = utcnow()
        self._inflight = asyncio.get_running_loop().create_task(self._classify(frame, captured_at))
        return True

    async def _classify(self, frame: np.ndarray, captured_at) -> Optional[DetectionEvent]:
        try:
            return await self._classify_frame(frame, captured_at)
        except ModelUnavailable as e:
            self._fail(e)
            if self._loop_task is not None:
                self._loop_task.cancel()
                self._loop_task = None
            self._release_stream()
        except Exception as e:
            # One bad frame never ends the session
            self.stats.failures += 1
            if isinstance(e, ExtractionTimeout):
                logger.warning("%s", e)
            else:
                logger.exception("Error classifying frame")
        return None

    async def _classify_frame(self, frame: np.ndarray, captured_at) -> Optional[DetectionEvent]:
        cfg = self.config
        if cfg.skip_blurred_frames and estimate_sharpness(frame) < cfg.blur_threshold:
            self.stats.blurred += 1
            return None

        self.stats.samples += 1
        extraction = await run_extraction(self.extractor, frame, self.executor, cfg.extraction_timeout_sec)
        if extraction is None:
            self.stats.no_face += 1
            self.face_in_view = False
            return None

        index = self.index_holder.sync(self.gallery)
        result = index.match(extraction.descriptor, cfg.distance_threshold)
        self.stats.matches += 1
        self.last_result = result
        self.face_in_view = True
        return await self._record(frame, extraction, result, captured_at)

    def _wants_snapshot(self, result: MatchResult) -> bool:
        policy = self.config.snapshot_policy
        return policy == "all" or (policy == "unknown" and not result.is_known)

    async def _record(self, frame: np.ndarray, extraction: FaceExtraction, result: MatchResult,
                      captured_at) -> Optional[DetectionEvent]:
        image_path = ""
        if self._wants_snapshot(result):
            label = result.person_name if result.is_known else "Unknown"
            prefix = f"person_{result.person_id}" if result.is_known else "unknown"
            try:
                loop = asyncio.get_running_loop()
                image_path = await loop.run_in_executor(
                    self.executor,
                    lambda: save_snapshot(frame, extraction.bbox, prefix, directory=self.snapshot_dir, label=label),
                )
            except Exception as e:
                logger.warning("Snapshot not saved: %s", e)

        event = DetectionEvent(
            event_id=0,
            person_id=result.person_id,
            person_name=result.person_name,
            captured_at=captured_at,
            image_path=image_path,
            distance=None if math.isinf(result.distance) else result.distance,
            confidence=result.confidence,
            is_known=result.is_known,
        )

        try:
            stored = self.history.append(event)
        except HistoryWriteFailed as e:
            # At-most-once: the event is dropped, never retried
            self.stats.dropped_events += 1
            logger.error("Dropping detection (%s): %s", "known" if result.is_known else "unknown", e)
            return None

        self.stats.events += 1
        self.last_event = stored
        if stored.is_known:
            logger.info("Recognized %s (distance %.3f)", stored.person_name, result.distance)
        else:
            logger.info("Unknown visitor (nearest distance %s)", stored.distance)

        for callback in list(self._listeners):
            try:
                callback(stored)
            except Exception:
                logger.exception("Detection listener failed")
        return stored

    async def wait_idle(self):
        """Wait for the classification in flight, if any"""
        if self._inflight is not None and not self._inflight.done():
            await asyncio.gather(self._inflight, return_exceptions=True)

    def mode(self) -> str:
        """idle, waiting (no face in view), detecting, or unavailable"""
        if self.state is SessionState.ERROR or not self.extractor.is_ready():
            return "unavailable"
        if self.state is not SessionState.RUNNING:
            return "idle"
        return "detecting" if self.face_in_view else "waiting"

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "mode": self.mode(),
            "error": self.error,
            "error_kind": self.error_kind,
            "extractor": self.extractor.name,
            "config": self.config.model_dump(),
            "stats": asdict(self.stats),
            "last_event": self.last_event.model_dump(mode="json") if self.last_event else None,
        }
