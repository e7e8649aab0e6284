"""
Smart Doorbell Server - Main Application
Modular FastAPI application with organized routers
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from doorbell import config
from doorbell.database import DoorStore, GalleryStore, HistoryStore, SettingsStore
from doorbell.errors import (
    CameraUnavailable,
    DimensionMismatch,
    EmptyInput,
    ExtractionTimeout,
    GalleryWriteFailed,
    HistoryWriteFailed,
    ModelUnavailable,
    NoFaceDetected,
    NoUsableSamples,
    SessionStateError,
)
from doorbell.face_recognition import FaceExtractor, create_extractor
from doorbell.matcher import IndexHolder
from doorbell.routers import dashboard, database_api, face_api, history_api, recognition_api, settings_api
from doorbell.services.detection_session import DetectionSession
from doorbell.services.enrollment_session import EnrollmentSession
from doorbell.services.video_source import VideoSource, create_video_source

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NoFaceDetected: 400,
    EmptyInput: 422,
    DimensionMismatch: 422,
    NoUsableSamples: 422,
    ModelUnavailable: 503,
    CameraUnavailable: 503,
    ExtractionTimeout: 504,
    SessionStateError: 409,
    GalleryWriteFailed: 500,
    HistoryWriteFailed: 500,
}


def configure_logging(level: str = None):
    logging.basicConfig(
        level=(level or config.LOG_LEVEL).upper(),
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    )


def create_app(data_dir: Path = None, extractor: FaceExtractor = None,
               video_source: VideoSource = None, max_workers: int = 2) -> FastAPI:
    data_dir = Path(data_dir or config.DATA_DIR)
    config.ensure_dirs(data_dir)
    images_dir = data_dir / "images"
    exports_dir = data_dir / "exports"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        state = app.state
        state.images_dir = images_dir
        state.exports_dir = exports_dir
        state.gallery = GalleryStore(data_dir / config.GALLERY_FILE.name)
        state.history = HistoryStore(data_dir / config.HISTORY_FILE.name)
        state.settings = SettingsStore(data_dir / config.SETTINGS_FILE.name)
        state.door = DoorStore(data_dir / config.DOOR_FILE.name)
        state.index_holder = IndexHolder()

        retention = state.settings.get().recognition.auto_delete_days
        state.history.prune_older_than(retention)

        state.extractor = extractor or create_extractor()
        if not state.extractor.is_ready():
            try:
                state.extractor.initialize()
            except ModelUnavailable as e:
                # Server still starts; recognition endpoints report unavailable
                logger.error("Recognition unavailable: %s", e)

        state.video_source = video_source or create_video_source()

        # CPU-bound extraction runs here, off the event loop
        executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="face_recognition")
        state.face_recognition_executor = executor

        state.detection = DetectionSession(
            state.extractor, state.video_source, state.gallery, state.history,
            config=state.settings.recognition_config(),
            index_holder=state.index_holder,
            executor=executor,
            snapshot_dir=images_dir,
        )
        state.enrollment = EnrollmentSession(
            state.extractor, state.video_source, state.gallery,
            config=state.settings.recognition_config(),
            executor=executor,
            image_dir=images_dir,
        )

        logger.info("=" * 60)
        logger.info("  Smart Doorbell Server - Starting")
        logger.info("  People in gallery: %d", len(state.gallery))
        logger.info("  History events: %d", len(state.history))
        logger.info("  Extractor: %s (ready=%s)", state.extractor.name, state.extractor.is_ready())
        logger.info("  Camera: %s", type(state.video_source).__name__)
        logger.info("=" * 60)
        yield
        # Shutdown
        logger.info("Shutting down sessions...")
        await state.detection.stop()
        await state.enrollment.cancel()
        executor.shutdown(wait=True)
        logger.info("Server shutting down")

    app = FastAPI(title="Smart Doorbell", lifespan=lifespan)

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "doorbell-server"}

    async def doorbell_error_handler(request: Request, exc: Exception):
        status_code = 500
        for error_type, code in ERROR_STATUS.items():
            if isinstance(exc, error_type):
                status_code = code
                break
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    for error_type in ERROR_STATUS:
        app.add_exception_handler(error_type, doorbell_error_handler)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Snapshots and enrollment images
    app.mount("/images", StaticFiles(directory=str(images_dir)), name="images")

    # Include routers
    app.include_router(dashboard.router, prefix="/api", tags=["Dashboard"])
    app.include_router(face_api.router, prefix="/api", tags=["Faces"])
    app.include_router(recognition_api.router, prefix="/api", tags=["Recognition"])
    app.include_router(history_api.router, prefix="/api", tags=["History"])
    app.include_router(settings_api.router, prefix="/api", tags=["Settings"])
    app.include_router(database_api.router, prefix="/api", tags=["Database"])
    return app


def run():
    import uvicorn

    configure_logging()
    uvicorn.run("doorbell.main:create_app", factory=True, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
