"""
Recognition API Router
Live detection session control, browser frame upload and one-off recognition
"""
import logging
import math

from fastapi import APIRouter, File, HTTPException, Request, UploadFile

from doorbell.errors import ModelUnavailable, NoFaceDetected
from doorbell.services.detection_session import run_extraction
from doorbell.services.image_service import bytes_to_image
from doorbell.services.video_source import PushedFrameSource

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_FRAME_BYTES = 10 * 1024 * 1024


@router.post("/recognition/start")
async def start_recognition(request: Request):
    state = request.app.state
    await state.detection.start(state.settings.recognition_config())
    return state.detection.status()


@router.post("/recognition/stop")
async def stop_recognition(request: Request):
    detection = request.app.state.detection
    await detection.stop()
    return detection.status()


@router.get("/recognition/status")
async def recognition_status(request: Request):
    state = request.app.state
    status = state.detection.status()
    status["gallery_size"] = len(state.gallery)
    return status


@router.post("/camera/frame")
async def receive_frame(request: Request):
    """Browser posts the current camera frame (JPEG/PNG body)"""
    source = request.app.state.video_source
    if not isinstance(source, PushedFrameSource):
        raise HTTPException(status_code=409, detail="Server is not configured for pushed frames")

    image_bytes = await request.body()
    if len(image_bytes) == 0:
        raise HTTPException(status_code=400, detail="Empty frame")
    if len(image_bytes) > MAX_FRAME_BYTES:
        logger.warning("Frame too large: %d bytes", len(image_bytes))
        raise HTTPException(status_code=413, detail="Image too large")
    try:
        frame = bytes_to_image(image_bytes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    source.push(frame)
    return {"status": "ok", "active_streams": source.active_streams}


@router.post("/recognition/recognize")
async def recognize_image(request: Request, image: UploadFile = File(...)):
    """Classify one uploaded image against the gallery without recording it"""
    state = request.app.state
    if not state.extractor.is_ready():
        raise ModelUnavailable(f"{state.extractor.name} extractor is not ready")

    try:
        frame = bytes_to_image(await image.read())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    recognition = state.settings.recognition_config()
    extraction = await run_extraction(
        state.extractor, frame, state.face_recognition_executor, recognition.extraction_timeout_sec,
    )
    if extraction is None:
        raise NoFaceDetected("No face detected in image")

    result = state.index_holder.sync(state.gallery).match(extraction.descriptor, recognition.distance_threshold)
    return {
        "person_id": result.person_id,
        "person_name": result.person_name,
        "distance": None if math.isinf(result.distance) else result.distance,
        "confidence": result.confidence,
        "is_known": result.is_known,
        "bbox": list(extraction.bbox),
    }
