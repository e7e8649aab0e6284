"""
Face Management API Router
Handles enrolled people and the enrollment flows
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, File, Form, HTTPException, Request, Response, UploadFile

from doorbell import config
from doorbell.models import EnrollmentRequest, RenameRequest
from doorbell.services.enrollment_session import enroll_from_images
from doorbell.services.image_service import bytes_to_image

logger = logging.getLogger(__name__)

router = APIRouter()


class EnrollmentStart(EnrollmentRequest):
    person_id: Optional[int] = None


async def decode_uploads(images: List[UploadFile], max_images: int = config.MAX_IMAGES_PER_PERSON):
    """Decode uploaded files into OpenCV images, skipping unreadable ones"""
    if len(images) == 0:
        raise HTTPException(status_code=400, detail="No images provided")

    cv_images = []
    for i, upload_file in enumerate(images[:max_images]):
        image_bytes = await upload_file.read()
        try:
            cv_images.append(bytes_to_image(image_bytes))
        except ValueError as e:
            logger.warning("Failed to decode image %d/%d: %s", i + 1, len(images), e)

    if len(cv_images) == 0:
        raise HTTPException(status_code=400, detail="Failed to decode any images")
    if len(images) > max_images:
        logger.info("Processed %d/%d images (limited to %d)", len(cv_images), len(images), max_images)
    return cv_images


def clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name must not be empty")
    return name


def get_person_or_404(request: Request, person_id: int):
    person = request.app.state.gallery.get(person_id)
    if person is None:
        raise HTTPException(status_code=404, detail="Face profile not found")
    return person


@router.get("/faces")
async def list_faces(request: Request):
    return request.app.state.gallery.list_all()


@router.get("/faces/{person_id}")
async def get_face(person_id: int, request: Request):
    return get_person_or_404(request, person_id)


@router.post("/faces/enroll", status_code=201)
async def enroll_face(
    request: Request,
    name: str = Form(...),
    images: List[UploadFile] = File(...),
):
    """Enroll a new person from uploaded images"""
    name = clean_name(name)
    state = request.app.state
    cv_images = await decode_uploads(images)
    recognition = state.settings.recognition_config()

    person = await enroll_from_images(
        state.extractor, state.gallery, name, cv_images,
        executor=state.face_recognition_executor,
        image_dir=state.images_dir,
        timeout=recognition.extraction_timeout_sec,
    )
    return person


@router.post("/faces/{person_id}/enroll")
async def reenroll_face(
    person_id: int,
    request: Request,
    name: Optional[str] = Form(None),
    images: List[UploadFile] = File(...),
):
    """Replace a person's descriptor and images with a fresh enrollment"""
    existing = get_person_or_404(request, person_id)
    name = clean_name(name) if name is not None else existing.name
    state = request.app.state
    cv_images = await decode_uploads(images)
    recognition = state.settings.recognition_config()

    return await enroll_from_images(
        state.extractor, state.gallery, name, cv_images,
        executor=state.face_recognition_executor,
        image_dir=state.images_dir,
        person_id=person_id,
        timeout=recognition.extraction_timeout_sec,
    )


@router.patch("/faces/{person_id}")
async def rename_face(person_id: int, body: RenameRequest, request: Request):
    person = request.app.state.gallery.update(person_id, name=body.name)
    if person is None:
        raise HTTPException(status_code=404, detail="Face profile not found")
    return person


@router.delete("/faces/{person_id}", status_code=204)
async def delete_face(person_id: int, request: Request):
    """Delete a person; their history keeps the name but loses the link"""
    state = request.app.state
    if state.gallery.delete(person_id) is None:
        raise HTTPException(status_code=404, detail="Face profile not found")
    detached = state.history.detach_person(person_id)
    logger.info("Person %s deleted, %d history events detached", person_id, detached)
    return Response(status_code=204)


@router.post("/enrollment/start")
async def start_enrollment(body: EnrollmentStart, request: Request):
    """Start a timed camera enrollment"""
    state = request.app.state
    if body.person_id is not None:
        get_person_or_404(request, body.person_id)
    await state.enrollment.start(
        body.name,
        config=state.settings.recognition_config(),
        person_id=body.person_id,
    )
    return state.enrollment.status()


@router.post("/enrollment/cancel")
async def cancel_enrollment(request: Request):
    enrollment = request.app.state.enrollment
    await enrollment.cancel()
    return enrollment.status()


@router.get("/enrollment/status")
async def enrollment_status(request: Request):
    return request.app.state.enrollment.status()
