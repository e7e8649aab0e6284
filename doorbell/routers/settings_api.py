"""
Settings & Door API Router
"""
from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from doorbell.models import DoorUpdate

router = APIRouter()


@router.get("/settings")
async def get_settings(request: Request):
    return request.app.state.settings.get()


@router.post("/settings")
async def save_settings(request: Request):
    """Merge a partial settings document. Running sessions keep their snapshot."""
    data = await request.json()
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Settings must be a JSON object")
    try:
        return request.app.state.settings.update(data)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/door/status")
async def get_door_status(request: Request):
    return request.app.state.door.get()


@router.post("/door/status")
async def update_door_status(body: DoorUpdate, request: Request):
    return request.app.state.door.set_locked(body.is_locked)


@router.post("/door/toggle")
async def toggle_door(request: Request):
    return request.app.state.door.toggle()
