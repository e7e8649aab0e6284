"""
Database Management Router
Handles gallery export/import
"""
import json
import logging
import shutil
from datetime import datetime

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/export/gallery")
async def export_gallery(request: Request):
    """Export enrolled people and descriptors"""
    state = request.app.state
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"gallery_{timestamp}.json"
    filepath = state.exports_dir / filename

    state.gallery.export(filepath)

    return FileResponse(
        path=filepath,
        filename=filename,
        media_type="application/json"
    )


@router.post("/import/gallery")
async def import_gallery(request: Request, file: UploadFile = File(...)):
    """Import people from an export; imported people get new ids"""
    state = request.app.state
    filepath = state.exports_dir / f"import_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}.json"

    with open(filepath, 'wb') as f:
        shutil.copyfileobj(file.file, f)

    try:
        imported = state.gallery.import_from(filepath)
    except (json.JSONDecodeError, KeyError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid gallery export: {e}")
    finally:
        filepath.unlink()

    logger.info("Imported %d people", imported)
    return {"status": "success", "people_imported": imported, "total_people": len(state.gallery)}
