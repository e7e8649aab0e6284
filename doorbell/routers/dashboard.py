"""
Dashboard API Router
Summary numbers for the dashboard screen
"""
from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/dashboard/stats")
async def get_stats(request: Request):
    """Get dashboard statistics"""
    state = request.app.state
    latest = state.history.latest()
    return {
        "total_people": len(state.gallery),
        "today": state.history.today_summary(),
        "door": state.door.get(),
        "recognition": state.detection.mode(),
        "enrollment": state.enrollment.state.value,
        "last_detection": latest,
    }


@router.get("/dashboard/people")
async def get_all_people(request: Request):
    """People with their image counts, without descriptors"""
    people = request.app.state.gallery.list_all()
    return [
        {
            "person_id": p.person_id,
            "name": p.name,
            "image_count": p.image_count,
            "image_paths": p.image_paths,
            "image_urls": p.image_urls,
            "created_at": p.created_at,
            "updated_at": p.updated_at,
        }
        for p in people
    ]
