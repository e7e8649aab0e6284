"""
History API Router
Detection history listing, filtering and deletion
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, Response

from doorbell import config
from doorbell.models import HistoryPage

router = APIRouter()


@router.get("/history")
async def get_history(
    request: Request,
    page: int = 1,
    limit: int = config.DEFAULT_HISTORY_PAGE_SIZE,
    filter: str = "all",
    date: Optional[str] = None,
):
    """Newest first; filter is all, known or unknown; date is YYYY-MM-DD"""
    day = None
    if date:
        try:
            day = parse_day(date)
        except ValueError:
            raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")
    try:
        entries, total = request.app.state.history.query(page=page, limit=limit, filter=filter, day=day)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return HistoryPage(entries=entries, total=total, page=max(page, 1), limit=max(limit, 1))


def parse_day(value: str) -> date:
    return date.fromisoformat(value)


@router.get("/history/latest")
async def get_latest(request: Request):
    latest = request.app.state.history.latest()
    if latest is None:
        return {"message": "No history entries found"}
    return latest


@router.get("/history/today/summary")
async def get_today_summary(request: Request):
    return request.app.state.history.today_summary()


@router.get("/history/{event_id}")
async def get_event(event_id: int, request: Request):
    event = request.app.state.history.get(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="History entry not found")
    return event


@router.delete("/history/{event_id}", status_code=204)
async def delete_event(event_id: int, request: Request):
    if not request.app.state.history.delete_by_id(event_id):
        raise HTTPException(status_code=404, detail="History entry not found")
    return Response(status_code=204)


@router.delete("/history")
async def delete_all_history(request: Request):
    deleted = request.app.state.history.delete_all()
    return {"status": "success", "deleted": deleted}
