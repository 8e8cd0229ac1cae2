"""
History Router
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from usersegments.api.deps import get_app_settings, get_db, with_deadline
from usersegments.core.settings import AppSettings
from usersegments.modules.history.service import HistoryService, parse_month_range
from usersegments.schemas.history import HistoryReportResponse, UserHistoryRequest

router = APIRouter(tags=["History"])


@router.get("/get_user_history", response_model=HistoryReportResponse)
@with_deadline
async def get_user_history(
    payload: UserHistoryRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: AppSettings = Depends(get_app_settings),
) -> HistoryReportResponse:
    """
    Build a CSV report of the user's segment assignments and unassignments
    between start_date and end_date (inclusive months, yyyy-mm) and return
    its download URL.
    """
    window = parse_month_range(payload.start_date, payload.end_date)
    service = HistoryService(db, settings)
    history = await service.get_user_history(payload.user_id, window)
    return HistoryReportResponse(csv_url=await service.create_csv(history))
