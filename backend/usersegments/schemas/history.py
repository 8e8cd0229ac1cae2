"""
History Schemas
"""

from pydantic import BaseModel, Field


class UserHistoryRequest(BaseModel):
    """Body of GET /api/get_user_history."""

    user_id: int = Field(..., ge=1)
    start_date: str = Field(..., examples=["2023-1"])
    end_date: str = Field(..., examples=["2023-03"])


class HistoryReportResponse(BaseModel):
    csv_url: str
