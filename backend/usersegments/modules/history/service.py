"""
History Reporting Service

Builds per-user CSV reports of segment assignments and unassignments for a
range of months, from the user_segment_relation audit trail.
"""

import csv
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from usersegments.core.exceptions import InvalidInputError
from usersegments.core.logging import get_logger
from usersegments.core.settings import AppSettings
from usersegments.db.session import store_errors
from usersegments.models.segment import Segment, UserSegmentRelation

logger = get_logger(__name__)

MONTH_PATTERN = re.compile(r"^\d{4}-\d{1,2}$")
FILE_ID_LENGTH = 10
FILE_ID_ALPHABET = string.ascii_lowercase + string.digits
REPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

OPERATION_ASSIGNED = "assigned"
OPERATION_UNASSIGNED = "unassigned"


@dataclass(frozen=True)
class DateWindow:
    """Half-open range [start, end)."""

    start: datetime
    end: datetime

    def __contains__(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass(frozen=True)
class ReportRow:
    user_id: int
    segment: str
    operation: str
    date: datetime

    def as_csv_row(self) -> Tuple[int, str, str, str]:
        return self.user_id, self.segment, self.operation, self.date.strftime(REPORT_DATE_FORMAT)


def _parse_month(value: str, field: str) -> datetime:
    if not isinstance(value, str) or not MONTH_PATTERN.match(value):
        raise InvalidInputError(
            f"{field} must be formatted as yyyy-mm or yyyy-m",
            extra={field: value}
        )
    year, month = (int(part) for part in value.split("-"))
    if not 1 <= month <= 12 or year < 1:
        raise InvalidInputError(f"{field} is not a valid month", extra={field: value})
    return datetime(year, month, 1)


def _next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1)
    return moment.replace(month=moment.month + 1)


def parse_month_range(start_date: str, end_date: str) -> DateWindow:
    """
    Turn a yyyy-mm .. yyyy-mm pair into a window covering both months entirely.

    Raises:
        InvalidInputError: Malformed month, or start after end
    """
    start = _parse_month(start_date, "start_date")
    end = _parse_month(end_date, "end_date")
    if start > end:
        raise InvalidInputError(
            "start_date must not be after end_date",
            extra={"start_date": start_date, "end_date": end_date}
        )
    try:
        return DateWindow(start=start, end=_next_month(end))
    except ValueError as e:
        raise InvalidInputError("end_date is out of range", extra={"end_date": end_date}) from e


class HistoryService:
    def __init__(self, db: AsyncSession, settings: AppSettings):
        self.db = db
        self.settings = settings

    async def get_user_history(self, user_id: int, window: DateWindow) -> List[ReportRow]:
        """
        Assignment and unassignment events of a user that fall inside the window.
        """
        relation = UserSegmentRelation
        stmt = (
            select(Segment.slug, relation.date_assigned, relation.date_unassigned)
            .join(Segment, relation.segment_id == Segment.id)
            .where(
                relation.user_id == user_id,
                or_(
                    and_(
                        relation.date_assigned >= window.start,
                        relation.date_assigned < window.end,
                    ),
                    and_(
                        relation.date_unassigned >= window.start,
                        relation.date_unassigned < window.end,
                    ),
                ),
            )
            .order_by(relation.date_assigned, relation.id)
        )
        with store_errors("get user history"):
            result = await self.db.execute(stmt)

        history: List[ReportRow] = []
        for slug, date_assigned, date_unassigned in result.all():
            if date_assigned in window:
                history.append(ReportRow(user_id, slug, OPERATION_ASSIGNED, date_assigned))
            if date_unassigned is not None and date_unassigned in window:
                history.append(ReportRow(user_id, slug, OPERATION_UNASSIGNED, date_unassigned))

        history.sort(key=lambda row: row.date)
        logger.info(
            "User history collected",
            extra={
                "user_id": user_id,
                "window_start": window.start.isoformat(),
                "window_end": window.end.isoformat(),
                "rows": len(history),
            }
        )
        return history

    async def create_csv(self, history: List[ReportRow]) -> str:
        """
        Write the report to the storage directory.

        Returns:
            Public URL of the report file
        """
        reports = self.settings.reports
        file_id = "".join(secrets.choice(FILE_ID_ALPHABET) for _ in range(FILE_ID_LENGTH))
        file_name = f"{reports.FILE_PREFIX}{file_id}{reports.FILE_EXT}"
        file_path = Path(reports.STORAGE_DIR) / file_name

        try:
            await run_in_threadpool(_write_csv, file_path, history)
        except OSError as e:
            logger.error(
                "Writing history report failed",
                exc_info=True,
                extra={"file_path": str(file_path), "error": str(e)}
            )
            raise

        url = f"{self.settings.report_base_url}/reports/{file_name}"
        logger.info("History report written", extra={"file_path": str(file_path), "rows": len(history)})
        return url


def _write_csv(file_path: Path, history: List[ReportRow]) -> None:
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, "w", newline="", encoding="utf-8") as report_file:
        writer = csv.writer(report_file, delimiter=";", lineterminator="\n")
        for row in history:
            writer.writerow(row.as_csv_row())
