"""
Alert delivery for below-minimum summaries.

The threshold monitor only talks to the AlertNotifier port; the channel
is picked from ALERT_CHANNEL.
"""
import calendar
import logging
from functools import lru_cache
from typing import Protocol

import httpx

from school_attendance.core.config import (
    ALERT_CHANNEL,
    ALERT_TELEGRAM_CHAT_ID,
    TELEGRAM_BOT_TOKEN,
)
from school_attendance.core.logging_utils import log_business_event
from school_attendance.core.telegram_sender import send_telegram_message
from school_attendance.summaries.models import AttendanceSummary

logger = logging.getLogger(__name__)


class AlertNotifier(Protocol):
    async def notify_below_minimum(self, summary: AttendanceSummary) -> None: ...


class LogAlertNotifier:
    """Records the alert as a business event only"""

    async def notify_below_minimum(self, summary: AttendanceSummary) -> None:
        log_business_event(
            "low_attendance_alert",
            "attendance_summary",
            summary.id,
            {
                "student_id": summary.student_id,
                "class_id": summary.class_id,
                "subject_id": summary.subject_id,
                "month": summary.month,
                "year": summary.year,
                "attendance_percentage": summary.attendance_percentage,
                "minimum_required_percentage": summary.minimum_required_percentage,
            },
        )


class TelegramAlertNotifier:
    def __init__(self, token: str, chat_id: str, client: httpx.AsyncClient = None):
        self.token = token
        self.chat_id = chat_id
        self.client = client

    @staticmethod
    def format_message(summary: AttendanceSummary) -> str:
        period = f"{calendar.month_name[summary.month]} {summary.year}"
        subject = (
            f"subject #{summary.subject_id}" if summary.subject_id else "all subjects"
        )
        return (
            f"⚠️ <b>Low attendance</b>\n\n"
            f"Student #{summary.student_id}, class #{summary.class_id}, {subject}\n"
            f"Period: {period}\n"
            f"Attendance: <b>{summary.attendance_percentage:.2f}%</b> "
            f"(minimum {summary.minimum_required_percentage:.2f}%)\n"
            f"Absent: {summary.total_absent_days} of {summary.total_working_days}, "
            f"longest streak {summary.consecutive_absent_days}"
        )

    async def notify_below_minimum(self, summary: AttendanceSummary) -> None:
        await send_telegram_message(
            self.token,
            self.chat_id,
            self.format_message(summary),
            client=self.client,
        )
        logger.info(
            f"Low attendance alert sent to Telegram for summary {summary.id}",
            extra={"summary_id": summary.id, "student_id": summary.student_id},
        )


@lru_cache
def get_alert_notifier() -> AlertNotifier:
    if ALERT_CHANNEL == "telegram":
        return TelegramAlertNotifier(TELEGRAM_BOT_TOKEN, ALERT_TELEGRAM_CHAT_ID)
    return LogAlertNotifier()
