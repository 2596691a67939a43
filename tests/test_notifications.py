import json
from types import SimpleNamespace

import httpx
import pytest

from school_attendance.core.exceptions import ExternalServiceError
from school_attendance.core.telegram_sender import send_telegram_message
from school_attendance.summaries.services.notifications import (
    LogAlertNotifier,
    TelegramAlertNotifier,
)


def low_summary(**overrides):
    data = dict(
        id=11,
        student_id=1,
        class_id=7,
        subject_id=None,
        month=9,
        year=2025,
        attendance_percentage=33.33,
        minimum_required_percentage=75.0,
        total_absent_days=2,
        total_working_days=3,
        consecutive_absent_days=2,
    )
    data.update(overrides)
    return SimpleNamespace(**data)


def test_message_describes_the_summary():
    message = TelegramAlertNotifier.format_message(low_summary())

    assert "Student #1, class #7, all subjects" in message
    assert "September 2025" in message
    assert "<b>33.33%</b>" in message
    assert "minimum 75.00%" in message
    assert "Absent: 2 of 3" in message


async def test_telegram_notifier_posts_to_bot_api():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = TelegramAlertNotifier("bot-token", "-100200", client=client)
        await notifier.notify_below_minimum(low_summary(subject_id=3))

    assert len(requests) == 1
    assert requests[0].url.path == "/botbot-token/sendMessage"
    body = json.loads(requests[0].content)
    assert body["chat_id"] == "-100200"
    assert body["parse_mode"] == "HTML"
    assert "subject #3" in body["text"]


async def test_send_retries_then_succeeds():
    responses = [httpx.Response(502), httpx.Response(200, json={"ok": True})]

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: responses.pop(0))
    ) as client:
        await send_telegram_message("t", "c", "hello", attempts=2, client=client)

    assert responses == []


async def test_send_failure_raises_external_service_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(ExternalServiceError) as exc:
            await send_telegram_message("t", "c", "hello", attempts=1, client=client)

    assert exc.value.details["service"] == "telegram"


async def test_log_notifier_emits_business_event(caplog):
    caplog.set_level("INFO")

    await LogAlertNotifier().notify_below_minimum(low_summary())

    assert "low_attendance_alert" in caplog.text
