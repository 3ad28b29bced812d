import asyncio
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from issuetrack.core.errors import NotificationNotFound
from issuetrack.core.notifications import (
    NotificationDispatcher,
    NotificationFilters,
    SendEmailOptions,
    SendSMSOptions,
)
from issuetrack.integrations.email_transport import EmailMessage
from issuetrack.integrations.sms_transport import TwilioSmsTransport
from issuetrack.models import Notification


class SlowEmailTransport:
    """Holds every send open for ``delay`` seconds."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.attempts = 0
        self.started = asyncio.Event()

    async def send(self, message: EmailMessage) -> dict:
        self.attempts += 1
        self.started.set()
        await asyncio.sleep(self.delay)
        return {"accepted": [message.to]}


def email(to, **overrides):
    fields = dict(to=to, subject="Welcome", content="Hello there", category="system")
    fields.update(overrides)
    return SendEmailOptions(**fields)


async def test_one_row_per_recipient(session_factory, email_transport):
    dispatcher = NotificationDispatcher(session_factory, email_transport=email_transport)

    ids = await dispatcher.send_email(email(["a@example.com", "b@example.com"], priority="high"))

    assert len(ids) == 2
    assert ids[0] != ids[1]
    rows = [dispatcher.get_notification(i) for i in ids]
    assert {r.recipient for r in rows} == {"a@example.com", "b@example.com"}
    for row in rows:
        assert row.status == "sent"
        assert row.sent_at is not None
        assert row.priority == "high"
        assert row.provider_response["accepted"] == [row.recipient]
    assert [m.to for m in email_transport.sent] == ["a@example.com", "b@example.com"]


async def test_development_without_transport_logs_instead(session_factory, caplog):
    dispatcher = NotificationDispatcher(session_factory)

    with caplog.at_level("INFO", logger="issuetrack"):
        [notification_id] = await dispatcher.send_email(email("dev@example.com"))

    row = dispatcher.get_notification(notification_id)
    assert row.status == "sent"
    assert row.provider_response is None
    assert "[DEV] Email notification to=dev@example.com" in caplog.text


async def test_production_without_transport_fails_immediately(session_factory):
    dispatcher = NotificationDispatcher(session_factory, production=True)

    [email_id] = await dispatcher.send_email(email("ops@example.com"))
    [sms_id] = await dispatcher.send_sms(SendSMSOptions(to="+15550001", content="hi", category="auth"))

    row = dispatcher.get_notification(email_id)
    assert row.status == "failed"
    assert row.failure_reason == "SMTP not configured"
    assert row.retry_count == 0
    assert dispatcher.get_notification(sms_id).failure_reason == "SMS gateway not configured"


async def test_retries_until_exhausted_then_resend(session_factory, make_email_transport):
    transport = make_email_transport(fail_times=3)
    dispatcher = NotificationDispatcher(session_factory, email_transport=transport, max_retries=3)

    [notification_id] = await dispatcher.send_email(email("a@example.com"))
    row = dispatcher.get_notification(notification_id)
    assert row.status == "pending"
    assert row.retry_count == 1
    assert row.failure_reason == "smtp relay unavailable"
    assert row.provider_response == {"code": 421}

    assert await dispatcher.process_due() == 1
    assert dispatcher.get_notification(notification_id).retry_count == 2

    assert await dispatcher.process_due() == 1
    row = dispatcher.get_notification(notification_id)
    assert row.status == "failed"
    assert row.retry_count == 3

    # failed rows are not picked up by the sweep
    assert await dispatcher.process_due() == 0
    assert transport.attempts == 3

    assert await dispatcher.resend(notification_id, sent_by="admin-1") is True
    row = dispatcher.get_notification(notification_id)
    assert row.status == "sent"
    assert row.retry_count == 0
    assert row.failure_reason is None
    assert row.sent_by == "admin-1"


async def test_resend_unknown_notification(session_factory):
    dispatcher = NotificationDispatcher(session_factory)
    assert await dispatcher.resend("missing") is False


async def test_scheduled_notification_waits_for_its_time(session_factory, email_transport):
    now = datetime(2026, 3, 1, 12, 0, 0)
    clock = {"now": now}
    dispatcher = NotificationDispatcher(
        session_factory, email_transport=email_transport, clock=lambda: clock["now"]
    )

    [notification_id] = await dispatcher.send_email(
        email("later@example.com", scheduled_for=now + timedelta(hours=1))
    )
    assert dispatcher.get_notification(notification_id).status == "pending"
    assert await dispatcher.process_due() == 0

    clock["now"] = now + timedelta(hours=2)
    assert await dispatcher.process_due() == 1
    assert dispatcher.get_notification(notification_id).status == "sent"
    assert email_transport.sent[0].to == "later@example.com"


async def test_aware_schedule_times_are_stored_as_utc(session_factory, email_transport):
    dispatcher = NotificationDispatcher(session_factory, email_transport=email_transport)

    scheduled_for = datetime.now(timezone.utc) + timedelta(hours=1)
    [notification_id] = await dispatcher.send_email(email("later@example.com", scheduled_for=scheduled_for))

    row = dispatcher.get_notification(notification_id)
    assert row.status == "pending"
    assert row.scheduled_for.tzinfo is None
    assert row.scheduled_for == scheduled_for.replace(tzinfo=None)
    assert await dispatcher.process_due() == 0
    assert email_transport.sent == []


async def test_aware_schedule_time_in_another_zone(session_factory, email_transport):
    clock = {"now": datetime(2026, 3, 1, 11, 30, 0)}
    dispatcher = NotificationDispatcher(
        session_factory, email_transport=email_transport, clock=lambda: clock["now"]
    )

    # 14:00 at UTC+2 is 12:00 UTC
    scheduled_for = datetime(2026, 3, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    [notification_id] = await dispatcher.send_email(email("later@example.com", scheduled_for=scheduled_for))

    assert dispatcher.get_notification(notification_id).scheduled_for == datetime(2026, 3, 1, 12, 0, 0)
    assert dispatcher.get_notification(notification_id).status == "pending"

    clock["now"] = datetime(2026, 3, 1, 12, 0, 1)
    assert await dispatcher.process_due() == 1
    assert dispatcher.get_notification(notification_id).status == "sent"


async def test_provider_receipts(session_factory, email_transport):
    dispatcher = NotificationDispatcher(session_factory, email_transport=email_transport)
    [a, b] = await dispatcher.send_email(email(["a@example.com", "b@example.com"]))

    assert dispatcher.record_provider_status(a, "delivered").status == "delivered"
    bounced = dispatcher.record_provider_status(b, "bounced", provider_response={"reason": "mailbox full"})
    assert bounced.status == "bounced"
    assert bounced.failure_reason == "Bounced by provider"

    with pytest.raises(ValueError):
        dispatcher.record_provider_status(a, "sent")
    with pytest.raises(NotificationNotFound):
        dispatcher.record_provider_status("missing", "delivered")

    # bounced mail can be sent again
    assert await dispatcher.resend(b) is True
    assert dispatcher.get_notification(b).status == "sent"


async def test_list_and_stats(session_factory, email_transport):
    dispatcher = NotificationDispatcher(session_factory, email_transport=email_transport)
    await dispatcher.send_email(email("a@example.com", subject="Password reset", category="auth", user_id="u-1"))
    await dispatcher.send_email(email("b@example.com", category="error-notification"))
    await dispatcher.send_sms(SendSMSOptions(to="+15550001", content="code 1234", category="auth"))

    assert len(dispatcher.list_notifications()) == 3
    assert len(dispatcher.list_notifications(NotificationFilters(type="sms"))) == 1
    assert len(dispatcher.list_notifications(NotificationFilters(category="auth"))) == 2
    assert [n.recipient for n in dispatcher.list_notifications(NotificationFilters(user_id="u-1"))] == [
        "a@example.com"
    ]
    assert [n.recipient for n in dispatcher.list_notifications(NotificationFilters(search="reset"))] == [
        "a@example.com"
    ]

    stats = dispatcher.get_notification_stats()
    assert stats["total"] == 3
    assert stats["sent"] == 3
    assert stats["failed"] == 0
    assert stats["byType"] == {"email": 2, "sms": 1}
    assert stats["byCategory"]["auth"] == 2
    assert stats["byCategory"]["error-notification"] == 1


async def test_sms_rows_have_no_subject(session_factory):
    dispatcher = NotificationDispatcher(session_factory)
    [notification_id] = await dispatcher.send_sms(
        SendSMSOptions(to="+15550001", content="hi", category="security")
    )
    row = dispatcher.get_notification(notification_id)
    assert row.type == "sms"
    assert row.subject is None


async def test_twilio_transport_delivers_sms(session_factory):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM123", "status": "queued"})

    sms = TwilioSmsTransport("AC1", "token", "+15559999", transport=httpx.MockTransport(handler))
    dispatcher = NotificationDispatcher(session_factory, sms_transport=sms)

    [notification_id] = await dispatcher.send_sms(
        SendSMSOptions(to="+15550001", content="Your code is 1234", category="auth")
    )

    row = dispatcher.get_notification(notification_id)
    assert row.status == "sent"
    assert row.provider_response["sid"] == "SM123"

    request = seen[0]
    assert request.url.path == "/2010-04-01/Accounts/AC1/Messages.json"
    form = parse_qs(request.content.decode())
    assert form == {"To": ["+15550001"], "From": ["+15559999"], "Body": ["Your code is 1234"]}
    assert request.headers["authorization"].startswith("Basic ")


async def test_twilio_rejection_counts_as_failed_attempt(session_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, content=json.dumps({"code": 21211, "message": "Invalid 'To' number"}))

    sms = TwilioSmsTransport("AC1", "token", "+15559999", transport=httpx.MockTransport(handler))
    dispatcher = NotificationDispatcher(session_factory, sms_transport=sms)

    [notification_id] = await dispatcher.send_sms(SendSMSOptions(to="bogus", content="hi", category="auth"))

    row = dispatcher.get_notification(notification_id)
    assert row.status == "pending"
    assert row.retry_count == 1
    assert "Invalid 'To' number" in row.failure_reason
    assert row.provider_response["code"] == 21211


async def test_in_flight_delivery_is_not_attempted_twice(session_factory):
    transport = SlowEmailTransport(delay=0.2)
    dispatcher = NotificationDispatcher(session_factory, email_transport=transport, consumer_id="worker-1")

    sending = asyncio.create_task(dispatcher.send_email(email("a@example.com")))
    await transport.started.wait()

    [row] = dispatcher.list_notifications()
    assert row.status == "pending"
    assert row.locked_by == "worker-1"
    assert row.locked_at is not None

    # the sweep and a manual resend both see the claim
    assert await dispatcher.process_due() == 0
    assert await dispatcher.resend(row.id) is False
    assert await dispatcher.deliver(row.id) is None

    [notification_id] = await sending
    assert transport.attempts == 1
    row = dispatcher.get_notification(notification_id)
    assert row.status == "sent"
    assert row.locked_at is None
    assert row.locked_by is None


async def test_failed_attempt_releases_the_claim(session_factory, make_email_transport):
    dispatcher = NotificationDispatcher(session_factory, email_transport=make_email_transport(fail_times=1))

    [notification_id] = await dispatcher.send_email(email("a@example.com"))

    row = dispatcher.get_notification(notification_id)
    assert row.status == "pending"
    assert row.locked_at is None
    assert await dispatcher.process_due() == 1
    assert dispatcher.get_notification(notification_id).status == "sent"


async def test_abandoned_claim_expires(session_factory, make_email_transport):
    now = datetime(2026, 3, 1, 12, 0, 0)
    transport = make_email_transport(fail_times=1)
    dispatcher = NotificationDispatcher(
        session_factory, email_transport=transport, lock_seconds=300, clock=lambda: now
    )
    [notification_id] = await dispatcher.send_email(email("a@example.com"))

    def claim(at):
        with session_factory() as db:
            row = db.get(Notification, notification_id)
            row.locked_at = at
            row.locked_by = "crashed-worker"
            db.commit()

    claim(now - timedelta(seconds=60))
    assert await dispatcher.process_due() == 0

    claim(now - timedelta(minutes=10))
    assert await dispatcher.process_due() == 1
    row = dispatcher.get_notification(notification_id)
    assert row.status == "sent"
    assert row.locked_by is None
    assert transport.attempts == 2
