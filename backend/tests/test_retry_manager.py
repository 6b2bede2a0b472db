"""
Retry sweep: due failed rows are retried against the same log row, at most once.
- Only failed rows with retry_after <= now and budget left are picked up
- A second sweep right after the first sends nothing
- Two overlapping sweeps dispatch each row once
- Rows for one recipient+type go out in retry_after order, one at a time
- Time budget defers remaining rows; stale pending rows are failed, not retried
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone

NOW = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)


async def _no_sleep(seconds):
    await asyncio.sleep(0)


def _manager(sms=None, email=None, **kwargs):
    from models import BusinessContext
    from services.notification_orchestrator import NotificationOrchestrator
    from services.providers import MockEmailProvider, MockSMSProvider
    from services.retry_manager import RetryManager
    from services.settings_cache import SettingsCache

    orchestrator = NotificationOrchestrator(
        email_provider=email or MockEmailProvider(),
        sms_provider=sms or MockSMSProvider(),
        settings_cache=SettingsCache(ttl_seconds=0),
        business_context=BusinessContext(),
        now_fn=lambda: NOW,
    )
    kwargs.setdefault("sleep", _no_sleep)
    return RetryManager(orchestrator, **kwargs)


def _failed_row(store, recipient="+15551234567", due_in=timedelta(minutes=-1), **overrides):
    from models import NotificationAttempt

    fields = dict(
        type="appointment_reminder",
        channel="sms",
        recipient=recipient,
        template_data={"pet_name": "Biscuit", "appointment_time": "10:00 AM"},
        status="failed",
        retry_count=1,
        max_retries=3,
        attempts=1,
        error_message="Service Unavailable",
        error_type="transient",
        retry_after=NOW + due_in,
        created_at=NOW - timedelta(minutes=30),
    )
    fields.update(overrides)
    row = NotificationAttempt(**fields).model_dump()
    store.notifications_log.docs.append(row)
    return row


def _row(store, log_id):
    return next(d for d in store.notifications_log.docs if d["log_id"] == log_id)


@pytest.mark.asyncio
async def test_due_row_is_retried_in_place(seeded_store):
    from services.providers import MockSMSProvider

    row = _failed_row(seeded_store)
    sms = MockSMSProvider()

    result = await _manager(sms=sms).process_due(now=NOW)

    assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)
    assert result.errors == []
    assert len(sms.sent) == 1
    assert len(seeded_store.notifications_log.docs) == 1
    stored = _row(seeded_store, row["log_id"])
    assert stored["status"] == "sent"
    assert stored["retry_after"] is None
    assert stored["claim_owner"]


@pytest.mark.asyncio
async def test_second_sweep_sends_nothing(seeded_store):
    from services.providers import MockSMSProvider

    _failed_row(seeded_store)
    sms = MockSMSProvider()
    manager = _manager(sms=sms)

    await manager.process_due(now=NOW)
    again = await manager.process_due(now=NOW)

    assert again.processed == 0
    assert len(sms.sent) == 1


@pytest.mark.asyncio
async def test_not_due_test_and_exhausted_rows_are_skipped(seeded_store):
    from services.providers import MockSMSProvider

    _failed_row(seeded_store, due_in=timedelta(minutes=5))
    _failed_row(seeded_store, recipient="+15550000001", is_test=True)
    _failed_row(seeded_store, recipient="+15550000002", retry_count=3, max_retries=2)
    _failed_row(seeded_store, recipient="+15550000003", retry_after=None)
    sms = MockSMSProvider()

    result = await _manager(sms=sms).process_due(now=NOW)

    assert result.processed == 0
    assert sms.sent == []


@pytest.mark.asyncio
async def test_failed_retry_reschedules_or_exhausts(seeded_store):
    """A retry that fails again either gets a later retry_after or is closed out."""
    from services.providers import MockSMSProvider, ProviderError

    with_budget = _failed_row(seeded_store, recipient="+15550000001", retry_count=1, max_retries=3)
    last = _failed_row(seeded_store, recipient="+15550000002", retry_count=2, max_retries=2)
    sms = MockSMSProvider()
    sms.fail_next(ProviderError("Service Unavailable", status_code=503))
    sms.fail_next(ProviderError("Service Unavailable", status_code=503))

    result = await _manager(sms=sms, concurrency=1).process_due(now=NOW)

    assert (result.processed, result.succeeded, result.failed) == (2, 0, 2)
    rescheduled = _row(seeded_store, with_budget["log_id"])
    assert rescheduled["status"] == "failed"
    assert rescheduled["retry_count"] == 2
    assert rescheduled["retry_after"] > NOW
    exhausted = _row(seeded_store, last["log_id"])
    assert exhausted["status"] == "failed"
    assert exhausted["retry_after"] is None
    assert exhausted["retry_count"] == 2


class _DownProvider:
    """Email or SMS provider that answers every call with a 503."""

    def __init__(self):
        self.calls = 0

    async def send(self, *args):
        from services.providers import ProviderError

        self.calls += 1
        raise ProviderError("Service Unavailable", status_code=503)


def _seed_settings(store):
    from database import DEFAULT_NOTIFICATION_SETTINGS

    for notification_type, (email, sms, max_retries, delays) in DEFAULT_NOTIFICATION_SETTINGS.items():
        store.notification_settings.docs.append({
            "notification_type": notification_type,
            "email_enabled": email,
            "sms_enabled": sms,
            "max_retries": max_retries,
            "retry_delays_seconds": list(delays),
        })


@pytest.mark.asyncio
@pytest.mark.parametrize("notification_type, channel, recipient, template_data, max_retries", [
    (
        "payment_failed", "email", {"recipient_email": "jane@example.com"},
        {"customer_name": "Jane", "amount": "$40", "payment_url": "https://x/pay"}, 0,
    ),
    ("status_ready", "sms", {"recipient_phone": "+15551234567"}, {"pet_name": "Biscuit"}, 1),
    (
        "appointment_reminder", "sms", {"recipient_phone": "+15551234567"},
        {"pet_name": "Biscuit", "appointment_time": "10:00 AM"}, 2,
    ),
])
async def test_seeded_retry_budget_is_spent_in_full(
    seeded_store, notification_type, channel, recipient, template_data, max_retries,
):
    """A type allowing N retries is sent 1 + N times before it is closed out."""
    from models import NotificationRequest
    from services.notification_log import notification_log

    _seed_settings(seeded_store)
    down = _DownProvider()
    manager = _manager(sms=down, email=down)
    later = NOW + timedelta(days=1)

    first = await manager.orchestrator.send(NotificationRequest(
        type=notification_type,
        channel=channel,
        template_data=template_data,
        **recipient,
    ))

    pickups = 0
    for _ in range(max_retries + 2):
        swept = await manager.process_due(now=later)
        if swept.processed == 0:
            break
        pickups += swept.processed

    assert down.calls == max_retries + 1
    assert pickups == max_retries
    row = _row(seeded_store, first.log_id)
    assert row["status"] == "failed"
    assert row["retry_after"] is None
    assert row["retry_count"] == max_retries
    assert row["attempts"] == max_retries + 1
    assert await notification_log.find_due_retries(later) == []
    assert any(d["action"] == "NOTIFICATION_RETRIES_EXHAUSTED" for d in seeded_store.audit_logs.docs)


@pytest.mark.asyncio
async def test_last_scheduled_retry_is_still_due(seeded_store):
    from services.providers import MockSMSProvider

    row = _failed_row(seeded_store, retry_count=2, max_retries=2)
    sms = MockSMSProvider()

    result = await _manager(sms=sms).process_due(now=NOW)

    assert result.succeeded == 1
    assert _row(seeded_store, row["log_id"])["status"] == "sent"


@pytest.mark.asyncio
async def test_error_before_dispatch_releases_claim(seeded_store):
    """A retry that never reached the provider goes back to failed and due, not stuck pending."""
    from unittest.mock import AsyncMock, patch
    from services.providers import MockSMSProvider

    row = _failed_row(seeded_store)
    sms = MockSMSProvider()
    manager = _manager(sms=sms)

    with patch.object(
        manager.orchestrator.settings_cache, "get", AsyncMock(side_effect=RuntimeError("settings unavailable")),
    ):
        result = await manager.process_due(now=NOW)

    assert result.processed == 0
    assert result.errors == [f"{row['log_id']}: settings unavailable"]
    assert sms.sent == []
    stored = _row(seeded_store, row["log_id"])
    assert stored["status"] == "failed"
    assert stored["retry_after"] == row["retry_after"]
    assert stored["retry_count"] == 1
    assert await manager.recover_stale_claims(now=NOW + timedelta(hours=1)) == 0

    again = await manager.process_due(now=NOW)

    assert again.succeeded == 1
    assert len(sms.sent) == 1


@pytest.mark.asyncio
async def test_release_needs_the_claiming_sweep(seeded_store):
    from services.notification_log import notification_log

    row = _failed_row(seeded_store)
    await notification_log.claim_for_retry(row["log_id"], "sweep-a", NOW)

    assert await notification_log.release_claim(row["log_id"], "sweep-b", row["retry_after"]) is False
    assert _row(seeded_store, row["log_id"])["status"] == "pending"
    assert await notification_log.release_claim(row["log_id"], "sweep-a", row["retry_after"]) is True
    assert _row(seeded_store, row["log_id"])["status"] == "failed"


@pytest.mark.asyncio
async def test_overlapping_sweeps_dispatch_each_row_once(seeded_store):
    from services.providers import MockSMSProvider

    for i in range(5):
        _failed_row(seeded_store, recipient=f"+1555000000{i}")
    sms = MockSMSProvider()
    first = _manager(sms=sms)
    second = _manager(sms=sms)

    a, b = await asyncio.gather(first.process_due(now=NOW), second.process_due(now=NOW))

    assert len(sms.sent) == 5
    assert len({s["to"] for s in sms.sent}) == 5
    assert a.processed + b.processed == 5
    assert all(d["status"] == "sent" for d in seeded_store.notifications_log.docs)


@pytest.mark.asyncio
async def test_same_recipient_rows_go_out_oldest_first_and_serially(seeded_store):
    from services.providers import ProviderResult, SMSProvider

    class TrackingSMS(SMSProvider):
        def __init__(self):
            self.in_flight = 0
            self.max_in_flight = 0
            self.bodies = []

        async def send(self, to, body):
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            await asyncio.sleep(0)
            self.bodies.append(body)
            self.in_flight -= 1
            return ProviderResult(message_id=f"sm{len(self.bodies)}")

    _failed_row(
        seeded_store,
        due_in=timedelta(minutes=-1),
        template_data={"pet_name": "Newer", "appointment_time": "10:00 AM"},
    )
    _failed_row(
        seeded_store,
        due_in=timedelta(minutes=-5),
        template_data={"pet_name": "Older", "appointment_time": "9:00 AM"},
    )
    sms = TrackingSMS()

    result = await _manager(sms=sms).process_due(now=NOW)

    assert result.succeeded == 2
    assert sms.max_in_flight == 1
    assert "Older" in sms.bodies[0]
    assert "Newer" in sms.bodies[1]


@pytest.mark.asyncio
async def test_batch_limit_takes_oldest_due_rows(seeded_store):
    from services.providers import MockSMSProvider

    oldest = _failed_row(seeded_store, recipient="+15550000001", due_in=timedelta(minutes=-30))
    _failed_row(seeded_store, recipient="+15550000002", due_in=timedelta(minutes=-1))
    sms = MockSMSProvider()

    result = await _manager(sms=sms).process_due(now=NOW, batch_limit=1)

    assert result.processed == 1
    assert sms.sent[0]["to"] == oldest["recipient"]


@pytest.mark.asyncio
async def test_spent_budget_leaves_rows_due(seeded_store):
    from services.notification_log import notification_log
    from services.providers import MockSMSProvider

    _failed_row(seeded_store)
    sms = MockSMSProvider()

    result = await _manager(sms=sms, budget_seconds=0).process_due(now=NOW)

    assert result.processed == 0
    assert sms.sent == []
    assert len(await notification_log.find_due_retries(NOW)) == 1


@pytest.mark.asyncio
async def test_jitter_pause_runs_before_each_claim(seeded_store):
    pauses = []

    async def record_sleep(seconds):
        pauses.append(seconds)

    _failed_row(seeded_store)
    manager = _manager(sleep=record_sleep, jitter_max_seconds=1.0, uniform=lambda low, high: high)

    await manager.process_due(now=NOW)

    assert pauses == [1.0]


@pytest.mark.asyncio
async def test_unexpected_error_is_reported_not_raised(seeded_store):
    from unittest.mock import AsyncMock, patch

    row = _failed_row(seeded_store)
    manager = _manager()

    with patch.object(manager.orchestrator, "send", AsyncMock(side_effect=RuntimeError("boom"))):
        result = await manager.process_due(now=NOW)

    assert result.processed == 0
    assert result.errors == [f"{row['log_id']}: boom"]


@pytest.mark.asyncio
async def test_stale_pending_rows_are_failed_not_retried(seeded_store):
    from models import NotificationAttempt
    from services.notification_log import STALE_CLAIM_ERROR, notification_log

    stale = NotificationAttempt(
        type="appointment_reminder",
        channel="sms",
        recipient="+15551234567",
        status="pending",
        created_at=NOW - timedelta(hours=1),
    ).model_dump()
    stale["claimed_at"] = NOW - timedelta(minutes=30)
    fresh = NotificationAttempt(
        type="appointment_reminder",
        channel="sms",
        recipient="+15559999999",
        status="pending",
        created_at=NOW - timedelta(minutes=1),
    ).model_dump()
    seeded_store.notifications_log.docs.extend([stale, fresh])

    recovered = await _manager().recover_stale_claims(now=NOW, stale_minutes=15)

    assert recovered == 1
    stored = _row(seeded_store, stale["log_id"])
    assert stored["status"] == "failed"
    assert stored["error_message"] == STALE_CLAIM_ERROR
    assert stored["retry_after"] is None
    assert _row(seeded_store, fresh["log_id"])["status"] == "pending"
    assert await notification_log.find_due_retries(NOW + timedelta(days=1)) == []
    assert any(d["action"] == "NOTIFICATION_CLAIM_RECOVERED" for d in seeded_store.audit_logs.docs)


@pytest.mark.asyncio
async def test_job_runner_reports_sweep_summary(seeded_store):
    from unittest.mock import patch
    from job_runner import run_notification_retry_worker
    from services.providers import MockSMSProvider

    _failed_row(seeded_store, due_in=timedelta(days=-1))
    manager = _manager(sms=MockSMSProvider())

    with patch("services.retry_manager.get_retry_manager", return_value=manager):
        summary = await run_notification_retry_worker(batch_limit=10)

    assert summary["count"] == 1
    assert summary["succeeded"] == 1
    assert summary["message"] == "Processed 1 notification retries"
