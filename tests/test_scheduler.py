from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, select

from signflow.models.notification import NotificationEvent, NotificationEventStatus
from signflow.models.signing import RequestStatus, SigningRequest
from signflow.schemas.scheduler import DispatchResult, SchedulerConfig
from signflow.services.scheduler import NotificationScheduler
from signflow.services.state_machine import SigningStateMachine

from tests.conftest import claim_render, signature_payload


def set_expiry(session: Session, request_id, expires_at: datetime) -> None:
    stored = session.get(SigningRequest, request_id)
    stored.expires_at = expires_at
    session.add(stored)
    session.commit()


def queued(session: Session, event_type: str) -> list[NotificationEvent]:
    session.expire_all()
    return list(session.exec(select(NotificationEvent).where(NotificationEvent.event_type == event_type)).all())


def test_deadline_warning_reports_hours_remaining(db_session: Session, session_factory, make_request) -> None:
    now = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)
    request = make_request(signing_order="parallel")
    set_expiry(db_session, request.id, now + timedelta(hours=20, minutes=10))
    config = SchedulerConfig(deadline_warning_hours=48, enable_expiry_warnings=False)

    result = NotificationScheduler(session_factory).check_deadline_warnings(config, now=now)

    assert result.processed == 1
    assert result.notified == 1
    warnings = queued(db_session, "deadline_approaching")
    assert sorted(event.recipient for event in warnings) == ["alice@example.com", "bob@example.com"]
    assert {event.payload["hours_remaining"] for event in warnings} == {21}


def test_deadline_warning_uses_urgent_variant_near_expiry(db_session: Session, session_factory, make_request) -> None:
    now = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)
    request = make_request(("alice@example.com",))
    set_expiry(db_session, request.id, now + timedelta(hours=2))
    config = SchedulerConfig(deadline_warning_hours=24, expiry_warning_hours=6, enable_expiry_warnings=True)

    NotificationScheduler(session_factory).check_deadline_warnings(config, now=now)

    assert [event.recipient for event in queued(db_session, "expiry_warning")] == ["alice@example.com"]
    assert queued(db_session, "deadline_approaching") == []


def test_deadline_warning_skips_requests_without_pending_signers(db_session: Session, session_factory, make_request) -> None:
    now = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)
    request = make_request(("alice@example.com",))
    SigningStateMachine(db_session).apply_signature(request.id, "alice@example.com", signature_payload())
    set_expiry(db_session, request.id, now + timedelta(hours=5))

    result = NotificationScheduler(session_factory).check_deadline_warnings(
        SchedulerConfig(deadline_warning_hours=24), now=now
    )

    assert result.processed == 1
    assert result.notified == 0
    assert queued(db_session, "deadline_approaching") == []


def test_deadline_warnings_can_be_disabled(session_factory) -> None:
    result = NotificationScheduler(session_factory).check_deadline_warnings(
        SchedulerConfig(enable_deadline_warnings=False)
    )

    assert result.processed == 0


def test_auto_reminders_match_the_lead_day(db_session: Session, session_factory, make_request) -> None:
    now = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)
    due_in_three = make_request(("alice@example.com",))
    due_in_five = make_request(("carol@example.com",))
    set_expiry(db_session, due_in_three.id, datetime(2030, 1, 4, 17, 30, tzinfo=timezone.utc))
    set_expiry(db_session, due_in_five.id, datetime(2030, 1, 6, 9, 0, tzinfo=timezone.utc))

    result = NotificationScheduler(session_factory).send_auto_reminders(
        SchedulerConfig(auto_reminder_days=[3]), now=now
    )

    assert result.processed == 1
    assert result.notified == 1
    reminders = queued(db_session, "signature_reminder")
    assert [event.recipient for event in reminders] == ["alice@example.com"]
    assert reminders[0].payload == {"days_remaining": 3}


def test_expired_check_delegates_to_the_sweep(db_session: Session, session_factory, make_request) -> None:
    request = make_request()
    set_expiry(db_session, request.id, datetime.now(timezone.utc) - timedelta(minutes=5))

    result = NotificationScheduler(session_factory).check_expired_documents()

    assert result.processed == 1
    assert result.notified == 1
    db_session.expire_all()
    assert db_session.get(SigningRequest, request.id).status == RequestStatus.EXPIRED


@pytest.mark.anyio
async def test_run_all_checks_builds_a_report_and_dispatches(
    db_session: Session, session_factory, make_request, notifier
) -> None:
    request = make_request(("alice@example.com",))
    set_expiry(db_session, request.id, datetime.now(timezone.utc) - timedelta(minutes=5))
    scheduler = NotificationScheduler(session_factory, notifier=notifier)

    report = await scheduler.run_all_checks(SchedulerConfig())

    assert report.total_errors == 0
    assert report.expired.notified == 1
    assert report.dispatched.delivered >= 2
    assert "document_expired" in notifier.types_for("alice@example.com")
    assert all(event.status == NotificationEventStatus.SENT for event in queued(db_session, "document_expired"))


@pytest.mark.anyio
async def test_run_all_checks_survives_a_failing_check(session_factory, notifier) -> None:
    def broken_recovery(session):
        raise RuntimeError("recovery unavailable")

    scheduler = NotificationScheduler(session_factory, notifier=notifier, recovery_factory=broken_recovery)

    report = await scheduler.run_all_checks()

    assert report.total_errors == 1
    assert "recovery unavailable" in report.expired.errors[0]
    assert report.deadline_warnings.errors == []


def test_checks_leave_a_rendering_request_alone(db_session: Session, session_factory, make_request) -> None:
    now = datetime.now(timezone.utc)
    request = make_request(signing_order="parallel", expires_at=now + timedelta(hours=5))
    machine = SigningStateMachine(db_session)
    for email in ("alice@example.com", "bob@example.com"):
        machine.apply_signature(request.id, email, signature_payload())
    claim_render(db_session, request.id)
    scheduler = NotificationScheduler(session_factory)

    warnings = scheduler.check_deadline_warnings(SchedulerConfig(deadline_warning_hours=24), now=now)
    expired = scheduler.check_expired_documents(now=now + timedelta(hours=6))

    assert warnings.notified == 0
    assert expired.processed == 0
    db_session.expire_all()
    assert db_session.get(SigningRequest, request.id).status == RequestStatus.IN_PROGRESS
    assert queued(db_session, "expiry_warning") == []


@pytest.mark.anyio
async def test_crashing_dispatch_reports_a_dispatch_result(session_factory, notifier) -> None:
    class BrokenDispatch(NotificationScheduler):
        def dispatch_pending(self, limit=None):
            raise RuntimeError("mail relay down")

    report = await BrokenDispatch(session_factory, notifier=notifier).run_all_checks()

    assert isinstance(report.dispatched, DispatchResult)
    assert "mail relay down" in report.dispatched.errors[0]
    assert report.dispatched.delivered == 0
