import smtplib

import pytest
from sqlmodel import Session, select

from signflow.core.errors import DeliveryFailure
from signflow.models.notification import NotificationEvent, NotificationEventStatus
from signflow.models.signing import RequestStatus
from signflow.services.notification import EmailConfig, NotificationService
from signflow.services.outbox import NotificationDispatcher, NotificationOutbox
from signflow.services.state_machine import SigningStateMachine

from tests.conftest import RecordingNotifier


class FakeSMTP:
    def __init__(self, host, port, timeout=None):  # noqa: D401
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.sent_messages = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def send_message(self, message):
        self.sent_messages.append(message)


def smtp_service(**overrides) -> NotificationService:
    config = {
        "host": "smtp.example.com",
        "port": 587,
        "username": "user",
        "password": "pass",
        "sender": "Sender <sender@example.com>",
        "starttls": True,
    }
    config.update(overrides)
    return NotificationService(email_config=EmailConfig(**config), public_base_url="http://example.com")


def test_email_notification_success(monkeypatch):
    fake = FakeSMTP("smtp.example.com", 587, timeout=10)
    monkeypatch.setattr(smtplib, "SMTP", lambda host, port, timeout=None: fake)

    service = smtp_service()
    result = service.notify(
        "to@example.com",
        "signature_requested",
        "Signature requested: Contract ABC",
        "Please sign Contract ABC.",
        {"request_id": "req-1"},
    )

    assert result is True
    assert fake.started_tls is True
    assert fake.logged_in == ("user", "pass")
    assert len(fake.sent_messages) == 1
    message = fake.sent_messages[0]
    assert message["To"] == "to@example.com"
    assert message.is_multipart()
    html_part = message.get_body(preferencelist=("html",))
    text_part = message.get_body(preferencelist=("plain",))
    assert "http://example.com/sign/req-1" in html_part.get_content()
    assert "Please sign Contract ABC." in text_part.get_content()


def test_notification_without_channel_is_logged_in_app(monkeypatch):
    def forbidden(*args, **kwargs):
        raise AssertionError("SMTP must not be used without configuration")

    monkeypatch.setattr(smtplib, "SMTP", forbidden)

    assert NotificationService().notify("to@example.com", "signer_signed", "Signed", "Bob signed") is True


def test_undeliverable_recipient_raises_delivery_failure():
    with pytest.raises(DeliveryFailure):
        NotificationService().notify("not-an-address", "signer_signed", "Signed", "Bob signed")


def test_smtp_error_becomes_delivery_failure(monkeypatch):
    class ErrorSMTP(FakeSMTP):
        def send_message(self, message):  # noqa: D401
            raise smtplib.SMTPException("SMTP send failed")

    monkeypatch.setattr(smtplib, "SMTP", lambda host, port, timeout=None: ErrorSMTP(host, port, timeout))

    with pytest.raises(DeliveryFailure) as excinfo:
        smtp_service(username=None, password=None, starttls=False).notify(
            "to@example.com", "document_completed", "Completed", "All parties signed"
        )
    assert "SMTP send failed" in excinfo.value.message


def test_outbox_skips_blank_recipients_and_deduplicates(db_session: Session):
    outbox = NotificationOutbox(db_session)

    assert outbox.enqueue("", "signer_signed", "t", "m") is None
    count = outbox.enqueue_many(["A@example.com", "a@example.com", None, "b@example.com"], "signer_signed", "t", "m")
    db_session.commit()

    assert count == 2
    stored = db_session.exec(select(NotificationEvent.recipient)).all()
    assert sorted(stored) == ["a@example.com", "b@example.com"]


def test_dispatcher_records_failures_and_retries_up_to_the_limit(db_session: Session, make_request):
    request = make_request()
    notifier = RecordingNotifier(failing={"alice@example.com"})
    dispatcher = NotificationDispatcher(db_session, notifier, max_attempts=2)

    first = dispatcher.drain()
    assert first.delivered == 0
    assert first.failed == 1
    event = db_session.exec(select(NotificationEvent)).one()
    assert event.status == NotificationEventStatus.FAILED
    assert event.attempts == 1
    assert "unavailable" in event.last_error

    second = dispatcher.drain()
    assert second.failed == 1
    assert dispatcher.drain().failed == 0

    notifier.failing.clear()
    assert dispatcher.drain().delivered == 0
    db_session.refresh(event)
    assert event.attempts == 2

    machine = SigningStateMachine(db_session)
    assert machine.get_request(request.id).status == RequestStatus.INITIATED


def test_dispatcher_marks_delivered_events_sent(db_session: Session, make_request):
    request = make_request(signing_order="parallel")
    notifier = RecordingNotifier(failing={"bob@example.com"})

    result = NotificationDispatcher(db_session, notifier).drain()

    assert result.delivered == 1
    assert result.failed == 1
    assert notifier.types_for("alice@example.com") == ["signature_requested"]
    assert notifier.sent[0]["metadata"]["request_id"] == str(request.id)
    statuses = {
        event.recipient: event.status for event in db_session.exec(select(NotificationEvent)).all()
    }
    assert statuses == {
        "alice@example.com": NotificationEventStatus.SENT,
        "bob@example.com": NotificationEventStatus.FAILED,
    }
