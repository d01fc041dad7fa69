from __future__ import annotations

import logging
from typing import Any, Iterable
from uuid import UUID

from sqlmodel import Session, select

from signflow.core.config import settings
from signflow.core.errors import DeliveryFailure
from signflow.models.base import utcnow
from signflow.models.notification import NotificationEvent, NotificationEventStatus
from signflow.schemas.scheduler import DispatchResult
from signflow.services.notification import NotificationService

logger = logging.getLogger("signflow.outbox")


class NotificationOutbox:
    """Collects notifications produced by a state transition inside the same unit of work."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def enqueue(
        self,
        recipient: str | None,
        event_type: str,
        title: str,
        message: str,
        *,
        signing_request_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> NotificationEvent | None:
        if not recipient:
            return None
        event = NotificationEvent(
            signing_request_id=signing_request_id,
            recipient=recipient.strip().lower(),
            event_type=event_type,
            title=title,
            message=message,
            payload=payload or {},
        )
        self.session.add(event)
        return event

    def enqueue_many(
        self,
        recipients: Iterable[str],
        event_type: str,
        title: str,
        message: str,
        *,
        signing_request_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> int:
        seen: set[str] = set()
        for recipient in recipients:
            normalized = (recipient or "").strip().lower()
            if not normalized or normalized in seen:
                continue
            seen.add(normalized)
            self.enqueue(
                normalized,
                event_type,
                title,
                message,
                signing_request_id=signing_request_id,
                payload=payload,
            )
        return len(seen)


class NotificationDispatcher:
    """Drains pending outbox rows through the notification collaborator."""

    def __init__(
        self,
        session: Session,
        notifier: NotificationService,
        max_attempts: int | None = None,
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.max_attempts = max_attempts or settings.notification_max_attempts

    def drain(self, limit: int | None = None) -> DispatchResult:
        result = DispatchResult()
        statement = (
            select(NotificationEvent)
            .where(
                (NotificationEvent.status == NotificationEventStatus.PENDING)
                | (
                    (NotificationEvent.status == NotificationEventStatus.FAILED)
                    & (NotificationEvent.attempts < self.max_attempts)
                )
            )
            .order_by(NotificationEvent.created_at.asc())
            .limit(limit or settings.notification_batch_size)
        )
        events = self.session.exec(statement).all()
        for event in events:
            event.attempts += 1
            event.updated_at = utcnow()
            try:
                payload = dict(event.payload or {})
                if event.signing_request_id:
                    payload.setdefault("request_id", str(event.signing_request_id))
                self.notifier.notify(event.recipient, event.event_type, event.title, event.message, payload)
            except DeliveryFailure as exc:
                event.status = NotificationEventStatus.FAILED
                event.last_error = exc.message
                result.failed += 1
                result.errors.append(exc.message)
                logger.warning("Delivery failed for event %s (%s): %s", event.id, event.event_type, exc.message)
            except Exception as exc:
                event.status = NotificationEventStatus.FAILED
                event.last_error = str(exc)
                result.failed += 1
                result.errors.append(f"{event.event_type} to {event.recipient}: {exc}")
                logger.exception("Unexpected delivery error for event %s", event.id)
            else:
                event.status = NotificationEventStatus.SENT
                event.sent_at = utcnow()
                event.last_error = None
                result.delivered += 1
            self.session.add(event)
            self.session.commit()
        return result
