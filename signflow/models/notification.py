from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from signflow.models.base import TimestampedModel, UTCDateTime, UUIDModel


class NotificationEventStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationEvent(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "notification_events"

    signing_request_id: UUID | None = Field(default=None, foreign_key="signing_requests.id", index=True)
    recipient: str = Field(max_length=255, index=True)
    event_type: str = Field(max_length=64)
    title: str = Field(max_length=255)
    message: str
    payload: dict | None = Field(default=None, sa_type=JSON)
    status: NotificationEventStatus = Field(default=NotificationEventStatus.PENDING, index=True)
    attempts: int = Field(default=0)
    last_error: str | None = Field(default=None)
    sent_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
