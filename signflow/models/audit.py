
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from signflow.models.base import TimestampedModel, UUIDModel


class AuditLog(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "audit_logs"

    signing_request_id: UUID | None = Field(default=None, foreign_key="signing_requests.id", index=True)
    event_type: str = Field(index=True)
    actor_email: str | None = Field(default=None, max_length=255)
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)
