from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import Field, Relationship

from signflow.models.base import TimestampedModel, UTCDateTime, UUIDModel
from signflow.models.document import Document


class RequestStatus(str, Enum):
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"
    PARTIALLY_EXPIRED = "partially_expired"
    CANCELLED = "cancelled"
    PDF_GENERATION_FAILED = "pdf_generation_failed"


TERMINAL_STATUSES = frozenset(
    {
        RequestStatus.COMPLETED,
        RequestStatus.DECLINED,
        RequestStatus.EXPIRED,
        RequestStatus.PARTIALLY_EXPIRED,
        RequestStatus.CANCELLED,
    }
)
OPEN_STATUSES = frozenset({RequestStatus.INITIATED, RequestStatus.IN_PROGRESS})


class RenderStatus(str, Enum):
    IDLE = "idle"
    GENERATING = "generating_pdf"
    GENERATED = "generated"
    FAILED = "failed"


class SigningOrder(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class SignerStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"


ACTIONABLE_SIGNER_STATUSES = frozenset({SignerStatus.PENDING, SignerStatus.VIEWED})


class SigningRequest(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signing_requests"

    title: str = Field(max_length=255)
    document_id: UUID = Field(foreign_key="documents.id", index=True)
    initiated_by: str = Field(max_length=255, index=True)
    status: RequestStatus = Field(default=RequestStatus.INITIATED, index=True)
    render_status: RenderStatus = Field(default=RenderStatus.IDLE)
    signing_order: str = Field(default=SigningOrder.SEQUENTIAL.value, max_length=32)
    settings: dict | None = Field(default=None, sa_type=JSON)
    require_all_signers: bool = Field(default=True)
    require_totp: bool = Field(default=False)
    expires_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime)
    final_document_ref: str | None = Field(default=None)
    declined_by: str | None = Field(default=None, max_length=255)
    decline_reason: str | None = Field(default=None)
    declined_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    expired_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancelled_by: str | None = Field(default=None, max_length=255)
    extended_by: str | None = Field(default=None, max_length=255)
    extended_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    error_message: str | None = Field(default=None)
    render_attempts: int = Field(default=0)
    render_started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    document: Document = Relationship()
    signers: List["Signer"] = Relationship(
        back_populates="request",
        sa_relationship_kwargs={"order_by": "Signer.order_index"},
    )


class Signer(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signers"
    __table_args__ = (UniqueConstraint("signing_request_id", "email", name="uq_signers_request_email"),)

    signing_request_id: UUID = Field(foreign_key="signing_requests.id", index=True)
    email: str = Field(max_length=255, index=True)
    name: str = Field(max_length=255)
    order_index: int = Field(default=1)
    status: SignerStatus = Field(default=SignerStatus.PENDING)
    viewed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    signed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    declined_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    decline_reason: str | None = Field(default=None)
    signature_data: dict | None = Field(default=None, sa_type=JSON)
    reset_by: str | None = Field(default=None, max_length=255)
    reset_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    request: SigningRequest = Relationship(back_populates="signers")


class SignerBinding(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signer_bindings"
    __table_args__ = (UniqueConstraint("signing_request_id", "binding_token", name="uq_signer_bindings_token"),)

    signing_request_id: UUID = Field(foreign_key="signing_requests.id", index=True)
    binding_token: str = Field(max_length=255)
    signer_email: str = Field(max_length=255)
