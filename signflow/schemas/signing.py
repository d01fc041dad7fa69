from datetime import datetime
from typing import Any, List
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from signflow.models.signing import RenderStatus, RequestStatus, SignerStatus, SigningOrder
from signflow.schemas.common import IDModel, Timestamped


class SignerCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    order: int = Field(default=1, gt=0)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class DocumentFieldCreate(BaseModel):
    field_key: str = Field(min_length=1, max_length=128)
    field_type: str = Field(default="signature", min_length=1, max_length=32)
    signer_binding: str | None = None
    page: int = Field(default=1, ge=1)
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    width: float = Field(default=0.25, gt=0.0, le=1.0)
    height: float = Field(default=0.05, gt=0.0, le=1.0)
    label: str | None = None
    required: bool = True

    @field_validator("field_type")
    @classmethod
    def normalize_type(cls, value: str) -> str:
        return value.strip().lower()


class SigningRequestCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    document_id: UUID | None = None
    document_base64: str | None = None
    document_filename: str | None = None
    fields: List[DocumentFieldCreate] = Field(default_factory=list)
    signers: List[SignerCreate]
    bindings: dict[str, EmailStr] | None = None
    signing_order: SigningOrder = SigningOrder.SEQUENTIAL
    require_all_signers: bool = True
    require_totp: bool = False
    expires_at: datetime | None = None
    settings: dict[str, Any] | None = None


class SignatureData(BaseModel):
    signature_image: str | None = None  # base64-encoded payload or data URL
    signer_name: str | None = None
    field_values: dict[str, Any] | None = None
    location: dict[str, Any] | None = None
    profile_location: dict[str, Any] | None = None


class SignAction(BaseModel):
    signature: SignatureData
    totp_token: str | None = None


class DeclineAction(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class ExtendDeadlineAction(BaseModel):
    new_expiry: str


class CancelAction(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class SignerRead(IDModel, Timestamped):
    signing_request_id: UUID
    email: str
    name: str
    order_index: int
    status: SignerStatus
    viewed_at: datetime | None
    signed_at: datetime | None
    declined_at: datetime | None
    decline_reason: str | None
    reset_by: str | None
    reset_at: datetime | None


class SigningRequestRead(IDModel, Timestamped):
    title: str
    document_id: UUID
    initiated_by: str
    status: RequestStatus
    render_status: RenderStatus
    signing_order: str
    require_all_signers: bool
    require_totp: bool
    expires_at: datetime | None
    final_document_ref: str | None
    declined_by: str | None
    decline_reason: str | None
    completed_at: datetime | None
    error_message: str | None
    signers: List[SignerRead] = Field(default_factory=list)


class PendingSignerRead(BaseModel):
    name: str
    email: str
    order: int


class CanSignResult(BaseModel):
    can_sign: bool
    mode: str
    reason: str | None = None
    current_signer_order: int | None = None
    pending_signers: List[PendingSignerRead] = Field(default_factory=list)


class RenderOutcome(BaseModel):
    rendered: bool
    final_document_ref: str | None = None
    error: str | None = None


class AuditEventRead(IDModel, Timestamped):
    signing_request_id: UUID | None
    event_type: str
    actor_email: str | None
    ip_address: str | None
    details: dict[str, Any] | None
