from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlmodel import Session

from signflow.api.deps import get_current_email, get_db, get_signing_service
from signflow.core.errors import ErrorKind
from signflow.schemas.common import OperationResult
from signflow.schemas.signing import (
    AuditEventRead,
    CancelAction,
    CanSignResult,
    DeclineAction,
    ExtendDeadlineAction,
    RenderOutcome,
    SignAction,
    SignerRead,
    SigningRequestCreate,
    SigningRequestRead,
)
from signflow.services.audit import AuditService
from signflow.services.signing import SigningService

router = APIRouter(prefix="/signing-requests", tags=["signing-requests"])

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.ORDER_VIOLATION: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_ARGUMENT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.RENDER_FAILURE: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.DELIVERY_FAILURE: status.HTTP_502_BAD_GATEWAY,
}


def _unwrap(result: OperationResult) -> Any:
    if result.success:
        return result.data
    kind = result.error_kind or ErrorKind.INVALID_ARGUMENT
    raise HTTPException(
        status_code=ERROR_STATUS.get(kind, status.HTTP_400_BAD_REQUEST),
        detail={"error_kind": kind.value, "message": result.error_message},
    )


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


@router.post("", response_model=SigningRequestRead, status_code=status.HTTP_201_CREATED)
def initiate_request(
    payload: SigningRequestCreate,
    current_email: str = Depends(get_current_email),
    service: SigningService = Depends(get_signing_service),
) -> SigningRequestRead:
    return _unwrap(service.initiate_request(payload, current_email))


@router.get("/{request_id}", response_model=SigningRequestRead)
def get_request(
    request_id: UUID,
    service: SigningService = Depends(get_signing_service),
) -> SigningRequestRead:
    return _unwrap(service.get_request(request_id))


@router.post("/{request_id}/view", response_model=SignerRead)
def record_view(
    request_id: UUID,
    current_email: str = Depends(get_current_email),
    service: SigningService = Depends(get_signing_service),
) -> SignerRead:
    return _unwrap(service.record_view(request_id, current_email))


@router.get("/{request_id}/can-sign", response_model=CanSignResult)
def can_sign(
    request_id: UUID,
    current_email: str = Depends(get_current_email),
    service: SigningService = Depends(get_signing_service),
) -> CanSignResult:
    return _unwrap(service.validate_can_sign(request_id, current_email))


@router.post("/{request_id}/sign", response_model=SigningRequestRead)
def sign(
    request_id: UUID,
    payload: SignAction,
    request: Request,
    current_email: str = Depends(get_current_email),
    service: SigningService = Depends(get_signing_service),
) -> SigningRequestRead:
    result = service.sign(
        request_id,
        current_email,
        payload.signature.model_dump(exclude_none=True),
        totp_token=payload.totp_token,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _unwrap(result)


@router.post("/{request_id}/decline", response_model=SigningRequestRead)
def decline(
    request_id: UUID,
    payload: DeclineAction,
    current_email: str = Depends(get_current_email),
    service: SigningService = Depends(get_signing_service),
) -> SigningRequestRead:
    return _unwrap(service.decline(request_id, current_email, payload.reason))


@router.post("/{request_id}/signers/{email}/reset", response_model=SignerRead)
def reset_signer(
    request_id: UUID,
    email: str,
    current_email: str = Depends(get_current_email),
    service: SigningService = Depends(get_signing_service),
) -> SignerRead:
    return _unwrap(service.reset_signer(request_id, email, current_email))


@router.post("/{request_id}/extend", response_model=SigningRequestRead)
def extend_deadline(
    request_id: UUID,
    payload: ExtendDeadlineAction,
    current_email: str = Depends(get_current_email),
    service: SigningService = Depends(get_signing_service),
) -> SigningRequestRead:
    return _unwrap(service.extend_deadline(request_id, payload.new_expiry, current_email))


@router.post("/{request_id}/retry-render", response_model=RenderOutcome)
def retry_render(
    request_id: UUID,
    _: str = Depends(get_current_email),
    service: SigningService = Depends(get_signing_service),
) -> RenderOutcome:
    return _unwrap(service.retry_render(request_id))


@router.post("/{request_id}/cancel", response_model=SigningRequestRead)
def cancel_request(
    request_id: UUID,
    payload: CancelAction,
    current_email: str = Depends(get_current_email),
    service: SigningService = Depends(get_signing_service),
) -> SigningRequestRead:
    return _unwrap(service.cancel_request(request_id, current_email, payload.reason))


@router.get("/{request_id}/audit", response_model=list[AuditEventRead])
def list_audit_events(
    request_id: UUID,
    event_type: str | None = None,
    page: int = 1,
    page_size: int = 50,
    _: str = Depends(get_current_email),
    session: Session = Depends(get_db),
) -> list[AuditEventRead]:
    items, _total = AuditService(session).list_events(
        signing_request_id=request_id, event_type=event_type, page=page, page_size=page_size
    )
    return [AuditEventRead.model_validate(item) for item in items]
