from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlmodel import Session, select

from signflow.core.errors import InvalidArgument, InvalidTransition, NotFound
from signflow.models.base import to_utc, utcnow
from signflow.models.signing import (
    ACTIONABLE_SIGNER_STATUSES,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    RenderStatus,
    RequestStatus,
    Signer,
    SignerStatus,
    SigningRequest,
)
from signflow.schemas.scheduler import SweepResult
from signflow.schemas.signing import RenderOutcome
from signflow.services.completion import CompletionOrchestrator, render_not_in_flight
from signflow.services.renderer import DocumentRenderer
from signflow.services.state_machine import SigningStateMachine, conditional_update, normalize_email

logger = logging.getLogger("signflow.recovery")


class RecoveryAction(str, Enum):
    RETRY_PDF = "retry_pdf"
    SKIP_SIGNER = "skip_signer"
    EXTEND_DEADLINE = "extend_deadline"
    RESET_SIGNER = "reset_signer"
    CANCEL_REQUEST = "cancel_request"


RETRYABLE_STATUSES = (RequestStatus.PDF_GENERATION_FAILED, RequestStatus.COMPLETED)


def parse_expiry(value: Any) -> datetime:
    if isinstance(value, datetime):
        return to_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument("new_expiry must be an ISO-8601 timestamp")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise InvalidArgument(f"new_expiry {value!r} is not a valid ISO-8601 timestamp") from exc


def _require_admin(admin: str | None) -> str:
    normalized = normalize_email(admin)
    if not normalized:
        raise InvalidArgument("An administrator identity is required for this action")
    return normalized


class ErrorRecoveryService:
    """
    Remediation of abnormal request states without losing signer work.

    Every action is a no-op on requests that already reached a terminal status.
    """

    def __init__(
        self,
        session: Session,
        *,
        state_machine: SigningStateMachine | None = None,
        completion: CompletionOrchestrator | None = None,
        renderer: DocumentRenderer | None = None,
    ) -> None:
        self.session = session
        self.state_machine = state_machine or SigningStateMachine(session)
        self.completion = completion or CompletionOrchestrator(session, renderer=renderer)
        self.outbox = self.state_machine.outbox
        self.audit = self.state_machine.audit

    def _commit(self) -> None:
        self.session.commit()
        self.session.expire_all()

    # Declines ------------------------------------------------------------
    def handle_decline(self, request_id: UUID, email: str, reason: str | None = None) -> SigningRequest:
        request, signer = self.state_machine.apply_decline(request_id, email, reason, commit=False)
        details = f" Reason: {signer.decline_reason}" if signer.decline_reason else ""
        self.outbox.enqueue(
            request.initiated_by,
            "signer_declined",
            f"{signer.name} declined '{request.title}'",
            f"{signer.name} ({signer.email}) declined to sign '{request.title}'.{details}",
            signing_request_id=request_id,
            payload={"signer_email": signer.email, "request_status": request.status.value},
        )
        self._commit()
        return self.state_machine.get_request(request_id)

    # Expiry --------------------------------------------------------------
    def handle_expired(self, request_id: UUID, *, now: datetime | None = None) -> SigningRequest:
        now = to_utc(now) if now else utcnow()
        request = self.state_machine.get_request(request_id)
        if request.status not in OPEN_STATUSES:
            return request

        signers = self.state_machine.list_signers(request_id)
        signed = [signer for signer in signers if signer.status == SignerStatus.SIGNED]
        pending = [signer for signer in signers if signer.status in ACTIONABLE_SIGNER_STATUSES]
        new_status = RequestStatus.PARTIALLY_EXPIRED if signed else RequestStatus.EXPIRED

        values: dict[str, Any] = {"status": new_status, "expired_at": now}
        if request.render_status == RenderStatus.GENERATING:
            values["render_status"] = RenderStatus.IDLE
        # a request whose final document is rendering is left to the render
        moved = conditional_update(
            self.session,
            SigningRequest,
            request_id,
            values,
            SigningRequest.status.in_(list(OPEN_STATUSES)),
            render_not_in_flight(),
        )
        if not moved:
            self.session.rollback()
            logger.info("Request %s is rendering or left the open states; not expired", request_id)
            return self.state_machine.get_request(request_id)

        if new_status is RequestStatus.PARTIALLY_EXPIRED:
            self.outbox.enqueue(
                request.initiated_by,
                "document_partially_expired",
                f"Document partially expired: {request.title}",
                f"'{request.title}' expired with {len(signed)} of {len(signers)} signatures collected.",
                signing_request_id=request_id,
                payload={"signed": len(signed), "total": len(signers)},
            )
        else:
            self.outbox.enqueue_many(
                [request.initiated_by, *(signer.email for signer in pending)],
                "document_expired",
                f"Document expired: {request.title}",
                f"The signing deadline for '{request.title}' passed before it was signed.",
                signing_request_id=request_id,
            )
        self.audit.record_event(
            "request_expired",
            signing_request_id=request_id,
            details={"status": new_status.value, "signed": len(signed), "total": len(signers)},
        )
        self._commit()
        logger.info("Request %s marked %s", request_id, new_status.value)
        return self.state_machine.get_request(request_id)

    def process_expired_requests(self, *, now: datetime | None = None) -> SweepResult:
        now = to_utc(now) if now else utcnow()
        result = SweepResult()
        request_ids = self.session.exec(
            select(SigningRequest.id)
            .where(SigningRequest.expires_at.is_not(None))
            .where(SigningRequest.expires_at < now)
            .where(SigningRequest.status.in_(list(OPEN_STATUSES)))
            .where(render_not_in_flight())
            .order_by(SigningRequest.expires_at)
        ).all()
        for request_id in request_ids:
            result.processed += 1
            try:
                request = self.handle_expired(request_id, now=now)
            except Exception as exc:
                self.session.rollback()
                result.errors.append(f"Failed to expire request {request_id}: {exc}")
                logger.exception("Failed to expire request %s", request_id)
                continue
            if request.status in (RequestStatus.EXPIRED, RequestStatus.PARTIALLY_EXPIRED):
                result.expired += 1
        if result.processed:
            logger.info(
                "Expiry sweep processed %d request(s), expired %d, %d error(s)",
                result.processed,
                result.expired,
                len(result.errors),
            )
        return result

    # Rendering -----------------------------------------------------------
    def retry_pdf_generation(self, request_id: UUID) -> RenderOutcome:
        request = self.state_machine.get_request(request_id)
        if request.status in OPEN_STATUSES and request.render_status == RenderStatus.GENERATING:
            # only succeeds when the previous claim was abandoned
            outcome = self.completion.try_complete(request_id)
            if not outcome.rendered and outcome.error is None:
                raise InvalidTransition("A render of this request is already in progress")
            return outcome
        if request.status not in RETRYABLE_STATUSES:
            if request.status in TERMINAL_STATUSES:
                return RenderOutcome(rendered=False, final_document_ref=request.final_document_ref)
            raise InvalidTransition(
                f"Only failed or completed requests can be re-rendered (status is {request.status.value})"
            )

        previous_status = request.status
        now = utcnow()
        values: dict[str, Any] = {
            "render_status": RenderStatus.GENERATING,
            "render_started_at": now,
            "render_attempts": SigningRequest.render_attempts + 1,
            "error_message": None,
        }
        # a completed request stays completed while its document is re-rendered
        if previous_status == RequestStatus.PDF_GENERATION_FAILED:
            values["status"] = RequestStatus.IN_PROGRESS
        claimed = conditional_update(
            self.session,
            SigningRequest,
            request_id,
            values,
            SigningRequest.status == previous_status,
            render_not_in_flight(),
        )
        if not claimed:
            self.session.rollback()
            raise InvalidTransition("A render of this request is already in progress")
        self.audit.record_event(
            "render_retried",
            signing_request_id=request_id,
            details={"previous_status": previous_status.value},
        )
        self._commit()
        return self.completion.render_claimed(request_id, now)

    # Administrative actions ----------------------------------------------
    def reset_signer(self, request_id: UUID, email: str, admin: str | None) -> Signer:
        admin_email = _require_admin(admin)
        request = self.state_machine.get_request(request_id)
        signer = self.state_machine.get_signer(request_id, email)
        if request.status in TERMINAL_STATUSES or signer.status == SignerStatus.PENDING:
            return signer

        now = utcnow()
        reset = conditional_update(
            self.session,
            Signer,
            signer.id,
            {
                "status": SignerStatus.PENDING,
                "viewed_at": None,
                "signed_at": None,
                "declined_at": None,
                "decline_reason": None,
                "signature_data": None,
                "reset_by": admin_email,
                "reset_at": now,
            },
            Signer.status == signer.status,
        )
        reopened = reset and conditional_update(
            self.session,
            SigningRequest,
            request_id,
            {"status": RequestStatus.IN_PROGRESS, "render_status": RenderStatus.IDLE, "error_message": None},
            SigningRequest.status.in_([*OPEN_STATUSES, RequestStatus.PDF_GENERATION_FAILED]),
            render_not_in_flight(),
        )
        if not reopened:
            self.session.rollback()
            raise InvalidTransition("Signing request or signer changed concurrently; reload and try again")

        self.outbox.enqueue(
            signer.email,
            "signature_reset",
            f"Please sign again: {request.title}",
            f"Your signature on '{request.title}' was reset by {admin_email}. Please review and sign again.",
            signing_request_id=request_id,
        )
        self.audit.record_event(
            "signer_reset",
            actor_email=admin_email,
            signing_request_id=request_id,
            details={"signer_email": signer.email, "previous_status": signer.status.value, "reset_by": admin_email},
        )
        self._commit()
        logger.info("Signer %s of request %s reset by %s", signer.email, request_id, admin_email)
        return self.state_machine.get_signer(request_id, email)

    def extend_deadline(self, request_id: UUID, new_expiry: Any, admin: str | None) -> SigningRequest:
        admin_email = _require_admin(admin)
        expires_at = parse_expiry(new_expiry)
        now = utcnow()
        if expires_at <= now:
            raise InvalidArgument("new_expiry must be in the future")

        request = self.state_machine.get_request(request_id)
        if request.status in TERMINAL_STATUSES:
            return request

        previous = request.expires_at
        moved = conditional_update(
            self.session,
            SigningRequest,
            request_id,
            {"expires_at": expires_at, "extended_by": admin_email, "extended_at": now},
            SigningRequest.status.not_in(list(TERMINAL_STATUSES)),
        )
        if not moved:
            self.session.rollback()
            return self.state_machine.get_request(request_id)

        recipients = [
            signer.email
            for signer in self.state_machine.list_signers(request_id)
            if signer.status in ACTIONABLE_SIGNER_STATUSES
        ]
        self.outbox.enqueue_many(
            recipients,
            "deadline_extended",
            f"Deadline extended: {request.title}",
            f"The deadline to sign '{request.title}' was extended to {expires_at:%Y-%m-%d %H:%M} UTC.",
            signing_request_id=request_id,
            payload={"expires_at": expires_at.isoformat()},
        )
        self.audit.record_event(
            "deadline_extended",
            actor_email=admin_email,
            signing_request_id=request_id,
            details={
                "previous_expiry": previous.isoformat() if previous else None,
                "new_expiry": expires_at.isoformat(),
                "extended_by": admin_email,
            },
        )
        self._commit()
        return self.state_machine.get_request(request_id)

    def cancel_request(self, request_id: UUID, admin: str | None, reason: str | None = None) -> SigningRequest:
        admin_email = _require_admin(admin)
        request = self.state_machine.get_request(request_id)
        if request.status in TERMINAL_STATUSES:
            return request

        values: dict[str, Any] = {
            "status": RequestStatus.CANCELLED,
            "cancelled_at": utcnow(),
            "cancelled_by": admin_email,
        }
        if request.render_status == RenderStatus.GENERATING:
            values["render_status"] = RenderStatus.IDLE
        moved = conditional_update(
            self.session,
            SigningRequest,
            request_id,
            values,
            SigningRequest.status.not_in(list(TERMINAL_STATUSES)),
            render_not_in_flight(),
        )
        if not moved:
            self.session.rollback()
            current = self.state_machine.get_request(request_id)
            if current.status in TERMINAL_STATUSES:
                return current
            raise InvalidTransition("The final document is being rendered; cancel after the render finishes")

        reason = (reason or "").strip() or None
        recipients = [
            signer.email
            for signer in self.state_machine.list_signers(request_id)
            if signer.status in ACTIONABLE_SIGNER_STATUSES
        ]
        message = f"The signing request '{request.title}' was cancelled by {admin_email}."
        if reason:
            message += f" Reason: {reason}"
        self.outbox.enqueue_many(
            recipients,
            "request_cancelled",
            f"Signing request cancelled: {request.title}",
            message,
            signing_request_id=request_id,
        )
        self.audit.record_event(
            "request_cancelled",
            actor_email=admin_email,
            signing_request_id=request_id,
            details={"reason": reason},
        )
        self._commit()
        return self.state_machine.get_request(request_id)

    def apply_action(
        self,
        action: RecoveryAction | str,
        request_id: UUID,
        *,
        admin: str | None = None,
        email: str | None = None,
        new_expiry: Any = None,
        reason: str | None = None,
    ) -> Any:
        try:
            action = RecoveryAction(action)
        except ValueError as exc:
            raise InvalidArgument(f"Unknown recovery action {action!r}") from exc

        if action is RecoveryAction.RETRY_PDF:
            return self.retry_pdf_generation(request_id)
        if action is RecoveryAction.EXTEND_DEADLINE:
            return self.extend_deadline(request_id, new_expiry, admin)
        if action is RecoveryAction.CANCEL_REQUEST:
            return self.cancel_request(request_id, admin, reason)
        if action is RecoveryAction.RESET_SIGNER:
            if not email:
                raise InvalidArgument("reset_signer needs the signer e-mail")
            return self.reset_signer(request_id, email, admin)
        raise InvalidTransition("Skipping a signer is not supported; a decline under sequential order halts the request")
