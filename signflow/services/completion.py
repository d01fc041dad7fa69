from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import or_
from sqlmodel import Session, select

from signflow.core.config import settings
from signflow.core.errors import NotFound, RenderFailure
from signflow.models.base import utcnow
from signflow.models.document import Document, DocumentField
from signflow.models.signing import (
    OPEN_STATUSES,
    RenderStatus,
    RequestStatus,
    Signer,
    SignerBinding,
    SignerStatus,
    SigningRequest,
)
from signflow.schemas.signing import RenderOutcome
from signflow.services.audit import AuditService
from signflow.services.field_mapper import map_fields, resolve_bindings
from signflow.services.outbox import NotificationOutbox
from signflow.services.renderer import DocumentRenderer
from signflow.services.state_machine import conditional_update

logger = logging.getLogger("signflow.completion")


def render_not_in_flight() -> Any:
    """
    SQL condition matching rows without a live render claim. A claim taken more than
    ``render_claim_timeout_seconds`` ago (wall clock) is treated as abandoned.
    """
    stale_before = utcnow() - timedelta(seconds=settings.render_claim_timeout_seconds)
    return or_(
        SigningRequest.render_status != RenderStatus.GENERATING,
        SigningRequest.render_started_at.is_(None),
        SigningRequest.render_started_at < stale_before,
    )


def _owns_claim(claimed_at: datetime) -> tuple[Any, ...]:
    return (
        SigningRequest.render_status == RenderStatus.GENERATING,
        SigningRequest.render_started_at == claimed_at,
    )


def is_complete(request: SigningRequest, signers: Sequence[Signer]) -> bool:
    """
    All signers signed, or, when not every signer is required, every signer
    has acted and at least one of them signed.
    """
    if not signers:
        return False
    statuses = [signer.status for signer in signers]
    if all(status == SignerStatus.SIGNED for status in statuses):
        return True
    if request.require_all_signers:
        return False
    acted = all(status in (SignerStatus.SIGNED, SignerStatus.DECLINED) for status in statuses)
    return acted and any(status == SignerStatus.SIGNED for status in statuses)


class CompletionOrchestrator:
    """Decides completion and renders the final document at most once per claim."""

    def __init__(self, session: Session, renderer: DocumentRenderer | None = None) -> None:
        self.session = session
        self._renderer = renderer
        self.outbox = NotificationOutbox(session)
        self.audit = AuditService(session)

    @property
    def renderer(self) -> DocumentRenderer:
        if self._renderer is None:
            self._renderer = DocumentRenderer()
        return self._renderer

    def _load(self, request_id: UUID) -> tuple[SigningRequest, list[Signer]]:
        request = self.session.get(SigningRequest, request_id)
        if not request:
            raise NotFound(f"Signing request {request_id} not found")
        signers = self.session.exec(
            select(Signer).where(Signer.signing_request_id == request_id).order_by(Signer.order_index)
        ).all()
        return request, list(signers)

    def try_complete(self, request_id: UUID) -> RenderOutcome:
        request, signers = self._load(request_id)
        if request.status not in OPEN_STATUSES or not is_complete(request, signers):
            return RenderOutcome(rendered=False)

        abandoned = request.render_status == RenderStatus.GENERATING
        now = utcnow()
        claimed = conditional_update(
            self.session,
            SigningRequest,
            request_id,
            {
                "render_status": RenderStatus.GENERATING,
                "render_started_at": now,
                "render_attempts": SigningRequest.render_attempts + 1,
            },
            SigningRequest.status.in_(list(OPEN_STATUSES)),
            render_not_in_flight(),
        )
        self.session.commit()
        if not claimed:
            logger.info("Render of request %s already claimed elsewhere", request_id)
            return RenderOutcome(rendered=False)
        if abandoned:
            logger.warning("Took over an abandoned render claim on request %s", request_id)
        return self.render_claimed(request_id, now)

    def render_claimed(self, request_id: UUID, claimed_at: datetime) -> RenderOutcome:
        """
        Renders a request whose ``render_status`` this caller moved to ``generating_pdf``
        at ``claimed_at``. The result is only stored while that claim is still the current one.
        """
        self.session.expire_all()
        request, signers = self._load(request_id)
        document = self.session.get(Document, request.document_id)
        try:
            if not document:
                raise RenderFailure(f"Source document {request.document_id} not found")
            fields = self.session.exec(
                select(DocumentField)
                .where(DocumentField.document_id == document.id)
                .order_by(DocumentField.sort_index)
            ).all()
            stored = {
                row.binding_token: row.signer_email
                for row in self.session.exec(
                    select(SignerBinding).where(SignerBinding.signing_request_id == request_id)
                ).all()
            }
            bindings = resolve_bindings(fields, signers, stored)
            instances = map_fields(
                fields,
                signers,
                bindings,
                date_format=settings.date_format,
                datetime_format=settings.datetime_format,
            )
            final_ref = self.renderer.render_and_store(
                source_ref=document.storage_path,
                instances=instances,
                reference=str(request_id),
            )
        except RenderFailure as exc:
            return self._record_failure(request, exc, claimed_at)
        except Exception as exc:
            logger.exception("Unexpected error while rendering request %s", request_id)
            return self._record_failure(request, RenderFailure(f"Unexpected render error: {exc}"), claimed_at)

        first_completion = request.status in OPEN_STATUSES
        values = {
            "status": RequestStatus.COMPLETED,
            "render_status": RenderStatus.GENERATED,
            "final_document_ref": final_ref,
            "error_message": None,
        }
        if first_completion:
            values["completed_at"] = utcnow()
        stored_ok = conditional_update(
            self.session,
            SigningRequest,
            request_id,
            values,
            *_owns_claim(claimed_at),
            SigningRequest.status.in_([*OPEN_STATUSES, RequestStatus.COMPLETED]),
        )
        if not stored_ok:
            self.session.rollback()
            logger.warning("Request %s changed while its document was rendering; result discarded", request_id)
            return RenderOutcome(rendered=False, error="Signing request changed while rendering")

        if first_completion:
            recipients = [request.initiated_by, *(signer.email for signer in signers)]
            self.outbox.enqueue_many(
                recipients,
                "document_completed",
                f"Document completed: {request.title}",
                f"All required signatures for '{request.title}' were collected. The signed document is available.",
                signing_request_id=request_id,
                payload={"final_document_ref": final_ref},
            )
        self.audit.record_event(
            "document_completed" if first_completion else "document_rerendered",
            signing_request_id=request_id,
            details={"final_document_ref": final_ref, "signed": sum(s.status == SignerStatus.SIGNED for s in signers)},
        )
        self.session.commit()
        self.session.expire_all()
        logger.info("Request %s rendered; final document stored at %s", request_id, final_ref)
        return RenderOutcome(rendered=True, final_document_ref=final_ref)

    def _record_failure(self, request: SigningRequest, exc: RenderFailure, claimed_at: datetime) -> RenderOutcome:
        request_id = request.id
        initiator = request.initiated_by
        title = request.title
        rerender = request.status == RequestStatus.COMPLETED
        self.session.rollback()

        # a completed request keeps its status and its previous final document
        values = {"render_status": RenderStatus.FAILED, "error_message": exc.message}
        if not rerender:
            values["status"] = RequestStatus.PDF_GENERATION_FAILED
        recorded = conditional_update(self.session, SigningRequest, request_id, values, *_owns_claim(claimed_at))
        if not recorded:
            self.session.rollback()
            logger.warning("Render of request %s failed after its claim was taken over: %s", request_id, exc.message)
            return RenderOutcome(rendered=False, error=exc.message)

        if rerender:
            message = (
                f"Re-rendering the final document of '{title}' failed. "
                "The previously generated document is still available and the render can be retried."
            )
        else:
            message = (
                f"All signatures for '{title}' were collected but the final document failed to render. "
                "The signatures are kept and the render can be retried."
            )
        self.outbox.enqueue(
            initiator,
            "document_render_failed",
            f"Final document could not be generated: {title}",
            message,
            signing_request_id=request_id,
        )
        self.audit.record_event("render_failed", signing_request_id=request_id, details={"error": exc.message})
        self.session.commit()
        self.session.expire_all()
        logger.warning("Render of request %s failed: %s", request_id, exc.message)
        return RenderOutcome(rendered=False, error=exc.message)
