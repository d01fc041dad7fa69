from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from enum import Enum
from typing import Any, Iterable, Sequence
from uuid import UUID, uuid4

from sqlalchemy import update
from sqlmodel import Session, select

from signflow.core.errors import InvalidArgument, InvalidTransition, NotFound, OrderViolation, StepUpRequired
from signflow.models.base import to_utc, utcnow
from signflow.models.document import Document, DocumentField
from signflow.models.signing import (
    ACTIONABLE_SIGNER_STATUSES,
    OPEN_STATUSES,
    RequestStatus,
    Signer,
    SignerBinding,
    SignerStatus,
    SigningOrder,
    SigningRequest,
)
from signflow.schemas.signing import CanSignResult, PendingSignerRead, SigningRequestCreate
from signflow.services.audit import AuditService
from signflow.services.outbox import NotificationOutbox
from signflow.services.step_up import DenyAllStepUpVerifier, StepUpVerifier
from signflow.services.storage import StorageBackend, get_storage

logger = logging.getLogger("signflow.state_machine")


class SigningPolicy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    UNDETERMINED = "undetermined"


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def conditional_update(session: Session, model: Any, ident: UUID, values: dict[str, Any], *conditions: Any) -> bool:
    """
    Single ``UPDATE ... WHERE id = :id AND <conditions>``.
    Returns True when the row matched; the caller decides what a lost race means.
    """
    values.setdefault("updated_at", utcnow())
    statement = (
        update(model)
        .where(model.id == ident, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.exec(statement)  # type: ignore[call-overload]
    return (result.rowcount or 0) > 0


def resolve_policy(request: SigningRequest) -> SigningPolicy:
    """Tri-state policy: the column wins, then ``settings["signing_order"]``; anything else is undetermined."""
    candidates = [request.signing_order]
    if isinstance(request.settings, dict):
        candidates.append(request.settings.get("signing_order"))
    for raw in candidates:
        if raw is None:
            continue
        value = raw.value if isinstance(raw, Enum) else raw
        if not isinstance(value, str):
            return SigningPolicy.UNDETERMINED
        normalized = value.strip().lower()
        if normalized == SigningOrder.SEQUENTIAL.value:
            return SigningPolicy.SEQUENTIAL
        if normalized == SigningOrder.PARALLEL.value:
            return SigningPolicy.PARALLEL
        return SigningPolicy.UNDETERMINED
    return SigningPolicy.UNDETERMINED


def effective_policy(request: SigningRequest) -> SigningPolicy:
    policy = resolve_policy(request)
    if policy is SigningPolicy.UNDETERMINED:
        # Fail open: an unreadable policy must not block signers indefinitely.
        logger.warning(
            "Signing order of request %s could not be determined (%r); treating it as parallel",
            request.id,
            request.signing_order,
        )
        return SigningPolicy.PARALLEL
    return policy


def signer_label(signer: Signer) -> str:
    return f"{signer.name} ({signer.email})" if signer.name else signer.email


class SigningStateMachine:
    """Legal transitions of a signing request and its signers."""

    def __init__(
        self,
        session: Session,
        *,
        step_up: StepUpVerifier | None = None,
        storage: StorageBackend | None = None,
    ) -> None:
        self.session = session
        self.step_up = step_up or DenyAllStepUpVerifier()
        self._storage = storage
        self.outbox = NotificationOutbox(session)
        self.audit = AuditService(session)

    @property
    def storage(self) -> StorageBackend:
        if self._storage is None:
            self._storage = get_storage()
        return self._storage

    def commit(self) -> None:
        self.session.commit()
        self.session.expire_all()

    # Lookups -------------------------------------------------------------
    def get_request(self, request_id: UUID) -> SigningRequest:
        request = self.session.get(SigningRequest, request_id)
        if not request:
            raise NotFound(f"Signing request {request_id} not found")
        return request

    def list_signers(self, request_id: UUID) -> list[Signer]:
        statement = select(Signer).where(Signer.signing_request_id == request_id).order_by(Signer.order_index, Signer.email)
        return list(self.session.exec(statement).all())

    def get_signer(self, request_id: UUID, email: str) -> Signer:
        normalized = normalize_email(email)
        signer = self.session.exec(
            select(Signer).where(Signer.signing_request_id == request_id, Signer.email == normalized)
        ).first()
        if not signer:
            raise NotFound(f"Signer {normalized} is not part of signing request {request_id}")
        return signer

    def stored_bindings(self, request_id: UUID) -> dict[str, str]:
        rows = self.session.exec(select(SignerBinding).where(SignerBinding.signing_request_id == request_id)).all()
        return {row.binding_token: row.signer_email for row in rows}

    # Creation ------------------------------------------------------------
    def _validate_signers(self, payload: SigningRequestCreate) -> None:
        if not payload.signers:
            raise InvalidArgument("A signing request needs at least one signer")
        emails = [normalize_email(signer.email) for signer in payload.signers]
        if len(set(emails)) != len(emails):
            raise InvalidArgument("Signer e-mails must be unique within a request")
        orders = [signer.order for signer in payload.signers]
        if len(set(orders)) != len(orders):
            raise InvalidArgument("Signer orders must be unique within a request")

    def _resolve_document(self, payload: SigningRequestCreate, initiated_by: str) -> Document:
        if payload.document_id:
            document = self.session.get(Document, payload.document_id)
            if not document:
                raise NotFound(f"Document {payload.document_id} not found")
            return document
        if not payload.document_base64:
            raise InvalidArgument("Either document_id or document_base64 must be provided")
        raw = payload.document_base64.strip()
        if raw.startswith("data:"):
            raw = raw.partition(",")[2]
        try:
            data = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidArgument("document_base64 is not valid base64") from exc
        if not data.startswith(b"%PDF"):
            raise InvalidArgument("Only PDF documents can be sent for signature")

        document_id = uuid4()
        filename = payload.document_filename or f"{document_id}.pdf"
        digest = hashlib.sha256(data).hexdigest()
        storage_ref = self.storage.save_bytes(root=f"documents/{document_id}", name=f"original-{digest}.pdf", data=data)
        document = Document(
            id=document_id,
            title=payload.title,
            storage_path=storage_ref,
            original_filename=filename,
            size_bytes=len(data),
            sha256=digest,
            created_by=initiated_by,
        )
        self.session.add(document)
        return document

    def initiate_request(self, payload: SigningRequestCreate, initiated_by: str) -> SigningRequest:
        initiator = normalize_email(initiated_by)
        if not initiator:
            raise InvalidArgument("Initiator identity is required")
        self._validate_signers(payload)
        if payload.expires_at is not None:
            expires_at = to_utc(payload.expires_at)
            if expires_at <= utcnow():
                raise InvalidArgument("expires_at must be in the future")
        else:
            expires_at = None

        signer_emails = {normalize_email(signer.email) for signer in payload.signers}
        bindings = {token.strip(): normalize_email(email) for token, email in (payload.bindings or {}).items()}
        unknown = sorted(email for email in bindings.values() if email not in signer_emails)
        if unknown:
            raise InvalidArgument(f"Bindings reference e-mails that are not signers: {', '.join(unknown)}")

        document = self._resolve_document(payload, initiator)
        existing_fields = len(document.fields) if payload.document_id else 0
        for index, field in enumerate(payload.fields):
            self.session.add(
                DocumentField(
                    document_id=document.id,
                    field_key=field.field_key,
                    field_type=field.field_type,
                    signer_binding=field.signer_binding,
                    page=field.page,
                    x=field.x,
                    y=field.y,
                    width=field.width,
                    height=field.height,
                    label=field.label,
                    required=field.required,
                    sort_index=existing_fields + index,
                )
            )

        request = SigningRequest(
            title=payload.title,
            document_id=document.id,
            initiated_by=initiator,
            status=RequestStatus.INITIATED,
            signing_order=payload.signing_order.value,
            settings=payload.settings,
            require_all_signers=payload.require_all_signers,
            require_totp=payload.require_totp,
            expires_at=expires_at,
        )
        self.session.add(request)

        signers = [
            Signer(
                signing_request_id=request.id,
                email=normalize_email(item.email),
                name=item.name.strip(),
                order_index=item.order,
            )
            for item in sorted(payload.signers, key=lambda s: s.order)
        ]
        self.session.add_all(signers)
        for token, email in bindings.items():
            self.session.add(SignerBinding(signing_request_id=request.id, binding_token=token, signer_email=email))

        if resolve_policy(request) is SigningPolicy.SEQUENTIAL:
            first_order = signers[0].order_index
            invited = [signer for signer in signers if signer.order_index == first_order]
        else:
            invited = signers
        for signer in invited:
            self._enqueue_invitation(request, signer)

        self.audit.record_event(
            "request_initiated",
            actor_email=initiator,
            signing_request_id=request.id,
            details={
                "signers": [signer.email for signer in signers],
                "signing_order": request.signing_order,
                "require_all_signers": request.require_all_signers,
            },
        )
        self.commit()
        logger.info("Signing request %s initiated by %s with %d signer(s)", request.id, initiator, len(signers))
        return self.get_request(request.id)

    # Views ---------------------------------------------------------------
    def record_view(self, request_id: UUID, email: str) -> Signer:
        request = self.get_request(request_id)
        signer = self.get_signer(request_id, email)
        if signer.status != SignerStatus.PENDING or signer.viewed_at is not None:
            return signer
        if request.status not in OPEN_STATUSES:
            return signer
        now = utcnow()
        changed = conditional_update(
            self.session,
            Signer,
            signer.id,
            {"status": SignerStatus.VIEWED, "viewed_at": now},
            Signer.status == SignerStatus.PENDING,
            Signer.viewed_at.is_(None),
        )
        if changed:
            self.audit.record_event("signer_viewed", actor_email=signer.email, signing_request_id=request_id)
        self.commit()
        return self.get_signer(request_id, email)

    # Ordering ------------------------------------------------------------
    def validate_can_sign(self, request_id: UUID, email: str) -> CanSignResult:
        request = self.get_request(request_id)
        signer = self.get_signer(request_id, email)
        signers = self.list_signers(request_id)
        return self._evaluate_can_sign(request, signer, signers)

    def _evaluate_can_sign(self, request: SigningRequest, signer: Signer, signers: Sequence[Signer]) -> CanSignResult:
        policy = effective_policy(request)
        mode = policy.value
        outstanding = [item for item in signers if item.status in ACTIONABLE_SIGNER_STATUSES]
        current_order = min((item.order_index for item in outstanding), default=None)

        if request.status not in OPEN_STATUSES:
            return CanSignResult(
                can_sign=False,
                mode=mode,
                reason=f"Signing request is {request.status.value}",
                current_signer_order=current_order,
            )
        if signer.status not in ACTIONABLE_SIGNER_STATUSES:
            return CanSignResult(
                can_sign=False,
                mode=mode,
                reason=f"Signer has already {signer.status.value}",
                current_signer_order=current_order,
            )
        if policy is SigningPolicy.PARALLEL:
            reason = None
            if resolve_policy(request) is SigningPolicy.UNDETERMINED:
                reason = "Signing order could not be determined; signing is allowed in any order"
            return CanSignResult(can_sign=True, mode=mode, reason=reason, current_signer_order=current_order)

        blockers = [
            item
            for item in signers
            if item.order_index < signer.order_index and item.status != SignerStatus.SIGNED
        ]
        if blockers:
            return CanSignResult(
                can_sign=False,
                mode=mode,
                reason="Waiting for: " + ", ".join(signer_label(item) for item in blockers),
                current_signer_order=current_order,
                pending_signers=[
                    PendingSignerRead(name=item.name, email=item.email, order=item.order_index) for item in blockers
                ],
            )
        return CanSignResult(can_sign=True, mode=mode, current_signer_order=current_order)

    # Signer actions ------------------------------------------------------
    def _ensure_actionable(self, request: SigningRequest, signer: Signer) -> None:
        if request.status not in OPEN_STATUSES:
            raise InvalidTransition(f"Signing request is {request.status.value}; no further signer actions are allowed")
        if signer.status not in ACTIONABLE_SIGNER_STATUSES:
            raise InvalidTransition(f"Signer {signer.email} has already {signer.status.value}")

    def _check_step_up(self, request: SigningRequest, signer: Signer, token: str | None) -> None:
        if not request.require_totp:
            return
        context = {"require_totp": True, "request_id": str(request.id), "action": "sign"}
        if not self.step_up.is_step_up_required(signer.email, context):
            return
        if not self.step_up.verify_step_up(signer.email, token, context):
            raise StepUpRequired("A valid TOTP code is required to sign this request")

    def apply_signature(
        self,
        request_id: UUID,
        email: str,
        signature_data: dict[str, Any],
        *,
        totp_token: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Signer:
        request = self.get_request(request_id)
        signer = self.get_signer(request_id, email)
        self._ensure_actionable(request, signer)
        self._check_step_up(request, signer, totp_token)

        signers = self.list_signers(request_id)
        verdict = self._evaluate_can_sign(request, signer, signers)
        if not verdict.can_sign:
            raise OrderViolation(verdict.reason or "Signer is not allowed to sign yet")

        now = utcnow()
        data = {key: value for key, value in (signature_data or {}).items() if value is not None}
        data["signed_at"] = now.isoformat()

        opened = conditional_update(
            self.session,
            SigningRequest,
            request.id,
            {"status": RequestStatus.IN_PROGRESS},
            SigningRequest.status.in_(list(OPEN_STATUSES)),
        )
        signed = opened and conditional_update(
            self.session,
            Signer,
            signer.id,
            {"status": SignerStatus.SIGNED, "signed_at": now, "signature_data": data},
            Signer.status.in_(list(ACTIONABLE_SIGNER_STATUSES)),
        )
        if not signed:
            self.session.rollback()
            raise InvalidTransition("Signing request or signer changed concurrently; reload and try again")

        self.outbox.enqueue(
            request.initiated_by,
            "signer_signed",
            f"{signer.name} signed '{request.title}'",
            f"{signer_label(signer)} signed the document '{request.title}'.",
            signing_request_id=request.id,
            payload={"signer_email": signer.email},
        )
        if resolve_policy(request) is SigningPolicy.SEQUENTIAL:
            for upcoming in self._next_in_turn(signers, after=signer):
                self._enqueue_invitation(request, upcoming)

        self.audit.record_event(
            "signature_applied",
            actor_email=signer.email,
            signing_request_id=request.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"order": signer.order_index},
        )
        self.commit()
        logger.info("Signer %s signed request %s", signer.email, request.id)
        return self.get_signer(request_id, email)

    @staticmethod
    def _next_in_turn(signers: Iterable[Signer], *, after: Signer) -> list[Signer]:
        remaining = [
            item
            for item in signers
            if item.id != after.id and item.status in ACTIONABLE_SIGNER_STATUSES
        ]
        if not remaining:
            return []
        next_order = min(item.order_index for item in remaining)
        if next_order < after.order_index:
            return []
        return [item for item in remaining if item.order_index == next_order]

    def apply_decline(
        self,
        request_id: UUID,
        email: str,
        reason: str | None = None,
        *,
        commit: bool = True,
    ) -> tuple[SigningRequest, Signer]:
        request = self.get_request(request_id)
        signer = self.get_signer(request_id, email)
        self._ensure_actionable(request, signer)
        now = utcnow()
        reason = (reason or "").strip() or None

        declined = conditional_update(
            self.session,
            Signer,
            signer.id,
            {"status": SignerStatus.DECLINED, "declined_at": now, "decline_reason": reason},
            Signer.status.in_(list(ACTIONABLE_SIGNER_STATUSES)),
        )
        if not declined:
            self.session.rollback()
            raise InvalidTransition("Signer changed concurrently; reload and try again")

        request_values: dict[str, Any]
        if effective_policy(request) is SigningPolicy.SEQUENTIAL:
            request_values = {
                "status": RequestStatus.DECLINED,
                "declined_by": signer.email,
                "decline_reason": reason,
                "declined_at": now,
            }
        else:
            others = [item for item in self.list_signers(request_id) if item.id != signer.id]
            remaining = [item for item in others if item.status in ACTIONABLE_SIGNER_STATUSES]
            any_signed = any(item.status == SignerStatus.SIGNED for item in others)
            if remaining or (not request.require_all_signers and any_signed):
                request_values = {"status": RequestStatus.IN_PROGRESS}
            else:
                request_values = {
                    "status": RequestStatus.DECLINED,
                    "declined_by": signer.email,
                    "decline_reason": reason,
                    "declined_at": now,
                }

        moved = conditional_update(
            self.session,
            SigningRequest,
            request.id,
            request_values,
            SigningRequest.status.in_(list(OPEN_STATUSES)),
        )
        if not moved:
            self.session.rollback()
            raise InvalidTransition("Signing request changed concurrently; reload and try again")

        self.audit.record_event(
            "signer_declined",
            actor_email=signer.email,
            signing_request_id=request.id,
            details={"reason": reason, "request_status": request_values["status"].value},
        )
        if commit:
            self.commit()
        else:
            self.session.flush()
            self.session.expire_all()
        logger.info("Signer %s declined request %s", signer.email, request.id)
        return self.get_request(request_id), self.get_signer(request_id, email)

    # Notifications -------------------------------------------------------
    def _enqueue_invitation(self, request: SigningRequest, signer: Signer) -> None:
        self.outbox.enqueue(
            signer.email,
            "signature_requested",
            f"Signature requested: {request.title}",
            f"{request.initiated_by} asked you to sign '{request.title}'.",
            signing_request_id=request.id,
            payload={"order": signer.order_index},
        )

