from __future__ import annotations

import logging
from typing import Any, Callable
from uuid import UUID

from sqlmodel import Session

from signflow.core.errors import RenderFailure, SigningError
from signflow.schemas.common import OperationResult
from signflow.schemas.signing import SigningRequestCreate, SigningRequestRead, SignerRead
from signflow.services.completion import CompletionOrchestrator
from signflow.services.notification import NotificationService
from signflow.services.outbox import NotificationDispatcher
from signflow.services.recovery import ErrorRecoveryService
from signflow.services.renderer import DocumentRenderer
from signflow.services.state_machine import SigningStateMachine
from signflow.services.step_up import StepUpVerifier
from signflow.services.storage import StorageBackend

logger = logging.getLogger("signflow.signing")


class SigningService:
    """
    Inbound commands of the lifecycle engine.

    Every command returns an ``OperationResult``; lifecycle errors never escape.
    Pending notifications are drained after each command when a notifier is set.
    """

    def __init__(
        self,
        session: Session,
        *,
        storage: StorageBackend | None = None,
        renderer: DocumentRenderer | None = None,
        notifier: NotificationService | None = None,
        step_up: StepUpVerifier | None = None,
    ) -> None:
        self.session = session
        self.notifier = notifier
        if renderer is None and storage is not None:
            renderer = DocumentRenderer(storage)
        self.state_machine = SigningStateMachine(session, step_up=step_up, storage=storage)
        self.completion = CompletionOrchestrator(session, renderer=renderer)
        self.recovery = ErrorRecoveryService(session, state_machine=self.state_machine, completion=self.completion)

    def _run(self, command: Callable[[], Any]) -> OperationResult:
        try:
            data = command()
        except SigningError as exc:
            self.session.rollback()
            logger.info("Command rejected (%s): %s", exc.kind.value, exc.message)
            result = OperationResult.from_error(exc)
        else:
            result = OperationResult.ok(data)
        self._drain_outbox()
        return result

    def _drain_outbox(self) -> None:
        if self.notifier is None:
            return
        try:
            NotificationDispatcher(self.session, self.notifier).drain()
        except Exception:
            self.session.rollback()
            logger.exception("Notification dispatch failed; events stay queued")

    def _request_read(self, request_id: UUID) -> SigningRequestRead:
        return SigningRequestRead.model_validate(self.state_machine.get_request(request_id))

    # Commands ------------------------------------------------------------
    def initiate_request(self, payload: SigningRequestCreate, initiated_by: str) -> OperationResult:
        def command() -> SigningRequestRead:
            request = self.state_machine.initiate_request(payload, initiated_by)
            return SigningRequestRead.model_validate(request)

        return self._run(command)

    def get_request(self, request_id: UUID) -> OperationResult:
        try:
            return OperationResult.ok(self._request_read(request_id))
        except SigningError as exc:
            return OperationResult.from_error(exc)

    def record_view(self, request_id: UUID, email: str) -> OperationResult:
        return self._run(lambda: SignerRead.model_validate(self.state_machine.record_view(request_id, email)))

    def validate_can_sign(self, request_id: UUID, email: str) -> OperationResult:
        try:
            return OperationResult.ok(self.state_machine.validate_can_sign(request_id, email))
        except SigningError as exc:
            return OperationResult.from_error(exc)

    def sign(
        self,
        request_id: UUID,
        email: str,
        signature_data: dict[str, Any],
        *,
        totp_token: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OperationResult:
        def command() -> SigningRequestRead:
            self.state_machine.apply_signature(
                request_id,
                email,
                signature_data,
                totp_token=totp_token,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.completion.try_complete(request_id)
            return self._request_read(request_id)

        return self._run(command)

    def decline(self, request_id: UUID, email: str, reason: str | None = None) -> OperationResult:
        def command() -> SigningRequestRead:
            self.recovery.handle_decline(request_id, email, reason)
            self.completion.try_complete(request_id)
            return self._request_read(request_id)

        return self._run(command)

    def reset_signer(self, request_id: UUID, email: str, admin: str | None) -> OperationResult:
        return self._run(lambda: SignerRead.model_validate(self.recovery.reset_signer(request_id, email, admin)))

    def extend_deadline(self, request_id: UUID, new_expiry: Any, admin: str | None) -> OperationResult:
        return self._run(
            lambda: SigningRequestRead.model_validate(self.recovery.extend_deadline(request_id, new_expiry, admin))
        )

    def cancel_request(self, request_id: UUID, admin: str | None, reason: str | None = None) -> OperationResult:
        return self._run(
            lambda: SigningRequestRead.model_validate(self.recovery.cancel_request(request_id, admin, reason))
        )

    def retry_render(self, request_id: UUID) -> OperationResult:
        result = self._run(lambda: self.recovery.retry_pdf_generation(request_id))
        outcome = result.data
        if result.success and outcome is not None and outcome.error:
            return OperationResult(
                success=False,
                data=outcome,
                error_kind=RenderFailure.kind,
                error_message=outcome.error,
            )
        return result
