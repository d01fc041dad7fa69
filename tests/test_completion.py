import threading
from datetime import timedelta
from types import SimpleNamespace

import pytest

from sqlmodel import Session, select

from signflow.core.errors import ErrorKind, InvalidTransition
from signflow.models.notification import NotificationEvent
from signflow.models.signing import RenderStatus, RequestStatus, SignerStatus, SigningRequest
from signflow.services.completion import CompletionOrchestrator, is_complete
from signflow.services.recovery import ErrorRecoveryService
from signflow.services.signing import SigningService
from signflow.services.state_machine import SigningStateMachine

from tests.conftest import CountingRenderer, claim_render, signature_payload


def _signers(*statuses):
    return [SimpleNamespace(status=status) for status in statuses]


def test_completion_predicate() -> None:
    strict = SimpleNamespace(require_all_signers=True)
    lenient = SimpleNamespace(require_all_signers=False)

    assert is_complete(strict, _signers(SignerStatus.SIGNED, SignerStatus.SIGNED))
    assert not is_complete(strict, _signers(SignerStatus.SIGNED, SignerStatus.DECLINED))
    assert is_complete(lenient, _signers(SignerStatus.SIGNED, SignerStatus.DECLINED))
    assert not is_complete(lenient, _signers(SignerStatus.SIGNED, SignerStatus.VIEWED))
    assert not is_complete(lenient, _signers(SignerStatus.DECLINED, SignerStatus.DECLINED))
    assert not is_complete(strict, [])


def test_alice_then_bob_sequential_scenario(db_session: Session, make_request, storage, renderer) -> None:
    request = make_request(("alice@example.com", "bob@example.com"))
    service = SigningService(db_session, storage=storage, renderer=renderer)

    early = service.sign(request.id, "bob@example.com", signature_payload("Bob"))
    assert early.success is False
    assert early.error_kind == ErrorKind.ORDER_VIOLATION
    assert service.validate_can_sign(request.id, "bob@example.com").data.can_sign is False

    after_alice = service.sign(request.id, "alice@example.com", signature_payload("Alice"))
    assert after_alice.success is True
    assert after_alice.data.status == RequestStatus.IN_PROGRESS
    assert after_alice.data.signers[0].status == SignerStatus.SIGNED

    done = service.sign(request.id, "bob@example.com", signature_payload("Bob"))
    assert done.success is True
    assert done.data.status == RequestStatus.COMPLETED
    assert done.data.render_status == RenderStatus.GENERATED
    assert all(signer.status == SignerStatus.SIGNED for signer in done.data.signers)
    assert storage.load_bytes(done.data.final_document_ref).startswith(b"%PDF")

    recipients = db_session.exec(
        select(NotificationEvent.recipient).where(NotificationEvent.event_type == "document_completed")
    ).all()
    assert sorted(recipients) == ["alice@example.com", "bob@example.com", "owner@example.com"]


def test_concurrent_completions_render_at_most_once(db_session: Session, make_request, storage, session_factory) -> None:
    request = make_request(("alice@example.com", "bob@example.com"), signing_order="parallel")
    machine = SigningStateMachine(db_session)
    for email in ("alice@example.com", "bob@example.com"):
        machine.apply_signature(request.id, email, signature_payload())

    renderer = CountingRenderer(storage, delay=0.05)
    barrier = threading.Barrier(6)
    outcomes = []

    def worker() -> None:
        with session_factory() as session:
            orchestrator = CompletionOrchestrator(session, renderer=renderer)
            barrier.wait()
            outcomes.append(orchestrator.try_complete(request.id))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert renderer.calls == 1
    assert sum(1 for outcome in outcomes if outcome.rendered) == 1
    db_session.expire_all()
    stored = db_session.get(SigningRequest, request.id)
    assert stored.status == RequestStatus.COMPLETED
    assert stored.final_document_ref is not None
    assert stored.render_attempts == 1


def test_render_failure_keeps_signatures(db_session: Session, make_request, storage) -> None:
    request = make_request(("alice@example.com",))
    failing = CountingRenderer(storage, fail=True)
    service = SigningService(db_session, storage=storage, renderer=failing)

    result = service.sign(request.id, "alice@example.com", signature_payload("Alice"))

    assert result.success is True
    assert result.data.status == RequestStatus.PDF_GENERATION_FAILED
    assert result.data.render_status == RenderStatus.FAILED
    assert result.data.error_message == "storage unavailable"
    assert result.data.final_document_ref is None
    signer = SigningStateMachine(db_session).get_signer(request.id, "alice@example.com")
    assert signer.status == SignerStatus.SIGNED
    assert signer.signature_data["signer_name"] == "Alice"

    retried = SigningService(db_session, storage=storage, renderer=CountingRenderer(storage)).retry_render(request.id)
    assert retried.success is True
    assert retried.data.rendered is True
    assert SigningStateMachine(db_session).get_request(request.id).status == RequestStatus.COMPLETED


def test_parallel_decline_completes_once_remaining_signer_signs(db_session: Session, make_request, storage, renderer) -> None:
    request = make_request(
        ("alice@example.com", "bob@example.com"),
        signing_order="parallel",
        require_all_signers=False,
    )
    service = SigningService(db_session, storage=storage, renderer=renderer)

    declined = service.decline(request.id, "bob@example.com", "Not my department")
    assert declined.success is True
    assert declined.data.status == RequestStatus.IN_PROGRESS

    signed = service.sign(request.id, "alice@example.com", signature_payload("Alice"))
    assert signed.data.status == RequestStatus.COMPLETED
    assert signed.data.final_document_ref


def test_parallel_decline_after_signature_completes_immediately(db_session: Session, make_request, storage, renderer) -> None:
    request = make_request(
        ("alice@example.com", "bob@example.com"),
        signing_order="parallel",
        require_all_signers=False,
    )
    service = SigningService(db_session, storage=storage, renderer=renderer)
    service.sign(request.id, "alice@example.com", signature_payload("Alice"))

    result = service.decline(request.id, "bob@example.com")

    assert result.data.status == RequestStatus.COMPLETED


def _fully_signed(session: Session, make_request, emails=("alice@example.com",)):
    request = make_request(emails, signing_order="parallel")
    machine = SigningStateMachine(session)
    for email in emails:
        machine.apply_signature(request.id, email, signature_payload())
    return request


def test_unexpected_renderer_error_is_recorded_as_render_failure(db_session: Session, make_request, storage) -> None:
    request = _fully_signed(db_session, make_request)
    renderer = CountingRenderer(storage, raises=TimeoutError("object store timed out"))

    outcome = CompletionOrchestrator(db_session, renderer=renderer).try_complete(request.id)

    assert outcome.rendered is False
    assert "object store timed out" in outcome.error
    stored = SigningStateMachine(db_session).get_request(request.id)
    assert stored.status == RequestStatus.PDF_GENERATION_FAILED
    assert stored.render_status == RenderStatus.FAILED
    assert "object store timed out" in stored.error_message

    retried = ErrorRecoveryService(db_session, renderer=CountingRenderer(storage)).retry_pdf_generation(request.id)
    assert retried.rendered is True
    assert SigningStateMachine(db_session).get_request(request.id).status == RequestStatus.COMPLETED


def test_abandoned_render_claim_is_taken_over(db_session: Session, make_request, storage) -> None:
    request = _fully_signed(db_session, make_request)
    claim_render(db_session, request.id, age=timedelta(hours=1))
    renderer = CountingRenderer(storage)

    outcome = CompletionOrchestrator(db_session, renderer=renderer).try_complete(request.id)

    assert outcome.rendered is True
    assert renderer.calls == 1
    stored = SigningStateMachine(db_session).get_request(request.id)
    assert stored.status == RequestStatus.COMPLETED
    assert stored.render_status == RenderStatus.GENERATED
    assert stored.render_attempts == 1


def test_live_render_claim_is_left_alone(db_session: Session, make_request, storage) -> None:
    request = _fully_signed(db_session, make_request)
    claim_render(db_session, request.id)
    renderer = CountingRenderer(storage)

    outcome = CompletionOrchestrator(db_session, renderer=renderer).try_complete(request.id)

    assert outcome.rendered is False
    assert renderer.calls == 0
    with pytest.raises(InvalidTransition):
        ErrorRecoveryService(db_session, renderer=renderer).retry_pdf_generation(request.id)
    assert SigningStateMachine(db_session).get_request(request.id).render_status == RenderStatus.GENERATING


def test_result_of_a_superseded_claim_is_discarded(db_session: Session, make_request, storage, session_factory) -> None:
    request = _fully_signed(db_session, make_request)

    def another_worker_takes_over() -> None:
        with session_factory() as other:
            claim_render(other, request.id)

    renderer = CountingRenderer(storage, during=another_worker_takes_over)

    outcome = CompletionOrchestrator(db_session, renderer=renderer).try_complete(request.id)

    assert outcome.rendered is False
    assert outcome.error == "Signing request changed while rendering"
    stored = SigningStateMachine(db_session).get_request(request.id)
    assert stored.status == RequestStatus.IN_PROGRESS
    assert stored.final_document_ref is None
