from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlmodel import Session, select

from signflow.db.session import SessionFactory
from signflow.models.base import to_utc, utcnow
from signflow.models.signing import ACTIONABLE_SIGNER_STATUSES, OPEN_STATUSES, Signer, SigningRequest
from signflow.schemas.scheduler import CheckResult, DispatchResult, SchedulerConfig, SchedulerReport
from signflow.services.notification import NotificationService
from signflow.services.outbox import NotificationDispatcher, NotificationOutbox
from signflow.services.recovery import ErrorRecoveryService

logger = logging.getLogger("signflow.scheduler")

RecoveryFactory = Callable[[Session], ErrorRecoveryService]


def _pending_signers(session: Session, request: SigningRequest) -> list[Signer]:
    signers = session.exec(
        select(Signer).where(Signer.signing_request_id == request.id).order_by(Signer.order_index)
    ).all()
    return [signer for signer in signers if signer.status in ACTIONABLE_SIGNER_STATUSES]


def _open_requests_expiring(session: Session, start: datetime, end: datetime, *, inclusive_end: bool) -> list[SigningRequest]:
    statement = (
        select(SigningRequest)
        .where(SigningRequest.status.in_(list(OPEN_STATUSES)))
        .where(SigningRequest.expires_at >= start)
    )
    if inclusive_end:
        statement = statement.where(SigningRequest.expires_at <= end)
    else:
        statement = statement.where(SigningRequest.expires_at < end)
    return list(session.exec(statement.order_by(SigningRequest.expires_at)).all())


class NotificationScheduler:
    """
    Time-driven sweeps: expiry, deadline warnings and automatic reminders.

    Each check opens its own session; ``run_all_checks`` runs them concurrently
    and always returns a report instead of raising.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        notifier: NotificationService | None = None,
        recovery_factory: RecoveryFactory | None = None,
    ) -> None:
        self.session_factory = session_factory
        self._notifier = notifier
        self.recovery_factory = recovery_factory or (lambda session: ErrorRecoveryService(session))

    @property
    def notifier(self) -> NotificationService:
        if self._notifier is None:
            self._notifier = NotificationService.from_settings()
        return self._notifier

    def check_expired_documents(self, *, now: datetime | None = None) -> CheckResult:
        with self.session_factory() as session:
            sweep = self.recovery_factory(session).process_expired_requests(now=now)
        return CheckResult(processed=sweep.processed, notified=sweep.expired, errors=sweep.errors)

    def check_deadline_warnings(self, config: SchedulerConfig | None = None, *, now: datetime | None = None) -> CheckResult:
        config = config or SchedulerConfig()
        result = CheckResult()
        if not config.enable_deadline_warnings:
            return result

        now = to_utc(now) if now else utcnow()
        window_end = now + timedelta(hours=config.deadline_warning_hours)
        with self.session_factory() as session:
            outbox = NotificationOutbox(session)
            for request in _open_requests_expiring(session, now, window_end, inclusive_end=True):
                result.processed += 1
                request_id = request.id
                try:
                    pending = _pending_signers(session, request)
                    if not pending:
                        continue
                    hours_remaining = math.ceil((request.expires_at - now).total_seconds() / 3600)
                    urgent = config.enable_expiry_warnings and hours_remaining <= config.expiry_warning_hours
                    outbox.enqueue_many(
                        [signer.email for signer in pending],
                        "expiry_warning" if urgent else "deadline_approaching",
                        f"{'Expires soon' if urgent else 'Deadline approaching'}: {request.title}",
                        f"'{request.title}' expires in {hours_remaining} hour(s) and still needs your signature.",
                        signing_request_id=request_id,
                        payload={"hours_remaining": hours_remaining},
                    )
                    session.commit()
                    result.notified += 1
                except Exception as exc:
                    session.rollback()
                    result.errors.append(f"Failed to process deadline warning for {request_id}: {exc}")
                    logger.exception("Deadline warning for request %s failed", request_id)
        logger.info("Processed %d deadline warning(s), notified %d request(s)", result.processed, result.notified)
        return result

    def send_auto_reminders(self, config: SchedulerConfig | None = None, *, now: datetime | None = None) -> CheckResult:
        config = config or SchedulerConfig()
        result = CheckResult()
        if not config.enable_auto_reminders or not config.auto_reminder_days:
            return result

        now = to_utc(now) if now else utcnow()
        with self.session_factory() as session:
            outbox = NotificationOutbox(session)
            for days in config.auto_reminder_days:
                day_start = (now + timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
                day_end = day_start + timedelta(days=1)
                for request in _open_requests_expiring(session, day_start, day_end, inclusive_end=False):
                    result.processed += 1
                    request_id = request.id
                    try:
                        pending = _pending_signers(session, request)
                        for signer in pending:
                            outbox.enqueue(
                                signer.email,
                                "signature_reminder",
                                f"Reminder: {request.title} expires in {days} day(s)",
                                f"'{request.title}' is still waiting for your signature.",
                                signing_request_id=request_id,
                                payload={"days_remaining": days},
                            )
                        session.commit()
                        result.notified += len(pending)
                    except Exception as exc:
                        session.rollback()
                        result.errors.append(f"Failed to process {days}-day reminder for {request_id}: {exc}")
                        logger.exception("%d-day reminder for request %s failed", days, request_id)
        logger.info("Processed %d auto reminder(s), queued %d notification(s)", result.processed, result.notified)
        return result

    def dispatch_pending(self, limit: int | None = None) -> DispatchResult:
        with self.session_factory() as session:
            return NotificationDispatcher(session, self.notifier).drain(limit)

    def _guarded(
        self,
        name: str,
        fallback: type[CheckResult] | type[DispatchResult],
        check: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """Runs one check; a crash becomes an empty ``fallback`` result carrying the error."""
        try:
            return check(*args)
        except Exception as exc:
            logger.exception("Scheduler check %s failed", name)
            return fallback(errors=[f"Error in {name}: {exc}"])

    async def run_all_checks(self, config: SchedulerConfig | None = None) -> SchedulerReport:
        config = config or SchedulerConfig()
        expired, deadline_warnings, auto_reminders = await asyncio.gather(
            asyncio.to_thread(self._guarded, "check_expired_documents", CheckResult, self.check_expired_documents),
            asyncio.to_thread(self._guarded, "check_deadline_warnings", CheckResult, self.check_deadline_warnings, config),
            asyncio.to_thread(self._guarded, "send_auto_reminders", CheckResult, self.send_auto_reminders, config),
        )
        dispatched = await asyncio.to_thread(self._guarded, "dispatch_pending", DispatchResult, self.dispatch_pending)
        total_errors = len(expired.errors) + len(deadline_warnings.errors) + len(auto_reminders.errors)
        logger.info("Scheduler checks finished with %d error(s)", total_errors)
        return SchedulerReport(
            expired=expired,
            deadline_warnings=deadline_warnings,
            auto_reminders=auto_reminders,
            total_errors=total_errors,
            dispatched=dispatched,
        )
