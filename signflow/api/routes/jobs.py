from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlmodel import Session

from signflow.api.deps import get_db, get_notifier, get_session_factory
from signflow.db.session import SessionFactory
from signflow.schemas.scheduler import DispatchResult, SchedulerConfig, SchedulerReport, SweepResult
from signflow.services.notification import NotificationService
from signflow.services.outbox import NotificationDispatcher
from signflow.services.recovery import ErrorRecoveryService
from signflow.services.scheduler import NotificationScheduler

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/run-checks", response_model=SchedulerReport)
async def run_checks(
    config: Optional[SchedulerConfig] = Body(default=None),
    factory: SessionFactory = Depends(get_session_factory),
    notifier: NotificationService = Depends(get_notifier),
) -> SchedulerReport:
    scheduler = NotificationScheduler(factory, notifier=notifier)
    return await scheduler.run_all_checks(config)


@router.post("/process-expired", response_model=SweepResult)
def process_expired(session: Session = Depends(get_db)) -> SweepResult:
    return ErrorRecoveryService(session).process_expired_requests()


@router.post("/dispatch-notifications", response_model=DispatchResult)
def dispatch_notifications(
    limit: int | None = None,
    session: Session = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier),
) -> DispatchResult:
    return NotificationDispatcher(session, notifier).drain(limit)
