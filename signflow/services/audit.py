from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlmodel import Session, func, select

from signflow.models.audit import AuditLog


class AuditService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record_event(
        self,
        event_type: str,
        actor_email: str | None = None,
        signing_request_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict | None = None,
    ) -> AuditLog:
        """Adds an audit entry to the current unit of work; the caller commits."""
        log = AuditLog(
            signing_request_id=signing_request_id,
            event_type=event_type,
            actor_email=actor_email,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )
        self.session.add(log)
        return log

    def list_events(
        self,
        signing_request_id: Optional[UUID] = None,
        event_type: Optional[str] = None,
        start_at: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLog], int]:
        query = select(AuditLog)
        if signing_request_id:
            query = query.where(AuditLog.signing_request_id == signing_request_id)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        if start_at:
            query = query.where(AuditLog.created_at >= start_at)

        total = self.session.exec(select(func.count()).select_from(query.subquery())).one()
        items = self.session.exec(
            query.order_by(AuditLog.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        ).all()
        return list(items), int(total or 0)
