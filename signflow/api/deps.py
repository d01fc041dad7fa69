from typing import Annotated, Generator

from fastapi import Depends, Header, HTTPException, status
from sqlmodel import Session

from signflow.core.config import settings
from signflow.db.session import SessionFactory, get_session, session_factory
from signflow.services.notification import NotificationService
from signflow.services.signing import SigningService
from signflow.services.step_up import StepUpVerifier, TotpStepUpVerifier


def get_db() -> Generator[Session, None, None]:
    yield from get_session()


def get_session_factory() -> SessionFactory:
    return session_factory


def get_current_email(x_user_email: Annotated[str | None, Header()] = None) -> str:
    """The caller is authenticated upstream; only its e-mail reaches the engine."""
    email = (x_user_email or "").strip().lower()
    if not email or "@" not in email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Email header is required")
    return email


def get_notifier() -> NotificationService:
    return NotificationService.from_settings()


def get_step_up_verifier() -> StepUpVerifier:
    secrets = {email.strip().lower(): secret for email, secret in settings.totp_secrets.items()}
    return TotpStepUpVerifier(secrets.get)


def get_signing_service(
    session: Annotated[Session, Depends(get_db)],
    notifier: Annotated[NotificationService, Depends(get_notifier)],
    step_up: Annotated[StepUpVerifier, Depends(get_step_up_verifier)],
) -> SigningService:
    return SigningService(session, notifier=notifier, step_up=step_up)
