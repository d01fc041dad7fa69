from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Protocol

import pyotp

from signflow.core.config import settings

logger = logging.getLogger("signflow.step_up")

SecretLookup = Callable[[str], str | None]


class StepUpVerifier(Protocol):
    def is_step_up_required(self, user_id: str, context: Mapping[str, Any]) -> bool:
        ...

    def verify_step_up(self, user_id: str, token: str | None, context: Mapping[str, Any]) -> bool:
        ...


class TotpStepUpVerifier:
    """TOTP check required before signing a request flagged with ``require_totp``."""

    def __init__(self, secret_lookup: SecretLookup, valid_window: int | None = None) -> None:
        self.secret_lookup = secret_lookup
        self.valid_window = settings.totp_valid_window if valid_window is None else valid_window

    def is_step_up_required(self, user_id: str, context: Mapping[str, Any]) -> bool:
        return bool(context.get("require_totp"))

    def verify_step_up(self, user_id: str, token: str | None, context: Mapping[str, Any]) -> bool:
        if not token:
            return False
        secret = self.secret_lookup(user_id)
        if not secret:
            logger.info("No TOTP secret registered for %s", user_id)
            return False
        totp = pyotp.TOTP(secret)
        return bool(totp.verify(token.strip(), valid_window=self.valid_window))


class DenyAllStepUpVerifier:
    """Used when no TOTP secret store is wired: flagged requests cannot be signed."""

    def is_step_up_required(self, user_id: str, context: Mapping[str, Any]) -> bool:
        return bool(context.get("require_totp"))

    def verify_step_up(self, user_id: str, token: str | None, context: Mapping[str, Any]) -> bool:
        return False
