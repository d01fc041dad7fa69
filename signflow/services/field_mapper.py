"""
Maps a document's field schema onto the values submitted by signed signers.

Everything here is pure: no session, no storage. The renderer consumes the
``FieldInstance`` list produced by :func:`map_fields`.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from signflow.models.signing import SignerStatus

logger = logging.getLogger("signflow.field_mapper")

DEFAULT_DATE_FORMAT = "%Y-%m-%d"
DEFAULT_DATETIME_FORMAT = "%Y-%m-%d %H:%M UTC"
LOCATION_NOT_AVAILABLE = "Location not available"
POSITIONAL_TOKEN = re.compile(r"^signer_(\d+)$", re.IGNORECASE)

IMAGE_FIELD_TYPES = frozenset({"signature", "signature_image", "initials"})


@dataclass(frozen=True)
class FieldInstance:
    field_key: str
    field_type: str
    page: int
    x: float
    y: float
    width: float
    height: float
    value: str
    signer_email: str

    @property
    def is_image(self) -> bool:
        return self.field_type in IMAGE_FIELD_TYPES


def _normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def _sorted_signers(signers: Iterable[Any]) -> list[Any]:
    return sorted(signers, key=lambda item: (int(getattr(item, "order_index", 0) or 0), _normalize_email(item.email)))


def resolve_bindings(
    fields: Sequence[Any],
    signers: Sequence[Any],
    stored_bindings: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Resolves every binding token used by ``fields`` to a signer email.

    Stored bindings win. When the request has none, tokens of the form
    ``signer_N`` map to the N-th signer in ascending order. The two strategies
    are never mixed for one document. Literal e-mail bindings resolve directly.
    """
    known_emails = {_normalize_email(signer.email) for signer in signers}
    stored = {str(token).strip(): _normalize_email(email) for token, email in (stored_bindings or {}).items()}
    ordered = _sorted_signers(signers)
    resolved: dict[str, str] = {}

    for field in fields:
        token = (getattr(field, "signer_binding", None) or "").strip()
        if not token or token in resolved:
            continue
        if "@" in token:
            email = _normalize_email(token)
            if email in known_emails:
                resolved[token] = email
            continue
        if stored:
            email = stored.get(token)
        else:
            match = POSITIONAL_TOKEN.match(token)
            email = None
            if match:
                position = int(match.group(1))
                if 1 <= position <= len(ordered):
                    email = _normalize_email(ordered[position - 1].email)
        if email and email in known_emails:
            resolved[token] = email
        else:
            logger.info("Binding %r could not be resolved to a signer of the request", token)
    return resolved


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None
    return None


def _format_location(signature_data: Mapping[str, Any]) -> str:
    location = signature_data.get("location") or {}
    if isinstance(location, Mapping):
        address = (location.get("address") or "").strip()
        if address:
            return address
    profile = signature_data.get("profile_location") or {}
    if isinstance(profile, Mapping):
        parts = [str(profile.get(key) or "").strip() for key in ("district", "state")]
        joined = ", ".join(part for part in parts if part)
        if joined:
            return joined
    return LOCATION_NOT_AVAILABLE


def field_value(
    field: Any,
    signer: Any,
    *,
    date_format: str = DEFAULT_DATE_FORMAT,
    datetime_format: str = DEFAULT_DATETIME_FORMAT,
) -> str | None:
    """Value lookup by field type. Returns None when the signer has nothing to render."""
    signature_data: Mapping[str, Any] = signer.signature_data or {}
    field_type = (getattr(field, "field_type", None) or "").strip().lower()
    field_values = signature_data.get("field_values") or {}
    submitted = field_values.get(field.field_key) if isinstance(field_values, Mapping) else None

    if field_type in IMAGE_FIELD_TYPES:
        return signature_data.get("signature_image") or None
    if field_type in {"name", "full_name", "text"}:
        if field_type == "text" and submitted:
            return str(submitted)
        return signature_data.get("signer_name") or signer.name or None
    if field_type in {"date", "signed_date", "datetime", "timestamp"}:
        signed_at = _parse_timestamp(signature_data.get("signed_at")) or signer.signed_at
        if not signed_at:
            return None
        fmt = date_format if field_type in {"date", "signed_date"} else datetime_format
        return signed_at.strftime(fmt)
    if field_type == "location":
        return _format_location(signature_data)
    if field_type in {"state", "district"}:
        profile = signature_data.get("profile_location") or {}
        return str(profile.get(field_type) or "") if isinstance(profile, Mapping) else ""
    if field_type == "email":
        return signer.email
    return getattr(field, "label", None) or field.field_key


def map_fields(
    fields: Sequence[Any],
    signers: Sequence[Any],
    bindings: Mapping[str, str],
    *,
    date_format: str = DEFAULT_DATE_FORMAT,
    datetime_format: str = DEFAULT_DATETIME_FORMAT,
) -> list[FieldInstance]:
    signed = {
        _normalize_email(signer.email): signer
        for signer in signers
        if signer.status == SignerStatus.SIGNED and signer.signature_data
    }
    ordered_fields = sorted(enumerate(fields), key=lambda item: (int(getattr(item[1], "sort_index", 0) or 0), item[0]))
    instances: list[FieldInstance] = []
    for _, field in ordered_fields:
        token = (getattr(field, "signer_binding", None) or "").strip()
        email = bindings.get(token) if token else None
        signer = signed.get(email) if email else None
        if signer is None:
            continue
        value = field_value(field, signer, date_format=date_format, datetime_format=datetime_format)
        if value is None:
            continue
        instances.append(
            FieldInstance(
                field_key=field.field_key,
                field_type=(field.field_type or "").strip().lower(),
                page=int(field.page or 1),
                x=float(field.x),
                y=float(field.y),
                width=float(field.width),
                height=float(field.height),
                value=value,
                signer_email=email,
            )
        )
    return instances
