from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from signflow.core.errors import ErrorKind, SigningError


class Timestamped(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    created_at: datetime
    updated_at: datetime | None = None


class IDModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID


class OperationResult(BaseModel):
    success: bool
    data: Any | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @classmethod
    def ok(cls, data: Any | None = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def from_error(cls, exc: SigningError) -> "OperationResult":
        return cls(success=False, error_kind=exc.kind, error_message=exc.message)
