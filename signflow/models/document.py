from typing import List
from uuid import UUID

from sqlmodel import Field, Relationship

from signflow.models.base import TimestampedModel, UUIDModel


class Document(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "documents"

    title: str = Field(max_length=255)
    storage_path: str
    original_filename: str | None = Field(default=None, max_length=255)
    mime_type: str = Field(default="application/pdf", max_length=64)
    size_bytes: int = Field(default=0)
    sha256: str | None = Field(default=None, index=True)
    created_by: str | None = Field(default=None, max_length=255)

    fields: List["DocumentField"] = Relationship(back_populates="document")


class DocumentField(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "document_fields"

    document_id: UUID = Field(foreign_key="documents.id", index=True)
    field_key: str = Field(max_length=128)
    field_type: str = Field(default="signature", max_length=32)
    signer_binding: str | None = Field(default=None, max_length=255)
    page: int = Field(default=1, ge=1)
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    width: float = Field(default=0.25, gt=0.0, le=1.0)
    height: float = Field(default=0.05, gt=0.0, le=1.0)
    label: str | None = Field(default=None, max_length=128)
    required: bool = Field(default=True)
    sort_index: int = Field(default=0)

    document: Document = Relationship(back_populates="fields")
