from __future__ import annotations

import base64
import io
import threading
import time
import uuid
from datetime import timedelta
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from sqlmodel import Session, SQLModel, create_engine

from signflow.api import deps
from signflow.core.errors import DeliveryFailure, RenderFailure
from signflow.db import session as db_session_module
from signflow.main import app
from signflow.models.base import utcnow
from signflow.models.signing import RenderStatus, SigningRequest
from signflow.schemas.signing import SigningRequestCreate
from signflow.services.renderer import DocumentRenderer
from signflow.services.state_machine import SigningStateMachine
from signflow.services.storage import LocalStorage

pytestmark = pytest.mark.anyio

# 1x1 transparent PNG
SIGNATURE_PNG = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
SIGNATURE_DATA_URL = f"data:image/png;base64,{SIGNATURE_PNG}"
INITIATOR = "owner@example.com"


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def db_engine(tmp_path):
    db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    db_session_module.engine = engine

    yield engine

    db_session_module.engine = original_engine
    engine.dispose()


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


@pytest.fixture()
def session_factory(db_engine):
    def _factory() -> Session:
        return Session(db_engine, expire_on_commit=False)

    return _factory


@pytest.fixture()
def storage(tmp_path, monkeypatch) -> LocalStorage:
    storage_dir = tmp_path / "storage"
    monkeypatch.setenv("SIGNFLOW_STORAGE", str(storage_dir))
    return LocalStorage(base_dir=storage_dir)


@pytest.fixture()
def renderer(storage) -> DocumentRenderer:
    return DocumentRenderer(storage, header="TEST SIGNATURE")


def build_pdf(pages: int = 1) -> bytes:
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    for index in range(pages):
        pdf.drawString(72, 760, f"Service agreement - page {index + 1}")
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


@pytest.fixture()
def pdf_bytes() -> bytes:
    return build_pdf()


class RecordingNotifier:
    """Stands in for NotificationService; records every delivery."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = {email.lower() for email in (failing or set())}
        self.sent: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def notify(self, recipient, notification_type, title, message, metadata=None) -> bool:
        if recipient.lower() in self.failing:
            raise DeliveryFailure(f"mailbox of {recipient} is unavailable")
        with self._lock:
            self.sent.append(
                {
                    "recipient": recipient,
                    "type": notification_type,
                    "title": title,
                    "message": message,
                    "metadata": metadata or {},
                }
            )
        return True

    def types_for(self, recipient: str) -> list[str]:
        return [item["type"] for item in self.sent if item["recipient"] == recipient]


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


class CountingRenderer(DocumentRenderer):
    """Counts render invocations and optionally fails them or runs ``during`` mid-render."""

    def __init__(
        self,
        storage,
        *,
        fail: bool = False,
        delay: float = 0.0,
        raises: Exception | None = None,
        during: Callable[[], None] | None = None,
    ) -> None:
        super().__init__(storage, header="")
        self.fail = fail
        self.delay = delay
        self.raises = raises
        self.during = during
        self.calls = 0
        self._lock = threading.Lock()

    def render_and_store(self, *, source_ref, instances, reference):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.during:
            self.during()
        if self.raises:
            raise self.raises
        if self.fail:
            raise RenderFailure("storage unavailable")
        return super().render_and_store(source_ref=source_ref, instances=instances, reference=reference)


def claim_render(session: Session, request_id, *, age: timedelta = timedelta()) -> None:
    """Leaves the request as if a worker had claimed its render ``age`` ago."""
    stored = session.get(SigningRequest, request_id)
    stored.render_status = RenderStatus.GENERATING
    stored.render_started_at = utcnow() - age
    session.add(stored)
    session.commit()


def default_fields(count: int) -> list[dict[str, Any]]:
    fields: list[dict[str, Any]] = []
    for position in range(1, count + 1):
        fields.append(
            {
                "field_key": f"signature_{position}",
                "field_type": "signature",
                "signer_binding": f"signer_{position}",
                "x": 0.1,
                "y": 0.1 * position,
                "width": 0.3,
                "height": 0.06,
            }
        )
        fields.append(
            {
                "field_key": f"date_{position}",
                "field_type": "date",
                "signer_binding": f"signer_{position}",
                "x": 0.5,
                "y": 0.1 * position,
                "width": 0.2,
                "height": 0.04,
            }
        )
    return fields


@pytest.fixture()
def make_request(db_session, storage, pdf_bytes):
    encoded = base64.b64encode(pdf_bytes).decode()

    def _make(
        emails: tuple[str, ...] = ("alice@example.com", "bob@example.com"),
        *,
        signing_order: str = "sequential",
        fields: list[dict[str, Any]] | None = None,
        **overrides: Any,
    ):
        payload = SigningRequestCreate(
            title="Service agreement",
            document_base64=encoded,
            document_filename="agreement.pdf",
            signers=[
                {"email": email, "name": email.split("@")[0].title(), "order": position}
                for position, email in enumerate(emails, start=1)
            ],
            fields=fields if fields is not None else default_fields(len(emails)),
            signing_order=signing_order,
            **overrides,
        )
        machine = SigningStateMachine(db_session, storage=storage)
        return machine.initiate_request(payload, INITIATOR)

    return _make


def signature_payload(name: str = "Signer") -> dict[str, Any]:
    return {
        "signature_image": SIGNATURE_DATA_URL,
        "signer_name": name,
        "location": {"address": "1 Market Street, Springfield"},
    }


@pytest.fixture()
def client(db_engine, storage, session_factory, notifier) -> TestClient:
    def override_db():
        with Session(db_engine) as session:
            yield session

    app.dependency_overrides[deps.get_db] = override_db
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()
