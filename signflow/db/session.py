import os
from typing import Any, Callable, Generator

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from signflow.core.config import settings
from signflow.core.logging_setup import logger
from signflow.db import base  # noqa: F401

connect_args: dict[str, Any] = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False
elif settings.database_url.startswith("postgresql"):
    client_encoding = os.getenv("POSTGRES_CLIENT_ENCODING", "UTF8")
    connect_args["options"] = f"-c client_encoding={client_encoding}"

engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    connect_args=connect_args,
)

SessionFactory = Callable[[], Session]


def init_db() -> None:
    SQLModel.metadata.create_all(bind=engine)
    _ensure_schema_compatibility()


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def session_factory() -> Session:
    """Opens a new session bound to the current engine (used by background sweeps)."""
    return Session(engine, expire_on_commit=False)


def _ensure_schema_compatibility() -> None:
    """
    Keep backward compatibility with databases created before the render guard existed.
    Adds any render guard column missing from signing_requests.
    """
    try:
        with engine.begin() as conn:
            inspector = inspect(conn)
            table_names = set(inspector.get_table_names())
            if "signing_requests" not in table_names:
                return
            columns = {column["name"] for column in inspector.get_columns("signing_requests")}
            missing = {
                "render_status": "VARCHAR(32) DEFAULT 'IDLE' NOT NULL",
                "render_attempts": "INTEGER DEFAULT 0 NOT NULL",
                "render_started_at": "TIMESTAMP NULL",
            }
            for name, ddl in missing.items():
                if name in columns:
                    continue
                logger.warning("Column '%s' missing on 'signing_requests'. Applying automatic fix.", name)
                statement = f"ALTER TABLE signing_requests ADD COLUMN {name} {ddl}"
                if settings.database_url.startswith("postgresql"):
                    statement = f"ALTER TABLE signing_requests ADD COLUMN IF NOT EXISTS {name} {ddl}"
                conn.exec_driver_sql(statement)
                logger.info("Column '%s' added to 'signing_requests'.", name)
    except SQLAlchemyError as exc:  # pragma: no cover - best effort safeguard
        logger.error("Failed to adjust database schema: %s", exc)
