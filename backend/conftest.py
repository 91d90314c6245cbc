from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ.pop("DATABASE_READ_URL", None)
os.environ["SECRET_KEY"] = "test-secret-key"

from saccodb.database import Base  # noqa: E402
from saccodb.apps.accounts import models as account_models  # noqa: E402
from saccodb.apps.stages import models as stage_models  # noqa: E402
from saccodb.apps.audit import models as audit_models  # noqa: E402

SACCODB_TABLES = [
    account_models.Sacco.__table__,
    account_models.User.__table__,
    account_models.SaccoMembership.__table__,
    account_models.UserRoleGrant.__table__,
    stage_models.Route.__table__,
    stage_models.Stage.__table__,
    stage_models.StageEvent.__table__,
    stage_models.CapacityRule.__table__,
    stage_models.ShiftAssignment.__table__,
    audit_models.AuditEvent.__table__,
]


@pytest.fixture()
def db_engine():
    # StaticPool keeps one in-memory database visible to TestClient worker threads.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, tables=SACCODB_TABLES)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(
        bind=db_engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def file_session_factory(tmp_path):
    """
    Sessions over a file-backed SQLite database, one connection per thread.

    Used by the concurrency tests, where each worker thread needs its own
    session and connection.
    """
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'stages.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine, tables=SACCODB_TABLES)
    factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    try:
        yield factory
    finally:
        engine.dispose()
