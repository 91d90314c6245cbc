from __future__ import annotations

from saccodb import database


def test_read_engine_defaults_to_write_engine():
    # No DATABASE_READ_URL in the test environment.
    assert database.READ_DB_URL == database.WRITE_DB_URL
    assert database.read_engine is database.write_engine


def test_read_dependency_closes_its_session(monkeypatch):
    closed = []

    class _Session:
        def close(self):
            closed.append(True)

    monkeypatch.setattr(database, "ReadSessionLocal", _Session)

    dependency = database.get_read_db()
    session = next(dependency)
    assert isinstance(session, _Session)
    assert closed == []

    dependency.close()
    assert closed == [True]


def test_get_db_is_the_write_dependency():
    assert database.get_db is database.get_write_db
