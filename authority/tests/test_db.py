"""Tests for store setup, URL resolution, and legacy column migration."""
from __future__ import annotations

from sqlalchemy import create_engine, inspect as sa_inspect, text

from authority import db


class TestDatabaseUrl:
    def test_explicit_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AUTHORITY_DATABASE_URL", "postgresql://ignored")
        assert db.database_url(tmp_path / "x.db") == f"sqlite:///{tmp_path / 'x.db'}"

    def test_env_url(self, monkeypatch):
        monkeypatch.setenv("AUTHORITY_DATABASE_URL", "  postgresql+psycopg://u:p@db/authority ")
        assert db.database_url() == "postgresql+psycopg://u:p@db/authority"

    def test_default_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("AUTHORITY_DATABASE_URL", raising=False)
        monkeypatch.setattr(db, "DATA_DIR", tmp_path / "data")
        assert db.database_url() == f"sqlite:///{tmp_path / 'data' / 'authority.db'}"
        assert (tmp_path / "data").is_dir()


class TestInitDb:
    def test_creates_tables_and_sessions(self, tmp_path):
        db.init_db(tmp_path / "fresh.db")
        session = db.get_session()
        try:
            assert session.execute(text("PRAGMA foreign_keys")).scalar_one() == 1
            tables = set(sa_inspect(session.get_bind()).get_table_names())
        finally:
            session.close()
        assert {"bets", "bet_risks", "projections", "capability_pods", "memberships"} <= tables

    def test_migrates_old_bets_table(self, tmp_path):
        path = tmp_path / "old.db"
        legacy = create_engine(f"sqlite:///{path}")
        with legacy.begin() as conn:
            conn.execute(text("CREATE TABLE bets (id VARCHAR(36) PRIMARY KEY, org_id VARCHAR(36), title VARCHAR(300))"))
        legacy.dispose()

        db.init_db(path)
        session = db.get_session()
        try:
            columns = {c["name"] for c in sa_inspect(session.get_bind()).get_columns("bets")}
        finally:
            session.close()
        assert {"closed_at", "measured_outcome_result"} <= columns


def test_session_generator_closes(tmp_path):
    db.init_db(tmp_path / "gen.db")
    gen = db.session_generator()
    session = next(gen)
    assert session.execute(text("SELECT 1")).scalar_one() == 1
    gen.close()
