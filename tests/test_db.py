"""Tests for the Meridian storage layer: SQLite schema, transactions, Store."""

import sqlite3

import pytest

from db import PersistenceFailure, Store, sqlite_connection, sqlite_transaction


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Redirect SQLite DB to a temp directory for test isolation."""
    db_file = str(tmp_path / "test_meridian.db")
    monkeypatch.setenv("MERIDIAN_DB_PATH", db_file)
    import db as db_mod
    monkeypatch.setattr(db_mod, "DEFAULT_DB_FILE", db_file)
    yield db_file


def _insert_host(conn, host_id="h1"):
    conn.execute(
        "INSERT INTO hosts(host_id, name, endpoint, registered_at) VALUES (?, ?, ?, ?)",
        (host_id, "box", "http://box", 1.0),
    )


# ── SQLite Connection ─────────────────────────────────────────────────


class TestSQLiteConnection:
    def test_connection_creates_tables(self):
        with sqlite_connection() as conn:
            names = {r["name"] for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()}
        assert {"hosts", "servers", "executions", "payments"} <= names

    def test_indexes_created(self):
        with sqlite_connection() as conn:
            names = {r["name"] for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()}
        assert "idx_hosts_status" in names
        assert "idx_executions_requester" in names
        assert "idx_payments_host" in names

    def test_wal_mode_enabled(self):
        with sqlite_connection() as conn:
            mode = conn.execute("PRAGMA journal_mode").fetchone()
        assert mode[0] == "wal"

    def test_foreign_keys_enforced(self):
        with pytest.raises(sqlite3.IntegrityError):
            with sqlite_transaction() as conn:
                conn.execute(
                    "INSERT INTO payments(payment_id, host_id, execution_id, amount_units, created_at) "
                    "VALUES ('p1', 'missing', 'missing', 1, 1.0)"
                )


class TestSQLiteTransaction:
    def test_commit_on_success(self):
        with sqlite_transaction() as conn:
            _insert_host(conn)
        with sqlite_connection() as conn:
            row = conn.execute("SELECT name FROM hosts WHERE host_id = 'h1'").fetchone()
        assert row["name"] == "box"

    def test_rollback_on_error(self):
        with pytest.raises(RuntimeError):
            with sqlite_transaction() as conn:
                _insert_host(conn)
                raise RuntimeError("boom")
        with sqlite_connection() as conn:
            row = conn.execute("SELECT 1 FROM hosts WHERE host_id = 'h1'").fetchone()
        assert row is None

    def test_counter_check_constraint(self):
        with sqlite_transaction() as conn:
            _insert_host(conn)
        with pytest.raises(sqlite3.IntegrityError):
            with sqlite_transaction() as conn:
                conn.execute("UPDATE hosts SET successful_executions = 1 WHERE host_id = 'h1'")


# ── Store ─────────────────────────────────────────────────────────────


class TestStore:
    def test_sqlite_placeholder(self):
        assert Store().ph == "?"

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError):
            Store(backend="oracle")

    def test_explicit_path_wins_over_env(self, tmp_path):
        path = str(tmp_path / "pinned.db")
        store = Store(db_path=path)
        with store.transaction() as conn:
            _insert_host(conn)
        with sqlite_connection(path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM hosts").fetchone()[0] == 1

    def test_driver_error_becomes_persistence_failure(self):
        store = Store()
        with store.transaction() as conn:
            _insert_host(conn)
        with pytest.raises(PersistenceFailure):
            with store.transaction() as conn:
                _insert_host(conn)

    def test_failed_transaction_rolls_back(self):
        store = Store()
        with pytest.raises(PersistenceFailure):
            with store.transaction() as conn:
                _insert_host(conn, "h1")
                _insert_host(conn, "h1")
        with store.connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM hosts").fetchone()[0] == 0

    def test_json_helpers(self):
        store = Store()
        assert store.encode_json(None) is None
        encoded = store.encode_json({"a": [1, 2]})
        assert store.decode_json(encoded) == {"a": [1, 2]}
        assert store.decode_json(None) is None

    def test_healthcheck(self):
        assert Store().healthcheck() == {"ok": True, "backend": "sqlite"}

    def test_healthcheck_reports_failure(self, tmp_path):
        store = Store(db_path=str(tmp_path / "missing-dir" / "x.db"))
        health = store.healthcheck()
        assert health["ok"] is False
        assert "error" in health
