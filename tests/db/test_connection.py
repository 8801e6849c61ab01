"""Tests for database URL resolution and engine setup."""

from sqlalchemy import inspect, text

from chatsync.db.connection import create_db_engine, get_database_url, init_db


def test_explicit_path_wins(monkeypatch):
    monkeypatch.setenv("CHATSYNC_DATABASE_URL", "sqlite:///from-env.db")
    assert get_database_url("/tmp/explicit.db") == "sqlite:////tmp/explicit.db"


def test_explicit_url_passthrough():
    assert get_database_url("sqlite://") == "sqlite://"


def test_env_url_used_without_path(monkeypatch):
    monkeypatch.setenv("CHATSYNC_DATABASE_URL", "sqlite:///custom/path.db")
    assert get_database_url() == "sqlite:///custom/path.db"


def test_default_url_uses_data_dir(tmp_path, monkeypatch):
    monkeypatch.delenv("CHATSYNC_DATABASE_URL", raising=False)
    monkeypatch.delenv("CHATSYNC_DB_PATH", raising=False)
    monkeypatch.setenv("CHATSYNC_DATA_DIR", str(tmp_path / "data"))

    url = get_database_url()

    assert url == f"sqlite:///{tmp_path / 'data' / 'chatsync.db'}"
    assert (tmp_path / "data").is_dir()


def test_init_db_creates_kv_table():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    assert "kv_entries" in inspect(engine).get_table_names()
    engine.dispose()


def test_wal_mode_enabled(db_file):
    """SQLite WAL mode is set on engine connect for file databases."""
    engine = create_db_engine(str(db_file))
    with engine.connect() as conn:
        result = conn.execute(text("PRAGMA journal_mode;")).scalar()
    engine.dispose()
    assert result == "wal", f"Expected WAL mode, got {result}"
