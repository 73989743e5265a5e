import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bizagent import db
from bizagent.db_models import BusinessDB
from bizagent.logging_config import configure_logging


def test_configure_logging_adds_stdout_handler_and_is_idempotent() -> None:
    root = logging.getLogger()
    # Preserve existing handlers so other tests are not affected.
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        for handler in list(root.handlers):
            root.removeHandler(handler)

        configure_logging("debug")
        assert root.handlers
        assert root.level == logging.DEBUG
        first_ids = {id(h) for h in root.handlers}

        configure_logging()
        assert {id(h) for h in root.handlers} == first_ids
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in original_handlers:
            root.addHandler(handler)
        root.setLevel(original_level)


def test_database_url_prefers_explicit_setting(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite:///explicit.db")
    assert db._build_database_url() == "sqlite:///explicit.db"

    monkeypatch.delenv("DATABASE_URL")
    monkeypatch.setenv("DB_USER", "app")
    monkeypatch.setenv("DB_PASSWORD", "pw")
    monkeypatch.setenv("DB_HOST", "db.internal")
    assert db._build_database_url() == "postgresql+psycopg2://app:pw@db.internal:5432/postgres"

    monkeypatch.delenv("DB_HOST")
    assert db._build_database_url().startswith("sqlite:///")


def test_init_db_creates_tables_and_seeds_default_business(tmp_path, monkeypatch) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'init.db'}")
    factory = sessionmaker(bind=engine)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(db, "SessionLocal", factory)

    db.init_db()
    db.init_db()

    session = factory()
    try:
        rows = session.query(BusinessDB).all()
        assert [r.id for r in rows] == ["default_business"]
    finally:
        session.close()
        engine.dispose()
