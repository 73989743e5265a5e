from __future__ import annotations

import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)


def _build_database_url() -> str:
    """Prefer explicit DATABASE_URL; otherwise construct one for Postgres."""
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    user = os.getenv("DB_USER")
    password = os.getenv("DB_PASSWORD")
    db_name = os.getenv("DB_NAME", "postgres")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT", "5432")

    if user and password and host:
        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{db_name}"

    return "sqlite:///./bizagent.db"


DATABASE_URL = _build_database_url()

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db() -> None:
    """Create tables and make sure the default tenant row exists."""
    # Importing here avoids circular imports at module load time.
    from .db_models import BusinessDB

    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        if session.get(BusinessDB, "default_business") is None:
            session.add(BusinessDB(id="default_business", name="Default Business"))
            session.commit()
    except Exception:
        session.rollback()
        logger.warning("default_business_seed_failed", exc_info=True)
    finally:
        session.close()
