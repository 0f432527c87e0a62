# apps/backend/docquiz/db.py
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase
from typing import Generator
from .config import get_database_url

engine = create_engine(get_database_url(), pool_pre_ping=True)

class Base(DeclarativeBase):
    pass

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

def init_db(bind=None) -> None:
    # Import for side effect: registers the tables on Base.metadata
    from . import models  # noqa: F401
    bind = bind or engine
    if bind.dialect.name == "postgresql":
        with bind.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
    Base.metadata.create_all(bind=bind)

def get_session() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db           # handlers can use the session
        db.commit()        # one commit per request: writes land together or not at all
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
