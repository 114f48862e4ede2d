"""Database engine and session factory"""
import uuid
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from agent_otp.config import settings


def _engine_kwargs(url: str) -> dict:
    """Pool settings only apply to server databases; SQLite uses its own pool."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_timeout": settings.DATABASE_POOL_TIMEOUT,
        "pool_recycle": settings.DATABASE_POOL_RECYCLE,
        "pool_pre_ping": True,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def generate_uuid_string() -> str:
    """Generate UUID as string for SQLite compatibility"""
    return str(uuid.uuid4())


def get_db() -> Generator[Session, None, None]:
    """Yield a session and always close it afterwards"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
