from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import get_settings

settings = get_settings()

_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def init_db(bind=None) -> None:
    """
    Create all research tables on the given engine (defaults to the app engine).
    """
    # Import models so they register on Base.metadata
    from ..models import research_job, research_sub_job, research_trace_event  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
