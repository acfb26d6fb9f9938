#provisioning_engine/infrastructure/postgres/database.py

"""Engine and session factories shared by the panel repositories."""

from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from provisioning_engine.infrastructure.postgres.config import settings


Base = declarative_base()


# ============================================
# Engine
# ============================================
def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """
    PostgreSQL with a pooled connection set in production.

    A sqlite URL gets a single shared connection instead, so an
    in-memory database survives across sessions and threads.
    """
    url = database_url or settings.database_url

    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=settings.echo_sql,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    engine = create_engine(
        url,
        echo=settings.echo_sql,
        pool_pre_ping=True,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
    )

    @event.listens_for(engine, "connect")
    def set_search_path(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("SET search_path TO public")
        cursor.close()

    return engine


engine = create_db_engine()

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False
)


def get_session_factory(engine_instance: Optional[Engine] = None):
    """Session factory for the repositories; tests pass their own engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine_instance or engine,
        expire_on_commit=False
    )


# ============================================
# Schema
# ============================================
def init_db(engine_instance: Optional[Engine] = None) -> None:
    """Create missing tables. The ORM models must be imported first."""
    Base.metadata.create_all(bind=engine_instance or engine)


def drop_db(engine_instance: Optional[Engine] = None) -> None:
    Base.metadata.drop_all(bind=engine_instance or engine)
