"""Engine and session factories for the payments database."""

from sqlalchemy import JSON, Engine, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from paysettle.common.config import settings

MEMORY_DSNS = {"sqlite://", "sqlite:///:memory:"}


def make_engine(dsn: str) -> Engine:
    """Engine for `dsn`. An in-memory SQLite database lives on one shared connection."""

    if dsn in MEMORY_DSNS:
        return create_engine(dsn, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(dsn, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # Services read payments back after committing them.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.postgres_dsn)
SessionLocal = make_session_factory(engine)

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass
