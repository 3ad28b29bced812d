from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import settings


class Base(DeclarativeBase):
    pass


def create_db_engine(url: str) -> Engine:
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}  # needed for SQLite
        if ":memory:" in url or url == "sqlite://":
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


engine = create_db_engine(settings.database_url)

SessionLocal = create_session_factory(engine)


def init_db(bind: Engine) -> None:
    """Create tables and apply the schema guards."""
    # models must be imported so their tables are registered on Base.metadata
    from .. import models  # noqa: F401

    Base.metadata.create_all(bind=bind)
    ensure_issue_schema(bind)
    ensure_notification_schema(bind)


def ensure_issue_schema(bind: Engine) -> None:
    """
    Minimal schema guard for the issues table (SQLite).
    Databases created before the unique fingerprint index existed get it here.
    """
    if bind.dialect.name != "sqlite":
        return
    with bind.begin() as conn:
        unique_indexes = [
            row[1] for row in conn.execute(text("PRAGMA index_list(issues)")) if row[2]
        ]
        covered = False
        for name in unique_indexes:
            cols = [row[2] for row in conn.execute(text(f"PRAGMA index_info('{name}')"))]
            if cols == ["fingerprint"]:
                covered = True
                break
        if not covered:
            conn.execute(
                text("CREATE UNIQUE INDEX IF NOT EXISTS ux_issues_fingerprint ON issues (fingerprint)")
            )


def ensure_notification_schema(bind: Engine) -> None:
    """Add the delivery claim columns to notification tables created without them (SQLite)."""
    if bind.dialect.name != "sqlite":
        return
    with bind.begin() as conn:
        existing = {row[1] for row in conn.execute(text("PRAGMA table_info(notifications)"))}
        for column, ddl in (("locked_at", "DATETIME"), ("locked_by", "VARCHAR")):
            if column not in existing:
                conn.execute(text(f"ALTER TABLE notifications ADD COLUMN {column} {ddl}"))
