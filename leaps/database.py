"""
Database configuration for the points engine.

Key goals:
- One engine per process, sessions handed out by a sessionmaker.
- Unique constraints are the concurrency control; every credit path relies
  on the store rejecting the second of two racing inserts.
- SQLite (tests, local dev) gets the pysqlite SAVEPOINT recipe so nested
  transactions behave the same way they do on PostgreSQL.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Declarative base for all models
Base = declarative_base()

# -------------------------------------------------------------------
# ENGINES
# -------------------------------------------------------------------

POSTGRES_ENGINE_KWARGS = {
    "pool_pre_ping": True,
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
}


def _install_sqlite_hooks(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first DML statement, which breaks
    # SAVEPOINT. Take over transaction control from the driver.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            # One shared connection, otherwise every session sees an empty database.
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        _install_sqlite_hooks(engine)
        return engine
    return create_engine(url, **POSTGRES_ENGINE_KWARGS)


# -------------------------------------------------------------------
# SESSIONS
# -------------------------------------------------------------------

def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


# -------------------------------------------------------------------
# SCHEMA + REFERENCE DATA
# -------------------------------------------------------------------

def init_db(engine: Engine) -> None:
    """Create tables and seed the five activity rows (idempotent)."""
    from . import tables
    from .activities import ACTIVITIES

    Base.metadata.create_all(bind=engine)

    SessionLocal = create_session_factory(engine)
    with SessionLocal() as db, db.begin():
        for definition in ACTIVITIES.values():
            if db.get(tables.Activity, definition.code.value) is None:
                db.add(tables.Activity(
                    code=definition.code.value,
                    name=definition.name,
                    default_points=definition.default_points,
                ))
