import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _serialize_sqlite_writers(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up front
    # so a read-compute-write allocation cannot interleave with another one.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(db_url: str) -> Engine:
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True, future=True)

    if ":memory:" in db_url:
        # One shared connection and therefore one transaction: single-threaded use only (tests).
        return create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )

    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    _serialize_sqlite_writers(engine)
    return engine


RENTAL_DB_URL = _require_env("RENTAL_DB_URL")

engine_rental = build_engine(RENTAL_DB_URL)

SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_schema(engine: Engine | None = None) -> None:
    from db.base import Base
    import models.rental_models  # noqa: F401

    Base.metadata.create_all(bind=engine or engine_rental)
