import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

DEFAULT_DATABASE_URL = "sqlite:///./drafts.db"


def _use_immediate_transactions(sqlite_engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two writers
    # deadlock on lock promotion. Take the write lock up front instead.
    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Chunk workers touch the database from the threadpool.
        sqlite_engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        _use_immediate_transactions(sqlite_engine)
        return sqlite_engine
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL))
