from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool


def _serialize_sqlite_writers(engine):
    """
    aiosqlite issues deferred BEGINs, so two writers can both hold a read lock
    and deadlock on upgrade. Take the write lock at BEGIN instead; concurrent
    transactions then queue behind the busy timeout.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine(database_url: str, echo: bool = False):
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )
        _serialize_sqlite_writers(engine)
        return engine
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


Base = declarative_base()


def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )
