"""
Shared database connection utility.
"""
from sqlalchemy import Engine, create_engine, event

from config import ReplicationConfig, build_connection_url

READ_ONLY_SESSION_SQL = "SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY"


def _make_session_read_only(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(READ_ONLY_SESSION_SQL)
    finally:
        cursor.close()
    dbapi_connection.commit()


def get_source_engine(config: ReplicationConfig) -> Engine:
    """
    Get SQLAlchemy engine for the source database.

    Every pooled connection is switched to read-only transactions as soon as
    it is opened. One connection is enough: tables are streamed sequentially.
    """
    engine = create_engine(
        build_connection_url(config.source_uri),
        pool_size=1,
        max_overflow=0,
        pool_pre_ping=True,    # Verify connections before using
        echo=False,
    )
    event.listen(engine, "connect", _make_session_read_only)
    return engine


def get_warehouse_engine(config: ReplicationConfig) -> Engine:
    """
    Get SQLAlchemy engine for the Redshift warehouse.

    Redshift speaks the PostgreSQL wire protocol but has no hstore type, so
    the psycopg dialect must not probe for it on connect.
    """
    return create_engine(
        build_connection_url(config.target_uri),
        pool_size=1,
        max_overflow=0,
        pool_pre_ping=True,
        use_native_hstore=False,
        echo=False,
    )
