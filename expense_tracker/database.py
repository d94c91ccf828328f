from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def build_engine(url: str, **kwargs) -> Engine:
    """Create the application engine.

    SQLite connections get foreign key enforcement and take the write lock
    when a transaction begins, so concurrent writers queue on the busy
    timeout instead of failing on a lock upgrade.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, **kwargs)

    connect_args = {"check_same_thread": False, **kwargs.pop("connect_args", {})}
    engine = create_engine(url, connect_args=connect_args, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Transactions are started explicitly by the "begin" hook below.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine
