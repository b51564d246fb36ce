from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings

Base = declarative_base()


def _use_immediate_transactions(engine: Engine) -> None:
    """
    pysqlite defers BEGIN until the first write, which lets two writers hold
    SHARED locks and then fail to upgrade. Taking the write lock at BEGIN
    serializes writers on the busy timeout instead.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        _use_immediate_transactions(engine)
        return engine
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(bind: Engine | None = None) -> None:
    import models  # noqa: F401  register metadata

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    ensure_schema_migrations(bind)


def _table_columns(conn, table_name: str) -> set:
    rows = conn.execute(text(f"PRAGMA table_info({table_name})")).fetchall()
    return {row[1] for row in rows}


def _ensure_column(conn, table: str, column: str, ddl: str):
    columns = _table_columns(conn, table)
    if column not in columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {ddl}"))


def ensure_schema_migrations(bind: Engine | None = None):
    """
    SQLite does not auto-migrate with SQLAlchemy metadata. Databases created
    before leg tracking existed pick up the leg columns here; other backends
    are expected to be migrated out of band.
    """
    bind = bind or engine
    if bind.dialect.name != "sqlite":
        return
    with bind.begin() as conn:
        flight_columns = {
            "leg_number": "leg_number INTEGER DEFAULT 1",
            "cancellation_reason": "cancellation_reason TEXT",
        }
        for name, ddl in flight_columns.items():
            _ensure_column(conn, "flights", name, ddl)

        for table in ("reservations", "bookings"):
            _ensure_column(conn, table, "leg_number", "leg_number INTEGER DEFAULT 1")
