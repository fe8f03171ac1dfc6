"""
Base database model and session management
"""
import os
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from outreach_sync.config import get_settings
from outreach_sync.utils.logger import log

settings = get_settings()


def enable_sqlite_savepoints(engine):
    """Let SQLAlchemy own BEGIN on SQLite so per-row SAVEPOINTs work.

    pysqlite's own transaction handling defers BEGIN and breaks nested
    transactions; the driver is put in autocommit mode and BEGIN is emitted
    by the engine instead.
    """

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def make_engine(database_url: str):
    """Create an engine for the given URL with the app's pool settings"""
    if database_url.startswith("sqlite"):
        # Resolve relative SQLite paths to absolute so cwd changes can't break it
        if database_url.startswith("sqlite:///") and not database_url.startswith("sqlite:////"):
            rel_path = database_url[len("sqlite:///"):]
            database_url = "sqlite:///" + os.path.abspath(rel_path)
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 60},
            poolclass=NullPool,
            pool_pre_ping=True
        )
        return enable_sqlite_savepoints(engine)

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=3,
        max_overflow=5,
        pool_recycle=300,
    )


# Create database engine
engine = make_engine(settings.database_url)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for all models
Base = declarative_base()


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _migrate_missing_columns(bind):
    """Add columns defined in models but missing from existing DB tables.

    create_all() only creates missing tables; it cannot add new columns
    to tables that already exist.
    """
    inspector = inspect(bind)
    with bind.connect() as conn:
        for table_name, table in Base.metadata.tables.items():
            if not inspector.has_table(table_name):
                continue  # create_all will handle it
            existing = {c["name"] for c in inspector.get_columns(table_name)}
            for col in table.columns:
                if col.name not in existing:
                    col_type = col.type.compile(dialect=bind.dialect)
                    sql = f'ALTER TABLE {table_name} ADD COLUMN {col.name} {col_type}'
                    log.info(f"Auto-migrating: {sql}")
                    conn.execute(text(sql))
        conn.commit()


def init_db(bind=None):
    """Initialize database tables and auto-migrate new columns."""
    # Register every model on the metadata before create_all
    from outreach_sync import models  # noqa: F401

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    _migrate_missing_columns(bind)
