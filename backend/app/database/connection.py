import time
from contextlib import contextmanager
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from app.core.config import settings
from app.core.logging import db_logger
from app.core.monitoring import record_database_operation, database_connections


def engine_options(database_url: str) -> dict:
    """Pool options for the configured backend"""
    if database_url.startswith("sqlite"):
        # Local development and the offline client store
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "poolclass": QueuePool,
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_pre_ping": True,  # Validate connections before use
        "pool_recycle": 3600,  # Recycle connections after 1 hour
    }


# Create engine with connection pooling
engine = create_engine(
    settings.database_url,
    echo=False,  # Set to True for SQL query logging in development
    **engine_options(settings.database_url),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


# Database monitoring events
@event.listens_for(engine, "connect")
def on_connect(dbapi_connection, connection_record):
    """Event handler for new database connections"""
    database_connections.inc()
    db_logger.debug("New database connection established")


@event.listens_for(engine, "invalidate")
def on_invalidate(dbapi_connection, connection_record, exception):
    """Event handler for connection invalidation"""
    database_connections.dec()
    db_logger.warning("Database connection invalidated", error=str(exception) if exception else None)


def get_db():
    """Dependency to get database session with monitoring"""
    start_time = time.time()
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        db_logger.error("Database session error", error=str(e))
        db.rollback()
        raise
    finally:
        duration = time.time() - start_time
        record_database_operation("session", duration)
        db.close()


@contextmanager
def transaction(db: Session, operation_name: str = "transaction"):
    """Commit on success, roll back and re-raise on failure"""
    start_time = time.time()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        db_logger.debug("Transaction rolled back", operation=operation_name, error=str(e))
        raise
    finally:
        record_database_operation(operation_name, time.time() - start_time)


def create_tables():
    """Create missing tables; deployments run the alembic migrations instead"""
    import app.models  # noqa: F401 - registers the mappers

    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        db_logger.error("Failed to create database tables", error=str(e))
        raise
    db_logger.info("Database tables ready", tables=sorted(Base.metadata.tables))


def check_database_health() -> bool:
    started = time.time()
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db_logger.error("Database health check failed", error=str(e))
        return False
    record_database_operation("health_check", time.time() - started)
    return True


def get_db_stats():
    """Connection pool usage; SQLite's single shared connection has nothing to report"""
    pool = engine.pool
    if not isinstance(pool, QueuePool):
        return {"pool": type(pool).__name__}
    return {
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }


class DatabaseSession:
    """Database session context manager with monitoring.

    Used by code running outside a request (WebSocket handlers, bot reply
    tasks). ``session_maker`` lets tests bind it to their own engine.
    """

    def __init__(self, operation_name: str = "unknown", session_maker=None):
        self.operation_name = operation_name
        self.session_maker = session_maker or SessionLocal
        self.start_time = None
        self.db = None

    def __enter__(self) -> Session:
        self.start_time = time.time()
        self.db = self.session_maker()
        return self.db

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self.db.rollback()
                db_logger.error(
                    "Database operation failed",
                    operation=self.operation_name,
                    error=str(exc_val) if exc_val else None
                )
            else:
                self.db.commit()
        finally:
            duration = time.time() - self.start_time
            record_database_operation(self.operation_name, duration)
            self.db.close()
