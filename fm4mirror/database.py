from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import OperationalError
from pathlib import Path
import logging


logger = logging.getLogger(__name__)


# ZENTRALE Base Definition
Base = declarative_base()


def _optimize_sqlite_connection(dbapi_connection, connection_record):
    """Foreign keys are required for the item cascade on broadcast delete."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def _enable_wal(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def create_db_engine(database_url: str) -> Engine:
    """Engine für die gegebene URL, SQLite-Optimierungen inklusive"""
    url = make_url(database_url)

    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True, pool_recycle=3600)

    if url.database in (None, "", ":memory:"):
        # In-Memory SQLite für Tests
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        event.listen(engine, "connect", _enable_wal)

    event.listen(engine, "connect", _optimize_sqlite_connection)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    # Rows leave the session with the transaction, so keep their loaded state
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


# Import ALL Models - WICHTIG für create_all()
from fm4mirror.models.broadcast import Broadcast, BroadcastItem  # noqa: E402,F401
from fm4mirror.models.image import Image, ImageReference  # noqa: E402,F401
from fm4mirror.models.program_key import ProgramKey  # noqa: E402,F401
from fm4mirror.models.metadata import Metadata  # noqa: E402,F401


FTS_STATEMENTS = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS broadcasts_fts USING fts5(
        program_key, title, subtitle, description, moderator, program,
        content='broadcasts', content_rowid='id',
        tokenize='porter unicode61 remove_diacritics 2'
    )
    """,
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS broadcast_items_fts USING fts5(
        type, title, interpreter, description,
        content='broadcast_items', content_rowid='id',
        tokenize='porter unicode61 remove_diacritics 2'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS broadcasts_fts_insert AFTER INSERT ON broadcasts BEGIN
        INSERT INTO broadcasts_fts(rowid, program_key, title, subtitle, description, moderator, program)
        VALUES (new.id, new.program_key, new.title, new.subtitle, new.description, new.moderator, new.program);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS broadcasts_fts_delete AFTER DELETE ON broadcasts BEGIN
        INSERT INTO broadcasts_fts(broadcasts_fts, rowid, program_key, title, subtitle, description, moderator, program)
        VALUES ('delete', old.id, old.program_key, old.title, old.subtitle, old.description, old.moderator, old.program);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS broadcasts_fts_update AFTER UPDATE ON broadcasts BEGIN
        INSERT INTO broadcasts_fts(broadcasts_fts, rowid, program_key, title, subtitle, description, moderator, program)
        VALUES ('delete', old.id, old.program_key, old.title, old.subtitle, old.description, old.moderator, old.program);
        INSERT INTO broadcasts_fts(rowid, program_key, title, subtitle, description, moderator, program)
        VALUES (new.id, new.program_key, new.title, new.subtitle, new.description, new.moderator, new.program);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS broadcast_items_fts_insert AFTER INSERT ON broadcast_items BEGIN
        INSERT INTO broadcast_items_fts(rowid, type, title, interpreter, description)
        VALUES (new.id, new.type, new.title, new.interpreter, new.description);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS broadcast_items_fts_delete AFTER DELETE ON broadcast_items BEGIN
        INSERT INTO broadcast_items_fts(broadcast_items_fts, rowid, type, title, interpreter, description)
        VALUES ('delete', old.id, old.type, old.title, old.interpreter, old.description);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS broadcast_items_fts_update AFTER UPDATE ON broadcast_items BEGIN
        INSERT INTO broadcast_items_fts(broadcast_items_fts, rowid, type, title, interpreter, description)
        VALUES ('delete', old.id, old.type, old.title, old.interpreter, old.description);
        INSERT INTO broadcast_items_fts(rowid, type, title, interpreter, description)
        VALUES (new.id, new.type, new.title, new.interpreter, new.description);
    END
    """,
]


def init_fts(engine: Engine) -> bool:
    """Volltext-Index (FTS5) inkl. Sync-Trigger anlegen"""
    if engine.dialect.name != "sqlite":
        logger.info("Full-text search requires SQLite FTS5, skipping")
        return False

    try:
        with engine.begin() as conn:
            existed = conn.execute(
                text("SELECT name FROM sqlite_master WHERE type='table' AND name='broadcasts_fts'")
            ).first() is not None

            for statement in FTS_STATEMENTS:
                conn.execute(text(statement))

            if not existed:
                conn.execute(text("INSERT INTO broadcasts_fts(broadcasts_fts) VALUES ('rebuild')"))
                conn.execute(text("INSERT INTO broadcast_items_fts(broadcast_items_fts) VALUES ('rebuild')"))
                logger.info("✓ Full-text search index created")
        return True
    except OperationalError as e:
        logger.warning(f"⚠ Full-text search unavailable (FTS5 missing?): {e}")
        return False


def init_db(engine: Engine) -> bool:
    """Erstellt alle Tabellen und den Volltext-Index"""
    Base.metadata.create_all(bind=engine)
    logger.info("✓ All database tables initialized")
    return init_fts(engine)
