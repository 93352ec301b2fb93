"""Database layer. SQLite by default; set DATABASE_URL for MySQL (e.g. localhost:3306).
Startup ensures required tables exist; on connection failure logs verbosely and falls back to SQLite so the app can start."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from mediaopt import config as app_config

logger = logging.getLogger("mediaopt.db")

_engine: Optional[Engine] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("conversions", "external_jobs", "quota_periods", "assets", "asset_files")


def is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    if is_mysql():
        return "MySQL"
    if is_sqlite():
        return "SQLite"
    return "PostgreSQL"


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        kwargs = {}
        if is_sqlite():
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if ":memory:" in app_config.DATABASE_URL:
                kwargs["poolclass"] = StaticPool
        _engine = create_engine(app_config.DATABASE_URL, **kwargs)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def reset_engine() -> None:
    """Drop the cached engine so the next call picks up a changed DATABASE_URL."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            attachment_id INTEGER NOT NULL,
            format TEXT NOT NULL,
            size_name TEXT NOT NULL DEFAULT 'full',
            original_size INTEGER NOT NULL DEFAULT 0,
            converted_size INTEGER NOT NULL DEFAULT 0,
            size_savings INTEGER NOT NULL DEFAULT 0,
            converted_at TEXT NOT NULL,
            UNIQUE (attachment_id, format, size_name)
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS external_jobs (
            attachment_id INTEGER PRIMARY KEY,
            account_id TEXT NOT NULL,
            state TEXT NOT NULL,
            remote_job_id TEXT,
            cdn_results_json TEXT,
            error TEXT,
            submitted_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS quota_periods (
            id INTEGER PRIMARY KEY,
            window_start TEXT NOT NULL,
            window_end TEXT NOT NULL,
            images_used INTEGER NOT NULL DEFAULT 0,
            videos_used INTEGER NOT NULL DEFAULT 0,
            images_limit INTEGER NOT NULL,
            videos_limit INTEGER NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS assets (
            attachment_id INTEGER PRIMARY KEY,
            mimetype TEXT NOT NULL,
            file_path TEXT NOT NULL,
            source_url TEXT,
            renditions_json TEXT,
            conversion_disabled INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS asset_files (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            attachment_id INTEGER NOT NULL,
            format TEXT NOT NULL,
            size_name TEXT NOT NULL,
            location TEXT,
            filesize INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL,
            UNIQUE (attachment_id, format, size_name)
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversions (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            attachment_id BIGINT NOT NULL,
            format VARCHAR(20) NOT NULL,
            size_name VARCHAR(100) NOT NULL DEFAULT 'full',
            original_size BIGINT NOT NULL DEFAULT 0,
            converted_size BIGINT NOT NULL DEFAULT 0,
            size_savings BIGINT NOT NULL DEFAULT 0,
            converted_at VARCHAR(50) NOT NULL,
            UNIQUE KEY attachment_format_size (attachment_id, format, size_name)
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS external_jobs (
            attachment_id BIGINT PRIMARY KEY,
            account_id VARCHAR(255) NOT NULL,
            state VARCHAR(20) NOT NULL,
            remote_job_id VARCHAR(255),
            cdn_results_json TEXT,
            error TEXT,
            submitted_at VARCHAR(50) NOT NULL,
            updated_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS quota_periods (
            id INT PRIMARY KEY,
            window_start VARCHAR(50) NOT NULL,
            window_end VARCHAR(50) NOT NULL,
            images_used INT NOT NULL DEFAULT 0,
            videos_used INT NOT NULL DEFAULT 0,
            images_limit INT NOT NULL,
            videos_limit INT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS assets (
            attachment_id BIGINT PRIMARY KEY,
            mimetype VARCHAR(100) NOT NULL,
            file_path VARCHAR(1024) NOT NULL,
            source_url VARCHAR(2048),
            renditions_json TEXT,
            conversion_disabled TINYINT NOT NULL DEFAULT 0,
            created_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS asset_files (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            attachment_id BIGINT NOT NULL,
            format VARCHAR(20) NOT NULL,
            size_name VARCHAR(100) NOT NULL,
            location VARCHAR(2048),
            filesize BIGINT NOT NULL DEFAULT 0,
            updated_at VARCHAR(50) NOT NULL,
            UNIQUE KEY attachment_format_size (attachment_id, format, size_name)
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        if is_mysql():
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup: ensure required tables exist. On failure, fall back to a SQLite file so the app can start."""
    global _engine
    kind = _db_kind()
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))

    try:
        engine = get_engine()
        _ensure_tables(engine)
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning(
            "Database connection failed (%s): %s. Will try fallback.",
            kind,
            e.orig,
            exc_info=True,
        )
        if is_sqlite():
            raise

    sqlite_path = app_config.DATA_DIR / "mediaopt.db"
    app_config.DATABASE_URL = f"sqlite:///{sqlite_path}"
    reset_engine()
    _ensure_tables(get_engine())
    logger.warning(
        "%s unavailable. Using SQLite at %s. Fix DATABASE_URL / MYSQL_* in .env to use it.",
        kind,
        sqlite_path,
    )


@contextmanager
def session(conn: Optional[Connection] = None):
    """Yield a connection that commits on success. An outer connection is reused without committing."""
    if conn is not None:
        yield conn
        return
    with get_engine().connect() as own:
        try:
            yield own
            own.commit()
        except Exception:
            own.rollback()
            raise


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def upsert_sql(table: str, columns: list[str], key: list[str], update: list[str]) -> str:
    """INSERT that overwrites `update` columns when the unique `key` already exists."""
    cols = ", ".join(columns)
    values = ", ".join(f":{c}" for c in columns)
    if is_mysql():
        assignments = ", ".join(f"{c} = VALUES({c})" for c in update)
        return f"INSERT INTO {table} ({cols}) VALUES ({values}) ON DUPLICATE KEY UPDATE {assignments}"
    assignments = ", ".join(f"{c} = excluded.{c}" for c in update)
    return f"INSERT INTO {table} ({cols}) VALUES ({values}) ON CONFLICT ({', '.join(key)}) DO UPDATE SET {assignments}"
