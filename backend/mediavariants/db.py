"""Database layer. SQLite by default; set DATABASE_URL (or MYSQL_*) for MySQL.
Startup ensures required tables exist; on connection failure logs verbosely and falls back to SQLite or in-memory so the app can start.
This module is the host persistence the engine builds on: asset registry, per-asset metadata and settings."""
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from mediavariants import config as app_config

logger = logging.getLogger("mediavariants.db")

_engine: Optional[Engine] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("assets", "asset_meta", "conversions", "settings")


def is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    if is_mysql():
        return "MySQL"
    return "SQLite"


def _make_engine(url: str) -> Engine:
    kwargs: dict = {}
    if "sqlite" in url:
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _make_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (next get_engine() reconnects)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS assets (
            asset_id TEXT PRIMARY KEY,
            file_path TEXT NOT NULL,
            mime_type TEXT,
            media_kind TEXT NOT NULL,
            width INTEGER,
            height INTEGER,
            sizes_json TEXT,
            job_state TEXT NOT NULL DEFAULT 'none',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS asset_meta (
            asset_id TEXT NOT NULL,
            meta_key TEXT NOT NULL,
            meta_value TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (asset_id, meta_key)
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            asset_id TEXT NOT NULL,
            file_type TEXT NOT NULL,
            size_name TEXT NOT NULL DEFAULT 'full',
            original_size INTEGER NOT NULL DEFAULT 0,
            converted_size INTEGER NOT NULL DEFAULT 0,
            size_savings INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            UNIQUE (asset_id, file_type, size_name)
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS settings (
            option_key TEXT PRIMARY KEY,
            option_value TEXT,
            updated_at TEXT NOT NULL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS assets (
            asset_id VARCHAR(64) PRIMARY KEY,
            file_path VARCHAR(1024) NOT NULL,
            mime_type VARCHAR(100),
            media_kind VARCHAR(20) NOT NULL,
            width INT,
            height INT,
            sizes_json TEXT,
            job_state VARCHAR(20) NOT NULL DEFAULT 'none',
            created_at VARCHAR(50) NOT NULL,
            updated_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS asset_meta (
            asset_id VARCHAR(64) NOT NULL,
            meta_key VARCHAR(191) NOT NULL,
            meta_value LONGTEXT,
            updated_at VARCHAR(50) NOT NULL,
            PRIMARY KEY (asset_id, meta_key)
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversions (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            asset_id VARCHAR(64) NOT NULL,
            file_type VARCHAR(20) NOT NULL,
            size_name VARCHAR(191) NOT NULL DEFAULT 'full',
            original_size BIGINT NOT NULL DEFAULT 0,
            converted_size BIGINT NOT NULL DEFAULT 0,
            size_savings BIGINT NOT NULL DEFAULT 0,
            created_at VARCHAR(50) NOT NULL,
            UNIQUE KEY asset_type_size (asset_id, file_type, size_name)
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS settings (
            option_key VARCHAR(191) PRIMARY KEY,
            option_value TEXT,
            updated_at VARCHAR(50) NOT NULL
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
    """Prepare database at startup: ensure required tables exist. On failure, fall back to SQLite file or in-memory so the app can start."""
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
        if is_mysql():
            try:
                sqlite_path = app_config.BASE_DIR / "data" / "mediavariants.db"
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)
                app_config.DATABASE_URL = f"sqlite:///{sqlite_path}"
                _engine = None
                engine = get_engine()
                _ensure_tables(engine)
                logger.warning(
                    "MySQL unavailable. Using SQLite at %s. Fix MYSQL_* in .env to use MySQL.",
                    sqlite_path,
                )
                return
            except SQLAlchemyError as fallback_err:
                logger.exception(
                    "SQLite file fallback failed: %s. Trying in-memory SQLite.",
                    fallback_err,
                )
        else:
            logger.exception("Database error. Trying in-memory SQLite.")
    except SQLAlchemyError as e:
        logger.exception("Database init failed: %s. Trying in-memory SQLite.", e)

    # Last resort: in-memory SQLite so the app can run (metadata will not persist across restarts)
    app_config.DATABASE_URL = "sqlite:///:memory:"
    _engine = _make_engine(app_config.DATABASE_URL)
    _ensure_tables(_engine)
    logger.warning("Database unavailable. Using in-memory SQLite. Variant metadata will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(prefix: str, values: Iterable[Any], params: dict) -> str:
    """Bind each value as :prefixN in params and return the comma-joined placeholder list."""
    names = []
    for i, value in enumerate(values):
        name = f"{prefix}{i}"
        params[name] = value
        names.append(f":{name}")
    return ", ".join(names)


# --- Asset registry ---------------------------------------------------------

def insert_asset(row: dict) -> None:
    now = now_iso()
    params = {
        "asset_id": row["asset_id"],
        "file_path": row["file_path"],
        "mime_type": row.get("mime_type"),
        "media_kind": row["media_kind"],
        "width": row.get("width"),
        "height": row.get("height"),
        "sizes_json": json.dumps(row.get("sizes") or {}),
        "created_at": row.get("created_at") or now,
        "now": now,
    }
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO assets (asset_id, file_path, mime_type, media_kind, width, height, sizes_json, job_state, created_at, updated_at)
                VALUES (:asset_id, :file_path, :mime_type, :media_kind, :width, :height, :sizes_json, 'none', :created_at, :now)
            """),
            params,
        )


_ASSET_COLUMNS = "asset_id, file_path, mime_type, media_kind, width, height, sizes_json, job_state, created_at"


def _asset_row_to_dict(r) -> dict:
    return {
        "asset_id": r[0],
        "file_path": r[1],
        "mime_type": r[2],
        "media_kind": r[3],
        "width": r[4],
        "height": r[5],
        "sizes": json.loads(r[6]) if r[6] else {},
        "job_state": r[7] or "none",
        "created_at": r[8],
    }


def get_asset_row(asset_id: str) -> Optional[dict]:
    with get_engine().connect() as conn:
        row = conn.execute(
            text(f"SELECT {_ASSET_COLUMNS} FROM assets WHERE asset_id = :id"),
            {"id": asset_id},
        ).fetchone()
    return _asset_row_to_dict(row) if row else None


def list_asset_rows(limit: int = 100, offset: int = 0, media_kind: Optional[str] = None) -> list[dict]:
    params = {"lim": limit, "off": offset}
    where = ""
    if media_kind:
        where = "WHERE media_kind = :kind"
        params["kind"] = media_kind
    with get_engine().connect() as conn:
        rows = conn.execute(
            text(f"SELECT {_ASSET_COLUMNS} FROM assets {where} ORDER BY created_at DESC LIMIT :lim OFFSET :off"),
            params,
        ).fetchall()
    return [_asset_row_to_dict(r) for r in rows]


def delete_asset_row(asset_id: str) -> bool:
    with session() as conn:
        result = conn.execute(text("DELETE FROM assets WHERE asset_id = :id"), {"id": asset_id})
    return result.rowcount > 0


def list_unconverted_asset_ids(limit: int) -> list[str]:
    """Assets never converted and not disabled, oldest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("""
                SELECT a.asset_id FROM assets a
                WHERE NOT EXISTS (
                    SELECT 1 FROM asset_meta m
                    WHERE m.asset_id = a.asset_id AND m.meta_key = 'conversion_date'
                )
                AND NOT EXISTS (
                    SELECT 1 FROM asset_meta d
                    WHERE d.asset_id = a.asset_id AND d.meta_key = 'conversion_disabled' AND d.meta_value = 'true'
                )
                ORDER BY a.created_at ASC LIMIT :lim
            """),
            {"lim": limit},
        ).fetchall()
    return [r[0] for r in rows]


# --- Job state (ExternalJobState) -------------------------------------------

def get_job_state(asset_id: str) -> Optional[str]:
    with get_engine().connect() as conn:
        row = conn.execute(
            text("SELECT job_state FROM assets WHERE asset_id = :id"),
            {"id": asset_id},
        ).fetchone()
    return row[0] if row else None


def set_job_state(asset_id: str, state: str) -> bool:
    with session() as conn:
        result = conn.execute(
            text("UPDATE assets SET job_state = :state, updated_at = :now WHERE asset_id = :id"),
            {"state": state, "now": now_iso(), "id": asset_id},
        )
    return result.rowcount > 0


def claim_job_state(asset_id: str, new_state: str, blocked_states: Iterable[str]) -> bool:
    """Move job_state to new_state unless it is currently one of blocked_states.
    Single conditional UPDATE, so two concurrent claimers cannot both succeed."""
    params = {"state": new_state, "now": now_iso(), "id": asset_id}
    blocked = _placeholders("b", blocked_states, params)
    with session() as conn:
        result = conn.execute(
            text(f"""
                UPDATE assets SET job_state = :state, updated_at = :now
                WHERE asset_id = :id AND job_state NOT IN ({blocked})
            """),
            params,
        )
    return result.rowcount == 1


def reset_job_states(from_states: Iterable[str], to_state: str) -> int:
    """Move every asset in one of from_states to to_state. Returns rows changed."""
    params = {"state": to_state, "now": now_iso()}
    states = _placeholders("s", from_states, params)
    with session() as conn:
        result = conn.execute(
            text(f"UPDATE assets SET job_state = :state, updated_at = :now WHERE job_state IN ({states})"),
            params,
        )
    return result.rowcount


# --- Host metadata store (key-value per asset) ------------------------------

def get_meta(asset_id: str, key: str) -> Any:
    """Return the decoded value or None when the key is absent."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("SELECT meta_value FROM asset_meta WHERE asset_id = :id AND meta_key = :key"),
            {"id": asset_id, "key": key},
        ).fetchone()
    if not row or row[0] is None:
        return None
    return json.loads(row[0])


def get_all_meta(asset_id: str) -> dict:
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("SELECT meta_key, meta_value FROM asset_meta WHERE asset_id = :id"),
            {"id": asset_id},
        ).fetchall()
    return {r[0]: json.loads(r[1]) for r in rows if r[1] is not None}


def set_meta(asset_id: str, key: str, value: Any) -> bool:
    params = {"id": asset_id, "key": key, "value": json.dumps(value), "now": now_iso()}
    try:
        with session() as conn:
            if is_sqlite():
                conn.execute(
                    text("""
                        INSERT OR REPLACE INTO asset_meta (asset_id, meta_key, meta_value, updated_at)
                        VALUES (:id, :key, :value, :now)
                    """),
                    params,
                )
            else:
                conn.execute(
                    text("""
                        INSERT INTO asset_meta (asset_id, meta_key, meta_value, updated_at)
                        VALUES (:id, :key, :value, :now)
                        ON DUPLICATE KEY UPDATE meta_value = :value, updated_at = :now
                    """),
                    params,
                )
    except SQLAlchemyError as e:
        logger.error("Metadata write failed for asset %s key %s: %s", asset_id, key, e)
        return False
    return True


def delete_meta(asset_id: str, key: str) -> bool:
    try:
        with session() as conn:
            conn.execute(
                text("DELETE FROM asset_meta WHERE asset_id = :id AND meta_key = :key"),
                {"id": asset_id, "key": key},
            )
    except SQLAlchemyError as e:
        logger.error("Metadata delete failed for asset %s key %s: %s", asset_id, key, e)
        return False
    return True


# --- Settings overlay -------------------------------------------------------

def get_options() -> dict:
    with get_engine().connect() as conn:
        rows = conn.execute(text("SELECT option_key, option_value FROM settings")).fetchall()
    return {r[0]: json.loads(r[1]) for r in rows if r[1] is not None}


def save_options(options: dict) -> None:
    now = now_iso()
    with session() as conn:
        for key, value in options.items():
            params = {"key": key, "value": json.dumps(value), "now": now}
            if is_sqlite():
                conn.execute(
                    text("INSERT OR REPLACE INTO settings (option_key, option_value, updated_at) VALUES (:key, :value, :now)"),
                    params,
                )
            else:
                conn.execute(
                    text("""
                        INSERT INTO settings (option_key, option_value, updated_at) VALUES (:key, :value, :now)
                        ON DUPLICATE KEY UPDATE option_value = :value, updated_at = :now
                    """),
                    params,
                )


def delete_options(keys: Optional[Iterable[str]] = None) -> None:
    """Remove stored overrides (all when keys is None), restoring env defaults."""
    with session() as conn:
        if keys is None:
            conn.execute(text("DELETE FROM settings"))
            return
        params: dict = {}
        names = _placeholders("k", keys, params)
        if names:
            conn.execute(text(f"DELETE FROM settings WHERE option_key IN ({names})"), params)
