import json
import logging
import math
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Generator, Iterable, List, Optional, Set, Tuple

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("LANSHARE_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("LANSHARE_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("LANSHARE_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("LANSHARE_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "lanshare.db"
CONFIG_PATH = DATA_DIR / "config.json"

# Listing endpoints never return more than this many rows per network.
DEFAULT_LIST_LIMIT = 50


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("lanshare.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_CLEANUP_INTERVAL_MINUTES = _safe_int_env("LANSHARE_CLEANUP_INTERVAL_MINUTES", 5)
DEFAULT_SWEEP_THROTTLE_MINUTES = _safe_int_env("LANSHARE_SWEEP_THROTTLE_MINUTES", 5)
DEFAULT_MAX_FILE_SIZE_MB = _safe_int_env("LANSHARE_MAX_FILE_SIZE_MB", 4)
DEFAULT_READ_RATE_LIMIT_PER_MINUTE = _safe_int_env("LANSHARE_RATE_LIMIT_READS_PER_MINUTE", 30)
DEFAULT_WRITE_RATE_LIMIT_PER_MINUTE = _safe_int_env("LANSHARE_RATE_LIMIT_WRITES_PER_MINUTE", 5)
DEFAULT_UPLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("LANSHARE_RATE_LIMIT_UPLOADS_PER_MINUTE", 3)
DEFAULT_CLEANUP_RATE_LIMIT_PER_MINUTE = _safe_int_env("LANSHARE_RATE_LIMIT_CLEANUPS_PER_MINUTE", 2)
DEFAULT_RATE_LIMIT_PER_MINUTE = _safe_int_env("LANSHARE_RATE_LIMIT_DEFAULT_PER_MINUTE", 30)
DEFAULT_GLOBAL_RATE_LIMIT_PER_MINUTE = _safe_int_env("LANSHARE_RATE_LIMIT_GLOBAL_PER_MINUTE", 600)

DEFAULT_ALLOWED_MIME_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "text/plain",
    "application/pdf",
]


DEFAULT_CONFIG = {
    "cleanup_interval_minutes": float(DEFAULT_CLEANUP_INTERVAL_MINUTES),
    "sweep_throttle_minutes": float(DEFAULT_SWEEP_THROTTLE_MINUTES),
    "max_file_size_mb": float(DEFAULT_MAX_FILE_SIZE_MB),
    "read_rate_limit_per_minute": float(DEFAULT_READ_RATE_LIMIT_PER_MINUTE),
    "write_rate_limit_per_minute": float(DEFAULT_WRITE_RATE_LIMIT_PER_MINUTE),
    "upload_rate_limit_per_minute": float(DEFAULT_UPLOAD_RATE_LIMIT_PER_MINUTE),
    "cleanup_rate_limit_per_minute": float(DEFAULT_CLEANUP_RATE_LIMIT_PER_MINUTE),
    "default_rate_limit_per_minute": float(DEFAULT_RATE_LIMIT_PER_MINUTE),
    "global_rate_limit_per_minute": float(DEFAULT_GLOBAL_RATE_LIMIT_PER_MINUTE),
    "trust_proxy_headers": True,
    "allowed_mime_types": list(DEFAULT_ALLOWED_MIME_TYPES),
}

CONFIG_NUMERIC_KEYS = {
    "cleanup_interval_minutes",
    "sweep_throttle_minutes",
    "max_file_size_mb",
    "read_rate_limit_per_minute",
    "write_rate_limit_per_minute",
    "upload_rate_limit_per_minute",
    "cleanup_rate_limit_per_minute",
    "default_rate_limit_per_minute",
    "global_rate_limit_per_minute",
}

CONFIG_BOOLEAN_KEYS = {"trust_proxy_headers"}

CONFIG_LIST_KEYS = {"allowed_mime_types"}


def get_config_mtime() -> float:
    """Return the last modified timestamp for the persisted config file."""

    ensure_directories()
    try:
        return CONFIG_PATH.stat().st_mtime
    except OSError:
        return 0.0


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity.

    Args:
        value: Value to coerce to float
        default: Default value to use if coercion fails

    Returns:
        Float value or default
    """
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _normalize_config(raw_config: Dict[str, object]) -> Dict[str, object]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    config["allowed_mime_types"] = list(DEFAULT_ALLOWED_MIME_TYPES)

    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])
        # Every numeric setting is a positive count or duration.
        if config[key] < 1:
            config[key] = float(DEFAULT_CONFIG[key])

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            value = raw_config.get(key)
            if isinstance(value, str):
                config[key] = value.strip().lower() in {"1", "true", "yes", "on"}
            else:
                config[key] = bool(value)

    for key in CONFIG_LIST_KEYS:
        if key in raw_config and isinstance(raw_config.get(key), list):
            cleaned: List[str] = []
            for entry in raw_config.get(key):
                if not isinstance(entry, str):
                    continue
                value = entry.strip().lower()
                if value and "/" in value and value not in cleaned:
                    cleaned.append(value)
            if cleaned:
                config[key] = cleaned

    return config


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    ensure_directories()
    conn = sqlite3.connect(DB_PATH, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with get_db() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS shared_items (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL CHECK (kind IN ('text', 'file')),
                content TEXT NOT NULL,
                file_name TEXT,
                byte_size INTEGER,
                mime_type TEXT,
                blob_key TEXT,
                text_length INTEGER,
                network_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                download_count INTEGER NOT NULL DEFAULT 0,
                CHECK (expires_at > created_at),
                CHECK ((kind = 'file') = (byte_size IS NOT NULL))
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_sessions (
                network_id TEXT NOT NULL,
                client_address TEXT NOT NULL,
                last_seen REAL NOT NULL,
                user_agent TEXT,
                PRIMARY KEY (network_id, client_address)
            )
            """
        )
        conn.commit()
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_items_network_created "
            "ON shared_items(network_id, created_at DESC)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_items_expires_at ON shared_items(expires_at)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_items_created_at ON shared_items(created_at)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_items_blob_key ON shared_items(blob_key)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sessions_network ON user_sessions(network_id)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sessions_last_seen ON user_sessions(last_seen)"
        )
        conn.commit()


def load_config() -> Dict[str, object]:
    ensure_directories()
    if CONFIG_PATH.exists():
        with CONFIG_PATH.open("r", encoding="utf-8") as config_file:
            try:
                raw = json.load(config_file)
            except json.JSONDecodeError:
                raw = DEFAULT_CONFIG.copy()
    else:
        raw = DEFAULT_CONFIG.copy()
        save_config(raw)

    data = _normalize_config(raw)
    if raw != data:
        save_config(data)
    return data


def save_config(config: Dict[str, object]) -> None:
    ensure_directories()
    normalized = _normalize_config(config)

    # Write to temporary file first for atomic update
    temp_path = CONFIG_PATH.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as config_file:
            json.dump(normalized, config_file, indent=2)
            config_file.flush()
            os.fsync(config_file.fileno())

        temp_path.replace(CONFIG_PATH)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def insert_item(record: Dict[str, object]) -> str:
    """Insert a fully-built shared item record and return its id."""

    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO shared_items (
                id,
                kind,
                content,
                file_name,
                byte_size,
                mime_type,
                blob_key,
                text_length,
                network_id,
                created_at,
                expires_at,
                download_count
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["id"],
                record["kind"],
                record["content"],
                record.get("file_name"),
                record.get("byte_size"),
                record.get("mime_type"),
                record.get("blob_key"),
                record.get("text_length"),
                record["network_id"],
                record["created_at"],
                record["expires_at"],
                int(record.get("download_count") or 0),
            ),
        )
        conn.commit()

    logger.info(
        "item_inserted item_id=%s kind=%s network_id=%s size=%s expires_at=%f",
        record["id"],
        record["kind"],
        str(record["network_id"])[:12],
        record.get("byte_size"),
        record["expires_at"],
    )
    return str(record["id"])


def get_live_item(item_id: str, now: float) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT * FROM shared_items WHERE id = ? AND expires_at > ?",
            (item_id, now),
        )
        return cursor.fetchone()


def get_live_item_by_blob_key(blob_key: str, now: float) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT * FROM shared_items WHERE blob_key = ? AND expires_at > ?",
            (blob_key, now),
        )
        return cursor.fetchone()


def list_live_items(
    network_id: str,
    now: float,
    *,
    limit: int = DEFAULT_LIST_LIMIT,
) -> List[sqlite3.Row]:
    with get_db() as conn:
        cursor = conn.execute(
            """
            SELECT * FROM shared_items
            WHERE network_id = ? AND expires_at > ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (network_id, now, max(int(limit), 0)),
        )
        return cursor.fetchall()


def delete_item(item_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM shared_items WHERE id = ?", (item_id,))
        conn.commit()
        return cursor.rowcount > 0


def increment_download_count(item_id: str, now: float) -> bool:
    """Bump the download counter of a live item; False when absent or expired."""

    with get_db() as conn:
        cursor = conn.execute(
            """
            UPDATE shared_items
            SET download_count = download_count + 1
            WHERE id = ? AND expires_at > ?
            """,
            (item_id, now),
        )
        conn.commit()
        return cursor.rowcount > 0


def network_usage(network_id: str, now: float) -> Tuple[int, int]:
    """Return ``(live_item_count, live_byte_total)`` for *network_id*."""

    with get_db() as conn:
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS count,
                COALESCE(SUM(byte_size), 0) AS total_size
            FROM shared_items
            WHERE network_id = ? AND expires_at > ?
            """,
            (network_id, now),
        ).fetchone()

    count = int(row["count"] if row and row["count"] is not None else 0)
    total_size = int(row["total_size"] if row and row["total_size"] is not None else 0)
    return count, total_size


def network_statistics(network_id: str, now: float) -> Dict[str, int]:
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS total_shares,
                COALESCE(SUM(download_count), 0) AS total_downloads,
                COALESCE(SUM(byte_size), 0) AS storage_used
            FROM shared_items
            WHERE network_id = ? AND expires_at > ?
            """,
            (network_id, now),
        ).fetchone()

    def _value(key: str) -> int:
        return int(row[key] if row and row[key] is not None else 0)

    return {
        "total_shares": _value("total_shares"),
        "total_downloads": _value("total_downloads"),
        "storage_used": _value("storage_used"),
    }


def upsert_session(
    network_id: str,
    client_address: str,
    now: float,
    user_agent: Optional[str] = None,
) -> None:
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO user_sessions (network_id, client_address, last_seen, user_agent)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(network_id, client_address) DO UPDATE SET
                last_seen = excluded.last_seen,
                user_agent = excluded.user_agent
            """,
            (network_id, client_address, now, user_agent or "Unknown"),
        )
        conn.commit()


def count_sessions_seen_after(network_id: str, cutoff: float) -> int:
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT COUNT(*) AS count FROM user_sessions
            WHERE network_id = ? AND last_seen > ?
            """,
            (network_id, cutoff),
        ).fetchone()
    return int(row["count"] if row and row["count"] is not None else 0)


def delete_sessions_seen_before(cutoff: float) -> int:
    """Delete sessions whose ``last_seen`` is at or before *cutoff*."""

    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM user_sessions WHERE last_seen <= ?", (cutoff,)
        )
        conn.commit()
        return max(cursor.rowcount, 0)


def delete_items_expired_before(now: float) -> int:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM shared_items WHERE expires_at < ?", (now,)
        )
        conn.commit()
        return max(cursor.rowcount, 0)


def delete_items_created_before(cutoff: float) -> int:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM shared_items WHERE created_at < ?", (cutoff,)
        )
        conn.commit()
        return max(cursor.rowcount, 0)


def list_blob_keys() -> Set[str]:
    """Return the blob keys referenced by any row, live or not."""

    with get_db() as conn:
        cursor = conn.execute(
            "SELECT blob_key FROM shared_items WHERE blob_key IS NOT NULL"
        )
        return {row["blob_key"] for row in cursor.fetchall()}


def get_storage_statistics(now: float) -> Dict[str, int]:
    """Return aggregate metrics about stored items across all networks."""

    with get_db() as conn:
        live_row = conn.execute(
            """
            SELECT COUNT(*) AS count, COALESCE(SUM(byte_size), 0) AS total_size
            FROM shared_items WHERE expires_at > ?
            """,
            (now,),
        ).fetchone()
        expired_row = conn.execute(
            "SELECT COUNT(*) AS count FROM shared_items WHERE expires_at <= ?",
            (now,),
        ).fetchone()
        sessions_row = conn.execute(
            "SELECT COUNT(*) AS count FROM user_sessions"
        ).fetchone()

    return {
        "live_count": int(live_row["count"] or 0),
        "live_bytes": int(live_row["total_size"] or 0),
        "expired_count": int(expired_row["count"] or 0),
        "session_count": int(sessions_row["count"] or 0),
    }


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def iter_items(records: Iterable[sqlite3.Row], now: Optional[float] = None) -> Iterable[Dict[str, object]]:
    now = time.time() if now is None else now
    for row in records:
        payload: Dict[str, object] = {
            "id": row["id"],
            "type": row["kind"],
            "content": row["content"],
            "networkId": row["network_id"],
            "createdAt": isoformat_utc(row["created_at"]),
            "expiresAt": isoformat_utc(row["expires_at"]),
            "remainingSeconds": max(row["expires_at"] - now, 0),
            "downloadCount": int(row["download_count"] or 0),
        }
        if row["kind"] == "file":
            payload.update(
                {
                    "fileName": row["file_name"],
                    "fileSize": int(row["byte_size"]),
                    "mimeType": row["mime_type"],
                    "downloadUrl": f"/api/download/{row['id']}",
                    "previewUrl": f"/api/preview/{row['id']}",
                }
            )
        else:
            payload["textLength"] = int(row["text_length"] or len(row["content"]))
        yield payload


logger = logging.getLogger("lanshare.storage")

ensure_directories()
init_db()
