import atexit
import logging
import os
import re
import shutil
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.jobstores.base import JobLookupError
from flask import Flask, Response, g, has_request_context, jsonify, redirect, request, send_file
from flask_limiter import Limiter
from werkzeug.datastructures import FileStorage

from .blobs import BlobStoreError, create_blob_store, make_blob_key
from .lifecycle import (
    CleanupFailed,
    CleanupResult,
    CleanupSkipped,
    CleanupSweeper,
    NotFoundOrExpired,
    QuotaExceededError,
    SweepState,
    ValidationError,
    build_file_item,
    check_quota,
    require_live_item,
    require_network_id,
    share_text,
    validate_file,
)
from .network import active_users, client_address_from_request, resolve_network
from .ratelimit import FixedWindowRateLimiter, RateWindowStore
from .storage import (
    LOGS_DIR,
    UPLOADS_DIR,
    delete_item,
    ensure_directories,
    get_config_mtime,
    get_live_item_by_blob_key,
    get_storage_statistics,
    increment_download_count,
    insert_item,
    isoformat_utc,
    iter_items,
    list_blob_keys,
    list_live_items,
    load_config,
    network_statistics,
)

_CONFIG_CACHE: Dict[str, Any] = load_config()
_CONFIG_CACHE_MTIME: float = get_config_mtime()
_config_lock = threading.RLock()

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3
BYTES_PER_MB = 1024 * 1024
# Multipart framing on top of the file payload itself.
UPLOAD_OVERHEAD_BYTES = 1024 * 1024
RATE_LIMIT_WINDOW_SECONDS = 60

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

RATE_LIMIT_SCOPES = {
    "read": "read_rate_limit_per_minute",
    "write": "write_rate_limit_per_minute",
    "upload": "upload_rate_limit_per_minute",
    "cleanup": "cleanup_rate_limit_per_minute",
    "default": "default_rate_limit_per_minute",
}

RATE_LIMIT_MESSAGES = {
    "upload": "Too many upload requests. Please wait before uploading again.",
    "cleanup": "Too many cleanup requests",
}


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return max(1, fallback)
    return max(1, parsed)


def max_file_size_bytes(config: Optional[Dict[str, Any]] = None) -> int:
    config = config if config is not None else get_config()
    return _coerce_positive_int(config.get("max_file_size_mb"), 4) * BYTES_PER_MB


def _apply_upload_limit(config: Dict[str, Any]) -> None:
    flask_app = globals().get("app")
    if flask_app is None:
        return
    flask_app.config["MAX_CONTENT_LENGTH"] = max_file_size_bytes(config) + UPLOAD_OVERHEAD_BYTES


def _apply_sweep_throttle(config: Dict[str, Any]) -> None:
    active_sweeper = globals().get("sweeper")
    if active_sweeper is None:
        return
    minutes = _coerce_positive_int(config.get("sweep_throttle_minutes"), 5)
    active_sweeper.throttle_seconds = minutes * 60


def _apply_cleanup_schedule(config: Dict[str, Any]) -> None:
    global cleanup_interval_minutes_setting

    new_interval = _coerce_positive_int(
        config.get("cleanup_interval_minutes"), cleanup_interval_minutes_setting or 5
    )
    if new_interval == cleanup_interval_minutes_setting:
        return

    cleanup_interval_minutes_setting = new_interval
    if scheduler is None:
        return
    try:
        scheduler.reschedule_job(
            "force_cleanup", trigger="interval", minutes=new_interval
        )
    except JobLookupError:
        scheduler.add_job(
            func=run_scheduled_cleanup,
            trigger="interval",
            minutes=new_interval,
            id="force_cleanup",
            name="Sweep expired items and stale sessions",
            replace_existing=True,
        )


def _apply_runtime_settings(config: Dict[str, Any]) -> None:
    _apply_upload_limit(config)
    _apply_sweep_throttle(config)
    _apply_cleanup_schedule(config)


def get_config(refresh: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE, _CONFIG_CACHE_MTIME
    with _config_lock:
        current_mtime = get_config_mtime()
        if not refresh and current_mtime > _CONFIG_CACHE_MTIME:
            refresh = True

        if refresh or _CONFIG_CACHE is None:
            _CONFIG_CACHE = load_config()
            _CONFIG_CACHE_MTIME = current_mtime

        if has_request_context():
            cached = getattr(g, "_app_config", None)
            if cached is None or refresh:
                g._app_config = _CONFIG_CACHE.copy()
            config = g._app_config
        else:
            config = _CONFIG_CACHE.copy()

    _apply_runtime_settings(config)
    return config


def current_client_address() -> str:
    config = get_config()
    return client_address_from_request(
        request.headers,
        request.remote_addr,
        trust_proxy_headers=bool(config.get("trust_proxy_headers", True)),
    )


def global_rate_limit_string() -> str:
    config = get_config()
    value = _coerce_positive_int(config.get("global_rate_limit_per_minute"), 600)
    return f"{value} per minute"


scheduler: Optional[BackgroundScheduler] = None
cleanup_interval_minutes_setting = _coerce_positive_int(
    _CONFIG_CACHE.get("cleanup_interval_minutes"), 5
)

app = Flask(__name__)

limiter = Limiter(
    app=app,
    key_func=current_client_address,
    default_limits=[global_rate_limit_string],
    storage_uri=os.environ.get("LANSHARE_RATE_LIMIT_STORAGE", "memory://"),
)

_base_lifecycle_logger = logging.getLogger("lanshare.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)
app.logger.setLevel(numeric_level)

# Process-local state, owned here and injected so tests can inspect or reset it.
rate_windows = RateWindowStore()
request_limiter = FixedWindowRateLimiter(rate_windows)
sweep_state = SweepState()
sweeper = CleanupSweeper(sweep_state)
blob_store = create_blob_store(UPLOADS_DIR)

_apply_runtime_settings(_CONFIG_CACHE)


def _json_response(payload: Dict[str, Any], status: int = 200) -> Response:
    response = jsonify(payload)
    response.status_code = status
    return response


def _json_error(message: str, status: int, **extra: Any) -> Response:
    payload: Dict[str, Any] = {"success": False, "error": message}
    payload.update(extra)
    return _json_response(payload, status)


def rate_limited(scope: str):
    """Apply the fixed-window limit configured for *scope* to a view."""

    config_key = RATE_LIMIT_SCOPES[scope]

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            config = get_config()
            max_requests = _coerce_positive_int(config.get(config_key), 30)
            client_address = current_client_address()
            result = request_limiter.allow(
                f"{scope}:{client_address}", max_requests, RATE_LIMIT_WINDOW_SECONDS
            )
            g.rate_limit_result = result
            if not result.allowed:
                lifecycle_logger.info(
                    "rate_limited scope=%s client=%s reset_time=%f",
                    scope,
                    sanitize_log_value(client_address),
                    result.reset_time,
                )
                response = _json_error(
                    RATE_LIMIT_MESSAGES.get(scope, "Too many requests"),
                    429,
                    data={"resetTime": isoformat_utc(result.reset_time)},
                )
                response.headers.update(result.headers())
                return response
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={getattr(file_storage, 'filename', 'unknown')}",
        )


def _delete_blob_quietly(blob_key: Optional[str]) -> None:
    if not blob_key:
        return
    try:
        blob_store.delete(blob_key)
    except BlobStoreError as error:
        lifecycle_logger.warning(
            "blob_delete_failed key=%s error=%s",
            sanitize_log_value(blob_key),
            sanitize_log_value(str(error)),
        )


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier and rate window to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    result = getattr(g, "rate_limit_result", None)
    if result is not None and result.allowed:
        response.headers.update(result.headers())
    return response


@app.errorhandler(ValidationError)
def handle_validation_error(error: ValidationError):
    return _json_response(error.to_payload(), 400)


@app.errorhandler(QuotaExceededError)
def handle_quota_exceeded(error: QuotaExceededError):
    return _json_response(error.to_payload(), 413)


@app.errorhandler(NotFoundOrExpired)
def handle_not_found_or_expired(error: NotFoundOrExpired):
    return _json_response(error.to_payload(), 404)


@app.errorhandler(BlobStoreError)
def handle_blob_store_error(error: BlobStoreError):
    return _json_response(error.to_payload(), 502)


@app.errorhandler(sqlite3.Error)
def handle_database_error(error: sqlite3.Error):
    lifecycle_logger.error(
        "database_error path=%s error=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(str(error)),
    )
    return _json_error("Storage backend unavailable", 503)


@app.errorhandler(404)
def not_found(error):
    return _json_error("Not found", 404)


@app.errorhandler(405)
def method_not_allowed(error):
    return _json_error("Method not allowed", 405)


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    limit_mb = max_file_size_bytes() // BYTES_PER_MB
    return _json_error(f"File size exceeds {limit_mb}MB limit", 413)


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return _json_error("Too many requests", 429, message=str(description))


@app.route("/health")
@limiter.exempt
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        stats = get_storage_statistics(time.time())
        checks["database"] = "ok"
        checks["live_items"] = stats["live_count"]
        checks["live_bytes"] = stats["live_bytes"]
        checks["expired_pending"] = stats["expired_count"]
        checks["sessions"] = stats["session_count"]
    except (sqlite3.Error, OSError) as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    if getattr(blob_store, "is_local", False):
        try:
            ensure_directories()
            usage = shutil.disk_usage(UPLOADS_DIR)
            disk_free_gb = usage.free / (1024 ** 3)
            checks["disk_space_gb"] = round(disk_free_gb, 2)
            if disk_free_gb < 1:
                checks["disk_space_status"] = "critical"
                healthy = False
            else:
                checks["disk_space_status"] = "ok"
        except OSError as error:
            checks["disk_space_gb"] = 0
            checks["disk_space_status"] = f"error: {str(error)[:100]}"
            healthy = False
        checks["blob_store"] = "local"
    else:
        checks["blob_store"] = "http"

    if scheduler is not None:
        job = scheduler.get_job("force_cleanup")
        if job and job.next_run_time:
            checks["cleanup"] = "scheduled"
            checks["cleanup_next_run"] = job.next_run_time.isoformat()
        else:
            checks["cleanup"] = "not_scheduled"
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["cleanup"] = "disabled"
        checks["scheduler_running"] = False

    checks["last_opportunistic_cleanup"] = (
        isoformat_utc(sweep_state.last_run) if sweep_state.last_run else None
    )
    checks["rate_windows"] = len(rate_windows)

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), code


@app.route("/api/network")
@rate_limited("default")
def network_info():
    identity = resolve_network(
        current_client_address(),
        request.headers.get("User-Agent"),
    )
    outcome = sweeper.maybe_sweep()
    if isinstance(outcome, CleanupFailed):
        lifecycle_logger.warning(
            "opportunistic_cleanup_failed error=%s", sanitize_log_value(outcome.error)
        )
    return _json_response({"success": True, "data": identity.to_payload()})


@app.route("/api/items", methods=["GET"])
@rate_limited("read")
def list_items():
    network_id = require_network_id(request.args.get("networkId"))
    now = time.time()
    items = list(iter_items(list_live_items(network_id, now), now))
    return _json_response({"success": True, "data": {"items": items}})


@app.route("/api/items", methods=["POST"])
@rate_limited("write")
def create_item():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("JSON body required")

    network_id = require_network_id(body.get("networkId"))
    item_type = body.get("type")
    if item_type == "file":
        raise ValidationError("File items must be uploaded via /api/upload")
    if item_type != "text":
        raise ValidationError("Valid type required (text or file)")

    record = share_text(network_id, body.get("content"))
    lifecycle_logger.info(
        "text_shared item_id=%s network_id=%s length=%d",
        record["id"],
        network_id[:12],
        record["text_length"],
    )
    return _json_response(
        {
            "success": True,
            "data": {"itemId": record["id"]},
            "message": "Item shared successfully",
        },
        201,
    )


@app.route("/api/items/<item_id>", methods=["DELETE"])
@rate_limited("default")
def delete_shared_item(item_id: str):
    record = require_live_item(item_id)
    if not delete_item(record["id"]):
        raise NotFoundOrExpired("Item not found")
    _delete_blob_quietly(record["blob_key"])
    lifecycle_logger.info("item_deleted item_id=%s kind=%s", record["id"], record["kind"])
    return _json_response({"success": True, "message": "Item deleted successfully"})


@app.route("/api/items/<item_id>/download", methods=["POST"])
@rate_limited("default")
def track_download(item_id: str):
    require_live_item(item_id)
    if not increment_download_count(item_id, time.time()):
        raise NotFoundOrExpired("Item not found or expired")
    return _json_response({"success": True, "message": "Download tracked"})


@app.route("/api/upload", methods=["POST"])
@rate_limited("upload")
def upload_file():
    upload = request.files.get("file")
    if not isinstance(upload, FileStorage) or not upload.filename:
        raise ValidationError("File is required")

    network_id = require_network_id(request.form.get("networkId"))
    config = get_config()
    max_size = max_file_size_bytes(config)

    with upload_stream_handler(upload):
        data = upload.read(max_size + 1)

    file_name = upload.filename
    mime_type = upload.mimetype
    validate_file(
        file_name,
        len(data),
        mime_type,
        max_size=max_size,
        allowed_types=config.get("allowed_mime_types") or (),
    )

    now = time.time()
    admitted = check_quota(network_id, len(data), now=now)

    blob_key = make_blob_key(network_id, file_name, now)
    content_url = blob_store.put(blob_key, data, mime_type)
    record = build_file_item(
        network_id,
        file_name=file_name,
        byte_size=len(data),
        mime_type=mime_type,
        content_url=content_url,
        blob_key=blob_key,
        now=now,
    )
    try:
        insert_item(record)
    except (sqlite3.Error, OSError):
        _delete_blob_quietly(blob_key)
        raise

    lifecycle_logger.info(
        "file_shared item_id=%s network_id=%s file_name=%s size=%d",
        record["id"],
        network_id[:12],
        sanitize_log_value(file_name),
        len(data),
    )
    return _json_response(
        {
            "success": True,
            "message": "File uploaded successfully",
            "data": {
                "itemId": record["id"],
                "storageUsed": admitted.current_bytes + len(data),
                "itemCount": admitted.current_count + 1,
            },
        },
        201,
    )


def _serve_blob(record, *, as_attachment: bool):
    if not getattr(blob_store, "is_local", False):
        return redirect(record["content"])

    path = blob_store.path_for(record["blob_key"])
    try:
        return send_file(
            path,
            mimetype=record["mime_type"],
            as_attachment=as_attachment,
            download_name=record["file_name"],
        )
    except FileNotFoundError:
        lifecycle_logger.warning(
            "blob_missing item_id=%s key=%s",
            record["id"],
            sanitize_log_value(record["blob_key"]),
        )
        raise NotFoundOrExpired("File URL not found")


@app.route("/api/download/<item_id>")
@rate_limited("default")
def download(item_id: str):
    record = require_live_item(item_id)
    if record["kind"] != "file":
        raise NotFoundOrExpired("File not found or expired")
    lifecycle_logger.info("file_downloaded item_id=%s", item_id)
    return _serve_blob(record, as_attachment=True)


@app.route("/api/preview/<item_id>")
@rate_limited("default")
def preview(item_id: str):
    record = require_live_item(item_id)
    if record["kind"] != "file":
        raise NotFoundOrExpired("File not found or expired")
    if not (record["mime_type"] or "").startswith("image/"):
        raise ValidationError("Preview not available for this file type")
    return _serve_blob(record, as_attachment=False)


@app.route("/blobs/<path:blob_key>")
@rate_limited("default")
def serve_blob(blob_key: str):
    if not getattr(blob_store, "is_local", False):
        raise NotFoundOrExpired("File not found or expired")
    record = get_live_item_by_blob_key(blob_key, time.time())
    if record is None:
        raise NotFoundOrExpired("File not found or expired")
    return _serve_blob(record, as_attachment=False)


@app.route("/api/stats")
@rate_limited("default")
def stats():
    network_id = require_network_id(request.args.get("networkId"))
    now = time.time()
    totals = network_statistics(network_id, now)
    return _json_response(
        {
            "success": True,
            "data": {
                "totalShares": totals["total_shares"],
                "totalDownloads": totals["total_downloads"],
                "storageUsed": totals["storage_used"],
                "activeUsers": active_users(network_id, now),
            },
        }
    )


def _cleanup_response(outcome, message: str) -> Response:
    if isinstance(outcome, CleanupFailed):
        return _json_error("Cleanup failed", 500, message=outcome.error)
    if isinstance(outcome, CleanupSkipped):
        return _json_response(
            {
                "success": True,
                "message": "Cleanup skipped, ran recently",
                "stats": outcome.to_payload(),
                "timestamp": isoformat_utc(time.time()),
            }
        )
    return _json_response(
        {
            "success": True,
            "message": message,
            "stats": outcome.to_payload(),
            "timestamp": isoformat_utc(time.time()),
        }
    )


@app.route("/api/cleanup", methods=["GET"])
@rate_limited("default")
def cleanup():
    return _cleanup_response(sweeper.maybe_sweep(), "Cleanup completed")


@app.route("/api/manual", methods=["POST"])
@rate_limited("cleanup")
def manual_cleanup():
    outcome = sweeper.force()
    if isinstance(outcome, CleanupResult):
        lifecycle_logger.info(
            "manual_cleanup_completed expired_items=%d old_sessions=%d very_old_items=%d",
            outcome.deleted_items,
            outcome.deleted_sessions,
            outcome.deleted_very_old,
        )
    return _cleanup_response(outcome, "Manual cleanup completed")


def run_scheduled_cleanup() -> None:
    outcome = sweeper.force()
    if isinstance(outcome, CleanupFailed):
        logging.getLogger("lanshare.scheduler").warning(
            "scheduled_cleanup_failed error=%s", outcome.error
        )


def run_orphan_blob_cleanup() -> int:
    if not getattr(blob_store, "is_local", False):
        return 0
    try:
        valid_keys = list_blob_keys()
    except (sqlite3.Error, OSError) as error:
        logging.getLogger("lanshare.scheduler").warning(
            "orphan_cleanup_skipped error=%s", error
        )
        return 0
    return blob_store.cleanup_orphans(valid_keys)


def run_temp_file_cleanup() -> int:
    if not getattr(blob_store, "is_local", False):
        return 0
    return blob_store.cleanup_temp_files()


if _get_optional_bool_env("LANSHARE_SCHEDULER_ENABLED") is not False:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=run_scheduled_cleanup,
        trigger="interval",
        minutes=cleanup_interval_minutes_setting,
        id="force_cleanup",
        name="Sweep expired items and stale sessions",
        replace_existing=True,
    )
    scheduler.add_job(
        func=run_orphan_blob_cleanup,
        trigger="interval",
        hours=1,
        id="cleanup_orphaned_blobs",
        name="Clean up orphaned blobs",
        replace_existing=True,
    )
    scheduler.add_job(
        func=run_temp_file_cleanup,
        trigger="interval",
        hours=1,
        id="cleanup_temp_files",
        name="Clean up temporary files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

# Run a single sweep on startup so stale rows do not linger across restarts.
run_scheduled_cleanup()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
