"""Expiry, quota and cleanup rules for shared items and presence sessions.

Visibility is decided at read time: an item is live while ``now < expires_at``
and every query in :mod:`lanshare.storage` filters on that predicate. The
sweeper only reclaims rows that are already invisible, so its cadence never
affects what readers see.
"""

import logging
import re
import sqlite3
import threading
import time
import uuid
from typing import Callable, Dict, Iterable, Optional, Union

from . import storage

ITEM_TTL_SECONDS = 24 * 60 * 60
VERY_OLD_ITEM_SECONDS = 48 * 60 * 60
ACTIVE_SESSION_SECONDS = 5 * 60
SWEEP_THROTTLE_SECONDS = 5 * 60

MAX_ITEMS_PER_NETWORK = 25
MAX_NETWORK_STORAGE = 50 * 1024 * 1024
MAX_TEXT_LENGTH = 5000
MAX_FILE_SIZE = 4 * 1024 * 1024

_NETWORK_ID_PATTERN = re.compile(r"^[a-f0-9]{64}$")
_ITEM_ID_PATTERN = re.compile(r"^[a-f0-9]{32}$")
_INVALID_FILENAME_PATTERN = re.compile(r'[<>:"/\\|?*]')
_HTML_BRACKETS_PATTERN = re.compile(r"[<>]")
_WHITESPACE_PATTERN = re.compile(r"\s+")

logger = logging.getLogger("lanshare.lifecycle")


class ValidationError(ValueError):
    """Raised when request input is rejected before any state changes."""

    def to_payload(self) -> dict:
        return {"success": False, "error": str(self)}


class QuotaExceededError(RuntimeError):
    """Raised when a network has no room left for another item."""

    def __init__(self, message: str, current_count: int, current_bytes: int) -> None:
        super().__init__(message)
        self.current_count = current_count
        self.current_bytes = current_bytes

    def to_payload(self) -> dict:
        return {
            "success": False,
            "error": str(self),
            "data": {
                "currentCount": self.current_count,
                "currentBytes": self.current_bytes,
                "maxItems": MAX_ITEMS_PER_NETWORK,
                "maxBytes": MAX_NETWORK_STORAGE,
            },
        }


class NotFoundOrExpired(LookupError):
    """Raised when an item is absent or no longer live."""

    def to_payload(self) -> dict:
        return {"success": False, "error": str(self) or "Item not found or expired"}


class Admitted:
    """Usage snapshot returned when a write passes the quota check."""

    def __init__(self, current_count: int, current_bytes: int) -> None:
        self.current_count = current_count
        self.current_bytes = current_bytes

    def __repr__(self) -> str:
        return f"Admitted(current_count={self.current_count}, current_bytes={self.current_bytes})"


def calculate_expiration(created_at: float) -> float:
    return created_at + ITEM_TTL_SECONDS


def is_live(expires_at: float, now: Optional[float] = None) -> bool:
    now = time.time() if now is None else now
    return now < expires_at


def session_is_active(last_seen: float, now: Optional[float] = None) -> bool:
    now = time.time() if now is None else now
    return now - last_seen < ACTIVE_SESSION_SECONDS


def is_valid_network_id(network_id: Optional[str]) -> bool:
    return bool(network_id) and bool(_NETWORK_ID_PATTERN.match(network_id))


def require_network_id(network_id: Optional[str]) -> str:
    if not isinstance(network_id, str) or not is_valid_network_id(network_id):
        raise ValidationError("Valid network ID required")
    return network_id


def require_item_id(item_id: Optional[str]) -> str:
    if not isinstance(item_id, str) or not _ITEM_ID_PATTERN.match(item_id):
        raise ValidationError("Invalid item ID")
    return item_id


def sanitize_text(content: str) -> str:
    """Strip HTML brackets and collapse whitespace runs."""

    without_brackets = _HTML_BRACKETS_PATTERN.sub("", content)
    return _WHITESPACE_PATTERN.sub(" ", without_brackets).strip()


def validate_text(content: object) -> str:
    if not content or not isinstance(content, str):
        raise ValidationError("Content required")

    sanitized = sanitize_text(content)
    if not sanitized:
        raise ValidationError("Content required")
    if len(sanitized) > MAX_TEXT_LENGTH:
        raise ValidationError(
            f"Text content too long (max {MAX_TEXT_LENGTH} characters)"
        )
    return sanitized


def validate_file(
    file_name: str,
    byte_size: int,
    mime_type: Optional[str],
    *,
    max_size: int = MAX_FILE_SIZE,
    allowed_types: Iterable[str] = storage.DEFAULT_ALLOWED_MIME_TYPES,
) -> None:
    """Reject files that are empty, too large, of a disallowed type or badly named."""

    if not file_name:
        raise ValidationError("File is required")

    if byte_size <= 0:
        raise ValidationError("File is empty")

    if byte_size > max_size:
        raise ValidationError(
            f"File size exceeds {round(max_size / 1024 / 1024)}MB limit"
        )

    normalized_type = (mime_type or "").split(";", 1)[0].strip().lower()
    if normalized_type not in set(allowed_types):
        raise ValidationError(f"File type {mime_type or 'unknown'} is not allowed")

    if _INVALID_FILENAME_PATTERN.search(file_name):
        raise ValidationError("File name contains invalid characters")


def check_quota(
    network_id: str,
    proposed_bytes: int = 0,
    *,
    now: Optional[float] = None,
) -> Admitted:
    """Admit or reject one more item for *network_id*.

    The check and the subsequent insert are separate statements, so two
    concurrent writers from one network can both pass and overshoot by one.
    """

    now = time.time() if now is None else now
    current_count, current_bytes = storage.network_usage(network_id, now)

    if current_count >= MAX_ITEMS_PER_NETWORK:
        logger.info(
            "quota_rejected reason=items network_id=%s count=%d",
            network_id[:12],
            current_count,
        )
        raise QuotaExceededError(
            f"Network item limit reached ({MAX_ITEMS_PER_NETWORK} items max)",
            current_count,
            current_bytes,
        )

    if proposed_bytes and current_bytes + proposed_bytes >= MAX_NETWORK_STORAGE:
        logger.info(
            "quota_rejected reason=bytes network_id=%s bytes=%d proposed=%d",
            network_id[:12],
            current_bytes,
            proposed_bytes,
        )
        raise QuotaExceededError(
            "Network storage limit would be exceeded. "
            f"Current: {round(current_bytes / 1024 / 1024)}MB, "
            f"Limit: {MAX_NETWORK_STORAGE // (1024 * 1024)}MB",
            current_count,
            current_bytes,
        )

    return Admitted(current_count, current_bytes)


def new_item_id() -> str:
    return uuid.uuid4().hex


def build_text_item(
    network_id: str,
    content: str,
    *,
    now: Optional[float] = None,
    item_id: Optional[str] = None,
) -> Dict[str, object]:
    created_at = time.time() if now is None else now
    return {
        "id": item_id or new_item_id(),
        "kind": "text",
        "content": content,
        "text_length": len(content),
        "network_id": network_id,
        "created_at": created_at,
        "expires_at": calculate_expiration(created_at),
        "download_count": 0,
    }


def build_file_item(
    network_id: str,
    *,
    file_name: str,
    byte_size: int,
    mime_type: str,
    content_url: str,
    blob_key: str,
    now: Optional[float] = None,
    item_id: Optional[str] = None,
) -> Dict[str, object]:
    created_at = time.time() if now is None else now
    return {
        "id": item_id or new_item_id(),
        "kind": "file",
        "content": content_url,
        "file_name": file_name,
        "byte_size": int(byte_size),
        "mime_type": mime_type,
        "blob_key": blob_key,
        "network_id": network_id,
        "created_at": created_at,
        "expires_at": calculate_expiration(created_at),
        "download_count": 0,
    }


def share_text(
    network_id: str,
    content: object,
    *,
    now: Optional[float] = None,
) -> Dict[str, object]:
    """Validate, quota-check and store a text snippet."""

    require_network_id(network_id)
    sanitized = validate_text(content)
    now = time.time() if now is None else now
    check_quota(network_id, 0, now=now)
    record = build_text_item(network_id, sanitized, now=now)
    storage.insert_item(record)
    return record


def require_live_item(item_id: str, *, now: Optional[float] = None):
    require_item_id(item_id)
    now = time.time() if now is None else now
    record = storage.get_live_item(item_id, now)
    if record is None:
        raise NotFoundOrExpired("Item not found or expired")
    return record


class CleanupResult:
    """Counts of rows removed by one real sweep."""

    def __init__(self, deleted_items: int = 0, deleted_sessions: int = 0, deleted_very_old: int = 0) -> None:
        self.deleted_items = deleted_items
        self.deleted_sessions = deleted_sessions
        self.deleted_very_old = deleted_very_old

    @property
    def total(self) -> int:
        return self.deleted_items + self.deleted_sessions + self.deleted_very_old

    def to_payload(self) -> dict:
        return {
            "expiredItems": self.deleted_items,
            "oldSessions": self.deleted_sessions,
            "veryOldItems": self.deleted_very_old,
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CleanupResult):
            return NotImplemented
        return (
            self.deleted_items,
            self.deleted_sessions,
            self.deleted_very_old,
        ) == (
            other.deleted_items,
            other.deleted_sessions,
            other.deleted_very_old,
        )

    def __repr__(self) -> str:
        return (
            f"CleanupResult(deleted_items={self.deleted_items}, "
            f"deleted_sessions={self.deleted_sessions}, "
            f"deleted_very_old={self.deleted_very_old})"
        )


class CleanupSkipped:
    """Returned when the throttle interval has not elapsed yet."""

    def __init__(self, last_run: float, next_run_at: float) -> None:
        self.last_run = last_run
        self.next_run_at = next_run_at

    def to_payload(self) -> dict:
        return {
            "skipped": True,
            "lastRun": storage.isoformat_utc(self.last_run),
            "nextRunAt": storage.isoformat_utc(self.next_run_at),
        }


class CleanupFailed:
    """Returned when the datastore rejected a sweep."""

    def __init__(self, error: str) -> None:
        self.error = error

    def to_payload(self) -> dict:
        return {"error": self.error}


SweepOutcome = Union[CleanupResult, CleanupSkipped, CleanupFailed]


class SweepState:
    """Process-local bookkeeping for the throttled sweep."""

    def __init__(self, last_run: float = 0.0) -> None:
        self.last_run = last_run
        self.lock = threading.Lock()

    def reset(self) -> None:
        with self.lock:
            self.last_run = 0.0


class CleanupSweeper:
    """Delete expired items, stale sessions and very old items.

    ``force`` always sweeps. ``maybe_sweep`` sweeps at most once per
    ``throttle_seconds`` as recorded in the injected :class:`SweepState`; a
    failed sweep restores the previous ``last_run`` so the next call retries.
    """

    def __init__(
        self,
        state: SweepState,
        *,
        throttle_seconds: float = SWEEP_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state = state
        self.throttle_seconds = throttle_seconds
        self._clock = clock

    def force(self, now: Optional[float] = None) -> Union[CleanupResult, CleanupFailed]:
        now = self._clock() if now is None else now
        try:
            result = CleanupResult(
                deleted_items=storage.delete_items_expired_before(now),
                deleted_sessions=storage.delete_sessions_seen_before(
                    now - ACTIVE_SESSION_SECONDS
                ),
                deleted_very_old=storage.delete_items_created_before(
                    now - VERY_OLD_ITEM_SECONDS
                ),
            )
        except (sqlite3.Error, OSError) as error:
            logger.exception("cleanup_failed error=%s", error)
            return CleanupFailed(str(error))

        if result.total:
            logger.info(
                "cleanup_completed expired_items=%d old_sessions=%d very_old_items=%d",
                result.deleted_items,
                result.deleted_sessions,
                result.deleted_very_old,
            )
        return result

    def _release(self, claimed: float, previous_run: float) -> None:
        with self.state.lock:
            if self.state.last_run == claimed:
                self.state.last_run = previous_run

    def maybe_sweep(self) -> SweepOutcome:
        now = self._clock()
        with self.state.lock:
            previous_run = self.state.last_run
            if previous_run and now - previous_run < self.throttle_seconds:
                return CleanupSkipped(previous_run, previous_run + self.throttle_seconds)
            # Claim the slot before sweeping so concurrent callers skip.
            self.state.last_run = now

        try:
            outcome = self.force(now)
        except Exception:
            self._release(now, previous_run)
            raise
        if isinstance(outcome, CleanupFailed):
            self._release(now, previous_run)
        return outcome
