import logging
import os
import secrets
import time
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional, Set
from urllib.parse import quote

import requests
from werkzeug.utils import secure_filename

logger = logging.getLogger("lanshare.blobs")

# Temp files are ".<name>.<token>.part"; secure_filename strips leading dots,
# so no blob key segment can take that shape.
TEMP_PREFIX = "."
TEMP_SUFFIX = ".part"
TEMP_FILE_MAX_AGE_SECONDS = 3600
ORPHAN_MIN_AGE_SECONDS = 600


class BlobStoreError(RuntimeError):
    """Raised when the blob backend cannot store or remove a payload."""

    def to_payload(self) -> dict:
        return {"success": False, "error": f"File storage failed: {self}"}


def make_blob_key(network_id: str, file_name: str, now: Optional[float] = None) -> str:
    """Build ``<network prefix>/<ms timestamp>_<random>_<safe name>``."""

    now = time.time() if now is None else now
    safe_name = secure_filename(file_name or "") or "file"
    return f"{network_id[:8]}/{int(now * 1000)}_{secrets.token_hex(4)}_{safe_name}"


def _validate_key(key: str) -> PurePosixPath:
    candidate = PurePosixPath(key)
    if (
        not key
        or candidate.is_absolute()
        or any(not part or part.startswith(TEMP_PREFIX) for part in key.split("/"))
    ):
        raise BlobStoreError(f"Invalid blob key: {key!r}")
    return candidate


def _is_temp_name(name: str) -> bool:
    return name.startswith(TEMP_PREFIX) and name.endswith(TEMP_SUFFIX)


class LocalBlobStore:
    """Blob payloads kept on local disk, one shard directory per network prefix."""

    is_local = True

    def __init__(self, root: Path, url_prefix: str = "/blobs") -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def path_for(self, key: str) -> Path:
        relative = _validate_key(key)
        return self.root.joinpath(*relative.parts)

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix}/{quote(key)}"

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        destination = self.path_for(key)
        temp_path = destination.with_name(
            f"{TEMP_PREFIX}{destination.name}.{secrets.token_hex(4)}{TEMP_SUFFIX}"
        )
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            temp_path.replace(destination)
        except OSError as error:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            logger.error("blob_put_failed key=%s error=%s", key, error)
            raise BlobStoreError(str(error)) from error

        logger.info(
            "blob_stored key=%s size=%d content_type=%s", key, len(data), content_type
        )
        return self.url_for(key)

    def exists(self, key: str) -> bool:
        try:
            return self.path_for(key).is_file()
        except BlobStoreError:
            return False

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as error:
            logger.warning("blob_delete_failed key=%s error=%s", key, error)
            raise BlobStoreError(str(error)) from error
        self._prune_empty_dirs(path.parent)
        logger.info("blob_deleted key=%s", key)
        return True

    def _prune_empty_dirs(self, path: Path) -> None:
        """Remove empty shard directories after blob deletion."""

        current = path
        try:
            current = current.resolve()
        except FileNotFoundError:
            return

        root = self.root.resolve()
        while current != root and root in current.parents:
            try:
                current.rmdir()
            except OSError:
                break
            current = current.parent

    def iter_keys(self) -> Iterator[str]:
        if not self.root.exists():
            return
        for path in self.root.rglob("*"):
            if path.is_file() and not _is_temp_name(path.name):
                yield path.relative_to(self.root).as_posix()

    def cleanup_orphans(
        self,
        valid_keys: Set[str],
        *,
        min_age_seconds: float = ORPHAN_MIN_AGE_SECONDS,
        now: Optional[float] = None,
    ) -> int:
        """Remove blobs on disk that no item row refers to.

        Blobs younger than *min_age_seconds* are kept: an upload writes its
        blob before inserting the row that references it.
        """

        now = time.time() if now is None else now
        removed = 0
        for key in list(self.iter_keys()):
            if key in valid_keys:
                continue
            try:
                if self.path_for(key).stat().st_mtime > now - min_age_seconds:
                    continue
                if self.delete(key):
                    removed += 1
                    logger.info("orphan_blob_removed key=%s", key)
            except (BlobStoreError, OSError) as error:
                logger.warning("orphan_cleanup_failed key=%s error=%s", key, error)
        if removed:
            logger.info("orphan_cleanup_completed removed=%d", removed)
        return removed

    def cleanup_temp_files(self, now: Optional[float] = None) -> int:
        """Remove temporary files left behind by interrupted writes."""

        now = time.time() if now is None else now
        cutoff = now - TEMP_FILE_MAX_AGE_SECONDS
        removed = 0
        if not self.root.exists():
            return removed
        for temp_file in self.root.rglob(TEMP_PREFIX + "*" + TEMP_SUFFIX):
            try:
                if (
                    _is_temp_name(temp_file.name)
                    and temp_file.is_file()
                    and temp_file.stat().st_mtime < cutoff
                ):
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except OSError as error:
                logger.warning("temp_cleanup_failed path=%s error=%s", temp_file, error)
        return removed


class HttpBlobStore:
    """Blob payloads kept in a remote object store that accepts HTTP PUT.

    The store is expected to answer a PUT with JSON carrying the public
    ``url`` of the object; when it does not, the PUT target itself is used.
    """

    is_local = False

    def __init__(self, endpoint: str, token: Optional[str] = None, timeout: float = 30) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _target(self, key: str) -> str:
        _validate_key(key)
        return f"{self.endpoint}/{quote(key)}"

    def _headers(self, content_type: Optional[str] = None) -> dict:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        target = self._target(key)
        try:
            response = requests.put(
                target,
                data=data,
                headers=self._headers(content_type or "application/octet-stream"),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as error:
            logger.error("blob_put_failed key=%s error=%s", key, error)
            raise BlobStoreError(str(error)) from error

        url = target
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("url"), str) and body["url"]:
            url = body["url"]

        logger.info("blob_stored key=%s size=%d url=%s", key, len(data), url)
        return url

    def exists(self, key: str) -> bool:
        try:
            response = requests.head(
                self._target(key), headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException:
            return False
        return response.status_code == 200

    def delete(self, key: str) -> bool:
        try:
            response = requests.delete(
                self._target(key), headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as error:
            logger.warning("blob_delete_failed key=%s error=%s", key, error)
            raise BlobStoreError(str(error)) from error
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise BlobStoreError(f"Delete returned HTTP {response.status_code}")
        logger.info("blob_deleted key=%s", key)
        return True


def create_blob_store(uploads_dir: Path):
    """Return the remote store when ``LANSHARE_BLOB_ENDPOINT`` is set, else local disk."""

    endpoint = os.environ.get("LANSHARE_BLOB_ENDPOINT", "").strip()
    if endpoint:
        return HttpBlobStore(endpoint, token=os.environ.get("LANSHARE_BLOB_TOKEN") or None)
    return LocalBlobStore(uploads_dir)
