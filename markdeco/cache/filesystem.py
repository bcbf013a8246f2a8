"""
Durable on-disk cache storage.

One file per key, directly under the configured directory::

    <cache_dir>/<sha256-hex-of-key>.json.gz

Each file holds the gzip-compressed UTF-8 JSON of a :class:`CacheEntry`.  With
compression disabled the file is ``<hash>.json`` and holds plain JSON instead;
reads fall back to the plain file when the compressed one is missing, so a
directory written by either mode stays readable.

Writes never expose a half-written file: the payload goes to a uniquely named
temp file in the same directory which is then renamed onto the final path.
Several processes may share one directory; between processes the rename is the
only coordination and the last writer wins.

Within one process a single :class:`AsyncMutex` per instance serializes writes,
deletes, ``clear()``, the reaping part of ``size()`` and expiry-driven deletes
in ``get()``.  A ``get()`` that finds a live entry never takes the lock.
"""

import gzip
import hashlib
import logging
import os
import secrets
import sys
import time
import zlib
from pathlib import Path
from typing import Optional, Union

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from markdeco.cache.base import CacheEntry, is_expired, now_ms, validate_ttl
from markdeco.cache.lock import AsyncMutex
from markdeco.errors import CacheError, CacheWriteError, StorageUnavailableError

logger = logging.getLogger(__name__)

COMPRESSED_SUFFIX: str = ".json.gz"
PLAIN_SUFFIX: str = ".json"
_TEMP_SUFFIX: str = ".tmp"

# Decoding failures of a file that was read successfully.  Other I/O errors
# (permissions, a directory in the way) propagate.
_CORRUPTION_ERRORS = (gzip.BadGzipFile, EOFError, zlib.error, UnicodeDecodeError, ValidationError)


def _is_browser_runtime() -> bool:
    """True under Pyodide/Emscripten or WASI, where there is no real filesystem."""
    return sys.platform in ("emscripten", "wasi")


def hash_key(key: str) -> str:
    """SHA-256 hex digest of *key*, used as the file's base name."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class _GzipCodec:
    """Text <-> gzip bytes."""

    def __init__(self, level: int = 6) -> None:
        self.level = level

    def compress(self, text: str) -> bytes:
        return gzip.compress(text.encode("utf-8"), compresslevel=self.level)

    def decompress(self, blob: bytes) -> str:
        return gzip.decompress(blob).decode("utf-8")


class FileSystemCacheStorage:
    """TTL cache persisted as one (optionally gzip-compressed) JSON file per key.

    Args:
        cache_dir:          Directory holding the cache files.  Created on
                            demand, recursively, by every operation.
        enable_compression: Write ``.json.gz`` (default) instead of ``.json``.

    Raises:
        StorageUnavailableError: At construction and from every method when
            running inside a browser runtime.
    """

    def __init__(
        self,
        cache_dir: Union[str, "os.PathLike[str]"],
        enable_compression: bool = True,
    ) -> None:
        self._check_environment()
        self._dir = Path(cache_dir)
        self._enable_compression = enable_compression
        self._codec: Optional[_GzipCodec] = None
        self._mutex = AsyncMutex()

    @property
    def cache_dir(self) -> Path:
        return self._dir

    def path_for(self, key: str) -> Path:
        """Path of the file *key* is written to in the current compression mode."""
        suffix = COMPRESSED_SUFFIX if self._enable_compression else PLAIN_SUFFIX
        return self._dir / f"{hash_key(key)}{suffix}"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_environment() -> None:
        if _is_browser_runtime():
            raise StorageUnavailableError(
                "File system cache is only available in a native Python runtime, not in browsers"
            )

    def _get_codec(self) -> _GzipCodec:
        if self._codec is None:
            self._codec = _GzipCodec()
        return self._codec

    def _paths(self, key: str) -> tuple[Path, Path]:
        base = hash_key(key)
        return self._dir / f"{base}{COMPRESSED_SUFFIX}", self._dir / f"{base}{PLAIN_SUFFIX}"

    async def _ensure_dir(self) -> None:
        try:
            await aiofiles.os.makedirs(self._dir, exist_ok=True)
        except OSError as exc:
            raise CacheError(f"Failed to create cache directory {self._dir}: {exc}") from exc

    async def _read_entry(self, path: Path) -> CacheEntry:
        """Read and decode one cache file.

        Raises:
            FileNotFoundError: The file does not exist.
            Any of ``_CORRUPTION_ERRORS``: The file exists but cannot be decoded.
            OSError: Any other failure reading the file.
        """
        async with aiofiles.open(path, "rb") as fh:
            raw = await fh.read()
        if path.name.endswith(COMPRESSED_SUFFIX):
            text = self._get_codec().decompress(raw)
        else:
            text = raw.decode("utf-8")
        return CacheEntry.model_validate_json(text)

    async def _remove_quietly(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.debug("Ignoring failure removing %s: %s", path, exc)

    def _temp_path_for(self, target: Path) -> Path:
        token = secrets.token_hex(6)
        return self._dir / f".{target.name}.{os.getpid()}.{time.time_ns()}.{token}{_TEMP_SUFFIX}"

    async def _write_atomic(self, target: Path, payload: bytes) -> None:
        """Write *payload* to a temp file, then rename it onto *target*.  Caller holds the lock."""
        temp_path = self._temp_path_for(target)
        committed = False
        try:
            async with aiofiles.open(temp_path, "wb") as fh:
                await fh.write(payload)
                await fh.flush()
            try:
                await aiofiles.os.replace(temp_path, target)
            except OSError:
                # Some platforms refuse to rename onto an existing file.
                await self._remove_quietly(target)
                await aiofiles.os.rename(temp_path, target)
            committed = True
        except Exception as exc:
            raise CacheWriteError(f"Failed to write cache entry {target.name}: {exc}") from exc
        finally:
            # Also runs on cancellation, which is not an Exception.
            if not committed:
                await self._remove_quietly(temp_path)

    @staticmethod
    def _is_cache_file(name: str) -> bool:
        return name.endswith(COMPRESSED_SUFFIX) or name.endswith(PLAIN_SUFFIX)

    async def _list_cache_files(self) -> list[Path]:
        names = await aiofiles.os.listdir(self._dir)
        return [self._dir / name for name in names if self._is_cache_file(name)]

    # ------------------------------------------------------------------
    # CacheStorage
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        """Return the payload for *key*, or ``None`` if absent, expired or corrupt.

        Corrupt files are removed so the next read does not trip over them
        again.  Expired files are removed under the lock after re-reading them,
        since another writer may have refreshed the key in the meantime.
        """
        self._check_environment()
        compressed_path, plain_path = self._paths(key)
        await self._ensure_dir()

        candidates = [compressed_path, plain_path] if self._enable_compression else [plain_path]
        entry: Optional[CacheEntry] = None
        found_path: Optional[Path] = None
        for path in candidates:
            try:
                entry = await self._read_entry(path)
            except FileNotFoundError:
                continue
            except _CORRUPTION_ERRORS as exc:
                logger.warning("Removing corrupt cache file %s: %s", path.name, exc)
                await self._remove_quietly(path)
                return None
            found_path = path
            break

        if entry is None or found_path is None:
            logger.debug("Cache miss (not found): key=%r", key)
            return None

        if not is_expired(entry):
            logger.debug("Cache hit: key=%r", key)
            return entry.data

        async with self._mutex.lock():
            try:
                current = await self._read_entry(found_path)
            except FileNotFoundError:
                return None
            except _CORRUPTION_ERRORS:
                await self._remove_quietly(found_path)
                return None
            if not is_expired(current):
                return current.data
            await self._remove_quietly(compressed_path)
            await self._remove_quietly(plain_path)
        logger.debug("Cache miss (expired): key=%r", key)
        return None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Persist *value* under *key*, replacing any previous entry.

        Raises:
            CacheWriteError: The temp-file write or the rename failed.  The
                temp file has been removed; the previous entry, if any, is
                left as it was or removed, never half-written.
        """
        self._check_environment()
        validate_ttl(ttl)
        compressed_path, plain_path = self._paths(key)
        serialized = CacheEntry.create(value, ttl).to_json()

        if self._enable_compression:
            payload = self._get_codec().compress(serialized)
            target, other = compressed_path, plain_path
        else:
            payload = serialized.encode("utf-8")
            target, other = plain_path, compressed_path

        async with self._mutex.lock():
            await self._ensure_dir()
            await self._write_atomic(target, payload)
            await self._remove_quietly(other)
        logger.debug("Cache set: key=%r ttl=%s file=%s", key, ttl, target.name)

    async def delete(self, key: str) -> None:
        """Remove *key* in both file formats.  A no-op if nothing is stored."""
        self._check_environment()
        compressed_path, plain_path = self._paths(key)
        async with self._mutex.lock():
            await self._ensure_dir()
            await self._remove_quietly(compressed_path)
            await self._remove_quietly(plain_path)

    async def clear(self) -> None:
        """Remove every cache file in the directory.  Other files are left alone."""
        self._check_environment()
        async with self._mutex.lock():
            await self._ensure_dir()
            files = await self._list_cache_files()
            for path in files:
                await self._remove_quietly(path)
        logger.debug("Cache cleared: dir=%s removed %d files", self._dir, len(files))

    async def size(self) -> int:
        """Reap expired and corrupt files, then return the number of live entries.

        The directory listing is taken without the lock; reading and deleting
        individual files happens under it.
        """
        self._check_environment()
        await self._ensure_dir()
        files = await self._list_cache_files()
        if not files:
            return 0

        async with self._mutex.lock():
            now = now_ms()
            live = 0
            for path in files:
                try:
                    entry = await self._read_entry(path)
                except FileNotFoundError:
                    continue
                except _CORRUPTION_ERRORS:
                    await self._remove_quietly(path)
                    continue
                if is_expired(entry, now):
                    await self._remove_quietly(path)
                    continue
                live += 1
            return live
