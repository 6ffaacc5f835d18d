# Overview: Durable device-local key/value store shared by every tab.

"""
Device-local storage.

One JSON file per key under the storage directory. Writes go to a temp
file first and are swapped in with os.replace, so a crash leaves either
the old value or the new one. Each value is capped at 1 MiB.

Every process of the same device points at the same directory; cross-tab
writers serialize through a lock file (compare_and_swap, leases).
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from contextlib import contextmanager


logger = logging.getLogger(__name__)

MAX_VALUE_BYTES = 1024 * 1024

AUTH_TOKEN_KEY = "authToken"

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def offline_pos_cart_key(theater_id) -> str:
    return f"offline_pos_cart_{theater_id}"


def kiosk_cart_key(theater_id) -> str:
    return f"kioskCart_{theater_id}"


def online_pos_cart_key(theater_id) -> str:
    return f"online_pos_cart_{theater_id}"


def pending_orders_key(theater_id) -> str:
    return f"pending_orders_{theater_id}"


def stock_updated_key(theater_id) -> str:
    return f"stock_updated_{theater_id}"


def sales_updated_key(theater_id) -> str:
    return f"sales_updated_{theater_id}"


class StorageError(Exception):
    """A value could not be stored (too large, not JSON, lock timeout)."""


class LocalStore:
    def __init__(self, directory: str, *, lock_timeout: float = 5.0, stale_lock_seconds: float = 30.0, clock=time.time):
        self.directory = directory
        self.lock_timeout = lock_timeout
        self.stale_lock_seconds = stale_lock_seconds
        self.clock = clock
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        if not _KEY_RE.match(key):
            raise StorageError(f"invalid storage key: {key!r}")
        return os.path.join(self.directory, f"{key}.json")

    # ---------------------------------------------------------------- basic ops

    def get(self, key: str, default=None):
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return default
        except json.JSONDecodeError:
            logger.warning("discarding unreadable storage value: key=%s", key)
            return default

    def set(self, key: str, value) -> None:
        path = self._path(key)
        try:
            data = json.dumps(value, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise StorageError(f"value for {key} is not JSON serializable: {exc}")
        if len(data) > MAX_VALUE_BYTES:
            raise StorageError(f"value for {key} exceeds {MAX_VALUE_BYTES} bytes")

        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def delete(self, key: str) -> bool:
        try:
            os.unlink(self._path(key))
            return True
        except FileNotFoundError:
            return False

    # ---------------------------------------------------------------- locking

    @contextmanager
    def locked(self, name: str = "store"):
        """Exclusive cross-process section (O_EXCL lock file)."""
        lock_path = os.path.join(self.directory, f".{name}.lock")
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("ascii"))
                os.close(fd)
                break
            except FileExistsError:
                try:
                    age = time.time() - os.path.getmtime(lock_path)
                except FileNotFoundError:
                    continue
                if age > self.stale_lock_seconds:
                    logger.warning("breaking stale storage lock: %s", lock_path)
                    try:
                        os.unlink(lock_path)
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() >= deadline:
                    raise StorageError(f"timed out waiting for lock {name}")
                time.sleep(0.01)
        try:
            yield
        finally:
            try:
                os.unlink(lock_path)
            except FileNotFoundError:
                pass

    def update(self, key: str, fn, default=None):
        """Read-modify-write under the store lock. Returns the stored value."""
        with self.locked():
            value = fn(self.get(key, default))
            self.set(key, value)
            return value

    def compare_and_swap(self, key: str, expected, new) -> bool:
        """Store `new` only if the current value equals `expected`."""
        with self.locked():
            if self.get(key) != expected:
                return False
            if new is None:
                self.delete(key)
            else:
                self.set(key, new)
            return True

    # ---------------------------------------------------------------- leases

    def acquire_lease(self, name: str, owner: str, ttl_seconds: float) -> bool:
        """
        Take or renew a named lease. Another owner's lease blocks until it
        expires; the holder may renew at any time.
        """
        key = f"lease_{name}"
        now = self.clock()
        with self.locked():
            current = self.get(key)
            if current and current.get("owner") != owner and current.get("expiresAt", 0) > now:
                return False
            self.set(key, {"owner": owner, "expiresAt": now + ttl_seconds})
            return True

    def release_lease(self, name: str, owner: str) -> None:
        key = f"lease_{name}"
        with self.locked():
            current = self.get(key)
            if current and current.get("owner") == owner:
                self.delete(key)

    # ---------------------------------------------------------------- flags

    def touch_flag(self, key: str) -> float:
        """Write the current timestamp; other tabs compare it to invalidate caches."""
        stamp = self.clock()
        self.set(key, stamp)
        return stamp

    def flag_changed_since(self, key: str, seen) -> bool:
        value = self.get(key)
        return value is not None and (seen is None or value > seen)
