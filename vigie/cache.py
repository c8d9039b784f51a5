from json import JSONDecodeError, dumps, loads
from logging import getLogger
from sqlite3 import Error as SqliteError
from sqlite3 import connect
from threading import Lock
from typing import Any, Iterable, Optional

from .models import CacheEntry, CacheMetadata, CachePayload, TrackedItem
from .utils import now_utc, short_id

LOG = getLogger(__name__)


class MemoryBackend:
    def __init__(self):
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = Lock()

    def read(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            row = self._rows.get(key)
            return loads(dumps(row)) if row is not None else None

    def write(self, key: str, data: dict[str, Any]) -> None:
        encoded = loads(dumps(data))
        with self._lock:
            self._rows[key] = encoded

    def delete(self, key: str) -> None:
        with self._lock:
            self._rows.pop(key, None)


class SqliteBackend:
    def __init__(self, path: str, timeout: float = 5.0):
        self.path = path
        self.timeout = timeout
        connection = self._connect()
        try:
            with connection:
                connection.execute(
                    "CREATE TABLE IF NOT EXISTS container_cache ("
                    " cache_key TEXT PRIMARY KEY,"
                    " cache_data TEXT NOT NULL,"
                    " updated_at TEXT NOT NULL)"
                )
        finally:
            connection.close()

    def _connect(self):
        return connect(self.path, timeout=self.timeout)

    def read(self, key: str) -> Optional[dict[str, Any]]:
        connection = self._connect()
        try:
            row = connection.execute(
                "SELECT cache_data FROM container_cache WHERE cache_key = ?", (key,)
            ).fetchone()
        finally:
            connection.close()
        if row is None:
            return None
        try:
            return loads(row[0])
        except JSONDecodeError as error:
            LOG.warning("Discarding unreadable cache row %s: %s", key, error)
            return None

    def write(self, key: str, data: dict[str, Any]) -> None:
        connection = self._connect()
        try:
            with connection:
                connection.execute(
                    "INSERT INTO container_cache (cache_key, cache_data, updated_at) VALUES (?, ?, ?)"
                    " ON CONFLICT(cache_key) DO UPDATE SET"
                    " cache_data = excluded.cache_data, updated_at = excluded.updated_at",
                    (key, dumps(data), now_utc().isoformat()),
                )
        finally:
            connection.close()

    def delete(self, key: str) -> None:
        connection = self._connect()
        try:
            with connection:
                connection.execute("DELETE FROM container_cache WHERE cache_key = ?", (key,))
        finally:
            connection.close()


class CacheStore:
    """Last-known-good payloads with partial merge.

    ``merge`` never erases registry results: an item only loses its update
    fields when the incoming item carries a registry result of its own.
    """

    def __init__(self, backend=None):
        self.backend = backend if backend is not None else MemoryBackend()
        self._locks: dict[str, Lock] = {}
        self._locks_guard = Lock()

    def _lock_for(self, key: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def get(self, key: str) -> Optional[CacheEntry]:
        try:
            data = self.backend.read(key)
        except SqliteError as error:
            LOG.error("Failed to read cache %s: %s", key, error)
            return None
        if data is None:
            return None
        try:
            return CacheEntry.from_dict(key, data)
        except (KeyError, TypeError, ValueError) as error:
            LOG.warning("Ignoring malformed cache entry %s: %s", key, error)
            return None

    def merge(
        self,
        key: str,
        partial_payload: CachePayload,
        metadata_patch: Optional[dict[str, Any]] = None,
        prune_instances: Optional[Iterable[str]] = None,
    ) -> CacheEntry:
        pruned = set(prune_instances or ())
        with self._lock_for(key):
            previous = self.get(key)
            if previous is None:
                entry = CacheEntry(
                    key=key,
                    payload=partial_payload,
                    metadata=CacheMetadata().patched(metadata_patch or {}),
                )
            else:
                entry = CacheEntry(
                    key=key,
                    payload=_merge_payloads(previous.payload, partial_payload, pruned),
                    metadata=previous.metadata.patched(metadata_patch or {}),
                )
            self.backend.write(key, entry.to_dict())
            return entry

    def replace(self, key: str, full_payload: CachePayload, metadata: CacheMetadata) -> CacheEntry:
        entry = CacheEntry(key=key, payload=full_payload, metadata=metadata)
        with self._lock_for(key):
            self.backend.write(key, entry.to_dict())
        return entry

    def clear(self, key: str) -> None:
        with self._lock_for(key):
            self.backend.delete(key)
        LOG.info("Cleared cache %s", key)


def _merge_payloads(previous: CachePayload, partial: CachePayload, pruned: set[str]) -> CachePayload:
    by_id = {item.id: item for item in previous.items}
    by_name = {(item.instance, item.name): item for item in previous.items}
    consumed = {item.id for item in partial.items if item.id in by_id}
    incoming: dict[str, TrackedItem] = {}

    for item in partial.items:
        prior = by_id.get(item.id)
        if prior is None:
            # Recreated containers keep their name but get a new id
            prior = by_name.get((item.instance, item.name))
            if prior is not None and prior.id in consumed:
                prior = None
            elif prior is not None:
                consumed.add(prior.id)
        if prior is not None:
            if prior.current_digest and item.current_digest and prior.current_digest != item.current_digest:
                LOG.info(
                    "Detected image change for %s: %s -> %s",
                    item.name,
                    short_id(prior.current_digest),
                    short_id(item.current_digest),
                )
            if not item.has_registry_result:
                item = item.with_update_fields_from(prior)
        incoming[prior.id if prior is not None else item.id] = item

    merged: list[TrackedItem] = []
    for prior in previous.items:
        replacement = incoming.pop(prior.id, None)
        if replacement is not None:
            merged.append(replacement)
        elif prior.instance in pruned:
            LOG.debug("Dropping %s; no longer present on %s", prior.name, prior.instance)
        else:
            merged.append(prior)
    merged.extend(incoming.values())

    unused_count = partial.unused_count if partial.unused_count is not None else previous.unused_count
    return CachePayload(items=tuple(merged), unused_count=unused_count)
