from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from .config import Settings
from .errors import StorageError, StorageQuotaExceeded

logger = logging.getLogger(__name__)


class BackingStore:
    """String key-value store underneath every collection."""

    def init(self, known_keys: Iterable[str]) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> list[str]:
        raise NotImplementedError


class InMemoryBackingStore(BackingStore):
    def __init__(self, capacity_bytes: int | None = None) -> None:
        self.values: dict[str, str] = {}
        self.capacity_bytes = capacity_bytes

    def init(self, known_keys: Iterable[str]) -> None:
        return None

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        if self.capacity_bytes is not None:
            used = sum(len(v.encode("utf-8")) for k, v in self.values.items() if k != key)
            if used + len(value.encode("utf-8")) > self.capacity_bytes:
                raise StorageQuotaExceeded(f"writing {key} exceeds {self.capacity_bytes} bytes")
        self.values[key] = value

    def remove(self, key: str) -> None:
        self.values.pop(key, None)

    def keys(self) -> list[str]:
        return list(self.values.keys())

    def used_bytes(self) -> int:
        return sum(len(v.encode("utf-8")) for v in self.values.values())


class SqlBackingStore(BackingStore):
    """Key-value rows in a single ``kv_store`` table.

    Reads are served from a cache filled at :meth:`init`; every write goes
    straight to the database and then updates the cache.
    """

    def __init__(self, database_url: str) -> None:
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self.cache: dict[str, str] = {}
        self.ready = False

    def _run(self, sql: str, params: dict | None = None) -> list[dict]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(sql), params or {})
                if result.returns_rows:
                    return [dict(row._mapping) for row in result.fetchall()]
                return []
        except OperationalError as exc:
            if "full" in str(exc.orig).lower():
                raise StorageQuotaExceeded(str(exc.orig)) from exc
            raise StorageError(f"database error: {exc.__class__.__name__}") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"database error: {exc.__class__.__name__}") from exc

    def _ensure_table(self) -> None:
        self._run(
            """
            create table if not exists kv_store (
              key varchar(255) primary key,
              value text not null
            )
            """
        )

    def init(self, known_keys: Iterable[str]) -> None:
        self._ensure_table()
        wanted = set(known_keys)
        for row in self._run("select key, value from kv_store"):
            if not wanted or row["key"] in wanted:
                self.cache[row["key"]] = row["value"]
        self.ready = True
        logger.info("sql backing store ready with %d cached keys", len(self.cache))

    def get(self, key: str) -> Optional[str]:
        if key in self.cache:
            return self.cache[key]
        if self.ready:
            return None
        rows = self._run("select value from kv_store where key = :key", {"key": key})
        return rows[0]["value"] if rows else None

    def set(self, key: str, value: str) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(text("delete from kv_store where key = :key"), {"key": key})
                conn.execute(text("insert into kv_store (key, value) values (:key, :value)"), {"key": key, "value": value})
        except OperationalError as exc:
            if "full" in str(exc.orig).lower():
                raise StorageQuotaExceeded(str(exc.orig)) from exc
            raise StorageError(f"database error: {exc.__class__.__name__}") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"database error: {exc.__class__.__name__}") from exc
        self.cache[key] = value

    def remove(self, key: str) -> None:
        self._run("delete from kv_store where key = :key", {"key": key})
        self.cache.pop(key, None)

    def keys(self) -> list[str]:
        return [row["key"] for row in self._run("select key from kv_store order by key")]


def get_backing_store(config: Settings) -> BackingStore:
    if config.storage_backend in {"sql", "postgres", "sqlite"}:
        return SqlBackingStore(config.database_url)
    return InMemoryBackingStore()
