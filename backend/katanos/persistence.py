"""Per-user record storage on top of a string key-value backing store.

Each collection lives under one key as a JSON array. A mutation reads the
whole array, transforms it and writes it back as one step. There is no lock
around that step: two callers racing on the same collection overwrite each
other and the last writer wins.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from .errors import StorageError, StorageQuotaExceeded
from .events import Diagnostics, NotificationChannel
from .schemas import ErrorCode, NotificationType
from .session import CURRENT_USER_KEY, SessionManager
from .store import BackingStore

logger = logging.getLogger(__name__)

COLLECTION_KEYS: dict[str, str] = {
    "users": "chronos_users",
    "events": "chronos_events",
    "todos": "chronos_todos",
    "checklists": "chronos_checklists",
    "transactions": "chronos_transactions",
    "financeBudgets": "chronos_finance_budgets",
    "financeGoals": "chronos_finance_goals",
    "financeDebts": "chronos_finance_debts",
    "financeRecurring": "chronos_finance_recurring",
    "contacts": "chronos_contacts",
    "habits": "chronos_habits",
    "journal": "chronos_journal",
    "books": "chronos_books",
    "vault": "chronos_vault",
}
EXTRAS_KEY = "katanos_extras"
USER_FK = "userId"
QUOTA_NOTIFY_INTERVAL_SECONDS = 8.0
SNAPSHOT_VERSION = "1.0"


@dataclass(frozen=True)
class ExtrasNamespace:
    name: str
    key_prefix: str
    per_user: bool


EXTRAS_NAMESPACES: tuple[ExtrasNamespace, ...] = (
    ExtrasNamespace("weatherLocations", "katanos_weather_loc_", per_user=True),
    ExtrasNamespace("cloudBackups", "chronos_cloud_backup_", per_user=True),
    ExtrasNamespace("appLocalStorage", "katanos_", per_user=False),
)
GLOBAL_EXTRA_KEYS = frozenset(
    {
        "katanos_emoji_recent",
        "katanos_last_login_lang",
        "katanos_last_login_theme",
        "katanos_login_bg",
        "katanos_idb_migrated_v1",
    }
)


@dataclass
class ExtraEntry:
    namespace: str
    owner: Optional[str]
    key: str
    value: Any


class SnapshotSink:
    async def save_snapshot(self, payload: dict[str, Any]) -> None:
        raise NotImplementedError


class FileSnapshotSink(SnapshotSink):
    """Writes the latest whole-state snapshot to ``<data_dir>/autosave.json``."""

    def __init__(self, data_dir: str | Path) -> None:
        self.path = Path(data_dir) / "autosave.json"

    def _write(self, content: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, self.path)

    async def save_snapshot(self, payload: dict[str, Any]) -> None:
        content = json.dumps(payload, ensure_ascii=False, indent=2)
        await asyncio.to_thread(self._write, content)


class SnapshotChannel:
    """Delivers snapshots to a sink without blocking the writer.

    ``submit`` never raises; delivery failures are counted and recorded as
    diagnostics. ``drain`` waits for everything submitted so far.
    """

    def __init__(self, sink: Optional[SnapshotSink], diagnostics: Diagnostics) -> None:
        self.sink = sink
        self.diagnostics = diagnostics
        self.delivered = 0
        self.failures = 0
        self._pending: set[asyncio.Task] = set()

    def submit(self, payload: dict[str, Any]) -> None:
        if self.sink is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running loop; snapshot skipped")
            return
        task = loop.create_task(self._deliver(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, payload: dict[str, Any]) -> None:
        try:
            await self.sink.save_snapshot(payload)
            self.delivered += 1
        except Exception as exc:
            self.failures += 1
            self.diagnostics.record("SnapshotFailed", "auto-save failed", error=str(exc))

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class Collection:
    def __init__(self, store: "RecordStore", name: str) -> None:
        self.store = store
        self.name = name
        self.key = COLLECTION_KEYS[name]

    def all(self) -> list[dict[str, Any]]:
        return self.store.read(self.key)

    def _save(self, rows: list[dict[str, Any]]) -> None:
        self.store.write(self.key, rows)

    async def list(self, user_id: str) -> list[dict[str, Any]]:
        return [row for row in self.all() if row.get(USER_FK) == user_id]

    async def get(self, item_id: str) -> Optional[dict[str, Any]]:
        return next((row for row in self.all() if row.get("id") == item_id), None)

    async def add(self, item: dict[str, Any]) -> dict[str, Any]:
        rows = self.all()
        new_item = {**item, "id": str(uuid4())}
        rows.append(new_item)
        self._save(rows)
        return new_item

    async def add_many(self, items: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        new_items = [{**item, "id": str(uuid4())} for item in items]
        if not new_items:
            return []
        rows = self.all()
        rows.extend(new_items)
        self._save(rows)
        return new_items

    async def update(self, item_id: str, updates: dict[str, Any]) -> Optional[dict[str, Any]]:
        # unknown ids are a silent no-op
        rows = self.all()
        for index, row in enumerate(rows):
            if row.get("id") == item_id:
                rows[index] = {**row, **updates, "id": item_id}
                self._save(rows)
                return rows[index]
        return None

    async def delete(self, item_id: str) -> None:
        rows = self.all()
        self._save([row for row in rows if row.get("id") != item_id])

    async def upsert(self, item: dict[str, Any]) -> dict[str, Any]:
        rows = self.all()
        item = {**item, "id": item.get("id") or str(uuid4())}
        for index, row in enumerate(rows):
            if row.get("id") == item["id"]:
                rows[index] = item
                break
        else:
            rows.append(item)
        self._save(rows)
        return item

    async def replace_for_user(self, user_id: str, items: list[dict[str, Any]]) -> None:
        kept = [row for row in self.all() if row.get(USER_FK) != user_id]
        incoming = [{**item, USER_FK: user_id, "id": item.get("id") or str(uuid4())} for item in items]
        self._save(kept + incoming)

    async def toggle_favorite(self, item_id: str) -> None:
        rows = self.all()
        for row in rows:
            if row.get("id") == item_id:
                row["isFavorite"] = not row.get("isFavorite", False)
                self._save(rows)
                return

    async def toggle_habit_log(self, habit_id: str, day: str) -> None:
        await self._toggle_habit_day(habit_id, day, "logs", "skips")

    async def toggle_habit_skip(self, habit_id: str, day: str) -> None:
        await self._toggle_habit_day(habit_id, day, "skips", "logs")

    async def _toggle_habit_day(self, habit_id: str, day: str, field: str, other: str) -> None:
        rows = self.all()
        for row in rows:
            if row.get("id") != habit_id:
                continue
            marked = list(row.get(field) or [])
            opposite = list(row.get(other) or [])
            if day in marked:
                marked.remove(day)
            else:
                marked.append(day)
                # a day is either logged or skipped, never both
                opposite = [d for d in opposite if d != day]
            row[field] = marked
            row[other] = opposite
            self._save(rows)
            return


class VaultCollection(Collection):
    """One opaque encrypted vault blob per user."""

    async def get_for(self, user_id: str) -> Optional[dict[str, Any]]:
        rows = self.all()
        for row in rows:
            if not row.get(USER_FK):
                # legacy single vault: adopt it for whoever opens it first
                row[USER_FK] = user_id
                self._save(rows)
                return row
        return next((row for row in rows if row.get(USER_FK) == user_id), None)

    async def save_for(self, user_id: str, vault: dict[str, Any]) -> dict[str, Any]:
        vault = {**vault, USER_FK: vault.get(USER_FK) or user_id}
        rows = self.all()
        for index, row in enumerate(rows):
            if row.get(USER_FK) == vault[USER_FK]:
                rows[index] = vault
                break
        else:
            rows.append(vault)
        self._save(rows)
        return vault

    async def delete_for(self, user_id: str) -> None:
        self._save([row for row in self.all() if row.get(USER_FK) != user_id])


class ExtrasStore:
    """Namespaced key/value blobs that are not part of a typed collection."""

    def __init__(self, store: "RecordStore") -> None:
        self.store = store
        self.namespaces = {ns.name: ns for ns in EXTRAS_NAMESPACES}

    def entries(self) -> list[ExtraEntry]:
        out = []
        for raw in self.store.read(EXTRAS_KEY):
            if raw.get("namespace") in self.namespaces and raw.get("key"):
                out.append(ExtraEntry(raw["namespace"], raw.get("owner"), raw["key"], raw.get("value")))
        return out

    def _save(self, entries: list[ExtraEntry], snapshot: bool = True) -> None:
        self.store.write(EXTRAS_KEY, [asdict(entry) for entry in entries], snapshot=snapshot)

    def put(self, namespace: str, key: str, value: Any, owner: Optional[str] = None, snapshot: bool = True) -> ExtraEntry:
        ns_def = self.namespaces.get(namespace)
        if ns_def is None:
            raise ValueError(f"unknown extras namespace: {namespace}")
        if ns_def.per_user and not owner:
            raise ValueError(f"{namespace} entries need an owner")
        entry = ExtraEntry(namespace, owner, key, value)
        entries = [e for e in self.entries() if not (e.namespace == namespace and e.key == key)]
        entries.append(entry)
        self._save(entries, snapshot=snapshot)
        return entry

    def get(self, namespace: str, key: str) -> Optional[ExtraEntry]:
        return next((e for e in self.entries() if e.namespace == namespace and e.key == key), None)

    def remove(self, namespace: str, key: str) -> bool:
        entries = self.entries()
        kept = [e for e in entries if not (e.namespace == namespace and e.key == key)]
        if len(kept) == len(entries):
            return False
        self._save(kept)
        return True

    def for_user(self, user_id: str) -> list[ExtraEntry]:
        return [e for e in self.entries() if e.owner == user_id or (e.owner is None and e.key in GLOBAL_EXTRA_KEYS)]

    def remove_owned(self, user_id: str, snapshot: bool = True) -> int:
        entries = self.entries()
        kept = [e for e in entries if e.owner != user_id]
        if len(kept) != len(entries):
            self._save(kept, snapshot=snapshot)
        return len(entries) - len(kept)

    def to_manifest(self, entries: Iterable[ExtraEntry]) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {ns.name: {} for ns in EXTRAS_NAMESPACES}
        for entry in entries:
            out[entry.namespace][entry.key] = entry.value
        return out

    def restore(self, extras: dict[str, Any], known_owner_ids: Iterable[str]) -> int:
        """Write every blob from a manifest ``extras`` section, key by key.

        Manifests carry no owner field, so ownership is recovered once here:
        a key ending with a known user id belongs to that user.
        """
        owners = [uid for uid in known_owner_ids if uid]
        count = 0
        entries = self.entries()
        for namespace, values in (extras or {}).items():
            ns_def = self.namespaces.get(namespace)
            if ns_def is None or not isinstance(values, dict):
                continue
            for key, value in values.items():
                owner = next((uid for uid in owners if key.endswith(uid)), None)
                if ns_def.per_user and owner is None:
                    logger.info("extras key %s has no known owner; kept as global", key)
                entries = [e for e in entries if not (e.namespace == namespace and e.key == key)]
                entries.append(ExtraEntry(namespace, owner, key, value))
                count += 1
        if count:
            self._save(entries, snapshot=False)
        return count


class RecordStore:
    def __init__(
        self,
        backing: BackingStore,
        session: SessionManager,
        notifications: NotificationChannel,
        diagnostics: Diagnostics,
        snapshots: SnapshotChannel,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backing = backing
        self.session = session
        self.notifications = notifications
        self.diagnostics = diagnostics
        self.snapshots = snapshots
        self.clock = clock
        self._last_quota_notify_at: Optional[float] = None
        self.collections: dict[str, Collection] = {
            name: (VaultCollection(self, name) if name == "vault" else Collection(self, name)) for name in COLLECTION_KEYS
        }
        self.extras = ExtrasStore(self)
        session.subscribe(lambda user: self.persist_snapshot(user.get("id") if user else None))

    def init(self) -> None:
        self.backing.init([*COLLECTION_KEYS.values(), CURRENT_USER_KEY, EXTRAS_KEY])

    def collection(self, name: str) -> Collection:
        try:
            return self.collections[name]
        except KeyError:
            raise KeyError(f"unknown collection: {name}") from None

    @property
    def users(self) -> Collection:
        return self.collections["users"]

    @property
    def vault(self) -> VaultCollection:
        return self.collections["vault"]  # type: ignore[return-value]

    def read(self, key: str) -> list[dict[str, Any]]:
        try:
            raw = self.backing.get(key)
            data = json.loads(raw) if raw else []
        except (StorageError, json.JSONDecodeError) as exc:
            logger.error("error reading key %s: %s", key, exc)
            return []
        return data if isinstance(data, list) else []

    def write(self, key: str, rows: list[dict[str, Any]], snapshot: bool = True) -> bool:
        """Persist ``rows`` under ``key`` and queue a snapshot.

        A full store drops the write: the caller's change is lost and the
        user sees a rate-limited "Storage full" notification.
        """
        try:
            self.backing.set(key, json.dumps(rows))
        except StorageQuotaExceeded as exc:
            self.diagnostics.record(ErrorCode.storage_quota_exceeded.value, "write dropped", key=key, error=str(exc))
            self._notify_storage_full()
            return False
        except StorageError as exc:
            self.diagnostics.record(ErrorCode.write_failed.value, "storage save failed", key=key, error=str(exc))
            return False
        if snapshot:
            self.persist_snapshot()
        return True

    def _notify_storage_full(self) -> None:
        now = self.clock()
        if self._last_quota_notify_at is not None and now - self._last_quota_notify_at < QUOTA_NOTIFY_INTERVAL_SECONDS:
            return
        self._last_quota_notify_at = now
        self.notifications.emit(
            title="Storage full",
            message="Storage is full. Recent changes could not be saved.",
            type=NotificationType.warning,
            duration=9000,
        )

    def dump_all(self) -> dict[str, list[dict[str, Any]]]:
        return {name: self.read(key) for name, key in COLLECTION_KEYS.items()}

    def snapshot_payload(self, user_id: Optional[str] = None) -> dict[str, Any]:
        current = self.session.current_user()
        return {
            "version": SNAPSHOT_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "userId": user_id or (current or {}).get("id"),
            "currentUser": current,
            "data": self.dump_all(),
            "extras": self.extras.to_manifest(self.extras.entries()),
            "scope": "all",
        }

    def persist_snapshot(self, user_id: Optional[str] = None) -> None:
        if self.snapshots.sink is None:
            return
        self.snapshots.submit(self.snapshot_payload(user_id))

    async def delete_user_data(self, user_id: str) -> bool:
        if not user_id:
            return False
        for name, key in COLLECTION_KEYS.items():
            rows = self.read(key)
            if name == "users":
                kept = [row for row in rows if row.get("id") != user_id]
            else:
                kept = [row for row in rows if row.get(USER_FK) != user_id]
            if len(kept) != len(rows):
                self.write(key, kept, snapshot=False)
        self.extras.remove_owned(user_id, snapshot=False)
        self.session.clear_if(user_id)
        self.persist_snapshot()
        logger.info("deleted all data for user %s", user_id)
        return True

    def debug_counts(self) -> dict[str, int]:
        counts = {name: len(rows) for name, rows in self.dump_all().items()}
        counts["extras"] = len(self.extras.entries())
        return counts
