import logging
from typing import Any, Optional

from ..persistence import COLLECTION_KEYS, USER_FK, RecordStore
from ..schemas import BackupScope, RestoreResult

logger = logging.getLogger(__name__)


class RestoreEngine:
    """Applies a backup manifest to the record store.

    User scope replaces only the target user's rows; rows in the payload
    that belong to someone else are skipped. Global scope replaces every
    collection present in the payload. A vault in the payload always
    replaces the whole vault collection, whatever the scope.
    """

    def __init__(self, records: RecordStore) -> None:
        self.records = records

    @staticmethod
    def resolve_user_id(payload: dict[str, Any]) -> Optional[str]:
        if payload.get("userId"):
            return payload["userId"]
        current = payload.get("currentUser")
        if isinstance(current, dict) and current.get("id"):
            return current["id"]
        return None

    async def restore(self, payload: dict[str, Any]) -> RestoreResult:
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        user_id = self.resolve_user_id(payload)
        try:
            if payload.get("scope") == BackupScope.user.value and user_id:
                result = self._restore_user(user_id, payload, data)
            else:
                result = self._restore_all(data)
            known = [user_id] if result.scope == BackupScope.user else [u.get("id") for u in self.records.users.all()]
            result.extrasRestored = self.records.extras.restore(payload.get("extras") or {}, known)
        finally:
            self.records.persist_snapshot()
        logger.info(
            "restored %s scope backup (%d collections, %d rows skipped)",
            result.scope.value,
            len(result.collections),
            result.skippedRows,
        )
        return result

    def _restore_all(self, data: dict[str, Any]) -> RestoreResult:
        result = RestoreResult(scope=BackupScope.all)
        for name, key in COLLECTION_KEYS.items():
            rows = data.get(name)
            if not isinstance(rows, list):
                continue
            self.records.write(key, rows, snapshot=False)
            result.collections[name] = len(rows)
        if "users" in result.collections:
            current_id = self.records.session.current_user_id()
            restored_ids = {row.get("id") for row in data["users"] if isinstance(row, dict)}
            if current_id and current_id not in restored_ids:
                self.records.session.clear_if(current_id)
                logger.info("active user %s is not in the restored users; session cleared", current_id)
        return result

    def _restore_user(self, user_id: str, payload: dict[str, Any], data: dict[str, Any]) -> RestoreResult:
        result = RestoreResult(scope=BackupScope.user, userId=user_id)
        for name, key in COLLECTION_KEYS.items():
            if name in ("users", "vault"):
                continue
            incoming = data.get(name)
            if not isinstance(incoming, list):
                continue
            accepted = []
            for row in incoming:
                if not isinstance(row, dict):
                    result.skippedRows += 1
                    continue
                owner = row.get(USER_FK)
                if owner and owner != user_id:
                    result.skippedRows += 1
                    continue
                accepted.append({**row, USER_FK: user_id})
            kept = [row for row in self.records.read(key) if row.get(USER_FK) != user_id]
            self.records.write(key, kept + accepted, snapshot=False)
            result.collections[name] = len(accepted)

        current = payload.get("currentUser")
        user_record = next(
            (u for u in data.get("users") or [] if isinstance(u, dict) and u.get("id") == user_id),
            current if isinstance(current, dict) and current.get("id") == user_id else None,
        )
        if user_record is not None:
            self._replace_user(user_record)
            result.collections["users"] = 1

        vault = data.get("vault")
        if isinstance(vault, list):
            self.records.write(COLLECTION_KEYS["vault"], vault, snapshot=False)
            result.collections["vault"] = len(vault)

        if isinstance(current, dict) and current.get("id") == user_id:
            self.records.session.set_current_user(current)
        return result

    def _replace_user(self, user: dict[str, Any]) -> None:
        rows = self.records.users.all()
        for index, row in enumerate(rows):
            if row.get("id") == user["id"]:
                rows[index] = user
                break
        else:
            rows.append(user)
        self.records.write(COLLECTION_KEYS["users"], rows, snapshot=False)
