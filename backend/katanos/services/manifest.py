import secrets
import string
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from ..persistence import USER_FK, RecordStore
from ..schemas import BackupManifest, BackupScope

BASE36 = string.digits + string.ascii_lowercase


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


class BackupIdGenerator:
    """``<base36 epoch ms>-<6 random base36 chars>``, never repeated in-process."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._millis: Optional[int] = None
        # only ids from the current millisecond can collide
        self._issued: set[str] = set()

    def __call__(self) -> str:
        while True:
            millis = int(self.clock() * 1000)
            if millis != self._millis:
                self._millis = millis
                self._issued.clear()
            suffix = "".join(secrets.choice(BASE36) for _ in range(6))
            backup_id = f"{to_base36(millis)}-{suffix}"
            if backup_id not in self._issued:
                self._issued.add(backup_id)
                return backup_id


class BackupManifestBuilder:
    def __init__(
        self,
        records: RecordStore,
        app_version: str,
        schema_version: str = "2.0",
        id_generator: Optional[BackupIdGenerator] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.records = records
        self.app_version = app_version
        self.schema_version = schema_version
        self.next_id = id_generator or BackupIdGenerator()
        self.now = now

    def _stamp(self, moment: Optional[datetime] = None) -> dict:
        return {
            "schemaVersion": self.schema_version,
            "appVersion": self.app_version,
            "timestamp": (moment or self.now()).astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            "backupId": self.next_id(),
        }

    def build_global(self, moment: Optional[datetime] = None) -> BackupManifest:
        current = self.records.session.current_user()
        extras = self.records.extras
        return BackupManifest(
            **self._stamp(moment),
            scope=BackupScope.all,
            userId=(current or {}).get("id"),
            currentUser=current,
            data=self.records.dump_all(),
            extras=extras.to_manifest(extras.entries()),
        )

    def build_for_user(self, user_id: str, moment: Optional[datetime] = None) -> BackupManifest:
        data = {}
        for name, rows in self.records.dump_all().items():
            field = "id" if name == "users" else USER_FK
            data[name] = [row for row in rows if row.get(field) == user_id]
        current = self.records.session.current_user()
        if not current or current.get("id") != user_id:
            current = next(iter(data["users"]), None)
        extras = self.records.extras
        return BackupManifest(
            **self._stamp(moment),
            scope=BackupScope.user,
            userId=user_id,
            currentUser=current,
            data=data,
            extras=extras.to_manifest(extras.for_user(user_id)),
        )
