import logging
import time
from typing import Callable, Optional

from ..events import Diagnostics
from ..files import BackupFiles
from ..schemas import BackupFileInfo, BackupSettings, RetentionMode, normalize_retention_value

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class RetentionPolicy:
    """Prunes old backup files after a successful backup.

    ``count`` keeps the newest N files; ``age`` keeps files modified in the
    last N days. Deletion is best effort: a file that cannot be removed is
    skipped and reported through diagnostics.
    """

    def __init__(
        self,
        files: Optional[BackupFiles],
        diagnostics: Diagnostics,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.files = files
        self.diagnostics = diagnostics
        self.now = now

    def select_for_deletion(
        self, files: list[BackupFileInfo], mode: RetentionMode, value: float
    ) -> list[BackupFileInfo]:
        newest_first = sorted(files, key=lambda f: f.mtime, reverse=True)
        value = normalize_retention_value(value)
        if mode == RetentionMode.count:
            return newest_first[max(int(value), 0):]
        cutoff = self.now() - value * SECONDS_PER_DAY
        return [f for f in newest_first if f.mtime < cutoff]

    async def apply(self, settings: BackupSettings) -> list[str]:
        folder_path = settings.folderPath
        if not folder_path or self.files is None:
            return []
        mode, value = settings.retentionMode, settings.retentionValue
        try:
            files = await self.files.list_backup_files(folder_path)
        except Exception as exc:
            logger.warning("could not list backups in %s: %s", folder_path, exc)
            return []

        deleted: list[str] = []
        for info in self.select_for_deletion(files, mode, value):
            try:
                removed = await self.files.delete_backup_file(info.path)
            except Exception as exc:
                self.diagnostics.record("DeleteFailed", "could not delete old backup", path=info.path, error=str(exc))
                continue
            if removed:
                deleted.append(info.path)
            else:
                self.diagnostics.record("DeleteFailed", "could not delete old backup", path=info.path)
        if deleted:
            logger.info("retention removed %d backup(s) from %s", len(deleted), folder_path)
        return deleted
