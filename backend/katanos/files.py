import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .schemas import BackupFileInfo, FolderSelection, WriteResult

logger = logging.getLogger(__name__)

BACKUP_FILE_PREFIX = "katanos-backup-"
BACKUP_FILE_SUFFIX = ".json"
WRITE_PROBE_NAME = ".katanos_write_test"


def is_backup_file_name(name: str) -> bool:
    return name.startswith(BACKUP_FILE_PREFIX) and name.endswith(BACKUP_FILE_SUFFIX)


class BackupFiles:
    """File-system collaborator used by backups and retention."""

    async def check_folder_writable(self, folder_path: str) -> bool:
        raise NotImplementedError

    async def write_backup_file(self, folder_path: str, file_name: str, data: dict[str, Any]) -> WriteResult:
        raise NotImplementedError

    async def list_backup_files(self, folder_path: str) -> list[BackupFileInfo]:
        raise NotImplementedError

    async def delete_backup_file(self, path: str) -> bool:
        raise NotImplementedError

    async def select_backup_folder(self) -> FolderSelection:
        raise NotImplementedError


class LocalBackupFiles(BackupFiles):
    def __init__(self, default_folder: Optional[str] = None) -> None:
        self.default_folder = default_folder

    @staticmethod
    def _probe(folder: Path) -> bool:
        try:
            folder.mkdir(parents=True, exist_ok=True)
            probe = folder / WRITE_PROBE_NAME
            probe.write_text("test", encoding="utf-8")
            probe.unlink()
            return True
        except OSError:
            return False

    async def check_folder_writable(self, folder_path: str) -> bool:
        return await asyncio.to_thread(self._probe, Path(folder_path))

    @staticmethod
    def _write_atomic(folder: Path, file_name: str, content: str) -> str:
        folder.mkdir(parents=True, exist_ok=True)
        final_path = folder / file_name
        temp_path = folder / f"{file_name}.tmp"
        try:
            temp_path.write_text(content, encoding="utf-8")
            os.replace(temp_path, final_path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
        return str(final_path)

    async def write_backup_file(self, folder_path: str, file_name: str, data: dict[str, Any]) -> WriteResult:
        content = json.dumps(data, ensure_ascii=False, indent=2)
        try:
            path = await asyncio.to_thread(self._write_atomic, Path(folder_path), file_name, content)
        except OSError as exc:
            logger.warning("backup write failed in %s: %s", folder_path, exc)
            return WriteResult(success=False, error=str(exc))
        return WriteResult(success=True, path=path)

    @staticmethod
    def _scan(folder: Path) -> list[BackupFileInfo]:
        results = []
        try:
            names = os.listdir(folder)
        except OSError:
            return []
        for name in names:
            if not is_backup_file_name(name):
                continue
            path = folder / name
            try:
                stat = path.stat()
            except OSError:
                continue
            results.append(BackupFileInfo(name=name, path=str(path), size=stat.st_size, mtime=stat.st_mtime))
        return results

    async def list_backup_files(self, folder_path: str) -> list[BackupFileInfo]:
        return await asyncio.to_thread(self._scan, Path(folder_path))

    async def delete_backup_file(self, path: str) -> bool:
        target = Path(path)
        # only ever delete our own backup files
        if not is_backup_file_name(target.name):
            return False
        try:
            await asyncio.to_thread(target.unlink)
        except OSError:
            return False
        return True

    async def select_backup_folder(self) -> FolderSelection:
        if not self.default_folder:
            return FolderSelection(canceled=True)
        return FolderSelection(canceled=False, path=self.default_folder)
