from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..credentials import CredentialStore
from ..events import NotificationChannel
from ..files import BACKUP_FILE_PREFIX, BackupFiles
from ..schemas import (
    BackupFileInfo,
    BackupInterval,
    BackupResult,
    BackupSettings,
    BackupStatus,
    ErrorCode,
    NotificationType,
    normalize_interval,
)
from .manifest import BackupManifestBuilder
from .retention import RetentionPolicy

logger = logging.getLogger(__name__)

INTERVAL_SECONDS: dict[BackupInterval, int] = {
    BackupInterval.every_30m: 30 * 60,
    BackupInterval.every_1h: 60 * 60,
    BackupInterval.every_6h: 6 * 60 * 60,
    BackupInterval.every_12h: 12 * 60 * 60,
    BackupInterval.every_24h: 24 * 60 * 60,
    BackupInterval.weekly: 7 * 24 * 60 * 60,
    BackupInterval.monthly: 30 * 24 * 60 * 60,
}

FAILURE_MESSAGES = {
    "backupFolderNotWritable": "The backup folder is not writable.",
    "backupWriteFailed": "The backup file could not be written.",
    "backupError": "Backup failed.",
}


def interval_seconds(interval: Any) -> int:
    return INTERVAL_SECONDS[normalize_interval(interval)]


def iso_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def backup_file_name(moment: datetime, user_id: str) -> str:
    stamp = moment.astimezone().strftime("%Y-%m-%d_%H-%M-%S")
    return f"{BACKUP_FILE_PREFIX}{stamp}_{user_id[:6]}.json"


@dataclass
class PendingDownload:
    file_name: str
    content: bytes


class BackupService:
    def __init__(
        self,
        builder: BackupManifestBuilder,
        credentials: CredentialStore,
        retention: RetentionPolicy,
        notifications: NotificationChannel,
        files: Optional[BackupFiles],
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.builder = builder
        self.credentials = credentials
        self.retention = retention
        self.notifications = notifications
        self.files = files
        self.now = now
        self.pending_download: Optional[PendingDownload] = None

    @staticmethod
    def default_settings() -> BackupSettings:
        return BackupSettings()

    async def trigger_backup_now(self, user_id: str, settings: BackupSettings | dict) -> BackupResult:
        if not isinstance(settings, BackupSettings):
            settings = BackupSettings.model_validate(settings or {})
        moment = self.now()
        stamp = iso_timestamp(moment)

        if not settings.folderPath:
            return BackupResult(success=False, timestamp=stamp, error="No backup folder configured", errorCode=ErrorCode.no_folder)

        try:
            if self.files is not None and not await self.files.check_folder_writable(settings.folderPath):
                await self.update_backup_status(user_id, settings, stamp, BackupStatus.failed)
                self.notify_failure("backupFolderNotWritable")
                return BackupResult(
                    success=False, timestamp=stamp, error="Folder not writable", errorCode=ErrorCode.folder_not_writable
                )

            manifest = self.builder.build_for_user(user_id, moment).model_dump(mode="json")
            file_name = backup_file_name(moment, user_id)

            if self.files is None:
                content = json.dumps(manifest, ensure_ascii=False, indent=2).encode("utf-8")
                self.pending_download = PendingDownload(file_name=file_name, content=content)
                await self.update_backup_status(user_id, settings, stamp, BackupStatus.success)
                logger.info("no file collaborator; backup %s kept for download", file_name)
                return BackupResult(success=True, timestamp=stamp, fileName=file_name, sizeBytes=len(content))

            written = await self.files.write_backup_file(settings.folderPath, file_name, manifest)
            if not written.success:
                await self.update_backup_status(user_id, settings, stamp, BackupStatus.failed)
                self.notify_failure("backupWriteFailed")
                return BackupResult(
                    success=False, timestamp=stamp, error=written.error or "Write failed", errorCode=ErrorCode.write_failed
                )

            await self.retention.apply(settings)
            await self.update_backup_status(user_id, settings, stamp, BackupStatus.success)
            self.notify_success()
            size = len(json.dumps(manifest, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))
            logger.info("backup written to %s (%d bytes)", written.path, size)
            return BackupResult(success=True, timestamp=stamp, path=written.path, fileName=file_name, sizeBytes=size)
        except Exception as exc:
            logger.exception("backup run failed")
            await self.update_backup_status(user_id, settings, stamp, BackupStatus.failed)
            self.notify_failure("backupError")
            return BackupResult(success=False, timestamp=stamp, error=str(exc) or "Unknown error")

    async def update_backup_status(self, user_id: str, settings: BackupSettings, stamp: str, status: BackupStatus) -> None:
        updated = settings.model_copy(update={"lastBackupAt": stamp, "lastBackupStatus": status})
        try:
            await self.credentials.update_settings(user_id, {"backupSettings": updated.model_dump(mode="json")})
        except Exception as exc:
            logger.warning("failed to persist backup status: %s", exc)

    def notify_success(self) -> None:
        self.notifications.emit(
            title="Backup exported successfully!",
            message="Backup completed successfully!",
            type=NotificationType.success,
            silent=True,
        )

    def notify_failure(self, message_key: str) -> None:
        self.notifications.emit(
            title="Error",
            message=FAILURE_MESSAGES.get(message_key, FAILURE_MESSAGES["backupError"]),
            type=NotificationType.warning,
        )

    async def get_backup_history(self, folder_path: str) -> list[BackupFileInfo]:
        if not folder_path or self.files is None:
            return []
        try:
            files = await self.files.list_backup_files(folder_path)
        except Exception as exc:
            logger.warning("could not list backups: %s", exc)
            return []
        return sorted(files, key=lambda f: f.mtime, reverse=True)

    async def select_backup_folder(self) -> Optional[str]:
        if self.files is None:
            return None
        selection = await self.files.select_backup_folder()
        if selection.canceled or not selection.path:
            return None
        return selection.path
