import json
import re

import pytest

from conftest import BACKUP_FOLDER, FakeBackupFiles, SteppingNow
from katanos.schemas import BackupInterval, ErrorCode, NotificationType
from katanos.services.backup import BackupService, interval_seconds
from katanos.services.manifest import BackupManifestBuilder
from katanos.services.retention import RetentionPolicy


def _service(records, credentials, notifications, diagnostics, files):
    builder = BackupManifestBuilder(records, "1.0.9")
    retention = RetentionPolicy(files, diagnostics)
    return BackupService(builder, credentials, retention, notifications, files, now=SteppingNow())


def _settings(**overrides):
    return {"enabled": True, "folderPath": BACKUP_FOLDER, "retentionMode": "count", "retentionValue": 10, **overrides}


def _stored_backup_settings(records, user_id):
    return next(u for u in records.users.all() if u["id"] == user_id)["backupSettings"]


class ExplodingFiles(FakeBackupFiles):
    async def check_folder_writable(self, folder_path):
        raise RuntimeError("bridge crashed")


class TestIntervals:
    def test_known_intervals(self):
        assert interval_seconds("30m") == 1800
        assert interval_seconds(BackupInterval.weekly) == 7 * 86400
        assert interval_seconds("monthly") == 30 * 86400

    def test_aliases_and_unknown(self):
        assert interval_seconds("hourly") == 3600
        assert interval_seconds("daily") == 86400
        assert interval_seconds("fortnightly") == 86400
        assert interval_seconds(None) == 86400

    def test_default_settings(self):
        defaults = BackupService.default_settings()
        assert defaults.enabled is False
        assert defaults.interval == BackupInterval.every_24h
        assert defaults.retentionValue == 10
        assert defaults.runOnStartup is True


class TestTriggerBackup:
    @pytest.mark.asyncio
    async def test_success_writes_manifest(self, records, credentials, notifications, diagnostics, backup_files):
        user = (await credentials.register("amy", "pw")).user
        service = _service(records, credentials, notifications, diagnostics, backup_files)

        result = await service.trigger_backup_now(user["id"], _settings())

        assert result.success
        assert re.fullmatch(
            r"katanos-backup-\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}_" + re.escape(user["id"][:6]) + r"\.json",
            result.fileName,
        )
        manifest = backup_files.contents[result.path]
        assert manifest["userId"] == user["id"]
        assert manifest["scope"] == "user"
        compact = json.dumps(manifest, ensure_ascii=False, separators=(",", ":"))
        assert result.sizeBytes == len(compact.encode("utf-8"))

        stored = _stored_backup_settings(records, user["id"])
        assert stored["lastBackupStatus"] == "success"
        assert stored["lastBackupAt"] == result.timestamp
        assert manifest["timestamp"] == result.timestamp
        notification = notifications.drain()[-1]
        assert notification.type == NotificationType.success
        assert notification.silent is True

    @pytest.mark.asyncio
    async def test_unwritable_folder_never_writes(self, records, credentials, notifications, diagnostics):
        files = FakeBackupFiles(writable=False)
        user = (await credentials.register("bea", "pw")).user
        service = _service(records, credentials, notifications, diagnostics, files)

        result = await service.trigger_backup_now(user["id"], _settings())

        assert not result.success
        assert result.errorCode == ErrorCode.folder_not_writable
        assert files.writes == 0
        assert _stored_backup_settings(records, user["id"])["lastBackupStatus"] == "failed"
        notification = notifications.drain()[-1]
        assert notification.type == NotificationType.warning
        assert notification.title == "Error"

    @pytest.mark.asyncio
    async def test_missing_folder(self, records, credentials, notifications, diagnostics, backup_files):
        user = (await credentials.register("cid", "pw")).user
        service = _service(records, credentials, notifications, diagnostics, backup_files)
        result = await service.trigger_backup_now(user["id"], _settings(folderPath="  "))
        assert result.errorCode == ErrorCode.no_folder
        assert backup_files.writes == 0

    @pytest.mark.asyncio
    async def test_write_failure(self, records, credentials, notifications, diagnostics, backup_files):
        backup_files.fail_writes = True
        user = (await credentials.register("dan", "pw")).user
        service = _service(records, credentials, notifications, diagnostics, backup_files)
        result = await service.trigger_backup_now(user["id"], _settings())
        assert result.errorCode == ErrorCode.write_failed
        assert result.error == "disk error"
        assert _stored_backup_settings(records, user["id"])["lastBackupStatus"] == "failed"

    @pytest.mark.asyncio
    async def test_retention_runs_after_write(self, records, credentials, notifications, diagnostics, backup_files):
        user = (await credentials.register("eve", "pw")).user
        service = _service(records, credentials, notifications, diagnostics, backup_files)

        await service.trigger_backup_now(user["id"], _settings(retentionValue=1))
        second = await service.trigger_backup_now(user["id"], _settings(retentionValue=1))

        assert list(backup_files.files) == [second.path]

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_result(self, records, credentials, notifications, diagnostics):
        user = (await credentials.register("fay", "pw")).user
        service = _service(records, credentials, notifications, diagnostics, ExplodingFiles())
        result = await service.trigger_backup_now(user["id"], _settings())
        assert not result.success
        assert result.error == "bridge crashed"
        assert notifications.drain()[-1].message == "Backup failed."

    @pytest.mark.asyncio
    async def test_without_file_access_backup_is_kept_for_download(self, records, credentials, notifications, diagnostics):
        user = (await credentials.register("gus", "pw")).user
        service = _service(records, credentials, notifications, diagnostics, None)

        result = await service.trigger_backup_now(user["id"], _settings())

        assert result.success
        assert result.path is None
        pending = service.pending_download
        assert pending.file_name == result.fileName
        assert json.loads(pending.content)["userId"] == user["id"]
        assert result.sizeBytes == len(pending.content)


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_newest_first(self, records, credentials, notifications, diagnostics, backup_files):
        backup_files.add_file("katanos-backup-old.json", mtime=1.0)
        backup_files.add_file("katanos-backup-new.json", mtime=2.0)
        service = _service(records, credentials, notifications, diagnostics, backup_files)
        history = await service.get_backup_history(BACKUP_FOLDER)
        assert [info.name for info in history] == ["katanos-backup-new.json", "katanos-backup-old.json"]
        assert await service.get_backup_history("") == []

    @pytest.mark.asyncio
    async def test_select_folder(self, records, credentials, notifications, diagnostics, backup_files):
        assert await _service(records, credentials, notifications, diagnostics, backup_files).select_backup_folder() == BACKUP_FOLDER
        assert await _service(records, credentials, notifications, diagnostics, None).select_backup_folder() is None
