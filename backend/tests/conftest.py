"""
Shared fixtures: an in-memory record store wired to a session, fast
password hashing, a real Fernet cipher and an in-memory stand-in for the
backup folder.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from cryptography.fernet import Fernet

from katanos.auth_utils import Pbkdf2Hasher
from katanos.credentials import CredentialStore
from katanos.crypto import FernetSecretCipher
from katanos.events import Diagnostics, NotificationChannel
from katanos.files import BackupFiles
from katanos.persistence import RecordStore, SnapshotChannel, SnapshotSink
from katanos.schemas import BackupFileInfo, FolderSelection, WriteResult
from katanos.secret_vault import SecretVault
from katanos.session import SessionManager
from katanos.store import InMemoryBackingStore

BACKUP_FOLDER = "/backups"


class FakeBackupFiles(BackupFiles):
    def __init__(self, writable: bool = True) -> None:
        self.writable = writable
        self.fail_writes = False
        self.undeletable: set[str] = set()
        self.files: dict[str, BackupFileInfo] = {}
        self.contents: dict[str, dict[str, Any]] = {}
        self.writes = 0
        self._mtime = 1_700_000_000.0

    def add_file(self, name: str, mtime: float, folder: str = BACKUP_FOLDER) -> str:
        path = f"{folder}/{name}"
        self.files[path] = BackupFileInfo(name=name, path=path, size=2, mtime=mtime)
        return path

    async def check_folder_writable(self, folder_path: str) -> bool:
        return self.writable

    async def write_backup_file(self, folder_path: str, file_name: str, data: dict[str, Any]) -> WriteResult:
        self.writes += 1
        if self.fail_writes:
            return WriteResult(success=False, error="disk error")
        self._mtime += 60
        path = f"{folder_path}/{file_name}"
        self.files[path] = BackupFileInfo(name=file_name, path=path, size=len(json.dumps(data)), mtime=self._mtime)
        self.contents[path] = data
        return WriteResult(success=True, path=path)

    async def list_backup_files(self, folder_path: str) -> list[BackupFileInfo]:
        return [info for path, info in self.files.items() if path.startswith(folder_path + "/")]

    async def delete_backup_file(self, path: str) -> bool:
        if path in self.undeletable:
            return False
        return self.files.pop(path, None) is not None

    async def select_backup_folder(self) -> FolderSelection:
        return FolderSelection(canceled=False, path=BACKUP_FOLDER)


class RecordingSink(SnapshotSink):
    def __init__(self) -> None:
        self.payloads: list[dict[str, Any]] = []

    async def save_snapshot(self, payload: dict[str, Any]) -> None:
        self.payloads.append(payload)


class FailingSink(SnapshotSink):
    async def save_snapshot(self, payload: dict[str, Any]) -> None:
        raise OSError("disk full")


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SteppingNow:
    """Returns a new UTC datetime, one minute later, on every call."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(minutes=1)
        return self.current


@pytest.fixture
def diagnostics():
    return Diagnostics()


@pytest.fixture
def notifications():
    return NotificationChannel()


@pytest.fixture
def backing():
    return InMemoryBackingStore()


@pytest.fixture
def session(backing):
    return SessionManager(backing)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def records(backing, session, notifications, diagnostics, clock):
    store = RecordStore(backing, session, notifications, diagnostics, SnapshotChannel(None, diagnostics), clock=clock)
    store.init()
    return store


@pytest.fixture
def cipher():
    return FernetSecretCipher(Fernet.generate_key())


@pytest.fixture
def vault(cipher, diagnostics):
    return SecretVault(cipher, diagnostics)


@pytest.fixture
def credentials(records, vault, session, diagnostics):
    return CredentialStore(records, vault, session, diagnostics, hasher=Pbkdf2Hasher(iterations=1_000))


@pytest.fixture
def backup_files():
    return FakeBackupFiles()
