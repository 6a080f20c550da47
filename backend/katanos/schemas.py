import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BackupInterval(str, Enum):
    every_30m = "30m"
    every_1h = "1h"
    every_6h = "6h"
    every_12h = "12h"
    every_24h = "24h"
    weekly = "weekly"
    monthly = "monthly"


class RetentionMode(str, Enum):
    count = "count"
    age = "age"


class BackupStatus(str, Enum):
    success = "success"
    failed = "failed"


class BackupScope(str, Enum):
    user = "user"
    all = "all"


class NotificationType(str, Enum):
    success = "success"
    warning = "warning"
    error = "error"
    info = "info"


class ErrorCode(str, Enum):
    not_found = "NotFound"
    already_exists = "AlreadyExists"
    invalid_credentials = "InvalidCredentials"
    missing_security_question = "MissingSecurityQuestion"
    invalid_answer = "InvalidAnswer"
    no_folder = "NoFolder"
    folder_not_writable = "FolderNotWritable"
    write_failed = "WriteFailed"
    storage_quota_exceeded = "StorageQuotaExceeded"
    crypto_unavailable = "CryptoUnavailable"
    unbound = "Unbound"


INTERVAL_ALIASES = {"hourly": "1h", "daily": "24h"}
DEFAULT_RETENTION_VALUE = 10


def normalize_interval(value: Any) -> BackupInterval:
    raw = value.value if isinstance(value, BackupInterval) else str(value or "").strip()
    raw = INTERVAL_ALIASES.get(raw, raw)
    try:
        return BackupInterval(raw)
    except ValueError:
        return BackupInterval.every_24h


def normalize_retention_value(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return float(DEFAULT_RETENTION_VALUE)
    if not math.isfinite(number):
        return float(DEFAULT_RETENTION_VALUE)
    return number


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class BackupSettings(BaseModel):
    enabled: bool = False
    folderPath: str = ""
    interval: BackupInterval = BackupInterval.every_24h
    retentionMode: RetentionMode = RetentionMode.count
    retentionValue: float = DEFAULT_RETENTION_VALUE
    runOnStartup: bool = True
    lastBackupAt: Optional[str] = None
    lastBackupStatus: Optional[BackupStatus] = None

    @field_validator("folderPath", mode="before")
    @classmethod
    def validate_folder(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("interval", mode="before")
    @classmethod
    def validate_interval(cls, value: Any) -> BackupInterval:
        return normalize_interval(value)

    @field_validator("retentionMode", mode="before")
    @classmethod
    def validate_retention_mode(cls, value: Any) -> str:
        # older profiles stored the age rule as "days"
        if value in (None, ""):
            return RetentionMode.count.value
        if value == "days":
            return RetentionMode.age.value
        return value

    @field_validator("retentionValue", mode="before")
    @classmethod
    def validate_retention_value(cls, value: Any) -> float:
        return normalize_retention_value(value)


class BackupFileInfo(BaseModel):
    name: str
    path: str
    size: int
    mtime: float


class BackupManifest(BaseModel):
    schemaVersion: str
    appVersion: str
    timestamp: str
    backupId: str
    scope: BackupScope
    userId: Optional[str] = None
    currentUser: Optional[dict[str, Any]] = None
    data: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    extras: dict[str, dict[str, Any]] = Field(default_factory=dict)


class BackupResult(BaseModel):
    success: bool
    timestamp: str
    path: Optional[str] = None
    fileName: Optional[str] = None
    error: Optional[str] = None
    errorCode: Optional[ErrorCode] = None
    sizeBytes: Optional[int] = None


class WriteResult(BaseModel):
    success: bool
    path: Optional[str] = None
    error: Optional[str] = None


class FolderSelection(BaseModel):
    canceled: bool
    path: Optional[str] = None


class CryptoResult(BaseModel):
    ok: bool
    value: Optional[str] = None
    error: Optional[str] = None


class Notification(BaseModel):
    title: str
    message: str
    type: NotificationType
    silent: bool = False
    duration: Optional[int] = None
    createdAt: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RestoreResult(BaseModel):
    scope: BackupScope
    userId: Optional[str] = None
    collections: dict[str, int] = Field(default_factory=dict)
    skippedRows: int = 0
    extrasRestored: int = 0


class AuthResult(BaseModel):
    user: Optional[dict[str, Any]] = None
    error: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SecurityQuestionResult(BaseModel):
    questionId: Optional[str] = None
    error: Optional[ErrorCode] = None


class ResetPasswordResult(BaseModel):
    ok: bool = False
    error: Optional[ErrorCode] = None


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str
    storageBackend: str


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: Optional[str] = Field(default=None, max_length=128)
    language: str = "it"
    securityQuestionId: Optional[str] = None
    securityAnswer: Optional[str] = None

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("username must not be blank")
        return v


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: Optional[str] = Field(default=None, max_length=128)


class ResetPasswordRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    answer: str
    newPassword: str = Field(min_length=1, max_length=128)


class LockPinVerifyRequest(BaseModel):
    pin: str


class LockPinVerifyResponse(BaseModel):
    valid: bool


class BackupRunRequest(BaseModel):
    settings: Optional[BackupSettings] = None



class ExtraValueRequest(BaseModel):
    value: Any = None
