import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Body, FastAPI, File, HTTPException, Request, Response, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth_utils import Pbkdf2Hasher
from .config import Settings, settings
from .credentials import CredentialStore
from .crypto import load_cipher
from .events import Diagnostics, NotificationChannel
from .files import BackupFiles, LocalBackupFiles
from .persistence import (
    COLLECTION_KEYS,
    GLOBAL_EXTRA_KEYS,
    USER_FK,
    FileSnapshotSink,
    RecordStore,
    SnapshotChannel,
)
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    BackupFileInfo,
    BackupResult,
    BackupRunRequest,
    BackupScope,
    BackupSettings,
    ErrorCode,
    ExtraValueRequest,
    HealthResponse,
    LockPinVerifyRequest,
    LockPinVerifyResponse,
    LoginRequest,
    Notification,
    RegisterRequest,
    ResetPasswordRequest,
    RestoreResult,
)
from .secret_vault import SecretVault
from .session import SessionManager
from .services.backup import BackupService
from .services.manifest import BackupManifestBuilder
from .services.restore import RestoreEngine
from .services.retention import RetentionPolicy
from .services.scheduler import BackupScheduler
from .store import BackingStore, get_backing_store

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

PRIVATE_USER_FIELDS = ("password", "securityAnswer", "lockPin")
SERVICE_COLLECTIONS = ("users", "vault")

ERROR_STATUS = {
    ErrorCode.not_found: status.HTTP_404_NOT_FOUND,
    ErrorCode.already_exists: status.HTTP_409_CONFLICT,
    ErrorCode.invalid_credentials: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.invalid_answer: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.missing_security_question: status.HTTP_400_BAD_REQUEST,
}


@dataclass
class Services:
    config: Settings
    backing: BackingStore
    diagnostics: Diagnostics
    notifications: NotificationChannel
    session: SessionManager
    snapshots: SnapshotChannel
    records: RecordStore
    vault: SecretVault
    credentials: CredentialStore
    files: Optional[BackupFiles]
    builder: BackupManifestBuilder
    retention: RetentionPolicy
    backup: BackupService
    scheduler: BackupScheduler
    restore: RestoreEngine


def build_services(config: Settings, backing: Optional[BackingStore] = None) -> Services:
    backing = backing or get_backing_store(config)
    diagnostics = Diagnostics()
    notifications = NotificationChannel()
    session = SessionManager(backing)
    sink = FileSnapshotSink(config.data_dir) if config.snapshots_enabled else None
    snapshots = SnapshotChannel(sink, diagnostics)
    records = RecordStore(backing, session, notifications, diagnostics, snapshots)
    records.init()

    vault = SecretVault(load_cipher(config.secret_key_file), diagnostics)
    credentials = CredentialStore(records, vault, session, diagnostics, hasher=Pbkdf2Hasher())
    files = LocalBackupFiles(default_folder=config.backup_dir or None)
    builder = BackupManifestBuilder(records, config.app_version, config.schema_version)
    retention = RetentionPolicy(files, diagnostics)
    backup = BackupService(builder, credentials, retention, notifications, files)
    return Services(
        config=config,
        backing=backing,
        diagnostics=diagnostics,
        notifications=notifications,
        session=session,
        snapshots=snapshots,
        records=records,
        vault=vault,
        credentials=credentials,
        files=files,
        builder=builder,
        retention=retention,
        backup=backup,
        scheduler=BackupScheduler(backup),
        restore=RestoreEngine(records),
    )


app = FastAPI(
    title="Katanos API",
    version=settings.app_version,
    description="Local persistence, authentication and backup/restore for Katanos.",
)
services = build_services(settings)


def build_error_response(details: list[ApiErrorDetail], message: str = "Invalid request payload") -> JSONResponse:
    payload = ApiErrorResponse(
        error=ApiErrorPayload(code="VALIDATION_ERROR", message=message, details=details)
    )
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


@app.on_event("startup")
async def start_backup_scheduler() -> None:
    user = services.session.current_user()
    if user:
        services.scheduler.start_for_user(user)


@app.on_event("shutdown")
async def stop_backup_scheduler() -> None:
    services.scheduler.stop()
    await services.scheduler.wait_idle()
    await services.snapshots.drain()


def _public_user(user: dict[str, Any]) -> dict[str, Any]:
    public = {k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS}
    public["hasPassword"] = bool(user.get("password"))
    public["hasLockPin"] = bool(user.get("lockPin"))
    return public


def _raise_for(error: ErrorCode) -> None:
    raise HTTPException(status_code=ERROR_STATUS.get(error, status.HTTP_400_BAD_REQUEST), detail=error.value)


def _require_user() -> dict[str, Any]:
    user = services.session.current_user()
    if not user:
        raise HTTPException(status_code=401, detail="no active user")
    return user


def _require_collection(name: str):
    if name in SERVICE_COLLECTIONS or name not in COLLECTION_KEYS:
        raise HTTPException(status_code=404, detail=f"unknown collection: {name}")
    return services.records.collection(name)


def _backup_settings(user: dict[str, Any]) -> BackupSettings:
    return BackupSettings.model_validate(user.get("backupSettings") or {})


@app.get("/api/v1/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", storageBackend=services.config.storage_backend)


@app.post("/api/v1/auth/register", status_code=201)
async def auth_register(payload: RegisterRequest) -> dict[str, Any]:
    result = await services.credentials.register(
        payload.username,
        payload.password,
        language=payload.language,
        security_question_id=payload.securityQuestionId,
        security_answer=payload.securityAnswer,
    )
    if not result.ok:
        _raise_for(result.error)
    services.scheduler.start_for_user(result.user)
    return {"user": _public_user(result.user)}


@app.post("/api/v1/auth/login")
async def auth_login(payload: LoginRequest) -> dict[str, Any]:
    result = await services.credentials.login(payload.username, payload.password)
    if not result.ok:
        _raise_for(result.error)
    services.scheduler.start_for_user(result.user)
    return {"user": _public_user(result.user)}


@app.post("/api/v1/auth/logout")
async def auth_logout() -> dict[str, bool]:
    services.scheduler.stop()
    services.credentials.logout()
    return {"ok": True}


@app.get("/api/v1/auth/me")
async def auth_me() -> dict[str, Any]:
    return {"user": _public_user(_require_user())}


@app.get("/api/v1/auth/security-question")
async def auth_security_question(username: str) -> dict[str, str]:
    result = await services.credentials.get_security_question(username)
    if result.error:
        _raise_for(result.error)
    return {"questionId": result.questionId}


@app.post("/api/v1/auth/reset-password")
async def auth_reset_password(payload: ResetPasswordRequest) -> dict[str, bool]:
    result = await services.credentials.reset_password(payload.username, payload.answer, payload.newPassword)
    if not result.ok:
        _raise_for(result.error)
    return {"ok": True}


@app.put("/api/v1/users/me/settings")
async def update_my_settings(changes: dict[str, Any]) -> dict[str, Any]:
    user = _require_user()
    result = await services.credentials.update_settings(user["id"], changes)
    if not result.ok:
        _raise_for(result.error)
    if "backupSettings" in changes:
        services.scheduler.start_for_user(result.user)
    return {"user": _public_user(result.user)}


@app.get("/api/v1/users/me/api-key")
async def get_my_api_key() -> dict[str, str]:
    user = _require_user()
    return {"apiKey": await services.vault.decrypt(user.get("apiKey"))}


@app.post("/api/v1/users/me/lock/verify", response_model=LockPinVerifyResponse)
async def verify_lock_pin(payload: LockPinVerifyRequest) -> LockPinVerifyResponse:
    user = _require_user()
    valid = await services.credentials.verify_lock_pin(user.get("lockPin"), payload.pin)
    return LockPinVerifyResponse(valid=valid)


@app.delete("/api/v1/users/me")
async def delete_my_account() -> dict[str, bool]:
    user = _require_user()
    services.scheduler.stop()
    deleted = await services.credentials.delete_user_data(user["id"])
    return {"deleted": deleted}


@app.get("/api/v1/collections/{name}")
async def list_items(name: str) -> list[dict[str, Any]]:
    user = _require_user()
    return await _require_collection(name).list(user["id"])


@app.post("/api/v1/collections/{name}", status_code=201)
async def create_item(name: str, item: dict[str, Any]) -> dict[str, Any]:
    user = _require_user()
    return await _require_collection(name).add({**item, USER_FK: user["id"]})


@app.put("/api/v1/collections/{name}")
async def replace_items(name: str, items: list[dict[str, Any]] = Body(...)) -> list[dict[str, Any]]:
    user = _require_user()
    collection = _require_collection(name)
    await collection.replace_for_user(user["id"], items)
    return await collection.list(user["id"])


@app.post("/api/v1/collections/{name}/bulk", status_code=201)
async def create_items(name: str, items: list[dict[str, Any]] = Body(...)) -> list[dict[str, Any]]:
    user = _require_user()
    return await _require_collection(name).add_many([{**item, USER_FK: user["id"]} for item in items])


@app.post("/api/v1/collections/{name}/save")
async def save_item(name: str, item: dict[str, Any]) -> dict[str, Any]:
    user = _require_user()
    collection = _require_collection(name)
    existing = await collection.get(item["id"]) if item.get("id") else None
    if existing is not None and existing.get(USER_FK) != user["id"]:
        raise HTTPException(status_code=404, detail="item not found")
    return await collection.upsert({**item, USER_FK: user["id"]})


async def _owned_item(name: str, item_id: str) -> tuple[Any, dict[str, Any]]:
    user = _require_user()
    collection = _require_collection(name)
    item = await collection.get(item_id)
    if item is None or item.get(USER_FK) != user["id"]:
        raise HTTPException(status_code=404, detail="item not found")
    return collection, item


@app.get("/api/v1/collections/{name}/{item_id}")
async def get_item(name: str, item_id: str) -> dict[str, Any]:
    _, item = await _owned_item(name, item_id)
    return item


@app.put("/api/v1/collections/{name}/{item_id}")
async def update_item(name: str, item_id: str, updates: dict[str, Any]) -> dict[str, Any]:
    collection, item = await _owned_item(name, item_id)
    updates = {k: v for k, v in updates.items() if k != USER_FK}
    return await collection.update(item_id, updates)


@app.delete("/api/v1/collections/{name}/{item_id}", status_code=204)
async def delete_item(name: str, item_id: str) -> Response:
    collection, _ = await _owned_item(name, item_id)
    await collection.delete(item_id)
    return Response(status_code=204)


@app.post("/api/v1/collections/{name}/{item_id}/favorite")
async def toggle_item_favorite(name: str, item_id: str) -> dict[str, Any]:
    collection, _ = await _owned_item(name, item_id)
    await collection.toggle_favorite(item_id)
    return await collection.get(item_id)


@app.post("/api/v1/habits/{habit_id}/logs/{day}")
async def toggle_habit_log(habit_id: str, day: str) -> dict[str, Any]:
    collection, _ = await _owned_item("habits", habit_id)
    await collection.toggle_habit_log(habit_id, day)
    return await collection.get(habit_id)


@app.post("/api/v1/habits/{habit_id}/skips/{day}")
async def toggle_habit_skip(habit_id: str, day: str) -> dict[str, Any]:
    collection, _ = await _owned_item("habits", habit_id)
    await collection.toggle_habit_skip(habit_id, day)
    return await collection.get(habit_id)


@app.get("/api/v1/vault")
async def get_vault() -> dict[str, Any]:
    user = _require_user()
    vault = await services.records.vault.get_for(user["id"])
    if vault is None:
        raise HTTPException(status_code=404, detail="vault not found")
    return vault


@app.put("/api/v1/vault")
async def save_vault(vault: dict[str, Any]) -> dict[str, Any]:
    user = _require_user()
    return await services.records.vault.save_for(user["id"], {**vault, USER_FK: user["id"]})


@app.delete("/api/v1/vault", status_code=204)
async def delete_vault() -> Response:
    user = _require_user()
    await services.records.vault.delete_for(user["id"])
    return Response(status_code=204)


def _extras_owner(user: dict[str, Any], namespace: str, key: str) -> Optional[str]:
    ns_def = services.records.extras.namespaces.get(namespace)
    if ns_def is None:
        raise HTTPException(status_code=404, detail=f"unknown extras namespace: {namespace}")
    existing = services.records.extras.get(namespace, key)
    if existing is not None and existing.owner not in (None, user["id"]):
        raise HTTPException(status_code=404, detail="extra not found")
    if not ns_def.per_user and key in GLOBAL_EXTRA_KEYS:
        return None
    return user["id"]


@app.get("/api/v1/extras")
async def list_extras() -> dict[str, dict[str, Any]]:
    user = _require_user()
    extras = services.records.extras
    return extras.to_manifest(extras.for_user(user["id"]))


@app.put("/api/v1/extras/{namespace}/{key}")
async def put_extra(namespace: str, key: str, payload: ExtraValueRequest) -> dict[str, Any]:
    user = _require_user()
    owner = _extras_owner(user, namespace, key)
    entry = services.records.extras.put(namespace, key, payload.value, owner=owner)
    return {"namespace": entry.namespace, "key": entry.key, "value": entry.value}


@app.delete("/api/v1/extras/{namespace}/{key}", status_code=204)
async def delete_extra(namespace: str, key: str) -> Response:
    user = _require_user()
    _extras_owner(user, namespace, key)
    if not services.records.extras.remove(namespace, key):
        raise HTTPException(status_code=404, detail="extra not found")
    return Response(status_code=204)


@app.post("/api/v1/backup/run-now", response_model=BackupResult)
async def run_backup_now(payload: Optional[BackupRunRequest] = None) -> BackupResult:
    user = _require_user()
    backup_settings = payload.settings if payload and payload.settings else _backup_settings(user)
    return await services.backup.trigger_backup_now(user["id"], backup_settings)


@app.get("/api/v1/backup/history", response_model=list[BackupFileInfo])
async def backup_history(folderPath: Optional[str] = None) -> list[BackupFileInfo]:
    user = _require_user()
    return await services.backup.get_backup_history(folderPath or _backup_settings(user).folderPath)


@app.get("/api/v1/backup/export")
async def export_backup(scope: BackupScope = BackupScope.user) -> dict[str, Any]:
    user = _require_user()
    if scope == BackupScope.all:
        manifest = services.builder.build_global()
    else:
        manifest = services.builder.build_for_user(user["id"])
    return manifest.model_dump(mode="json")


@app.get("/api/v1/backup/download")
async def download_backup() -> Response:
    user = _require_user()
    pending = services.backup.pending_download
    if pending is not None:
        services.backup.pending_download = None
        file_name, content = pending.file_name, pending.content
    else:
        manifest = services.builder.build_for_user(user["id"]).model_dump(mode="json")
        file_name = f"katanos-backup-{user['id'][:6]}.json"
        content = json.dumps(manifest, ensure_ascii=False, indent=2).encode("utf-8")
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename={file_name}"},
    )


@app.post("/api/v1/backup/import", response_model=RestoreResult)
async def import_backup(payload: dict[str, Any]) -> RestoreResult:
    _require_user()
    return await services.restore.restore(payload)


@app.post("/api/v1/backup/import-file", response_model=RestoreResult)
async def import_backup_file(file: UploadFile = File(...)) -> RestoreResult:
    _require_user()
    if not (file.filename or "").lower().endswith(".json"):
        raise HTTPException(status_code=400, detail="backup file must be JSON")
    content = await file.read()
    try:
        payload = json.loads(content.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="backup must be a JSON object")
    return await services.restore.restore(payload)


@app.post("/api/v1/backup/select-folder")
async def select_backup_folder() -> dict[str, Optional[str]]:
    _require_user()
    return {"folderPath": await services.backup.select_backup_folder()}


@app.post("/api/v1/backup/retention")
async def apply_retention() -> dict[str, list[str]]:
    user = _require_user()
    return {"deleted": await services.retention.apply(_backup_settings(user))}


@app.get("/api/v1/notifications", response_model=list[Notification])
async def list_notifications() -> list[Notification]:
    return services.notifications.drain()


@app.get("/api/v1/debug/state")
async def debug_state() -> dict[str, Any]:
    return {
        "counts": services.records.debug_counts(),
        "currentUserId": services.session.current_user_id(),
        "schedulerRunning": services.scheduler.is_running(),
        "diagnostics": services.diagnostics.codes(),
    }
