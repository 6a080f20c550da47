from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import math
import secrets
from typing import Any, Optional
from uuid import uuid4

from .auth_utils import Pbkdf2Hasher, is_hashed_value, normalize_pin, normalize_security_answer
from .events import Diagnostics
from .persistence import RecordStore
from .schemas import AuthResult, ErrorCode, ResetPasswordResult, SecurityQuestionResult
from .secret_vault import SecretVault
from .session import SessionManager

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_MINUTES = 5
AVATAR_COLORS = ["#1d4ed8", "#0f766e", "#b45309", "#9333ea", "#be185d", "#0ea5e9", "#16a34a", "#dc2626"]


def build_avatar_data_uri(name: str) -> str:
    parts = (name or "").split()
    if not parts:
        initials = "?"
    elif len(parts) == 1:
        initials = parts[0][:2].upper()
    else:
        initials = (parts[0][0] + parts[-1][0]).upper()
    color = AVATAR_COLORS[int(hashlib.sha256((name or "").encode("utf-8")).hexdigest(), 16) % len(AVATAR_COLORS)]
    svg = (
        '<svg xmlns="http://www.w3.org/2000/svg" width="128" height="128" viewBox="0 0 128 128">'
        f'<rect width="128" height="128" fill="{color}"/>'
        '<text x="50%" y="50%" dominant-baseline="middle" text-anchor="middle" '
        'font-family="Inter, Arial, sans-serif" font-size="56" fill="#ffffff" font-weight="600">'
        f"{initials}</text></svg>"
    )
    return "data:image/svg+xml;base64," + base64.b64encode(svg.encode("utf-8")).decode("ascii")


def _valid_lock_timeout(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) and value > 0


def apply_user_defaults(user: dict[str, Any]) -> dict[str, Any]:
    """Backfill settings that older profiles were created without."""
    user = dict(user)
    user["currency"] = user.get("currency") or "EUR"
    user["language"] = user.get("language") or "it"
    user["notificationAdvance"] = user.get("notificationAdvance") or 30
    if not isinstance(user.get("clockUse12h"), bool):
        user["clockUse12h"] = False
    if not user.get("theme"):
        user["theme"] = user.get("wallpaper") or "default"
    if not isinstance(user.get("lockEnabled"), bool):
        user["lockEnabled"] = False
    if not _valid_lock_timeout(user.get("lockTimeoutMinutes")):
        user["lockTimeoutMinutes"] = DEFAULT_LOCK_TIMEOUT_MINUTES
    return user


class CredentialStore:
    def __init__(
        self,
        records: RecordStore,
        vault: SecretVault,
        session: SessionManager,
        diagnostics: Diagnostics,
        hasher: Optional[Pbkdf2Hasher] = None,
    ) -> None:
        self.records = records
        self.vault = vault
        self.session = session
        self.diagnostics = diagnostics
        self.hasher = hasher

    async def hash_secret(self, secret: str) -> str:
        if self.hasher is not None:
            try:
                return await asyncio.to_thread(self.hasher.hash, secret)
            except Exception as exc:
                logger.warning("hash failed, falling back: %s", exc)
        self.diagnostics.record(ErrorCode.crypto_unavailable.value, "hashing unavailable, storing plain text", operation="hash")
        return secret

    async def verify_secret(self, secret: str, stored: str) -> bool:
        if not is_hashed_value(stored):
            return secrets.compare_digest(secret.encode("utf-8"), stored.encode("utf-8"))
        if self.hasher is not None:
            try:
                return await asyncio.to_thread(self.hasher.verify, secret, stored)
            except Exception as exc:
                logger.warning("verify failed: %s", exc)
        self.diagnostics.record(ErrorCode.crypto_unavailable.value, "verification unavailable for stored hash", operation="verify")
        return False

    def _find_index(self, users: list[dict[str, Any]], username: str) -> int:
        wanted = username.lower()
        return next((i for i, u in enumerate(users) if str(u.get("username", "")).lower() == wanted), -1)

    def _save_users(self, users: list[dict[str, Any]]) -> None:
        self.records.write(self.records.users.key, users)

    def current_user(self) -> Optional[dict[str, Any]]:
        return self.session.current_user()

    async def register(
        self,
        username: str,
        password: Optional[str] = None,
        language: str = "it",
        security_question_id: Optional[str] = None,
        security_answer: Optional[str] = None,
    ) -> AuthResult:
        users = self.records.users.all()
        if self._find_index(users, username) != -1:
            return AuthResult(error=ErrorCode.already_exists)

        normalized_answer = normalize_security_answer(security_answer) if security_answer else None
        hashed_password = await self.hash_secret(password) if password else None
        hashed_answer = await self.hash_secret(normalized_answer) if normalized_answer else None

        user = {
            "id": str(uuid4()),
            "username": username,
            "password": hashed_password,
            "securityQuestionId": security_question_id,
            "securityAnswer": hashed_answer,
            "avatar": build_avatar_data_uri(username),
            "currency": "EUR",
            "language": language,
            "notificationAdvance": 30,
            "clockUse12h": False,
            "theme": "default",
            "lockEnabled": False,
            "lockTimeoutMinutes": DEFAULT_LOCK_TIMEOUT_MINUTES,
        }
        users.append(user)
        self._save_users(users)
        self.session.set_current_user(user)
        logger.info("registered user %s", user["id"])
        return AuthResult(user=user)

    async def login(self, username: str, password: Optional[str] = None) -> AuthResult:
        users = self.records.users.all()
        index = self._find_index(users, username)
        if index == -1:
            return AuthResult(error=ErrorCode.not_found)

        user = users[index]
        stored = user.get("password")
        if stored:
            if not password:
                return AuthResult(error=ErrorCode.invalid_credentials)
            if not await self.verify_secret(password, stored):
                return AuthResult(error=ErrorCode.invalid_credentials)
            if not is_hashed_value(stored):
                hashed = await self.hash_secret(password)
                if hashed != stored:
                    user = {**user, "password": hashed}
                    users[index] = user
                    self._save_users(users)
                    logger.info("upgraded legacy password for user %s", user["id"])

        api_key = user.get("apiKey")
        if api_key and not self.vault.is_encrypted(api_key):
            encrypted = await self.vault.encrypt(api_key)
            if encrypted and encrypted != api_key:
                user = {**user, "apiKey": encrypted}
                users[index] = user
                self._save_users(users)

        user = apply_user_defaults(user)
        self.session.set_current_user(user)
        return AuthResult(user=user)

    def logout(self) -> None:
        self.session.clear()

    async def get_security_question(self, username: str) -> SecurityQuestionResult:
        users = self.records.users.all()
        index = self._find_index(users, username)
        if index == -1:
            return SecurityQuestionResult(error=ErrorCode.not_found)
        question_id = users[index].get("securityQuestionId")
        if not question_id:
            return SecurityQuestionResult(error=ErrorCode.missing_security_question)
        return SecurityQuestionResult(questionId=question_id)

    async def reset_password(self, username: str, answer: str, new_password: str) -> ResetPasswordResult:
        users = self.records.users.all()
        index = self._find_index(users, username)
        if index == -1:
            return ResetPasswordResult(error=ErrorCode.not_found)
        user = users[index]
        stored_answer = user.get("securityAnswer")
        if not user.get("securityQuestionId") or not stored_answer:
            return ResetPasswordResult(error=ErrorCode.missing_security_question)

        normalized = normalize_security_answer(answer)
        if not await self.verify_secret(normalized, stored_answer):
            return ResetPasswordResult(error=ErrorCode.invalid_answer)

        hashed_password = await self.hash_secret(new_password)
        hashed_answer = stored_answer if is_hashed_value(stored_answer) else await self.hash_secret(normalized)
        users[index] = {**user, "password": hashed_password, "securityAnswer": hashed_answer}
        self._save_users(users)
        return ResetPasswordResult(ok=True)

    async def update_settings(self, user_id: str, changes: dict[str, Any]) -> AuthResult:
        users = self.records.users.all()
        index = next((i for i, u in enumerate(users) if u.get("id") == user_id), -1)
        if index == -1:
            return AuthResult(error=ErrorCode.not_found)

        updates = {k: v for k, v in changes.items() if k != "id"}
        password = updates.get("password")
        if isinstance(password, str):
            if not password:
                updates["password"] = None
            elif not is_hashed_value(password):
                updates["password"] = await self.hash_secret(password)

        answer = updates.get("securityAnswer")
        if isinstance(answer, str):
            if not answer:
                updates["securityAnswer"] = None
            elif not is_hashed_value(answer):
                updates["securityAnswer"] = await self.hash_secret(normalize_security_answer(answer))

        api_key = updates.get("apiKey")
        if isinstance(api_key, str):
            trimmed = api_key.strip()
            updates["apiKey"] = await self.vault.encrypt(trimmed) if trimmed else None

        pin = updates.get("lockPin")
        if isinstance(pin, str) and not is_hashed_value(pin):
            digits = normalize_pin(pin)
            updates["lockPin"] = await self.hash_secret(digits) if digits else None

        if "lockTimeoutMinutes" in updates and not _valid_lock_timeout(updates["lockTimeoutMinutes"]):
            updates["lockTimeoutMinutes"] = DEFAULT_LOCK_TIMEOUT_MINUTES

        updated = {**users[index], **updates}
        users[index] = updated
        self._save_users(users)
        if self.session.current_user_id() == user_id:
            self.session.set_current_user(updated)
        return AuthResult(user=updated)

    async def verify_lock_pin(self, stored_pin: Optional[str], attempt: str) -> bool:
        if not stored_pin:
            return False
        normalized = normalize_pin(attempt)
        if not normalized:
            return False
        return await self.verify_secret(normalized, stored_pin)

    async def delete_user_data(self, user_id: str) -> bool:
        return await self.records.delete_user_data(user_id)
