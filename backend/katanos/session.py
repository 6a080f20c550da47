import json
import logging
from typing import Any, Callable, Optional

from .errors import StorageError
from .store import BackingStore

logger = logging.getLogger(__name__)

CURRENT_USER_KEY = "chronos_current_user"

SessionListener = Callable[[Optional[dict[str, Any]]], None]


class SessionManager:
    """Owns the active user.

    The active user is mirrored into the backing store so the session
    survives a restart, and every change is broadcast to listeners (the
    snapshot channel uses this to capture the new state).
    """

    def __init__(self, backing: BackingStore) -> None:
        self.backing = backing
        self._listeners: list[SessionListener] = []
        self.generation = 0

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def current_user(self) -> Optional[dict[str, Any]]:
        raw = self.backing.get(CURRENT_USER_KEY)
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("stored session is not valid JSON; ignoring it")
            return None
        return value if isinstance(value, dict) else None

    def current_user_id(self) -> Optional[str]:
        user = self.current_user()
        return user.get("id") if user else None

    def set_current_user(self, user: Optional[dict[str, Any]]) -> None:
        try:
            if user:
                self.backing.set(CURRENT_USER_KEY, json.dumps(user))
            else:
                self.backing.remove(CURRENT_USER_KEY)
        except StorageError as exc:
            logger.warning("could not persist session: %s", exc)
        self.generation += 1
        for listener in list(self._listeners):
            listener(user)

    def clear(self) -> None:
        self.set_current_user(None)

    def clear_if(self, user_id: str) -> bool:
        if self.current_user_id() != user_id:
            return False
        # removal only, no snapshot: the caller snapshots once its cascade is done
        try:
            self.backing.remove(CURRENT_USER_KEY)
        except StorageError as exc:
            logger.warning("could not clear session: %s", exc)
        self.generation += 1
        return True
