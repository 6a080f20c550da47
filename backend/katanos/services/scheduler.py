"""Timer-driven backups for the logged-in user.

The scheduler is either stopped (no timer, no binding) or armed (a
recurring asyncio task bound to one user and their backup settings). Runs
are not serialized: a tick fires even while an earlier run is still in
flight. ``stop`` cancels the timers but lets in-flight runs finish; their
results are dropped when the binding changed in the meantime.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..schemas import BackupResult, BackupSettings, ErrorCode
from .backup import BackupService, interval_seconds, iso_timestamp

logger = logging.getLogger(__name__)

STARTUP_DELAY_SECONDS = 5.0


def needs_startup_run(settings: BackupSettings, now: datetime) -> bool:
    if not settings.runOnStartup:
        return False
    if not settings.lastBackupAt:
        return True
    try:
        last = datetime.fromisoformat(settings.lastBackupAt.replace("Z", "+00:00"))
    except ValueError:
        return True
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return (now - last).total_seconds() > interval_seconds(settings.interval)


class BackupScheduler:
    def __init__(
        self,
        service: BackupService,
        startup_delay: float = STARTUP_DELAY_SECONDS,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.service = service
        self.startup_delay = startup_delay
        self.now = now
        self.user_id: Optional[str] = None
        self.settings: Optional[BackupSettings] = None
        self.generation = 0
        self._timer: Optional[asyncio.Task] = None
        self._startup: Optional[asyncio.Task] = None
        self._runs: set[asyncio.Task] = set()

    def start(self, user_id: str, settings: BackupSettings | dict) -> None:
        self.stop()
        if not isinstance(settings, BackupSettings):
            settings = BackupSettings.model_validate(settings or {})
        if not settings.enabled or not settings.folderPath:
            return

        self.user_id = user_id
        self.settings = settings
        if needs_startup_run(settings, self.now()):
            self._startup = asyncio.create_task(self._delayed_run(self.startup_delay))
        self._timer = asyncio.create_task(self._tick_loop(interval_seconds(settings.interval)))
        logger.info("backup scheduler armed for user %s every %s", user_id, settings.interval.value)

    def start_for_user(self, user: dict[str, Any]) -> None:
        settings = user.get("backupSettings") or {}
        if not settings.get("enabled"):
            self.stop()
            return
        self.start(user["id"], settings)

    def stop(self) -> None:
        for task in (self._timer, self._startup):
            if task is not None:
                task.cancel()
        if self._timer is not None:
            logger.info("backup scheduler stopped")
        self._timer = None
        self._startup = None
        self.user_id = None
        self.settings = None
        self.generation += 1

    def is_running(self) -> bool:
        return self._timer is not None

    def current_user_id(self) -> Optional[str]:
        return self.user_id

    async def _delayed_run(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._spawn_run()

    async def _tick_loop(self, every: float) -> None:
        while True:
            await asyncio.sleep(every)
            self._spawn_run()

    def _spawn_run(self) -> None:
        task = asyncio.create_task(self.run_backup())
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)

    async def run_backup(self) -> BackupResult:
        user_id, settings, generation = self.user_id, self.settings, self.generation
        if not user_id or settings is None or not settings.folderPath:
            return BackupResult(
                success=False,
                timestamp=iso_timestamp(self.now()),
                error="No user or folder configured",
                errorCode=ErrorCode.unbound,
            )
        result = await self.service.trigger_backup_now(user_id, settings)
        if generation != self.generation:
            logger.info("backup for user %s finished after the session changed; result discarded", user_id)
        return result

    async def wait_idle(self) -> None:
        while self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)
