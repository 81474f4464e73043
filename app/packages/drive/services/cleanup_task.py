"""后台任务：定期中止长时间无活动的分片上传会话，释放对象存储中暂存的分片。"""

from __future__ import annotations

import asyncio
from typing import Optional

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.logger import logger
from app.packages.drive.db import session as db_session
from app.packages.drive.services.upload_service import upload_service


class StaleUploadSweeper:
    def __init__(self, interval_seconds: Optional[int] = None, max_idle_seconds: Optional[int] = None):
        settings = get_settings()
        self.interval_seconds = (
            settings.upload_sweep_interval_seconds if interval_seconds is None else interval_seconds
        )
        self.max_idle_seconds = (
            settings.upload_session_timeout_seconds if max_idle_seconds is None else max_idle_seconds
        )
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self.interval_seconds <= 0:
            logger.info("Stale upload sweeper disabled")
            return
        if self._running:
            logger.warning("Stale upload sweeper already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Started stale upload sweeper (interval: %ss, max idle: %ss)", self.interval_seconds, self.max_idle_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Stopped stale upload sweeper")

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                await asyncio.to_thread(self.sweep_once)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in stale upload sweeper")

    def sweep_once(self) -> int:
        """执行一次清理，返回被中止的会话数。"""
        with db_session.SessionLocal() as db:
            return upload_service.abort_stale_sessions(db, max_idle_seconds=self.max_idle_seconds)


stale_upload_sweeper = StaleUploadSweeper()
