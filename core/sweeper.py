"""
Inactivity Sweeper: background task that abandons idle conversations.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from core.engine import ConversationEngine

logger = structlog.get_logger()


class InactivitySweeper:

    def __init__(self, engine: ConversationEngine, interval_seconds: Optional[float] = None):
        self.engine = engine
        self.interval = interval_seconds if interval_seconds is not None else engine.config.sweep_interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("inactivity_sweeper_started", interval=self.interval)
        while True:
            try:
                await self.engine.sweep_inactive()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("sweeper_error", error=str(e))
            await asyncio.sleep(self.interval)
