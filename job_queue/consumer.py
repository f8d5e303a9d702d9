"""
Dispatch Workers: drain the notification queue, one pool per channel.

Topology:
  ┌──────────────┐  enqueue  ┌──────────────────┐  claim_batch  ┌─────────────────┐
  │ Orchestrator │──────────▶│ NotificationQueue │◀─────────────│ ChannelWorkerPool│ × channel
  └──────────────┘           │ (store + leases)  │──────────────▶│  N worker loops │
                             └────────▲─────────┘               └───────┬─────────┘
                                      │ report_outcome / defer          │
                                      └─────────────────────────────────┘
                                gate → render → directory → sender.send

A worker that dies mid-item leaves a lease behind; the lease expires
after claim_timeout_seconds and another worker picks the item up.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional

from backend.connector import UserDirectory
from channels.base import ChannelSender
from config.settings import ChannelConfig
from job_queue.notification_queue import NotificationQueue
from job_queue.preferences import Defer, PreferenceGate, Suppress
from models.errors import InvalidVariables
from models.schemas import ChannelType, DeliveryOutcome, NotificationItem, OutcomeKind, utcnow

logger = structlog.get_logger()


class ChannelWorkerPool:
    """
    Usage:
        pool = ChannelWorkerPool(ChannelType.EMAIL, cfg, queue, gate, directory, EmailSender(cfg))
        await pool.run_once()              # one claimed batch, then return
        await pool.start_background()      # `concurrency` worker loops
        await pool.stop()
    """

    def __init__(
        self,
        channel: ChannelType,
        config: ChannelConfig,
        queue: NotificationQueue,
        gate: PreferenceGate,
        directory: UserDirectory,
        sender: ChannelSender,
        poll_interval: Optional[float] = None,
    ):
        self.channel = channel
        self.config = config
        self.queue = queue
        self.gate = gate
        self.directory = directory
        self.sender = sender
        self.poll_interval = poll_interval if poll_interval is not None else queue.config.poll_interval_seconds
        self._semaphore = asyncio.Semaphore(max(config.concurrency, 1))
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self.processed: dict[str, int] = {k.value: 0 for k in OutcomeKind}
        self.processed["deferred"] = 0

    # ── Lifecycle ─────────────────────────────────────

    async def start_background(self) -> list[asyncio.Task]:
        self._running = True
        for i in range(max(self.config.concurrency, 1)):
            worker_id = f"{self.channel.value}-{i}"
            self._tasks.append(asyncio.create_task(self._run(worker_id)))
        logger.info("worker_pool_started",
                    channel=self.channel.value,
                    workers=len(self._tasks),
                    batch_size=self.config.batch_size)
        return list(self._tasks)

    async def stop(self):
        self._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("worker_pool_stopped", channel=self.channel.value, processed=self.processed)

    async def _run(self, worker_id: str):
        while self._running:
            try:
                handled = await self.run_once(worker_id=worker_id)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_loop_error", channel=self.channel.value, worker=worker_id, error=str(e))
                handled = 0
            if handled == 0:
                await asyncio.sleep(self.poll_interval)

    # ── Batch processing ──────────────────────────────

    async def run_once(self, worker_id: str = "", now: Optional[datetime] = None) -> int:
        """Claim one batch and process it. Returns the number of items handled."""
        worker_id = worker_id or f"{self.channel.value}-once"
        batch = await self.queue.claim_batch(self.channel, self.config.batch_size, worker_id, now)
        if not batch:
            return 0
        await asyncio.gather(*(self._guarded(item, now) for item in batch))
        return len(batch)

    async def _guarded(self, item: NotificationItem, now: Optional[datetime]):
        async with self._semaphore:
            try:
                await self.process_item(item, now)
            except Exception as e:
                logger.error("dispatch_item_error", item_id=item.id, channel=self.channel.value,
                             error=str(e), error_type=type(e).__name__)
                await self._report_crash(item, e, now)

    async def _report_crash(self, item: NotificationItem, error: Exception, now: Optional[datetime]):
        """Charge an unexpected failure as a transient one so the item spends its retries."""
        outcome = DeliveryOutcome.transient(f"dispatch error: {type(error).__name__}: {error}")
        try:
            await self.queue.report_outcome(item.id, outcome, item.claim_token, now or utcnow())
        except Exception as e:
            # Store unreachable: the lease expires and the item is claimed again
            logger.error("dispatch_outcome_report_failed", item_id=item.id, error=str(e))
            return
        self._count(OutcomeKind.TRANSIENT_FAILURE.value)

    async def process_item(self, item: NotificationItem, now: Optional[datetime] = None) -> str:
        """gate → render → resolve recipient → send → report. Returns the outcome label."""
        now = now or utcnow()
        token = item.claim_token

        decision = await self.gate.check(item, now)
        if isinstance(decision, Suppress):
            await self.queue.report_outcome(item.id, DeliveryOutcome.suppressed(decision.reason), token, now)
            return self._count(OutcomeKind.SUPPRESSED.value)
        if isinstance(decision, Defer):
            await self.queue.defer(item.id, decision.until, token)
            return self._count("deferred")

        subject, content = item.subject, item.content
        if content is None:
            rendered = await self._render(item)
            if isinstance(rendered, DeliveryOutcome):
                await self.queue.report_outcome(item.id, rendered, token, now)
                return self._count(rendered.kind.value)
            subject, content = rendered

        outcome = await self._deliver(item, subject, content)
        await self.queue.report_outcome(item.id, outcome, token, now)
        return self._count(outcome.kind.value)

    async def _render(self, item: NotificationItem):
        template = await self.queue.templates.get(item.template_name)
        if template is None:
            return DeliveryOutcome.permanent(f"template missing: {item.template_name}")
        try:
            return self.queue.templates.render(template, item.variables)
        except InvalidVariables as e:
            return DeliveryOutcome.permanent(str(e))

    async def _deliver(self, item: NotificationItem, subject: Optional[str], content: str) -> DeliveryOutcome:
        try:
            recipient = await self.directory.get_address(item.user_id, self.channel)
        except Exception as e:
            logger.warning("directory_lookup_failed", item_id=item.id, user_id=item.user_id, error=str(e))
            return DeliveryOutcome.transient(f"directory lookup failed: {e}")
        if not recipient:
            return DeliveryOutcome.permanent(f"no {self.channel.value} address for user {item.user_id}")

        metadata: dict[str, Any] = {**item.metadata, "notification_id": item.id, "template": item.template_name}
        try:
            result = await asyncio.wait_for(
                self.sender.send(recipient, subject, content, metadata),
                timeout=self.config.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return DeliveryOutcome.transient(f"send timed out after {self.config.send_timeout_seconds}s")
        except Exception as e:
            return DeliveryOutcome.transient(f"sender error: {e}")
        return result.to_outcome()

    def _count(self, label: str) -> str:
        self.processed[label] = self.processed.get(label, 0) + 1
        return label

    def stats(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "running": self._running,
            "workers": len(self._tasks),
            "processed": dict(self.processed),
        }


class DispatchSupervisor:
    """Starts and stops every channel pool plus optional background services (the inactivity sweeper)."""

    def __init__(self, pools: list[ChannelWorkerPool], services: Optional[list[Any]] = None):
        self.pools = pools
        self.services = services or []
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self):
        if self._started:
            return
        for pool in self.pools:
            await pool.start_background()
        for service in self.services:
            await service.start_background()
        self._started = True
        logger.info("dispatch_supervisor_started",
                    channels=[p.channel.value for p in self.pools],
                    services=len(self.services))

    async def stop(self):
        if not self._started:
            return
        for service in self.services:
            await service.stop()
        for pool in self.pools:
            await pool.stop()
        self._started = False
        logger.info("dispatch_supervisor_stopped")

    async def drain_once(self, now: Optional[datetime] = None) -> dict[str, int]:
        """One run_once per pool; handy for CLI tools and tests."""
        return {pool.channel.value: await pool.run_once(now=now) for pool in self.pools}

    def stats(self) -> list[dict[str, Any]]:
        return [pool.stats() for pool in self.pools]
