"""
Task scheduler for the persisted periodic jobs.

Job records live in the ``task_queue`` tree so their next run time survives
restarts. The loop starts only once the server is marked ready.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from ..core.config import ConfigStore, settings
from ..core.constants import (
    DEFAULT_DAEMON_UPDATE,
    DEFAULT_MIN_PAYOUT,
    DEFAULT_SELF_UPDATE,
)
from ..core.exceptions import GhostVaultException, TaskNotFoundError
from ..core.store import Store
from ..models.records import ScheduledTask, TaskName

logger = structlog.get_logger(__name__)

TaskAction = Callable[[], Awaitable[Any]]


def _now() -> int:
    return int(time.time())


async def update_payout_interval(store: Store, interval: int) -> ScheduledTask:
    """Change the payout interval and reschedule the next payout from now."""
    task = await store.get_task(TaskName.PROCESS_REWARDS)
    if task is None:
        raise TaskNotFoundError(TaskName.PROCESS_REWARDS.value)
    task.run_interval = interval
    task.next_run = _now() + interval
    await store.set_task(task)
    return task


async def update_payout_min(store: Store, min_payout: int) -> ScheduledTask:
    task = await store.get_task(TaskName.PROCESS_REWARDS)
    if task is None:
        raise TaskNotFoundError(TaskName.PROCESS_REWARDS.value)
    task.min_payout = min_payout
    await store.set_task(task)
    return task


async def get_next_payout_time(store: Store) -> int:
    task = await store.get_task(TaskName.PROCESS_REWARDS)
    if task is None:
        raise TaskNotFoundError(TaskName.PROCESS_REWARDS.value)
    return task.next_run


async def wait_rpc_server_ready(
    store: Store,
    probe: TaskAction,
    poll_interval: float = 1.0,
) -> None:
    """Mark the server ready once the internal RPC answers ``probe``."""
    while True:
        try:
            await probe()
            break
        except Exception as e:
            logger.debug("Internal RPC not answering yet", error=str(e))
            await asyncio.sleep(poll_interval)

    await store.set_readiness(
        (await store.get_readiness()).model_copy(update={"ready": True, "daemon_ready": True, "reason": None})
    )
    logger.info("RPC server ready")


class TaskScheduler:
    """Runs the daemon update, self update and reward payout jobs."""

    def __init__(
        self,
        store: Store,
        config: ConfigStore,
        actions: Dict[TaskName, TaskAction],
        on_ready: Optional[TaskAction] = None,
        readiness_probe: Optional[TaskAction] = None,
        loop_interval: Optional[int] = None,
        ready_poll_interval: float = 3.0,
    ):
        self.store = store
        self.config = config
        self.actions = actions
        self.on_ready = on_ready
        self.readiness_probe = readiness_probe
        self.loop_interval = loop_interval or settings.scheduler_loop_interval
        self.ready_poll_interval = ready_poll_interval
        self.running = False
        self._jobs: Set[asyncio.Task] = set()
        self.logger = logger.bind(service="task_scheduler")

    async def initialize(self) -> None:
        """Create any missing task records, due immediately."""
        self.logger.info("Initializing task scheduler")
        conf = await self.config.read()
        now = _now()

        defaults = {
            TaskName.DAEMON_UPDATE: (DEFAULT_DAEMON_UPDATE, None),
            TaskName.SELF_UPDATE: (DEFAULT_SELF_UPDATE, None),
            TaskName.PROCESS_REWARDS: (conf.reward_interval, DEFAULT_MIN_PAYOUT),
        }
        for name, (interval, min_payout) in defaults.items():
            existing = await self.store.get_task(name)
            if existing is not None:
                if existing.task_running:
                    # Left over from a run interrupted by shutdown
                    existing.task_running = False
                    await self.store.set_task(existing)
                continue
            await self.store.set_task(ScheduledTask(
                id=name.task_id,
                name=name,
                run_interval=interval,
                next_run=now,
                min_payout=min_payout,
            ))
            self.logger.info("Registered task", task=name.value, interval=interval)

    async def wait_until_ready(self) -> None:
        while not (await self.store.get_readiness()).ready:
            await asyncio.sleep(self.ready_poll_interval)

    async def start(self) -> None:
        """Start the task scheduler."""
        await self.initialize()

        if self.readiness_probe is not None:
            self.spawn(wait_rpc_server_ready(self.store, self.readiness_probe))

        await self.wait_until_ready()
        if self.on_ready is not None:
            await self.on_ready()

        self.logger.info("Starting task scheduler")
        self.running = True

        while self.running:
            try:
                await self.run_pending()
                await asyncio.sleep(self.loop_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Task scheduler loop error", error=str(e))
                await asyncio.sleep(self.loop_interval)

        self.logger.info("Task scheduler stopped")

    async def stop(self) -> None:
        self.running = False
        for job in list(self._jobs):
            job.cancel()
        if self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)

    def spawn(self, coro) -> asyncio.Task:
        job = asyncio.create_task(coro)
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)
        return job

    async def run_pending(self, now: Optional[int] = None) -> int:
        """Spawn every due job that is not already running. Returns the count."""
        now = now if now is not None else _now()
        started = 0
        for task in await self.store.all_tasks():
            if task.task_running or task.next_run > now:
                continue
            # Claimed here, released by schedule_next
            task.task_running = True
            await self.store.set_task(task)
            self.spawn(self.run_task(task.name))
            started += 1
        return started

    async def run_task(self, name: TaskName) -> None:
        """Run one job and schedule its next run."""
        task = await self.store.get_task(name)
        if task is None:
            raise TaskNotFoundError(name.value)
        if not task.task_running:
            task.task_running = True
            await self.store.set_task(task)

        action = self.actions.get(name)
        try:
            if action is not None:
                self.logger.debug("Running scheduled task", task=name.value)
                await action()
        except GhostVaultException as e:
            self.logger.error("Task failed", task=name.value, error=e.message, code=e.code)
        except Exception as e:
            self.logger.error("Task failed", task=name.value, error=str(e))
        finally:
            await self.schedule_next(name)

    async def schedule_next(self, name: TaskName) -> ScheduledTask:
        # Re-read so interval or min changes made while the job ran are kept
        task = await self.store.get_task(name)
        if task is None:
            raise TaskNotFoundError(name.value)
        task.next_run = _now() + task.run_interval
        task.task_running = False
        await self.store.set_task(task)
        return task
