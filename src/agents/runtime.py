"""Explicit per-agent timers.

Each agent owns an ``AgentScheduler`` holding named ``PeriodicTask``s
(heartbeat, inbox drain, type-specific work). There are no module-level
timers: stopping the scheduler cancels exactly the timers of that agent.

A PeriodicTask waits on a stop event with the interval as timeout, so
``stop()`` wakes it immediately. A tick already running is allowed to
finish (up to ``stop_timeout``) before the task is cancelled.

Usage:
    scheduler = AgentScheduler("trader-1")
    scheduler.add("match", 5.0, agent.run_matching)
    await scheduler.start_all()
    ...
    await scheduler.stop_all()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from ..config import get_validated_config

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None]]


class TaskState(str, Enum):
    """State of a periodic task."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class PeriodicTask:
    """Runs ``callback`` every ``interval`` seconds until stopped.

    Attributes:
        name: Task name used in logs (e.g. "trader-1:match")
        interval: Seconds between ticks
        callback: Async callable run once per tick
        run_immediately: Run the first tick on start instead of after one interval
    """

    name: str
    interval: float
    callback: TickCallback
    run_immediately: bool = False

    _state: TaskState = field(default=TaskState.STOPPED, init=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False)
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _tick_count: int = field(default=0, init=False)
    _error_count: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        """Validate interval."""
        if self.interval <= 0:
            raise ValueError(f"interval must be positive: {self.interval}")

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == TaskState.RUNNING

    @property
    def tick_count(self) -> int:
        """Ticks completed (successful or not)."""
        return self._tick_count

    @property
    def error_count(self) -> int:
        return self._error_count

    async def start(self) -> None:
        """Start ticking. No-op with a warning if already running."""
        if self._state != TaskState.STOPPED:
            logger.warning(f"Task {self.name} already running, state={self._state}")
            return

        self._state = TaskState.RUNNING
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.debug(f"Task {self.name} started (every {self.interval}s)")

    async def stop(self, timeout: float | None = None) -> None:
        """Stop ticking, letting an in-flight tick finish.

        Args:
            timeout: Seconds to wait for the in-flight tick.
                     Defaults to config runtime.stop_timeout.
        """
        if self._state == TaskState.STOPPED:
            return
        if timeout is None:
            timeout = get_validated_config().runtime.stop_timeout

        self._state = TaskState.STOPPING
        self._stop_event.set()

        task = self._task
        if task is not None and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Task {self.name} did not stop gracefully, cancelling")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._state = TaskState.STOPPED
        self._task = None
        logger.debug(f"Task {self.name} stopped")

    async def _run_loop(self) -> None:
        if self.run_immediately:
            await self._tick()

        while self._state == TaskState.RUNNING:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            if self._state != TaskState.RUNNING:
                break
            await self._tick()

    async def _tick(self) -> None:
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._error_count += 1
            logger.exception(f"Task {self.name} tick failed: {e}")
        finally:
            self._tick_count += 1


class AgentScheduler:
    """Named periodic tasks owned by one agent."""

    def __init__(self, owner_id: str) -> None:
        self.owner_id = owner_id
        self._tasks: dict[str, PeriodicTask] = {}

    def add(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        run_immediately: bool = False,
    ) -> PeriodicTask:
        """Register a task (not started).

        Raises:
            ValueError: If a task with this name already exists
        """
        if name in self._tasks:
            raise ValueError(f"Task {name} already exists for {self.owner_id}")
        task = PeriodicTask(
            name=f"{self.owner_id}:{name}",
            interval=interval,
            callback=callback,
            run_immediately=run_immediately,
        )
        self._tasks[name] = task
        return task

    def get(self, name: str) -> PeriodicTask | None:
        return self._tasks.get(name)

    @property
    def task_names(self) -> list[str]:
        return list(self._tasks.keys())

    async def start_all(self) -> None:
        for task in self._tasks.values():
            await task.start()

    async def stop_all(self, timeout: float | None = None) -> None:
        """Stop every task.

        Stops run in the caller's task so a tick may stop its own scheduler.
        """
        for task in self._tasks.values():
            await task.stop(timeout)

    def clear(self) -> None:
        """Forget all tasks. Call after stop_all."""
        self._tasks.clear()

    def status(self) -> dict[str, Any]:
        return {
            name: {
                "state": task.state.value,
                "interval": task.interval,
                "ticks": task.tick_count,
                "errors": task.error_count,
            }
            for name, task in self._tasks.items()
        }
