"""Serialized, rate-limited command dispatch to the device.

The device drops requests that arrive back to back, so commands go out one
at a time, in FIFO order, with a minimum spacing between consecutive writes.
While no link is attached the queue keeps accepting commands and dispatch
resumes once a writer is attached again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Optional

from .models import Command

logger = logging.getLogger(__name__)

Writer = Callable[[bytes], Awaitable[None]]


class CommandQueue:
    """FIFO of outbound commands with a single dispatcher task.

    Args:
        spacing: Minimum seconds between the end of one write and the start
            of the next.
        limit: Pending commands kept; beyond it the oldest is dropped.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        spacing: float = 0.2,
        limit: int = 64,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("command queue limit must be at least 1")
        self._spacing = spacing
        self._limit = limit
        self._clock = clock
        self._pending: deque[Command] = deque()
        self._writer: Optional[Writer] = None
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._last_write: Optional[float] = None
        self._in_flight = False
        self._sent = 0
        self._failed = 0
        self._dropped = 0

    @property
    def pending(self) -> tuple[Command, ...]:
        return tuple(self._pending)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def link_ready(self) -> bool:
        return self._writer is not None

    @property
    def stats(self) -> dict[str, int]:
        return {
            "sent": self._sent,
            "failed": self._failed,
            "dropped": self._dropped,
            "pending": len(self._pending),
        }

    def enqueue(self, command: Command) -> None:
        if len(self._pending) >= self._limit:
            dropped = self._pending.popleft()
            self._dropped += 1
            logger.warning(
                "Command queue full (%d), dropping oldest: %s", self._limit, dropped.label
            )
        self._pending.append(command)
        logger.debug("Queued command %s [%s]", command.label, command.hex())
        self._kick()

    def notify_link_ready(self, writer: Writer) -> None:
        """Start (or resume) dispatching through ``writer``."""
        self._writer = writer
        self._kick()

    def notify_link_down(self) -> None:
        """Stop dispatching; pending commands stay queued."""
        self._writer = None

    def clear(self) -> None:
        """Drop every pending command and cancel the dispatcher.

        A write in progress is abandoned; nothing is raised to the caller.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._pending:
            logger.info("Discarding %d pending command(s)", len(self._pending))
        self._pending.clear()
        self._in_flight = False
        self._last_write = None

    async def drain(self, poll_interval: float = 0.01) -> None:
        """Wait until nothing is pending or in flight."""
        while self._pending or self._in_flight:
            await asyncio.sleep(poll_interval)

    def _kick(self) -> None:
        self._wakeup.set()
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Started on the first enqueue or link-ready call made inside the loop.
            return
        self._task = loop.create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        while True:
            writer = self._writer
            if not self._pending or writer is None:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            if self._last_write is not None:
                remaining = self._spacing - (self._clock() - self._last_write)
                if remaining > 0:
                    await asyncio.sleep(remaining)
                    continue

            command = self._pending.popleft()
            self._in_flight = True
            logger.info("Sending command: %s", command.label)
            try:
                await writer(command.payload)
                self._sent += 1
                logger.info("✅ Command sent: %s", command.label)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Not retried: the next command goes out after the spacing.
                self._failed += 1
                logger.error("Failed to send command %r: %s", command.label, e)
            finally:
                self._in_flight = False
                self._last_write = self._clock()
