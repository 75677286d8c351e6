from __future__ import annotations

import time
from typing import Callable, Optional

import pytest

from movesense_receiver.config import SessionConfig
from movesense_receiver.errors import TransportError
from movesense_receiver.link import Link, LinkFactory


class ManualClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeHandle:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """``call_later`` replacement driven by a :class:`ManualClock`."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self.handles: list[FakeHandle] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeHandle:
        handle = FakeHandle(self.clock.now + delay * 1000.0, callback)
        self.handles.append(handle)
        return handle

    def advance_to(self, now: float) -> None:
        self.clock.now = now
        due = [h for h in self.handles if h.due <= now and not h.cancelled]
        self.handles = [h for h in self.handles if h not in due]
        for handle in sorted(due, key=lambda h: h.due):
            handle.callback()

    @property
    def pending(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.cancelled]


class FakeLink(Link):
    def __init__(self, factory: "FakeLinkFactory", on_disconnect: Callable[[], None]) -> None:
        self._factory = factory
        self._on_disconnect = on_disconnect
        self._on_frame: Optional[Callable[[bytes], None]] = None
        self.writes: list[tuple[float, bytes]] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "Movesense 000001"

    async def write(self, payload: bytes) -> None:
        if self._factory.fail_writes:
            raise TransportError("write refused")
        self.writes.append((time.monotonic(), bytes(payload)))

    async def subscribe(self, on_frame: Callable[[bytes], None]) -> None:
        self._on_frame = on_frame

    async def close(self) -> None:
        self.closed = True

    def emit(self, frame: bytes) -> None:
        assert self._on_frame is not None, "not subscribed"
        self._on_frame(bytes(frame))

    def drop(self) -> None:
        """Report a transport-level disconnect."""
        self._on_disconnect()


class FakeLinkFactory(LinkFactory):
    def __init__(self) -> None:
        self.links: list[FakeLink] = []
        self.open_attempts = 0
        self.open_times: list[float] = []
        self.fail_opens = 0  # fail this many upcoming opens
        self.always_fail = False
        self.fail_writes = False

    async def open(self, on_disconnect: Callable[[], None]) -> Link:
        self.open_attempts += 1
        self.open_times.append(time.monotonic())
        if self.always_fail or self.fail_opens > 0:
            self.fail_opens = max(0, self.fail_opens - 1)
            raise TransportError("device not found")
        link = FakeLink(self, on_disconnect)
        self.links.append(link)
        return link

    @property
    def last_link(self) -> FakeLink:
        return self.links[-1]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock: ManualClock) -> FakeScheduler:
    return FakeScheduler(clock)


@pytest.fixture
def factory() -> FakeLinkFactory:
    return FakeLinkFactory()


@pytest.fixture
def fast_config() -> SessionConfig:
    """Real timing shape, shrunk so tests finish quickly."""
    return SessionConfig(
        command_spacing=0.01,
        reconnect_delay=0.05,
        reconnect_backoff_delay=0.03,
        max_reconnect_attempts=3,
        intentional_disconnect_grace=0.05,
        monitor_interval=0,
    )
