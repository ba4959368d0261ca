import asyncio
from typing import List, Optional, Tuple

import orjson
import pytest

from relay.config import Settings
from relay.peer import CLOSE_NORMAL, Liveness
from relay.registry import Registry


class FakeChannel:
    """In-memory duplex channel. ``feed`` queues inbound frames, ``sent`` records outbound ones."""

    def __init__(self):
        self.sent: List[str] = []
        self.state = Liveness.OPEN
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.fail_sends = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    @property
    def liveness(self) -> Liveness:
        return self.state

    async def send(self, data: str) -> None:
        if self.fail_sends:
            raise ConnectionResetError("connection reset by peer")
        self.sent.append(data)

    async def receive(self):
        if self.state is Liveness.CLOSED:
            return None
        item = await self._inbox.get()
        if item is None:
            self.state = Liveness.CLOSED
        return item

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason
        self.state = Liveness.CLOSED
        self._inbox.put_nowait(None)

    def feed(self, raw) -> None:
        self._inbox.put_nowait(raw)

    def hang_up(self) -> None:
        self._inbox.put_nowait(None)

    def messages(self) -> List[dict]:
        return [orjson.loads(data) for data in self.sent]

    def of_type(self, kind: str) -> List[dict]:
        return [m for m in self.messages() if m.get("type") == kind]


class StubbornChannel(FakeChannel):
    """Acknowledges close() but never reports the close to its reader."""

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason
        self.state = Liveness.CLOSING


class FakeClock:
    """Clock whose sleeps only finish when the test advances time."""

    def __init__(self):
        self.now = 0.0
        self._sleepers: List[Tuple[float, asyncio.Future]] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now + seconds, future))
        await future

    @property
    def pending(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [
                (deadline, future)
                for deadline, future in self._sleepers
                if deadline <= target and not future.done()
            ]
            if not due:
                break
            deadline, future = min(due, key=lambda item: item[0])
            self._sleepers.remove((deadline, future))
            self.now = deadline
            future.set_result(None)
            await settle()
        self._sleepers = [(d, f) for d, f in self._sleepers if not f.done()]
        self.now = target


async def settle(rounds: int = 20) -> None:
    """Let every ready task run until the loop goes quiet."""

    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def registry():
    return Registry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        keepalive_interval_s=10.0,
        status_interval_s=0,
        shutdown_timeout_s=0.5,
        max_message_bytes=256,
    )
