import asyncio
import inspect
import sys
from functools import wraps
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))


def _wrap_async(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))

    return wrapper


def pytest_collection_modifyitems(items):
    for item in items:
        obj = getattr(item, "obj", None)
        if obj and inspect.iscoroutinefunction(obj):
            item.obj = _wrap_async(obj)


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark a test to run on the default asyncio event loop")


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll predicate until it is true or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeEmitter:
    """The subset of the pyee interface aiortc objects expose."""

    def __init__(self) -> None:
        self._listeners: dict[str, list] = {}

    def on(self, event: str, callback=None):
        self._listeners.setdefault(event, []).append(callback)
        return callback

    def remove_listener(self, event: str, callback) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def listeners(self, event: str) -> list:
        return list(self._listeners.get(event, []))

    def emit(self, event: str, *args) -> None:
        for cb in list(self._listeners.get(event, [])):
            cb(*args)


class FakeChannel(FakeEmitter):
    """In-memory data channel; messages reach the linked peer on the next loop turn."""

    def __init__(self, label: str, ready_state: str = "open") -> None:
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.peer: "FakeChannel | None" = None
        self.sent: list = []

    def send(self, payload) -> None:
        if self.readyState != "open":
            raise RuntimeError(f"Channel {self.label} is {self.readyState}")
        self.sent.append(payload)
        if self.peer is not None:
            asyncio.get_running_loop().call_soon(self.peer.emit, "message", payload)

    def close(self) -> None:
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")


def link_channels(a: FakeChannel, b: FakeChannel) -> None:
    a.peer = b
    b.peer = a


class FakePeerConnection(FakeEmitter):
    """Stands in for RTCPeerConnection; connect() opens the created channels."""

    def __init__(self, name: str = "pc") -> None:
        super().__init__()
        self.name = name
        self.connectionState = "new"
        self.channels: list[FakeChannel] = []
        self.localDescription = None
        self.remoteDescription = None
        self.remote: "FakePeerConnection | None" = None
        self.added_candidates: list = []
        self.closed = False

    def createDataChannel(self, label: str, ordered: bool = True) -> FakeChannel:
        channel = FakeChannel(label, ready_state="connecting")
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return SimpleNamespace(sdp=f"offer-from-{self.name}", type="offer")

    async def createAnswer(self):
        return SimpleNamespace(sdp=f"answer-from-{self.name}", type="answer")

    async def setLocalDescription(self, description) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description) -> None:
        self.remoteDescription = description
        if description.type == "answer" and self.remote is not None:
            self.connect(self.remote)

    async def addIceCandidate(self, candidate) -> None:
        self.added_candidates.append(candidate)

    def connect(self, other: "FakePeerConnection") -> None:
        """Announce every local channel to other and open both ends."""
        self.connectionState = other.connectionState = "connected"
        for channel in self.channels:
            remote = FakeChannel(channel.label)
            link_channels(channel, remote)
            other.emit("datachannel", remote)
            channel.readyState = "open"
            channel.emit("open")

    def set_state(self, state: str) -> None:
        self.connectionState = state
        self.emit("connectionstatechange")

    async def close(self) -> None:
        self.closed = True
        self.set_state("closed")


class FakeRelayConnection:
    """A relay client socket that records what the relay sends it."""

    def __init__(self, conn_id: str) -> None:
        self.conn_id = conn_id
        self.pin: int | None = None
        self.is_producer = False
        self.sent: list[tuple] = []
        self.close_code: int | None = None

    async def send(self, event, data) -> None:
        self.sent.append((event, data))

    async def close(self, code: int) -> None:
        self.close_code = code
