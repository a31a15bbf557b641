import asyncio
import os

import pytest

from conftest import FakePeerConnection, wait_until
from transfer.events import EventKind
from transfer.manager import LinkClosedError, NoFreeChannelError, TransferManager, unique_path
from transfer.models import TransferDirection, TransferState
from transfer.pool import DataChannelPool


def _pools(size: int = 3) -> tuple[DataChannelPool, DataChannelPool]:
    sender_pc = FakePeerConnection("sender")
    receiver_pc = FakePeerConnection("receiver")
    sender_pool = DataChannelPool(sender_pc, size)
    receiver_pool = DataChannelPool(receiver_pc, size)
    receiver_pool.initialize(passive=True)
    sender_pool.initialize(passive=False)
    sender_pc.connect(receiver_pc)
    return sender_pool, receiver_pool


def _link(size: int = 3, save_dir: str | None = None):
    """Two managers talking over an in-memory channel pool."""
    sender_pool, receiver_pool = _pools(size)
    sender = TransferManager(sender_pool)
    receiver = TransferManager(receiver_pool, save_dir=save_dir)
    return sender, receiver


def _record(manager: TransferManager) -> dict:
    events = {"task": [], "finish": [], "failed": [], "close": []}
    manager.on(EventKind.TASK, events["task"].append)
    manager.on(EventKind.TASK_FINISH, events["finish"].append)
    manager.on(EventKind.TASK_FAILED, events["failed"].append)
    manager.on(EventKind.CLOSE, lambda: events["close"].append(True))
    return events


async def test_file_travels_end_to_end():
    sender, receiver = _link()
    sent, received = _record(sender), _record(receiver)
    data = os.urandom(40 * 1024 + 123)

    info = sender.send("notes.txt", data)
    assert info.direction == TransferDirection.SEND
    assert sender.pool.free_count() == 2

    await wait_until(lambda: sent["finish"] and received["finish"])

    result = received["finish"][0]
    assert result.data == data
    assert result.path is None
    assert result.info.meta == info.meta
    assert received["task"][0].direction == TransferDirection.RECV
    assert sent["finish"][0].info.state == TransferState.FINISHED
    assert sender.get_tasks() == [] and receiver.get_tasks() == []
    assert sender.pool.free_count() == 3
    assert receiver.pool.free_count() == 3


async def test_parallel_sends_use_separate_channels():
    sender, receiver = _link()
    received = _record(receiver)
    payloads = {f"f{i}.bin": os.urandom(20000 + i) for i in range(3)}

    infos = [sender.send(name, data) for name, data in payloads.items()]
    assert sender.pool.free_count() == 0
    assert len({sender.get_task(i.id).channel.label for i in infos}) == 3

    await wait_until(lambda: len(received["finish"]) == 3)
    assert {r.info.meta.name: r.data for r in received["finish"]} == payloads


async def test_send_without_free_channel_raises():
    sender, _ = _link(size=1)
    sender.send("a", b"1")

    with pytest.raises(NoFreeChannelError):
        sender.send("b", b"2")


async def test_empty_file(tmp_path):
    sender, receiver = _link(save_dir=str(tmp_path))
    sent, received = _record(sender), _record(receiver)

    sender.send("empty.txt", b"")

    await wait_until(lambda: sent["finish"] and received["finish"])
    assert (tmp_path / "empty.txt").read_bytes() == b""


async def test_received_file_saved_under_unique_name(tmp_path):
    (tmp_path / "report.pdf").write_bytes(b"old")
    sender, receiver = _link(save_dir=str(tmp_path))
    received = _record(receiver)

    sender.send("report.pdf", b"new contents")

    await wait_until(lambda: received["finish"])
    path = received["finish"][0].path
    assert path == str(tmp_path / "report (1).pdf")
    assert (tmp_path / "report (1).pdf").read_bytes() == b"new contents"
    assert (tmp_path / "report.pdf").read_bytes() == b"old"


async def test_send_file_reads_from_disk(tmp_path):
    source = tmp_path / "source.bin"
    source.write_bytes(b"x" * 1000)
    sender, receiver = _link()
    received = _record(receiver)

    info = await sender.send_file(str(source))

    assert info.meta.name == "source.bin"
    await wait_until(lambda: received["finish"])
    assert received["finish"][0].data == b"x" * 1000


async def test_stray_messages_on_idle_channel_are_ignored():
    sender, receiver = _link(size=1)
    received = _record(receiver)
    channel = sender.pool.acquire()

    channel.send(b"raw bytes")
    channel.send('{"type": "PROGRESS", "data": {"receivedSize": 1, "rate": 0}}')
    channel.send("not json")
    await asyncio.sleep(0.01)

    assert received["task"] == []
    assert receiver.pool.free_count() == 1


async def test_pool_close_fails_running_tasks():
    sender, receiver = _link()
    sent = _record(sender)
    info = sender.send("big.bin", os.urandom(1000))

    sender.pool.close()

    assert sent["close"] == [True]
    assert [i.id for i in sent["failed"]] == [info.id]
    assert sender.get_tasks() == []


def test_unique_path(tmp_path):
    assert unique_path(str(tmp_path), "a.txt") == tmp_path / "a.txt"
    (tmp_path / "a.txt").write_text("")
    (tmp_path / "a (1).txt").write_text("")
    assert unique_path(str(tmp_path), "a.txt") == tmp_path / "a (2).txt"
    assert unique_path(str(tmp_path), "../../etc/passwd") == tmp_path / "passwd"


async def test_transfer_that_arrives_before_the_receiver_listens(tmp_path):
    sender_pool, receiver_pool = _pools(size=1)
    sender = TransferManager(sender_pool)
    sent = _record(sender)
    data = b"x" * 40000

    sender.send("early.bin", data)
    await asyncio.sleep(0.05)  # META and every chunk are waiting in the receiver pool
    receiver = TransferManager(receiver_pool, save_dir=str(tmp_path))
    received = _record(receiver)

    await wait_until(lambda: sent["finish"] and received["finish"])
    assert (tmp_path / "early.bin").read_bytes() == data
    assert sent["failed"] == []
    assert receiver_pool.free_count() == 1


async def test_send_after_link_closed_raises(tmp_path):
    source = tmp_path / "late.bin"
    source.write_bytes(b"late")
    sender, _ = _link()
    sender.pool.close()

    with pytest.raises(LinkClosedError):
        sender.send("late.bin", b"late")
    with pytest.raises(LinkClosedError):
        await sender.send_file(str(source))
