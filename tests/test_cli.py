import asyncio

import pytest

from cli import _send_all, build_parser
from config import POOL_SIZE
from conftest import FakePeerConnection
from transfer.manager import TransferManager
from transfer.pool import DataChannelPool


def test_join_arguments():
    args = build_parser().parse_args(["--save-dir", "/tmp/in", "join", "1234", "--send", "a.txt", "b.txt"])

    assert args.command == "join"
    assert args.pin == 1234
    assert args.send == ["a.txt", "b.txt"]
    assert args.save_dir == "/tmp/in"
    assert args.pool_size == POOL_SIZE


def test_host_defaults_to_receiving_only():
    args = build_parser().parse_args(["host"])

    assert args.command == "host"
    assert args.send == []


def test_command_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


async def test_send_all_stops_once_link_is_closed(tmp_path):
    source = tmp_path / "a.txt"
    source.write_bytes(b"hello")
    pool = DataChannelPool(FakePeerConnection(), 1)
    manager = TransferManager(pool)
    pool.close()

    await asyncio.wait_for(_send_all(manager, [str(source), str(source)]), 1)

    assert manager.get_tasks() == []
