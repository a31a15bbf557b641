"""
Pindrop peer — command line entry point.

Host a pin or join one, then send files over the peer link and save
whatever the other side sends.
"""

import argparse
import asyncio
import logging
import sys

from config import DEFAULT_SAVE_DIR, POOL_SIZE, RELAY_URL
from negotiation.driver import NegotiationError, start_as_consumer, start_as_producer
from signaling.client import SignalingClient, SignalingError
from transfer.events import EventKind
from transfer.manager import LinkClosedError, NoFreeChannelError, TaskFinished, TransferManager
from transfer.models import TransferDirection, TransferInfo

logger = logging.getLogger("pindrop")

RETRY_DELAY = 0.5  # seconds between attempts when every channel is busy


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Peer-to-peer file transfer paired by pin")
    parser.add_argument("--relay", default=RELAY_URL, help="Relay WebSocket URL")
    parser.add_argument("--save-dir", default=DEFAULT_SAVE_DIR, help="Where received files go")
    parser.add_argument("--pool-size", type=int, default=POOL_SIZE, help="Data channels per link")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    host = sub.add_parser("host", help="Allocate a pin and wait for a peer")
    host.add_argument("--send", nargs="*", default=[], metavar="FILE")

    join = sub.add_parser("join", help="Join the peer holding PIN")
    join.add_argument("pin", type=int)
    join.add_argument("--send", nargs="*", default=[], metavar="FILE")
    return parser


def _format_rate(rate: float) -> str:
    return f"{rate / 1000:.2f} KB/s"


def _watch(manager: TransferManager) -> None:
    def on_task(info: TransferInfo) -> None:
        verb = "Sending" if info.direction == TransferDirection.SEND else "Receiving"
        logger.info(f"{verb} {info.meta.name} ({info.meta.size} bytes)")

    def on_progress(info: TransferInfo) -> None:
        logger.info(
            f"{info.meta.name}: {info.progress_percent:.1f}% "
            f"at {_format_rate(info.progress.rate)}"
        )

    def on_finish(result: TaskFinished) -> None:
        where = f" -> {result.path}" if result.path else ""
        logger.info(f"{result.info.meta.name} done{where}")

    def on_failed(info: TransferInfo) -> None:
        logger.error(f"{info.meta.name} failed: {info.error_message}")

    manager.on(EventKind.TASK, on_task)
    manager.on(EventKind.TASK_PROGRESS, on_progress)
    manager.on(EventKind.TASK_FINISH, on_finish)
    manager.on(EventKind.TASK_FAILED, on_failed)


async def _send_all(manager: TransferManager, paths: list[str]) -> None:
    for path in paths:
        while True:
            try:
                await manager.send_file(path)
                break
            except NoFreeChannelError:
                await asyncio.sleep(RETRY_DELAY)
            except LinkClosedError:
                logger.warning(f"Peer link closed, not sending {path}")
                return
            except OSError as e:
                logger.error(f"Cannot read {path}: {e}")
                break


async def run(args: argparse.Namespace) -> int:
    signaling = SignalingClient(args.relay)
    await signaling.connect()

    try:
        if args.command == "host":
            link = await start_as_producer(
                signaling,
                on_pin=lambda pin: print(f"PIN: {pin}", flush=True),
                pool_size=args.pool_size,
            )
        else:
            link = await start_as_consumer(signaling, args.pin, pool_size=args.pool_size)
    except (NegotiationError, SignalingError) as e:
        logger.error(f"Could not connect to peer: {e}")
        await signaling.close()
        return 1

    manager = TransferManager(link.pool, save_dir=args.save_dir)
    closed = asyncio.Event()
    manager.on(EventKind.CLOSE, closed.set)
    _watch(manager)

    # The relay is only needed until the channels are up
    await signaling.leave()

    try:
        await _send_all(manager, args.send)
        await closed.wait()
    finally:
        await link.close()
    logger.info("Peer link closed")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
