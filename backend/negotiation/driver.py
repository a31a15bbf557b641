"""
Negotiation driver.

Drives an RTCPeerConnection through the producer or consumer side of
the offer/answer/ice handshake over the signaling client, and hands
back the pool of open data channels.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from config import ICE_SERVERS, NEGOTIATION_TIMEOUT, POOL_SIZE
from signaling.client import SignalingClient
from transfer.pool import DataChannelPool, PoolError

logger = logging.getLogger(__name__)


class NegotiationError(RuntimeError):
    """The peer link could not be established."""


class NegotiationTimeout(NegotiationError):
    """The peer link was not established in time."""


class Role(str, Enum):
    PRODUCER = "producer"
    CONSUMER = "consumer"


def create_peer_connection() -> RTCPeerConnection:
    """Build a peer connection using the configured ICE servers."""
    ice_servers = [RTCIceServer(urls=url) for url in ICE_SERVERS]
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))


# --- ICE candidates ---

def candidate_to_dict(candidate: RTCIceCandidate) -> dict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: dict) -> RTCIceCandidate:
    sdp = data["candidate"]
    if sdp.startswith("candidate:"):
        sdp = sdp.split(":", 1)[1]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class IceCandidateQueue:
    """
    Applies remote ICE candidates in arrival order.

    Candidates that arrive before the remote description are held until
    it is set. A candidate that fails to apply is logged and skipped.
    """

    def __init__(self, pc) -> None:
        self._pc = pc
        self._queue: asyncio.Queue = asyncio.Queue()
        self._remote_set = asyncio.Event()
        self._worker: asyncio.Task | None = None

    def start(self) -> None:
        self._worker = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None

    def put(self, data: dict) -> None:
        self._queue.put_nowait(data)

    def remote_description_set(self) -> None:
        self._remote_set.set()

    async def _run(self) -> None:
        await self._remote_set.wait()
        while True:
            data = await self._queue.get()
            if not isinstance(data, dict) or not data.get("candidate"):
                logger.debug(f"Skipping empty ICE candidate {data!r}")
                continue
            try:
                await self._pc.addIceCandidate(candidate_from_dict(data))
                logger.debug(f"Added ICE candidate {data['candidate']}")
            except Exception as e:
                logger.warning(f"Failed to add ICE candidate {data.get('candidate')!r}: {e}")


def _forward_local_candidates(pc, signaling: SignalingClient) -> None:
    pending: set[asyncio.Future] = set()

    def sent(future: asyncio.Future) -> None:
        pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.warning(f"Failed to send ICE candidate: {future.exception()}")

    def on_ice_candidate(candidate) -> None:
        if candidate:
            future = asyncio.ensure_future(signaling.send_ice(candidate_to_dict(candidate)))
            pending.add(future)
            future.add_done_callback(sent)

    pc.on("icecandidate", on_ice_candidate)


# --- Roles ---

@dataclass
class PeerLink:
    """An established set of data channels to one peer."""
    role: Role
    pin: int
    pc: Any
    pool: DataChannelPool
    _ice: IceCandidateQueue | None = field(default=None, repr=False)

    async def close(self) -> None:
        if self._ice is not None:
            self._ice.stop()
        self.pool.close()
        await self.pc.close()


async def _establish(
    role: Role, pin: int, pc, pool: DataChannelPool, ice: IceCandidateQueue, timeout: float | None
) -> PeerLink:
    try:
        await asyncio.wait_for(pool.wait_ready(), timeout=timeout)
    except asyncio.TimeoutError:
        await _abort(pc, pool, ice)
        raise NegotiationTimeout(f"No data channels within {timeout}s ({role.value}, pin {pin})")
    except PoolError as e:
        await _abort(pc, pool, ice)
        raise NegotiationError(str(e)) from e

    logger.info(f"Peer link established as {role.value} on pin {pin}")
    return PeerLink(role=role, pin=pin, pc=pc, pool=pool, _ice=ice)


async def _abort(pc, pool: DataChannelPool, ice: IceCandidateQueue) -> None:
    ice.stop()
    pool.close()
    await pc.close()


async def start_as_producer(
    signaling: SignalingClient,
    on_pin: Callable[[int], Any] | None = None,
    *,
    pool_size: int = POOL_SIZE,
    pc_factory: Callable[[], Any] = create_peer_connection,
    timeout: float | None = NEGOTIATION_TIMEOUT,
) -> PeerLink:
    """
    Host a pin and wait for a consumer.

    The producer receives the consumer's channels (passive pool) and
    answers its offer. The timeout runs from the moment the offer
    arrives, so waiting for someone to type the pin is unbounded.
    """
    pc = pc_factory()
    pool = DataChannelPool(pc, pool_size)
    pool.initialize(passive=True)
    ice = IceCandidateQueue(pc)
    offer_received = asyncio.Event()
    got_offer = False
    _forward_local_candidates(pc, signaling)

    async def on_offer(sdp: str) -> None:
        nonlocal got_offer
        got_offer = True
        offer_received.set()
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
            ice.remote_description_set()
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            await signaling.send_answer(pc.localDescription.sdp)
            logger.debug("Producer sent answer")
        except Exception as e:
            logger.error(f"Failed to answer offer: {e}")

    signaling.on_offer(on_offer)
    signaling.on_ice(ice.put)
    signaling.on_close(offer_received.set)
    ice.start()

    try:
        pin = await signaling.join()
    except Exception:
        await _abort(pc, pool, ice)
        raise
    if on_pin is not None:
        on_pin(pin)

    await offer_received.wait()
    if not got_offer:
        await _abort(pc, pool, ice)
        raise NegotiationError(f"Relay closed before a consumer joined pin {pin}")
    return await _establish(Role.PRODUCER, pin, pc, pool, ice, timeout)


async def start_as_consumer(
    signaling: SignalingClient,
    pin: int,
    *,
    pool_size: int = POOL_SIZE,
    pc_factory: Callable[[], Any] = create_peer_connection,
    timeout: float | None = NEGOTIATION_TIMEOUT,
) -> PeerLink:
    """Join a pin, create the channels and send the offer."""
    pc = pc_factory()
    pool = DataChannelPool(pc, pool_size)
    ice = IceCandidateQueue(pc)
    _forward_local_candidates(pc, signaling)

    async def on_answer(sdp: str) -> None:
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
            ice.remote_description_set()
            logger.debug("Consumer applied answer")
        except Exception as e:
            logger.error(f"Failed to apply answer: {e}")

    signaling.on_answer(on_answer)
    signaling.on_ice(ice.put)
    ice.start()

    try:
        await signaling.join(pin)
        # Channels must exist before the offer so it negotiates them
        pool.initialize(passive=False)
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        await signaling.send_offer(pc.localDescription.sdp)
    except Exception:
        await _abort(pc, pool, ice)
        raise
    logger.debug("Consumer sent offer")

    return await _establish(Role.CONSUMER, pin, pc, pool, ice, timeout)
