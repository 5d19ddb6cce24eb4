"""
ZMQ push listener for the node's ``hashblock`` and ``hashwtx`` topics.

Frames are ``[topic, body, sequence]``. A ``hashblock`` body is the 32-byte
block hash; a ``hashwtx`` body is the 32-byte txid followed by the wallet
name. Both hashes arrive in RPC display order.
"""

import asyncio
from typing import List, Optional, Protocol, Sequence, Tuple, Union

import structlog
import zmq
import zmq.asyncio

from ..core.config import ConfigStore
from ..core.exceptions import GhostVaultException, IndexerError
from ..core.store import Store


logger = structlog.get_logger(__name__)

TOPICS = (b"hashblock", b"hashwtx")
HASH_SIZE = 32

BlockEvent = Tuple[str, str]
WalletTxEvent = Tuple[str, str, str]


class EventSink(Protocol):
    async def new_block(self, block_hash: str) -> None: ...

    async def new_wallet_tx(self, txid: str, wallet: str) -> None: ...


def parse_message(frames: Sequence[bytes]) -> Union[BlockEvent, WalletTxEvent]:
    """
    Decode one multipart message.

    Returns ``("hashblock", hash)`` or ``("hashwtx", txid, wallet)``; raises
    ``IndexerError`` for anything else.
    """
    if len(frames) < 2:
        raise IndexerError("Short ZMQ message", {"frames": len(frames)})

    topic, body = bytes(frames[0]), bytes(frames[1])
    if len(body) < HASH_SIZE:
        raise IndexerError("ZMQ body too short", {"topic": topic.decode(errors="replace")})

    if topic == b"hashblock":
        return ("hashblock", body[:HASH_SIZE].hex())
    if topic == b"hashwtx":
        wallet = body[HASH_SIZE:].decode("utf-8", errors="replace")
        return ("hashwtx", body[:HASH_SIZE].hex(), wallet)

    raise IndexerError("Unexpected ZMQ topic", {"topic": topic.decode(errors="replace")})


def listen_addresses(block_host: str, tx_host: str) -> List[str]:
    """Endpoints to connect to, one socket covering both topics when shared."""
    return [block_host] if block_host == tx_host else [block_host, tx_host]


class ZmqListener:
    """Subscribes to the node's ZMQ publishers and forwards events to ``sink``."""

    def __init__(
        self,
        config: ConfigStore,
        store: Store,
        sink: EventSink,
        context: Optional[zmq.asyncio.Context] = None,
        ready_poll_interval: float = 1.0,
    ):
        self.config = config
        self.store = store
        self.sink = sink
        self.context = context or zmq.asyncio.Context.instance()
        self.ready_poll_interval = ready_poll_interval
        self.running = False
        self._socket: Optional[zmq.asyncio.Socket] = None
        self.logger = logger.bind(service="zmq_listener")

    def _connect(self, addresses: Sequence[str]) -> zmq.asyncio.Socket:
        socket = self.context.socket(zmq.SUB)
        for address in addresses:
            socket.connect(address)
        for topic in TOPICS:
            socket.setsockopt(zmq.SUBSCRIBE, topic)
        return socket

    async def wait_until_ready(self) -> None:
        while not (await self.store.get_readiness()).ready:
            await asyncio.sleep(self.ready_poll_interval)

    async def dispatch(self, frames: Sequence[bytes]) -> None:
        """Forward one raw message. Undecodable messages are logged and dropped."""
        try:
            event = parse_message(frames)
        except IndexerError as e:
            self.logger.error("Got unexpected value from ZMQ", error=e.message, details=e.details)
            return

        try:
            if event[0] == "hashblock":
                await self.sink.new_block(event[1])
            else:
                await self.sink.new_wallet_tx(event[1], event[2])
        except GhostVaultException as e:
            self.logger.error("Failed to forward ZMQ event", topic=event[0], error=e.message)

    async def start(self) -> None:
        conf = await self.config.read()
        addresses = listen_addresses(conf.zmq_block_host, conf.zmq_tx_host)

        self.logger.info("Starting ZMQ listener...", addresses=addresses)
        self._socket = self._connect(addresses)

        await self.wait_until_ready()
        self.running = True

        try:
            while self.running:
                try:
                    frames = await self._socket.recv_multipart()
                except zmq.ZMQError as e:
                    self.logger.error("zmq error", error=str(e))
                    await asyncio.sleep(self.ready_poll_interval)
                    continue
                await self.dispatch(frames)
        except asyncio.CancelledError:
            pass
        finally:
            self._socket.close(linger=0)
            self._socket = None
            self.logger.info("ZMQ listener stopped")

    async def stop(self) -> None:
        self.running = False
