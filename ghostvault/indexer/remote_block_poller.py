"""
Remote best-block feed.

Polls the public reference nodes for their chain tip and forwards every new
tip as a ``new_remote_block`` event.
"""

import asyncio
from typing import Optional, Protocol

import aiohttp
import structlog

from ..core.config import settings
from ..core.exceptions import GhostVaultException, RemoteNodeError
from ..core.store import Store
from ..services.remote_nodes import RemoteNodes


logger = structlog.get_logger(__name__)


class RemoteBlockSink(Protocol):
    async def new_remote_block(self, block_hash: str, height: int) -> None: ...


class RemoteBlockPoller:
    def __init__(
        self,
        remote: RemoteNodes,
        store: Store,
        sink: RemoteBlockSink,
        interval: Optional[int] = None,
        ready_poll_interval: float = 1.0,
    ):
        self.remote = remote
        self.store = store
        self.sink = sink
        self.interval = interval or settings.remote_poll_interval
        self.ready_poll_interval = ready_poll_interval
        self.last_hash: Optional[str] = None
        self.running = False
        self.logger = logger.bind(service="remote_block_poller")

    async def poll_once(self) -> bool:
        """Fetch the remote tip; True when a new block was forwarded."""
        info = await self.remote.get_blockchain_info()
        block_hash = info.get("bestblockhash")
        if not block_hash or block_hash == self.last_hash:
            return False

        await self.sink.new_remote_block(block_hash, int(info.get("blocks", 0)))
        self.last_hash = block_hash
        return True

    async def start(self) -> None:
        while not (await self.store.get_readiness()).ready:
            await asyncio.sleep(self.ready_poll_interval)

        self.logger.info("Starting remote block poller", interval=self.interval)
        self.running = True

        while self.running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except (RemoteNodeError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.logger.warning("Remote tip unavailable", error=str(e))
            except GhostVaultException as e:
                self.logger.error("Failed to forward remote block", error=e.message)
            await asyncio.sleep(self.interval)

        self.logger.info("Remote block poller stopped")

    async def stop(self) -> None:
        self.running = False
