"""
Remote reference nodes.

Every query is sent to all configured nodes at once and the first successful
JSON answer wins; the rest are cancelled.
"""

import asyncio
from typing import Any, List, Optional, Sequence

import aiohttp
import structlog

from ..core.config import settings
from ..core.exceptions import RemoteNodeError


logger = structlog.get_logger(__name__)


class RemoteNodes:
    """Race GET requests across the public Ghost API nodes."""

    def __init__(self, nodes: Optional[Sequence[str]] = None, timeout: Optional[float] = None):
        self.nodes: List[str] = [n.rstrip("/") for n in (nodes or settings.remote_nodes)]
        self.timeout = timeout or settings.remote_timeout
        self.logger = logger.bind(service="remote_nodes")

    async def _get_json(self, session: aiohttp.ClientSession, url: str) -> Any:
        async with session.get(url) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def first_response(self, path: str) -> Any:
        """Return the first successful answer for ``path`` from any node."""
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            pending = {
                asyncio.create_task(self._get_json(session, f"{node}{path}"))
                for node in self.nodes
            }
            errors: List[str] = []
            try:
                while pending:
                    done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        exc = task.exception()
                        if exc is None:
                            return task.result()
                        errors.append(str(exc) or type(exc).__name__)
            finally:
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)

        raise RemoteNodeError("All remote nodes failed", {"path": path, "errors": errors})

    async def get_blockchain_info(self) -> dict:
        return await self.first_response("/getblockchaininfo/")

    async def get_best_block(self) -> Any:
        return await self.first_response("/getblockcount/")

    async def get_block_hash(self, height: int) -> str:
        """Remote hash of the block at ``height``."""
        result = await self.first_response(f"/api/block-index/{height}/")
        block_hash = result.get("blockHash") if isinstance(result, dict) else None
        if not block_hash:
            raise RemoteNodeError("Remote answer has no blockHash", {"height": height})
        return block_hash
