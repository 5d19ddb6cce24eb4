"""
Shared view of the node's health.

One ``DaemonState`` instance is created at startup and handed to every
component that reads or flips node health flags.
"""

import asyncio
from typing import Any

from pydantic import BaseModel


class DaemonStateSnapshot(BaseModel):
    online: bool = False
    synced: bool = False
    available: bool = True
    good_chain: bool = True
    best_block: int = 0
    best_block_hash: str = ""
    remote_best_block: int = 0
    remote_best_block_hash: str = ""
    daemon_version: str = ""
    latest_release: str = ""
    cycle: int = 0

    @property
    def daemon_ready(self) -> bool:
        return self.online and self.synced and self.good_chain and self.available


class DaemonState:
    """
    Lock-guarded node health flags.

    The lock is held only for the field access itself, never across an
    awaited node call.
    """

    def __init__(self, **initial: Any):
        self._state = DaemonStateSnapshot(**initial)
        self._lock = asyncio.Lock()

    async def _get(self, field: str) -> Any:
        async with self._lock:
            return getattr(self._state, field)

    async def _set(self, field: str, value: Any) -> None:
        async with self._lock:
            setattr(self._state, field, value)

    async def snapshot(self) -> DaemonStateSnapshot:
        async with self._lock:
            return self._state.model_copy()

    async def update(self, **values: Any) -> None:
        """Set several fields at once."""
        async with self._lock:
            for field, value in values.items():
                if field not in DaemonStateSnapshot.model_fields:
                    raise AttributeError(f"Unknown daemon state field: {field}")
                setattr(self._state, field, value)

    async def daemon_ready(self) -> bool:
        async with self._lock:
            return self._state.daemon_ready

    async def online(self) -> bool:
        return await self._get("online")

    async def set_online(self, value: bool) -> None:
        await self._set("online", value)

    async def synced(self) -> bool:
        return await self._get("synced")

    async def set_synced(self, value: bool) -> None:
        await self._set("synced", value)

    async def available(self) -> bool:
        return await self._get("available")

    async def set_available(self, value: bool) -> None:
        await self._set("available", value)

    async def good_chain(self) -> bool:
        return await self._get("good_chain")

    async def set_good_chain(self, value: bool) -> None:
        await self._set("good_chain", value)

    async def best_block(self) -> int:
        return await self._get("best_block")

    async def set_best_block(self, value: int) -> None:
        await self._set("best_block", value)

    async def best_block_hash(self) -> str:
        return await self._get("best_block_hash")

    async def set_best_block_hash(self, value: str) -> None:
        await self._set("best_block_hash", value)

    async def remote_best_block(self) -> int:
        return await self._get("remote_best_block")

    async def set_remote_best_block(self, value: int) -> None:
        await self._set("remote_best_block", value)

    async def remote_best_block_hash(self) -> str:
        return await self._get("remote_best_block_hash")

    async def set_remote_best_block_hash(self, value: str) -> None:
        await self._set("remote_best_block_hash", value)

    async def daemon_version(self) -> str:
        return await self._get("daemon_version")

    async def set_daemon_version(self, value: str) -> None:
        await self._set("daemon_version", value)

    async def latest_release(self) -> str:
        return await self._get("latest_release")

    async def set_latest_release(self, value: str) -> None:
        await self._set("latest_release", value)

    async def cycle(self) -> int:
        return await self._get("cycle")

    async def set_cycle(self, value: int) -> None:
        await self._set("cycle", value)
