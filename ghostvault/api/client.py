"""
Client for the internal RPC surface.

Used by the event listeners and the operator CLI. Transport failures are
retried with backoff; error envelopes from the server are raised as
``GhostVaultException`` without retrying.
"""

from typing import Any, Dict, Optional

import aiohttp
import structlog

from ..core.config import settings
from ..core.exceptions import ExternalServiceError, GhostVaultException
from ..core.retry import retry_with_timeout


logger = structlog.get_logger(__name__)

# Calls that legitimately run for a long time
LONG_CALL_TIMEOUTS = {
    "import_wallet": settings.import_wallet_timeout,
}


class GVClient:
    """Async client for ``POST /rpc/<method>``."""

    def __init__(
        self,
        address: Optional[str] = None,
        timeout: Optional[float] = None,
        attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ):
        self.base_url = f"http://{address or settings.cli_address}"
        self.timeout = timeout or settings.rpc_call_timeout
        self.attempts = attempts or settings.rpc_call_attempts
        self.backoff_base = backoff_base if backoff_base is not None else settings.rpc_backoff_base
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "GVClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post(self, method: str, params: Dict[str, Any]) -> Any:
        session = await self._get_session()
        async with session.post(f"{self.base_url}/rpc/{method}", json=params) as response:
            body = await response.json(content_type=None)

        if not isinstance(body, dict):
            raise ExternalServiceError("Malformed RPC response", {"method": method})
        if not body.get("success", False):
            raise GhostVaultException(
                body.get("message") or "RPC call failed",
                body.get("error_code") or "UNKNOWN_ERROR",
                body.get("details") or {},
            )
        return body.get("data")

    async def call(self, method: str, **params: Any) -> Any:
        """Invoke ``method`` with named parameters and return its result."""
        return await retry_with_timeout(
            lambda: self._post(method, params),
            name=method,
            attempts=self.attempts,
            timeout=LONG_CALL_TIMEOUTS.get(method, self.timeout),
            backoff_base=self.backoff_base,
            retry_on=(aiohttp.ClientError,),
            no_retry=(GhostVaultException,),
        )

    async def health(self) -> Dict[str, Any]:
        session = await self._get_session()
        async with session.get(f"{self.base_url}/health") as response:
            response.raise_for_status()
            return await response.json()

    # Event ingest

    async def new_block(self, block_hash: str) -> None:
        await self.call("new_block", block_hash=block_hash)

    async def new_wallet_tx(self, txid: str, wallet: str) -> None:
        await self.call("new_wallet_tx", txid=txid, wallet=wallet)

    async def new_remote_block(self, block_hash: str, height: int) -> None:
        await self.call("new_remote_block", block_hash=block_hash, height=height)

    async def getblockcount(self) -> int:
        return await self.call("getblockcount")

    async def import_wallet(self, mnemonic: str, name: str) -> str:
        return await self.call("import_wallet", mnemonic=mnemonic, name=name)
