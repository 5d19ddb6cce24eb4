"""
Ghost node JSON-RPC gateway.

Speaks JSON-RPC 1.0 over HTTP with basic auth to ghostd, either at the root
path or at ``/wallet/<name>`` for wallet calls. Transport failures are mapped
onto the ``NodeRPCError`` hierarchy:

* 401 -> ``RPCAuthError`` (credentials are wrong, fatal)
* 404 -> ``RPCMethodNotFoundError`` (binary mismatch, fatal)
* connection refused -> the node is relaunched, ``NodeConnectionError`` raised
* RPC error -5 -> ``RPCNotFoundError`` (unknown transaction, block or key)
"""

import asyncio
import copy
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import structlog

from ..core.config import ConfigStore, settings
from ..core.exceptions import (
    NodeConnectionError,
    NodeRPCError,
    RPCAuthError,
    RPCMethodNotFoundError,
    RPCNotFoundError,
)


logger = structlog.get_logger(__name__)

COIN_DECIMALS = 100_000_000

# RPC_INVALID_ADDRESS_OR_KEY in the node's protocol.h
RPC_NOT_FOUND_CODE = -5


def from_sat(value: int) -> float:
    """Satoshis to coins."""
    return value / COIN_DECIMALS


def to_sat(value: float) -> int:
    """Coins to satoshis."""
    return int(round(value * COIN_DECIMALS))


def precise(value: float) -> float:
    """Round to 8 decimal places."""
    return round(value * COIN_DECIMALS) / COIN_DECIMALS


def address_from_vout(vout: Dict[str, Any]) -> str:
    """First address of an output's scriptPubKey, or an empty string."""
    addresses = (vout.get("scriptPubKey") or {}).get("addresses")
    if isinstance(addresses, list) and addresses and isinstance(addresses[0], str):
        return addresses[0]
    return ""


class NodeClient:
    """
    Async client for one wallet context of the node.

    ``wallet`` selects the RPC path: ``"cold"`` uses the configured staking
    wallet, ``"hot"`` the hot wallet and ``"no-wallet"`` the root path.
    Calls against any other wallet name go through ``with_wallet``, which
    returns a separate client and leaves this one untouched.
    """

    def __init__(
        self,
        config: ConfigStore,
        wallet: str = "cold",
        timeout: Optional[float] = None,
        on_connection_refused: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        if wallet not in ("cold", "hot", "no-wallet"):
            raise ValueError(f"Invalid wallet: {wallet}")

        self.config = config
        self.wallet = wallet
        self.timeout = timeout or settings.node_rpc_timeout
        self.on_connection_refused = on_connection_refused
        self._wallet_override: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._relaunch_lock = asyncio.Lock()
        self.logger = logger.bind(service="node_client", wallet=wallet)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "NodeClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def with_wallet(self, wallet_name: str) -> "NodeClient":
        """
        A client bound to ``wallet_name`` (``""`` for the root path).

        The new client has its own HTTP session; use it as an async context
        manager so the session is closed afterwards.
        """
        client = copy.copy(self)
        client._wallet_override = wallet_name
        client._session = None
        client._relaunch_lock = asyncio.Lock()
        client.logger = self.logger.bind(wallet_name=wallet_name or "<root>")
        return client

    async def wallet_name(self) -> str:
        if self._wallet_override is not None:
            return self._wallet_override
        conf = await self.config.read()
        if self.wallet == "cold":
            return conf.rpc_wallet
        if self.wallet == "hot":
            return conf.rpc_wallet_hot
        return ""

    async def _target(self):
        conf = await self.config.read()
        wallet = await self.wallet_name()
        url = f"http://{conf.rpc_host}:{conf.rpc_port}/"
        if wallet:
            url = f"{url}wallet/{wallet}"
        auth = None
        if conf.rpc_user and conf.rpc_pass:
            auth = aiohttp.BasicAuth(conf.rpc_user, conf.rpc_pass)
        return url, auth

    async def call(self, method: str, *params: Any) -> Any:
        """Invoke ``method`` and return the ``result`` member of the reply."""
        url, auth = await self._target()
        payload = {"jsonrpc": "1.0", "id": "2", "method": method, "params": list(params)}
        self.logger.debug("RPC call", method=method, params=params)

        session = await self._get_session()
        try:
            async with session.post(url, json=payload, auth=auth) as response:
                if response.status == 401:
                    raise RPCAuthError("401 Unauthorized", {"method": method})
                if response.status == 404:
                    raise RPCMethodNotFoundError(method)

                text = await response.text()
                try:
                    body = json.loads(text) if text else {}
                except json.JSONDecodeError:
                    raise NodeRPCError(
                        f"Invalid response from node ({response.status})",
                        {"method": method, "status": response.status},
                    )

        except aiohttp.ClientConnectorError as e:
            if isinstance(e.os_error, ConnectionRefusedError) or "refused" in str(e).lower():
                await self._handle_connection_refused()
            raise NodeConnectionError(f"Node unreachable: {e}", {"method": method})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NodeConnectionError(
                f"Node request failed: {e or type(e).__name__}", {"method": method}
            )

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            if code == RPC_NOT_FOUND_CODE:
                raise RPCNotFoundError(message, {"method": method, "rpc_code": code})
            raise NodeRPCError(message, {"method": method, "rpc_code": code})

        if response.status >= 400:
            raise NodeRPCError(
                f"Node returned HTTP {response.status}", {"method": method, "status": response.status}
            )

        return body.get("result") if isinstance(body, dict) else None

    async def _handle_connection_refused(self) -> None:
        if self.on_connection_refused is None or self._relaunch_lock.locked():
            return
        async with self._relaunch_lock:
            self.logger.warning("Node refused connection, relaunching daemon")
            try:
                await self.on_connection_refused()
            except Exception as e:
                self.logger.error("Daemon relaunch failed", error=str(e))

    # Chain

    async def getblockcount(self) -> int:
        return await self.call("getblockcount")

    async def getblockchaininfo(self) -> Dict[str, Any]:
        return await self.call("getblockchaininfo")

    async def getnetworkinfo(self) -> Dict[str, Any]:
        return await self.call("getnetworkinfo")

    async def getblock(self, block_hash: str, verbosity: int = 1) -> Dict[str, Any]:
        return await self.call("getblock", block_hash, verbosity)

    async def getuptime(self) -> int:
        return await self.call("uptime")

    async def is_syncing(self) -> bool:
        """True during initial block download or while blocks lag headers."""
        info = await self.getblockchaininfo()
        return bool(info.get("initialblockdownload")) or info.get("blocks") != info.get("headers")

    async def call_status(self) -> Optional[Dict[str, Any]]:
        """``getblockchaininfo`` or None when the node does not answer. Bad credentials raise."""
        try:
            return await self.getblockchaininfo()
        except RPCAuthError:
            raise
        except NodeRPCError:
            return None

    async def wait_for_daemon_startup(self, poll_interval: float = 1.0, settle: float = 3.0) -> None:
        if await self.call_status() is None:
            self.logger.info("Waiting for Ghost daemon to startup...")
            while await self.call_status() is None:
                await asyncio.sleep(poll_interval)
            await asyncio.sleep(settle)
        self.logger.info("Ghost daemon is ready...")

    async def stop(self) -> Any:
        return await self.call("stop")

    # Staking

    async def getstakinginfo(self) -> Dict[str, Any]:
        return await self.call("getstakinginfo")

    async def getcoldstakinginfo(self) -> Dict[str, Any]:
        return await self.call("getcoldstakinginfo")

    async def get_balances(self) -> Dict[str, Any]:
        return await self.call("getbalances")

    # Transactions

    async def get_transaction(self, txid: str) -> Dict[str, Any]:
        return await self.call("gettransaction", txid, True, True)

    async def listsinceblock(self, block_hash: str) -> Dict[str, Any]:
        return await self.call("listsinceblock", block_hash, 1, True)

    async def filtertransactions(self, options: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.call("filtertransactions", options)

    async def list_unspent(self, unspent_type: str) -> List[Dict[str, Any]]:
        if unspent_type == "anon":
            return await self.call("listunspentanon", 12, 9999999, [], False)
        return await self.call("listunspent", 1, 9999999, [], False)

    async def sendtypeto(
        self,
        in_type: str,
        out_type: str,
        outputs: List[Dict[str, Any]],
        inputs: List[Dict[str, Any]],
        fee_rate: float,
        test_fee: bool,
    ) -> Any:
        return await self.call(
            "sendtypeto", in_type, out_type, outputs, "", "", 12, 1, test_fee,
            {"feeRate": fee_rate, "inputs": inputs},
        )

    # Addresses

    async def validate_address(self, address: str) -> Dict[str, Any]:
        return await self.call("validateaddress", address)

    async def is_valid_address(self, address: str) -> bool:
        result = await self.validate_address(address)
        return isinstance(result, dict) and bool(result.get("isvalid"))

    async def get_address_info(self, address: str) -> Dict[str, Any]:
        return await self.call("getaddressinfo", address)

    async def getnewaddress(self) -> str:
        return await self.call("getnewaddress")

    async def getnewextaddress(self) -> str:
        return await self.call("getnewextaddress")

    async def getnewstealthaddress(self) -> str:
        return await self.call("getnewstealthaddress")

    async def derive_range_key(self, index: int, ext_pub_key: str) -> str:
        result = await self.call("deriverangekeys", index, index, ext_pub_key)
        return result[0]

    async def build_script(self, stake_addr: str, spend_addr: str) -> Dict[str, Any]:
        return await self.call(
            "buildscript",
            {"recipe": "ifcoinstake", "addrstake": stake_addr, "addrspend": spend_addr},
        )

    # Wallets

    async def list_wallets(self) -> List[str]:
        return await self.call("listwallets")

    async def load_wallet(self, wallet: str) -> Any:
        if wallet in await self.list_wallets():
            return "Wallet already loaded, ok"
        return await self.call("loadwallet", wallet, True)

    async def unload_wallet(self, wallet: str) -> Any:
        return await self.call("unloadwallet", wallet, False)

    async def create_wallet(self, wallet: str) -> Any:
        return await self.call("createwallet", wallet, False, False, "", False, False, True)

    async def import_master_key(self, mnemonic: str, label: str, scan_from: Optional[int] = None) -> Any:
        params: List[Any] = [mnemonic, "", False, label, label]
        if scan_from is not None:
            params.append(scan_from)
        return await self.call("extkeyimportmaster", *params)

    async def get_new_mnemonic(self) -> Dict[str, Any]:
        return await self.call("mnemonic", "new")

    async def validate_mnemonic(self, mnemonic: str) -> bool:
        try:
            await self.call("mnemonic", "decode", "", mnemonic)
            return True
        except NodeRPCError:
            return False

    async def get_reward_addr_from_wallet(self) -> Optional[str]:
        result = await self.call("walletsettings", "stakingoptions")
        options = (result or {}).get("stakingoptions")
        if isinstance(options, dict):
            return options.get("rewardaddress")
        return None

    async def set_reward_addr_in_wallet(self, reward_addr: Optional[str]) -> Any:
        options = {"rewardaddress": reward_addr} if reward_addr else {}
        return await self.call("walletsettings", "stakingoptions", options)
