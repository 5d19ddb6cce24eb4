"""
Shared fixtures: an in-memory store, a scripted node and the operator
config rooted in a temporary directory.
"""

from typing import Any, Dict, List, Optional

import pytest

from ghostvault.core.config import ConfigStore, GVConfig
from ghostvault.core.exceptions import NodeConnectionError, RPCNotFoundError
from ghostvault.core.store import Store
from ghostvault.reconciler.daemon_state import DaemonState


COLD_WALLET = "GV_COLD"
GENESIS_HASH = "00" * 32


class FakeNode:
    """Scripted stand-in for ``NodeClient``."""

    def __init__(self):
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.blocks: Dict[str, Dict[str, Any]] = {}
        self.chain_info: Dict[str, Any] = {"blocks": 100, "bestblockhash": GENESIS_HASH}
        self.since_block: Dict[str, Any] = {"transactions": []}
        self.history: List[Dict[str, Any]] = []
        self.balances: Dict[str, Any] = {"mine": {"trusted": 0.0, "anon_trusted": 0.0}}
        self.address_info: Dict[str, Dict[str, Any]] = {}
        self.syncing = False
        self.offline = False
        self.calls: List[str] = []
        self.tx_errors: Dict[str, Exception] = {}

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.offline:
            raise NodeConnectionError("Connection refused")

    async def wait_for_daemon_startup(self, poll_interval: float = 1.0, settle: float = 3.0) -> None:
        self.offline = False

    async def getblockcount(self) -> int:
        self._record("getblockcount")
        return int(self.chain_info["blocks"])

    async def getblockchaininfo(self) -> Dict[str, Any]:
        self._record("getblockchaininfo")
        return dict(self.chain_info)

    async def getblock(self, block_hash: str, verbosity: int = 1) -> Dict[str, Any]:
        self._record("getblock")
        if block_hash not in self.blocks:
            raise RPCNotFoundError("Block not found", {"hash": block_hash})
        return self.blocks[block_hash]

    async def is_syncing(self) -> bool:
        self._record("is_syncing")
        return self.syncing

    async def get_transaction(self, txid: str) -> Dict[str, Any]:
        self._record("get_transaction")
        if txid in self.tx_errors:
            raise self.tx_errors[txid]
        if txid not in self.transactions:
            raise RPCNotFoundError("Invalid or non-wallet transaction id", {"txid": txid})
        return self.transactions[txid]

    async def listsinceblock(self, block_hash: str) -> Dict[str, Any]:
        self._record("listsinceblock")
        return self.since_block

    async def filtertransactions(self, options: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._record("filtertransactions")
        return self.history

    async def get_balances(self) -> Dict[str, Any]:
        self._record("get_balances")
        return self.balances

    async def get_address_info(self, address: str) -> Dict[str, Any]:
        return self.address_info.get(address, {})

    async def getcoldstakinginfo(self) -> Dict[str, Any]:
        return {"currently_staking": 1500.0, "coin_in_coldstakeable_script": 1500.0}


class FakeWallet:
    def __init__(self):
        self.sent: List[tuple] = []
        self.zapped: List[tuple] = []

    async def ensure_internal_anon(self) -> str:
        return "internal-anon"

    async def send_ghost(self, address: str, in_type: str, out_type: Optional[str]) -> List[str]:
        self.sent.append((address, in_type, out_type))
        return [f"send{len(self.sent)}"]

    async def zap_ghost(self, spend_address: str, in_type: str) -> List[str]:
        self.zapped.append((spend_address, in_type))
        return [f"zap{len(self.zapped)}"]


class FakeRemote:
    def __init__(self, block_hash: str = GENESIS_HASH):
        self.block_hash = block_hash
        self.best = {"blocks": 100, "bestblockhash": GENESIS_HASH}

    async def get_blockchain_info(self) -> dict:
        return dict(self.best)

    async def get_best_block(self) -> dict:
        return dict(self.best)

    async def get_block_hash(self, height: int) -> str:
        return self.block_hash


class FakeInstaller:
    def __init__(self, version: str = "0.21.1.9", latest: str = "0.21.1.9"):
        self.version = version
        self.latest = latest

    async def get_latest_release(self) -> str:
        return self.latest

    async def get_daemon_version(self) -> str:
        return self.version


def stake_tx(txid: str, timestamp: int, height: int, confirmations: int = 1) -> Dict[str, Any]:
    """Wallet view of a coinstake."""
    return {
        "txid": txid,
        "blocktime": timestamp,
        "blockheight": height,
        "blockhash": f"{height:064x}",
        "confirmations": confirmations,
        "category": "stake",
        "details": [{"category": "stake", "amount": 0.0}],
    }


@pytest.fixture
async def store():
    """Initialized in-memory store."""
    db = Store("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def gv_config(tmp_path) -> GVConfig:
    return GVConfig(
        gv_home=tmp_path,
        daemon_data_dir=tmp_path / "ghost",
        rpc_wallet=COLD_WALLET,
    )


@pytest.fixture
def config(gv_config) -> ConfigStore:
    return ConfigStore(gv_config)


@pytest.fixture
async def bot_config(config) -> ConfigStore:
    """Config with Telegram credentials set, so notifications are queued."""
    await config.update_many({"TELOXIDE_TOKEN": "123456:abc", "TELEGRAM_USER": "42"})
    return config


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def state() -> DaemonState:
    """Node that is online, synced and on the right chain."""
    return DaemonState(online=True, synced=True, good_chain=True, available=True)
