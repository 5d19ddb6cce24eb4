"""
Test the internal RPC application.
"""

import httpx
import pytest

from ghostvault.api.main import create_app
from ghostvault.api.routes import RPC_METHODS
from ghostvault.core.exceptions import NodeRPCError, RPCAuthError, ValidationError
from ghostvault.models.records import ServerReadiness


BLOCK_HASH = "ab" * 32


class FakeOperator:
    """Records calls made through the RPC surface."""

    def __init__(self):
        self.calls = []
        self.exit_requested = False

    def request_exit(self) -> None:
        self.exit_requested = True

    async def getblockcount(self) -> int:
        return 700_000

    async def new_block(self, block_hash: str) -> None:
        self.calls.append(("new_block", block_hash))

    async def set_reward_interval(self, interval: str) -> str:
        self.calls.append(("set_reward_interval", interval))
        return f"Reward interval set to {interval}"

    async def get_daemon_online(self):
        return ServerReadiness(ready=False, daemon_ready=False, reason="Daemon offline")

    async def check_chain(self) -> bool:
        raise NodeRPCError("Connection refused")

    async def get_ext_pub_key(self) -> str:
        raise ValidationError("Extended public key not set")

    async def get_mnemonic(self):
        raise RPCAuthError("Unauthorized")


@pytest.fixture
def operator() -> FakeOperator:
    return FakeOperator()


@pytest.fixture
async def client(operator, store):
    app = create_app(operator, store)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gv") as http:
        yield http


def test_every_operation_is_routed():
    """The RPC table covers the full operator surface."""
    assert len(RPC_METHODS) == 29
    assert {"new_block", "new_wallet_tx", "new_remote_block", "import_wallet", "shutdown"} <= set(RPC_METHODS)


@pytest.mark.asyncio
async def test_health_reports_readiness(client, store):
    """The health endpoint mirrors the persisted readiness record."""
    await store.set_readiness(ServerReadiness(ready=True, daemon_ready=False, reason="Importing wallet"))

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ready": True, "daemon_ready": False, "reason": "Importing wallet"}


@pytest.mark.asyncio
async def test_success_envelope(client):
    """Results are wrapped in the success envelope."""
    response = await client.post("/rpc/getblockcount")

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["data"] == 700_000
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_named_params_reach_operator(client, operator):
    """Parameters are passed by name to the operator."""
    await client.post("/rpc/new_block", json={"block_hash": BLOCK_HASH})
    response = await client.post("/rpc/set_reward_interval", json={"interval": "6h"})

    assert response.json()["data"] == "Reward interval set to 6h"
    assert operator.calls == [("new_block", BLOCK_HASH), ("set_reward_interval", "6h")]


@pytest.mark.asyncio
async def test_model_results_serialised(client):
    """Model results are returned as plain JSON objects."""
    response = await client.post("/rpc/get_daemon_online")

    assert response.json()["data"] == {"ready": False, "daemon_ready": False, "reason": "Daemon offline"}


@pytest.mark.asyncio
async def test_unknown_method_is_404(client):
    """Unknown methods return the error envelope."""
    response = await client.post("/rpc/mine_block")

    body = response.json()
    assert response.status_code == 404
    assert body["success"] is False
    assert body["error_code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_invalid_params_are_422(client, operator):
    """Bad parameters never reach the operator."""
    short = await client.post("/rpc/new_block", json={"block_hash": "abc"})
    extra = await client.post("/rpc/getblockcount", json={"unexpected": 1})

    assert short.status_code == 422
    assert short.json()["error_code"] == "VALIDATION_ERROR"
    assert extra.status_code == 422
    assert operator.calls == []


@pytest.mark.asyncio
async def test_error_status_mapping(client):
    """Node failures map to 502, operator validation failures to 422."""
    node_failure = await client.post("/rpc/check_chain")
    bad_state = await client.post("/rpc/get_ext_pub_key")

    assert node_failure.status_code == 502
    assert node_failure.json()["error_code"] == "NODE_RPC_ERROR"
    assert bad_state.status_code == 422
    assert bad_state.json()["message"] == "Extended public key not set"


@pytest.mark.asyncio
async def test_auth_failure_requests_exit(client, operator):
    """An unauthorized node call shuts GhostVault down."""
    response = await client.post("/rpc/get_mnemonic")

    assert response.status_code == 502
    assert response.json()["error_code"] == "RPC_AUTH_ERROR"
    assert operator.exit_requested is True
