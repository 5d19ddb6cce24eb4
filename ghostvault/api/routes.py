"""
Internal RPC routes.

Every operation is ``POST /rpc/<method>`` with a JSON object of named
parameters; the result is wrapped in the success envelope.
"""

from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, Type

import structlog
from fastapi import APIRouter, Body, Depends, Request
from pydantic import BaseModel

from ..core.exceptions import NotFoundError
from ..core.store import Store
from ..reconciler.operator import OperatorService
from .schemas import (
    AddressParams,
    BarChartParams,
    BotAnnounceParams,
    ChartParams,
    HealthResponse,
    ImportWalletParams,
    NewBlockParams,
    NewRemoteBlockParams,
    NewWalletTxParams,
    NoParams,
    PayoutMinParams,
    RewardIntervalParams,
    RewardModeParams,
    RPCParams,
    SuccessResponse,
    TelegramBotParams,
    TimezoneParams,
    create_success_response,
)


logger = structlog.get_logger(__name__)

router = APIRouter()


class RPCMethod(NamedTuple):
    params: Type[RPCParams]
    handler: Callable[[OperatorService, Any], Awaitable[Any]]


RPC_METHODS: Dict[str, RPCMethod] = {
    "getblockcount": RPCMethod(NoParams, lambda op, p: op.getblockcount()),
    "shutdown": RPCMethod(NoParams, lambda op, p: op.shutdown()),
    "force_resync": RPCMethod(NoParams, lambda op, p: op.force_resync()),
    "set_reward_mode": RPCMethod(RewardModeParams, lambda op, p: op.set_reward_mode(p.mode, p.address)),
    "set_payout_min": RPCMethod(PayoutMinParams, lambda op, p: op.set_payout_min(p.min_payout)),
    "get_ext_pub_key": RPCMethod(NoParams, lambda op, p: op.get_ext_pub_key()),
    "set_reward_interval": RPCMethod(RewardIntervalParams, lambda op, p: op.set_reward_interval(p.interval)),
    "enable_telegram_bot": RPCMethod(TelegramBotParams, lambda op, p: op.enable_telegram_bot(p.token, p.user)),
    "disable_telegram_bot": RPCMethod(NoParams, lambda op, p: op.disable_telegram_bot()),
    "new_block": RPCMethod(NewBlockParams, lambda op, p: op.new_block(p.block_hash)),
    "get_daemon_state": RPCMethod(NoParams, lambda op, p: op.get_daemon_state()),
    "new_wallet_tx": RPCMethod(NewWalletTxParams, lambda op, p: op.new_wallet_tx(p.txid, p.wallet)),
    "process_daemon_update": RPCMethod(NoParams, lambda op, p: op.process_daemon_update()),
    "process_payouts": RPCMethod(NoParams, lambda op, p: op.process_payouts()),
    "start_server_tasks": RPCMethod(NoParams, lambda op, p: op.start_server_tasks()),
    "set_bot_announce": RPCMethod(BotAnnounceParams, lambda op, p: op.set_bot_announce(p.msg_type, p.enabled)),
    "get_version_info": RPCMethod(NoParams, lambda op, p: op.get_version_info()),
    "check_chain": RPCMethod(NoParams, lambda op, p: op.check_chain()),
    "get_reward_options": RPCMethod(NoParams, lambda op, p: op.get_reward_options()),
    "validate_address": RPCMethod(AddressParams, lambda op, p: op.validate_address(p.address)),
    "get_daemon_online": RPCMethod(NoParams, lambda op, p: op.get_daemon_online()),
    "get_stake_barchart_data": RPCMethod(
        BarChartParams, lambda op, p: op.get_stake_barchart_data(p.start, p.end, p.division)
    ),
    "get_earnings_chart_data": RPCMethod(ChartParams, lambda op, p: op.get_earnings_chart_data(p.start, p.end)),
    "set_timezone": RPCMethod(TimezoneParams, lambda op, p: op.set_timezone(p.timezone)),
    "get_pending_rewards": RPCMethod(NoParams, lambda op, p: op.get_pending_rewards()),
    "get_overview": RPCMethod(NoParams, lambda op, p: op.get_overview()),
    "get_mnemonic": RPCMethod(NoParams, lambda op, p: op.get_mnemonic()),
    "import_wallet": RPCMethod(ImportWalletParams, lambda op, p: op.import_wallet(p.mnemonic, p.name)),
    "new_remote_block": RPCMethod(
        NewRemoteBlockParams, lambda op, p: op.new_remote_block(p.block_hash, p.height)
    ),
}


def get_operator(request: Request) -> OperatorService:
    return request.app.state.operator


def get_store(request: Request) -> Store:
    return request.app.state.store


def _jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    return result


@router.get(
    "/health",
    response_model=HealthResponse,
    tags=["System"],
    summary="Readiness",
)
async def health(store: Store = Depends(get_store)):
    readiness = await store.get_readiness()
    return HealthResponse(**readiness.model_dump())


@router.post(
    "/rpc/{method}",
    response_model=SuccessResponse,
    tags=["RPC"],
    summary="Call an internal RPC method",
)
async def call_method(
    method: str,
    params: Optional[Dict[str, Any]] = Body(default=None),
    operator: OperatorService = Depends(get_operator),
):
    rpc = RPC_METHODS.get(method)
    if rpc is None:
        raise NotFoundError(f"Unknown method: {method}", {"method": method})

    parsed = rpc.params.model_validate(params or {})
    logger.debug("RPC method called", method=method)
    result = await rpc.handler(operator, parsed)
    return create_success_response(data=_jsonable(result))
