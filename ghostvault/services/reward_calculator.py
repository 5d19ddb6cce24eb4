"""
Coinstake reward computation.
"""

from typing import Any, Dict, List

import structlog

from ..core.constants import (
    AGVR_ACTIVATION_HEIGHT,
    BLACKLISTED_OUTPUT_TYPES,
    DEV_FUND_ADDRESSES,
)
from ..core.exceptions import RPCNotFoundError, ValidationError
from ..models.records import BlockReward
from .node_client import NodeClient, address_from_vout


logger = structlog.get_logger(__name__)


def _decoded(tx: Dict[str, Any], field: str) -> List[Dict[str, Any]]:
    decoded = tx.get("decoded")
    if not isinstance(decoded, dict):
        raise ValidationError("No decoded value", {"txid": tx.get("txid")})
    items = decoded.get(field)
    if not isinstance(items, list):
        raise ValidationError(f"{field} not found", {"txid": tx.get("txid")})
    return items


class RewardCalculator:
    """Splits a coinstake into stake reward and AGVR reward."""

    def __init__(self, node: NodeClient):
        self.node = node
        self.logger = logger.bind(service="reward_calculator")

    async def get_block_reward(self, txid: str, height: int) -> BlockReward:
        """
        Compute the reward carried by the coinstake ``txid`` at ``height``.

        Inputs are valued by resolving their previous outputs. The first
        resolved input names the stake kernel. When the node does not know a
        previous transaction the kernel falls back to output 1's address;
        any other node failure propagates so nothing is recorded.
        Outputs of type data/anon/blind and outputs to the dev fund are not
        counted.
        """
        tx = await self.node.get_transaction(txid)
        vin = _decoded(tx, "vin")
        vout = _decoded(tx, "vout")

        in_amount = 0
        stake_kernel = ""

        for tx_in in vin:
            prev_txid = tx_in.get("txid")
            prev_n = int(tx_in.get("vout", 0))
            try:
                prev_tx = await self.node.get_transaction(prev_txid)
            except RPCNotFoundError as e:
                self.logger.warning("Previous transaction unavailable", txid=prev_txid, error=str(e))
                stake_kernel = address_from_vout(vout[1]) if len(vout) > 1 else ""
                continue

            prev_out = _decoded(prev_tx, "vout")[prev_n]
            in_amount += int(prev_out.get("valueSat", 0))
            if not stake_kernel:
                stake_kernel = address_from_vout(prev_out)

        is_agvr = height >= AGVR_ACTIVATION_HEIGHT and "gvr_fund_cfwd" not in vout[0]

        agvr_reward = 0
        if is_agvr:
            agvr_index = 1 if address_from_vout(vout[1]) != stake_kernel else 2
            agvr_reward = int(vout[agvr_index].get("valueSat", 0))

        vout_total = 0
        is_coldstake = False
        for tx_out in vout:
            if tx_out.get("type", "") in BLACKLISTED_OUTPUT_TYPES:
                continue
            if address_from_vout(tx_out) in DEV_FUND_ADDRESSES:
                continue
            if "stakeaddresses" in (tx_out.get("scriptPubKey") or {}):
                is_coldstake = True
            vout_total += int(tx_out.get("valueSat", 0))

        stake_reward = vout_total - in_amount - agvr_reward

        return BlockReward(
            total_reward=agvr_reward + stake_reward,
            stake_reward=stake_reward,
            agvr_reward=agvr_reward,
            stake_kernel=stake_kernel,
            is_coldstake=is_coldstake,
        )
