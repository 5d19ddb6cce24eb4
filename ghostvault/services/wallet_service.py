"""
Wallet operations on top of the node gateway.

Batched sends of unspent outputs, cold-stake "zaps", and wallet bootstrap /
import. Key derivation and signing stay inside the node.
"""

import random
from typing import Any, Dict, List, Optional

import structlog

from ..core.config import ConfigStore
from ..core.constants import DEFAULT_COLD_WALLET, MAX_TX_FEES, SEND_FEE_RATE, UNSPENT_BATCH_SIZE
from ..core.exceptions import NodeRPCError, RPCAuthError, ValidationError
from .node_client import NodeClient, from_sat, precise


logger = structlog.get_logger(__name__)

STAKE_ADDRESS_RANGE = 64


def _is_spendable(unspent: Dict[str, Any], in_type: str) -> bool:
    safe = bool(unspent.get("safe", False))
    if in_type == "ghost":
        return safe and bool(unspent.get("spendable", False))
    return safe


class WalletService:
    """Spending and bootstrap operations for the staking wallet."""

    def __init__(self, node: NodeClient, config: ConfigStore):
        self.node = node
        self.config = config
        self.logger = logger.bind(service="wallet_service")

    async def _send_batches(self, in_type: str, out_type: str, output_template: Dict[str, Any]) -> List[str]:
        """
        Spend every spendable unspent output of ``in_type``.

        Inputs are accumulated and every ``UNSPENT_BATCH_SIZE`` inputs (or at
        the last unspent item) a dry run prices the transaction. It is
        committed once the fee reaches ``MAX_TX_FEES`` or the list is
        exhausted.
        """
        max_fee = from_sat(MAX_TX_FEES)
        txids: List[str] = []
        inputs: List[Dict[str, Any]] = []
        output_amount = 0.0

        unspent = await self.node.list_unspent(in_type) or []
        last_index = len(unspent) - 1

        for index, item in enumerate(unspent):
            if _is_spendable(item, in_type):
                inputs.append({"tx": item["txid"], "n": item["vout"]})
                output_amount += float(item.get("amount", 0))

            is_last = index == last_index
            if not inputs:
                if is_last:
                    return txids
                continue

            if len(inputs) % UNSPENT_BATCH_SIZE != 0 and not is_last:
                continue

            outputs = [dict(output_template, amount=precise(output_amount), subfee=True)]
            quote = await self.node.sendtypeto(in_type, out_type, outputs, inputs, SEND_FEE_RATE, True)
            fee = float(quote.get("fee", 0)) if isinstance(quote, dict) else 0.0

            if fee >= max_fee or is_last:
                txid = await self.node.sendtypeto(in_type, out_type, outputs, inputs, SEND_FEE_RATE, False)
                self.logger.info(
                    "Transaction sent",
                    txid=txid,
                    inputs=len(inputs),
                    amount=precise(output_amount),
                    fee=fee,
                )
                txids.append(txid)
                inputs = []
                output_amount = 0.0

        return txids

    async def send_ghost(self, address: str, in_type: str, out_type: str) -> List[str]:
        """Send all spendable ``in_type`` funds to ``address`` as ``out_type``."""
        return await self._send_batches(in_type, out_type, {"address": address})

    async def get_stake_addr(self) -> str:
        conf = await self.config.read()
        if not conf.ext_pub_key:
            raise ValidationError("No extended public key configured")
        index = random.randrange(STAKE_ADDRESS_RANGE)
        return await self.node.derive_range_key(index, conf.ext_pub_key)

    async def zap_ghost(self, spend_address: str, in_type: str) -> List[str]:
        """Send all spendable ``in_type`` funds into a cold-stake script."""
        stake_address = await self.get_stake_addr()
        script = await self.node.build_script(stake_address, spend_address)
        template = {"address": "script", "script": script["hex"]}
        return await self._send_batches(in_type, "ghost", template)

    async def ensure_internal_anon(self) -> str:
        """Internal stealth address, created and persisted on first use."""
        conf = await self.config.read()
        if conf.internal_anon:
            return conf.internal_anon
        address = await self.node.getnewstealthaddress()
        await self.config.update("INTERNAL_ANON", address)
        return address

    async def create_default_wallet(self, root: NodeClient, wallet_name: str) -> Dict[str, Any]:
        """Create a fresh HD wallet seeded from a new mnemonic."""
        seed = await root.get_new_mnemonic()
        mnemonic = seed["mnemonic"]

        await root.create_wallet(wallet_name)
        async with self.node.with_wallet(wallet_name) as new_wallet:
            await new_wallet.import_master_key(mnemonic, "GV_DEFAULT_COLD_WALLET", -1)
            ext_pub_key = await new_wallet.getnewextaddress()
            internal_anon = await new_wallet.getnewstealthaddress()

        await self.config.update_many({
            "EXT_PUB_KEY": ext_pub_key,
            "INTERNAL_ANON": internal_anon,
            "MNEMONIC": mnemonic,
        })
        return seed

    async def check_wallets(self) -> None:
        """
        Make sure the staking wallet is loaded and consistent with the config.

        Creates a default wallet when none is configured, mirrors the reward
        address into the wallet's staking options and fills in the internal
        stealth address and extended public key when they are missing.
        """
        self.logger.info("Checking wallets...")
        conf = await self.config.read()
        create_on_fail = not conf.rpc_wallet
        cold_wallet = conf.rpc_wallet or DEFAULT_COLD_WALLET

        async with self.node.with_wallet("") as root:
            loaded = await root.list_wallets() if conf.rpc_wallet else []

            if cold_wallet not in loaded:
                self.logger.info("Cold wallet not loaded, attempting to load...", wallet=cold_wallet)
                try:
                    await root.load_wallet(cold_wallet)
                except RPCAuthError:
                    raise
                except NodeRPCError:
                    if not create_on_fail:
                        raise
                    await self.create_default_wallet(root, cold_wallet)
                if conf.rpc_wallet != cold_wallet:
                    await self.config.update("RPC_WALLET", cold_wallet)

        conf = await self.config.read()

        wallet_reward_addr = await self.node.get_reward_addr_from_wallet()
        if conf.reward_address:
            if wallet_reward_addr != conf.reward_address:
                self.logger.info("Setting reward address in wallet...")
                await self.node.set_reward_addr_in_wallet(conf.reward_address)
        elif wallet_reward_addr:
            self.logger.info("Clearing reward address in wallet...")
            await self.node.set_reward_addr_in_wallet(None)

        if not conf.internal_anon:
            await self.config.update("INTERNAL_ANON", await self.node.getnewstealthaddress())

        if not conf.ext_pub_key:
            await self.config.update("EXT_PUB_KEY", await self.node.getnewextaddress())

    async def import_wallet(self, mnemonic: str, wallet_name: str) -> Any:
        """
        Create ``wallet_name`` from ``mnemonic`` and switch staking to it.

        The shared staking client keeps following ``RPC_WALLET`` throughout,
        so a failure at any step leaves it on the previous wallet.
        """
        if not await self.node.validate_mnemonic(mnemonic):
            raise ValidationError("Invalid mnemonic")

        conf = await self.config.read()
        old_wallet: Optional[str] = conf.rpc_wallet

        async with self.node.with_wallet("") as root:
            await root.create_wallet(wallet_name)

            async with self.node.with_wallet(wallet_name) as new_wallet:
                imported = await new_wallet.import_master_key(mnemonic, wallet_name)

                if old_wallet:
                    await root.unload_wallet(old_wallet)

                ext_pub_key = await new_wallet.getnewextaddress()
                internal_anon = await new_wallet.getnewstealthaddress()

        updates = {
            "EXT_PUB_KEY": ext_pub_key,
            "INTERNAL_ANON": internal_anon,
            "MNEMONIC": mnemonic,
            "RPC_WALLET": wallet_name,
        }
        if conf.anon_mode:
            updates["REWARD_ADDRESS"] = internal_anon
        await self.config.update_many(updates)

        await self.check_wallets()
        return imported
