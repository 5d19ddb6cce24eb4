"""
Reward lifecycle reconciler.

Consumes block and wallet-transaction events, keeps the reward ledger, the
pending stake/zap trackers and the chain checkpoint consistent, moves
rewards through the anonymisation and payout path and watches node health.
Events may arrive more than once; every handler tolerates replays.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set

import aiohttp
import structlog

from ..core.config import ConfigStore, settings
from ..core.constants import MIN_TX_VALUE, STAKE_MATURITY, ZAP_MATURITY
from ..core.exceptions import (
    NodeRPCError,
    RemoteNodeError,
    RPCAuthError,
    RPCNotFoundError,
    ValidationError,
)
from ..core.store import Store
from ..models.records import (
    NewStake,
    PendingStakeStatus,
    PendingZapStatus,
    RewardRecord,
    StakingData,
)
from ..services.daemon_installer import DaemonManager
from ..services.node_client import NodeClient, from_sat, to_sat
from ..services.remote_nodes import RemoteNodes
from ..services.reward_calculator import RewardCalculator
from ..services.wallet_service import WalletService
from .daemon_state import DaemonState
from .notifications import (
    NotificationQueue,
    bad_chain_message,
    daemon_offline_message,
    daemon_online_message,
    new_stake_message,
    new_zap_message,
    rewards_message,
    stake_removed_message,
    zap_staking_message,
)
from .stats import RewardStats


logger = structlog.get_logger(__name__)


def _confirmations(tx: Dict[str, Any]) -> int:
    return int(tx.get("confirmations", 0) or 0)


def _details(tx: Dict[str, Any]) -> List[Dict[str, Any]]:
    details = tx.get("details")
    return details if isinstance(details, list) else []


class Reconciler:
    """Owner of the reward, stake, zap and checkpoint records."""

    def __init__(
        self,
        store: Store,
        config: ConfigStore,
        node: NodeClient,
        state: DaemonState,
        remote: RemoteNodes,
        wallet: WalletService,
        installer: DaemonManager,
        notifications: Optional[NotificationQueue] = None,
        stats: Optional[RewardStats] = None,
        calculator: Optional[RewardCalculator] = None,
        on_fatal: Optional[Callable[[], None]] = None,
    ):
        self.store = store
        self.config = config
        self.node = node
        self.state = state
        self.remote = remote
        self.wallet = wallet
        self.installer = installer
        self.notifications = notifications or NotificationQueue(store, config)
        self.stats = stats or RewardStats(store, config)
        self.calculator = calculator or RewardCalculator(node)
        self.on_fatal = on_fatal

        self.bad_chain_count = 0
        self._offline_lock = asyncio.Lock()
        self._monitors: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()
        self.logger = logger.bind(service="reconciler")

    # Lifecycle

    async def initialize(self) -> None:
        """
        Seed the daemon state from the node and the remote reference nodes,
        then catch up on anything missed while GhostVault was down.

        Remote lookups are retried until they succeed.
        """
        conf = await self.config.read()
        if not conf.rpc_wallet:
            raise ValidationError("No wallet set in config file")

        await self.node.wait_for_daemon_startup()
        chain_info = await self.node.getblockchaininfo()
        synced = not await self.node.is_syncing()
        best_block = int(chain_info["blocks"])
        best_block_hash = chain_info["bestblockhash"]

        while True:
            try:
                remote_info, remote_hash, latest_release = await asyncio.gather(
                    self.remote.get_blockchain_info(),
                    self.remote.get_block_hash(best_block),
                    self.installer.get_latest_release(),
                )
                break
            except (RemoteNodeError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.logger.error(
                    "Error fetching remote blockchain info",
                    error=str(e),
                    retry_in=settings.remote_retry_delay,
                )
                await asyncio.sleep(settings.remote_retry_delay)

        version = await self.installer.get_daemon_version()

        await self.state.update(
            online=True,
            synced=synced,
            available=True,
            good_chain=remote_hash == best_block_hash,
            best_block=best_block,
            best_block_hash=best_block_hash,
            remote_best_block=int(remote_info.get("blocks", 0)),
            remote_best_block_hash=remote_info.get("bestblockhash", ""),
            daemon_version=version,
            latest_release=latest_release,
            cycle=0,
        )

        await self.cleanup_missing_tx()
        self.logger.info("Reconciler initialized", best_block=best_block, synced=synced)

    def spawn(self, coro) -> asyncio.Task:
        """Run ``coro`` detached, keeping a reference until it finishes."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, RPCAuthError):
            self.credentials_rejected(exc)
            return
        self.logger.error("Background task failed", error=str(exc), error_type=type(exc).__name__)

    def credentials_rejected(self, exc: RPCAuthError) -> None:
        """Ask the process to exit, the node will not accept these credentials."""
        self.logger.critical("Node rejected the RPC credentials, shutting down", error=exc.message)
        if self.on_fatal is not None:
            self.on_fatal()

    async def start_monitors(self) -> None:
        """Start the sync, chain and online monitors (once)."""
        if self._monitors:
            return
        self._monitors = [
            asyncio.create_task(self.monitor_daemon_sync()),
            asyncio.create_task(self.check_chain_task()),
            asyncio.create_task(self.monitor_daemon_online()),
        ]
        for task in self._monitors:
            task.add_done_callback(self._task_done)
        self.logger.info("Server tasks started")

    async def reconciliation_allowed(self) -> bool:
        """The node flags say healthy and no maintenance window is declared."""
        if not await self.state.daemon_ready():
            return False
        return (await self.store.get_readiness()).daemon_ready

    async def stop(self) -> None:
        tasks = self._monitors + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._monitors = []

    # Block events

    async def new_block(self, block_hash: str) -> None:
        """
        Advance the checkpoint to ``block_hash``.

        Reconciliation of pending zaps and stakes only runs while the daemon
        is ready and the readiness record declares no maintenance; the
        checkpoint moves regardless.
        """
        if block_hash == await self.state.best_block_hash():
            return

        self.logger.info("New block from daemon", block_hash=block_hash)
        block = await self.node.getblock(block_hash, 1)
        height = int(block["height"])
        cycle = await self.state.cycle() + 1
        synced = not await self.node.is_syncing()

        await self.store.set_checkpoint(height, block_hash)

        if await self.reconciliation_allowed():
            await self.process_zap_status()
            await self.process_rewards_status()

        await self.state.update(
            best_block=height,
            best_block_hash=block_hash,
            synced=synced,
            cycle=cycle,
        )

    async def new_remote_block(self, block_hash: str, height: int) -> None:
        if block_hash == await self.state.remote_best_block_hash():
            return
        self.logger.info("New block from remote", block_hash=block_hash, height=height)
        await self.state.update(remote_best_block=height, remote_best_block_hash=block_hash)

    # Wallet transaction events

    async def new_wallet_tx(self, txid: str, wallet: str) -> None:
        conf = await self.config.read()
        if wallet != conf.rpc_wallet:
            return

        tx = await self.node.get_transaction(txid)
        details = _details(tx)
        if not details:
            return

        if details[0].get("category") == "stake":
            await self._handle_new_stake(txid, tx)
        else:
            await self._handle_incoming_zap(txid, tx, details)

    async def _handle_new_stake(self, txid: str, tx: Dict[str, Any]) -> None:
        record = await self.process_stake_transaction(tx)
        self.logger.info("New stake reward", txid=txid, height=record.height, reward=record.reward)

        existing = await self.store.get_stake_status(txid)
        await self.store.set_stake_status(PendingStakeStatus(
            txid=txid,
            confirmations=1,
            timestamp=record.timestamp,
            tg_msg_id=existing.tg_msg_id if existing else None,
        ))

        if not await self.notifications.bot_active():
            return

        cs_info = await self.node.getcoldstakinginfo()
        staking_data = StakingData(
            total_staking=float(cs_info.get("currently_staking", 0)),
            total_coldstaking=float(cs_info.get("coin_in_coldstakeable_script", 0)),
            stakes_24h=await self.stats.get_stakes_days(1),
            stakes_ytd=await self.stats.get_stakes_days(await self.stats.year_start()),
        )
        new_stake = NewStake(
            height=record.height,
            block_hash=record.block_hash,
            txid=record.txid,
            reward=from_sat(record.reward),
            agvr_reward=from_sat(record.agvr_reward),
            total_reward=from_sat(record.total_reward),
            staking_data=staking_data,
        )
        await self.notifications.push(txid, new_stake_message(new_stake), if_absent=True)

    async def _handle_incoming_zap(self, txid: str, tx: Dict[str, Any], details: List[Dict[str, Any]]) -> None:
        amount = 0.0
        is_incoming_zap = False
        for entry in details:
            if entry.get("involvesWatchonly") and entry.get("category") == "receive":
                is_incoming_zap = True
                amount += float(entry.get("amount", 0))

        if not is_incoming_zap:
            return

        confirms = _confirmations(tx)
        if confirms < 0 or confirms >= ZAP_MATURITY:
            return
        if await self.store.get_zap(txid) is not None:
            return

        zap = PendingZapStatus(txid=txid, amount=to_sat(amount), confirmations=confirms)
        await self.store.set_zap(zap)
        self.logger.info("New zap detected", txid=txid, amount=amount)

        if await self.notifications.push(txid, new_zap_message(txid, amount), if_absent=True):
            zap.first_notice = True
            await self.store.set_zap(zap)

    # Reward ingestion

    async def process_stake_transaction(self, tx: Dict[str, Any]) -> RewardRecord:
        """
        Record the reward of a stake transaction in the ledger.

        A replay of an already recorded stake returns the stored record
        without touching the cumulative totals.
        """
        timestamp = int(tx["blocktime"])
        height = int(tx["blockheight"])
        txid = tx["txid"]

        existing = await self.store.get_reward(timestamp)
        if existing is not None and existing.txid == txid:
            record = existing
        else:
            block_reward = await self.calculator.get_block_reward(txid, height)
            last = await self.store.last_reward()
            all_time_reward = block_reward.stake_reward
            all_time_agvr_reward = block_reward.agvr_reward
            if last is not None:
                all_time_reward += last.all_time_reward
                all_time_agvr_reward += last.all_time_agvr_reward

            record = RewardRecord(
                height=height,
                timestamp=timestamp,
                block_hash=tx["blockhash"],
                txid=txid,
                reward=block_reward.stake_reward,
                agvr_reward=block_reward.agvr_reward,
                all_time_reward=all_time_reward,
                all_time_agvr_reward=all_time_agvr_reward,
                address=block_reward.stake_kernel,
                is_coldstake=block_reward.is_coldstake,
            )
            await self.store.set_reward(record)

        confirms = _confirmations(tx)
        if confirms <= STAKE_MATURITY:
            status = await self.store.get_stake_status(txid)
            await self.store.set_stake_status(PendingStakeStatus(
                txid=txid,
                confirmations=confirms,
                timestamp=timestamp,
                tg_msg_id=status.tg_msg_id if status else None,
            ))

        return record

    async def process_received_tx(self, tx: Dict[str, Any]) -> Optional[PendingZapStatus]:
        """Track a watch-only receive from history as a pending zap."""
        if tx.get("category") != "receive" or "confirmations" not in tx:
            return None

        confirms = _confirmations(tx)
        if confirms > ZAP_MATURITY or confirms < 0:
            return None

        txid = tx["txid"]
        zap = await self.store.get_zap(txid)
        if zap is None:
            zap = PendingZapStatus(
                txid=txid,
                amount=to_sat(float(tx.get("amount", 0))),
                confirmations=confirms,
            )
            await self.store.set_zap(zap)
        return zap

    async def import_legacy_history(self) -> None:
        """Import every stake and watch-only receive the wallet knows about."""
        history = await self.node.filtertransactions({
            "count": 0,
            "include_watchonly": True,
            "sort": "confirmations",
        })

        imported = 0
        for tx in history or []:
            if _confirmations(tx) < 0:
                continue

            category = tx.get("category")
            if category == "stake":
                await self.process_stake_transaction(tx)
                imported += 1
            elif category == "receive":
                outputs = tx.get("outputs") or []
                if outputs and outputs[0].get("involvesWatchonly"):
                    await self.process_received_tx(tx)

        self.logger.info("Imported wallet history", stakes=imported)

    async def cleanup_missing_tx(self) -> None:
        """
        Catch up on transactions missed since the last checkpoint.

        Without a checkpoint, or when the node no longer knows the checkpoint
        block, the whole wallet history is imported. Pending zaps are
        refreshed and a fresh checkpoint is written at the end. Node failures
        propagate so the checkpoint never moves past unseen transactions.
        """
        self.logger.info("Checking missed stakes...")
        checkpoint = await self.store.get_checkpoint()

        since = None
        if checkpoint is not None:
            try:
                since = await self.node.listsinceblock(checkpoint.block_hash)
            except RPCNotFoundError as e:
                self.logger.warning(
                    "Checkpoint block unknown to the node, importing full history",
                    block_hash=checkpoint.block_hash,
                    error=str(e),
                )

        if since is None:
            await self.import_legacy_history()
        else:
            transactions = since.get("transactions") or []
            count = 0
            for tx in sorted(transactions, key=_confirmations, reverse=True):
                if tx.get("trusted") is False:
                    continue

                category = tx.get("category")
                if category == "stake":
                    await self.process_stake_transaction(tx)
                    count += 1
                elif category == "receive" and tx.get("involvesWatchonly"):
                    await self.process_received_tx(tx)

            if count:
                self.logger.info("Successfully imported stakes", count=count)

        for zap in await self.store.zaps():
            try:
                tx = await self.node.get_transaction(zap.txid)
            except RPCNotFoundError:
                await self.store.remove_zap(zap.txid)
                continue

            confirms = _confirmations(tx)
            if confirms > ZAP_MATURITY:
                await self.store.remove_zap(zap.txid)
            else:
                zap.confirmations = confirms
                await self.store.set_zap(zap)

        chain_info = await self.node.getblockchaininfo()
        await self.store.set_checkpoint(int(chain_info["blocks"]), chain_info["bestblockhash"])

    # Reconciliation

    async def process_zap_status(self) -> None:
        for zap in await self.store.zaps():
            try:
                tx = await self.node.get_transaction(zap.txid)
            except RPCAuthError:
                raise
            except NodeRPCError as e:
                self.logger.warning("Could not fetch zap transaction", txid=zap.txid, error=str(e))
                continue

            confirms = _confirmations(tx)
            if confirms < 0:
                await self.store.remove_zap(zap.txid)
                continue

            if confirms >= ZAP_MATURITY:
                await self.notifications.push(
                    zap.txid, zap_staking_message(from_sat(zap.amount)), if_absent=True
                )
                await self.store.remove_zap(zap.txid)
                self.logger.info("Zap now staking", txid=zap.txid)
                continue

            zap.confirmations = confirms
            if not zap.first_notice and not await self.store.has_notification(zap.txid):
                message = new_zap_message(zap.txid, from_sat(zap.amount))
                if await self.notifications.push(zap.txid, message):
                    zap.first_notice = True
            await self.store.set_zap(zap)

    async def process_rewards_status(self) -> None:
        """
        Advance every pending stake. A stake is orphaned only when the node
        says the transaction is unknown or no longer a stake; a node that
        cannot answer leaves it for the next block.
        """
        for status in await self.store.stake_statuses():
            try:
                tx = await self.node.get_transaction(status.txid)
            except RPCNotFoundError:
                await self._drop_stake(status)
                continue
            except RPCAuthError:
                raise
            except NodeRPCError as e:
                self.logger.warning("Could not fetch stake transaction", txid=status.txid, error=str(e))
                continue

            details = _details(tx)
            if not details or details[0].get("category") != "stake":
                await self._drop_stake(status)
                await self.notifications.push_status(
                    stake_removed_message(status.tg_msg_id), suffix=status.txid
                )
                continue

            status.confirmations = _confirmations(tx)
            if status.confirmations > STAKE_MATURITY:
                await self.flush_rewards_to_anon()
                await self.store.remove_stake_status(status.txid)
            else:
                await self.store.set_stake_status(status)

    async def _drop_stake(self, status: PendingStakeStatus) -> None:
        self.logger.info("Removing orphaned stake", txid=status.txid, timestamp=status.timestamp)
        await self.store.remove_stake_status(status.txid)
        await self.store.remove_reward(status.timestamp)

    # Flush and payout

    async def flush_rewards_to_anon(self) -> List[str]:
        """Move matured public rewards to the internal stealth address."""
        if not await self.state.daemon_ready():
            return []

        balances = (await self.node.get_balances())["mine"]
        if float(balances.get("trusted", 0)) < from_sat(MIN_TX_VALUE):
            return []

        address = await self.wallet.ensure_internal_anon()
        try:
            txids = await self.wallet.send_ghost(address, "ghost", "anon")
        except RPCAuthError:
            raise
        except NodeRPCError as e:
            self.logger.error("Error sending to address", error=str(e))
            return []

        self.logger.info("Payout to anon address", txids=txids)
        return txids

    async def reward_payout(self) -> List[str]:
        """Pay anonymised rewards out to the configured reward address."""
        if not await self.state.daemon_ready():
            return []

        conf = await self.config.read()
        balances = (await self.node.get_balances())["mine"]
        trusted_anon = float(balances.get("anon_trusted", 0))

        if trusted_anon < from_sat(conf.min_reward_payout) or not conf.anon_reward_address:
            return []

        address = conf.anon_reward_address
        addr_info = await self.node.get_address_info(address)
        out_type: Optional[str] = "anon" if addr_info.get("isstealthaddress") else "ghost"

        try:
            if addr_info.get("is256bit"):
                out_type = None
                txids = await self.wallet.zap_ghost(address, "anon")
            else:
                txids = await self.wallet.send_ghost(address, "anon", out_type)
        except RPCAuthError:
            raise
        except (NodeRPCError, ValidationError) as e:
            self.logger.error("Error sending reward payout", address=address, error=str(e))
            return []

        if not txids:
            return []

        self.logger.info("Reward payout sent", out_type=out_type or "zap", txids=txids)
        await self.notifications.push(txids[0], rewards_message(trusted_anon, txids, out_type))
        return txids

    # Health monitors

    async def _remote_hash(self, height: int) -> str:
        while True:
            try:
                return await self.remote.get_block_hash(height)
            except RemoteNodeError as e:
                self.logger.error(
                    "Error fetching remote block hash",
                    error=str(e),
                    retry_in=settings.remote_retry_delay,
                )
                await asyncio.sleep(settings.remote_retry_delay)

    async def check_chain_once(self) -> Optional[bool]:
        """
        Compare the local best block hash with the remote one at the same
        height. Returns None when the daemon is offline.
        """
        if not await self.state.online():
            return None

        snapshot = await self.state.snapshot()
        remote_hash = await self._remote_hash(snapshot.best_block)
        good_chain = remote_hash == snapshot.best_block_hash
        await self.state.set_good_chain(good_chain)

        if good_chain:
            self.bad_chain_count = 0
            return True

        self.bad_chain_count += 1
        self.logger.warning(
            "Chain mismatch",
            best_block=snapshot.best_block,
            best_block_hash=snapshot.best_block_hash,
            remote_hash=remote_hash,
            streak=self.bad_chain_count,
        )
        if self.bad_chain_count >= settings.bad_chain_alert_threshold:
            await self.notifications.push_status(
                bad_chain_message(snapshot.best_block, snapshot.best_block_hash, remote_hash)
            )
            self.bad_chain_count = 0
        return False

    async def check_chain_task(self) -> None:
        self.logger.info("Starting the chain check monitor...")
        while True:
            try:
                good_chain = await self.check_chain_once()
            except RPCAuthError:
                raise
            except Exception as e:
                self.logger.error("Chain check failed", error=str(e))
                good_chain = None
            delay = settings.chain_check_bad_interval if good_chain is False else settings.chain_check_interval
            await asyncio.sleep(delay)

    async def monitor_daemon_sync(self) -> None:
        self.logger.info("Starting the daemon sync monitor...")
        last_synced: Optional[bool] = None

        while True:
            delay = settings.sync_check_interval
            if await self.state.online():
                try:
                    synced = not await self.node.is_syncing()
                except RPCAuthError:
                    raise
                except NodeRPCError:
                    await self.handle_daemon_offline()
                    await asyncio.sleep(delay)
                    continue

                await self.state.set_synced(synced)
                if not synced:
                    delay = settings.sync_check_syncing_interval
                elif last_synced is False:
                    try:
                        await self.cleanup_missing_tx()
                    except RPCAuthError:
                        raise
                    except NodeRPCError as e:
                        self.logger.error("Catch-up after sync failed, retrying", error=str(e))
                        synced = False
                last_synced = synced

            await asyncio.sleep(delay)

    async def monitor_daemon_online(self) -> None:
        self.logger.info("Starting the daemon online monitor...")
        while True:
            if await self.state.online():
                try:
                    await self.node.getblockcount()
                except RPCAuthError:
                    raise
                except NodeRPCError:
                    await self.handle_daemon_offline()
            await asyncio.sleep(settings.online_check_interval)

    async def handle_daemon_offline(self) -> None:
        """Gate readiness while the node is down and wait for it to return."""
        if self._offline_lock.locked():
            return

        async with self._offline_lock:
            self.logger.warning("Daemon offline, waiting for restart...")
            await self.state.set_online(False)
            await self.store.set_daemon_ready(False, "Daemon offline")

            if settings.is_docker:
                return

            await self.notifications.push_status(daemon_offline_message())
            await self.node.wait_for_daemon_startup()

            await self.store.set_daemon_ready(True)
            await self.state.set_online(True)
            await self.notifications.push_status(daemon_online_message())
            self.logger.info("Daemon back online")
