"""
Operator-facing operations behind the internal RPC.

Settings changes return the short human-readable status strings shown by the
CLI and the bot. Long-running maintenance (resync, upgrade, wallet import)
is started in the background; its progress is visible only through the
readiness record.
"""

import asyncio
import os
import re
import shutil
import signal
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

import structlog

from ..core.config import ConfigStore, settings
from ..core.constants import GV_PID_FILE, MIN_TX_VALUE, VERSION
from ..core.exceptions import (
    DaemonInstallError,
    GhostVaultException,
    NodeRPCError,
    RPCAuthError,
    ValidationError,
)
from ..core.store import Store
from ..models.records import ServerReadiness
from ..models.reports import (
    AddressInfo,
    BarChart,
    EarningsChart,
    GVStatus,
    PendingRewards,
    RewardOptions,
    StakingOverview,
    VersionInfo,
)
from ..scheduler import task_scheduler
from ..services.daemon_installer import DaemonManager
from ..services.node_client import NodeClient, from_sat, to_sat
from ..services.telegram_notifier import validate_bot_token
from ..services.wallet_service import WalletService
from .daemon_state import DaemonState
from .notifications import (
    NotificationQueue,
    update_complete_message,
    update_started_message,
)
from .reconciler import Reconciler
from .stats import RewardStats, format_duration, resolve_timezone


logger = structlog.get_logger(__name__)

_INTERVAL_RE = re.compile(r"^(\d+)([smhdwMy])$")
_INTERVAL_UNITS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
    "M": 30 * 24 * 60 * 60,
    "y": 365 * 24 * 60 * 60,
}

_ANNOUNCE_KEYS = {
    "STAKE": ("ANNOUNCE_STAKES",),
    "ZAP": ("ANNOUNCE_ZAPS",),
    "REWARD": ("ANNOUNCE_REWARDS",),
    "ALL": ("ANNOUNCE_STAKES", "ANNOUNCE_ZAPS", "ANNOUNCE_REWARDS"),
}

RESYNC_PATHS = ("blocks", "chainstate", "peers.dat", "banlist.dat")


def parse_interval(value: str) -> Optional[int]:
    """``"15m"`` -> 900. None when the value is not ``<int><unit>``."""
    match = _INTERVAL_RE.match(value.strip())
    if not match:
        return None
    return int(match.group(1)) * _INTERVAL_UNITS[match.group(2)]


def version_number(version: str) -> int:
    """Release versions compare as integers with the dots removed."""
    return int(version.replace(".", ""))


def yes_no(value: bool) -> str:
    return "YES" if value else "NO"


def system_uptime() -> int:
    try:
        return int(time.clock_gettime(time.CLOCK_BOOTTIME))
    except (AttributeError, OSError):
        return int(time.monotonic())


def _exit_process() -> None:
    os.kill(os.getpid(), signal.SIGTERM)


class OperatorService:
    """Settings, queries and maintenance exposed to the operator."""

    def __init__(
        self,
        store: Store,
        config: ConfigStore,
        node: NodeClient,
        state: DaemonState,
        reconciler: Reconciler,
        wallet: WalletService,
        installer: DaemonManager,
        stats: Optional[RewardStats] = None,
        notifications: Optional[NotificationQueue] = None,
        request_exit: Optional[Callable[[], None]] = None,
        shutdown_delay: float = 2.0,
    ):
        self.store = store
        self.config = config
        self.node = node
        self.state = state
        self.reconciler = reconciler
        self.wallet = wallet
        self.installer = installer
        self.stats = stats or reconciler.stats
        self.notifications = notifications or reconciler.notifications
        self.request_exit = request_exit or _exit_process
        self.shutdown_delay = shutdown_delay
        self.logger = logger.bind(service="operator")

    def spawn(self, coro) -> asyncio.Task:
        return self.reconciler.spawn(coro)

    # Event passthrough

    async def new_block(self, block_hash: str) -> None:
        await self.reconciler.new_block(block_hash)

    async def new_wallet_tx(self, txid: str, wallet: str) -> None:
        await self.reconciler.new_wallet_tx(txid, wallet)

    async def new_remote_block(self, block_hash: str, height: int) -> None:
        await self.reconciler.new_remote_block(block_hash, height)

    async def start_server_tasks(self) -> None:
        await self.reconciler.start_monitors()

    async def getblockcount(self) -> int:
        return await self.node.getblockcount()

    # Lifecycle

    async def shutdown(self) -> str:
        conf = await self.config.read()
        (conf.gv_home / GV_PID_FILE).unlink(missing_ok=True)

        if settings.is_docker:
            await self.installer.stop_daemon(self.node)

        self.spawn(self._delayed_exit())
        return "GhostVault going down for shutdown..."

    async def _delayed_exit(self) -> None:
        await asyncio.sleep(self.shutdown_delay)
        self.logger.info("GhostVault shutting down")
        self.request_exit()

    # Settings

    async def get_ext_pub_key(self) -> str:
        conf = await self.config.read()
        if conf.ext_pub_key:
            return conf.ext_pub_key
        ext_pub_key = await self.node.getnewextaddress()
        await self.config.update("EXT_PUB_KEY", ext_pub_key)
        return ext_pub_key

    async def enable_telegram_bot(self, token: str, user: str) -> str:
        if not user.strip().isdigit():
            return "Invalid user ID!"
        if not await validate_bot_token(token):
            return "Invalid bot token!"
        await self.config.update_many({"TELOXIDE_TOKEN": token, "TELEGRAM_USER": user.strip()})
        return "Telegram bot enabled!"

    async def disable_telegram_bot(self) -> str:
        await self.config.update_many({"TELOXIDE_TOKEN": "", "TELEGRAM_USER": ""})
        return "Telegram bot disabled!"

    async def set_reward_interval(self, interval: str) -> str:
        seconds = parse_interval(interval)
        if seconds is None:
            return "Invalid interval!"
        await self.config.update("REWARD_INTERVAL", str(seconds))
        await task_scheduler.update_payout_interval(self.store, seconds)
        return "Reward interval updated!"

    async def set_payout_min(self, min_payout: float) -> str:
        value = to_sat(min_payout)
        if value < MIN_TX_VALUE:
            return "Minimum payout too low!"
        await self.config.update("MIN_REWARD_PAYOUT", str(value))
        await task_scheduler.update_payout_min(self.store, value)
        return "Minimum payout updated!"

    async def _check_payout_address(self, address: Optional[str], mode: str) -> Optional[str]:
        """Error string for an unusable payout address, None when it is fine."""
        if not address:
            return f"An address is required for {mode} mode!"
        try:
            info = await self.node.get_address_info(address)
        except NodeRPCError:
            return "Invalid address!"
        if info.get("ismine"):
            return "Cannot use a address owned by GhostVault!"
        return None

    async def _own_stealth_address(self) -> str:
        conf = await self.config.read()
        if conf.internal_anon:
            try:
                info = await self.node.get_address_info(conf.internal_anon)
                if info.get("ismine") and info.get("isstealthaddress"):
                    return conf.internal_anon
            except NodeRPCError:
                pass
        address = await self.node.getnewstealthaddress()
        await self.config.update("INTERNAL_ANON", address)
        return address

    async def set_reward_mode(self, mode: str, address: Optional[str] = None) -> str:
        mode = mode.upper()

        if mode == "ANON":
            error = await self._check_payout_address(address, "anon")
            if error:
                return error
            internal_anon = await self._own_stealth_address()
            await self.config.update_many({
                "REWARD_ADDRESS": internal_anon,
                "ANON_MODE": "true",
                "ANON_REWARD_ADDRESS": address,
            })
            await self.node.set_reward_addr_in_wallet(internal_anon)

        elif mode == "STANDARD":
            error = await self._check_payout_address(address, "standard")
            if error:
                return error
            await self.config.update_many({
                "REWARD_ADDRESS": address,
                "ANON_MODE": "false",
                "ANON_REWARD_ADDRESS": "",
            })
            await self.node.set_reward_addr_in_wallet(address)

        elif mode == "DEFAULT":
            await self.config.update_many({
                "REWARD_ADDRESS": "",
                "ANON_MODE": "false",
                "ANON_REWARD_ADDRESS": "",
            })
            await self.node.set_reward_addr_in_wallet(None)

        else:
            return "Invalid mode!"

        self.logger.info("Reward mode changed", mode=mode)
        return "Reward mode updated!"

    async def set_bot_announce(self, msg_type: str, enabled: bool) -> str:
        keys = _ANNOUNCE_KEYS.get(msg_type.upper())
        if keys is None:
            return "Invalid message type!"
        await self.config.update_many({key: str(enabled).lower() for key in keys})
        return "Bot announcement updated!"

    async def set_timezone(self, tz: str) -> str:
        try:
            zone = resolve_timezone(tz)
        except ValidationError:
            return "Invalid timezone!"
        await self.config.update("TIMEZONE", zone.key)
        return "Timezone updated!"

    # Queries

    async def get_version_info(self) -> VersionInfo:
        snapshot = await self.state.snapshot()
        return VersionInfo(
            gv_version=VERSION,
            ghostd_version=snapshot.daemon_version,
            latest_release=snapshot.latest_release,
        )

    async def get_reward_options(self) -> RewardOptions:
        conf = await self.config.read()
        if conf.anon_mode:
            mode, address = "ANON", conf.anon_reward_address or ""
        elif conf.reward_address:
            mode, address = "STANDARD", conf.reward_address
        else:
            mode, address = "DEFAULT", ""

        return RewardOptions(
            reward_mode=mode,
            reward_address=address,
            reward_interval=format_duration(conf.reward_interval),
            reward_min=from_sat(conf.min_reward_payout),
        )

    async def check_chain(self) -> bool:
        return await self.state.good_chain()

    async def validate_address(self, address: str) -> AddressInfo:
        try:
            info = await self.node.get_address_info(address)
        except NodeRPCError:
            return AddressInfo(is_mine=False, is_valid=False, is_256bit=False)
        return AddressInfo(
            is_mine=bool(info.get("ismine", False)),
            is_valid=True,
            is_256bit=bool(info.get("is256bit", False)),
        )

    async def get_daemon_online(self) -> Union[bool, ServerReadiness]:
        if await self.state.online():
            return True
        return await self.store.get_readiness()

    async def get_pending_rewards(self) -> PendingRewards:
        mine: Dict[str, Any] = (await self.node.get_balances())["mine"]

        def balance(key: str) -> float:
            return float(mine.get(key, 0))

        trusted = balance("trusted")
        untrusted_pending = balance("untrusted_pending")
        immature = balance("immature")
        staked = balance("staked")
        anon_trusted = balance("anon_trusted")
        anon_immature = balance("anon_immature")
        anon_pending = balance("anon_untrusted_pending")

        conf = await self.config.read()
        tz = await self.stats.timezone()
        next_run = await task_scheduler.get_next_payout_time(self.store)
        next_payout_run = datetime.fromtimestamp(next_run, timezone.utc).astimezone(tz)

        return PendingRewards(
            total_pending=trusted + untrusted_pending + immature + staked
            + anon_trusted + anon_pending + anon_immature,
            staked=staked,
            pending_anonymization=trusted + untrusted_pending + immature,
            pending_anon_confs=anon_immature + anon_pending,
            pending_payout=anon_trusted,
            payout_run_interval=format_duration(conf.reward_interval),
            next_payout_run=next_payout_run.strftime("%Y-%m-%d %H:%M:%S %Z"),
            min_payout=from_sat(conf.min_reward_payout),
        )

    async def get_overview(self) -> StakingOverview:
        cs_info = await self.node.getcoldstakinginfo()
        days = self.stats.get_stakes_days
        return StakingOverview(
            total_staking=float(cs_info.get("currently_staking", 0)),
            total_coldstaking=float(cs_info.get("coin_in_coldstakeable_script", 0)),
            stakes_24h=await days(1),
            stakes_7d=await days(7),
            stakes_14d=await days(14),
            stakes_30d=await days(30),
            stakes_90d=await days(90),
            stakes_180d=await days(180),
            stakes_1y=await days(365),
            stakes_ytd=await days(await self.stats.year_start()),
            stakes_all=await days(0),
        )

    async def get_daemon_state(self) -> GVStatus:
        """Status summary of the host, the node and recent staking."""
        net_info, bc_info, syncing, staking_info, cs_info, last_stake, daemon_uptime = await asyncio.gather(
            self.node.getnetworkinfo(),
            self.node.getblockchaininfo(),
            self.node.is_syncing(),
            self.node.getstakinginfo(),
            self.node.getcoldstakinginfo(),
            self.stats.get_last_stake(),
            self.node.getuptime(),
        )
        conf = await self.config.read()
        snapshot = await self.state.snapshot()
        stakes = await self.stats.get_stakes_days(1)

        one, five, fifteen = os.getloadavg()
        uptime = f"{format_duration(system_uptime())}, {one:.2f} {five:.2f} {fifteen:.2f}"

        return GVStatus(
            uptime=uptime,
            privacy_mode="ANON" if conf.anon_mode else "STANDARD",
            daemon_version=snapshot.daemon_version,
            latest_release=snapshot.latest_release,
            daemon_uptime=format_duration(int(daemon_uptime)),
            daemon_peers=int(net_info.get("connections", 0)),
            daemon_synced=yes_no(not syncing),
            best_block=int(bc_info["blocks"]),
            best_block_hash=bc_info["bestblockhash"],
            best_block_extern=snapshot.remote_best_block,
            good_chain=yes_no(snapshot.good_chain),
            staking_enabled=yes_no(bool(staking_info.get("enabled"))),
            active_staking=yes_no(bool(staking_info.get("staking"))),
            staking_difficulty=float(staking_info.get("difficulty", 0)),
            network_stake_weight=from_sat(int(staking_info.get("netstakeweight", 0))),
            currently_staking=float(cs_info.get("currently_staking", 0)),
            total_coldstaking=float(cs_info.get("coin_in_coldstakeable_script", 0)),
            last_stake=last_stake.last_stake_str,
            stakes_24=stakes.stakes,
            rewards_24=stakes.rewards,
            agvr_24=stakes.agvr,
            total_24=stakes.total,
        )

    async def get_mnemonic(self) -> Optional[str]:
        return (await self.config.read()).mnemonic

    async def get_earnings_chart_data(self, start: int, end: int) -> EarningsChart:
        return await self.stats.get_earnings_chart(start, end)

    async def get_stake_barchart_data(self, start: int, end: int, division: str) -> BarChart:
        return await self.stats.get_stake_barchart(start, end, division)

    # Maintenance

    async def process_payouts(self) -> None:
        self.spawn(self.reconciler.reward_payout())

    async def run_payouts(self) -> None:
        """Pay out pending rewards and return once the payout finished."""
        try:
            await self.reconciler.reward_payout()
        except RPCAuthError as e:
            self.reconciler.credentials_rejected(e)
            raise

    async def process_daemon_update(self) -> Union[str, bool]:
        """Start an upgrade when a newer node release exists."""
        self.logger.info("Checking for new update")
        version = await self.installer.get_daemon_version()
        try:
            latest = await self.installer.get_latest_release()
        except Exception as e:
            self.logger.error("Failed to check for updates", error=str(e))
            return "Failed to check for updates!"

        await self.state.set_latest_release(latest)
        if version_number(latest) > version_number(version):
            self.spawn(self.do_update(latest))
            return latest
        return False

    async def _reopen(self) -> None:
        await self.state.set_available(True)
        await self.store.set_daemon_ready(True)

    async def _recover_daemon(self) -> None:
        """Restart the node after a failed maintenance step and reopen reconciliation."""
        try:
            if not await self.installer.is_running():
                await self.installer.start_daemon()
            await self.node.wait_for_daemon_startup()
            await self.state.set_online(True)
        except RPCAuthError:
            raise
        except (GhostVaultException, OSError) as e:
            self.logger.error("Could not restart the daemon", error=str(e))
        finally:
            await self._reopen()

    async def do_update(self, latest_release: str) -> None:
        self.logger.info("New daemon version found, doing upgrade...", latest_release=latest_release)
        await self.store.set_daemon_ready(False, "Daemon update in progress")
        await self.state.set_available(False)

        try:
            archive = await self.installer.download_daemon()
        except (DaemonInstallError, OSError) as e:
            self.logger.error("Error downloading daemon", error=str(e))
            await self._reopen()
            return

        await self.notifications.push_status(update_started_message(latest_release))

        await self.state.set_online(False)
        try:
            await self.installer.stop_daemon(self.node)
            await self.installer.install_archive(archive)
        except RPCAuthError:
            raise
        except (DaemonInstallError, NodeRPCError, OSError) as e:
            self.logger.error("Daemon upgrade failed, restarting the node", error=str(e))
            await self._recover_daemon()
            return
        finally:
            shutil.rmtree(self.installer.tmp_path, ignore_errors=True)

        await self.node.wait_for_daemon_startup()
        version = await self.installer.get_daemon_version()
        await self.state.update(
            daemon_version=version, latest_release=latest_release, online=True, available=True
        )
        await self.store.set_daemon_ready(True)

        await self.notifications.push_status(update_complete_message(version))
        self.logger.info("Daemon update complete", version=version)

    async def force_resync(self) -> str:
        self.spawn(self.do_force_resync())
        return "Forcing a resync of the daemon..."

    async def do_force_resync(self) -> None:
        self.logger.info("Forcing a resync of the daemon...")
        await self.state.update(online=False, synced=False, available=False)
        await self.store.set_daemon_ready(False, "Forcing resync")

        try:
            await self.installer.stop_daemon(self.node)

            conf = await self.config.read()
            for name in RESYNC_PATHS:
                path = conf.daemon_data_dir / name
                if path.is_dir():
                    shutil.rmtree(path, ignore_errors=True)
                else:
                    path.unlink(missing_ok=True)
        except RPCAuthError:
            raise
        except (GhostVaultException, OSError) as e:
            self.logger.error("Resync failed, restarting the node", error=str(e))
            await self._recover_daemon()
            return

        await self.node.wait_for_daemon_startup()
        await self.state.set_online(True)
        await self._reopen()

    async def import_wallet(self, mnemonic: str, name: str) -> str:
        mnemonic = mnemonic.strip()
        if not await self.node.validate_mnemonic(mnemonic):
            return "Invalid mnemonic!"

        await self.store.set_daemon_ready(False, "Importing Wallet")
        await self.state.set_available(False)

        try:
            await self.wallet.import_wallet(mnemonic, name)
        except GhostVaultException as e:
            self.logger.error("Error importing wallet", wallet=name, error=e.message)
            await self.state.set_available(True)
            await self.store.set_daemon_ready(True)
            return f"Error importing wallet: {e.message}"

        self.spawn(self._rescan_after_import())
        return "Wallet imported!"

    async def _rescan_after_import(self) -> None:
        await self.store.clear_db()
        await self.reconciler.cleanup_missing_tx()
        await self.state.set_available(True)
        await self.store.set_daemon_ready(True)
        self.logger.info("Wallet import rescan complete")
