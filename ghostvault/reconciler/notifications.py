"""
Builders for operator notifications and the queue writer used by the
reconciler.
"""

import json
import time
from typing import List, Optional

import structlog

from ..core.config import ConfigStore
from ..core.constants import EXPLORER_TX_URL
from ..core.store import Store
from ..models.records import MessageType, NewStake, OutboundNotification


logger = structlog.get_logger(__name__)


def _now() -> int:
    return int(time.time())


def tx_urls(txids: List[str]) -> List[str]:
    return [EXPLORER_TX_URL.format(txid=txid) for txid in txids]


def new_stake_message(new_stake: NewStake, timestamp: Optional[int] = None) -> OutboundNotification:
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 New Block Found! 👻",
        code_block=json.dumps(new_stake.model_dump(), indent=2),
        url=tx_urls([new_stake.txid]),
        msg_type=MessageType.STAKE,
        reward_txid=new_stake.txid,
    )


def stake_removed_message(tg_msg_id: Optional[int], timestamp: Optional[int] = None) -> OutboundNotification:
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 Stake removed! 👻",
        msg_type=MessageType.STAKE_REMOVAL,
        msg_to_delete=tg_msg_id,
    )


def new_zap_message(txid: str, amount: float, timestamp: Optional[int] = None) -> OutboundNotification:
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 New Zap Detected! 👻",
        msg=f"New deposit of {amount} GHOST is in your GhostVault!",
        url=tx_urls([txid]),
        msg_type=MessageType.ZAP,
    )


def zap_staking_message(amount: float, timestamp: Optional[int] = None) -> OutboundNotification:
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 Zap Now Staking! 👻",
        msg=f"The deposit of {amount} GHOST in your GhostVault is now staking!",
        msg_type=MessageType.ZAP,
    )


def rewards_message(
    amount: float, txids: List[str], out_type: Optional[str], timestamp: Optional[int] = None
) -> OutboundNotification:
    """``out_type`` of None means the rewards were zapped to a public address."""
    if out_type is None:
        msg = f"Anon rewards in the amount of {amount} GHOST being zapped to PUBLIC address."
    else:
        msg = f"Anon rewards in the amount of {amount} GHOST being sent to {out_type.upper()} address."
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 Rewards coming your way! 👻",
        msg=msg,
        url=tx_urls(txids),
        msg_type=MessageType.REWARDS,
    )


def daemon_offline_message(timestamp: Optional[int] = None) -> OutboundNotification:
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 Daemon offline! 👻",
        msg="Daemon offline, waiting for restart...",
        msg_type=MessageType.OFFLINE,
    )


def daemon_online_message(timestamp: Optional[int] = None) -> OutboundNotification:
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 Daemon online! 👻",
        msg="Daemon back online, ready for action!",
        msg_type=MessageType.ONLINE,
    )


def bad_chain_message(
    best_block: int, best_block_hash: str, remote_hash: str, timestamp: Optional[int] = None
) -> OutboundNotification:
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 Bad Chain Detected! 👻",
        msg=(
            "GhostVault has detected a mismatch between the local blockchain and remote.\n"
            f"GhostVault best block: {best_block}\n"
            f"GhostVault best block hash: {best_block_hash}\n"
            f"Remote hash: {remote_hash}"
        ),
        msg_type=MessageType.ONLINE,
    )


def update_started_message(latest_release: str, timestamp: Optional[int] = None) -> OutboundNotification:
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 Daemon update in progress! 👻",
        msg=f"New release {latest_release} found!\nPlease be patient while the daemon is updated.",
        msg_type=MessageType.UPDATE,
    )


def update_complete_message(version: str, timestamp: Optional[int] = None) -> OutboundNotification:
    return OutboundNotification(
        timestamp=timestamp or _now(),
        header="👻 Daemon update complete! 👻",
        msg=f"Update to version {version} complete!\nYour GhostVault is now ready.",
        msg_type=MessageType.UPDATE,
    )


class NotificationQueue:
    """Writes to the ``tg_bot_queue`` tree when the bot is configured."""

    def __init__(self, store: Store, config: ConfigStore):
        self.store = store
        self.config = config
        self.logger = logger.bind(service="notification_queue")

    async def bot_active(self) -> bool:
        return (await self.config.read()).bot_enabled

    async def push(self, key: str, notification: OutboundNotification, if_absent: bool = False) -> bool:
        """
        Queue ``notification`` under ``key``.

        Returns False when nothing was written, either because the bot is not
        configured or because ``if_absent`` is set and the key is taken.
        """
        if not await self.bot_active():
            return False
        if if_absent and await self.store.has_notification(key):
            return False
        await self.store.set_notification(key, notification)
        self.logger.debug("Notification queued", key=key, msg_type=notification.msg_type.value)
        return True

    async def push_status(self, notification: OutboundNotification, suffix: Optional[str] = None) -> bool:
        """
        Queue a status message keyed by its decimal timestamp.

        Messages that can be raised several times within one second pass a
        ``suffix`` (a txid, say) so they get distinct keys.
        """
        key = str(notification.timestamp)
        if suffix:
            key = f"{key}-{suffix}"
        return await self.push(key, notification)
