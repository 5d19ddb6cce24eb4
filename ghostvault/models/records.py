"""
Records persisted in the durable store.

Every record is a pydantic model serialised to JSON bytes. Amounts are
integer satoshis unless stated otherwise.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class TaskName(str, Enum):
    """Scheduled jobs known to the task scheduler."""
    DAEMON_UPDATE = "daemon_update"
    SELF_UPDATE = "self_update"
    PROCESS_REWARDS = "process_rewards"

    @property
    def task_id(self) -> int:
        return list(TaskName).index(self)


class MessageType(str, Enum):
    """Kinds of operator notification."""
    STAKE = "stake"
    ZAP = "zap"
    REWARDS = "rewards"
    ONLINE = "online"
    OFFLINE = "offline"
    UPDATE = "update"
    STAKE_REMOVAL = "stake_removal"


class Record(BaseModel):
    """Base for stored records."""

    model_config = ConfigDict(use_enum_values=False, populate_by_name=True)

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def from_bytes(cls, raw: bytes):
        return cls.model_validate_json(raw)


class RewardRecord(Record):
    """One stake reward, keyed by block time."""

    height: int
    timestamp: int
    block_hash: str
    txid: str
    reward: int
    agvr_reward: int
    all_time_reward: int
    all_time_agvr_reward: int
    address: str = ""
    is_coldstake: bool = False

    @property
    def total_reward(self) -> int:
        return self.reward + self.agvr_reward


class PendingStakeStatus(Record):
    txid: str
    confirmations: int
    timestamp: int
    tg_msg_id: Optional[int] = None


class PendingZapStatus(Record):
    txid: str
    amount: int
    confirmations: int
    first_notice: bool = False


class DaemonStatusCheckpoint(Record):
    height: int
    block_hash: str


class ScheduledTask(Record):
    id: int
    name: TaskName
    run_interval: int
    next_run: int
    min_payout: Optional[int] = None
    task_running: bool = False


class ServerReadiness(Record):
    ready: bool = False
    daemon_ready: bool = False
    reason: Optional[str] = None


class OutboundNotification(Record):
    """A queued chat message awaiting the notifier."""

    timestamp: int
    header: str
    msg: Optional[str] = None
    code_block: Optional[str] = None
    url: Optional[List[str]] = None
    msg_type: MessageType
    reward_txid: Optional[str] = None
    msg_to_delete: Optional[int] = None


class BlockReward(BaseModel):
    """Result of dissecting a coinstake transaction."""

    total_reward: int = 0
    stake_reward: int = 0
    agvr_reward: int = 0
    stake_kernel: str = ""
    is_coldstake: bool = False


class StakeTotals(BaseModel):
    """Aggregated rewards over a window, in coin units."""

    stakes: int = 0
    rewards: float = 0.0
    agvr: float = 0.0
    total: float = 0.0


class StakingData(BaseModel):
    total_staking: float
    total_coldstaking: float
    stakes_24h: StakeTotals
    stakes_ytd: StakeTotals


class NewStake(BaseModel):
    """JSON snapshot embedded in a new-stake notification."""

    height: int
    block_hash: str
    txid: str
    reward: float
    agvr_reward: float
    total_reward: float
    staking_data: StakingData
