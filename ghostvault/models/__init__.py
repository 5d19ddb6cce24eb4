"""
Stored record types and read-side views.
"""

from .records import (
    BlockReward,
    DaemonStatusCheckpoint,
    MessageType,
    NewStake,
    OutboundNotification,
    PendingStakeStatus,
    PendingZapStatus,
    RewardRecord,
    ScheduledTask,
    ServerReadiness,
    StakeTotals,
    StakingData,
    TaskName,
)
from .reports import (
    AddressInfo,
    BarChart,
    EarningsChart,
    GVStatus,
    LastStake,
    PendingRewards,
    RewardOptions,
    StakingOverview,
    VersionInfo,
)

__all__ = [
    "AddressInfo",
    "BarChart",
    "BlockReward",
    "DaemonStatusCheckpoint",
    "EarningsChart",
    "GVStatus",
    "LastStake",
    "MessageType",
    "NewStake",
    "OutboundNotification",
    "PendingRewards",
    "PendingStakeStatus",
    "PendingZapStatus",
    "RewardOptions",
    "RewardRecord",
    "ScheduledTask",
    "ServerReadiness",
    "StakeTotals",
    "StakingData",
    "StakingOverview",
    "TaskName",
    "VersionInfo",
]
