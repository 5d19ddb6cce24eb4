"""
Read-side views returned by the operator queries.
"""

from typing import List, Optional

from pydantic import BaseModel

from .records import StakeTotals


class LastStake(BaseModel):
    last_stake_str: str = "N/A"
    timestamp: Optional[int] = None


class EarningsChart(BaseModel):
    """Cumulative earnings as ``[total_coins, timestamp]`` pairs."""

    data: List[List[float]]
    start: str
    end: str


class BarChart(BaseModel):
    """Stake counts as ``[bucket_start, count]`` pairs."""

    data: List[List[int]]
    division: str
    start: str
    end: str


class StakingOverview(BaseModel):
    total_staking: float
    total_coldstaking: float
    stakes_24h: StakeTotals
    stakes_7d: StakeTotals
    stakes_14d: StakeTotals
    stakes_30d: StakeTotals
    stakes_90d: StakeTotals
    stakes_180d: StakeTotals
    stakes_1y: StakeTotals
    stakes_ytd: StakeTotals
    stakes_all: StakeTotals


class GVStatus(BaseModel):
    uptime: str
    privacy_mode: str
    daemon_version: str
    latest_release: str
    daemon_uptime: str
    daemon_peers: int
    daemon_synced: str
    best_block: int
    best_block_hash: str
    best_block_extern: int
    good_chain: str
    staking_enabled: str
    active_staking: str
    staking_difficulty: float
    network_stake_weight: float
    currently_staking: float
    total_coldstaking: float
    last_stake: str
    stakes_24: int
    rewards_24: float
    agvr_24: float
    total_24: float


class VersionInfo(BaseModel):
    gv_version: str
    ghostd_version: str
    latest_release: str


class RewardOptions(BaseModel):
    reward_mode: str
    reward_address: str
    reward_interval: str
    reward_min: float


class AddressInfo(BaseModel):
    is_mine: bool
    is_valid: bool
    is_256bit: bool


class PendingRewards(BaseModel):
    total_pending: float
    staked: float
    pending_anonymization: float
    pending_anon_confs: float
    pending_payout: float
    payout_run_interval: str
    next_payout_run: str
    min_payout: float
