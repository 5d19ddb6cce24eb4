"""
Reward lifecycle tracking, node health and operator operations.
"""

from .daemon_state import DaemonState, DaemonStateSnapshot
from .notifications import NotificationQueue
from .operator import OperatorService
from .reconciler import Reconciler
from .stats import RewardStats

__all__ = [
    "DaemonState",
    "DaemonStateSnapshot",
    "NotificationQueue",
    "OperatorService",
    "Reconciler",
    "RewardStats",
]
