"""Database models."""

from rebalancer.models.user import User
from rebalancer.models.position import Position
from rebalancer.models.user_stats import UserStats
from rebalancer.models.scan_log import ScanLog

__all__ = [
    "User",
    "Position",
    "UserStats",
    "ScanLog",
]
