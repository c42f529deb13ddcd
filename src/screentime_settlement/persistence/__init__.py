"""
Persistence Layer for the Settlement Engine

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, get_database
from .models import (
    AppsToLimit,
    CommitmentRecord,
    DailyUsageRecord,
    UserWeekPenaltyRecord,
    PaymentRecord,
    WeeklyPoolRecord,
)
from .repository import (
    CommitmentRepository,
    UsageRepository,
    PenaltyRepository,
    PaymentRepository,
    PoolRepository,
)

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "AppsToLimit",
    "CommitmentRecord",
    "DailyUsageRecord",
    "UserWeekPenaltyRecord",
    "PaymentRecord",
    "WeeklyPoolRecord",
    "CommitmentRepository",
    "UsageRepository",
    "PenaltyRepository",
    "PaymentRepository",
    "PoolRepository",
]
