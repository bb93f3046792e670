from rulehub.models.base import Base
from rulehub.models.content import AuditLog, Rule, RuleMetricDaily, RuleStatus, Tag, User, Vote
from rulehub.models.gamification import (
    Badge,
    LeaderboardPeriod,
    LeaderboardScope,
    LeaderboardSnapshot,
    UserBadge,
)

__all__ = [
    "Base",
    "AuditLog",
    "Rule",
    "RuleMetricDaily",
    "RuleStatus",
    "Tag",
    "User",
    "Vote",
    "Badge",
    "LeaderboardPeriod",
    "LeaderboardScope",
    "LeaderboardSnapshot",
    "UserBadge",
]
