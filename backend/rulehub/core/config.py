from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/rulehub"

    # App settings
    app_name: str = "RuleHub Gamification"
    debug: bool = False
    log_level: str = "INFO"

    # Leaderboards
    leaderboard_limit: int = 100  # Max entries kept per snapshot
    leaderboard_page_size: int = 25
    leaderboard_min_views: int = 1
    leaderboard_min_copies: int = 1
    period_window_days: dict[str, int] = {
        "DAILY": 1,
        "WEEKLY": 7,
        "MONTHLY": 30,
        "ALL": 365,
    }
    # Day boundary used to bucket snapshots; two upserts on the same local day share a row
    snapshot_timezone: str = "UTC"

    # Rollup job
    rollup_tag_count: int = 5
    rollup_tag_min_rules: int = 10
    rollup_tag_limit: int = 50
    top_weekly_badge_count: int = 10

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("snapshot_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Reject unknown IANA zone names at load time."""
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown snapshot timezone: {value!r}") from exc
        return value

    @model_validator(mode="after")
    def validate_periods(self) -> "Settings":
        """Ensure every leaderboard period has a positive window."""
        missing = {"DAILY", "WEEKLY", "MONTHLY", "ALL"} - set(self.period_window_days)
        if missing:
            raise ValueError(f"period_window_days is missing: {', '.join(sorted(missing))}")
        if any(days <= 0 for days in self.period_window_days.values()):
            raise ValueError("period_window_days values must be positive")
        if self.leaderboard_limit <= 0 or self.leaderboard_page_size <= 0:
            raise ValueError("Leaderboard limits must be positive")
        return self

    @property
    def snapshot_zone(self) -> ZoneInfo:
        return ZoneInfo(self.snapshot_timezone)


settings = Settings()
