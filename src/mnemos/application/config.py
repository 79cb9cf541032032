from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from mnemos.domain import constants as c
from mnemos.domain.models import Tier, TierLimits

CONFIG_FILES = [
    Path.home() / ".config/mnemos/config.toml",
    Path.home() / ".mnemos.toml",
]


class SchedulerPolicy(BaseModel):
    """
    Policy constants for the retention state machine.

    Learning steps are minutes; every other duration is days.
    """

    model_config = ConfigDict(frozen=True)

    starting_ease: float = c.DEFAULT_STARTING_EASE
    minimum_ease: float = Field(default=c.DEFAULT_MINIMUM_EASE, ge=1.0)
    again_ease_penalty: float = Field(default=c.DEFAULT_AGAIN_EASE_PENALTY, ge=0.0)
    hard_ease_penalty: float = Field(default=c.DEFAULT_HARD_EASE_PENALTY, ge=0.0)
    easy_ease_bonus: float = Field(default=c.DEFAULT_EASY_EASE_BONUS, ge=0.0)
    easy_bonus: float = Field(default=c.DEFAULT_EASY_BONUS, ge=1.0)
    hard_interval_factor: float = Field(default=c.DEFAULT_HARD_INTERVAL_FACTOR, gt=0.0, lt=1.0)
    learning_steps: list[int] = Field(
        default_factory=lambda: list(c.DEFAULT_LEARNING_STEPS_MINUTES)
    )
    graduation_steps: int = Field(default=c.DEFAULT_GRADUATION_STEPS, ge=1)
    graduating_interval_days: float = Field(default=c.DEFAULT_GRADUATING_INTERVAL_DAYS, gt=0)
    minimum_review_interval_days: float = Field(
        default=c.DEFAULT_MINIMUM_REVIEW_INTERVAL_DAYS, gt=0
    )
    maximum_interval_days: float = Field(default=c.DEFAULT_MAXIMUM_INTERVAL_DAYS, gt=0)
    fuzz_factor: float = Field(default=c.DEFAULT_FUZZ_FACTOR, ge=0.0, le=c.MAX_FUZZ_FACTOR)
    fuzz_minimum_interval_days: float = Field(default=c.DEFAULT_FUZZ_MINIMUM_INTERVAL_DAYS, ge=0)

    @field_validator("learning_steps")
    @classmethod
    def steps_not_empty(cls, v: list[int]) -> list[int]:
        if not v or any(step <= 0 for step in v):
            raise ValueError("learning_steps must be a non-empty list of positive minutes")
        return v

    @model_validator(mode="after")
    def check_ease_bounds(self) -> "SchedulerPolicy":
        if self.starting_ease < self.minimum_ease:
            raise ValueError("starting_ease must not be below minimum_ease")
        if self.maximum_interval_days < self.graduating_interval_days:
            raise ValueError("maximum_interval_days must cover graduating_interval_days")
        return self

    def learning_step(self, index: int) -> timedelta:
        index = min(max(index, 0), len(self.learning_steps) - 1)
        return timedelta(minutes=self.learning_steps[index])

    @property
    def learning_minimum(self) -> timedelta:
        return self.learning_step(0)

    @property
    def graduating_interval(self) -> timedelta:
        return timedelta(days=self.graduating_interval_days)

    @property
    def minimum_review_interval(self) -> timedelta:
        return timedelta(days=self.minimum_review_interval_days)

    @property
    def maximum_interval(self) -> timedelta:
        return timedelta(days=self.maximum_interval_days)

    @property
    def fuzz_minimum_interval(self) -> timedelta:
        return timedelta(days=self.fuzz_minimum_interval_days)


class TierQuota(BaseModel):
    max_new_per_day: int | None = Field(default=None, ge=0)
    max_reviews_per_day: int | None = Field(default=None, ge=0)

    def to_limits(self) -> TierLimits:
        return TierLimits(self.max_new_per_day, self.max_reviews_per_day)


def _default_tiers() -> dict[Tier, TierQuota]:
    return {
        Tier.FREE: TierQuota(max_new_per_day=10, max_reviews_per_day=20),
        Tier.PAID: TierQuota(max_new_per_day=50, max_reviews_per_day=500),
        Tier.ADMIN: TierQuota(),
    }


class AnalyticsThresholds(BaseModel):
    """Curation policy for problem classification."""

    high_lapse_threshold: float = Field(default=c.DEFAULT_HIGH_LAPSE_THRESHOLD, ge=0.0, le=1.0)
    variability_threshold: float = Field(default=c.DEFAULT_VARIABILITY_THRESHOLD, gt=0.0)
    min_ratings: int = Field(default=c.DEFAULT_MIN_RATINGS, ge=1)
    min_ratings_per_learner: int = Field(default=c.DEFAULT_MIN_RATINGS_PER_LEARNER, ge=1)
    lapse_weight: float = 0.7
    variability_weight: float = 0.3
    severity_high: float = c.SEVERITY_HIGH_SCORE
    severity_medium: float = c.SEVERITY_MEDIUM_SCORE


class AppConfig(BaseSettings):
    """
    Configuration model for mnemos.
    Supports loading from:
    1. Environment variables (MNEMOS_*, nested with __)
    2. Config file (~/.config/mnemos/config.toml)
    3. Manual overrides (CLI)
    """

    model_config = SettingsConfigDict(
        env_prefix="MNEMOS_",
        env_nested_delimiter="__",
        toml_file=CONFIG_FILES,
        extra="ignore",
    )

    # Storage
    database_path: Path | None = None  # None keeps everything in memory
    catalog_path: Path | None = None
    log_dir: Path = Field(default_factory=lambda: Path.home() / ".config/mnemos/logs")

    # Sessions
    session_size: int = Field(default=c.DEFAULT_SESSION_SIZE, ge=1)
    learn_ahead_minutes: int = Field(default=c.DEFAULT_LEARN_AHEAD_MINUTES, ge=0)
    default_timezone: str = c.DEFAULT_TIMEZONE
    tiers: dict[Tier, TierQuota] = Field(default_factory=_default_tiers)

    # Engagement
    streak_milestones: list[int] = Field(
        default_factory=lambda: list(c.DEFAULT_STREAK_MILESTONES)
    )
    flag_hold_threshold: int = Field(default=c.DEFAULT_FLAG_HOLD_THRESHOLD, ge=1)

    # Hierarchy
    staleness_tolerance_seconds: float = Field(
        default=c.DEFAULT_STALENESS_TOLERANCE_SECONDS, ge=0.0
    )

    # Policies
    scheduler: SchedulerPolicy = Field(default_factory=SchedulerPolicy)
    analytics: AnalyticsThresholds = Field(default_factory=AnalyticsThresholds)

    # Server
    host: str = "127.0.0.1"
    port: int = 8777

    verbose: int = 1

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        from pydantic_settings import TomlConfigSettingsSource

        # Find the first existing file
        toml_file = None
        for f in CONFIG_FILES:
            if f.exists():
                toml_file = f
                break

        if toml_file:
            return (
                init_settings,
                env_settings,
                TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            )
        return (
            init_settings,
            env_settings,
        )

    @field_validator("database_path", "catalog_path", mode="before")
    @classmethod
    def resolve_path(cls, v: Any) -> Path | None:
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()

    @field_validator("streak_milestones")
    @classmethod
    def sort_milestones(cls, v: list[int]) -> list[int]:
        if any(days <= 0 for days in v):
            raise ValueError("streak_milestones must be positive day counts")
        return sorted(set(v))

    @field_validator("tiers", mode="after")
    @classmethod
    def fill_missing_tiers(cls, v: dict[Tier, TierQuota]) -> dict[Tier, TierQuota]:
        merged = _default_tiers()
        merged.update(v)
        return merged

    def limits_for(self, tier: Tier) -> TierLimits:
        return self.tiers[tier].to_limits()

    @property
    def learn_ahead(self) -> timedelta:
        return timedelta(minutes=self.learn_ahead_minutes)

    @property
    def staleness_tolerance(self) -> timedelta:
        return timedelta(seconds=self.staleness_tolerance_seconds)


def resolve_config(cli_overrides: dict[str, Any] | None = None) -> AppConfig:
    """
    Multi-layered configuration resolution.
    1. Defaults in AppConfig
    2. ~/.config/mnemos/config.toml (if exists)
    3. Environment variables (MNEMOS_*)
    4. cli_overrides (passed from Typer)
    """
    overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    return AppConfig(**overrides)
