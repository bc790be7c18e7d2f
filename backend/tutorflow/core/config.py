# backend/tutorflow/core/config.py
from decimal import Decimal
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .enums import CancellationReason


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


DEFAULT_COMMISSION_RATES: Dict[str, Decimal] = {
    "one_to_one_online": Decimal("0.12"),
    "one_to_one_offline": Decimal("0.15"),
    "group_online": Decimal("0.10"),
    "group_offline": Decimal("0.12"),
}

# Cancellation reason -> fraction of the held escrow returned to the payer.
DEFAULT_REFUND_POLICY: Dict[str, Decimal] = {
    "tutor_fault": Decimal("1"),
    "admin_forced": Decimal("1"),
    "system_error": Decimal("1"),
    "policy_violation": Decimal("1"),
    "duplicate_class": Decimal("1"),
    "incorrect_info": Decimal("1"),
    "mutual_consent": Decimal("0.8"),
    "student_fault": Decimal("0"),
    "other": Decimal("1"),
}

# (minimum hours before the first lesson, refund fraction), evaluated top-down.
DEFAULT_STUDENT_GRACE_TIERS: List[Tuple[int, Decimal]] = [
    (48, Decimal("1")),
    (24, Decimal("0.8")),
    (0, Decimal("0.5")),
]

# Reasons that may still cancel a class once most of its lessons were taught.
DEFAULT_LATE_CANCELLATION_REASONS: List[str] = ["system_error", "policy_violation", "duplicate_class"]


class Settings(BaseSettings):
    """Runtime configuration for the scheduling and settlement engine."""

    environment: str = Field(default="development", description="Deployment environment name")

    # Database
    database_url: str = Field(
        default="sqlite:///./tutorflow.db",
        description="SQLAlchemy URL for the primary relational store",
    )
    test_database_url: Optional[str] = Field(
        default=None, description="Database used by the test suite when set"
    )
    db_pool_size: int = Field(default=5, ge=1)
    db_max_overflow: int = Field(default=10, ge=0)

    # Redis (tutor schedule mutex, celery broker)
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_locks_enabled: bool = Field(
        default=True,
        description="Take the cross-instance redis mutex around tutor schedule writes",
    )
    tutor_lock_ttl_seconds: int = Field(default=30, ge=1)

    # Scheduling
    schedule_timezone: str = Field(
        default="Asia/Ho_Chi_Minh",
        description="Timezone the weekly rule times are expressed in",
    )
    schedule_occurrences_per_rule: int = Field(default=4, ge=1)
    schedule_horizon_days: int = Field(default=50, ge=1)
    class_request_expiry_days: int = Field(default=7, ge=1)
    unpaid_class_cancel_hours: int = Field(default=24, ge=1)
    sweep_batch_size: int = Field(default=500, ge=1)

    # Ledger
    wallet_currency: str = Field(default="VND")
    escrow_wallet_user_id: str = Field(
        default="system-escrow",
        description="User id owning the wallet that holds escrowed funds",
    )
    platform_wallet_user_id: str = Field(
        default="system-platform",
        description="User id owning the wallet credited with commission",
    )
    default_commission_rates: Dict[str, Decimal] = Field(
        default_factory=lambda: dict(DEFAULT_COMMISSION_RATES),
        description="Seed rates used when no commission configuration row exists yet",
    )
    refund_policy: Dict[str, Decimal] = Field(
        default_factory=lambda: dict(DEFAULT_REFUND_POLICY)
    )
    student_cancellation_grace_tiers: List[Tuple[int, Decimal]] = Field(
        default_factory=lambda: list(DEFAULT_STUDENT_GRACE_TIERS)
    )

    # Class lifecycle guards
    class_completion_threshold: Decimal = Field(
        default=Decimal("0.9"),
        description="Share of lessons that must be completed before a class can complete",
    )
    cancellation_lock_threshold: Decimal = Field(
        default=Decimal("0.8"),
        description="Share of completed lessons past which only late reasons may cancel a class",
    )
    late_cancellation_reasons: List[str] = Field(
        default_factory=lambda: list(DEFAULT_LATE_CANCELLATION_REASONS)
    )
    withdrawal_cutoff_days: int = Field(
        default=1,
        ge=0,
        description="Students may withdraw until this many local days before the class start date",
    )

    # Tutor deposit
    tutor_deposit_rate: Decimal = Field(default=Decimal("0.10"))
    tutor_deposit_required: bool = Field(
        default=False,
        description="Keep paid online classes from starting until the tutor's deposit is held",
    )
    deposit_forfeit_reasons: List[str] = Field(default_factory=lambda: ["tutor_fault"])
    deposit_forfeit_to_students: bool = Field(
        default=True,
        description="Split a forfeited deposit across paying students instead of keeping it",
    )

    # Notification outbox
    outbox_max_attempts: int = Field(default=5, ge=1)
    outbox_backoff_seconds: List[int] = Field(default_factory=lambda: [30, 120, 600, 1800, 7200])

    # Payment gateway
    payment_max_attempts: int = Field(default=5, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("default_commission_rates", "refund_policy")
    @classmethod
    def _validate_fractions(cls, value: Dict[str, Decimal]) -> Dict[str, Decimal]:
        for key, fraction in value.items():
            if fraction < 0 or fraction > 1:
                raise ValueError(f"{key} must be between 0 and 1, got {fraction}")
        return value

    @field_validator("class_completion_threshold", "cancellation_lock_threshold", "tutor_deposit_rate")
    @classmethod
    def _validate_ratio(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 1:
            raise ValueError(f"must be between 0 and 1, got {value}")
        return value

    @field_validator("late_cancellation_reasons", "deposit_forfeit_reasons")
    @classmethod
    def _validate_reasons(cls, value: List[str]) -> List[str]:
        known = {reason.value for reason in CancellationReason}
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"unknown cancellation reasons: {unknown}")
        return value

    @field_validator("student_cancellation_grace_tiers")
    @classmethod
    def _validate_grace_tiers(cls, value: List[Tuple[int, Decimal]]) -> List[Tuple[int, Decimal]]:
        for hours, fraction in value:
            if hours < 0:
                raise ValueError("grace tier hours must be non-negative")
            if fraction < 0 or fraction > 1:
                raise ValueError(f"grace tier fraction must be between 0 and 1, got {fraction}")
        return sorted(value, key=lambda tier: tier[0], reverse=True)

    @model_validator(mode="after")
    def _distinct_system_wallets(self) -> "Settings":
        if self.escrow_wallet_user_id == self.platform_wallet_user_id:
            raise ValueError("escrow and platform wallets must be owned by different users")
        return self

    def get_database_url(self) -> str:
        """Return the database URL for the current process."""
        if is_running_tests() and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()
