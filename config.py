from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Mapping, Optional

from exceptions import ConfigError, InvalidRecordError

# -----------------------------
# Logging
# -----------------------------
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

logger = logging.getLogger("circulation")
logger.setLevel(logging.INFO)
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(h)


def configure_logging(level: str) -> None:
    """Set the level of the ``circulation`` logger tree."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ConfigError(f"Unknown log level: {level!r}")
    logger.setLevel(numeric)


MONEY_Q = Decimal("0.01")
ZERO = Decimal("0.00")


def money(x: Decimal) -> Decimal:
    return Decimal(x).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeePolicy:
    """
    Late-fee rule for open loans.

    A loan accrues ``rate_per_day`` for every whole day past
    ``grace_days`` since the issue date. Loans inside the grace period
    carry no fee.
    """

    grace_days: int = 30
    rate_per_day: Decimal = Decimal("0.50")

    def __post_init__(self) -> None:
        if self.grace_days < 0:
            raise ConfigError(f"grace_days must be >= 0 (got {self.grace_days})")
        if not Decimal(self.rate_per_day).is_finite():
            raise ConfigError(f"rate_per_day must be a finite amount (got {self.rate_per_day})")
        if self.rate_per_day < 0:
            raise ConfigError(f"rate_per_day must be >= 0 (got {self.rate_per_day})")

    def late_fee(self, issue_date: date, on_date: date) -> Decimal:
        """
        Returns the fee owed on ``on_date`` for a loan issued on ``issue_date``.

        Raises:
            InvalidRecordError: If issue_date is not a date or lies after on_date.
        """
        if not isinstance(issue_date, date):
            raise InvalidRecordError(f"issue_date must be a datetime.date (got {issue_date!r})")
        if issue_date > on_date:
            raise InvalidRecordError(f"issue_date {issue_date} is after {on_date}")

        elapsed = (on_date - issue_date).days
        if elapsed <= self.grace_days:
            return ZERO
        return money((elapsed - self.grace_days) * self.rate_per_day)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///library.db"
    log_level: str = "INFO"
    fee_policy: FeePolicy = field(default_factory=FeePolicy)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Builds settings from ``LIBRARY_*`` environment variables.

        Recognised keys:
            LIBRARY_DATABASE_URL, LIBRARY_LOG_LEVEL,
            LIBRARY_GRACE_DAYS, LIBRARY_FEE_RATE

        Raises:
            ConfigError: If a numeric value cannot be parsed.
        """
        env = os.environ if env is None else env
        defaults = cls()

        grace_s = env.get("LIBRARY_GRACE_DAYS")
        rate_s = env.get("LIBRARY_FEE_RATE")
        try:
            grace = int(grace_s) if grace_s else defaults.fee_policy.grace_days
        except ValueError:
            raise ConfigError(f"Invalid LIBRARY_GRACE_DAYS: {grace_s!r}")
        try:
            rate = Decimal(rate_s) if rate_s else defaults.fee_policy.rate_per_day
        except InvalidOperation:
            raise ConfigError(f"Invalid LIBRARY_FEE_RATE: {rate_s!r}")

        return cls(
            database_url=env.get("LIBRARY_DATABASE_URL") or defaults.database_url,
            log_level=env.get("LIBRARY_LOG_LEVEL") or defaults.log_level,
            fee_policy=FeePolicy(grace_days=grace, rate_per_day=rate),
        )
