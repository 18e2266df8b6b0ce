"""
Trial gate.

Computed fresh on every check from the tenant's subscription status and
trial end. After the trial ends there is a fixed grace window before
access is hard-blocked.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .tenancy.stores import Tenant

GRACE_PERIOD_DAYS = 3
WARNING_THRESHOLD_DAYS = 7
URGENT_THRESHOLD_DAYS = 3

TRIALING = "trialing"

_SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class TrialStatus:
    is_trialing: bool = False
    days_remaining: int = 0
    expires_at: Optional[datetime] = None
    is_expired: bool = False
    is_grace_period: bool = False
    grace_days_remaining: int = 0

    @property
    def should_block_access(self) -> bool:
        return self.is_expired and not self.is_grace_period

    @property
    def should_show_warning(self) -> bool:
        return self.is_trialing and self.days_remaining <= WARNING_THRESHOLD_DAYS

    @property
    def should_show_urgent(self) -> bool:
        return (self.is_trialing and self.days_remaining <= URGENT_THRESHOLD_DAYS) or self.is_grace_period


NOT_TRIALING = TrialStatus()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / _SECONDS_PER_DAY)


def evaluate_trial(
    subscription_status: Optional[str],
    trial_ends_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> TrialStatus:
    if subscription_status != TRIALING or trial_ends_at is None:
        return NOT_TRIALING

    now = _as_utc(now or datetime.now(timezone.utc))
    expires_at = _as_utc(trial_ends_at)
    grace_end = expires_at + timedelta(days=GRACE_PERIOD_DAYS)

    days_remaining = _ceil_days(expires_at - now)
    grace_days_remaining = _ceil_days(grace_end - now)
    is_expired = days_remaining <= 0

    return TrialStatus(
        is_trialing=True,
        days_remaining=max(0, days_remaining),
        expires_at=expires_at,
        is_expired=is_expired,
        is_grace_period=is_expired and grace_days_remaining > 0,
        grace_days_remaining=max(0, grace_days_remaining),
    )


def trial_status_for_tenant(tenant: Optional[Tenant], now: Optional[datetime] = None) -> TrialStatus:
    if tenant is None:
        return NOT_TRIALING
    return evaluate_trial(tenant.subscription_status, tenant.trial_ends_at, now)
