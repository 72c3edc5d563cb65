"""Password expiry computation for directory principals.

Every value produced here is a point-in-time snapshot measured from ``now``;
callers recompute on each directory fetch instead of caching results.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .models import DirectoryPrincipal, ExpiryRecord, format_timestamp, utc_now


NEVER_EXPIRES_SENTINEL = 999
DISABLE_EXPIRATION_FLAG = "DisablePasswordExpiration"
DEFAULT_CRITICAL_THRESHOLD = 14
QUICK_FILTERS = ("all", "critical", "expired", "safe")

_DAY_SECONDS = 86_400


class MissingTimestampError(ValueError):
    """Raised when a principal has neither a password-change nor a creation timestamp."""

    def __init__(self, principal_id: str) -> None:
        super().__init__(
            f"Principal '{principal_id}' has no lastPasswordChangeDateTime or createdDateTime."
        )
        self.principal_id = principal_id


def normalize(
    principal: DirectoryPrincipal,
    default_expiry_days: int,
    now: Optional[datetime] = None,
) -> ExpiryRecord:
    """Derive the :class:`ExpiryRecord` for ``principal`` as of ``now``.

    Hybrid-synced accounts always expire: their password policy is enforced on
    premises, so a ``DisablePasswordExpiration`` flag seen in the cloud
    directory is ignored for them.
    """

    current = now or utc_now()
    last_set = principal.last_password_change or principal.created
    if last_set is None:
        raise MissingTimestampError(principal.id or principal.user_principal_name)

    policy_disables = DISABLE_EXPIRATION_FLAG.lower() in (principal.password_policies or "").lower()
    never_expires = policy_disables and not principal.is_hybrid

    days_since_reset = math.floor((current - last_set).total_seconds() / _DAY_SECONDS)
    if never_expires:
        return ExpiryRecord(
            last_set=last_set,
            never_expires=True,
            expiry_date=None,
            days_remaining=NEVER_EXPIRES_SENTINEL,
            days_since_reset=days_since_reset,
        )

    expiry_date = last_set + timedelta(days=default_expiry_days)
    days_remaining = math.ceil((expiry_date - current).total_seconds() / _DAY_SECONDS)
    return ExpiryRecord(
        last_set=last_set,
        never_expires=False,
        expiry_date=expiry_date,
        days_remaining=days_remaining,
        days_since_reset=days_since_reset,
    )


def classify(record: ExpiryRecord, critical_threshold: int = DEFAULT_CRITICAL_THRESHOLD) -> str:
    """Bucket a record into ``safe``, ``critical`` or ``expired``."""

    if record.never_expires:
        return "safe"
    if record.days_remaining <= 0:
        return "expired"
    if record.days_remaining <= critical_threshold:
        return "critical"
    return "safe"


@dataclass(frozen=True)
class PrincipalStatus:
    principal: DirectoryPrincipal
    record: ExpiryRecord
    urgency: str

    @property
    def key(self) -> str:
        return (self.principal.id or self.principal.user_principal_name).lower()

    def to_dict(self) -> Dict[str, Any]:
        payload = self.principal.to_dict()
        payload.update(
            {
                "passwordLastSetDateTime": format_timestamp(self.record.last_set),
                "passwordExpiresInDays": self.record.days_remaining,
                "passwordExpiryDate": format_timestamp(self.record.expiry_date),
                "neverExpires": self.record.never_expires,
                "daysSinceLastReset": self.record.days_since_reset,
                "urgency": self.urgency,
            }
        )
        return payload


def evaluate(
    principal: DirectoryPrincipal,
    default_expiry_days: int,
    now: Optional[datetime] = None,
    critical_threshold: int = DEFAULT_CRITICAL_THRESHOLD,
) -> PrincipalStatus:
    record = normalize(principal, default_expiry_days, now)
    return PrincipalStatus(principal=principal, record=record, urgency=classify(record, critical_threshold))


def filter_statuses(
    statuses: Iterable[PrincipalStatus],
    search: Optional[str] = None,
    quick_filter: str = "all",
    enabled_only: bool = False,
    never_expires_only: bool = False,
) -> List[PrincipalStatus]:
    """Apply the dashboard search box, toggles and quick filter."""

    quick = (quick_filter or "all").strip().lower()
    if quick not in QUICK_FILTERS:
        raise ValueError(f"Unknown filter '{quick_filter}'. Use one of {', '.join(QUICK_FILTERS)}.")
    term = (search or "").strip().lower()

    result: List[PrincipalStatus] = []
    for status in statuses:
        principal = status.principal
        if term and term not in principal.display_name.lower() and term not in principal.user_principal_name.lower():
            continue
        if enabled_only and not principal.account_enabled:
            continue
        if never_expires_only and not status.record.never_expires:
            continue
        if quick != "all" and status.urgency != quick:
            continue
        result.append(status)
    return result


def summarize(statuses: Iterable[PrincipalStatus]) -> Dict[str, int]:
    counts = {"total": 0, "safe": 0, "critical": 0, "expired": 0}
    for status in statuses:
        counts["total"] += 1
        counts[status.urgency] += 1
    return counts


__all__ = [
    "DISABLE_EXPIRATION_FLAG",
    "MissingTimestampError",
    "NEVER_EXPIRES_SENTINEL",
    "PrincipalStatus",
    "QUICK_FILTERS",
    "classify",
    "evaluate",
    "filter_statuses",
    "normalize",
    "summarize",
]
