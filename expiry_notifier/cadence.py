"""Decide which users are due a reminder under a profile's cadence."""
from __future__ import annotations

from typing import Iterable, List, Optional, Set, Tuple

from .models import AuditEntry, ExpiryRecord, ProfileValidationError


EXACT = "exact"
CATCH_UP = "catch_up"

SentKey = Tuple[str, str, int]


def validate_cadence(values: Iterable[int]) -> List[int]:
    """Return distinct offsets in descending order, rejecting empty or negative cadences."""

    offsets: List[int] = []
    for value in values:
        if isinstance(value, bool):
            raise ProfileValidationError("Cadence offsets must be whole numbers.")
        try:
            offset = int(value)
        except (TypeError, ValueError) as exc:
            raise ProfileValidationError(f"Cadence offset '{value}' is not a whole number.") from exc
        if offset < 0:
            raise ProfileValidationError(f"Cadence offset {offset} cannot be negative.")
        offsets.append(offset)
    if not offsets:
        raise ProfileValidationError("Cadence needs at least one day offset.")
    return sorted(set(offsets), reverse=True)


def due_offset(
    record: ExpiryRecord,
    days_before: Iterable[int],
    sent_log: Set[SentKey],
    profile_id: str,
    user_id: str,
    match: str = EXACT,
) -> Optional[int]:
    """Return the cadence offset a notification is due for, or ``None``.

    ``exact`` only fires on the day the remaining count equals an offset, so a
    count that jumps over an offset between runs never fires for it.
    ``catch_up`` fires for the smallest offset at or above the remaining count
    that has not been sent yet.
    """

    if record.never_expires:
        return None
    offsets = set(days_before)
    remaining = record.days_remaining

    if match == EXACT:
        if remaining not in offsets:
            return None
        candidate = remaining
    elif match == CATCH_UP:
        if remaining < 0:
            return None
        eligible = [offset for offset in offsets if offset >= remaining]
        if not eligible:
            return None
        candidate = min(eligible)
    else:
        raise ValueError(f"Unknown cadence match mode '{match}'.")

    if (profile_id, user_id, candidate) in sent_log:
        return None
    return candidate


def is_due(
    record: ExpiryRecord,
    days_before: Iterable[int],
    sent_log: Set[SentKey],
    profile_id: str,
    user_id: str,
    match: str = EXACT,
) -> bool:
    return due_offset(record, days_before, sent_log, profile_id, user_id, match) is not None


def build_sent_log(entries: Iterable[AuditEntry]) -> Set[SentKey]:
    log: Set[SentKey] = set()
    for entry in entries:
        if entry.status != "sent" or entry.offset is None:
            continue
        user_key = (entry.user_id or entry.recipient).lower()
        log.add((entry.profile_id, user_key, entry.offset))
    return log


__all__ = [
    "CATCH_UP",
    "EXACT",
    "SentKey",
    "build_sent_log",
    "due_offset",
    "is_due",
    "validate_cadence",
]
