"""Unit tests for cadence evaluation."""
from __future__ import annotations

import pytest

from expiry_notifier.cadence import (
    CATCH_UP,
    build_sent_log,
    due_offset,
    is_due,
    validate_cadence,
)
from expiry_notifier.models import AuditEntry, ExpiryRecord, ProfileValidationError

from .conftest import NOW

CADENCE = [14, 7, 1]


def _record(days_remaining: int, never_expires: bool = False) -> ExpiryRecord:
    return ExpiryRecord(
        last_set=NOW,
        never_expires=never_expires,
        expiry_date=None if never_expires else NOW,
        days_remaining=999 if never_expires else days_remaining,
        days_since_reset=0,
    )


class TestExactMatch:
    def test_offset_day_is_due(self):
        assert is_due(_record(7), CADENCE, set(), "p1", "alice")

    def test_between_offsets_is_not_due(self):
        assert not is_due(_record(8), CADENCE, set(), "p1", "alice")

    def test_already_sent_for_offset_is_not_due(self):
        assert not is_due(_record(7), CADENCE, {("p1", "alice", 7)}, "p1", "alice")

    def test_sent_log_is_scoped_to_profile_and_user(self):
        sent = {("p2", "alice", 7), ("p1", "bob", 7)}

        assert is_due(_record(7), CADENCE, sent, "p1", "alice")

    def test_never_expiring_is_never_due(self):
        assert not is_due(_record(0, never_expires=True), CADENCE + [999], set(), "p1", "alice")

    def test_skipped_offset_is_not_recovered(self):
        # A sync gap takes the user from 15 straight to 6 days.
        assert not is_due(_record(15), CADENCE, set(), "p1", "alice")
        assert not is_due(_record(6), CADENCE, set(), "p1", "alice")

    def test_duplicate_offsets_collapse(self):
        assert due_offset(_record(7), [7, 7, 1], set(), "p1", "alice") == 7

    def test_expired_user_is_not_due(self):
        assert not is_due(_record(-3), CADENCE, set(), "p1", "alice")


class TestCatchUp:
    def test_skipped_offset_fires_once(self):
        assert due_offset(_record(6), CADENCE, set(), "p1", "alice", CATCH_UP) == 7

    def test_does_not_refire_after_catch_up_send(self):
        sent = {("p1", "alice", 7)}

        assert due_offset(_record(5), CADENCE, sent, "p1", "alice", CATCH_UP) is None
        assert due_offset(_record(1), CADENCE, sent, "p1", "alice", CATCH_UP) == 1

    def test_above_every_offset_is_not_due(self):
        assert due_offset(_record(30), CADENCE, set(), "p1", "alice", CATCH_UP) is None

    def test_expired_user_is_not_due(self):
        assert due_offset(_record(-1), CADENCE, set(), "p1", "alice", CATCH_UP) is None

    def test_unknown_mode_is_rejected(self):
        with pytest.raises(ValueError):
            due_offset(_record(7), CADENCE, set(), "p1", "alice", "nearest")


class TestValidation:
    def test_sorted_distinct_descending(self):
        assert validate_cadence([1, 14, 7, 7]) == [14, 7, 1]

    def test_zero_is_allowed(self):
        assert validate_cadence([0]) == [0]

    @pytest.mark.parametrize("values", [[], [7, -1], ["soon"]])
    def test_invalid_cadence_is_rejected(self, values):
        with pytest.raises(ProfileValidationError):
            validate_cadence(values)


def test_sent_log_uses_successful_cadence_sends_only():
    entries = [
        AuditEntry("t", "alice@contoso.com", "p1", "sent", user_id="Alice", offset=7),
        AuditEntry("t", "bob@contoso.com", "p1", "failed", user_id="bob", offset=7),
        AuditEntry("t", "carol@contoso.com", "p1", "sent", user_id="carol", offset=None),
    ]

    assert build_sent_log(entries) == {("p1", "alice", 7)}
