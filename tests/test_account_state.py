"""Transition table for the account state machine."""

import pytest

from eguard.service.account_state import (
    AccountEvent,
    AccountState,
    Effect,
    Rejection,
    can_hold_session,
    next_state,
)
from eguard.storage.models import ADMINISTRATIVE_STATUSES, AccountStatus


class TestLoginGate:
    """Only ACTIVE accounts may attempt a login."""

    def test_active_is_allowed(self):
        result = next_state(AccountState(AccountStatus.ACTIVE, 2), AccountEvent.LOGIN_ATTEMPTED)
        assert result.allowed
        assert result.status is AccountStatus.ACTIVE
        assert result.failed_login_attempts == 2

    @pytest.mark.parametrize(
        "status",
        [s for s in AccountStatus if s is not AccountStatus.ACTIVE],
    )
    def test_every_other_status_is_blocked(self, status):
        result = next_state(AccountState(status), AccountEvent.LOGIN_ATTEMPTED)
        assert not result.allowed
        assert result.rejection is Rejection.BLOCKED
        assert result.status is status


class TestPasswordMismatch:
    """Failed password checks count toward a lock."""

    def test_increments_counter(self):
        result = next_state(AccountState(AccountStatus.ACTIVE, 1), AccountEvent.PASSWORD_MISMATCHED)
        assert result.rejection is Rejection.BAD_CREDENTIALS
        assert result.status is AccountStatus.ACTIVE
        assert result.failed_login_attempts == 2

    def test_fifth_failure_locks(self):
        result = next_state(AccountState(AccountStatus.ACTIVE, 4), AccountEvent.PASSWORD_MISMATCHED)
        assert result.rejection is Rejection.LOCKED_NOW
        assert result.status is AccountStatus.LOCKED
        assert result.failed_login_attempts == 5

    def test_custom_threshold(self):
        result = next_state(
            AccountState(AccountStatus.ACTIVE, 1),
            AccountEvent.PASSWORD_MISMATCHED,
            max_failed_attempts=2,
        )
        assert result.status is AccountStatus.LOCKED

    def test_locked_account_is_not_counted_further(self):
        result = next_state(AccountState(AccountStatus.LOCKED, 5), AccountEvent.PASSWORD_MISMATCHED)
        assert result.rejection is Rejection.BLOCKED
        assert result.failed_login_attempts == 5


class TestSuccessAndRecovery:
    """Success, reset and password update transitions."""

    def test_success_resets_counter_and_issues_tokens(self):
        result = next_state(AccountState(AccountStatus.ACTIVE, 3), AccountEvent.LOGIN_SUCCEEDED)
        assert result.allowed
        assert result.failed_login_attempts == 0
        assert Effect.ISSUE_TOKENS in result.effects

    @pytest.mark.parametrize(
        "status",
        [AccountStatus.ACTIVE, AccountStatus.LOCKED, AccountStatus.PASSWORD_RESET],
    )
    def test_reset_moves_to_password_reset(self, status):
        result = next_state(AccountState(status, 5), AccountEvent.RESET_REQUESTED)
        assert result.status is AccountStatus.PASSWORD_RESET
        assert result.failed_login_attempts == 0
        assert Effect.REPLACE_CREDENTIAL in result.effects
        assert Effect.DELIVER_TEMPORARY_CREDENTIAL in result.effects

    @pytest.mark.parametrize("status", sorted(ADMINISTRATIVE_STATUSES, key=lambda s: s.value))
    def test_reset_refused_for_administrative_statuses(self, status):
        result = next_state(AccountState(status), AccountEvent.RESET_REQUESTED)
        assert result.rejection is Rejection.BLOCKED
        assert result.status is status

    @pytest.mark.parametrize("status", [AccountStatus.ACTIVE, AccountStatus.PASSWORD_RESET])
    def test_update_activates(self, status):
        result = next_state(AccountState(status, 2), AccountEvent.PASSWORD_UPDATED)
        assert result.status is AccountStatus.ACTIVE
        assert result.failed_login_attempts == 0
        assert result.effects == (Effect.REPLACE_CREDENTIAL,)

    def test_update_refused_while_locked(self):
        result = next_state(AccountState(AccountStatus.LOCKED, 5), AccountEvent.PASSWORD_UPDATED)
        assert not result.allowed

    def test_changed_detects_counter_only_difference(self):
        current = AccountState(AccountStatus.ACTIVE, 0)
        result = next_state(current, AccountEvent.PASSWORD_MISMATCHED)
        assert result.changed(current)
        gate = next_state(current, AccountEvent.LOGIN_ATTEMPTED)
        assert not gate.changed(current)


def test_only_active_can_hold_session():
    assert can_hold_session(AccountStatus.ACTIVE)
    for status in AccountStatus:
        if status is not AccountStatus.ACTIVE:
            assert not can_hold_session(status)
