"""Account status transitions for login and credential recovery.

``next_state`` is a pure function: it takes the principal's current status and
failure counter plus an event, and returns the resulting status, counter,
side effects to perform and, when the event is refused, the reason. Callers
turn rejections into exceptions and perform effects; nothing here touches
storage, and refusals are returned rather than raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from eguard.storage.models import ADMINISTRATIVE_STATUSES, AccountStatus

DEFAULT_MAX_FAILED_ATTEMPTS = 5


class AccountEvent(str, Enum):
    LOGIN_ATTEMPTED = "login_attempted"
    PASSWORD_MISMATCHED = "password_mismatched"
    LOGIN_SUCCEEDED = "login_succeeded"
    RESET_REQUESTED = "reset_requested"
    PASSWORD_UPDATED = "password_updated"


class Effect(str, Enum):
    ISSUE_TOKENS = "issue_tokens"
    REPLACE_CREDENTIAL = "replace_credential"
    DELIVER_TEMPORARY_CREDENTIAL = "deliver_temporary_credential"


class Rejection(str, Enum):
    # Status forbids the event; the error carries the status itself
    BLOCKED = "blocked"
    # Mismatch that did not trip the lock
    BAD_CREDENTIALS = "bad_credentials"
    # Mismatch that just tripped the lock
    LOCKED_NOW = "locked_now"


@dataclass(frozen=True)
class AccountState:
    status: AccountStatus
    failed_login_attempts: int = 0


@dataclass(frozen=True)
class Transition:
    status: AccountStatus
    failed_login_attempts: int
    effects: Tuple[Effect, ...] = ()
    rejection: Optional[Rejection] = None

    @property
    def allowed(self) -> bool:
        return self.rejection is None

    def changed(self, current: AccountState) -> bool:
        return (
            self.status != current.status
            or self.failed_login_attempts != current.failed_login_attempts
        )


def _refuse(current: AccountState, rejection: Rejection = Rejection.BLOCKED) -> Transition:
    return Transition(
        status=current.status,
        failed_login_attempts=current.failed_login_attempts,
        rejection=rejection,
    )


def next_state(
    current: AccountState,
    event: AccountEvent,
    *,
    max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS,
) -> Transition:
    status = current.status

    if event is AccountEvent.LOGIN_ATTEMPTED:
        # Only ACTIVE accounts get as far as the credential check
        if status is AccountStatus.ACTIVE:
            return Transition(status, current.failed_login_attempts)
        return _refuse(current)

    if event is AccountEvent.PASSWORD_MISMATCHED:
        if status is not AccountStatus.ACTIVE:
            return _refuse(current)
        attempts = current.failed_login_attempts + 1
        if attempts >= max_failed_attempts:
            return Transition(AccountStatus.LOCKED, attempts, rejection=Rejection.LOCKED_NOW)
        return Transition(status, attempts, rejection=Rejection.BAD_CREDENTIALS)

    if event is AccountEvent.LOGIN_SUCCEEDED:
        if status is not AccountStatus.ACTIVE:
            return _refuse(current)
        return Transition(status, 0, effects=(Effect.ISSUE_TOKENS,))

    if event is AccountEvent.RESET_REQUESTED:
        if status in ADMINISTRATIVE_STATUSES:
            return _refuse(current)
        return Transition(
            AccountStatus.PASSWORD_RESET,
            0,
            effects=(Effect.REPLACE_CREDENTIAL, Effect.DELIVER_TEMPORARY_CREDENTIAL),
        )

    if event is AccountEvent.PASSWORD_UPDATED:
        if status not in (AccountStatus.ACTIVE, AccountStatus.PASSWORD_RESET):
            return _refuse(current)
        return Transition(AccountStatus.ACTIVE, 0, effects=(Effect.REPLACE_CREDENTIAL,))

    raise ValueError(f"unknown account event: {event!r}")


def can_hold_session(status: AccountStatus) -> bool:
    """Whether an already-issued token for this status may still be honoured."""
    return status is AccountStatus.ACTIVE
