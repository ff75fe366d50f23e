from __future__ import annotations

import contextlib
import secrets
import string
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from eguard.config import Settings
from eguard.logging import get_logger
from eguard.service.account_state import (
    AccountEvent,
    AccountState,
    Effect,
    Rejection,
    Transition,
    next_state,
)
from eguard.service.errors import (
    AccountBlockedError,
    BadCredentialsError,
    ForbiddenError,
    ServerError,
    TwoFactorRequiredError,
    ValidationError,
)
from eguard.service.identity import CallerIdentity
from eguard.service.notifications import NotificationDispatcher, temporary_password_message
from eguard.service.tenant_access import EntityKind, TenantAccessValidator
from eguard.service.tokens import ClaimsSnapshot, TokenPair, TokenService
from eguard.service.two_factor import TwoFactorManager
from eguard.storage.models import AccountStatus, Principal, Role, TenantSetting

_RESET_ROLES = frozenset({Role.MANAGER, Role.ADMIN})


class AuthStore(Protocol):
    def get_principal(self, principal_id: int) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def update_principal_auth(
        self,
        principal_id: int,
        *,
        authentication_status: AccountStatus,
        failed_login_attempts: int,
        password_hash: Optional[str] = None,
    ) -> Optional[Principal]: ...

    def record_failed_login(self, principal_id: int, lock_threshold: int) -> Optional[Principal]: ...

    def get_tenant_setting_for_company(self, company_id: int) -> Optional[TenantSetting]: ...

    def delete_refresh_tokens_for_principal(self, principal_id: int) -> int: ...


def generate_temporary_password(length: int = 8) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


class AuthService:
    """Login, password recovery and session lifecycle on top of the account state machine."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: TokenService,
        two_factor: TwoFactorManager,
        access: TenantAccessValidator,
        notifications: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.two_factor = two_factor
        self.access = access
        self.notifications = notifications
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against for unknown identities so both paths cost one argon2 check
        self._decoy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # -- credentials ------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, principal: Principal, password: Optional[str]) -> bool:
        if not principal.password_hash or not password:
            return False
        try:
            return self._pwd_hasher.verify(principal.password_hash, password)
        except InvalidHash:
            self.logger.warning("password_hash_invalid", employee_id=principal.id)
            return False
        except VerificationError:
            return False

    def _burn_verification(self, password: Optional[str]) -> None:
        with contextlib.suppress(VerificationError):
            self._pwd_hasher.verify(self._decoy_hash, password or "")

    def _state_of(self, principal: Principal) -> AccountState:
        return AccountState(principal.authentication_status, principal.failed_login_attempts)

    def _transition(self, principal: Principal, event: AccountEvent) -> Transition:
        return next_state(
            self._state_of(principal),
            event,
            max_failed_attempts=self.settings.max_failed_login_attempts,
        )

    def _persist(
        self,
        principal: Principal,
        transition: Transition,
        *,
        password_hash: Optional[str] = None,
    ) -> Principal:
        if not transition.changed(self._state_of(principal)) and password_hash is None:
            return principal
        updated = self.store.update_principal_auth(
            principal.id,
            authentication_status=transition.status,
            failed_login_attempts=transition.failed_login_attempts,
            password_hash=password_hash,
        )
        if updated is None:
            raise ServerError("account record disappeared during update")
        return updated

    def _record_mismatch(self, principal: Principal) -> Transition:
        """Count a wrong password in one atomic store write.

        Concurrent failures each see the count left by the previous one, so the
        lock trips on exactly the configured attempt.
        """
        updated = self.store.record_failed_login(
            principal.id, self.settings.max_failed_login_attempts
        )
        if updated is None:
            raise ServerError("account record disappeared during update")
        status = updated.authentication_status
        if status is AccountStatus.ACTIVE:
            rejection = Rejection.BAD_CREDENTIALS
        elif status is AccountStatus.LOCKED:
            rejection = Rejection.LOCKED_NOW
        else:
            # Another request moved the account out of ACTIVE first
            rejection = Rejection.BLOCKED
        return Transition(status, updated.failed_login_attempts, rejection=rejection)

    # -- login ------------------------------------------------------------

    async def login(
        self, email: str, password: str, code: Optional[str] = None
    ) -> TokenPair:
        principal = self.store.get_principal_by_email(email) if email else None
        if principal is None:
            self._burn_verification(password)
            self.logger.info("login_failed", reason="unknown_identity")
            raise BadCredentialsError()

        if not self._transition(principal, AccountEvent.LOGIN_ATTEMPTED).allowed:
            self.logger.info(
                "login_blocked",
                employee_id=principal.id,
                status=principal.authentication_status.value,
            )
            raise AccountBlockedError(principal.authentication_status)

        if not self._verify_password(principal, password):
            transition = self._record_mismatch(principal)
            if transition.rejection is Rejection.BLOCKED:
                raise AccountBlockedError(transition.status)
            if transition.rejection is Rejection.LOCKED_NOW:
                self.logger.warning(
                    "account_locked",
                    employee_id=principal.id,
                    failed_attempts=transition.failed_login_attempts,
                )
                raise AccountBlockedError(AccountStatus.LOCKED)
            self.logger.info(
                "login_failed",
                reason="bad_password",
                employee_id=principal.id,
                failed_attempts=transition.failed_login_attempts,
            )
            raise BadCredentialsError()

        setting = self.store.get_tenant_setting_for_company(principal.company_id)
        if setting is None:
            self.logger.error("tenant_setting_missing", company_id=principal.company_id)
            raise ServerError("tenant settings unavailable")
        if setting.two_factor_enabled:
            if not code or not code.strip():
                raise TwoFactorRequiredError()
            self.two_factor.verify(principal, code)

        transition = self._transition(principal, AccountEvent.LOGIN_SUCCEEDED)
        principal = self._persist(principal, transition)
        pair = self.tokens.issue_session(principal)
        self.logger.info("login_succeeded", employee_id=principal.id, company_id=principal.company_id)
        return pair

    async def request_two_factor_code(self, email: str) -> None:
        principal = self.store.get_principal_by_email(email) if email else None
        if principal is None:
            self.logger.info("two_factor_request_ignored", reason="unknown_identity")
            return
        await self.two_factor.request_challenge(principal)

    # -- session lifecycle ------------------------------------------------

    async def renew(self, refresh_token: str) -> str:
        return self.tokens.renew(refresh_token)

    async def revoke_session(self, token: str) -> None:
        self.tokens.revoke(token)

    # -- password recovery ------------------------------------------------

    def _reset(self, principal: Principal, *, initiated_by: str) -> None:
        transition = self._transition(principal, AccountEvent.RESET_REQUESTED)
        if not transition.allowed:
            self.logger.info(
                "password_reset_blocked",
                employee_id=principal.id,
                status=principal.authentication_status.value,
                initiated_by=initiated_by,
            )
            raise AccountBlockedError(principal.authentication_status)
        temporary = generate_temporary_password(self.settings.temporary_password_length)
        self._persist(principal, transition, password_hash=self.hash_password(temporary))
        # A leaked credential is the usual reason for a reset
        removed = self.store.delete_refresh_tokens_for_principal(principal.id)
        if Effect.DELIVER_TEMPORARY_CREDENTIAL in transition.effects and self.notifications:
            subject, body = temporary_password_message(temporary)
            self.notifications.dispatch(principal.email, subject, body)
        self.logger.info(
            "password_reset",
            employee_id=principal.id,
            initiated_by=initiated_by,
            previous_status=principal.authentication_status.value,
            refresh_tokens_removed=removed,
        )

    async def reset_password(self, email: str) -> None:
        principal = self.store.get_principal_by_email(email) if email else None
        if principal is None:
            self.logger.info("password_reset_ignored", reason="unknown_identity")
            return
        self._reset(principal, initiated_by="self")

    async def admin_reset_password(self, caller: CallerIdentity, principal_id: int) -> None:
        if caller.role not in _RESET_ROLES:
            raise ForbiddenError("manager or admin role required")
        target_id = self.access.authorize_one(caller, EntityKind.EMPLOYEE, principal_id)
        principal = self.store.get_principal(target_id)
        if principal is None:
            raise ServerError("account record disappeared during reset")
        self._reset(principal, initiated_by=f"employee:{caller.principal_id}")

    async def update_password(self, email: str, old_password: str, new_password: str) -> None:
        principal = self.store.get_principal_by_email(email) if email else None
        if principal is None:
            self._burn_verification(old_password)
            raise BadCredentialsError()
        # A pending reset is the one non-ACTIVE state allowed to change its password
        if principal.authentication_status is not AccountStatus.PASSWORD_RESET:
            if not self._transition(principal, AccountEvent.LOGIN_ATTEMPTED).allowed:
                raise AccountBlockedError(principal.authentication_status)
        if not self._verify_password(principal, old_password):
            self.logger.info("password_update_failed", employee_id=principal.id)
            raise BadCredentialsError()
        if old_password == new_password:
            raise ValidationError("new password must differ from the current password")

        transition = self._transition(principal, AccountEvent.PASSWORD_UPDATED)
        if not transition.allowed:
            raise AccountBlockedError(principal.authentication_status)
        self._persist(principal, transition, password_hash=self.hash_password(new_password))
        self.store.delete_refresh_tokens_for_principal(principal.id)
        self.logger.info(
            "password_updated",
            employee_id=principal.id,
            previous_status=principal.authentication_status.value,
        )

    # -- caller views -----------------------------------------------------

    def caller_info(self, caller: CallerIdentity) -> ClaimsSnapshot:
        principal = self.store.get_principal(caller.principal_id)
        if principal is None:
            raise ServerError("account record disappeared")
        return self.tokens.build_snapshot(principal)

    def caller_authority(self, caller: CallerIdentity) -> dict:
        return {
            "role": caller.role.value,
            "accessible_menu_ids": list(caller.accessible_menu_ids),
        }
