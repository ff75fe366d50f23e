from __future__ import annotations

import hmac
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from eguard.config import Settings
from eguard.logging import get_logger
from eguard.service.errors import BadCredentialsError, RateLimitedError
from eguard.service.notifications import NotificationDispatcher, two_factor_code_message
from eguard.storage.models import Principal, TwoFactorChallenge
from eguard.storage.redis_cache import RedisCache

CODE_DIGITS = 6
COOLDOWN_SCOPE = "two_factor"


class ChallengeStore(Protocol):
    def create_two_factor_challenge(
        self, principal_id: int, code: str, created_at: Optional[datetime] = None
    ) -> TwoFactorChallenge: ...

    def get_latest_two_factor_challenge(self, principal_id: int) -> Optional[TwoFactorChallenge]: ...

    def get_current_two_factor_challenge(self, principal_id: int) -> Optional[TwoFactorChallenge]: ...

    def mark_two_factor_verified(self, challenge_id: int) -> bool: ...

    def increment_two_factor_failures(self, challenge_id: int) -> int: ...


def generate_code(digits: int = CODE_DIGITS) -> str:
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


class TwoFactorManager:
    """Issues, rate-limits and verifies single-use email verification codes."""

    def __init__(
        self,
        store: ChallengeStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        notifications: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.notifications = notifications
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def request_challenge(self, principal: Principal) -> TwoFactorChallenge:
        """Create and send a fresh code unless one went out within the cooldown."""
        now = self._now()
        cooldown = self.settings.two_factor_cooldown_seconds
        latest = self.store.get_latest_two_factor_challenge(principal.id)
        if latest is not None:
            elapsed = (now - latest.created_at).total_seconds()
            if elapsed < cooldown:
                retry_after = max(math.ceil(cooldown - elapsed), 1)
                self.logger.info(
                    "two_factor_request_throttled", employee_id=principal.id, retry_after=retry_after
                )
                raise RateLimitedError("verification code requested too recently", retry_after=retry_after)

        # Shared claim so two instances cannot both pass the read above
        if self.cache is not None and cooldown > 0:
            claimed, retry_after = await self.cache.claim_cooldown(
                COOLDOWN_SCOPE, str(principal.id), cooldown
            )
            if not claimed:
                self.logger.info(
                    "two_factor_request_throttled",
                    employee_id=principal.id,
                    retry_after=retry_after,
                    source="cache",
                )
                raise RateLimitedError("verification code requested too recently", retry_after=retry_after)

        code = generate_code()
        try:
            challenge = self.store.create_two_factor_challenge(principal.id, code, now)
        except Exception:
            if self.cache is not None:
                await self.cache.release_cooldown(COOLDOWN_SCOPE, str(principal.id))
            raise
        if self.notifications is not None:
            subject, body = two_factor_code_message(code, self.settings.two_factor_code_ttl_seconds)
            self.notifications.dispatch(principal.email, subject, body)
        self.logger.info("two_factor_challenge_issued", employee_id=principal.id, challenge_id=challenge.id)
        return challenge

    def verify(self, principal: Principal, code: Optional[str]) -> TwoFactorChallenge:
        """Consume the current challenge if ``code`` matches it.

        Any failure raises ``BadCredentialsError``. A wrong code counts against
        the challenge, never against the account's login counter.
        """
        challenge = self.store.get_current_two_factor_challenge(principal.id)
        if challenge is None:
            self.logger.info("two_factor_no_pending_challenge", employee_id=principal.id)
            raise BadCredentialsError()

        age = self._now() - challenge.created_at
        if age >= timedelta(seconds=self.settings.two_factor_code_ttl_seconds):
            self.logger.info("two_factor_challenge_expired", employee_id=principal.id, challenge_id=challenge.id)
            raise BadCredentialsError()

        max_attempts = self.settings.two_factor_max_attempts
        if max_attempts and challenge.failed_attempts >= max_attempts:
            self.logger.warning(
                "two_factor_challenge_exhausted",
                employee_id=principal.id,
                challenge_id=challenge.id,
                failed_attempts=challenge.failed_attempts,
            )
            raise BadCredentialsError()

        supplied = (code or "").strip()
        if not hmac.compare_digest(challenge.code.encode(), supplied.encode()):
            failures = self.store.increment_two_factor_failures(challenge.id)
            self.logger.warning(
                "two_factor_code_mismatch",
                employee_id=principal.id,
                challenge_id=challenge.id,
                failed_attempts=failures,
            )
            raise BadCredentialsError()

        # Conditional update; a concurrent login may have consumed it first
        if not self.store.mark_two_factor_verified(challenge.id):
            raise BadCredentialsError()
        self.logger.info("two_factor_verified", employee_id=principal.id, challenge_id=challenge.id)
        challenge.verified = True
        return challenge
