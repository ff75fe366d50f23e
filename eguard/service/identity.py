from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Protocol, Tuple

from eguard.logging import get_logger
from eguard.service.account_state import can_hold_session
from eguard.service.errors import AccountBlockedError, UnauthenticatedError
from eguard.service.tokens import TokenService
from eguard.storage.models import AccountStatus, Principal, Role

ACCESS_TOKEN_COOKIE = "accessToken"
REFRESH_TOKEN_COOKIE = "refreshToken"

logger = get_logger(__name__)


class PrincipalReader(Protocol):
    def get_principal(self, principal_id: int) -> Optional[Principal]: ...

    def list_accessible_menu_ids(self, role: Role) -> List[int]: ...


@dataclass(frozen=True)
class CallerIdentity:
    """The authenticated caller, passed explicitly into every core operation."""

    principal_id: int
    email: str
    role: Role
    company_id: int
    factory_id: int
    authentication_status: AccountStatus = AccountStatus.ACTIVE
    accessible_menu_ids: Tuple[int, ...] = ()
    token: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @classmethod
    def for_principal(
        cls,
        principal: Principal,
        menu_ids: Tuple[int, ...] = (),
        token: Optional[str] = None,
    ) -> "CallerIdentity":
        return cls(
            principal_id=principal.id,
            email=principal.email,
            role=principal.role,
            company_id=principal.company_id,
            factory_id=principal.factory_id,
            authentication_status=principal.authentication_status,
            accessible_menu_ids=menu_ids,
            token=token,
        )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def extract_token(
    authorization: Optional[str], cookies: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """Bearer header wins; the ``accessToken`` cookie is the fallback."""
    token = extract_bearer(authorization)
    if token:
        return token
    if cookies:
        return cookies.get(ACCESS_TOKEN_COOKIE) or None
    return None


class RequestIdentityBinder:
    """Turns a presented access token into a ``CallerIdentity``."""

    def __init__(self, tokens: TokenService, store: PrincipalReader) -> None:
        self.tokens = tokens
        self.store = store

    def current_caller(self, token: Optional[str]) -> CallerIdentity:
        if not token:
            raise UnauthenticatedError()
        claims = self.tokens.extract_claims(token)
        principal = self.store.get_principal(claims.employee_id)
        if principal is None or principal.email != claims.email:
            logger.warning("caller_principal_missing", employee_id=claims.employee_id)
            raise UnauthenticatedError()
        if not can_hold_session(principal.authentication_status):
            logger.info(
                "caller_account_blocked",
                employee_id=principal.id,
                status=principal.authentication_status.value,
            )
            raise AccountBlockedError(principal.authentication_status)
        # Role and tenant come from the live record, not the token snapshot
        menu_ids = tuple(sorted(self.store.list_accessible_menu_ids(principal.role)))
        return CallerIdentity.for_principal(principal, menu_ids, token)

    def bind(
        self, authorization: Optional[str], cookies: Optional[Mapping[str, str]] = None
    ) -> CallerIdentity:
        return self.current_caller(extract_token(authorization, cookies))
