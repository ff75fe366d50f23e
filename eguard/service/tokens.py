from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Mapping, Optional, Protocol, Tuple

from eguard.config import Settings
from eguard.logging import get_logger
from eguard.service.account_state import can_hold_session
from eguard.service.errors import AccountBlockedError, UnauthenticatedError
from eguard.storage.models import (
    HEALTH_STATUS_NORMAL,
    AccountStatus,
    Company,
    Factory,
    Principal,
    RefreshToken,
    Role,
)

logger = get_logger(__name__)

CLAIMS_VERSION = 1

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


class TokenStore(Protocol):
    def get_principal(self, principal_id: int) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def get_company(self, company_id: int) -> Optional[Company]: ...

    def get_factory(self, factory_id: int) -> Optional[Factory]: ...

    def list_accessible_menu_ids(self, role: Role) -> List[int]: ...

    def get_latest_unresolved_incident(self, principal_id: int) -> str: ...

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_tokens_for_principal(self, principal_id: int) -> int: ...

    def blacklist_token(self, token: str, created_at: Optional[datetime] = None) -> bool: ...

    def is_token_blacklisted(self, token: str) -> bool: ...


@dataclass(frozen=True)
class ClaimsSnapshot:
    """Identity and authorization snapshot carried by an access token.

    The claim names are the wire contract; bump ``CLAIMS_VERSION`` whenever a
    field is added, renamed or changes meaning.
    """

    employee_id: int
    email: str
    name: str
    role: Role
    company_id: int
    factory_id: int
    authentication_status: AccountStatus
    health_status: str = HEALTH_STATUS_NORMAL
    accessible_menu_ids: Tuple[int, ...] = ()
    company_name: Optional[str] = None
    factory_name: Optional[str] = None
    phone_number: Optional[str] = None

    def to_claims(self) -> dict[str, Any]:
        return {
            "ver": CLAIMS_VERSION,
            "employee_id": self.employee_id,
            "email": self.email,
            "name": self.name,
            "phone_number": self.phone_number,
            "role": self.role.value,
            "company_id": self.company_id,
            "company_name": self.company_name,
            "factory_id": self.factory_id,
            "factory_name": self.factory_name,
            "authentication_status": self.authentication_status.value,
            "health_status": self.health_status,
            "accessible_menu_ids": list(self.accessible_menu_ids),
        }

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "ClaimsSnapshot":
        """Rebuild a snapshot; raises ``ValueError`` on unknown versions or bad fields."""
        if claims.get("ver") != CLAIMS_VERSION:
            raise ValueError(f"unsupported claims version: {claims.get('ver')!r}")
        try:
            return cls(
                employee_id=int(claims["employee_id"]),
                email=str(claims["email"]),
                name=str(claims["name"]),
                role=Role(claims["role"]),
                company_id=int(claims["company_id"]),
                factory_id=int(claims["factory_id"]),
                authentication_status=AccountStatus(claims["authentication_status"]),
                health_status=str(claims.get("health_status") or HEALTH_STATUS_NORMAL),
                accessible_menu_ids=tuple(int(i) for i in claims.get("accessible_menu_ids") or ()),
                company_name=claims.get("company_name"),
                factory_name=claims.get("factory_name"),
                phone_number=claims.get("phone_number"),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"malformed claims: {exc}") from exc


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenService:
    """Signs, verifies, revokes and renews HS256 access and refresh tokens."""

    def __init__(self, store: TokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = get_logger(__name__)
        self._clock_skew_leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- snapshot ---------------------------------------------------------

    def build_snapshot(self, principal: Principal) -> ClaimsSnapshot:
        """Project the live principal plus its tenant names, menus and health status."""
        company = self.store.get_company(principal.company_id)
        factory = self.store.get_factory(principal.factory_id)
        menu_ids = self.store.list_accessible_menu_ids(principal.role)
        return ClaimsSnapshot(
            employee_id=principal.id,
            email=principal.email,
            name=principal.name,
            role=principal.role,
            company_id=principal.company_id,
            factory_id=principal.factory_id,
            authentication_status=principal.authentication_status,
            health_status=self.store.get_latest_unresolved_incident(principal.id),
            accessible_menu_ids=tuple(sorted(menu_ids)),
            company_name=company.name if company else None,
            factory_name=factory.name if factory else None,
            phone_number=principal.phone_number,
        )

    # -- encoding ---------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        """Return the verified payload, or None for anything that fails a check."""
        if not token or not isinstance(token, str):
            return None
        # Headers and cookies arrive latin-1 decoded; a real token is pure base64url
        if not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or not payload.get("sub"):
            return None
        if not verify_exp:
            return payload
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= (self._now() - self._clock_skew_leeway).timestamp():
            return None
        return payload

    def _base_payload(self, subject: str, token_type: str, expires_at: datetime) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "iat": int(self._now().timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }

    # -- issuance ---------------------------------------------------------

    def issue_access_token(self, snapshot: ClaimsSnapshot) -> str:
        expires_at = self._now() + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = self._base_payload(snapshot.email, ACCESS_TOKEN, expires_at)
        payload.update(snapshot.to_claims())
        return self._encode_jwt(payload)

    def issue_refresh_token(self, principal: Principal) -> RefreshToken:
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        token = self._encode_jwt(self._base_payload(principal.email, REFRESH_TOKEN, expires_at))
        return self.store.save_refresh_token(
            RefreshToken(
                token=token,
                principal_id=principal.id,
                expires_at=expires_at,
                created_at=now,
            )
        )

    def issue_session(self, principal: Principal) -> TokenPair:
        """Mint an access token, then persist its refresh token, then hand out both."""
        snapshot = self.build_snapshot(principal)
        access_token = self.issue_access_token(snapshot)
        access_expires_at = self._now() + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh = self.issue_refresh_token(principal)
        self.logger.info(
            "session_issued",
            employee_id=principal.id,
            company_id=principal.company_id,
            role=principal.role.value,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh.token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    # -- verification -----------------------------------------------------

    def validate(self, token: Optional[str], *, token_type: str = ACCESS_TOKEN) -> bool:
        if not token:
            return False
        # Blacklist first: a revoked token is invalid however well-formed it is
        if self.store.is_token_blacklisted(token):
            return False
        payload = self._decode_jwt(token)
        return payload is not None and payload.get("token_type") == token_type

    def extract_identity(self, token: Optional[str]) -> Optional[str]:
        """Subject of a genuine token, ignoring expiry."""
        payload = self._decode_jwt(token or "", verify_exp=False)
        if not payload:
            return None
        return str(payload["sub"])

    def extract_claims(self, token: Optional[str]) -> ClaimsSnapshot:
        if not self.validate(token):
            raise UnauthenticatedError()
        payload = self._decode_jwt(token or "")
        if payload is None:
            raise UnauthenticatedError()
        try:
            return ClaimsSnapshot.from_claims(payload)
        except ValueError as exc:
            self.logger.warning("jwt_claims_rejected", error=str(exc))
            raise UnauthenticatedError() from exc

    # -- revocation and renewal -------------------------------------------

    def revoke(self, token: Optional[str]) -> int:
        """Blacklist ``token`` and drop every refresh token of its principal.

        Returns the number of refresh tokens deleted. Expired tokens are
        accepted; forged ones raise ``UnauthenticatedError``.
        """
        subject = self.extract_identity(token)
        if subject is None:
            raise UnauthenticatedError()
        inserted = self.store.blacklist_token(token, self._now())
        principal = self.store.get_principal_by_email(subject)
        removed = 0
        if principal:
            removed = self.store.delete_refresh_tokens_for_principal(principal.id)
        self.logger.info(
            "session_revoked",
            employee_id=principal.id if principal else None,
            newly_blacklisted=inserted,
            refresh_tokens_removed=removed,
        )
        return removed

    def renew(self, refresh_token: Optional[str]) -> str:
        if not refresh_token:
            raise UnauthenticatedError()
        record = self.store.get_refresh_token(refresh_token)
        if record is None or record.expires_at <= self._now():
            self.logger.info("refresh_token_rejected", reason="missing_or_expired")
            raise UnauthenticatedError()
        if not self.validate(refresh_token, token_type=REFRESH_TOKEN):
            self.logger.warning("refresh_token_rejected", reason="invalid_signature_or_revoked")
            raise UnauthenticatedError()
        principal = self.store.get_principal(record.principal_id)
        if principal is None:
            raise UnauthenticatedError()
        if not can_hold_session(principal.authentication_status):
            raise AccountBlockedError(principal.authentication_status)
        # Always rebuilt from the live record so role and menu changes apply
        return self.issue_access_token(self.build_snapshot(principal))
