from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol

from eguard.logging import get_logger
from eguard.service.tokens import TokenService
from eguard.storage.models import AuthenticationLog, Principal

logger = get_logger(__name__)

# user agents are client-controlled; cap what lands in the table
_MAX_USER_AGENT = 256


class AuditStore(Protocol):
    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def record_authentication_log(
        self,
        *,
        request_uri: str,
        http_method: str,
        status_code: int,
        client_ip: Optional[str] = None,
        principal_id: Optional[int] = None,
        company_id: Optional[int] = None,
        meta: Optional[str] = None,
        request_time: Optional[datetime] = None,
    ) -> AuthenticationLog: ...


class AuthenticationAuditor:
    """Writes one authentication_log row per request to the auth endpoints."""

    def __init__(self, store: AuditStore, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    def record(
        self,
        *,
        request_uri: str,
        http_method: str,
        status_code: int,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        token: Optional[str] = None,
        request_time: Optional[datetime] = None,
    ) -> Optional[AuthenticationLog]:
        principal = None
        # Expired tokens still identify who logged out
        subject = self.tokens.extract_identity(token) if token else None
        if subject:
            principal = self.store.get_principal_by_email(subject)
        meta = "User: {}, User-Agent: {}".format(
            principal.id if principal else "anonymous",
            (user_agent or "unknown")[:_MAX_USER_AGENT],
        )
        try:
            return self.store.record_authentication_log(
                request_uri=request_uri,
                http_method=http_method,
                status_code=status_code,
                client_ip=client_ip,
                principal_id=principal.id if principal else None,
                company_id=principal.company_id if principal else None,
                meta=meta,
                request_time=request_time or datetime.now(timezone.utc),
            )
        except Exception as exc:
            # The response is already decided; a failed audit write must not change it
            logger.error(
                "authentication_log_failed",
                request_uri=request_uri,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
