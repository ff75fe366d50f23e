from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    WORKER = "WORKER"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"


class AccountStatus(str, Enum):
    """Authentication status of a principal."""

    ACTIVE = "ACTIVE"
    LOCKED = "LOCKED"
    PASSWORD_RESET = "PASSWORD_RESET"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    WITHDRAWN = "WITHDRAWN"
    DELETED = "DELETED"


ADMINISTRATIVE_STATUSES: FrozenSet[AccountStatus] = frozenset(
    {
        AccountStatus.INACTIVE,
        AccountStatus.SUSPENDED,
        AccountStatus.WITHDRAWN,
        AccountStatus.DELETED,
    }
)


class TwoFactorMethod(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    KAKAO = "KAKAO"


HEALTH_STATUS_NORMAL = "NORMAL"


@dataclass
class Company:
    id: int
    name: str
    address: Optional[str] = None
    address_detail: Optional[str] = None
    business_number: Optional[str] = None


@dataclass
class Factory:
    id: int
    company_id: int
    name: str
    address: Optional[str] = None
    address_detail: Optional[str] = None


@dataclass
class Principal:
    """An employee account; ``email`` is the login identity."""

    id: int
    email: str
    name: str
    factory_id: int
    company_id: int
    role: Role = Role.WORKER
    authentication_status: AccountStatus = AccountStatus.ACTIVE
    failed_login_attempts: int = 0
    password_hash: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Area:
    id: int
    factory_id: int
    name: str


@dataclass
class Work:
    id: int
    area_id: int
    name: str


@dataclass
class Alarm:
    id: int
    employee_id: int
    message: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Event:
    id: int
    employee_id: Optional[int] = None
    area_id: Optional[int] = None
    employee_incident: Optional[str] = None
    resolved: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TenantSetting:
    id: int
    company_id: int
    two_factor_enabled: bool = False
    two_factor_method: TwoFactorMethod = TwoFactorMethod.EMAIL
    max_factories_per_company: Optional[int] = None
    max_areas_per_factory: Optional[int] = None
    max_employees_per_factory: Optional[int] = None
    max_works_per_area: Optional[int] = None
    max_employees_per_work: Optional[int] = None


@dataclass
class Menu:
    id: int
    name: str
    accessible_roles: FrozenSet[Role] = frozenset()


@dataclass
class RefreshToken:
    token: str
    principal_id: int
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class BlacklistedToken:
    token: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TwoFactorChallenge:
    id: int
    principal_id: int
    code: str
    created_at: datetime = field(default_factory=utcnow)
    verified: bool = False
    failed_attempts: int = 0


@dataclass
class AuthenticationLog:
    id: int
    request_uri: str
    http_method: str
    status_code: int
    client_ip: Optional[str] = None
    principal_id: Optional[int] = None
    company_id: Optional[int] = None
    meta: Optional[str] = None
    request_time: datetime = field(default_factory=utcnow)
