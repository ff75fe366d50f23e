from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from eguard.logging import get_logger
from eguard.storage.errors import ConstraintViolation
from eguard.storage.models import (
    HEALTH_STATUS_NORMAL,
    AccountStatus,
    Alarm,
    Area,
    AuthenticationLog,
    BlacklistedToken,
    Company,
    Event,
    Factory,
    Menu,
    Principal,
    RefreshToken,
    Role,
    TenantSetting,
    TwoFactorChallenge,
    TwoFactorMethod,
    Work,
    utcnow,
)


class MemoryStore:
    """In-memory backing store used by tests and local development.

    Records are copied on the way in and out so callers never mutate shared
    state without going through a store method.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.companies: Dict[int, Company] = {}
        self.factories: Dict[int, Factory] = {}
        self.principals: Dict[int, Principal] = {}
        self.areas: Dict[int, Area] = {}
        self.works: Dict[int, Work] = {}
        self.alarms: Dict[int, Alarm] = {}
        self.events: Dict[int, Event] = {}
        self.tenant_settings: Dict[int, TenantSetting] = {}
        self.menus: Dict[int, Menu] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.blacklisted_tokens: Dict[str, BlacklistedToken] = {}
        self.challenges: Dict[int, TwoFactorChallenge] = {}
        self.authentication_logs: List[AuthenticationLog] = []
        self._sequences: Dict[str, int] = {}
        # RLock so composite operations can call the single-record helpers
        self._data_lock = threading.RLock()

    def _next_id(self, table: str) -> int:
        with self._data_lock:
            value = self._sequences.get(table, 0) + 1
            self._sequences[table] = value
            return value

    # -- tenant hierarchy -------------------------------------------------

    def create_company(
        self,
        name: str,
        *,
        address: Optional[str] = None,
        address_detail: Optional[str] = None,
        business_number: Optional[str] = None,
    ) -> Company:
        with self._data_lock:
            company = Company(
                id=self._next_id("company"),
                name=name,
                address=address,
                address_detail=address_detail,
                business_number=business_number,
            )
            self.companies[company.id] = company
            return replace(company)

    def get_company(self, company_id: int) -> Optional[Company]:
        with self._data_lock:
            company = self.companies.get(company_id)
            return replace(company) if company else None

    def create_factory(
        self,
        company_id: int,
        name: str,
        *,
        address: Optional[str] = None,
        address_detail: Optional[str] = None,
    ) -> Factory:
        with self._data_lock:
            if company_id not in self.companies:
                raise ConstraintViolation.missing_parent("factory", "company_id", company_id)
            factory = Factory(
                id=self._next_id("factory"),
                company_id=company_id,
                name=name,
                address=address,
                address_detail=address_detail,
            )
            self.factories[factory.id] = factory
            return replace(factory)

    def get_factory(self, factory_id: int) -> Optional[Factory]:
        with self._data_lock:
            factory = self.factories.get(factory_id)
            return replace(factory) if factory else None

    def create_area(self, factory_id: int, name: str) -> Area:
        with self._data_lock:
            if factory_id not in self.factories:
                raise ConstraintViolation.missing_parent("area", "factory_id", factory_id)
            area = Area(id=self._next_id("area"), factory_id=factory_id, name=name)
            self.areas[area.id] = area
            return replace(area)

    def get_area(self, area_id: int) -> Optional[Area]:
        with self._data_lock:
            area = self.areas.get(area_id)
            return replace(area) if area else None

    def create_work(self, area_id: int, name: str) -> Work:
        with self._data_lock:
            if area_id not in self.areas:
                raise ConstraintViolation.missing_parent("work", "area_id", area_id)
            work = Work(id=self._next_id("work"), area_id=area_id, name=name)
            self.works[work.id] = work
            return replace(work)

    def get_work(self, work_id: int) -> Optional[Work]:
        with self._data_lock:
            work = self.works.get(work_id)
            return replace(work) if work else None

    def create_alarm(self, employee_id: int, message: str = "") -> Alarm:
        with self._data_lock:
            if employee_id not in self.principals:
                raise ConstraintViolation.missing_parent("alarm", "employee_id", employee_id)
            alarm = Alarm(id=self._next_id("alarm"), employee_id=employee_id, message=message)
            self.alarms[alarm.id] = alarm
            return replace(alarm)

    def get_alarm(self, alarm_id: int) -> Optional[Alarm]:
        with self._data_lock:
            alarm = self.alarms.get(alarm_id)
            return replace(alarm) if alarm else None

    def create_event(
        self,
        *,
        employee_id: Optional[int] = None,
        area_id: Optional[int] = None,
        employee_incident: Optional[str] = None,
        resolved: bool = False,
        created_at: Optional[datetime] = None,
    ) -> Event:
        with self._data_lock:
            event = Event(
                id=self._next_id("event"),
                employee_id=employee_id,
                area_id=area_id,
                employee_incident=employee_incident,
                resolved=resolved,
                created_at=created_at or utcnow(),
            )
            self.events[event.id] = event
            return replace(event)

    def get_event(self, event_id: int) -> Optional[Event]:
        with self._data_lock:
            event = self.events.get(event_id)
            return replace(event) if event else None

    def get_latest_unresolved_incident(self, principal_id: int) -> str:
        with self._data_lock:
            candidates = [
                event
                for event in self.events.values()
                if event.employee_id == principal_id
                and not event.resolved
                and event.employee_incident
            ]
        if not candidates:
            return HEALTH_STATUS_NORMAL
        latest = max(candidates, key=lambda event: (event.created_at, event.id))
        return str(latest.employee_incident)

    # -- tenant settings and menus ----------------------------------------

    def upsert_tenant_setting(
        self,
        company_id: int,
        *,
        two_factor_enabled: bool = False,
        two_factor_method: TwoFactorMethod = TwoFactorMethod.EMAIL,
        **quotas: Optional[int],
    ) -> TenantSetting:
        with self._data_lock:
            if company_id not in self.companies:
                raise ConstraintViolation.missing_parent("setting", "company_id", company_id)
            existing = next(
                (s for s in self.tenant_settings.values() if s.company_id == company_id),
                None,
            )
            setting_id = existing.id if existing else self._next_id("setting")
            setting = TenantSetting(
                id=setting_id,
                company_id=company_id,
                two_factor_enabled=two_factor_enabled,
                two_factor_method=TwoFactorMethod(two_factor_method),
                **quotas,
            )
            self.tenant_settings[setting_id] = setting
            return replace(setting)

    def get_tenant_setting(self, setting_id: int) -> Optional[TenantSetting]:
        with self._data_lock:
            setting = self.tenant_settings.get(setting_id)
            return replace(setting) if setting else None

    def get_tenant_setting_for_company(self, company_id: int) -> Optional[TenantSetting]:
        with self._data_lock:
            for setting in self.tenant_settings.values():
                if setting.company_id == company_id:
                    return replace(setting)
        return None

    def create_menu(self, name: str, accessible_roles: Iterable[Role]) -> Menu:
        with self._data_lock:
            menu = Menu(
                id=self._next_id("menu"),
                name=name,
                accessible_roles=frozenset(Role(role) for role in accessible_roles),
            )
            self.menus[menu.id] = menu
            return replace(menu)

    def list_accessible_menu_ids(self, role: Role) -> List[int]:
        with self._data_lock:
            return sorted(
                menu.id for menu in self.menus.values() if Role(role) in menu.accessible_roles
            )

    # -- principals -------------------------------------------------------

    def create_principal(
        self,
        email: str,
        name: str,
        factory_id: int,
        *,
        role: Role = Role.WORKER,
        password_hash: Optional[str] = None,
        authentication_status: AccountStatus = AccountStatus.ACTIVE,
        phone_number: Optional[str] = None,
    ) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            factory = self.factories.get(factory_id)
            if not factory:
                raise ConstraintViolation.missing_parent("employee", "factory_id", factory_id)
            if any(p.email == normalized for p in self.principals.values()):
                raise ConstraintViolation.duplicate("employee", "email")
            principal = Principal(
                id=self._next_id("employee"),
                email=normalized,
                name=name,
                factory_id=factory.id,
                company_id=factory.company_id,
                role=Role(role),
                authentication_status=AccountStatus(authentication_status),
                password_hash=password_hash,
                phone_number=phone_number,
            )
            self.principals[principal.id] = principal
            return replace(principal)

    def get_principal(self, principal_id: int) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = email.strip().lower()
        with self._data_lock:
            for principal in self.principals.values():
                if principal.email == normalized:
                    return replace(principal)
        return None

    def update_principal_auth(
        self,
        principal_id: int,
        *,
        authentication_status: AccountStatus,
        failed_login_attempts: int,
        password_hash: Optional[str] = None,
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.authentication_status = AccountStatus(authentication_status)
            principal.failed_login_attempts = failed_login_attempts
            if password_hash is not None:
                principal.password_hash = password_hash
            principal.updated_at = utcnow()
            return replace(principal)

    def record_failed_login(self, principal_id: int, lock_threshold: int) -> Optional[Principal]:
        """Count a failed login and lock at ``lock_threshold``; a no-op unless ACTIVE."""
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if principal.authentication_status is AccountStatus.ACTIVE:
                principal.failed_login_attempts += 1
                if principal.failed_login_attempts >= lock_threshold:
                    principal.authentication_status = AccountStatus.LOCKED
                principal.updated_at = utcnow()
            return replace(principal)

    def update_principal_role(self, principal_id: int, role: Role) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.role = Role(role)
            principal.updated_at = utcnow()
            return replace(principal)

    # -- refresh tokens and blacklist -------------------------------------

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.token in self.refresh_tokens:
                raise ConstraintViolation.duplicate("refresh_token", "token")
            self.refresh_tokens[record.token] = replace(record)
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def delete_refresh_tokens_for_principal(self, principal_id: int) -> int:
        with self._data_lock:
            doomed = [
                token
                for token, record in self.refresh_tokens.items()
                if record.principal_id == principal_id
            ]
            for token in doomed:
                del self.refresh_tokens[token]
            return len(doomed)

    def blacklist_token(self, token: str, created_at: Optional[datetime] = None) -> bool:
        """Insert ``token`` into the blacklist; returns False when already present."""
        with self._data_lock:
            if token in self.blacklisted_tokens:
                return False
            self.blacklisted_tokens[token] = BlacklistedToken(
                token=token, created_at=created_at or utcnow()
            )
            return True

    def is_token_blacklisted(self, token: str) -> bool:
        with self._data_lock:
            return token in self.blacklisted_tokens

    def delete_blacklisted_tokens_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            doomed = [
                token
                for token, record in self.blacklisted_tokens.items()
                if record.created_at < cutoff
            ]
            for token in doomed:
                del self.blacklisted_tokens[token]
            return len(doomed)

    # -- two-factor challenges --------------------------------------------

    def create_two_factor_challenge(
        self, principal_id: int, code: str, created_at: Optional[datetime] = None
    ) -> TwoFactorChallenge:
        with self._data_lock:
            challenge = TwoFactorChallenge(
                id=self._next_id("two_factor"),
                principal_id=principal_id,
                code=code,
                created_at=created_at or utcnow(),
            )
            self.challenges[challenge.id] = challenge
            return replace(challenge)

    def _challenges_for(self, principal_id: int) -> List[TwoFactorChallenge]:
        return sorted(
            (c for c in self.challenges.values() if c.principal_id == principal_id),
            key=lambda c: (c.created_at, c.id),
        )

    def get_latest_two_factor_challenge(self, principal_id: int) -> Optional[TwoFactorChallenge]:
        with self._data_lock:
            challenges = self._challenges_for(principal_id)
            return replace(challenges[-1]) if challenges else None

    def get_current_two_factor_challenge(self, principal_id: int) -> Optional[TwoFactorChallenge]:
        with self._data_lock:
            pending = [c for c in self._challenges_for(principal_id) if not c.verified]
            return replace(pending[-1]) if pending else None

    def mark_two_factor_verified(self, challenge_id: int) -> bool:
        """Flip the verified flag; False if the challenge was already verified or is gone."""
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.verified:
                return False
            challenge.verified = True
            return True

    def increment_two_factor_failures(self, challenge_id: int) -> int:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge:
                return 0
            challenge.failed_attempts += 1
            return challenge.failed_attempts

    def delete_two_factor_challenges_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            doomed = [cid for cid, c in self.challenges.items() if c.created_at < cutoff]
            for cid in doomed:
                del self.challenges[cid]
            return len(doomed)

    # -- authentication log -----------------------------------------------

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
    ) -> AuthenticationLog:
        with self._data_lock:
            entry = AuthenticationLog(
                id=self._next_id("authentication_log"),
                request_uri=request_uri,
                http_method=http_method,
                status_code=status_code,
                client_ip=client_ip,
                principal_id=principal_id,
                company_id=company_id,
                meta=meta,
                request_time=request_time or utcnow(),
            )
            self.authentication_logs.append(entry)
            return replace(entry)

    def list_authentication_logs(self, limit: int = 100) -> List[AuthenticationLog]:
        with self._data_lock:
            return [replace(entry) for entry in self.authentication_logs[-limit:]][::-1]
