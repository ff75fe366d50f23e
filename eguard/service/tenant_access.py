"""Tenant isolation for entity-id lists.

Every id a caller names is resolved and walked up its ownership chain to a
factory (or, for companies and settings, to a company). Non-admin callers
get back only the ids inside their own factory or company; downstream reads
and writes operate on that returned list, never on the raw request.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from eguard.logging import get_logger
from eguard.service.errors import AccessDeniedError, NotFoundError
from eguard.service.identity import CallerIdentity
from eguard.storage.models import (
    Alarm,
    Area,
    Company,
    Event,
    Factory,
    Principal,
    TenantSetting,
    Work,
)

logger = get_logger(__name__)

NOT_FOUND_MESSAGE = "resource not found"


class EntityKind(str, Enum):
    COMPANY = "company"
    FACTORY = "factory"
    EMPLOYEE = "employee"
    AREA = "area"
    WORK = "work"
    ALARM = "alarm"
    EVENT = "event"
    SETTING = "setting"


class Scope(str, Enum):
    COMPANY = "company"
    FACTORY = "factory"


@dataclass(frozen=True)
class Ownership:
    scope: Scope
    # None when the chain breaks before reaching the scope owner
    owner_id: Optional[int]


class OwnershipStore(Protocol):
    def get_company(self, company_id: int) -> Optional[Company]: ...

    def get_factory(self, factory_id: int) -> Optional[Factory]: ...

    def get_principal(self, principal_id: int) -> Optional[Principal]: ...

    def get_area(self, area_id: int) -> Optional[Area]: ...

    def get_work(self, work_id: int) -> Optional[Work]: ...

    def get_alarm(self, alarm_id: int) -> Optional[Alarm]: ...

    def get_event(self, event_id: int) -> Optional[Event]: ...

    def get_tenant_setting(self, setting_id: int) -> Optional[TenantSetting]: ...


class TenantAccessValidator:
    def __init__(self, store: OwnershipStore) -> None:
        self.store = store
        self._resolvers: Dict[EntityKind, Callable[[int], Ownership]] = {
            EntityKind.COMPANY: self._company_owner,
            EntityKind.SETTING: self._setting_owner,
            EntityKind.FACTORY: self._factory_owner,
            EntityKind.EMPLOYEE: self._employee_owner,
            EntityKind.AREA: self._area_owner,
            EntityKind.WORK: self._work_owner,
            EntityKind.ALARM: self._alarm_owner,
            EntityKind.EVENT: self._event_owner,
        }

    def authorize(
        self, caller: CallerIdentity, kind: EntityKind, requested_ids: Iterable[int]
    ) -> List[int]:
        """Return the subset of ``requested_ids`` the caller may touch.

        Raises ``NotFoundError`` for an id that does not exist and
        ``AccessDeniedError`` when an ownership chain is broken or nothing
        requested survives the tenant filter.
        """
        kind = EntityKind(kind)
        ids = list(dict.fromkeys(int(entity_id) for entity_id in requested_ids))
        if not ids:
            return []
        resolve = self._resolvers[kind]
        allowed: List[int] = []
        for entity_id in ids:
            ownership = resolve(entity_id)
            if caller.is_admin:
                allowed.append(entity_id)
                continue
            if ownership.owner_id is None:
                logger.warning(
                    "tenant_ownership_unresolvable",
                    entity_kind=kind.value,
                    entity_id=entity_id,
                    employee_id=caller.principal_id,
                )
                raise AccessDeniedError(NOT_FOUND_MESSAGE)
            scope_id = caller.company_id if ownership.scope is Scope.COMPANY else caller.factory_id
            if ownership.owner_id == scope_id:
                allowed.append(entity_id)
                continue
            logger.warning(
                "tenant_access_denied",
                entity_kind=kind.value,
                entity_id=entity_id,
                owner_scope=ownership.scope.value,
                owner_id=ownership.owner_id,
                employee_id=caller.principal_id,
                company_id=caller.company_id,
                factory_id=caller.factory_id,
            )
        if not allowed:
            raise AccessDeniedError(NOT_FOUND_MESSAGE)
        return allowed

    def authorize_one(self, caller: CallerIdentity, kind: EntityKind, entity_id: int) -> int:
        return self.authorize(caller, kind, [entity_id])[0]

    def _missing(self, kind: EntityKind, entity_id: int) -> NotFoundError:
        logger.info("tenant_entity_missing", entity_kind=kind.value, entity_id=entity_id)
        return NotFoundError(NOT_FOUND_MESSAGE)

    def _factory_of_employee(self, employee_id: Optional[int]) -> Optional[int]:
        if employee_id is None:
            return None
        employee = self.store.get_principal(employee_id)
        return employee.factory_id if employee else None

    def _factory_of_area(self, area_id: Optional[int]) -> Optional[int]:
        if area_id is None:
            return None
        area = self.store.get_area(area_id)
        return area.factory_id if area else None

    def _company_owner(self, entity_id: int) -> Ownership:
        company = self.store.get_company(entity_id)
        if company is None:
            raise self._missing(EntityKind.COMPANY, entity_id)
        return Ownership(Scope.COMPANY, company.id)

    def _setting_owner(self, entity_id: int) -> Ownership:
        setting = self.store.get_tenant_setting(entity_id)
        if setting is None:
            raise self._missing(EntityKind.SETTING, entity_id)
        return Ownership(Scope.COMPANY, setting.company_id)

    def _factory_owner(self, entity_id: int) -> Ownership:
        factory = self.store.get_factory(entity_id)
        if factory is None:
            raise self._missing(EntityKind.FACTORY, entity_id)
        return Ownership(Scope.FACTORY, factory.id)

    def _employee_owner(self, entity_id: int) -> Ownership:
        employee = self.store.get_principal(entity_id)
        if employee is None:
            raise self._missing(EntityKind.EMPLOYEE, entity_id)
        return Ownership(Scope.FACTORY, employee.factory_id)

    def _area_owner(self, entity_id: int) -> Ownership:
        area = self.store.get_area(entity_id)
        if area is None:
            raise self._missing(EntityKind.AREA, entity_id)
        return Ownership(Scope.FACTORY, area.factory_id)

    def _work_owner(self, entity_id: int) -> Ownership:
        work = self.store.get_work(entity_id)
        if work is None:
            raise self._missing(EntityKind.WORK, entity_id)
        return Ownership(Scope.FACTORY, self._factory_of_area(work.area_id))

    def _alarm_owner(self, entity_id: int) -> Ownership:
        alarm = self.store.get_alarm(entity_id)
        if alarm is None:
            raise self._missing(EntityKind.ALARM, entity_id)
        return Ownership(Scope.FACTORY, self._factory_of_employee(alarm.employee_id))

    def _event_owner(self, entity_id: int) -> Ownership:
        event = self.store.get_event(entity_id)
        if event is None:
            raise self._missing(EntityKind.EVENT, entity_id)
        # Area wins over employee when both are recorded
        if event.area_id is not None:
            return Ownership(Scope.FACTORY, self._factory_of_area(event.area_id))
        return Ownership(Scope.FACTORY, self._factory_of_employee(event.employee_id))
