from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from eguard.storage.errors import ConstraintViolation
from eguard.storage.models import AccountStatus, RefreshToken, Role, TwoFactorMethod
from eguard.storage.postgres import (
    PostgresStore,
    _challenge_from_row,
    _principal_from_row,
    _setting_from_row,
)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class _Cursor:
    def __init__(self, rows, rowcount=0):
        self._rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class ScriptedConnection:
    """Answers each execute() with the next scripted result and records the SQL."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class ScriptedPool:
    def __init__(self, *results):
        self.conn = ScriptedConnection(results)

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool or DummyPool()
    return store


NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_principal_row_mapping():
    principal = _principal_from_row(
        {
            "id": 7,
            "email": "kim@acme.example",
            "name": "Kim",
            "factory_id": 3,
            "company_id": 2,
            "role": "MANAGER",
            "authentication_status": "LOCKED",
            "failed_login_attempts": 5,
            "password": "$argon2id$hash",
            "phone_number": None,
            "created_at": NOW,
            "updated_at": NOW,
        }
    )
    assert principal.role is Role.MANAGER
    assert principal.authentication_status is AccountStatus.LOCKED
    assert principal.password_hash == "$argon2id$hash"
    assert principal.company_id == 2


def test_principal_row_defaults():
    principal = _principal_from_row(
        {"id": 1, "email": "a@b.example", "factory_id": 1, "company_id": 1}
    )
    assert principal.role is Role.WORKER
    assert principal.authentication_status is AccountStatus.ACTIVE
    assert principal.failed_login_attempts == 0


def test_setting_and_challenge_row_mapping():
    setting = _setting_from_row(
        {
            "id": 4,
            "company_id": 2,
            "two_factor_authentication_enabled": True,
            "two_factor_authentication_method": "KAKAO",
            "max_areas_per_factory": 10,
        }
    )
    assert setting.two_factor_enabled
    assert setting.two_factor_method is TwoFactorMethod.KAKAO
    assert setting.max_areas_per_factory == 10

    challenge = _challenge_from_row(
        {"id": 9, "employee_id": 7, "code": "012345", "created_at": NOW, "verified": False}
    )
    assert challenge.principal_id == 7
    assert challenge.code == "012345"
    assert challenge.failed_attempts == 0


def test_blacklist_insert_reports_duplicates():
    pool = ScriptedPool(_Cursor([{"token": "t"}]), _Cursor([]))
    store = _store(pool)
    assert store.blacklist_token("t", NOW) is True
    assert store.blacklist_token("t", NOW) is False
    assert "ON CONFLICT (token) DO NOTHING" in pool.conn.statements[0][0]


def test_mark_verified_is_conditional():
    pool = ScriptedPool(_Cursor([{"id": 3}]), _Cursor([]))
    store = _store(pool)
    assert store.mark_two_factor_verified(3) is True
    assert store.mark_two_factor_verified(3) is False
    assert "verified = FALSE" in pool.conn.statements[0][0]


def test_duplicate_refresh_token_maps_to_constraint_violation():
    pool = ScriptedPool(errors.UniqueViolation("duplicate key"))
    record = RefreshToken(token="t", principal_id=1, expires_at=NOW, created_at=NOW)
    with pytest.raises(ConstraintViolation) as excinfo:
        _store(pool).save_refresh_token(record)
    assert excinfo.value.detail["field"] == "token"


def test_unknown_factory_maps_to_constraint_violation():
    pool = ScriptedPool(errors.ForeignKeyViolation("fk"))
    with pytest.raises(ConstraintViolation):
        _store(pool).create_principal("a@b.example", "A", 999)


def test_menu_ids_query_by_role():
    pool = ScriptedPool(_Cursor([{"menu_id": 1}, {"menu_id": 4}]))
    assert _store(pool).list_accessible_menu_ids(Role.ADMIN) == [1, 4]
    assert pool.conn.statements[0][1] == ("ADMIN",)


def test_delete_counts_come_from_rowcount():
    pool = ScriptedPool(_Cursor([], rowcount=3))
    assert _store(pool).delete_blacklisted_tokens_before(NOW) == 3


def test_incident_defaults_to_normal():
    pool = ScriptedPool(_Cursor([]))
    assert _store(pool).get_latest_unresolved_incident(1) == "NORMAL"


def test_missing_domain_tables_fail_fast():
    pool = ScriptedPool(*[_Cursor([{"oid": None}]) for _ in range(10)])
    with pytest.raises(RuntimeError, match="employee"):
        _store(pool)._verify_required_schema()


def test_unit_store_never_touches_database():
    with pytest.raises(AssertionError):
        _store().get_principal(1)


def test_failed_login_is_a_single_conditional_update():
    row = {
        "id": 7,
        "email": "kim@acme.example",
        "factory_id": 3,
        "company_id": 2,
        "authentication_status": "LOCKED",
        "failed_login_attempts": 5,
    }
    pool = ScriptedPool(_Cursor([]), _Cursor([row]))

    principal = _store(pool).record_failed_login(7, 5)

    sql, params = pool.conn.statements[0]
    assert "failed_login_attempts = failed_login_attempts + 1" in sql
    assert "authentication_status = %s" in sql
    assert params == (5, "LOCKED", 7, "ACTIVE")
    assert principal.authentication_status is AccountStatus.LOCKED
    assert principal.failed_login_attempts == 5
