from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from eguard.logging import get_logger
from eguard.storage.errors import ConstraintViolation
from eguard.storage.models import (
    HEALTH_STATUS_NORMAL,
    AccountStatus,
    Alarm,
    Area,
    AuthenticationLog,
    Company,
    Event,
    Factory,
    Principal,
    RefreshToken,
    Role,
    TenantSetting,
    TwoFactorChallenge,
    TwoFactorMethod,
    Work,
    utcnow,
)

# Tables owned by the domain services; this store only reads them
_DOMAIN_TABLES = [
    "company",
    "factory",
    "employee",
    "area",
    "work",
    "alarm",
    "event",
    "setting",
    "menu",
    "menu_accessible_role",
]

_AUTH_TABLES_DDL = [
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        employee_id BIGINT NOT NULL REFERENCES employee(id),
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_employee_idx ON refresh_token (employee_id)",
    """
    CREATE TABLE IF NOT EXISTS blacklisted_token (
        token TEXT PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS two_factor_auth (
        id BIGSERIAL PRIMARY KEY,
        employee_id BIGINT NOT NULL REFERENCES employee(id),
        code VARCHAR(6) NOT NULL,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS two_factor_auth_employee_idx ON two_factor_auth (employee_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS authentication_log (
        id BIGSERIAL PRIMARY KEY,
        employee_id BIGINT,
        company_id BIGINT,
        request_uri TEXT NOT NULL,
        http_method VARCHAR(16) NOT NULL,
        client_ip TEXT,
        status_code INTEGER NOT NULL,
        meta_data TEXT,
        request_time TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]


def _principal_from_row(row: dict) -> Principal:
    return Principal(
        id=int(row["id"]),
        email=row["email"],
        name=row.get("name") or "",
        factory_id=int(row["factory_id"]),
        company_id=int(row["company_id"]),
        role=Role(row.get("role") or Role.WORKER.value),
        authentication_status=AccountStatus(
            row.get("authentication_status") or AccountStatus.ACTIVE.value
        ),
        failed_login_attempts=int(row.get("failed_login_attempts") or 0),
        password_hash=row.get("password"),
        phone_number=row.get("phone_number"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _setting_from_row(row: dict) -> TenantSetting:
    return TenantSetting(
        id=int(row["id"]),
        company_id=int(row["company_id"]),
        two_factor_enabled=bool(row.get("two_factor_authentication_enabled")),
        two_factor_method=TwoFactorMethod(
            row.get("two_factor_authentication_method") or TwoFactorMethod.EMAIL.value
        ),
        max_factories_per_company=row.get("max_factories_per_company"),
        max_areas_per_factory=row.get("max_areas_per_factory"),
        max_employees_per_factory=row.get("max_employees_per_factory"),
        max_works_per_area=row.get("max_works_per_area"),
        max_employees_per_work=row.get("max_employees_per_work"),
    )


def _challenge_from_row(row: dict) -> TwoFactorChallenge:
    return TwoFactorChallenge(
        id=int(row["id"]),
        principal_id=int(row["employee_id"]),
        code=str(row["code"]),
        created_at=row["created_at"],
        verified=bool(row.get("verified")),
        failed_attempts=int(row.get("failed_attempts") or 0),
    )


_PRINCIPAL_SELECT = """
    SELECT e.*, f.company_id
    FROM employee e
    JOIN factory f ON f.id = e.factory_id
"""


class PostgresStore:
    """Postgres-backed store for credentials, tokens and ownership lookups."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self._ensure_auth_tables()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the domain tables this store reads are missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in _DOMAIN_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply the domain schema first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def _ensure_auth_tables(self) -> None:
        with self._connect() as conn:
            for statement in _AUTH_TABLES_DDL:
                conn.execute(statement)

    def _fetch_one(self, sql: str, params: Iterable[Any]) -> Optional[dict]:
        with self._connect() as conn:
            return conn.execute(sql, tuple(params)).fetchone()

    # -- tenant hierarchy -------------------------------------------------

    def create_company(
        self,
        name: str,
        *,
        address: Optional[str] = None,
        address_detail: Optional[str] = None,
        business_number: Optional[str] = None,
    ) -> Company:
        try:
            row = self._fetch_one(
                """
                INSERT INTO company (name, address, address_detail, business_number)
                VALUES (%s, %s, %s, %s) RETURNING id
                """,
                (name, address, address_detail, business_number),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation.duplicate("company", "business_number")
        return Company(
            id=int(row["id"]),
            name=name,
            address=address,
            address_detail=address_detail,
            business_number=business_number,
        )

    def get_company(self, company_id: int) -> Optional[Company]:
        row = self._fetch_one("SELECT * FROM company WHERE id = %s", (company_id,))
        if not row:
            return None
        return Company(
            id=int(row["id"]),
            name=row["name"],
            address=row.get("address"),
            address_detail=row.get("address_detail"),
            business_number=row.get("business_number"),
        )

    def create_factory(
        self,
        company_id: int,
        name: str,
        *,
        address: Optional[str] = None,
        address_detail: Optional[str] = None,
    ) -> Factory:
        try:
            row = self._fetch_one(
                """
                INSERT INTO factory (company_id, name, address, address_detail)
                VALUES (%s, %s, %s, %s) RETURNING id
                """,
                (company_id, name, address, address_detail),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_parent("factory", "company_id", company_id)
        return Factory(
            id=int(row["id"]),
            company_id=company_id,
            name=name,
            address=address,
            address_detail=address_detail,
        )

    def get_factory(self, factory_id: int) -> Optional[Factory]:
        row = self._fetch_one("SELECT * FROM factory WHERE id = %s", (factory_id,))
        if not row:
            return None
        return Factory(
            id=int(row["id"]),
            company_id=int(row["company_id"]),
            name=row["name"],
            address=row.get("address"),
            address_detail=row.get("address_detail"),
        )

    def get_area(self, area_id: int) -> Optional[Area]:
        row = self._fetch_one("SELECT id, factory_id, name FROM area WHERE id = %s", (area_id,))
        if not row:
            return None
        return Area(id=int(row["id"]), factory_id=int(row["factory_id"]), name=row["name"])

    def get_work(self, work_id: int) -> Optional[Work]:
        row = self._fetch_one("SELECT id, area_id, name FROM work WHERE id = %s", (work_id,))
        if not row:
            return None
        return Work(id=int(row["id"]), area_id=int(row["area_id"]), name=row["name"])

    def get_alarm(self, alarm_id: int) -> Optional[Alarm]:
        row = self._fetch_one(
            "SELECT id, employee_id, message, created_at FROM alarm WHERE id = %s", (alarm_id,)
        )
        if not row:
            return None
        return Alarm(
            id=int(row["id"]),
            employee_id=int(row["employee_id"]),
            message=row.get("message") or "",
            created_at=row.get("created_at") or utcnow(),
        )

    def get_event(self, event_id: int) -> Optional[Event]:
        row = self._fetch_one("SELECT * FROM event WHERE id = %s", (event_id,))
        if not row:
            return None
        return Event(
            id=int(row["id"]),
            employee_id=row.get("employee_id"),
            area_id=row.get("area_id"),
            employee_incident=row.get("employee_incident"),
            resolved=bool(row.get("resolved")),
            created_at=row.get("created_at") or utcnow(),
        )

    def get_latest_unresolved_incident(self, principal_id: int) -> str:
        row = self._fetch_one(
            """
            SELECT employee_incident FROM event
            WHERE employee_id = %s AND resolved = FALSE AND employee_incident IS NOT NULL
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (principal_id,),
        )
        return str(row["employee_incident"]) if row else HEALTH_STATUS_NORMAL

    # -- tenant settings and menus ----------------------------------------

    def upsert_tenant_setting(
        self,
        company_id: int,
        *,
        two_factor_enabled: bool = False,
        two_factor_method: TwoFactorMethod = TwoFactorMethod.EMAIL,
        **quotas: Optional[int],
    ) -> TenantSetting:
        row = self._fetch_one(
            """
            INSERT INTO setting (
                company_id, two_factor_authentication_enabled, two_factor_authentication_method,
                max_factories_per_company, max_areas_per_factory, max_employees_per_factory,
                max_works_per_area, max_employees_per_work
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (company_id) DO UPDATE SET
                two_factor_authentication_enabled = EXCLUDED.two_factor_authentication_enabled,
                two_factor_authentication_method = EXCLUDED.two_factor_authentication_method,
                max_factories_per_company = EXCLUDED.max_factories_per_company,
                max_areas_per_factory = EXCLUDED.max_areas_per_factory,
                max_employees_per_factory = EXCLUDED.max_employees_per_factory,
                max_works_per_area = EXCLUDED.max_works_per_area,
                max_employees_per_work = EXCLUDED.max_employees_per_work
            RETURNING *
            """,
            (
                company_id,
                two_factor_enabled,
                TwoFactorMethod(two_factor_method).value,
                quotas.get("max_factories_per_company"),
                quotas.get("max_areas_per_factory"),
                quotas.get("max_employees_per_factory"),
                quotas.get("max_works_per_area"),
                quotas.get("max_employees_per_work"),
            ),
        )
        return _setting_from_row(row)

    def get_tenant_setting(self, setting_id: int) -> Optional[TenantSetting]:
        row = self._fetch_one("SELECT * FROM setting WHERE id = %s", (setting_id,))
        return _setting_from_row(row) if row else None

    def get_tenant_setting_for_company(self, company_id: int) -> Optional[TenantSetting]:
        row = self._fetch_one("SELECT * FROM setting WHERE company_id = %s", (company_id,))
        return _setting_from_row(row) if row else None

    def list_accessible_menu_ids(self, role: Role) -> List[int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT menu_id FROM menu_accessible_role WHERE role = %s ORDER BY menu_id",
                (Role(role).value,),
            ).fetchall()
        return [int(row["menu_id"]) for row in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO employee (
                        email, name, factory_id, role, authentication_status,
                        failed_login_attempts, password, phone_number, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, 0, %s, %s, now(), now())
                    RETURNING id
                    """,
                    (
                        normalized,
                        name,
                        factory_id,
                        Role(role).value,
                        AccountStatus(authentication_status).value,
                        password_hash,
                        phone_number,
                    ),
                ).fetchone()
                row = conn.execute(
                    _PRINCIPAL_SELECT + " WHERE e.id = %s", (row["id"],)
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation.duplicate("employee", "email")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_parent("employee", "factory_id", factory_id)
        return _principal_from_row(row)

    def get_principal(self, principal_id: int) -> Optional[Principal]:
        row = self._fetch_one(_PRINCIPAL_SELECT + " WHERE e.id = %s", (principal_id,))
        return _principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        row = self._fetch_one(
            _PRINCIPAL_SELECT + " WHERE e.email = %s", (email.strip().lower(),)
        )
        return _principal_from_row(row) if row else None

    def update_principal_auth(
        self,
        principal_id: int,
        *,
        authentication_status: AccountStatus,
        failed_login_attempts: int,
        password_hash: Optional[str] = None,
    ) -> Optional[Principal]:
        with self._connect() as conn:
            updated = conn.execute(
                """
                UPDATE employee
                SET authentication_status = %s,
                    failed_login_attempts = %s,
                    password = COALESCE(%s, password),
                    updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                (
                    AccountStatus(authentication_status).value,
                    failed_login_attempts,
                    password_hash,
                    principal_id,
                ),
            ).fetchone()
            if not updated:
                return None
            row = conn.execute(_PRINCIPAL_SELECT + " WHERE e.id = %s", (principal_id,)).fetchone()
        return _principal_from_row(row)

    def record_failed_login(self, principal_id: int, lock_threshold: int) -> Optional[Principal]:
        # Single UPDATE so concurrent failures serialise on the row lock
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE employee
                SET failed_login_attempts = failed_login_attempts + 1,
                    authentication_status = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE authentication_status
                    END,
                    updated_at = now()
                WHERE id = %s AND authentication_status = %s
                """,
                (
                    lock_threshold,
                    AccountStatus.LOCKED.value,
                    principal_id,
                    AccountStatus.ACTIVE.value,
                ),
            )
            row = conn.execute(_PRINCIPAL_SELECT + " WHERE e.id = %s", (principal_id,)).fetchone()
        return _principal_from_row(row) if row else None

    def update_principal_role(self, principal_id: int, role: Role) -> Optional[Principal]:
        with self._connect() as conn:
            updated = conn.execute(
                "UPDATE employee SET role = %s, updated_at = now() WHERE id = %s RETURNING id",
                (Role(role).value, principal_id),
            ).fetchone()
            if not updated:
                return None
            row = conn.execute(_PRINCIPAL_SELECT + " WHERE e.id = %s", (principal_id,)).fetchone()
        return _principal_from_row(row)

    # -- refresh tokens and blacklist -------------------------------------

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, employee_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token, record.principal_id, record.expires_at, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation.duplicate("refresh_token", "token")
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        row = self._fetch_one("SELECT * FROM refresh_token WHERE token = %s", (token,))
        if not row:
            return None
        return RefreshToken(
            token=row["token"],
            principal_id=int(row["employee_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_refresh_tokens_for_principal(self, principal_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE employee_id = %s", (principal_id,))
            return cur.rowcount

    def blacklist_token(self, token: str, created_at: Optional[datetime] = None) -> bool:
        row = self._fetch_one(
            """
            INSERT INTO blacklisted_token (token, created_at) VALUES (%s, %s)
            ON CONFLICT (token) DO NOTHING
            RETURNING token
            """,
            (token, created_at or utcnow()),
        )
        return row is not None

    def is_token_blacklisted(self, token: str) -> bool:
        row = self._fetch_one("SELECT 1 AS hit FROM blacklisted_token WHERE token = %s", (token,))
        return row is not None

    def delete_blacklisted_tokens_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM blacklisted_token WHERE created_at < %s", (cutoff,))
            return cur.rowcount

    # -- two-factor challenges --------------------------------------------

    def create_two_factor_challenge(
        self, principal_id: int, code: str, created_at: Optional[datetime] = None
    ) -> TwoFactorChallenge:
        row = self._fetch_one(
            """
            INSERT INTO two_factor_auth (employee_id, code, created_at)
            VALUES (%s, %s, %s)
            RETURNING *
            """,
            (principal_id, code, created_at or utcnow()),
        )
        return _challenge_from_row(row)

    def get_latest_two_factor_challenge(self, principal_id: int) -> Optional[TwoFactorChallenge]:
        row = self._fetch_one(
            """
            SELECT * FROM two_factor_auth WHERE employee_id = %s
            ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (principal_id,),
        )
        return _challenge_from_row(row) if row else None

    def get_current_two_factor_challenge(self, principal_id: int) -> Optional[TwoFactorChallenge]:
        row = self._fetch_one(
            """
            SELECT * FROM two_factor_auth WHERE employee_id = %s AND verified = FALSE
            ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (principal_id,),
        )
        return _challenge_from_row(row) if row else None

    def mark_two_factor_verified(self, challenge_id: int) -> bool:
        row = self._fetch_one(
            """
            UPDATE two_factor_auth SET verified = TRUE
            WHERE id = %s AND verified = FALSE
            RETURNING id
            """,
            (challenge_id,),
        )
        return row is not None

    def increment_two_factor_failures(self, challenge_id: int) -> int:
        row = self._fetch_one(
            """
            UPDATE two_factor_auth SET failed_attempts = failed_attempts + 1
            WHERE id = %s
            RETURNING failed_attempts
            """,
            (challenge_id,),
        )
        return int(row["failed_attempts"]) if row else 0

    def delete_two_factor_challenges_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM two_factor_auth WHERE created_at < %s", (cutoff,))
            return cur.rowcount

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
        request_time = request_time or utcnow()
        row = self._fetch_one(
            """
            INSERT INTO authentication_log (
                employee_id, company_id, request_uri, http_method, client_ip,
                status_code, meta_data, request_time
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                principal_id,
                company_id,
                request_uri,
                http_method,
                client_ip,
                status_code,
                meta,
                request_time,
            ),
        )
        return AuthenticationLog(
            id=int(row["id"]),
            request_uri=request_uri,
            http_method=http_method,
            status_code=status_code,
            client_ip=client_ip,
            principal_id=principal_id,
            company_id=company_id,
            meta=meta,
            request_time=request_time,
        )
