"""MemoryStore behaviour shared with the Postgres store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from eguard.storage.errors import ConstraintViolation
from eguard.storage.memory import MemoryStore
from eguard.storage.models import AccountStatus, RefreshToken, Role


class TestPrincipals:
    """Employee records."""

    def test_email_is_case_insensitive(self, store, tenancy):
        found = store.get_principal_by_email("WORKER@Acme.Example")
        assert found.id == tenancy.worker.id
        assert found.company_id == tenancy.company_a.id

    def test_duplicate_email_rejected(self, store, tenancy):
        with pytest.raises(ConstraintViolation):
            store.create_principal("worker@acme.example", "Twin", tenancy.factory_a.id)

    def test_unknown_factory_rejected(self, store):
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_principal("a@b.example", "A", 404)
        assert excinfo.value.detail["field"] == "factory_id"

    def test_returned_records_are_copies(self, store, tenancy):
        copy = store.get_principal(tenancy.worker.id)
        copy.role = Role.ADMIN
        assert store.get_principal(tenancy.worker.id).role is Role.WORKER

    def test_update_auth_keeps_hash_unless_given(self, store, tenancy):
        before = store.get_principal(tenancy.worker.id).password_hash
        updated = store.update_principal_auth(
            tenancy.worker.id,
            authentication_status=AccountStatus.LOCKED,
            failed_login_attempts=5,
        )
        assert updated.password_hash == before
        assert updated.authentication_status is AccountStatus.LOCKED
        assert store.update_principal_auth(
            999, authentication_status=AccountStatus.ACTIVE, failed_login_attempts=0
        ) is None


    def test_failed_login_counts_and_locks(self, store, tenancy):
        for expected in (1, 2):
            record = store.record_failed_login(tenancy.worker.id, 3)
            assert record.failed_login_attempts == expected
            assert record.authentication_status is AccountStatus.ACTIVE
        record = store.record_failed_login(tenancy.worker.id, 3)
        assert record.authentication_status is AccountStatus.LOCKED
        # Only ACTIVE accounts are counted
        assert store.record_failed_login(tenancy.worker.id, 3).failed_login_attempts == 3
        assert store.record_failed_login(999, 3) is None


class TestTenantData:
    """Settings, menus and incidents."""

    def test_setting_upsert_keeps_id(self, store, tenancy):
        again = store.upsert_tenant_setting(tenancy.company_a.id, two_factor_enabled=True)
        assert again.id == tenancy.setting_a.id
        assert store.get_tenant_setting_for_company(tenancy.company_a.id).two_factor_enabled

    def test_menu_projection(self, store, tenancy):
        assert store.list_accessible_menu_ids(Role.WORKER) == [tenancy.menu_ids["dashboard"]]
        assert len(store.list_accessible_menu_ids(Role.ADMIN)) == 3

    def test_latest_unresolved_incident(self, store, tenancy):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert store.get_latest_unresolved_incident(tenancy.worker.id) == "NORMAL"
        store.create_event(employee_id=tenancy.worker.id, employee_incident="FALL", created_at=base)
        store.create_event(
            employee_id=tenancy.worker.id,
            employee_incident="HEAT_STRESS",
            created_at=base + timedelta(minutes=1),
        )
        store.create_event(
            employee_id=tenancy.worker.id,
            employee_incident="COLLISION",
            resolved=True,
            created_at=base + timedelta(minutes=2),
        )
        assert store.get_latest_unresolved_incident(tenancy.worker.id) == "HEAT_STRESS"


class TestTokensAndChallenges:
    """Auth-owned tables."""

    def test_refresh_tokens_per_principal(self, store, tenancy):
        now = datetime.now(timezone.utc)
        for token in ("a", "b"):
            store.save_refresh_token(
                RefreshToken(token=token, principal_id=tenancy.worker.id, expires_at=now, created_at=now)
            )
        with pytest.raises(ConstraintViolation):
            store.save_refresh_token(
                RefreshToken(token="a", principal_id=tenancy.worker.id, expires_at=now, created_at=now)
            )
        assert store.delete_refresh_tokens_for_principal(tenancy.worker.id) == 2
        assert store.get_refresh_token("a") is None

    def test_blacklist_insert_is_idempotent(self, store):
        assert store.blacklist_token("t") is True
        assert store.blacklist_token("t") is False
        assert store.is_token_blacklisted("t")

    def test_current_challenge_skips_verified(self, store, tenancy):
        older = store.create_two_factor_challenge(tenancy.worker.id, "111111")
        newer = store.create_two_factor_challenge(tenancy.worker.id, "222222")
        assert store.mark_two_factor_verified(newer.id)
        assert not store.mark_two_factor_verified(newer.id)
        assert store.get_latest_two_factor_challenge(tenancy.worker.id).id == newer.id
        assert store.get_current_two_factor_challenge(tenancy.worker.id).id == older.id

    def test_concurrent_verification_has_one_winner(self, store, tenancy):
        challenge = store.create_two_factor_challenge(tenancy.worker.id, "333333")
        results = []
        barrier = threading.Barrier(8)

        def _verify():
            barrier.wait()
            results.append(store.mark_two_factor_verified(challenge.id))

        threads = [threading.Thread(target=_verify) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results.count(True) == 1

    def test_authentication_log_newest_first(self):
        store = MemoryStore()
        for status in (200, 401, 423):
            store.record_authentication_log(request_uri="/v1/auth/login", http_method="POST", status_code=status)
        assert [entry.status_code for entry in store.list_authentication_logs(2)] == [423, 401]
