"""Authentication log entries."""

from datetime import timedelta

from eguard.service.audit import AuthenticationAuditor


def test_records_known_principal_from_expired_token(services, tenancy):
    tokens = services.tokens
    frozen = tokens._now() - timedelta(days=1)
    tokens._now = lambda: frozen
    pair = tokens.issue_session(tenancy.worker)
    del tokens._now

    entry = AuthenticationAuditor(services.store, tokens).record(
        request_uri="/v1/auth/logout",
        http_method="POST",
        status_code=200,
        client_ip="10.0.0.7",
        user_agent="Scanner/1.0",
        token=pair.access_token,
    )

    assert entry.principal_id == tenancy.worker.id
    assert entry.company_id == tenancy.company_a.id
    assert entry.meta == f"User: {tenancy.worker.id}, User-Agent: Scanner/1.0"
    assert services.store.list_authentication_logs(1)[0].id == entry.id


def test_anonymous_request(services):
    entry = AuthenticationAuditor(services.store, services.tokens).record(
        request_uri="/v1/auth/login",
        http_method="POST",
        status_code=401,
        user_agent="x" * 1000,
    )
    assert entry.principal_id is None
    assert entry.meta.startswith("User: anonymous, User-Agent: ")
    assert len(entry.meta) < 300


def test_store_failure_does_not_raise(services, monkeypatch):
    def _fail(**kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(services.store, "record_authentication_log", _fail)
    entry = AuthenticationAuditor(services.store, services.tokens).record(
        request_uri="/v1/auth/login",
        http_method="POST",
        status_code=200,
    )
    assert entry is None
