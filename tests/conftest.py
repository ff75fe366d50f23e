import asyncio
import inspect
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="eguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Two-factor cooldowns fall back to the store check alone
os.environ.setdefault("REDIS_URL", "")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("AUTH_COOKIE_SECURE", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from eguard.config import Settings  # noqa: E402
from eguard.service.auth import AuthService  # noqa: E402
from eguard.service.identity import RequestIdentityBinder  # noqa: E402
from eguard.service.notifications import NotificationDispatcher  # noqa: E402
from eguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from eguard.service.tenant_access import TenantAccessValidator  # noqa: E402
from eguard.service.tokens import TokenService  # noqa: E402
from eguard.service.two_factor import TwoFactorManager  # noqa: E402
from eguard.storage.memory import MemoryStore  # noqa: E402
from eguard.storage.models import Principal, Role  # noqa: E402

PASSWORD = "Factory-Pass-2024"

_hasher = PasswordHasher(type=Type.ID)
_password_hash = _hasher.hash(PASSWORD)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class RecordingSender:
    """NotificationSender that keeps every message in memory."""

    def __init__(self, *, succeed: bool = True):
        self.succeed = succeed
        self.messages = []

    def send(self, recipient, subject, text_body, html_body=None):
        self.messages.append(SimpleNamespace(recipient=recipient, subject=subject, body=text_body))
        return self.succeed

    def last_for(self, recipient):
        for message in reversed(self.messages):
            if message.recipient == recipient:
                return message
        return None


@dataclass
class Tenancy:
    """Two companies; company A runs two factories, company B one and requires 2FA."""

    company_a: object
    company_b: object
    factory_a: object
    factory_a2: object
    factory_b: object
    setting_a: object
    setting_b: object
    worker: Principal
    manager: Principal
    admin: Principal
    neighbour: Principal
    outsider: Principal
    menu_ids: dict


def seed_tenancy(store: MemoryStore) -> Tenancy:
    company_a = store.create_company("Acme Steel", business_number="123-45-67890")
    company_b = store.create_company("Borealis Chemicals")
    factory_a = store.create_factory(company_a.id, "Acme Plant 1")
    factory_a2 = store.create_factory(company_a.id, "Acme Plant 2")
    factory_b = store.create_factory(company_b.id, "Borealis Plant")
    setting_a = store.upsert_tenant_setting(company_a.id, two_factor_enabled=False)
    setting_b = store.upsert_tenant_setting(company_b.id, two_factor_enabled=True)
    dashboard = store.create_menu("dashboard", [Role.WORKER, Role.MANAGER, Role.ADMIN])
    employees = store.create_menu("employees", [Role.MANAGER, Role.ADMIN])
    tenants = store.create_menu("tenants", [Role.ADMIN])

    def _employee(email, name, factory, role=Role.WORKER):
        return store.create_principal(email, name, factory.id, role=role, password_hash=_password_hash)

    return Tenancy(
        company_a=company_a,
        company_b=company_b,
        factory_a=factory_a,
        factory_a2=factory_a2,
        factory_b=factory_b,
        setting_a=setting_a,
        setting_b=setting_b,
        worker=_employee("worker@acme.example", "Kim Worker", factory_a),
        manager=_employee("manager@acme.example", "Lee Manager", factory_a, Role.MANAGER),
        admin=_employee("admin@acme.example", "Park Admin", factory_a, Role.ADMIN),
        neighbour=_employee("plant2@acme.example", "Choi Plant2", factory_a2),
        outsider=_employee("worker@borealis.example", "Jung Outsider", factory_b),
        menu_ids={"dashboard": dashboard.id, "employees": employees.id, "tenants": tenants.id},
    )


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tenancy(store):
    return seed_tenancy(store)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def services(store, settings, sender):
    """Service graph wired like the runtime, minus Redis and SMTP."""
    notifications = NotificationDispatcher(sender)
    tokens = TokenService(store, settings)
    two_factor = TwoFactorManager(store, settings, notifications=notifications)
    access = TenantAccessValidator(store)
    auth = AuthService(
        store,
        settings,
        tokens=tokens,
        two_factor=two_factor,
        access=access,
        notifications=notifications,
    )
    return SimpleNamespace(
        store=store,
        settings=settings,
        sender=sender,
        notifications=notifications,
        tokens=tokens,
        two_factor=two_factor,
        access=access,
        auth=auth,
        identity=RequestIdentityBinder(tokens, store),
    )
