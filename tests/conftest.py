import asyncio
import inspect
import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authkernel.config import Settings, reset_settings_cache  # noqa: E402
from authkernel.runtime import Runtime  # noqa: E402
from authkernel.service.sessions import DeviceContext  # noqa: E402
from authkernel.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-42!"
TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


class Clock:
    """Controllable UTC clock shared by every service under test."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingEmailSender:
    """Email double that records every notification instead of sending it."""

    def __init__(self, result: bool = True):
        self.result = result
        self.sent = []
        self._lock = threading.Lock()

    def _record(self, kind, to_email, **fields):
        with self._lock:
            self.sent.append({"kind": kind, "to": to_email, **fields})
        return self.result

    def of_kind(self, kind):
        with self._lock:
            return [m for m in self.sent if m["kind"] == kind]

    def send_welcome_email(self, to_email, first_name):
        return self._record("welcome", to_email, first_name=first_name)

    def send_verification_email(self, to_email, first_name, token, expires_at):
        return self._record("verification", to_email, token=token, expires_at=expires_at)

    def send_password_reset_email(self, to_email, first_name, token, expires_at):
        return self._record("password_reset", to_email, token=token, expires_at=expires_at)

    def send_password_changed_notification(self, to_email, first_name):
        return self._record("password_changed", to_email)

    def send_new_device_login_alert(self, to_email, first_name, device_summary, ip_address, occurred_at):
        return self._record(
            "new_device", to_email, device_summary=device_summary, ip_address=ip_address
        )

    def send_account_lockout_notification(self, to_email, first_name, unlock_at):
        return self._record("lockout", to_email, unlock_at=unlock_at)

    def send_security_alert(self, to_email, first_name, category, metadata):
        return self._record("security_alert", to_email, category=category, metadata=metadata)


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
        brute_force_step_delay_ms=0,
        brute_force_max_delay_ms=0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    store = MemoryStore()
    customer = store.create_role("customer", "Default storefront role")
    orders = store.create_permission("orders:read")
    store.grant_role_permission(customer.id, orders.id)
    return store


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def runtime(settings, store, email_sender, clock):
    return Runtime(settings, store=store, email=email_sender, now=clock)


@pytest.fixture
def device():
    return DeviceContext(ip_address="203.0.113.10", user_agent="pytest-browser/1.0")


@pytest.fixture
def register_user(runtime, email_sender, device):
    """Factory: register and verify an account, returning its profile."""

    async def _register(email="shopper@example.com", password=STRONG_PASSWORD, verify=True):
        result = await runtime.auth.register(email, password, device=device)
        if verify:
            await runtime.dispatcher.drain()
            token = [m for m in email_sender.of_kind("verification") if m["to"] == email][-1]["token"]
            await runtime.auth.verify_email(token)
            await runtime.dispatcher.drain()
        return result.user

    return _register


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
