import asyncio
import inspect
import re
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from rentalhub.config import Settings
from rentalhub.container import build_services
from rentalhub.database import Database
from rentalhub.main import create_app
from rentalhub.services.accounts import RegistrationData

ACCESS_KEY = "test-access-key-for-automation-only"
SESSION_KEY = "test-session-key-for-automation-only"
CODE_PATTERN = re.compile(r"verification code is (\d+)")


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        # cookies set by the API are judged against the real time
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingMailer:
    def __init__(self) -> None:
        self.sent = []
        self.fail_with = None

    def send(self, to_email, message) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((to_email, message))

    def last_code(self) -> str:
        _, message = self.sent[-1]
        return CODE_PATTERN.search(message.body).group(1)


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


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        database_url="sqlite://",
        access_token_key=ACCESS_KEY,
        session_token_key=SESSION_KEY,
        cors_origins=("http://localhost:5173",),
    )


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def services(settings, database, mailer, clock):
    return build_services(settings, database=database, mailer=mailer, clock=clock)


@pytest.fixture
def registration():
    return RegistrationData(
        business_name="Acme Rentals",
        business_email="office@acme.test",
        contact_person="Asha Rao",
        contact_number="9876543210",
        address_line="12 Market Road",
        city="Pune",
        state="Maharashtra",
        pincode="411001",
        owner_name="Asha Rao",
        owner_email="asha@acme.test",
        owner_contact_number="9876543211",
    )


@pytest.fixture
def owner(services, registration):
    result = services.accounts.register_business_with_owner(registration)
    return services.accounts.get_principal_by_email(registration.owner_email), result


@pytest.fixture
def app(services):
    return create_app(services=services)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
