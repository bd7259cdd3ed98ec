# tests/conftest.py
import os

import pytest
from fastapi.testclient import TestClient

# Point tests at a throwaway in-memory SQLite before anything imports settings
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault(
    "ENCRYPTION_KEY",
    "3f1c9a7e5b2d4f6081a3c5e7092b4d6f8a1c3e5079b2d4f6a8c0e1325476980a",
)
os.environ["INVENTORY_MONITOR_ENABLED"] = "false"
os.environ.pop("ADMIN_API_TOKEN", None)

from keyshop.main import app  # noqa: E402
from keyshop.config import settings  # noqa: E402
from keyshop.db import SessionLocal, engine  # noqa: E402
from keyshop.deps import Services  # noqa: E402
from keyshop.gateways import GatewayRegistry, SandboxGateway  # noqa: E402
from keyshop.models import Base, Price, Product, ProductStatus  # noqa: E402
from keyshop.pricing import TablePricing  # noqa: E402
from keyshop.services.inventory import InventoryAlerter  # noqa: E402
from keyshop.services.keys import import_keys  # noqa: E402
from keyshop.services.verification import VerificationCodes  # noqa: E402
from keyshop.vault import KeyVault  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TTLStore:
    """The slice of the redis client keyshop uses, with expiry driven by FakeClock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._data = {}

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock.now:
            del self._data[key]
            return None
        return value

    def set(self, key, value, nx=False, ex=None):
        if nx and self._live(key) is not None:
            return None
        self._data[key] = (value, self.clock.now + ex if ex else None)
        return True

    def get(self, key):
        return self._live(key)

    def incr(self, key):
        value = self._live(key)
        expires_at = self._data[key][1] if value is not None else None
        value = int(value or 0) + 1
        self._data[key] = (value, expires_at)
        return value

    def expire(self, key, seconds):
        if self._live(key) is None:
            return False
        self._data[key] = (self._data[key][0], self.clock.now + seconds)
        return True

    def exists(self, *keys):
        return sum(1 for k in keys if self._live(k) is not None)

    def delete(self, *keys):
        removed = 0
        for k in keys:
            if self._live(k) is not None:
                del self._data[k]
                removed += 1
        return removed


class RecordingChannel:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, title, body):
        if self.fail:
            return False
        self.sent.append((title, body))
        return True


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.raise_error = False
        self.codes = []

    def send_order_confirmation(self, email, order, keys):
        if self.raise_error:
            raise ConnectionError("smtp down")
        self.sent.append((email, order, keys))
        return True

    def send_verification_code(self, email, code):
        if self.raise_error:
            raise ConnectionError("smtp down")
        self.codes.append((email, code))
        return True


@pytest.fixture(autouse=True)
def create_schema_and_clean_db():
    # Fresh tables for every test
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    with SessionLocal() as session:
        yield session


@pytest.fixture
def vault():
    return KeyVault.from_hex(settings.encryption_key)


@pytest.fixture
def sandbox():
    return SandboxGateway("test-secret")


@pytest.fixture
def gateways(sandbox):
    return GatewayRegistry({"sandbox": sandbox}, retry_attempts=3, retry_base_delay=0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return TTLStore(clock)


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def alerter(store, channel):
    return InventoryAlerter(store, channel, threshold=10, cooldown_seconds=86400)


@pytest.fixture
def codes(store):
    return VerificationCodes(store, ttl_seconds=600, max_attempts=5)


@pytest.fixture
def services(vault, gateways, alerter, channel, mailer, codes):
    return Services(
        vault=vault,
        gateways=gateways,
        pricing=TablePricing(),
        alerter=alerter,
        notifier=channel,
        mailer=mailer,
        codes=codes,
    )


@pytest.fixture
def client(services):
    app.state.services = services
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_product(db):
    def _make(name="Windows 11 Pro", amount="19.99", currency="USD", status=ProductStatus.ACTIVE):
        product = Product(name=name, status=status)
        product.prices.append(Price(country_code=None, amount=amount, currency=currency))
        db.add(product)
        db.commit()
        return product.id

    return _make


@pytest.fixture
def add_keys(db, vault):
    counter = {"n": 0}

    def _add(product_id, count, prefix="KEY"):
        raw = []
        for _ in range(count):
            counter["n"] += 1
            raw.append(f"{prefix}-{counter['n']:05d}-ABCDE")
        import_keys(db, vault, product_id, raw)
        return raw

    return _add


@pytest.fixture
def issue_code(client, mailer):
    """Ask the API for a code and read it back out of the recording mailer."""
    def _issue(email, order_no=None):
        payload = {"email": email}
        if order_no is not None:
            payload["order_no"] = order_no
        r = client.post("/orders/send-code", json=payload)
        assert r.status_code == 200, r.text
        return mailer.codes[-1][1]

    return _issue
