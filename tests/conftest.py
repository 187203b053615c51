import os
import sys

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from carebird.config import load_settings, settings
from carebird.datastore import RecordStore
from carebird.idempotency import ProcessedEventCache
from carebird.inbound_processor import InboundProcessor
from carebird.inbound_webhook import get_processor
from carebird.templates import MessageTemplates

_ENV_KEYS = [
    "AIRTABLE_API_KEY",
    "AIRTABLE_TOKEN",
    "AIRTABLE_BASE_ID",
    "BIRD_API_KEY",
    "MESSAGEBIRD_API_KEY",
    "BIRD_WORKSPACE_ID",
    "BIRD_CHANNEL_ID",
    "BIRD_DRY_RUN",
    "STRIPE_SECRET_KEY",
    "PUBLIC_BASE_URL",
    "NGROK_URL",
    "WEBHOOK_TOKEN",
    "CRON_TOKEN",
    "REDIS_URL",
]


@pytest.fixture(autouse=True)
def _isolated_env():
    for key in _ENV_KEYS:
        os.environ.pop(key, None)
    os.environ["CAREBIRD_FORCE_IN_MEMORY"] = "1"
    settings.cache_clear()
    get_processor.cache_clear()
    yield
    settings.cache_clear()
    get_processor.cache_clear()


class FakeMessenger:
    """Records every send; `fail` names the methods that should raise."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []

    def _record(self, method, *args):
        self.calls.append((method, *args))
        if method in self.fail:
            raise RuntimeError(f"{method} unavailable")
        return True

    def send_in_conversation(self, conversation_id, phone, text):
        return self._record("send_in_conversation", conversation_id, phone, text)

    def send_to_phone(self, phone, text):
        return self._record("send_to_phone", phone, text)

    def send_direct(self, phone, text):
        return self._record("send_direct", phone, text)


class FakePayments:
    def __init__(self, fail=False):
        self.fail = fail
        self.cancelled = []

    def cancel_subscription(self, subscription_id):
        self.cancelled.append(subscription_id)
        if self.fail:
            raise RuntimeError("stripe down")


@pytest.fixture
def cfg():
    return load_settings()


@pytest.fixture
def store(cfg):
    return RecordStore(cfg)


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def failing_payments():
    return FakePayments(fail=True)


@pytest.fixture
def processor(cfg, store, payments, messenger):
    return InboundProcessor(
        cfg,
        store=store,
        payments=payments,
        messenger=messenger,
        cache=ProcessedEventCache(100),
        templates=MessageTemplates(),
    )


@pytest.fixture
def add_payment(store):
    def _add(phone, **fields):
        base = {"Phone Number": phone, "Tier": "10", "Amount": 10, "Status": "active", "Payment Type": "monthly"}
        base.update(fields)
        return store.payments().create(base)

    return _add
