"""
Pytest configuration and shared fixtures.

Test environment variables are set before any app import so that settings
resolve against them. Every test gets a fresh SQLite file database and fake
Twilio/Slack clients injected through ``create_app``.
"""

import os

TEST_ENV = {
    "DATABASE_URL": "sqlite://",
    "LOG_LEVEL": "INFO",
    "API_KEYS": "test-key-1,test-key-2",
    "TWILIO_ACCOUNT_SID": "ACtest",
    "TWILIO_AUTH_TOKEN": "twilio-test-token",
    "TWILIO_SEND_NUMBER": "+15550001111",
    "SUBSCRIBE_KEYWORD": "counter",
    "UNSUBSCRIBE_KEYWORD": "stop",
    "SUBSCRIBE_MESSAGE": "You are subscribed. Reply STOP to unsubscribe.",
    "TEST_PHONE_NUMBER": "+14087977416",
    "SLACK_BOT_TOKEN": "xoxb-test",
    "SLACK_SIGNING_SECRET": "test-signing-secret",
    "SLACK_CHANNEL_ID": "CPROPOSALS",
}
os.environ.update(TEST_ENV)

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from smsrelay.config import Settings, get_settings
get_settings.cache_clear()

from smsrelay.exceptions import CarrierError, ChatError
from smsrelay.main import create_app
from smsrelay.storage import Database


SYSTEM_NUMBER = TEST_ENV["TWILIO_SEND_NUMBER"]
TEST_NUMBER = TEST_ENV["TEST_PHONE_NUMBER"]
BOT_USER_ID = "UBOT"


class FakeCarrier:
    """Records sends instead of calling Twilio."""

    def __init__(self):
        self.sent = []
        self.fail_numbers = set()

    def send(self, from_, to, body):
        if to in self.fail_numbers:
            raise CarrierError(f"Twilio rejected {to}")
        self.sent.append((from_, to, body))
        return f"SM{len(self.sent):032d}"

    def recipients(self):
        return [to for _, to, _ in self.sent]


class FakeChat:
    """Records Slack Web API calls instead of making them."""

    def __init__(self):
        self.posted = []
        self.deleted = []
        self.reactions = []
        self.delete_error = None

    def post_message(self, channel, text, blocks=None, thread_ts=None):
        ts = f"1700000000.{len(self.posted) + 1:06d}"
        self.posted.append({
            "channel": channel,
            "text": text,
            "blocks": blocks,
            "thread_ts": thread_ts,
            "ts": ts,
        })
        return ts

    def delete_message(self, channel, ts):
        if self.delete_error:
            raise ChatError(f"Slack chat.delete failed: {self.delete_error}", error=self.delete_error)
        self.deleted.append((channel, ts))

    def add_reaction(self, channel, ts, name):
        self.reactions.append((channel, ts, name))

    def auth_test(self):
        return {"ok": True, "user_id": BOT_USER_ID, "bot_id": "BBOT"}

    def close(self):
        pass


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(DATABASE_URL=f"sqlite:///{tmp_path / 'relay.db'}")


@pytest.fixture
def database(settings):
    db = Database(settings.DATABASE_URL)
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def app(settings, database, carrier, chat):
    return create_app(settings, database=database, carrier=carrier, chat=chat)


@pytest.fixture
def client(app):
    """Test client with lifespan started against the fresh database."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def db(database):
    with database.session() as session:
        yield session


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer test-key-1"}
