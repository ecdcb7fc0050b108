import json
import os
import time

# module-level settings in miniapp_auth.config are built at import
os.environ["SESSION_SECRET"] = "test-session-secret-0123456789abcdef-0123456789"
os.environ["BOT_TOKEN"] = "123456789:TEST-bot-token"
os.environ["AUDIT_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient

from miniapp_auth.config import Settings
from miniapp_auth.init_data import sign_init_data
from miniapp_auth.main import create_app

BOT_TOKEN = "123456789:TEST-bot-token"
SESSION_SECRET = "test-session-secret-0123456789abcdef-0123456789"

ANN = {"id": 42, "first_name": "Ann", "username": "ann42", "language_code": "en"}


class FakeClock:
    def __init__(self, start: float):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_init_data(user=ANN, auth_date=None, bot_token=BOT_TOKEN, **fields) -> str:
    data = {"query_id": "AAHdF6IQAAAAAN0XohDhrOrc"}
    if user is not None:
        data["user"] = user if isinstance(user, str) else json.dumps(user, separators=(",", ":"))
    if auth_date is not None:
        data["auth_date"] = str(auth_date)
    data.update(fields)
    return sign_init_data(data, bot_token)


@pytest.fixture
def clock():
    # wall-clock based so cookie expiry makes sense to the test client's jar
    return FakeClock(int(time.time()))


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        values = {
            "SESSION_SECRET": SESSION_SECRET,
            "BOT_TOKEN": BOT_TOKEN,
            "AUDIT_DIR": tmp_path / "audit",
            "AUDIT_ENABLED": True,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def app(make_settings, clock):
    return create_app(make_settings(), clock=clock)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def login(client, clock):
    def _login(user=ANN):
        resp = client.post("/api/auth", json={"initData": make_init_data(user=user, auth_date=int(clock.now))})
        assert resp.status_code == 200, resp.text
        return resp

    return _login
