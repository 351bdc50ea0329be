import base64
import json
from datetime import datetime, timezone

import pytest

import iam_token_manager as mgr

# 2023-02-16T21:48:30Z
FROZEN_TS = 1676584110


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None, content_type="application/json; charset=UTF-8"):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)
        self.headers = {"Content-Type": content_type}

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


def make_jwt(claims: dict) -> str:
    header = base64.urlsafe_b64encode(b'{"alg":"none"}').decode().rstrip("=")
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{payload}.sig"


class Clock:
    def __init__(self, ts):
        self.now = datetime.fromtimestamp(ts, tz=timezone.utc)

    def advance(self, seconds):
        self.now = datetime.fromtimestamp(self.now.timestamp() + seconds, tz=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock(monkeypatch):
    c = Clock(FROZEN_TS)
    monkeypatch.setattr(mgr, "utcnow", c)
    return c
