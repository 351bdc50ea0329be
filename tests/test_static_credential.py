from datetime import datetime, timezone
from unittest import mock

import pytest

from conftest import FROZEN_TS, FakeResponse
from iam_credentials import static_credential
from iam_token_manager import AuthorizationError, LookupFailed, RefreshNotSupported


def _token_info(expires_in):
    return FakeResponse(payload={
        "access_type": "online",
        "exp": str(FROZEN_TS + expires_in),
        "expires_in": str(expires_in),
    })


# Test intent: building a static credential looks the token up once and
# caches it with the looked-up expiry, so it is usable without a refresh.
def test_static_credential_uses_token_info_expiry(clock):
    with mock.patch("requests.get", return_value=_token_info(290)) as m_get:
        cred = static_credential("static-at")

    assert m_get.call_count == 1
    assert cred.access_token == "static-at"
    assert cred.id_token is None
    assert cred.expires_at == datetime.fromtimestamp(FROZEN_TS + 290, tz=timezone.utc)
    assert cred.needs_new_token() is False
    assert cred.apply({}) == {"Authorization": "Bearer static-at"}


# Test intent: once near expiry, every apply() fails with an authorization
# error caused by RefreshNotSupported, and the cached token never changes.
def test_static_credential_cannot_refresh(clock):
    with mock.patch("requests.get", return_value=_token_info(290)):
        cred = static_credential("static-at")

    clock.advance(240)
    with mock.patch("requests.post") as m_post, mock.patch("requests.get") as m_get:
        for _ in range(3):
            with pytest.raises(AuthorizationError, match="Refresh not supported") as exc:
                cred.apply({})
            assert isinstance(exc.value.__cause__, RefreshNotSupported)
        m_post.assert_not_called()
        m_get.assert_not_called()

    assert cred.access_token == "static-at"
    assert cred.expires_at == datetime.fromtimestamp(FROZEN_TS + 290, tz=timezone.utc)


# Test intent: an invalid or expired token is rejected at construction.
def test_static_credential_lookup_failure():
    with mock.patch("requests.get", return_value=FakeResponse(status_code=400, text="failure")):
        with pytest.raises(LookupFailed):
            static_credential("bad-at")


# Test intent: diagnostics redact the token and show expiry and quota project.
def test_static_credential_repr(clock):
    with mock.patch("requests.get", return_value=_token_info(290)):
        cred = static_credential("static-at", quota_project_id="billing")

    assert repr(cred) == (
        "<StaticCredential access_token=[REDACTED]"
        " expires_at=2023-02-16T21:53:20+00:00"
        " quota_project_id='billing'>"
    )
    assert cred.apply({})["x-goog-user-project"] == "billing"
