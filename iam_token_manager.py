#!/usr/bin/env python3
# MIT License
# Copyright (c) 2025 Gordon Trevorrow
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# Author: Gordon Trevorrow

"""
Token lifecycle core: cached token records, the staleness check and the
apply-to-request step shared by every credential type.

A credential is a ManagedToken wrapping a token acquirer. The acquirer knows
how to get a fresh token from the backend (see iam_credentials.py); the
ManagedToken decides when to ask for one and attaches the bearer value to
outgoing requests.
"""

import base64
import json
import logging
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional

import requests
from requests.auth import AuthBase

LOG = logging.getLogger("iam-token-manager")

# Tokens with this many seconds (or fewer) of remaining life are re-acquired
REFRESH_THRESHOLD_SECONDS = 60
SERVICE_ACCOUNT_NAME_TEMPLATE = "projects/-/serviceAccounts/{}"
QUOTA_PROJECT_HEADER = "x-goog-user-project"
REDACTED = "[REDACTED]"


# ---------- Errors ----------

class ConfigurationError(ValueError):
    """Illegal combination of construction options."""


class RefreshNotSupported(Exception):
    """The credential holds a token that cannot be re-acquired."""


class AuthorizationError(Exception):
    """A token could not be obtained for an outgoing request."""


class LookupFailed(Exception):
    """The token-info endpoint rejected the token."""

    def __init__(self, message: str, body: Optional[str] = None):
        super().__init__(message)
        self.body = message if body is None else body


class LookupMalformed(LookupFailed):
    """The token-info response did not carry a usable expiry."""


class RemoteCallFailed(requests.HTTPError):
    """A token issuance call did not succeed."""


class IdTokenMalformed(ValueError):
    """An issued ID token has no decodable exp claim."""


# ---------- Utils ----------

def setup_logging(level_str: str) -> None:
    level = getattr(logging, level_str.upper(), logging.INFO)
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s"))
    LOG.addHandler(h)
    LOG.setLevel(level)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def service_account_name(email: str) -> str:
    return SERVICE_ACCOUNT_NAME_TEMPLATE.format(email)


def delegate_names(emails) -> list[str]:
    """Convert delegate emails to IAM resource names, preserving order.

    Accepts None, a single email, or a sequence of emails. An empty result
    means the delegates field must be left out of the request entirely.
    """
    if emails is None:
        return []
    if isinstance(emails, str):
        emails = [emails]
    return [service_account_name(e) for e in emails]


_RFC3339_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|z|[+-]\d{2}:\d{2})$"
)


def parse_rfc3339(value: str) -> datetime:
    m = _RFC3339_RE.match(value.strip())
    if not m:
        raise ValueError(f"Invalid RFC3339 timestamp: {value!r}")
    date_part, time_part, frac, offset = m.groups()
    # datetime only keeps microseconds; the IAM API sends up to nanoseconds
    frac = (frac or "0")[:6].ljust(6, "0")
    if offset in ("Z", "z"):
        offset = "+00:00"
    return datetime.fromisoformat(f"{date_part}T{time_part}.{frac}{offset}").astimezone(timezone.utc)


def decode_jwt_payload(token_str: str) -> dict:
    """Decode a compact JWT payload without verifying the signature."""
    parts = token_str.split(".")
    if len(parts) < 2:
        raise IdTokenMalformed("ID token is not a compact JWT")
    payload_b64 = parts[1]
    pad = '=' * (-len(payload_b64) % 4)  # JWTs drop base64 padding
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + pad))
    except ValueError as e:
        raise IdTokenMalformed(f"ID token payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise IdTokenMalformed("ID token payload is not a JSON object")
    return payload


# ---------- Token records ----------

@dataclass(frozen=True, repr=False)
class TokenRecord:
    access_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def token(self) -> Optional[str]:
        return self.access_token or self.id_token

    @property
    def kind(self) -> Optional[str]:
        if self.access_token:
            return "access_token"
        if self.id_token:
            return "id_token"
        return None

    def __repr__(self):
        return render_redacted(
            "TokenRecord",
            [("access_token", self.access_token), ("id_token", self.id_token), ("expires_at", self.expires_at)],
            secret=("access_token", "id_token"),
        )


def correct_id_token_expiry(record: TokenRecord) -> TokenRecord:
    """Set expires_at from the exp claim the ID token carries.

    The issuance APIs do not report an expiry for ID tokens, so the only
    source of truth is the token itself.
    """
    if not record.id_token:
        return record
    exp = decode_jwt_payload(record.id_token).get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise IdTokenMalformed("ID token is missing a numeric exp claim")
    try:
        expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise IdTokenMalformed(f"ID token exp claim is out of range: {exp!r}") from e
    return TokenRecord(access_token=record.access_token, id_token=record.id_token, expires_at=expires_at)


# ---------- Diagnostics ----------

def render_redacted(name: str, fields, secret=()) -> str:
    """Render ``<name k=v ...>`` with secret values replaced by a marker.

    ``fields`` is an ordered sequence of (key, value) pairs. A secret field
    shows REDACTED when set and None otherwise, so the summary still tells
    whether a token is cached.
    """
    parts = [name]
    for key, value in fields:
        if key in secret:
            shown = REDACTED if value else "None"
        elif isinstance(value, datetime):
            shown = value.isoformat()
        else:
            shown = repr(value)
        parts.append(f"{key}={shown}")
    return "<" + " ".join(parts) + ">"


# ---------- Managed token ----------

class TokenAcquirer:
    """Interface implemented by every credential strategy.

    ``token_field`` names the record field the strategy fills for its whole
    lifetime ("access_token" or "id_token").
    """

    credential_name = "Credential"
    token_field = "access_token"
    quota_project_id: Optional[str] = None

    def acquire(self) -> TokenRecord:
        raise NotImplementedError

    def describe(self) -> list:
        """Ordered non-secret (key, value) pairs for diagnostics."""
        return []

    def __repr__(self):
        return render_redacted(type(self).__name__, self.describe())


class ManagedToken(AuthBase):
    """Caches the token from an acquirer and re-acquires it when stale."""

    def __init__(self, acquirer: TokenAcquirer, record: Optional[TokenRecord] = None):
        self.acquirer = acquirer
        self._record = record or TokenRecord()

    @property
    def record(self) -> TokenRecord:
        return self._record

    @property
    def access_token(self) -> Optional[str]:
        return self._record.access_token

    @property
    def id_token(self) -> Optional[str]:
        return self._record.id_token

    @property
    def token(self) -> Optional[str]:
        return self._record.token

    @property
    def expires_at(self) -> Optional[datetime]:
        return self._record.expires_at

    @property
    def quota_project_id(self) -> Optional[str]:
        return self.acquirer.quota_project_id

    def expires_within(self, seconds: int) -> bool:
        if self.expires_at is None:
            return False
        return utcnow() + timedelta(seconds=seconds) >= self.expires_at

    def needs_new_token(self) -> bool:
        return self.token is None or self.expires_within(REFRESH_THRESHOLD_SECONDS)

    def refresh(self) -> TokenRecord:
        record = self.acquirer.acquire()
        if bool(record.access_token) == bool(record.id_token):
            raise AuthorizationError("Acquired token record must hold exactly one of access_token or id_token")
        if record.kind != self.acquirer.token_field:
            raise AuthorizationError(f"Expected {self.acquirer.token_field} from {self.acquirer.credential_name}, got {record.kind}")
        self._record = record
        LOG.debug("%s token refreshed; expires at %s", self.acquirer.credential_name,
                  record.expires_at.isoformat() if record.expires_at else None)
        return record

    def apply(self, headers: Optional[dict] = None) -> dict:
        """Attach the bearer token (refreshing first if needed) to headers."""
        if headers is None:
            headers = {}
        if self.needs_new_token():
            self.refresh()
        headers["Authorization"] = f"Bearer {self.token}"
        if self.quota_project_id:
            headers[QUOTA_PROJECT_HEADER] = self.quota_project_id
        return headers

    def __call__(self, r):
        self.apply(r.headers)
        return r

    def __repr__(self):
        fields = [(self.acquirer.token_field, self.token), ("expires_at", self.expires_at)]
        fields.extend(self.acquirer.describe())
        return render_redacted(self.acquirer.credential_name, fields, secret=(self.acquirer.token_field,))

    __str__ = __repr__
