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
Service account credentials backed by the IAM Credentials API.

Three ways to get a bearer token:
  - static_credential: a pre-issued access token that is used until it expires
  - impersonated_credential: generateAccessToken / generateIdToken for a
    service account, optionally through a delegation chain
  - service_account_jwt_credential: a JWT built locally and signed by the
    service account via signJwt

Each factory returns an iam_token_manager.ManagedToken, which re-acquires the
token once it is within 60s of expiry.

See:
  https://cloud.google.com/iam/docs/reference/credentials/rest/v1/projects.serviceAccounts
  https://cloud.google.com/iam/docs/create-short-lived-credentials-delegated#sa-credentials-permissions
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import requests

import iam_token_manager as mgr
from iam_token_info import TOKEN_INFO_URI, lookup_access_token
from iam_token_manager import (
    AuthorizationError,
    ConfigurationError,
    ManagedToken,
    RefreshNotSupported,
    RemoteCallFailed,
    TokenAcquirer,
    TokenRecord,
)

LOG = logging.getLogger("iam-token-manager")

IAM_CREDENTIALS_URI = "https://iamcredentials.googleapis.com/v1"
DEFAULT_JWT_LIFETIME = 3600


# ---------- Helpers ----------

def normalize_scope(scope) -> list[str]:
    if scope is None:
        return []
    if isinstance(scope, str):
        return scope.split()
    return list(scope)


def normalize_lifetime(lifetime) -> Optional[str]:
    if lifetime is None:
        return None
    if isinstance(lifetime, bool):
        raise ConfigurationError(f"lifetime must be a duration like '120s', got {lifetime!r}")
    if isinstance(lifetime, int):
        return f"{lifetime}s"
    return str(lifetime)


def authorize_headers(base_credentials, headers: dict) -> dict:
    """Authorize an IAM call with the caller's own credentials, if any."""
    if base_credentials is None:
        return headers
    if isinstance(base_credentials, str):
        headers["Authorization"] = f"Bearer {base_credentials}"
        return headers
    return base_credentials.apply(headers)


def call_iam(http, url: str, body: dict, base_credentials) -> dict:
    headers = authorize_headers(base_credentials, {"Content-Type": "application/json"})
    resp = http.post(url, json=body, headers=headers)
    if resp.status_code != 200:
        LOG.error("IAM call %s failed with status %s", url, resp.status_code)
        raise RemoteCallFailed(f"{resp.status_code} error from {url}: {resp.text}", response=resp)
    return resp.json()


def response_field(data: dict, name: str, url: str) -> str:
    value = data.get(name)
    if not value:
        raise RemoteCallFailed(f"Response from {url} is missing {name}")
    return value


# ---------- Static ----------

class StaticTokenAcquirer(TokenAcquirer):
    """A pre-issued access token; it can only be used until it expires."""

    credential_name = "StaticCredential"
    token_field = "access_token"

    def __init__(self, access_token: str, quota_project_id: Optional[str] = None, session=None,
                 token_info_endpoint: str = TOKEN_INFO_URI):
        if not access_token:
            raise ConfigurationError("access_token is required")
        self.quota_project_id = quota_project_id
        info = lookup_access_token(access_token, session=session, endpoint=token_info_endpoint)
        self.initial_record = TokenRecord(
            access_token=access_token,
            expires_at=datetime.fromtimestamp(info["exp"], tz=timezone.utc),
        )

    def acquire(self) -> TokenRecord:
        LOG.warning("Static access token expired or near expiry; it cannot be refreshed.")
        raise AuthorizationError("Refresh not supported") from RefreshNotSupported("Static access tokens cannot be refreshed")

    def describe(self) -> list:
        return [("quota_project_id", self.quota_project_id)]


# ---------- Impersonation ----------

class ImpersonatedTokenAcquirer(TokenAcquirer):
    """Access or ID tokens for a service account via generateAccessToken/generateIdToken.

    Exactly one of ``scope`` (access token mode) or ``target_audience`` (ID
    token mode) must be given. ``lifetime`` only applies to access tokens and
    ``include_email`` only to ID tokens.
    """

    credential_name = "ImpersonatedCredential"

    def __init__(self, email_address: str, scope=None, target_audience: Optional[str] = None,
                 base_credentials=None, delegate_email_addresses=None, lifetime=None,
                 include_email: Optional[bool] = None, quota_project_id: Optional[str] = None,
                 session=None, endpoint: str = IAM_CREDENTIALS_URI):
        if not email_address:
            raise ConfigurationError("email_address is required")
        self.scope = normalize_scope(scope)
        self.target_audience = target_audience or None

        if self.scope and self.target_audience:
            raise ConfigurationError("scope and target_audience are mutually exclusive; give one or the other")
        if not self.scope and not self.target_audience:
            raise ConfigurationError("a non-empty scope (access token) or a target_audience (ID token) is required")
        if include_email is not None and not self.target_audience:
            raise ConfigurationError("include_email is only allowed together with target_audience")
        if lifetime is not None and self.target_audience:
            raise ConfigurationError("lifetime is not allowed together with target_audience")

        self.token_field = "id_token" if self.target_audience else "access_token"
        self.base_credentials = base_credentials
        self.include_email = include_email
        self.lifetime = normalize_lifetime(lifetime)
        self.quota_project_id = quota_project_id
        self.delegates = mgr.delegate_names(delegate_email_addresses)
        self.name = mgr.service_account_name(email_address)
        self._http = session or requests
        self._endpoint = endpoint.rstrip("/")

    def acquire(self) -> TokenRecord:
        if self.target_audience:
            return self._generate_id_token()
        return self._generate_access_token()

    def _generate_access_token(self) -> TokenRecord:
        body = {"scope": list(self.scope)}
        # The API rejects empty repeated fields
        if self.delegates:
            body["delegates"] = list(self.delegates)
        if self.lifetime is not None:
            body["lifetime"] = self.lifetime
        url = f"{self._endpoint}/{self.name}:generateAccessToken"
        LOG.info("Generating access token for %s", self.name)
        data = call_iam(self._http, url, body, self.base_credentials)
        expire_time = response_field(data, "expireTime", url)
        try:
            expires_at = mgr.parse_rfc3339(expire_time)
        except ValueError as e:
            raise RemoteCallFailed(f"Response from {url} has an unreadable expireTime: {expire_time!r}") from e
        return TokenRecord(access_token=response_field(data, "accessToken", url), expires_at=expires_at)

    def _generate_id_token(self) -> TokenRecord:
        body = {"audience": self.target_audience}
        if self.delegates:
            body["delegates"] = list(self.delegates)
        if self.include_email is not None:
            body["includeEmail"] = self.include_email
        url = f"{self._endpoint}/{self.name}:generateIdToken"
        LOG.info("Generating ID token for %s (audience %s)", self.name, self.target_audience)
        data = call_iam(self._http, url, body, self.base_credentials)
        return mgr.correct_id_token_expiry(TokenRecord(id_token=response_field(data, "token", url)))

    def describe(self) -> list:
        if self.target_audience:
            return [
                ("delegates", self.delegates),
                ("include_email", self.include_email),
                ("name", self.name),
                ("quota_project_id", self.quota_project_id),
                ("target_audience", self.target_audience),
            ]
        return [
            ("delegates", self.delegates),
            ("lifetime", self.lifetime),
            ("name", self.name),
            ("quota_project_id", self.quota_project_id),
        ]


# ---------- Signed JWT ----------

class ServiceAccountJwtAcquirer(TokenAcquirer):
    """JWTs signed by a service account through signJwt."""

    credential_name = "ServiceAccountJwtCredential"
    token_field = "id_token"

    def __init__(self, email_address: str, target_audience: str, base_credentials=None,
                 delegate_email_addresses=None, issuer: Optional[str] = None,
                 lifetime: int = DEFAULT_JWT_LIFETIME, subject: Optional[str] = None,
                 quota_project_id: Optional[str] = None, session=None,
                 endpoint: str = IAM_CREDENTIALS_URI):
        if not email_address:
            raise ConfigurationError("email_address is required")
        if not target_audience:
            raise ConfigurationError("target_audience is required")
        if isinstance(lifetime, bool) or not isinstance(lifetime, int) or lifetime <= 0:
            raise ConfigurationError(f"lifetime must be a positive number of seconds, got {lifetime!r}")
        self.target_audience = target_audience
        self.base_credentials = base_credentials
        self.issuer = issuer or email_address
        self.subject = subject or email_address
        self.lifetime = lifetime
        self.quota_project_id = quota_project_id
        self.delegates = mgr.delegate_names(delegate_email_addresses)
        self.name = mgr.service_account_name(email_address)
        self._http = session or requests
        self._endpoint = endpoint.rstrip("/")

    def claims(self, now: int) -> dict:
        return {
            "aud": self.target_audience,
            "exp": now + self.lifetime,
            "iat": now,
            "iss": self.issuer,
            "sub": self.subject,
        }

    def acquire(self) -> TokenRecord:
        now = int(mgr.utcnow().timestamp())
        body = {"payload": json.dumps(self.claims(now))}
        if self.delegates:
            body["delegates"] = list(self.delegates)
        url = f"{self._endpoint}/{self.name}:signJwt"
        LOG.info("Signing JWT for %s (audience %s)", self.name, self.target_audience)
        data = call_iam(self._http, url, body, self.base_credentials)
        # expiry comes from what was actually signed, not the local claims
        return mgr.correct_id_token_expiry(TokenRecord(id_token=response_field(data, "signedJwt", url)))

    def describe(self) -> list:
        return [
            ("issuer", self.issuer),
            ("lifetime", self.lifetime),
            ("subject", self.subject),
            ("delegates", self.delegates),
            ("name", self.name),
            ("quota_project_id", self.quota_project_id),
            ("target_audience", self.target_audience),
        ]


# ---------- Factories ----------

def static_credential(token: str, quota_project_id: Optional[str] = None, session=None,
                      token_info_endpoint: str = TOKEN_INFO_URI) -> ManagedToken:
    """A credential using a static access token.

    The token's expiry is looked up immediately, so an invalid or expired
    token fails here with iam_token_info.LookupFailed.
    """
    acquirer = StaticTokenAcquirer(token, quota_project_id=quota_project_id, session=session,
                                   token_info_endpoint=token_info_endpoint)
    return ManagedToken(acquirer, record=acquirer.initial_record)


def impersonated_credential(email_address: str, scope=None, target_audience: Optional[str] = None,
                            base_credentials=None, delegate_email_addresses=None, lifetime=None,
                            include_email: Optional[bool] = None, quota_project_id: Optional[str] = None,
                            session=None, endpoint: str = IAM_CREDENTIALS_URI) -> ManagedToken:
    """A credential that impersonates a service account.

    Args:
        email_address: Email of the service account to impersonate.
        scope: OAuth 2 scopes to request, as a list or a space separated
            string. Selects access token mode.
        target_audience: Audience for an ID token. Selects ID token mode.
        base_credentials: Bearer string or credential (anything with
            ``apply(headers)``) used to authorize the IAM call. When omitted
            the request carries no Authorization header, so ``session``
            should supply one.
        delegate_email_addresses: Intermediate service accounts to
            impersonate through, in order.
        lifetime: Access token lifetime, e.g. "120s" or 120. Defaults to 1h on
            the server. A refresh costs an API call and happens with less than
            60s of life left, so keep it well above that.
        include_email: Ask for email claims in the ID token.
        quota_project_id: Project billed for API usage; sent as a header on
            outgoing requests, never to the IAM API.
        session: requests.Session (or compatible) used for the IAM call.
        endpoint: IAM Credentials API base URL.
    """
    acquirer = ImpersonatedTokenAcquirer(
        email_address,
        scope=scope,
        target_audience=target_audience,
        base_credentials=base_credentials,
        delegate_email_addresses=delegate_email_addresses,
        lifetime=lifetime,
        include_email=include_email,
        quota_project_id=quota_project_id,
        session=session,
        endpoint=endpoint,
    )
    return ManagedToken(acquirer)


def service_account_jwt_credential(email_address: str, target_audience: str, base_credentials=None,
                                   delegate_email_addresses=None, issuer: Optional[str] = None,
                                   lifetime: int = DEFAULT_JWT_LIFETIME, subject: Optional[str] = None,
                                   quota_project_id: Optional[str] = None, session=None,
                                   endpoint: str = IAM_CREDENTIALS_URI) -> ManagedToken:
    """A credential issuing JWTs signed by a service account.

    ``issuer`` and ``subject`` default to ``email_address``; ``lifetime`` is
    in seconds.
    """
    acquirer = ServiceAccountJwtAcquirer(
        email_address,
        target_audience,
        base_credentials=base_credentials,
        delegate_email_addresses=delegate_email_addresses,
        issuer=issuer,
        lifetime=lifetime,
        subject=subject,
        quota_project_id=quota_project_id,
        session=session,
        endpoint=endpoint,
    )
    return ManagedToken(acquirer)
