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

"""Look up details about an access token, primarily its expiry."""

import json
import logging
from types import MappingProxyType
from typing import Mapping, Optional
from urllib.parse import parse_qsl

import requests

from iam_token_manager import LookupFailed, LookupMalformed

LOG = logging.getLogger("iam-token-manager")

TOKEN_INFO_URI = "https://oauth2.googleapis.com/tokeninfo"
INTEGER_FIELDS = ("exp", "expires_in")


def parse_as_integer(value):
    # str(int(v)) must give back exactly v: "0290", " 290" and "290a" are rejected
    if value is None:
        return None
    if isinstance(value, bool):
        raise LookupMalformed(f"Not an integer: {value!r}")
    if isinstance(value, int):
        return value
    try:
        parsed = int(value)
    except (TypeError, ValueError) as e:
        raise LookupMalformed(f"Not an integer: {value!r}") from e
    if str(parsed) != value:
        raise LookupMalformed(f"Not an integer: {value!r}")
    return parsed


def freeze(value):
    if isinstance(value, dict):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(freeze(v) for v in value)
    return value


def parse_credentials(body: str, content_type: Optional[str]) -> dict:
    content_type = (content_type or "").lower()
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(body))
    try:
        data = json.loads(body)
    except ValueError as e:
        raise LookupMalformed(f"Token info response is not JSON: {e}", body) from e
    if not isinstance(data, dict):
        raise LookupMalformed("Token info response is not a JSON object", body)
    return data


def lookup_access_token(token: str, session=None, endpoint: str = TOKEN_INFO_URI) -> Mapping:
    """Look up the details for a valid access token, including its expiry.

    Raises LookupFailed if the token is rejected (including when expired) and
    LookupMalformed if the response has no usable ``exp``.

    Returns a read-only mapping of every response field, with ``exp`` and
    ``expires_in`` converted to int.
    """
    http = session or requests
    resp = http.get(endpoint, params={"access_token": token})
    if resp.status_code != 200:
        LOG.warning("Token info lookup failed with status %s", resp.status_code)
        raise LookupFailed(resp.text, resp.text)

    credentials = parse_credentials(resp.text, resp.headers.get("Content-Type"))

    if not credentials.get("exp"):
        raise LookupMalformed("Missing token expiry", resp.text)

    for name in INTEGER_FIELDS:
        if name in credentials:
            credentials[name] = parse_as_integer(credentials[name])

    return freeze(credentials)
