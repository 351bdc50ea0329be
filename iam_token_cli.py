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
iam-token: obtain a service account token from the command line.

Usage examples:
  - Impersonate a service account and print an access token:
      iam-token --type impersonated --email-address my-sa@proj.iam.gserviceaccount.com \
        --scope https://www.googleapis.com/auth/cloud-platform --base-token-file ~/.at
  - Sign a JWT for an audience, values from a TOML file, token written to a file:
      iam-token --config-file sa.toml --output /tmp/jwt
  - Show what a token-info lookup returns for an access token:
      iam-token --lookup-token-file ~/.at

Config file keys match the long option names with '_' instead of '-'
(type, email_address, scope, target_audience, delegates, lifetime, ...).
CLI flags override values from the file.
"""

import argparse
import json
import logging
import os
import sys
from typing import Optional

import requests
import toml

import iam_token_manager as mgr
from iam_credentials import (
    impersonated_credential,
    service_account_jwt_credential,
    static_credential,
)
from iam_token_info import lookup_access_token
from iam_token_manager import AuthorizationError, ConfigurationError, LookupFailed, IdTokenMalformed

LOG = logging.getLogger("iam-token-manager")

CREDENTIAL_TYPES = ("static", "impersonated", "jwt")
DEFAULTS = {
    "log_level": "INFO",
}


def write_secret_file(path: str, content: bytes) -> None:
    d = os.path.dirname(path)
    if d:
        os.makedirs(d, exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)
    try:
        os.chmod(path, 0o600)
    except OSError:
        LOG.warning("Could not restrict permissions on %s", path)


def read_token_file(path: str) -> str:
    with open(os.path.expanduser(path), "r", encoding="utf-8") as f:
        return f.read().strip()


def split_list(value) -> Optional[list]:
    if value is None:
        return None
    if isinstance(value, list):
        return value
    return [v.strip() for v in str(value).split(",") if v.strip()]


def str2bool(v) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).lower() in ('yes', 'true', 't', '1')


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Obtain service account tokens via the IAM Credentials API", allow_abbrev=False)
    p.add_argument("--config-file", default=None, help="Path to a TOML file with credential options")
    p.add_argument("--type", default=None, choices=CREDENTIAL_TYPES, help="Credential type")
    p.add_argument("--email-address", default=None, help="Service account email to act as")
    p.add_argument("--scope", default=None, help="Space separated OAuth scopes (impersonated access token)")
    p.add_argument("--target-audience", default=None, help="Audience (impersonated ID token or jwt)")
    p.add_argument("--delegates", default=None, help="Comma separated delegate service account emails")
    p.add_argument("--lifetime", default=None, help="Token lifetime: '120s' for impersonated access tokens, seconds for jwt")
    p.add_argument("--include-email", default=None, type=str2bool, help="Include email claims in impersonated ID tokens")
    p.add_argument("--issuer", default=None, help="JWT iss claim (default: email address)")
    p.add_argument("--subject", default=None, help="JWT sub claim (default: email address)")
    p.add_argument("--quota-project-id", default=None, help="Quota project for outgoing requests")
    p.add_argument("--token-file", default=None, help="File holding the access token (static)")
    p.add_argument("--base-token-file", default=None, help="File holding the bearer token authorizing the IAM call")
    p.add_argument("--output", default=None, help="Write the token to this file (mode 0600) instead of stdout")
    p.add_argument("--describe", action="store_true", help="Log a redacted summary of the credential")
    p.add_argument("--lookup-token-file", default=None, help="Print token-info metadata for the access token in this file and exit")
    p.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING, ERROR; default INFO)")
    return p


def load_config_file(path: Optional[str]) -> dict:
    if not path:
        return {}
    return toml.load(path)


def merge_options(args, file_values: dict) -> dict:
    def pick(name, cli_val, cast=None):
        if cli_val is not None:
            return cli_val
        if name in file_values and file_values[name] != "":
            return cast(file_values[name]) if cast else file_values[name]
        return DEFAULTS.get(name)

    return {
        "type": pick("type", args.type),
        "email_address": pick("email_address", args.email_address),
        "scope": pick("scope", args.scope),
        "target_audience": pick("target_audience", args.target_audience),
        "delegates": split_list(pick("delegates", args.delegates)),
        "lifetime": pick("lifetime", args.lifetime),
        "include_email": pick("include_email", args.include_email, str2bool),
        "issuer": pick("issuer", args.issuer),
        "subject": pick("subject", args.subject),
        "quota_project_id": pick("quota_project_id", args.quota_project_id),
        "token_file": pick("token_file", args.token_file),
        "base_token_file": pick("base_token_file", args.base_token_file),
        "log_level": pick("log_level", args.log_level),
    }


def build_credential(opts: dict):
    """Build a ManagedToken from merged options; raises ConfigurationError."""
    kind = opts.get("type")
    if kind not in CREDENTIAL_TYPES:
        raise ConfigurationError(f"type must be one of {', '.join(CREDENTIAL_TYPES)}")

    if kind == "static":
        if not opts.get("token_file"):
            raise ConfigurationError("token_file is required for static credentials")
        return static_credential(read_token_file(opts["token_file"]), quota_project_id=opts.get("quota_project_id"))

    base = None
    if opts.get("base_token_file"):
        base = read_token_file(opts["base_token_file"])

    if kind == "impersonated":
        lifetime = opts.get("lifetime")
        if isinstance(lifetime, str) and lifetime.isdigit():
            lifetime = int(lifetime)
        return impersonated_credential(
            opts.get("email_address"),
            scope=opts.get("scope"),
            target_audience=opts.get("target_audience"),
            base_credentials=base,
            delegate_email_addresses=opts.get("delegates"),
            lifetime=lifetime,
            include_email=opts.get("include_email"),
            quota_project_id=opts.get("quota_project_id"),
        )

    lifetime = opts.get("lifetime")
    if lifetime is None:
        lifetime = 3600
    try:
        lifetime = int(str(lifetime).rstrip("s"))
    except ValueError as e:
        raise ConfigurationError(f"lifetime must be a number of seconds, got {lifetime!r}") from e
    return service_account_jwt_credential(
        opts.get("email_address"),
        opts.get("target_audience"),
        base_credentials=base,
        delegate_email_addresses=opts.get("delegates"),
        issuer=opts.get("issuer"),
        lifetime=lifetime,
        subject=opts.get("subject"),
        quota_project_id=opts.get("quota_project_id"),
    )


def main(argv=None):
    p = build_parser()
    args = p.parse_args(argv)

    try:
        file_values = load_config_file(args.config_file)
    except (OSError, toml.TomlDecodeError) as e:
        print(f"Error reading config-file: {e}", file=sys.stderr)
        sys.exit(2)

    opts = merge_options(args, file_values)
    mgr.setup_logging(opts["log_level"])

    if args.lookup_token_file:
        try:
            info = lookup_access_token(read_token_file(args.lookup_token_file))
        except (OSError, LookupFailed) as e:
            LOG.error("Token info lookup failed: %s", e)
            sys.exit(1)
        print(json.dumps(dict(info), indent=2, sort_keys=True))
        sys.exit(0)

    try:
        credential = build_credential(opts)
    except ConfigurationError as e:
        print(f"Invalid options: {e}", file=sys.stderr)
        sys.exit(2)
    except (OSError, LookupFailed) as e:
        LOG.error("Failed to load credential: %s", e)
        sys.exit(1)

    try:
        credential.apply({})
    except (AuthorizationError, requests.RequestException, IdTokenMalformed) as e:
        LOG.error("Failed to obtain token: %s", e)
        sys.exit(1)

    if args.describe:
        LOG.info("Credential: %r", credential)
    LOG.info("Token valid until %s", credential.expires_at.isoformat() if credential.expires_at else None)

    if args.output:
        write_secret_file(args.output, credential.token.encode())
        LOG.info("Wrote token to %s", args.output)
    else:
        print(credential.token)
    sys.exit(0)


if __name__ == "__main__":
    main()
