import json
from pathlib import Path
from unittest import mock

import pytest

import iam_token_cli as cli
from conftest import FROZEN_TS, FakeResponse, make_jwt

EMAIL = "my-sa@proj.iam.gserviceaccount.com"


def _run_main(argv):
    """Run main() and return the SystemExit code."""
    with mock.patch.object(cli.mgr, "setup_logging"), pytest.raises(SystemExit) as exc:
        cli.main(argv)
    return exc.value.code


# Test intent: CLI flags take precedence over values from the TOML config
# file, and file values fill in the rest.
def test_cli_overrides_config_file(tmp_path: Path):
    cfg = tmp_path / "sa.toml"
    cfg.write_text(
        'type = "impersonated"\n'
        f'email_address = "{EMAIL}"\n'
        'scope = "a b"\n'
        'delegates = ["d1@x", "d2@x"]\n'
        'lifetime = "300s"\n',
        encoding="utf-8",
    )
    args = cli.build_parser().parse_args(["--config-file", str(cfg), "--lifetime", "120s"])
    opts = cli.merge_options(args, cli.load_config_file(str(cfg)))

    assert opts["type"] == "impersonated"
    assert opts["scope"] == "a b"
    assert opts["delegates"] == ["d1@x", "d2@x"]
    assert opts["lifetime"] == "120s"
    assert opts["log_level"] == "INFO"


# Test intent: an impersonated access token is printed to stdout, and the
# base token file authorizes the IAM call.
def test_main_prints_impersonated_token(tmp_path: Path, clock, capsys):
    base = tmp_path / "base"
    base.write_text("base-at\n", encoding="utf-8")
    resp = FakeResponse(payload={"accessToken": "T", "expireTime": "2023-02-16T22:00:00Z"})

    with mock.patch("requests.post", return_value=resp) as m_post:
        code = _run_main([
            "--type", "impersonated",
            "--email-address", EMAIL,
            "--scope", "a b c",
            "--delegates", "d1@x,d2@x",
            "--base-token-file", str(base),
            "--describe",
        ])

    assert code == 0
    assert capsys.readouterr().out.strip() == "T"
    kwargs = m_post.call_args.kwargs
    assert kwargs["headers"]["Authorization"] == "Bearer base-at"
    assert kwargs["json"]["scope"] == ["a", "b", "c"]
    assert kwargs["json"]["delegates"] == [
        "projects/-/serviceAccounts/d1@x",
        "projects/-/serviceAccounts/d2@x",
    ]


# Test intent: --output writes the signed JWT to a private file instead of stdout.
def test_main_writes_jwt_to_output(tmp_path: Path, clock, capsys):
    out = tmp_path / "out" / "jwt"

    def fake_post(url, json=None, headers=None):
        import json as _json
        return FakeResponse(payload={"signedJwt": make_jwt(_json.loads(json["payload"]))})

    with mock.patch("requests.post", side_effect=fake_post) as m_post:
        code = _run_main([
            "--type", "jwt",
            "--email-address", EMAIL,
            "--target-audience", "https://aud",
            "--lifetime", "600",
            "--output", str(out),
        ])

    assert code == 0
    assert capsys.readouterr().out == ""
    token = out.read_text(encoding="utf-8")
    assert token.count(".") == 2
    payload = json.loads(m_post.call_args.kwargs["json"]["payload"])
    assert payload["exp"] == FROZEN_TS + 600
    assert (out.stat().st_mode & 0o777) == 0o600


# Test intent: illegal option combinations exit with configuration error code 2.
@pytest.mark.parametrize("argv", [
    ["--email-address", EMAIL, "--scope", "a"],
    ["--type", "impersonated", "--email-address", EMAIL],
    ["--type", "impersonated", "--email-address", EMAIL, "--scope", "a", "--target-audience", "https://aud"],
    ["--type", "impersonated", "--email-address", EMAIL, "--target-audience", "https://aud", "--lifetime", "60s"],
    ["--type", "static"],
    ["--type", "jwt", "--email-address", EMAIL, "--target-audience", "https://aud", "--lifetime", "1h"],
])
def test_main_invalid_options_exit_2(argv):
    with mock.patch("requests.post") as m_post:
        assert _run_main(argv) == 2
        m_post.assert_not_called()


# Test intent: an unreadable config file is a configuration error.
def test_main_bad_config_file(tmp_path: Path):
    assert _run_main(["--config-file", str(tmp_path / "missing.toml")]) == 2


# Test intent: remote failures exit with code 1.
def test_main_remote_failure_exit_1(clock):
    with mock.patch("requests.post", return_value=FakeResponse(status_code=403, text="denied")):
        code = _run_main(["--type", "impersonated", "--email-address", EMAIL, "--scope", "a"])
    assert code == 1


# Test intent: a malformed issuance response also exits with code 1 instead
# of a traceback.
def test_main_malformed_response_exit_1(clock):
    resp = FakeResponse(payload={"accessToken": "T", "expireTime": "soon"})
    with mock.patch("requests.post", return_value=resp):
        code = _run_main(["--type", "impersonated", "--email-address", EMAIL, "--scope", "a"])
    assert code == 1


# Test intent: a static token past its refresh threshold cannot be used.
def test_main_static_expired_exit_1(tmp_path: Path, clock):
    tok = tmp_path / "at"
    tok.write_text("static-at", encoding="utf-8")
    info = FakeResponse(payload={"exp": str(FROZEN_TS + 30), "expires_in": "30"})
    with mock.patch("requests.get", return_value=info):
        code = _run_main(["--type", "static", "--token-file", str(tok)])
    assert code == 1


# Test intent: --lookup-token-file prints the token info metadata as JSON.
def test_main_lookup_prints_metadata(tmp_path: Path, capsys):
    tok = tmp_path / "at"
    tok.write_text("some-at\n", encoding="utf-8")
    info = FakeResponse(payload={"access_type": "online", "exp": "1700000000", "expires_in": "290"})
    with mock.patch("requests.get", return_value=info) as m_get:
        code = _run_main(["--lookup-token-file", str(tok)])

    assert code == 0
    assert m_get.call_args.kwargs["params"] == {"access_token": "some-at"}
    assert json.loads(capsys.readouterr().out) == {"access_type": "online", "exp": 1700000000, "expires_in": 290}


# Test intent: a rejected lookup exits with code 1.
def test_main_lookup_failure_exit_1(tmp_path: Path):
    tok = tmp_path / "at"
    tok.write_text("bad-at", encoding="utf-8")
    with mock.patch("requests.get", return_value=FakeResponse(status_code=400, text="failure")):
        assert _run_main(["--lookup-token-file", str(tok)]) == 1


def test_split_list_and_str2bool():
    assert cli.split_list("a@x, b@x,,") == ["a@x", "b@x"]
    assert cli.split_list(None) is None
    assert cli.str2bool("yes") is True
    assert cli.str2bool("0") is False
