import base64
import json
import sys

import pytest
import requests
import responses

from hyrelay.auth import (
    AuthConfigError,
    CommandAuthProvider,
    HTTPAuthProvider,
    external_auth_func,
    password_auth_func,
)

AUTH_URL = "https://auth.example.com/check"


@pytest.fixture
def auth_script(tmp_path):
    script = tmp_path / "auth_cmd.py"
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys\n"
        "print(' '.join(sys.argv[1:]))\n"
        "sys.exit(0 if sys.argv[2] == 'token' else 3)\n"
    )
    script.chmod(0o755)
    return str(script)


def test_password_list_accepts_any_listed():
    check = password_auth_func('["alpha", "beta"]')
    assert check("1.2.3.4:5", b"beta", 0, 0) == (True, "Welcome")
    assert check("1.2.3.4:5", b"alpha", 0, 0) == (True, "Welcome")


def test_password_list_rejects_unknown():
    check = password_auth_func(b'["alpha"]')
    assert check("1.2.3.4:5", b"gamma", 0, 0) == (False, "Wrong password")


def test_password_legacy_object():
    check = password_auth_func('{"password": "alpha"}')
    assert check("1.2.3.4:5", b"alpha", 1, 2) == (True, "Welcome")
    assert check("1.2.3.4:5", b"alph", 1, 2) == (False, "Wrong password")


def test_password_null_rejects_everything():
    check = password_auth_func("null")
    assert check("1.2.3.4:5", b"", 0, 0) == (False, "Wrong password")


@pytest.mark.parametrize(
    "raw", [None, "", "not json", "42", '{"password": ""}', '{"other": "x"}', '{"password": 5}']
)
def test_password_invalid_config(raw):
    with pytest.raises(AuthConfigError):
        password_auth_func(raw)


@pytest.mark.parametrize("raw", [None, "null", "{}", '{"http": "", "cmd": ""}', "[1]", '{"cmd": 3}'])
def test_external_invalid_config(raw):
    with pytest.raises(AuthConfigError):
        external_auth_func(raw)


def test_external_http_accepts_and_sends_request():
    check = external_auth_func(json.dumps({"http": AUTH_URL}))
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, AUTH_URL, json={"ok": True, "msg": "hi there"})
        result = check("1.2.3.4:5", b"token", 10, 20)
        body = json.loads(rsps.calls[0].request.body)
    assert result == (True, "hi there")
    assert body["addr"] == "1.2.3.4:5"
    assert base64.b64decode(body["payload"]) == b"token"
    assert (body["send"], body["recv"]) == (10, 20)


def test_http_rejection_passes_message():
    provider = HTTPAuthProvider(url=AUTH_URL)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, AUTH_URL, json={"ok": False, "msg": "nope"})
        assert provider.auth("1.2.3.4:5", b"token", 0, 0) == (False, "nope")


def test_http_bad_status_is_internal_error():
    provider = HTTPAuthProvider(url=AUTH_URL)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, AUTH_URL, json={"ok": True}, status=500)
        assert provider.auth("1.2.3.4:5", b"token", 0, 0) == (False, "internal error")


@pytest.mark.parametrize("body", ["not json", '{"ok": "yes"}', "[true]"])
def test_http_bad_body_is_internal_error(body):
    provider = HTTPAuthProvider(url=AUTH_URL)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, AUTH_URL, body=body)
        assert provider.auth("1.2.3.4:5", b"token", 0, 0) == (False, "internal error")


def test_http_connection_error_is_internal_error():
    provider = HTTPAuthProvider(url=AUTH_URL)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, AUTH_URL, body=requests.ConnectionError("down"))
        assert provider.auth("1.2.3.4:5", b"token", 0, 0) == (False, "internal error")


def test_command_accepts_on_zero_exit(auth_script):
    check = external_auth_func(json.dumps({"cmd": auth_script}))
    assert check("1.2.3.4:5", b"token", 10, 20) == (True, "1.2.3.4:5 token 10 20")


def test_command_rejects_on_nonzero_exit(auth_script):
    provider = CommandAuthProvider(cmd=auth_script)
    assert provider.auth("1.2.3.4:5", b"placeholder", 1, 2) == (
        False,
        "1.2.3.4:5 placeholder 1 2",
    )


def test_command_missing_is_internal_error(tmp_path):
    provider = CommandAuthProvider(cmd=str(tmp_path / "missing"))
    assert provider.auth("1.2.3.4:5", b"token", 0, 0) == (False, "internal error")