from unittest.mock import MagicMock
from ig_trading_api.config import SessionConfig
import pytest
import json
import os


LIGHTSTREAMER_ENDPOINT = "https://demo-apd.marketdatasystems.com"


@pytest.fixture(autouse=True)
def clean_ig_environment(monkeypatch):
    """Keep IG_* variables of the developer's shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("IG_"):
            monkeypatch.delenv(name)


@pytest.fixture
def make_config():
    """Factory for a SessionConfig with test defaults."""
    def _make(**overrides):
        values = {
            "api_key": "test_api_key",
            "username": "test_username",
            "password": "test_password",
            "base_url_demo": "https://demo-api.ig.com/gateway/deal",
            "base_url_live": "https://api.ig.com/gateway/deal",
            "account_number_demo": "ABC123",
            "account_number_live": "XYZ789",
            "auto_login": False,
        }
        values.update(overrides)
        return SessionConfig(**values)
    return _make


@pytest.fixture
def make_response():
    """Factory for a mocked requests.Response."""
    def _make(status_code=200, body=None, headers=None):
        resp = MagicMock()
        resp.status_code = status_code
        resp.ok = 200 <= status_code < 400
        resp.headers = headers or {}
        if body is None:
            resp.content = b""
            resp.json.side_effect = ValueError("No JSON body")
        else:
            resp.content = json.dumps(body).encode()
            resp.json.return_value = body
        return resp
    return _make


@pytest.fixture
def v3_login_body():
    return {
        "accountId": "ABC123",
        "clientId": "101",
        "lightstreamerEndpoint": LIGHTSTREAMER_ENDPOINT,
        "oauthToken": {
            "accessToken": "access-1",
            "refreshToken": "refresh-1",
            "expiresIn": "60",
            "scope": "profile",
            "tokenType": "Bearer",
        },
        "timezoneOffset": 1,
    }


@pytest.fixture
def log_in(make_response, v3_login_body):
    """
    Log a SessionManager in through a mocked ``POST /session``.

    V1/V2 managers receive the paired tokens ``cst``/``xst``; V3 managers
    receive the bearer body, optionally with another ``expires_in``.
    """
    def _log_in(manager, cst="cst-1", xst="xst-1", expires_in=None):
        if not isinstance(manager.http, MagicMock):
            manager.http = MagicMock()

        if manager.config.session_version.uses_bearer:
            body = dict(v3_login_body)
            if expires_in is not None:
                body["oauthToken"] = dict(
                    body["oauthToken"], expiresIn=str(expires_in)
                )
            response = make_response(200, body)
        else:
            response = make_response(
                200,
                {"lightstreamerEndpoint": LIGHTSTREAMER_ENDPOINT},
                headers={"CST": cst, "X-SECURITY-TOKEN": xst},
            )

        manager.http.post.return_value = response
        manager.login()
        manager.http.post.reset_mock(return_value=True)
        return manager
    return _log_in
