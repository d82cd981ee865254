from unittest.mock import MagicMock, patch
from ig_trading_api.auth import (
    BearerSession,
    CredentialStore,
    PairedTokens,
    SessionManager,
    Unauthenticated,
    streaming_identity,
)
from ig_trading_api.config import ProtocolVersion
from ig_trading_api.exceptions import (
    AuthError,
    ConfigError,
    LoginRejected,
    MissingCredentialFields,
    MissingCredentialHeaders,
    RefreshRejected,
    RefreshUnsupported,
    TransportError,
)
import threading
import requests
import pytest


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def v2_manager(make_config, http):
    return SessionManager(make_config(session_version=2), http=http)


@pytest.fixture
def v3_manager(make_config, http):
    return SessionManager(make_config(session_version=3), http=http)


@pytest.fixture
def logged_in_v3(v3_manager, http, make_response, v3_login_body):
    http.post.return_value = make_response(200, v3_login_body)
    v3_manager.login()
    http.post.reset_mock()
    return v3_manager


def test_v2_login_stores_paired_tokens(v2_manager, http, make_response):
    http.post.return_value = make_response(
        200,
        {"lightstreamerEndpoint": "https://demo-apd.marketdatasystems.com"},
        headers={"CST": "cst-token", "X-SECURITY-TOKEN": "xst-token"},
    )

    payload = v2_manager.login()

    assert payload["lightstreamerEndpoint"].startswith("https://")
    assert v2_manager.credential == PairedTokens("cst-token", "xst-token")
    assert (
        v2_manager.lightstreamer_endpoint
        == "https://demo-apd.marketdatasystems.com"
    )

    url = http.post.call_args.args[0]
    kwargs = http.post.call_args.kwargs
    assert url == "https://demo-api.ig.com/gateway/deal/session"
    assert kwargs["headers"]["VERSION"] == "2"
    assert kwargs["headers"]["X-IG-API-KEY"] == "test_api_key"
    assert kwargs["json"] == {
        "identifier": "test_username",
        "password": "test_password",
    }


def test_v1_uses_paired_token_handshake(make_config, http, make_response):
    manager = SessionManager(make_config(session_version=1), http=http)
    http.post.return_value = make_response(
        200, {}, headers={"cst": "a", "x-security-token": "b"}
    )

    manager.login()

    assert http.post.call_args.kwargs["headers"]["VERSION"] == "2"
    assert isinstance(manager.credential, PairedTokens)


@pytest.mark.parametrize(
    "headers, missing",
    [
        ({"CST": "cst-token"}, ["X-SECURITY-TOKEN"]),
        ({"X-SECURITY-TOKEN": "xst-token"}, ["CST"]),
        ({}, ["CST", "X-SECURITY-TOKEN"]),
    ],
)
def test_v2_login_missing_headers_fails(
    v2_manager, http, make_response, headers, missing
):
    http.post.return_value = make_response(200, {}, headers=headers)

    with pytest.raises(MissingCredentialHeaders) as exc:
        v2_manager.login()

    assert exc.value.missing == missing
    assert isinstance(v2_manager.credential, Unauthenticated)
    assert v2_manager.lightstreamer_endpoint is None


def test_login_rejected_keeps_store(v2_manager, http, make_response):
    http.post.return_value = make_response(
        401, {"errorCode": "error.security.invalid-details"}
    )

    with pytest.raises(LoginRejected) as exc:
        v2_manager.login()

    assert exc.value.status == 401
    assert exc.value.payload["errorCode"] == "error.security.invalid-details"
    assert isinstance(v2_manager.credential, Unauthenticated)


def test_login_transport_error(v2_manager, http):
    http.post.side_effect = requests.exceptions.ConnectionError("boom")

    with pytest.raises(TransportError):
        v2_manager.login()
    assert isinstance(v2_manager.credential, Unauthenticated)


def test_login_validates_identifier_before_sending(make_config, http):
    manager = SessionManager(
        make_config(username="not a valid user!"), http=http
    )

    with pytest.raises(ConfigError):
        manager.login()
    http.post.assert_not_called()


def test_v3_login_stores_bearer_session(
    v3_manager, http, make_response, v3_login_body
):
    http.post.return_value = make_response(200, v3_login_body)

    payload = v3_manager.login()

    assert payload == v3_login_body
    credential = v3_manager.credential
    assert isinstance(credential, BearerSession)
    assert credential.access_token == "access-1"
    assert credential.refresh_token == "refresh-1"
    assert credential.account_id == "ABC123"
    assert credential.expires_at is not None
    assert v3_manager.lightstreamer_endpoint == v3_login_body[
        "lightstreamerEndpoint"
    ]
    assert http.post.call_args.kwargs["headers"]["VERSION"] == "3"


def test_v3_account_id_follows_environment(
    make_config, http, make_response, v3_login_body
):
    manager = SessionManager(
        make_config(session_version=3, execution_environment="LIVE"),
        http=http,
    )
    http.post.return_value = make_response(200, v3_login_body)

    manager.login()

    assert manager.credential.account_id == "XYZ789"
    assert http.post.call_args.args[0].startswith("https://api.ig.com")


def test_v3_login_missing_refresh_token(
    v3_manager, http, make_response, v3_login_body
):
    del v3_login_body["oauthToken"]["refreshToken"]
    http.post.return_value = make_response(200, v3_login_body)

    with pytest.raises(MissingCredentialFields) as exc:
        v3_manager.login()

    assert exc.value.missing == ["refreshToken"]
    assert isinstance(v3_manager.credential, Unauthenticated)


def test_refresh_unsupported_for_paired_tokens(v2_manager, http):
    with pytest.raises(RefreshUnsupported):
        v2_manager.refresh()
    http.post.assert_not_called()


def test_refresh_replaces_tokens_only(logged_in_v3, http, make_response):
    http.post.return_value = make_response(
        200,
        {
            "access_token": "access-2",
            "refresh_token": "refresh-2",
            "scope": "profile",
            "token_type": "Bearer",
            "expires_in": "60",
        },
    )

    logged_in_v3.refresh()

    credential = logged_in_v3.credential
    assert credential.access_token == "access-2"
    assert credential.refresh_token == "refresh-2"
    assert credential.account_id == "ABC123"

    url = http.post.call_args.args[0]
    assert url.endswith("/session/refresh-token")
    assert http.post.call_args.kwargs["json"] == {
        "refresh_token": "refresh-1"
    }


def test_refresh_rejected_keeps_credential(
    logged_in_v3, http, make_response
):
    before = logged_in_v3.credential
    http.post.return_value = make_response(401, {"errorCode": "invalid"})

    with pytest.raises(RefreshRejected):
        logged_in_v3.refresh()

    assert logged_in_v3.credential is before


def test_refresh_transport_error_keeps_credential(logged_in_v3, http):
    before = logged_in_v3.credential
    http.post.side_effect = requests.exceptions.Timeout("slow")

    with pytest.raises(TransportError):
        logged_in_v3.refresh()

    assert logged_in_v3.credential is before


def test_refresh_malformed_body_keeps_credential(
    logged_in_v3, http, make_response
):
    before = logged_in_v3.credential
    http.post.return_value = make_response(200, {"access_token": "only"})

    with pytest.raises(MissingCredentialFields):
        logged_in_v3.refresh()

    assert logged_in_v3.credential is before


def test_refresh_before_login_fails(v3_manager):
    with pytest.raises(AuthError):
        v3_manager.refresh()


@patch.object(SessionManager, "refresh")
def test_get_credential_refreshes_expired_bearer(
    mock_refresh, v3_manager, log_in
):
    # Expiring within the safety buffer counts as expired.
    log_in(v3_manager, expires_in=0)

    v3_manager.get_credential()

    mock_refresh.assert_called_once()


@patch.object(SessionManager, "refresh")
def test_get_credential_keeps_valid_bearer(mock_refresh, v3_manager, log_in):
    log_in(v3_manager, expires_in=3600)
    valid = v3_manager.credential

    assert v3_manager.get_credential() is valid
    mock_refresh.assert_not_called()


@patch.object(SessionManager, "login")
@patch.object(SessionManager, "refresh", side_effect=RefreshRejected(401))
def test_reauthenticate_falls_back_to_login(
    mock_refresh, mock_login, logged_in_v3
):
    logged_in_v3.reauthenticate()

    mock_refresh.assert_called_once()
    mock_login.assert_called_once()


@patch.object(SessionManager, "login")
def test_reauthenticate_paired_logs_in(mock_login, v2_manager):
    v2_manager.reauthenticate()
    mock_login.assert_called_once()


@pytest.mark.parametrize(
    "factory",
    [
        lambda: PairedTokens("", "xst"),
        lambda: PairedTokens("cst", ""),
        lambda: BearerSession("", "refresh", "ABC123"),
        lambda: BearerSession("access", "refresh", ""),
    ],
)
def test_partial_credentials_are_rejected(factory):
    with pytest.raises(ValueError):
        factory()


def test_credential_headers():
    assert PairedTokens("c", "x").headers() == {
        "CST": "c",
        "X-SECURITY-TOKEN": "x",
    }
    assert BearerSession("a", "r", "ABC123").headers() == {
        "Authorization": "Bearer a",
        "IG-ACCOUNT-ID": "ABC123",
    }
    assert Unauthenticated().headers() == {}


def test_tokens_are_not_in_repr():
    assert "secret" not in repr(PairedTokens("secret", "secret"))


def test_store_readers_never_see_partial_values():
    store = CredentialStore(ProtocolVersion.V3)
    seen = []
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            seen.append(store.credential)

    t = threading.Thread(target=reader)
    t.start()
    for i in range(200):
        store._swap(BearerSession(f"a{i}", f"r{i}", "ABC123"))
    stop.set()
    t.join()

    for credential in seen:
        if isinstance(credential, BearerSession):
            assert credential.access_token[1:] == credential.refresh_token[1:]
        else:
            assert isinstance(credential, Unauthenticated)


def test_streaming_identity(make_config):
    config = make_config()

    user, password = streaming_identity(PairedTokens("c1", "x1"), config)
    assert user == "ABC123"
    assert password == "CST-c1|XST-x1"

    user, password = streaming_identity(
        BearerSession("a1", "r1", "ABC123"), config
    )
    assert user == "ABC123"
    assert password == "Bearer a1"

    with pytest.raises(AuthError):
        streaming_identity(Unauthenticated(), config)
