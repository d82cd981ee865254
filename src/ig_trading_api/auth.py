from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple, Union
from threading import Lock
from requests.structures import CaseInsensitiveDict
import requests
import logging
import time
import re

from .config import ProtocolVersion, SessionConfig
from .exceptions import (
    AuthError,
    ConfigError,
    LoginRejected,
    MissingCredentialFields,
    MissingCredentialHeaders,
    RefreshRejected,
    RefreshUnsupported,
    TransportError,
)


logger = logging.getLogger("ig_trading_api.auth")

JSON_CONTENT_TYPE = "application/json; charset=UTF-8"

IDENTIFIER_REGEX = re.compile(r"^[A-Za-z0-9\-_]{1,30}$")
PASSWORD_REGEX = re.compile(r"^.{1,350}$")


def build_common_headers(api_key: str) -> Dict[str, str]:
    """Headers sent with every REST request, authenticated or not."""
    return {
        "Accept": JSON_CONTENT_TYPE,
        "Content-Type": JSON_CONTENT_TYPE,
        "X-IG-API-KEY": api_key,
    }


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def _require(**values):
    empty = [name for name, value in values.items() if not value]
    if empty:
        raise ValueError("Empty credential fields: " + ", ".join(empty))


@dataclass(frozen=True)
class Unauthenticated:
    """Initial state, before the first successful login."""

    def headers(self) -> Dict[str, str]:
        return {}


@dataclass(frozen=True)
class PairedTokens:
    """CST / X-SECURITY-TOKEN pair returned by a V1 or V2 login."""

    session_token: str = field(repr=False)
    security_token: str = field(repr=False)

    def __post_init__(self):
        _require(
            session_token=self.session_token,
            security_token=self.security_token,
        )

    def headers(self) -> Dict[str, str]:
        return {
            "CST": self.session_token,
            "X-SECURITY-TOKEN": self.security_token,
        }


@dataclass(frozen=True)
class BearerSession:
    """
    OAuth access/refresh pair returned by a V3 login.

    ``expires_at`` is an epoch timestamp computed from ``expiresIn`` when the
    server sent one; the refresh token is consumed and replaced on refresh.
    """

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    account_id: str
    expires_at: Optional[float] = None

    def __post_init__(self):
        _require(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            account_id=self.account_id,
        )

    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "IG-ACCOUNT-ID": self.account_id,
        }

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        # Refresh slightly early, the expiry is only an estimate.
        return now >= self.expires_at - 30


Credential = Union[Unauthenticated, PairedTokens, BearerSession]

UNAUTHENTICATED = Unauthenticated()


class CredentialStore:
    """
    Holds the current credential and the declared protocol version.

    Readers always get a complete credential value: writes swap the whole
    object under a lock and never mutate it in place. Only SessionManager
    writes to the store.
    """

    def __init__(self, version: ProtocolVersion) -> None:
        self._version = ProtocolVersion.parse(version)
        self._credential: Credential = UNAUTHENTICATED
        self._lock = Lock()

    @property
    def version(self) -> ProtocolVersion:
        return self._version

    @property
    def credential(self) -> Credential:
        with self._lock:
            return self._credential

    @property
    def is_authenticated(self) -> bool:
        return not isinstance(self.credential, Unauthenticated)

    def headers(self) -> Dict[str, str]:
        """Transport headers for the current credential."""
        return self.credential.headers()

    def _swap(self, credential: Credential) -> Credential:
        with self._lock:
            previous = self._credential
            self._credential = credential
            return previous


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OauthToken:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_in: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "OauthToken":
        """Accepts both the camelCase login shape and snake_case refresh."""
        def pick(camel, snake):
            value = data.get(camel)
            return data.get(snake) if value is None else value

        access = pick("accessToken", "access_token")
        refresh = pick("refreshToken", "refresh_token")

        missing = []
        if not access:
            missing.append("accessToken")
        if not refresh:
            missing.append("refreshToken")
        if missing:
            raise MissingCredentialFields(missing)

        expires_in = pick("expiresIn", "expires_in")
        return cls(
            access_token=access,
            refresh_token=refresh,
            expires_in=None if expires_in is None else str(expires_in),
            scope=pick("scope", "scope"),
            token_type=pick("tokenType", "token_type"),
        )

    def expires_at(self, obtained_at: float) -> Optional[float]:
        try:
            return obtained_at + int(self.expires_in)
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class AuthenticationResponseV3:
    account_id: str
    client_id: str
    lightstreamer_endpoint: str
    oauth_token: OauthToken
    timezone_offset: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "AuthenticationResponseV3":
        if not isinstance(data, dict):
            raise MissingCredentialFields(["oauthToken"])

        missing = [
            key
            for key in ("accountId", "clientId", "lightstreamerEndpoint")
            if not data.get(key)
        ]
        if not isinstance(data.get("oauthToken"), dict):
            missing.append("oauthToken")
        if missing:
            raise MissingCredentialFields(missing)

        return cls(
            account_id=data["accountId"],
            client_id=data["clientId"],
            lightstreamer_endpoint=data["lightstreamerEndpoint"],
            oauth_token=OauthToken.from_dict(data["oauthToken"]),
            timezone_offset=data.get("timezoneOffset"),
        )


class SessionManager:
    """
    Performs the login handshake and owns the authoritative credential.

    The protocol version comes from the configuration and is fixed for the
    lifetime of the manager. V1 and V2 log in with the paired-token
    handshake, V3 with the OAuth one. A failed login or refresh never
    touches the stored credential.

    Parameters
    ----------
    config : SessionConfig
        Environment, credentials and declared session version.
    http : requests.Session, optional
        HTTP transport used for the handshake. A new session is created
        when omitted.
    timeout : float, default=30
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        http: Optional[requests.Session] = None,
        timeout: float = 30,
    ) -> None:
        self.config = config
        self.http = http if http is not None else requests.Session()
        self.timeout = timeout
        self.store = CredentialStore(config.session_version)
        self.lightstreamer_endpoint: Optional[str] = None

        self._refresh_lock = Lock()
        self._strategies = {
            ProtocolVersion.V1: self._login_paired,
            ProtocolVersion.V2: self._login_paired,
            ProtocolVersion.V3: self._login_bearer,
        }

    @property
    def version(self) -> ProtocolVersion:
        return self.store.version

    @property
    def base_url(self) -> str:
        return self.config.base_url

    @property
    def credential(self) -> Credential:
        return self.store.credential

    def login(self) -> Dict:
        """
        Log in with the configured protocol version.

        Returns
        -------
        dict
            Raw JSON body of the login response.

        Raises
        ------
        LoginRejected
            The session endpoint answered with a non-200 status.
        MissingCredentialHeaders
            V1/V2 response without both CST and X-SECURITY-TOKEN.
        MissingCredentialFields
            V3 response without a usable OAuth token.
        TransportError
            The request could not be sent.
        """
        logger.info(f"Logging in with session version: {int(self.version)}")
        return self._strategies[self.version]()

    def _login_request(self, version: str) -> requests.Response:
        body = {
            "identifier": self.config.username,
            "password": self.config.password,
        }
        if not IDENTIFIER_REGEX.match(body["identifier"]):
            raise ConfigError("Invalid login identifier")
        if not PASSWORD_REGEX.match(body["password"]):
            raise ConfigError("Invalid login password")

        headers = build_common_headers(self.config.api_key)
        headers["VERSION"] = version

        response = self._post(
            f"{self.base_url}/session",
            json=body,
            headers=headers,
        )
        if response.status_code != 200:
            raise LoginRejected(
                response.status_code, _json_or_none(response)
            )
        return response

    def _login_paired(self) -> Dict:
        response = self._login_request("2")

        headers = CaseInsensitiveDict(response.headers)
        session_token = headers.get("CST")
        security_token = headers.get("X-SECURITY-TOKEN")

        missing = [
            name
            for name, value in (
                ("CST", session_token),
                ("X-SECURITY-TOKEN", security_token),
            )
            if not value
        ]
        if missing:
            logger.error(
                "Login response without credential headers: "
                + ", ".join(missing)
            )
            raise MissingCredentialHeaders(missing)

        payload = _json_or_none(response) or {}
        self.store._swap(PairedTokens(session_token, security_token))
        self.lightstreamer_endpoint = payload.get("lightstreamerEndpoint")

        logger.info("Logged in with paired session tokens.")
        return payload

    def _login_bearer(self) -> Dict:
        obtained_at = time.time()
        response = self._login_request("3")

        payload = _json_or_none(response)
        login = AuthenticationResponseV3.from_dict(payload)

        self.store._swap(
            BearerSession(
                access_token=login.oauth_token.access_token,
                refresh_token=login.oauth_token.refresh_token,
                account_id=self.config.account_number,
                expires_at=login.oauth_token.expires_at(obtained_at),
            )
        )
        self.lightstreamer_endpoint = login.lightstreamer_endpoint

        logger.info(
            f"Logged in with bearer session for account "
            f"{self.config.account_number}."
        )
        return payload

    def refresh(self) -> Dict:
        """
        Exchange the current refresh token for a new access/refresh pair.

        Only the tokens are replaced; the account id is kept. On any failure
        the previous credential stays in place.

        Raises
        ------
        RefreshUnsupported
            The session uses paired tokens (V1/V2).
        AuthError
            No bearer session is established yet.
        RefreshRejected
            The refresh endpoint answered with a non-200 status.
        TransportError
            The request could not be sent.
        """
        if not self.version.uses_bearer:
            raise RefreshUnsupported(self.version)

        with self._refresh_lock:
            current = self.store.credential
            if not isinstance(current, BearerSession):
                raise AuthError("No bearer session to refresh, log in first")

            obtained_at = time.time()
            headers = build_common_headers(self.config.api_key)
            headers["VERSION"] = "1"

            response = self._post(
                f"{self.base_url}/session/refresh-token",
                json={"refresh_token": current.refresh_token},
                headers=headers,
            )
            if response.status_code != 200:
                logger.warning(
                    f"Token refresh rejected ({response.status_code}), "
                    "keeping the current session."
                )
                raise RefreshRejected(
                    response.status_code, _json_or_none(response)
                )

            payload = _json_or_none(response) or {}
            token = OauthToken.from_dict(payload)

            self.store._swap(
                replace(
                    current,
                    access_token=token.access_token,
                    refresh_token=token.refresh_token,
                    expires_at=token.expires_at(obtained_at),
                )
            )

        logger.info("Bearer session refreshed.")
        return payload

    def get_credential(self) -> Credential:
        """
        Return the current credential, refreshing an expired bearer session
        first.
        """
        current = self.store.credential
        if isinstance(current, BearerSession) and current.is_expired():
            self.refresh()
            current = self.store.credential
        return current

    def reauthenticate(self) -> None:
        """Recover from an AuthFailure: refresh for V3, log in otherwise."""
        if self.version.uses_bearer and isinstance(
            self.store.credential, BearerSession
        ):
            try:
                self.refresh()
                return
            except RefreshRejected:
                logger.warning("Refresh rejected, logging in again.")
        self.login()

    def invalidate(self) -> None:
        """Forget the current credential, e.g. after logging out."""
        self.store._swap(UNAUTHENTICATED)
        self.lightstreamer_endpoint = None

    def _post(self, url, **kwargs) -> requests.Response:
        try:
            return self.http.post(url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"Session request to {url} failed: {e}")
            raise TransportError(f"Request to {url} failed: {e}") from e


def streaming_identity(
    credential: Credential,
    config: SessionConfig,
) -> Tuple[str, str]:
    """
    Derive the user and password presented to the streaming server.

    Paired tokens are sent as ``CST-{token}|XST-{token}`` for the active
    account number; a bearer session as its access token for its account.
    """
    if isinstance(credential, PairedTokens):
        return (
            config.account_number,
            f"CST-{credential.session_token}|XST-{credential.security_token}",
        )
    if isinstance(credential, BearerSession):
        return (
            credential.account_id,
            f"Bearer {credential.access_token}",
        )
    raise AuthError("Client not authenticated, log in first")


def _json_or_none(response) -> Optional[Dict]:
    try:
        return response.json()
    except ValueError:
        return None
