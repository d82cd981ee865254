from typing import Dict, Optional, Tuple
import requests
import logging

from .auth import SessionManager, build_common_headers
from .exceptions import (
    ApiError,
    AuthFailure,
    ClientError,
    ServerError,
    TransportError,
)


logger = logging.getLogger("ig_trading_api.rest")

# errorCode fragments IG sends with a 403 when the session tokens are stale.
_TOKEN_ERROR_MARKERS = ("security.token", "oauth-token", "client-token")


def classify_response(
    status: int,
    payload: Optional[Dict] = None,
) -> Optional[ApiError]:
    """
    Map a REST status code to the error callers act on.

    Parameters
    ----------
    status : int
        HTTP status code of the response.
    payload : dict, optional
        Parsed error body, attached to the returned error.

    Returns
    -------
    ApiError or None
        ``None`` for 2xx, ``AuthFailure`` for 401 (or a 403 whose
        ``errorCode`` names an invalid token), ``ClientError`` for any
        other 4xx and ``ServerError`` for 5xx.
    """
    if 200 <= status < 300:
        return None

    if status == 401:
        return AuthFailure(status, payload)

    if status == 403:
        code = str((payload or {}).get("errorCode", ""))
        if any(marker in code for marker in _TOKEN_ERROR_MARKERS):
            return AuthFailure(status, payload)

    if 400 <= status < 500:
        return ClientError(status, payload)
    if status >= 500:
        return ServerError(status, payload)

    # 1xx / 3xx are never expected from the REST API.
    return ClientError(status, payload)


class AuthenticatedTransport:
    """
    HTTP client for the IG REST API.

    Attaches the credential currently held by the session manager to every
    request and raises the error returned by ``classify_response`` for non
    2xx answers. It never retries on its own: use ``request_with_reauth``
    for the single login/refresh-and-replay recovery.

    Parameters
    ----------
    session_manager : SessionManager
        Source of the credential and of the base URL.
    http : requests.Session, optional
        Defaults to the session manager's HTTP session.
    timeout : float, default=30
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        *,
        http: Optional[requests.Session] = None,
        timeout: float = 30,
    ) -> None:
        self.session_manager = session_manager
        self.http = http if http is not None else session_manager.http
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        return self.session_manager.base_url

    def build_headers(self, version: int = 1) -> Dict[str, str]:
        """Common headers, credential headers and the endpoint version."""
        headers = build_common_headers(self.session_manager.config.api_key)
        headers.update(self.session_manager.get_credential().headers())
        headers["Version"] = str(version)
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        version: int = 1,
        params: Optional[Dict] = None,
        json: Optional[Dict] = None,
    ) -> Tuple[Dict, Optional[Dict]]:
        """
        Send one authenticated request.

        Returns
        -------
        tuple
            ``(headers, body)`` where ``body`` is the parsed JSON response,
            or ``None`` for an empty body (e.g. 204 No Content).

        Raises
        ------
        AuthFailure, ClientError, ServerError
            Non-2xx response, see ``classify_response``.
        TransportError
            The request could not be sent.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = self.build_headers(version)

        logger.debug(f"{method} {url} (version {version})")
        try:
            resp = self.http.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise TransportError(f"{method} {url} failed: {e}") from e

        body = _parse_body(resp)
        error = classify_response(
            resp.status_code, body if isinstance(body, dict) else None
        )
        if error is not None:
            logger.warning(
                f"{method} '{path}' failed with status code: "
                f"{resp.status_code}"
            )
            raise error

        return dict(resp.headers), body

    def get(self, path: str, *, version: int = 1, params=None):
        return self.request("GET", path, version=version, params=params)

    def post(self, path: str, body: Dict, *, version: int = 1):
        return self.request("POST", path, version=version, json=body)

    def put(self, path: str, body: Dict, *, version: int = 1):
        return self.request("PUT", path, version=version, json=body)

    def delete(self, path: str, *, version: int = 1):
        return self.request("DELETE", path, version=version)

    def request_with_reauth(self, method: str, path: str, **kwargs):
        """
        Like ``request`` but recovers once from an AuthFailure.

        The session manager refreshes (V3) or logs in again (V1/V2), then
        the request is replayed a single time. A second AuthFailure is
        raised to the caller so a permanently invalid credential cannot
        loop.
        """
        try:
            return self.request(method, path, **kwargs)
        except AuthFailure:
            logger.warning(
                "Unauthorized, token likely invalid. Re-authenticating."
            )
            self.session_manager.reauthenticate()
            return self.request(method, path, **kwargs)


def _parse_body(resp) -> Optional[Dict]:
    if resp.status_code == 204 or not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return None
