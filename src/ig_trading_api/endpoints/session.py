from dataclasses import dataclass
from typing import Dict, Optional
import logging
import re

from ..base_client import AuthenticatedTransport


logger = logging.getLogger("ig_trading_api.session")

ACCOUNT_ID_REGEX = re.compile(r"^[A-Za-z0-9\-]{1,30}$")


@dataclass(frozen=True)
class SessionDetails:
    account_id: str
    client_id: str
    currency: str
    lightstreamer_endpoint: str
    locale: str
    timezone_offset: float
    session_tokens: Optional[Dict[str, str]] = None

    @classmethod
    def from_dict(
        cls,
        data: Dict,
        headers: Optional[Dict] = None,
    ) -> "SessionDetails":
        tokens = None
        if headers:
            lowered = {k.lower(): v for k, v in headers.items()}
            if "cst" in lowered and "x-security-token" in lowered:
                tokens = {
                    "CST": lowered["cst"],
                    "X-SECURITY-TOKEN": lowered["x-security-token"],
                }
        return cls(
            account_id=data["accountId"],
            client_id=data["clientId"],
            currency=data["currency"],
            lightstreamer_endpoint=data["lightstreamerEndpoint"],
            locale=data["locale"],
            timezone_offset=float(data["timezoneOffset"]),
            session_tokens=tokens,
        )


class SessionAPI:
    """
    Session endpoints of the IG REST API.

    Login and token refresh go through the session manager; this class
    covers the calls made on an already authenticated session.

    Parameters
    ----------
    transport : AuthenticatedTransport
        Shared authenticated transport.
    """

    def __init__(self, *, transport: AuthenticatedTransport) -> None:
        self.transport = transport
        self.session_manager = transport.session_manager

    def get_session(
        self,
        *,
        fetch_session_tokens: bool = False,
    ) -> SessionDetails:
        """
        Retrieve details of the current session.

        Parameters
        ----------
        fetch_session_tokens : bool, default=False
            Ask the server to return CST / X-SECURITY-TOKEN headers, which
            is how a bearer (V3) session obtains paired tokens.

        Returns
        -------
        SessionDetails
        """
        params = None
        if fetch_session_tokens:
            params = {"fetchSessionTokens": "true"}

        headers, body = self.transport.get("session", version=1, params=params)
        return SessionDetails.from_dict(body, headers)

    def switch_account(
        self,
        *,
        account_id: str,
        default_account: Optional[bool] = None,
    ) -> Dict:
        """
        Switch the active account of the session.

        Raises
        ------
        ValueError
            If the account id is malformed.
        """
        if not account_id or not ACCOUNT_ID_REGEX.match(account_id):
            raise ValueError(f"Invalid account id: {account_id!r}")

        body: Dict = {"accountId": account_id}
        if default_account is not None:
            body["defaultAccount"] = default_account

        logger.info(f"Switching session to account {account_id}")
        _, response = self.transport.put("session", body, version=1)
        return response or {}

    def get_encryption_key(self) -> Dict:
        """
        Retrieve the key used to send the password encrypted.

        Returns
        -------
        dict
            ``encryptionKey`` (base64) and ``timeStamp`` (epoch ms).
        """
        _, body = self.transport.get("session/encryptionKey", version=1)
        return body

    def refresh_token(self) -> Dict:
        """Refresh a V3 session; see ``SessionManager.refresh``."""
        return self.session_manager.refresh()

    def logout(self) -> None:
        """Delete the current session and forget its credential."""
        self.transport.delete("session", version=1)
        self.session_manager.invalidate()
        logger.info("Logged out.")
