"""OAuth2 token handling for the bank API.

Credentials are plain values handed around by the caller; nothing here keeps
tokens between requests. Access tokens live for about ten minutes, refresh
tokens for about a year.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from config import Settings, get_settings

logger = logging.getLogger(__name__)

EXPIRY_LEEWAY = timedelta(seconds=30)


class OAuthError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OAuthConfigError(OAuthError):
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def is_expired(
    expires_at: Optional[datetime],
    *,
    now: Optional[datetime] = None,
    leeway: timedelta = EXPIRY_LEEWAY,
) -> bool:
    """True when the token expires within ``leeway`` of ``now``.

    An unknown expiry is treated as still valid; the bank will answer 401 if
    it is not.
    """
    if expires_at is None:
        return False
    now = _as_utc(now) if now else _utc_now()
    return _as_utc(expires_at) <= now + leeway


@dataclass(frozen=True)
class BankCredentials:
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    token_type: str = "Bearer"

    @classmethod
    def from_token_response(
        cls, payload: dict[str, Any], *, now: Optional[datetime] = None
    ) -> "BankCredentials":
        try:
            access_token = str(payload["access_token"])
            expires_in = int(payload.get("expires_in") or 0)
        except (KeyError, TypeError, ValueError) as exc:
            raise OAuthError("Unexpected token response from bank") from exc
        issued = _as_utc(now) if now else _utc_now()
        return cls(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=issued + timedelta(seconds=expires_in),
            token_type=payload.get("token_type") or "Bearer",
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return is_expired(self.expires_at, now=now)

    def as_dict(self) -> dict[str, object]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at.isoformat(),
            "tokenType": self.token_type,
        }


class OAuthClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.transport = transport

    def _require_config(self, *fields: str) -> None:
        missing = [name for name in fields if not getattr(self.settings, name)]
        if missing:
            raise OAuthConfigError(
                f"Missing OAuth configuration: {', '.join(missing)}"
            )

    def authorization_url(self, state: str) -> str:
        self._require_config("client_id", "redirect_uri", "fin_inst")
        query = urlencode(
            {
                "client_id": self.settings.client_id,
                "state": state,
                "redirect_uri": self.settings.redirect_uri,
                "finInst": self.settings.fin_inst,
                "response_type": "code",
            }
        )
        return f"{self.settings.oauth_authorize_url}?{query}"

    def exchange_code(self, code: str, state: str) -> BankCredentials:
        self._require_config("client_id", "client_secret", "redirect_uri")
        return self._token_request(
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "state": state,
                "redirect_uri": self.settings.redirect_uri,
            }
        )

    def refresh(self, refresh_token: str) -> BankCredentials:
        self._require_config("client_id", "client_secret")
        return self._token_request(
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )

    def _token_request(self, form: dict[str, str]) -> BankCredentials:
        grant = form["grant_type"]
        try:
            with httpx.Client(
                timeout=self.settings.http_timeout_secs, transport=self.transport
            ) as client:
                response = client.post(self.settings.oauth_token_url, data=form)
        except httpx.TransportError as exc:
            raise OAuthError(f"Token endpoint unreachable: {exc}") from exc

        if response.is_error:
            logger.error(
                f"oauth_token_failed: grant={grant} status={response.status_code}"
            )
            raise OAuthError(
                f"Token request failed: {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthError("Token endpoint returned invalid JSON") from exc
        credentials = BankCredentials.from_token_response(payload)
        logger.info(
            f"oauth_token_ok: grant={grant} expires_at={credentials.expires_at.isoformat()}"
        )
        return credentials
