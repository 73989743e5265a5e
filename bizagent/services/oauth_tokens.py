from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import hashlib
import hmac
import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from ..config import OAuthSettings, get_settings
from ..errors import ProviderSyncError, ValidationError
from ..models import CalendarProvider

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # nosec B105 - public OAuth endpoint
MICROSOFT_LOGIN_BASE = "https://login.microsoftonline.com"

OAUTH_PROVIDERS = {CalendarProvider.GOOGLE, CalendarProvider.MICROSOFT}


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]


def encode_state(business_id: str, provider: str, secret: str) -> str:
    """Sign ``business_id:provider`` so the callback can trust the tenant."""
    payload = f"{business_id}:{provider}"
    sig = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()[:32]
    raw = f"{payload}:{sig}".encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_state(state: str, provider: str, secret: str) -> str:
    """Return the business id carried by a signed state value."""
    padded = state + "=" * (-len(state) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
        business_id, state_provider, sig = raw.rsplit(":", 2)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError("Malformed OAuth state") from exc
    expected = hmac.new(
        secret.encode(), f"{business_id}:{state_provider}".encode(), hashlib.sha256
    ).hexdigest()[:32]
    if not hmac.compare_digest(sig, expected) or state_provider != provider:
        raise ValidationError("OAuth state signature mismatch")
    return business_id


class OAuthCredentialProvider:
    """Builds consent URLs and trades authorization codes for tokens.

    Refreshing tokens is left to the provider client libraries; this class
    only handles the initial exchange.
    """

    def __init__(
        self,
        settings: OAuthSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 8.0,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._timeout = timeout

    @property
    def settings(self) -> OAuthSettings:
        return self._settings or get_settings().oauth

    def redirect_uri(self, provider: CalendarProvider) -> str:
        return f"{self.settings.redirect_base}/{provider.value}/callback"

    def _microsoft_base(self) -> str:
        return f"{MICROSOFT_LOGIN_BASE}/{self.settings.microsoft_tenant}/oauth2/v2.0"

    def authorization_url(self, provider: CalendarProvider, business_id: str) -> str:
        oauth = self.settings
        state = encode_state(business_id, provider.value, oauth.state_secret)
        if provider is CalendarProvider.GOOGLE:
            if not oauth.google_client_id:
                return f"https://example.com/oauth/{provider.value}?state={state}"
            query = {
                "response_type": "code",
                "client_id": oauth.google_client_id,
                "redirect_uri": self.redirect_uri(provider),
                "scope": oauth.google_scopes,
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
            return f"{GOOGLE_AUTH_URL}?{urlencode(query)}"
        if provider is CalendarProvider.MICROSOFT:
            if not oauth.microsoft_client_id:
                return f"https://example.com/oauth/{provider.value}?state={state}"
            query = {
                "response_type": "code",
                "client_id": oauth.microsoft_client_id,
                "redirect_uri": self.redirect_uri(provider),
                "scope": oauth.microsoft_scopes,
                "response_mode": "query",
                "state": state,
            }
            return f"{self._microsoft_base()}/authorize?{urlencode(query)}"
        raise ValidationError(f"{provider.value} does not use OAuth")

    def business_from_state(self, provider: CalendarProvider, state: str) -> str:
        return decode_state(state, provider.value, self.settings.state_secret)

    async def exchange_code(self, provider: CalendarProvider, code: str) -> TokenSet:
        oauth = self.settings
        if provider is CalendarProvider.GOOGLE:
            client_id, client_secret = oauth.google_client_id, oauth.google_client_secret
            token_url = GOOGLE_TOKEN_URL
        elif provider is CalendarProvider.MICROSOFT:
            client_id, client_secret = (
                oauth.microsoft_client_id,
                oauth.microsoft_client_secret,
            )
            token_url = f"{self._microsoft_base()}/token"
        else:
            raise ValidationError(f"{provider.value} does not use OAuth")
        if not client_id or not client_secret:
            raise ProviderSyncError(provider.value, "OAuth client is not configured")

        payload = {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": self.redirect_uri(provider),
            "grant_type": "authorization_code",
        }
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport
        ) as client:
            resp = await client.post(token_url, data=payload)
        if resp.status_code != 200:
            logger.warning(
                "oauth_token_exchange_failed",
                extra={"provider": provider.value, "status": resp.status_code},
            )
            raise ProviderSyncError(
                provider.value, f"token exchange failed ({resp.status_code})"
            )
        data = resp.json()
        access_token = data.get("access_token")
        if not access_token:
            raise ProviderSyncError(provider.value, "token response missing access_token")
        expires_in = int(data.get("expires_in") or 3600)
        return TokenSet(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )
