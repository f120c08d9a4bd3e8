"""Calendar providers: OAuth handshake and event fetching.

Only Google is implemented. Outlook and Apple are recognized names that
raise ``ProviderNotImplementedError`` so the HTTP layer can answer 501.

OAuth calls go through ``requests_oauthlib.OAuth2Session`` (blocking, run in a
worker thread); event listing goes through ``httpx.AsyncClient``.
"""

import asyncio
import logging
import os
from datetime import datetime
from urllib.parse import quote

import httpx
import requests
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from requests_oauthlib import OAuth2Session

from voiceflow.config import PROVIDERS
from voiceflow.models import ProviderEvent, TokenSet, from_iso, to_iso

logger = logging.getLogger(__name__)

# Google may grant scopes in a different order or form than requested.
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

# ── Errors ─────────────────────────────────────────────────────────────


class CalendarError(Exception):
    """Base class for calendar integration failures."""


class UnknownProviderError(CalendarError):
    def __init__(self, provider: str):
        super().__init__("Invalid calendar provider")
        self.provider = provider


class ProviderNotImplementedError(CalendarError):
    def __init__(self, provider: str, message: str = None):
        super().__init__(message or f"{provider.capitalize()} calendar integration is not yet implemented")
        self.provider = provider


class CalendarProviderError(CalendarError):
    """The provider API answered with an error or could not be reached."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class TokenExpiredError(CalendarProviderError):
    def __init__(self, message: str = "Access token expired or revoked"):
        super().__init__(message, status_code=401)


class OAuthExchangeError(CalendarError):
    """Authorization code could not be turned into usable tokens.

    ``reason`` is ``"invalid_token"`` when the provider answered without an
    access token, ``"exchange_failed"`` otherwise.
    """

    def __init__(self, message: str, reason: str = "exchange_failed"):
        super().__init__(message)
        self.reason = reason


class IntegrationNotFoundError(CalendarError):
    pass


class SyncError(CalendarError):
    """Sync after a successful OAuth callback failed; the integration was kept."""

    def __init__(self, message: str, integration=None):
        super().__init__(message)
        self.integration = integration


# ── Providers ──────────────────────────────────────────────────────────


class CalendarProvider:
    """Interface every calendar provider implements."""

    name = ""

    def authorization_url(self) -> str:
        raise NotImplementedError

    async def exchange_code(self, code: str) -> TokenSet:
        raise NotImplementedError

    async def refresh(self, refresh_token: str) -> TokenSet:
        raise NotImplementedError

    async def fetch_events(self, access_token: str, calendar_id: str | None,
                           time_min: datetime, time_max: datetime) -> list[dict]:
        raise NotImplementedError

    def convert_events(self, items: list[dict]) -> list[ProviderEvent]:
        raise NotImplementedError


class GoogleCalendarProvider(CalendarProvider):
    name = "google"

    AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    API_BASE = "https://www.googleapis.com/calendar/v3"
    SCOPES = [
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events.readonly",
    ]

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str,
                 max_results: int = 250, timeout: float = 30,
                 transport: httpx.AsyncBaseTransport = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.max_results = max_results
        self.timeout = timeout
        self._transport = transport

    def _session(self, **kwargs) -> OAuth2Session:
        return OAuth2Session(self.client_id, redirect_uri=self.redirect_uri,
                             scope=self.SCOPES, **kwargs)

    def authorization_url(self) -> str:
        if not self.client_id:
            raise CalendarProviderError("Google OAuth client is not configured (GOOGLE_CLIENT_ID)")
        url, _state = self._session().authorization_url(
            self.AUTH_URL, access_type="offline", prompt="consent")
        return url

    @staticmethod
    def _to_token_set(token: dict) -> TokenSet:
        return TokenSet(
            access_token=token.get("access_token") or "",
            refresh_token=token.get("refresh_token"),
            expires_at=token.get("expires_at"),
        )

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange an authorization code for tokens.

        Raises:
            OAuthExchangeError: If Google rejects the code or returns no access token.
        """
        def _fetch():
            return self._session().fetch_token(
                self.TOKEN_URL, code=code, client_secret=self.client_secret,
                include_client_id=True, timeout=self.timeout)

        try:
            token = await asyncio.to_thread(_fetch)
        except (OAuth2Error, requests.RequestException, ValueError) as e:
            logger.error(f"Google token exchange failed: {e}")
            raise OAuthExchangeError(f"Token exchange failed: {e}") from e

        tokens = self._to_token_set(token)
        if not tokens.access_token:
            raise OAuthExchangeError("No access token in Google response", reason="invalid_token")
        return tokens

    async def refresh(self, refresh_token: str) -> TokenSet:
        def _refresh():
            session = OAuth2Session(self.client_id, token={
                "access_token": "", "refresh_token": refresh_token, "token_type": "Bearer",
            })
            return session.refresh_token(
                self.TOKEN_URL, refresh_token=refresh_token, client_id=self.client_id,
                client_secret=self.client_secret, timeout=self.timeout)

        try:
            token = await asyncio.to_thread(_refresh)
        except (OAuth2Error, requests.RequestException, ValueError) as e:
            logger.error(f"Google token refresh failed: {e}")
            raise CalendarProviderError(f"Token refresh failed: {e}") from e

        tokens = self._to_token_set(token)
        if not tokens.access_token:
            raise CalendarProviderError("Token refresh returned no access token")
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def fetch_events(self, access_token: str, calendar_id: str | None,
                           time_min: datetime, time_max: datetime) -> list[dict]:
        """List single (expanded) events in ``[time_min, time_max]``, following pagination.

        Raises:
            TokenExpiredError: On HTTP 401.
            CalendarProviderError: On any other HTTP or transport failure.
        """
        url = f"{self.API_BASE}/calendars/{quote(calendar_id or 'primary', safe='')}/events"
        params = {
            "timeMin": to_iso(time_min),
            "timeMax": to_iso(time_max),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(self.max_results),
        }
        headers = {"Authorization": f"Bearer {access_token}"}
        items: list[dict] = []

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            while True:
                try:
                    resp = await client.get(url, params=params, headers=headers)
                except httpx.HTTPError as e:
                    raise CalendarProviderError(f"Google Calendar request failed: {e}") from e
                if resp.status_code == 401:
                    raise TokenExpiredError()
                if resp.status_code >= 400:
                    raise CalendarProviderError(
                        f"Google Calendar API error {resp.status_code}: {resp.text[:200]}",
                        status_code=resp.status_code)
                data = resp.json()
                items.extend(data.get("items") or [])
                page_token = data.get("nextPageToken")
                if not page_token:
                    break
                params["pageToken"] = page_token

        logger.info(f"Fetched {len(items)} Google Calendar events")
        return items

    @staticmethod
    def convert_events(items: list[dict]) -> list[ProviderEvent]:
        events = []
        for item in items:
            start = item.get("start") or {}
            end = item.get("end") or {}
            events.append(ProviderEvent(
                external_id=item["id"],
                title=item.get("summary") or "Untitled Event",
                description=item.get("description") or None,
                start_time=from_iso(start.get("dateTime") or start.get("date")),
                end_time=from_iso(end.get("dateTime") or end.get("date")),
                all_day=not start.get("dateTime"),
                location=item.get("location") or None,
                url=item.get("htmlLink") or None,
            ))
        return events


# ── Registry ───────────────────────────────────────────────────────────

NOT_IMPLEMENTED_MESSAGES = {
    "outlook": "Outlook calendar integration is not yet fully implemented",
    "apple": "Apple calendar integration is not yet implemented",
}


def build_providers(cfg: dict) -> dict[str, CalendarProvider]:
    """Instantiate the implemented providers from config."""
    cal = cfg.get("calendar", {})
    google = cal.get("google", {})
    return {
        "google": GoogleCalendarProvider(
            client_id=google.get("client_id", ""),
            client_secret=google.get("client_secret", ""),
            redirect_uri=google.get("redirect_uri", ""),
            max_results=cal.get("max_results", 250),
        ),
    }


def resolve_provider(providers: dict[str, CalendarProvider], name: str) -> CalendarProvider:
    """Look up a provider by name.

    Raises:
        UnknownProviderError: ``name`` is not a calendar provider at all.
        ProviderNotImplementedError: A known provider without an implementation.
    """
    if name not in PROVIDERS:
        raise UnknownProviderError(name)
    provider = providers.get(name)
    if provider is None:
        raise ProviderNotImplementedError(name, NOT_IMPLEMENTED_MESSAGES.get(name))
    return provider
