"""Calendar integration lifecycle and event mirroring.

Each sync replaces the whole stored event set of one integration with what
the provider currently reports for the next ``sync_window_days``.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from voiceflow.calendar_providers import (
    CalendarProvider,
    CalendarProviderError,
    IntegrationNotFoundError,
    OAuthExchangeError,
    SyncError,
    TokenExpiredError,
    resolve_provider,
)
from voiceflow.config import PROVIDERS
from voiceflow.database import VoiceFlowDB
from voiceflow.models import CalendarEvent, CalendarIntegration

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"


class CalendarSyncManager:
    def __init__(self, db: VoiceFlowDB, providers: dict[str, CalendarProvider],
                 sync_window_days: int = 30):
        self.db = db
        self.providers = providers
        self.sync_window_days = sync_window_days
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def connect(self, provider: str) -> str:
        """Start an OAuth handshake and return the URL the user must open."""
        url = resolve_provider(self.providers, provider).authorization_url()
        logger.info(f"Generated {provider} authorization URL")
        return url

    async def handle_callback(self, user_id: int, provider: str,
                              code: str) -> tuple[CalendarIntegration, int]:
        """Complete the OAuth round trip, persist tokens and run the first sync.

        Args:
            user_id: Owner of the integration.
            provider: Provider name, e.g. ``"google"``.
            code: Authorization code from the redirect.

        Returns:
            ``(integration, events_stored)``.

        Raises:
            OAuthExchangeError: Code exchange failed; nothing was written.
            SyncError: Tokens were stored but the first sync failed.
        """
        impl = resolve_provider(self.providers, provider)
        tokens = await impl.exchange_code(code)
        if not tokens.access_token:
            raise OAuthExchangeError("No access token returned", reason="invalid_token")

        existing = self.db.find_integration(user_id, provider)
        if existing:
            integration = self.db.update_integration(
                existing.id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or existing.refresh_token,
                token_expiry=tokens.expires_at,
                enabled=True,
            )
            logger.info(f"Updated {provider} integration {integration.id} for user {user_id}")
        else:
            integration = self.db.create_integration(
                user_id, provider, tokens.access_token,
                refresh_token=tokens.refresh_token,
                token_expiry=tokens.expires_at,
                calendar_id=DEFAULT_CALENDAR_ID,
                enabled=True,
            )
            logger.info(f"Created {provider} integration {integration.id} for user {user_id}")

        try:
            count = await self.sync(integration)
        except CalendarProviderError as e:
            raise SyncError(f"Initial {provider} sync failed: {e}", integration=integration) from e
        return self.db.get_integration(integration.id), count

    async def sync(self, integration: CalendarIntegration) -> int:
        """Mirror the provider's upcoming events into the local store.

        Syncs of the same integration are serialized. A 401 with a stored
        refresh token triggers one refresh and exactly one retried fetch.

        Returns:
            Number of events stored.
        """
        async with self._locks[integration.id]:
            # reload: a concurrent sync may have refreshed the token or a
            # disconnect may have removed the row
            current = self.db.get_integration(integration.id)
            if current is None:
                logger.error(f"Sync of integration {integration.id} skipped: it no longer exists")
                raise IntegrationNotFoundError("Calendar integration not found")
            impl = resolve_provider(self.providers, current.provider)
            time_min = datetime.now(timezone.utc)
            time_max = time_min + timedelta(days=self.sync_window_days)

            try:
                try:
                    items = await impl.fetch_events(
                        current.access_token, current.calendar_id, time_min, time_max)
                except TokenExpiredError:
                    if not current.refresh_token:
                        raise
                    logger.info(f"Access token expired for integration {current.id}, refreshing")
                    tokens = await impl.refresh(current.refresh_token)
                    current = self.db.update_integration(
                        current.id,
                        access_token=tokens.access_token,
                        token_expiry=tokens.expires_at,
                        refresh_token=tokens.refresh_token or current.refresh_token,
                    )
                    items = await impl.fetch_events(
                        current.access_token, current.calendar_id, time_min, time_max)
                try:
                    events = impl.convert_events(items)
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    raise CalendarProviderError(f"Malformed event data: {e!r}") from e
            except CalendarProviderError as e:
                logger.error(f"Sync of {current.provider} integration {current.id} failed: {e}")
                raise

            count = self.db.replace_events(current, events)
            logger.info(f"Synced {count} events for {current.provider} integration {current.id}")
            return count

    async def sync_provider(self, user_id: int, provider: str) -> int:
        resolve_provider(self.providers, provider)
        integration = self.db.find_integration(user_id, provider)
        if integration is None:
            raise IntegrationNotFoundError(f"No {provider} calendar integration found")
        return await self.sync(integration)

    def integration_status(self, user_id: int) -> dict[str, bool]:
        status = {p: False for p in PROVIDERS}
        for integration in self.db.get_integrations(user_id):
            if integration.provider in status and integration.enabled:
                status[integration.provider] = True
        return status

    async def disconnect(self, integration_id: int) -> bool:
        """Remove an integration and its events once any in-flight sync is done."""
        async with self._locks[integration_id]:
            removed = self.db.delete_integration(integration_id)
        self._locks.pop(integration_id, None)
        if removed:
            logger.info(f"Disconnected calendar integration {integration_id}")
        return removed

    def list_integrations(self, user_id: int) -> list[dict]:
        return [i.to_public_dict() for i in self.db.get_integrations(user_id)]

    def list_events(self, user_id: int) -> list[CalendarEvent]:
        return self.db.get_events(user_id)
