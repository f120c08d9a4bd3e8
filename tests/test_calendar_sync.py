"""Tests for CalendarSyncManager: OAuth callback, sync, refresh, status, disconnect."""

import asyncio
from datetime import timedelta

import pytest

from voiceflow.calendar_providers import (
    CalendarProviderError,
    IntegrationNotFoundError,
    OAuthExchangeError,
    ProviderNotImplementedError,
    SyncError,
    TokenExpiredError,
    UnknownProviderError,
)
from voiceflow.models import TokenSet


def event_shape(events):
    return [(e.external_id, e.title, e.start_time, e.end_time, e.all_day, e.location, e.url)
            for e in events]


class TestConnect:
    def test_connect_returns_auth_url(self, sync_manager):
        assert sync_manager.connect("google").startswith("https://")

    def test_connect_unknown(self, sync_manager):
        with pytest.raises(UnknownProviderError):
            sync_manager.connect("yahoo")

    @pytest.mark.parametrize("name", ["outlook", "apple"])
    def test_connect_not_implemented(self, sync_manager, name):
        with pytest.raises(ProviderNotImplementedError):
            sync_manager.connect(name)


class TestCallback:
    @pytest.mark.asyncio
    async def test_creates_integration_and_syncs(self, sync_manager, db):
        integration, count = await sync_manager.handle_callback(1, "google", "code")
        assert count == 2
        assert integration.provider == "google"
        assert integration.calendar_id == "primary"
        assert integration.access_token == "access-1"
        assert integration.refresh_token == "refresh-1"
        assert integration.token_expiry == 1_900_000_000.0
        assert integration.enabled is True
        assert len(db.get_events(1)) == 2

    @pytest.mark.asyncio
    async def test_reconnect_updates_first_row_and_keeps_refresh_token(
            self, sync_manager, provider, db):
        first, _ = await sync_manager.handle_callback(1, "google", "code")
        db.update_integration(first.id, enabled=False)
        provider.tokens = TokenSet("access-9", None, 5.0)

        second, _ = await sync_manager.handle_callback(1, "google", "code2")

        assert second.id == first.id
        assert len(db.get_integrations(1)) == 1
        assert second.access_token == "access-9"
        assert second.refresh_token == "refresh-1"
        assert second.enabled is True

    @pytest.mark.asyncio
    async def test_exchange_failure_writes_nothing(self, sync_manager, provider, db):
        provider.exchange_error = OAuthExchangeError("denied")
        with pytest.raises(OAuthExchangeError):
            await sync_manager.handle_callback(1, "google", "code")
        assert db.get_integrations(1) == []

    @pytest.mark.asyncio
    async def test_empty_access_token_rejected(self, sync_manager, provider, db):
        provider.tokens = TokenSet("", "refresh-1")
        with pytest.raises(OAuthExchangeError) as exc:
            await sync_manager.handle_callback(1, "google", "code")
        assert exc.value.reason == "invalid_token"
        assert db.get_integrations(1) == []

    @pytest.mark.asyncio
    async def test_sync_failure_keeps_integration(self, sync_manager, provider, db):
        provider.responses = [CalendarProviderError("boom", status_code=500)]
        with pytest.raises(SyncError) as exc:
            await sync_manager.handle_callback(1, "google", "code")
        assert exc.value.integration is not None
        assert db.get_integration(exc.value.integration.id) is not None
        assert sync_manager.integration_status(1)["google"] is True


class TestSync:
    @pytest.mark.asyncio
    async def test_sync_window(self, sync_manager, provider, db):
        integration = db.create_integration(1, "google", "tok", calendar_id="primary")
        await sync_manager.sync(integration)
        call = provider.fetch_calls[0]
        assert call["time_max"] - call["time_min"] == timedelta(days=30)
        assert call["calendar_id"] == "primary"
        assert call["access_token"] == "tok"

    @pytest.mark.asyncio
    async def test_sync_is_idempotent(self, sync_manager, db):
        integration = db.create_integration(1, "google", "tok")
        assert await sync_manager.sync(integration) == 2
        before = event_shape(db.get_events(1))
        assert await sync_manager.sync(integration) == 2
        assert event_shape(db.get_events(1)) == before

    @pytest.mark.asyncio
    async def test_sync_replaces_removed_events(self, sync_manager, provider, db, google_items):
        integration = db.create_integration(1, "google", "tok")
        await sync_manager.sync(integration)
        provider.items = google_items[:1]
        assert await sync_manager.sync(integration) == 1
        assert [e.external_id for e in db.get_events(1)] == ["evt-1"]

    @pytest.mark.asyncio
    async def test_refresh_then_single_retry(self, sync_manager, provider, db):
        integration = db.create_integration(1, "google", "stale", refresh_token="refresh-1")
        provider.responses = [TokenExpiredError()]

        count = await sync_manager.sync(integration)

        assert count == 2
        assert provider.refresh_calls == ["refresh-1"]
        assert [c["access_token"] for c in provider.fetch_calls] == ["stale", "access-2"]
        stored = db.get_integration(integration.id)
        assert stored.access_token == "access-2"
        assert stored.token_expiry == 1_900_003_600.0
        assert stored.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_second_401_is_not_retried_again(self, sync_manager, provider, db):
        integration = db.create_integration(1, "google", "stale", refresh_token="refresh-1")
        provider.responses = [TokenExpiredError(), TokenExpiredError()]
        with pytest.raises(TokenExpiredError):
            await sync_manager.sync(integration)
        assert len(provider.fetch_calls) == 2
        assert len(provider.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_401_without_refresh_token(self, sync_manager, provider, db):
        integration = db.create_integration(1, "google", "stale")
        provider.responses = [TokenExpiredError()]
        with pytest.raises(TokenExpiredError):
            await sync_manager.sync(integration)
        assert provider.refresh_calls == []

    @pytest.mark.asyncio
    async def test_provider_error_keeps_existing_events(self, sync_manager, provider, db):
        integration = db.create_integration(1, "google", "tok")
        await sync_manager.sync(integration)
        provider.responses = [CalendarProviderError("boom", status_code=503)]
        with pytest.raises(CalendarProviderError):
            await sync_manager.sync(integration)
        assert len(db.get_events(1)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_syncs_are_serialized(self, sync_manager, provider, db):
        integration = db.create_integration(1, "google", "tok")
        provider.fetch_delay = 0.01
        results = await asyncio.gather(sync_manager.sync(integration), sync_manager.sync(integration))
        assert results == [2, 2]
        assert provider.max_in_flight == 1
        assert len(db.get_events(1)) == 2


class TestSyncProvider:
    @pytest.mark.asyncio
    async def test_manual_sync(self, sync_manager, db):
        db.create_integration(1, "google", "tok")
        assert await sync_manager.sync_provider(1, "google") == 2

    @pytest.mark.asyncio
    async def test_no_integration(self, sync_manager):
        with pytest.raises(IntegrationNotFoundError, match="No google calendar integration found"):
            await sync_manager.sync_provider(1, "google")

    @pytest.mark.asyncio
    async def test_not_implemented(self, sync_manager):
        with pytest.raises(ProviderNotImplementedError):
            await sync_manager.sync_provider(1, "outlook")

    @pytest.mark.asyncio
    async def test_unknown(self, sync_manager):
        with pytest.raises(UnknownProviderError):
            await sync_manager.sync_provider(1, "yahoo")


class TestStatusAndDisconnect:
    def test_status_defaults_false(self, sync_manager):
        assert sync_manager.integration_status(1) == {"google": False, "outlook": False, "apple": False}

    @pytest.mark.asyncio
    async def test_disconnect_removes_everything(self, sync_manager, db):
        integration, _ = await sync_manager.handle_callback(1, "google", "code")
        assert sync_manager.integration_status(1)["google"] is True

        assert await sync_manager.disconnect(integration.id) is True

        assert sync_manager.integration_status(1)["google"] is False
        assert sync_manager.list_events(1) == []
        assert sync_manager.list_integrations(1) == []

    @pytest.mark.asyncio
    async def test_disconnect_unknown(self, sync_manager):
        assert await sync_manager.disconnect(123) is False

    @pytest.mark.asyncio
    async def test_list_integrations_is_sanitized(self, sync_manager):
        await sync_manager.handle_callback(1, "google", "code")
        listed = sync_manager.list_integrations(1)
        assert len(listed) == 1
        assert "access_token" not in listed[0]
        assert "refresh_token" not in listed[0]
        assert listed[0]["provider"] == "google"

    @pytest.mark.asyncio
    async def test_sync_after_disconnect_is_not_found(self, sync_manager, provider, db):
        integration, _ = await sync_manager.handle_callback(1, "google", "code")
        await sync_manager.disconnect(integration.id)
        calls_before = len(provider.fetch_calls)

        with pytest.raises(IntegrationNotFoundError):
            await sync_manager.sync(integration)

        assert len(provider.fetch_calls) == calls_before
        assert db.get_events(1) == []

    @pytest.mark.asyncio
    async def test_disconnect_waits_for_in_flight_sync(self, sync_manager, provider, db):
        integration = db.create_integration(1, "google", "tok")
        provider.fetch_delay = 0.05

        sync_task = asyncio.create_task(sync_manager.sync(integration))
        await asyncio.sleep(0.01)
        removed = await sync_manager.disconnect(integration.id)

        assert sync_task.done()
        assert await sync_task == 2
        assert removed is True
        assert db.get_events(1) == []
        assert db.get_integration(integration.id) is None


class TestMalformedProviderData:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("item", [
        {"summary": "no id", "start": {"date": "2026-10-22"}, "end": {"date": "2026-10-23"}},
        {"id": "evt-9", "start": {"dateTime": "next tuesday"}, "end": {}},
    ])
    async def test_bad_item_is_a_provider_error(self, sync_manager, provider, db, item):
        integration = db.create_integration(1, "google", "tok")
        await sync_manager.sync(integration)
        provider.items = [item]

        with pytest.raises(CalendarProviderError, match="Malformed event data"):
            await sync_manager.sync(integration)

        assert len(db.get_events(1)) == 2

    @pytest.mark.asyncio
    async def test_bad_item_on_callback_keeps_integration(self, sync_manager, provider, db):
        provider.items = [{"summary": "no id"}]
        with pytest.raises(SyncError):
            await sync_manager.handle_callback(1, "google", "code")
        assert len(db.get_integrations(1)) == 1
