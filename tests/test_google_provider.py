"""Tests for the Google Calendar provider using httpx.MockTransport."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from studycal.config import ProviderConfig
from studycal.errors import (
    AuthError,
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    ProviderRequestError,
    RateLimitedError,
    SyncTokenExpiredError,
    TransientError,
    UnauthorizedError,
)
from studycal.models import EventDraft, EventPatch
from studycal.providers.google import (
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleCalendarProvider,
    build_google_patch_body,
    google_event_to_remote_event,
    parse_retry_after,
    raise_for_google_status,
)
from studycal.scheduling import Interval

pytestmark = pytest.mark.unit

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _provider(handler) -> GoogleCalendarProvider:
    config = ProviderConfig(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://app.example.test/oauth/callback",
    )
    return GoogleCalendarProvider(
        config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


def _event_payload(event_id: str = "evt-1", **overrides) -> dict:
    payload = {
        "id": event_id,
        "etag": '"3181"',
        "status": "confirmed",
        "summary": "Algebra review",
        "start": {"dateTime": "2026-03-02T09:00:00Z", "timeZone": "UTC"},
        "end": {"dateTime": "2026-03-02T10:00:00Z", "timeZone": "UTC"},
        "updated": "2026-03-01T12:00:00.000Z",
    }
    payload.update(overrides)
    return payload


def _error(status: int, *, reason: str | None = None, headers: dict | None = None):
    body: dict = {"error": {"code": status, "message": f"error {status}"}}
    if reason is not None:
        body["error"]["errors"] = [{"reason": reason}]
    return httpx.Response(status, json=body, headers=headers)


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------


class TestRaiseForGoogleStatus:
    @pytest.mark.parametrize(
        ("response", "error_type"),
        [
            (_error(400), InvalidArgumentError),
            (_error(401), UnauthorizedError),
            (_error(403), PermissionDeniedError),
            (_error(403, reason="rateLimitExceeded"), RateLimitedError),
            (_error(404), NotFoundError),
            (_error(410), NotFoundError),
            (_error(409), ConflictError),
            (_error(412), ConflictError),
            (_error(429), RateLimitedError),
            (_error(503), TransientError),
            (_error(418), ProviderRequestError),
        ],
    )
    def test_mapping(self, response, error_type):
        with pytest.raises(error_type):
            raise_for_google_status(response)

    def test_gone_on_sync_listing_means_expired_token(self):
        with pytest.raises(SyncTokenExpiredError):
            raise_for_google_status(_error(410), sync_listing=True)

    def test_retry_after_carried(self):
        with pytest.raises(RateLimitedError) as exc_info:
            raise_for_google_status(_error(429, headers={"Retry-After": "12"}))
        assert exc_info.value.retry_after == 12.0

    def test_success_passes(self):
        raise_for_google_status(httpx.Response(204))

    def test_parse_retry_after(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("garbage") is None
        assert parse_retry_after("-3") == 0.0
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


# ---------------------------------------------------------------------------
# Payload conversion
# ---------------------------------------------------------------------------


class TestEventConversion:
    def test_timed_event(self):
        event = google_event_to_remote_event(_event_payload(), calendar_id="primary")
        assert event.provider_event_id == "evt-1"
        assert event.title == "Algebra review"
        assert event.start_at == START
        assert event.end_at == START + timedelta(hours=1)
        assert event.etag == '"3181"'
        assert event.cancelled is False

    def test_cancelled_tombstone_without_times(self):
        event = google_event_to_remote_event(
            {"id": "evt-2", "status": "cancelled"}, calendar_id="primary"
        )
        assert event.cancelled is True
        assert event.start_at is None

    def test_missing_times_on_live_event_rejected(self):
        with pytest.raises(ValueError, match="missing start/end"):
            google_event_to_remote_event({"id": "evt-3"}, calendar_id="primary")

    def test_all_day_event_uses_calendar_timezone(self):
        event = google_event_to_remote_event(
            _event_payload(start={"date": "2026-03-02"}, end={"date": "2026-03-03"}),
            calendar_id="primary",
            fallback_timezone="Europe/Berlin",
        )
        assert event.start_at == datetime(2026, 3, 1, 23, 0, tzinfo=UTC)

    def test_patch_body_clears_explicit_none(self):
        body = build_google_patch_body(EventPatch(title="New", description=None))
        assert body == {"summary": "New", "description": None}


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuth:
    async def test_refresh_parses_tokens(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == GOOGLE_OAUTH_TOKEN_URL
            seen.append(parse_qs(request.content.decode()))
            return httpx.Response(
                200, json={"access_token": "ya29.new", "expires_in": 3599, "scope": "a b"}
            )

        tokens = await _provider(handler).refresh_access_token(refresh_token="1//r")
        assert tokens.access_token == "ya29.new"
        assert tokens.refresh_token is None
        assert tokens.scopes == ["a", "b"]
        assert seen[0]["grant_type"] == ["refresh_token"]
        assert seen[0]["refresh_token"] == ["1//r"]

    async def test_invalid_grant_requires_reauth(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Token revoked"}
            )

        with pytest.raises(AuthError) as exc_info:
            await _provider(handler).refresh_access_token(refresh_token="1//r")
        assert exc_info.value.reauth_required is True

    async def test_token_endpoint_outage_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        with pytest.raises(TransientError):
            await _provider(handler).refresh_access_token(refresh_token="1//r")

    async def test_missing_client_credentials(self):
        provider = GoogleCalendarProvider(
            ProviderConfig(),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: None)),
        )
        with pytest.raises(AuthError, match="client_id"):
            await provider.refresh_access_token(refresh_token="1//r")

    async def test_revoke_ignores_already_invalid_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_token"})

        await _provider(handler).revoke_token(token="1//r")

    def test_authorization_url_requests_offline_access(self):
        url = _provider(lambda r: None).authorization_url(state="s1")
        assert "access_type=offline" in url
        assert "prompt=consent" in url
        assert "state=s1" in url


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestListEvents:
    async def test_full_listing_uses_time_bounds(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "items": [_event_payload(), {"id": "bad"}],
                    "nextPageToken": "page-2",
                },
            )

        page = await _provider(handler).list_events(
            access_token="tok",
            calendar_id="primary",
            time_range=Interval(START, START + timedelta(days=1)),
        )
        params = requests[0].url.params
        assert params["timeMin"] == "2026-03-02T09:00:00Z"
        assert params["showDeleted"] == "true"
        assert "syncToken" not in params
        assert requests[0].headers["Authorization"] == "Bearer tok"
        # The malformed item is skipped.
        assert [e.provider_event_id for e in page.events] == ["evt-1"]
        assert page.next_page_token == "page-2"
        assert page.next_sync_token is None

    async def test_incremental_listing_omits_time_bounds(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "items": [{"id": "evt-9", "status": "cancelled"}],
                    "nextSyncToken": "sync-2",
                },
            )

        page = await _provider(handler).list_events(
            access_token="tok",
            calendar_id="primary",
            time_range=Interval(START, START + timedelta(days=1)),
            sync_token="sync-1",
        )
        params = requests[0].url.params
        assert params["syncToken"] == "sync-1"
        assert "timeMin" not in params
        assert page.events[0].cancelled is True
        assert page.next_sync_token == "sync-2"

    async def test_expired_sync_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return _error(410)

        with pytest.raises(SyncTokenExpiredError):
            await _provider(handler).list_events(
                access_token="tok", calendar_id="primary", sync_token="old"
            )


class TestMutations:
    async def test_create_sends_body(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=_event_payload("created"))

        draft = EventDraft(
            title="Algebra review", start_at=START, end_at=START + timedelta(hours=1)
        )
        event = await _provider(handler).create_event(
            access_token="tok", calendar_id="primary", draft=draft
        )
        assert event.provider_event_id == "created"
        assert bodies[0]["summary"] == "Algebra review"
        assert bodies[0]["start"]["dateTime"] == "2026-03-02T09:00:00Z"

    async def test_update_sends_if_match(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return _error(412)

        with pytest.raises(ConflictError):
            await _provider(handler).update_event(
                access_token="tok",
                calendar_id="primary",
                event_id="evt-1",
                patch=EventPatch(title="x"),
                etag='"3181"',
            )
        assert requests[0].method == "PATCH"
        assert requests[0].headers["If-Match"] == '"3181"'

    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_of_missing_event_succeeds(self, status):
        def handler(request: httpx.Request) -> httpx.Response:
            return _error(status)

        await _provider(handler).delete_event(
            access_token="tok", calendar_id="primary", event_id="gone"
        )


class TestFreeBusyAndWatch:
    async def test_free_busy(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "calendars": {
                        "primary": {
                            "busy": [
                                {"start": "2026-03-02T09:00:00Z", "end": "2026-03-02T10:00:00Z"}
                            ]
                        }
                    }
                },
            )

        busy = await _provider(handler).free_busy(
            access_token="tok",
            calendar_ids=["primary", "other"],
            time_range=Interval(START, START + timedelta(days=1)),
        )
        assert busy["primary"] == [Interval(START, START + timedelta(hours=1))]
        assert busy["other"] == []

    async def test_free_busy_unknown_calendar(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"calendars": {"x": {"errors": [{"reason": "notFound"}]}}}
            )

        with pytest.raises(NotFoundError):
            await _provider(handler).free_busy(
                access_token="tok",
                calendar_ids=["x"],
                time_range=Interval(START, START + timedelta(days=1)),
            )

    async def test_watch_parses_expiration(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"id": "chan-1", "resourceId": "res-1", "expiration": "1772442000000"},
            )

        registration = await _provider(handler).watch(
            access_token="tok",
            calendar_id="primary",
            channel_id="chan-1",
            callback_url="https://hooks.example.test/webhooks/calendar",
            token="secret",
            ttl=timedelta(days=7),
        )
        assert registration.resource_id == "res-1"
        assert registration.expires_at == datetime.fromtimestamp(1772442000, tz=UTC)
        assert bodies[0]["type"] == "web_hook"
        assert bodies[0]["token"] == "secret"
        assert bodies[0]["params"] == {"ttl": str(7 * 24 * 3600)}

    async def test_stop_channel_ignores_unknown(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return _error(404)

        await _provider(handler).stop_channel(
            access_token="tok", channel_id="chan-1", resource_id="res-1"
        )
