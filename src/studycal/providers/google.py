"""Google Calendar API v3 provider over ``httpx``."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta, tzinfo
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from studycal.config import ProviderConfig
from studycal.errors import (
    AuthError,
    CalendarError,
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
from studycal.models import (
    AttendeeInfo,
    AttendeeResponseStatus,
    CalendarInfo,
    ChannelRegistration,
    EventDraft,
    EventPage,
    EventPatch,
    OAuthTokens,
    RemoteEvent,
)
from studycal.providers.base import CalendarProvider
from studycal.scheduling import Interval

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# 403 reasons Google uses for quota exhaustion instead of a 429.
_RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}
)
# OAuth error codes meaning the refresh token is no longer usable.
_REAUTH_OAUTH_ERRORS = frozenset({"invalid_grant", "unauthorized_client"})


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or 3600
    return 3600


def _google_error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _safe_google_error_message(response: httpx.Response) -> str:
    payload = _google_error_payload(response)
    error_payload = payload.get("error")
    if isinstance(error_payload, dict):
        message = error_payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]
    if isinstance(error_payload, str) and error_payload.strip():
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(f"{error_payload}: {description}".split())[:200]
        return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _google_error_reasons(response: httpx.Response) -> set[str]:
    error_payload = _google_error_payload(response).get("error")
    if not isinstance(error_payload, dict):
        return set()
    reasons: set[str] = set()
    errors = error_payload.get("errors")
    if isinstance(errors, list):
        for entry in errors:
            if isinstance(entry, dict) and isinstance(entry.get("reason"), str):
                reasons.add(entry["reason"])
    status = error_payload.get("status")
    if status == "RESOURCE_EXHAUSTED":
        reasons.add("rateLimitExceeded")
    return reasons


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given as seconds or an HTTP date."""
    if value is None or not value.strip():
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def raise_for_google_status(response: httpx.Response, *, sync_listing: bool = False) -> None:
    """Translate a non-2xx Google response into the engine's error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return
    message = _safe_google_error_message(response)
    if status == 400:
        raise InvalidArgumentError(f"Google Calendar rejected the request: {message}")
    if status == 401:
        raise UnauthorizedError(f"Google Calendar rejected the access token: {message}")
    if status == 403:
        if _google_error_reasons(response) & _RATE_LIMIT_REASONS:
            raise RateLimitedError(
                f"Google Calendar quota exceeded: {message}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        raise PermissionDeniedError(f"Google Calendar denied access: {message}")
    if status == 410 and sync_listing:
        raise SyncTokenExpiredError(f"Google Calendar sync token expired: {message}")
    if status in (404, 410):
        raise NotFoundError(f"Google Calendar resource not found: {message}")
    if status in (409, 412):
        raise ConflictError(f"Google Calendar resource changed concurrently: {message}")
    if status == 429:
        raise RateLimitedError(
            f"Google Calendar rate limit: {message}",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        raise TransientError(f"Google Calendar server error ({status}): {message}")
    raise ProviderRequestError(status_code=status, message=message)


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_rfc3339_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return _parse_google_datetime(value)
    except ValueError:
        return None


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_event_boundary(
    payload: Any,
    *,
    fallback_timezone: str,
) -> tuple[datetime | None, str]:
    if not isinstance(payload, dict):
        return None, fallback_timezone
    timezone = _normalize_optional_text(payload.get("timeZone")) or fallback_timezone

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), timezone

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        return (
            datetime(
                parsed_date.year,
                parsed_date.month,
                parsed_date.day,
                tzinfo=_coerce_zoneinfo(timezone),
            ),
            timezone,
        )
    return None, timezone


def _extract_google_attendees(payload: Any) -> list[AttendeeInfo]:
    if not isinstance(payload, list):
        return []
    attendees: list[AttendeeInfo] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        response_status = AttendeeResponseStatus.needs_action
        raw_status = entry.get("responseStatus")
        if isinstance(raw_status, str):
            try:
                response_status = AttendeeResponseStatus(raw_status.strip())
            except ValueError:
                pass
        attendees.append(
            AttendeeInfo(
                email=email,
                display_name=_normalize_optional_text(entry.get("displayName")),
                response_status=response_status,
                optional=entry.get("optional") is True,
            )
        )
    return attendees


def _extract_google_recurrence_rule(payload: Any) -> str | None:
    if not isinstance(payload, list):
        return None
    for entry in payload:
        normalized = _normalize_optional_text(entry)
        if normalized is not None:
            return normalized
    return None


def google_event_to_remote_event(
    payload: dict[str, Any],
    *,
    calendar_id: str | None,
    fallback_timezone: str = "UTC",
) -> RemoteEvent:
    """Parse a Google event resource, including cancelled tombstones."""
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    status_raw = payload.get("status")
    cancelled = isinstance(status_raw, str) and status_raw.lower() == "cancelled"

    start_at, start_timezone = _parse_google_event_boundary(
        payload.get("start"), fallback_timezone=fallback_timezone
    )
    end_at, _ = _parse_google_event_boundary(
        payload.get("end"), fallback_timezone=fallback_timezone
    )
    if not cancelled and (start_at is None or end_at is None):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end values")

    return RemoteEvent(
        provider_event_id=event_id,
        calendar_id=calendar_id,
        title=_normalize_optional_text(payload.get("summary")) or "",
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        start_at=start_at,
        end_at=end_at,
        timezone=start_timezone,
        attendees=_extract_google_attendees(payload.get("attendees")),
        recurrence_rule=_extract_google_recurrence_rule(payload.get("recurrence")),
        etag=_normalize_optional_text(payload.get("etag")),
        updated_at=_parse_google_rfc3339_optional(payload.get("updated")),
        cancelled=cancelled,
    )


def _attendees_to_google(attendees: list[AttendeeInfo]) -> list[dict[str, Any]]:
    """Only writable attendee fields are sent; response status is read-only."""
    result: list[dict[str, Any]] = []
    for attendee in attendees:
        entry: dict[str, Any] = {"email": attendee.email}
        if attendee.display_name is not None:
            entry["displayName"] = attendee.display_name
        if attendee.optional:
            entry["optional"] = True
        result.append(entry)
    return result


def _recurrence_to_google(rule: str | None) -> list[str]:
    if rule is None:
        return []
    normalized = rule.strip()
    if not normalized:
        return []
    if not normalized.upper().startswith(("RRULE:", "EXRULE:", "RDATE", "EXDATE")):
        normalized = f"RRULE:{normalized}"
    return [normalized]


def _boundary_to_google(value: datetime, timezone: str | None) -> dict[str, Any]:
    boundary: dict[str, Any] = {"dateTime": _google_rfc3339(value)}
    if timezone:
        boundary["timeZone"] = timezone
    return boundary


def build_google_event_body(draft: EventDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": draft.title,
        "start": _boundary_to_google(draft.start_at, draft.timezone),
        "end": _boundary_to_google(draft.end_at, draft.timezone),
    }
    if draft.description is not None:
        body["description"] = draft.description
    if draft.location is not None:
        body["location"] = draft.location
    if draft.attendees:
        body["attendees"] = _attendees_to_google(draft.attendees)
    recurrence = _recurrence_to_google(draft.recurrence_rule)
    if recurrence:
        body["recurrence"] = recurrence
    return body


def build_google_patch_body(patch: EventPatch) -> dict[str, Any]:
    """Body for events.patch; explicitly set ``None`` values clear the field."""
    changes = patch.changes()
    body: dict[str, Any] = {}
    if "title" in changes:
        body["summary"] = changes["title"] or ""
    if "description" in changes:
        body["description"] = changes["description"]
    if "location" in changes:
        body["location"] = changes["location"]
    timezone = patch.timezone
    if patch.start_at is not None:
        body["start"] = _boundary_to_google(patch.start_at, timezone)
    if patch.end_at is not None:
        body["end"] = _boundary_to_google(patch.end_at, timezone)
    if "attendees" in changes:
        body["attendees"] = _attendees_to_google(patch.attendees or [])
    if "recurrence_rule" in changes:
        body["recurrence"] = _recurrence_to_google(patch.recurrence_rule)
    return body


class GoogleCalendarProvider(CalendarProvider):
    """Google provider: OAuth endpoints plus Calendar v3 REST calls."""

    def __init__(
        self,
        config: ProviderConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=config.request_timeout_s)

    @property
    def name(self) -> str:
        return "google"

    def _client_credentials(self) -> tuple[str, str]:
        client_id = (self._config.client_id or "").strip()
        client_secret = (self._config.client_secret or "").strip()
        if not client_id or not client_secret:
            raise AuthError("Google OAuth client_id and client_secret must be configured")
        return client_id, client_secret

    # -- OAuth ---------------------------------------------------------------

    def authorization_url(self, *, state: str, login_hint: str | None = None) -> str:
        client_id, _ = self._client_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": self._config.redirect_uri or "",
            "response_type": "code",
            "scope": " ".join(self._config.scopes),
            "access_type": "offline",
            "prompt": "consent",  # Force refresh token to be returned
            "include_granted_scopes": "true",
            "state": state,
        }
        if login_hint:
            params["login_hint"] = login_hint
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransientError(f"Google OAuth token request failed: {exc}") from exc

        if response.status_code >= 500:
            raise TransientError(
                f"Google OAuth token endpoint error ({response.status_code}): "
                f"{_safe_google_error_message(response)}"
            )
        if response.status_code < 200 or response.status_code >= 300:
            error_code = _google_error_payload(response).get("error")
            raise AuthError(
                f"Google OAuth token request failed ({response.status_code}): "
                f"{_safe_google_error_message(response)}",
                reauth_required=error_code in _REAUTH_OAUTH_ERRORS,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Google OAuth token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise AuthError("Google OAuth token endpoint returned an unexpected payload")
        return payload

    @staticmethod
    def _tokens_from_payload(payload: dict[str, Any]) -> OAuthTokens:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError("Google OAuth token response is missing a non-empty access_token")
        refresh_token = _normalize_optional_text(payload.get("refresh_token"))
        scope = payload.get("scope")
        scopes = scope.split() if isinstance(scope, str) else []
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return OAuthTokens(
            access_token=access_token.strip(),
            refresh_token=refresh_token,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            scopes=scopes,
        )

    async def exchange_code(self, *, code: str) -> OAuthTokens:
        client_id, client_secret = self._client_credentials()
        payload = await self._token_request(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": self._config.redirect_uri or "",
                "grant_type": "authorization_code",
            }
        )
        return self._tokens_from_payload(payload)

    async def refresh_access_token(self, *, refresh_token: str) -> OAuthTokens:
        client_id, client_secret = self._client_credentials()
        payload = await self._token_request(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )
        return self._tokens_from_payload(payload)

    async def revoke_token(self, *, token: str) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_REVOKE_URL,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise TransientError(f"Google OAuth revoke request failed: {exc}") from exc
        # 400 invalid_token means it is already revoked or expired.
        if response.status_code == 400:
            logger.debug("Google revoke: token already invalid")
            return
        raise_for_google_status(response)

    # -- Calendar API --------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method,
                f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}",
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise TransientError(f"Google Calendar request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"Google Calendar request failed: {exc}") from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        sync_listing: bool = False,
        **kwargs: Any,
    ) -> dict[str, Any]:
        response = await self._request(method, path, access_token=access_token, **kwargs)
        raise_for_google_status(response, sync_listing=sync_listing)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def list_calendars(self, *, access_token: str) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": 250}
            if page_token is not None:
                params["pageToken"] = page_token
            payload = await self._request_json(
                "GET", "/users/me/calendarList", access_token=access_token, params=params
            )
            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                calendar_id = _normalize_optional_text(item.get("id"))
                if calendar_id is None:
                    continue
                calendars.append(
                    CalendarInfo(
                        calendar_id=calendar_id,
                        summary=_normalize_optional_text(item.get("summary")) or "",
                        primary=item.get("primary") is True,
                        timezone=_normalize_optional_text(item.get("timeZone")),
                        access_role=_normalize_optional_text(item.get("accessRole")),
                    )
                )
            page_token = _normalize_optional_text(payload.get("nextPageToken"))
            if page_token is None:
                return calendars

    async def list_events(
        self,
        *,
        access_token: str,
        calendar_id: str,
        time_range: Interval | None = None,
        sync_token: str | None = None,
        page_token: str | None = None,
        page_size: int = 250,
    ) -> EventPage:
        if page_size < 1:
            raise InvalidArgumentError("page_size must be at least 1")
        params: dict[str, Any] = {
            "showDeleted": True,
            "singleEvents": False,
            "maxResults": min(page_size, 2500),
        }
        if sync_token is not None:
            # Google rejects time bounds combined with a sync token.
            params["syncToken"] = sync_token
        elif time_range is not None:
            params["timeMin"] = _google_rfc3339(time_range.start)
            params["timeMax"] = _google_rfc3339(time_range.end)
        if page_token is not None:
            params["pageToken"] = page_token

        payload = await self._request_json(
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            access_token=access_token,
            params=params,
            sync_listing=sync_token is not None,
        )
        fallback_timezone = _normalize_optional_text(payload.get("timeZone")) or "UTC"
        events: list[RemoteEvent] = []
        for item in payload.get("items") or []:
            if not isinstance(item, dict):
                continue
            try:
                events.append(
                    google_event_to_remote_event(
                        item, calendar_id=calendar_id, fallback_timezone=fallback_timezone
                    )
                )
            except ValueError:
                logger.warning(
                    "Skipping malformed Google event in calendar %s: id=%r",
                    calendar_id,
                    item.get("id"),
                )
        return EventPage(
            events=events,
            next_page_token=_normalize_optional_text(payload.get("nextPageToken")),
            next_sync_token=_normalize_optional_text(payload.get("nextSyncToken")),
        )

    async def get_event(
        self, *, access_token: str, calendar_id: str, event_id: str
    ) -> RemoteEvent:
        payload = await self._request_json(
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            access_token=access_token,
        )
        return google_event_to_remote_event(payload, calendar_id=calendar_id)

    async def create_event(
        self, *, access_token: str, calendar_id: str, draft: EventDraft
    ) -> RemoteEvent:
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            access_token=access_token,
            json_body=build_google_event_body(draft),
        )
        return google_event_to_remote_event(
            payload, calendar_id=calendar_id, fallback_timezone=draft.timezone
        )

    async def update_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
        etag: str | None = None,
    ) -> RemoteEvent:
        payload = await self._request_json(
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            access_token=access_token,
            json_body=build_google_patch_body(patch),
            extra_headers={"If-Match": etag} if etag else None,
        )
        return google_event_to_remote_event(payload, calendar_id=calendar_id)

    async def delete_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
        etag: str | None = None,
    ) -> None:
        response = await self._request(
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            access_token=access_token,
            extra_headers={"If-Match": etag} if etag else None,
        )
        # 404/410 means the event was already deleted; treat as success.
        if response.status_code in (404, 410):
            logger.debug("delete_event: event '%s' already gone; treating as success", event_id)
            return
        raise_for_google_status(response)

    async def free_busy(
        self,
        *,
        access_token: str,
        calendar_ids: list[str],
        time_range: Interval,
    ) -> dict[str, list[Interval]]:
        payload = await self._request_json(
            "POST",
            "/freeBusy",
            access_token=access_token,
            json_body={
                "timeMin": _google_rfc3339(time_range.start),
                "timeMax": _google_rfc3339(time_range.end),
                "items": [{"id": calendar_id} for calendar_id in calendar_ids],
            },
        )
        calendars_payload = payload.get("calendars")
        if not isinstance(calendars_payload, dict):
            raise CalendarError("Google Calendar freeBusy response missing calendars object")

        result: dict[str, list[Interval]] = {}
        for calendar_id in calendar_ids:
            entry = calendars_payload.get(calendar_id)
            if not isinstance(entry, dict):
                result[calendar_id] = []
                continue
            errors = entry.get("errors")
            if isinstance(errors, list) and errors:
                reason = errors[0].get("reason") if isinstance(errors[0], dict) else None
                if reason == "notFound":
                    raise NotFoundError(f"Calendar {calendar_id!r} not found for freeBusy")
                raise PermissionDeniedError(
                    f"freeBusy unavailable for calendar {calendar_id!r}: {reason}"
                )
            busy: list[Interval] = []
            for window in entry.get("busy") or []:
                if not isinstance(window, dict):
                    continue
                start_raw = window.get("start")
                end_raw = window.get("end")
                if not isinstance(start_raw, str) or not isinstance(end_raw, str):
                    raise CalendarError(
                        "Google Calendar freeBusy busy windows must include start/end"
                    )
                start_at = _parse_google_datetime(start_raw)
                end_at = _parse_google_datetime(end_raw)
                if end_at > start_at:
                    busy.append(Interval(start_at, end_at))
            result[calendar_id] = busy
        return result

    # -- Push notifications --------------------------------------------------

    async def watch(
        self,
        *,
        access_token: str,
        calendar_id: str,
        channel_id: str,
        callback_url: str,
        token: str | None,
        ttl: timedelta,
    ) -> ChannelRegistration:
        body: dict[str, Any] = {
            "id": channel_id,
            "type": "web_hook",
            "address": callback_url,
            "params": {"ttl": str(int(ttl.total_seconds()))},
        }
        if token:
            body["token"] = token
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events/watch",
            access_token=access_token,
            json_body=body,
        )
        resource_id = _normalize_optional_text(payload.get("resourceId"))
        if resource_id is None:
            raise CalendarError("Google Calendar watch response missing resourceId")
        expiration_raw = payload.get("expiration")
        try:
            expires_at = datetime.fromtimestamp(int(expiration_raw) / 1000, tz=UTC)
        except (TypeError, ValueError):
            expires_at = datetime.now(UTC) + ttl
        return ChannelRegistration(
            channel_id=_normalize_optional_text(payload.get("id")) or channel_id,
            resource_id=resource_id,
            expires_at=expires_at,
        )

    async def stop_channel(self, *, access_token: str, channel_id: str, resource_id: str) -> None:
        response = await self._request(
            "POST",
            "/channels/stop",
            access_token=access_token,
            json_body={"id": channel_id, "resourceId": resource_id},
        )
        if response.status_code == 404:
            logger.debug("stop_channel: channel %s already gone", channel_id)
            return
        raise_for_google_status(response)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
