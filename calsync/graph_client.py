from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Callable
from urllib.parse import quote

import msal

from calsync.errors import AuthError, StaleTokenError, raise_for_provider_status
from calsync.models import (
    Calendar,
    Connection,
    DiscoveredCalendar,
    FetchResult,
    NormalizedEvent,
    parse_iso_datetime,
    sync_window,
    utc_now,
)
from calsync.providers import CalendarProviderAdapter, OAuthGrant, normalize_event, send_request


logger = logging.getLogger(__name__)

GRAPH_BASE = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPES = ["Calendars.Read", "User.Read"]
DELTA_SELECT = "id,subject,bodyPreview,start,end,location,isAllDay,isCancelled"


def refresh_token_from_cache(app: msal.ClientApplication) -> str | None:
    """Read the (possibly rotated) refresh token msal stored in its cache."""
    serialized = app.token_cache.serialize()
    if not serialized:
        return None
    entries = json.loads(serialized).get("RefreshToken") or {}
    for entry in entries.values():
        secret = entry.get("secret")
        if secret:
            return str(secret)
    return None


def map_graph_event(item: dict[str, Any], calendar: Calendar) -> NormalizedEvent | None:
    event_id = item.get("id")
    if not event_id:
        return None
    if "@removed" in item or item.get("isCancelled"):
        return NormalizedEvent.tombstone(event_id)

    # Requests ask for UTC, and offset-less values are read as UTC.
    start_at = parse_iso_datetime((item.get("start") or {}).get("dateTime"))
    end_at = parse_iso_datetime((item.get("end") or {}).get("dateTime")) or start_at
    return normalize_event(
        calendar,
        external_id=event_id,
        title=item.get("subject"),
        description=item.get("bodyPreview"),
        location=(item.get("location") or {}).get("displayName"),
        start_at=start_at,
        end_at=end_at,
        all_day=bool(item.get("isAllDay")),
    )


class GraphCalendarAdapter(CalendarProviderAdapter):
    def __init__(self, *args: Any, app_factory: Callable[[], msal.ClientApplication] | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._app_factory = app_factory or self._build_app

    def _build_app(self) -> msal.ClientApplication:
        microsoft = self.config.microsoft
        return msal.ConfidentialClientApplication(
            microsoft.client_id,
            client_credential=microsoft.client_secret,
            authority=microsoft.authority,
            http_client=self.session,
        )

    def read_refresh_token(self, connection: Connection) -> str | None:
        plaintext = self.decrypt_credential(connection)
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise AuthError("Stored Outlook credential is not valid JSON") from exc
        if not isinstance(data, dict):
            raise AuthError("Stored Outlook credential is malformed")
        return data.get("refresh_token") or None

    def _exchange_refresh_token(self, connection: Connection, refresh_token: str) -> str:
        app = self._app_factory()
        result = app.acquire_token_by_refresh_token(refresh_token, scopes=GRAPH_SCOPES)
        if not result or "access_token" not in result:
            detail = (result or {}).get("error_description") or (result or {}).get("error") or "unknown error"
            raise self.expire(connection, f"Outlook token refresh failed: {detail}")

        rotated = refresh_token_from_cache(app) or result.get("refresh_token") or refresh_token
        expires_in = int(result.get("expires_in") or 3600)
        self.store_credential(
            connection,
            json.dumps({"refresh_token": rotated}),
            utc_now() + timedelta(seconds=expires_in),
        )
        connection.session_access_token = str(result["access_token"])
        logger.info("Refreshed Outlook access token for connection %s", connection.id)
        return connection.session_access_token

    def refresh_auth(self, connection: Connection) -> None:
        refresh_token = self.read_refresh_token(connection)
        if not refresh_token:
            raise AuthError("No refresh token stored for Outlook connection", code=401)
        if connection.token_expires_at is not None and connection.token_expires_at > utc_now():
            return
        self._exchange_refresh_token(connection, refresh_token)

    def access_token(self, connection: Connection) -> str:
        if connection.session_access_token:
            return connection.session_access_token
        refresh_token = self.read_refresh_token(connection)
        if not refresh_token:
            raise AuthError("No refresh token stored for Outlook connection", code=401)
        return self._exchange_refresh_token(connection, refresh_token)

    def _get(self, access_token: str, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = send_request(
            self.session,
            "GET",
            url,
            params=params,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Prefer": 'outlook.timezone="UTC"',
            },
            timeout=self.timeout,
        )
        raise_for_provider_status(response.status_code, response.text, context="Microsoft Graph")
        return response.json()

    def _follow_delta(
        self,
        access_token: str,
        calendar: Calendar,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> FetchResult:
        events: list[NormalizedEvent] = []
        delta_link: str | None = None
        next_url: str | None = url
        while next_url:
            payload = self._get(access_token, next_url, params)
            # Continuation links already carry every query parameter.
            params = None
            for item in payload.get("value") or []:
                event = map_graph_event(item, calendar)
                if event is not None:
                    events.append(event)
            if payload.get("@odata.deltaLink"):
                delta_link = payload["@odata.deltaLink"]
            next_url = payload.get("@odata.nextLink")
        return FetchResult(events=events, next_sync_token=delta_link)

    def _full_delta(self, access_token: str, calendar: Calendar) -> FetchResult:
        start, end = sync_window()
        url = f"{GRAPH_BASE}/me/calendars/{quote(calendar.external_calendar_id, safe='')}/calendarView/delta"
        params = {
            "startDateTime": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "endDateTime": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "$select": DELTA_SELECT,
        }
        return self._follow_delta(access_token, calendar, url, params)

    def fetch_events(self, connection: Connection, calendar: Calendar) -> FetchResult:
        access_token = self.access_token(connection)
        if not calendar.last_sync_token:
            return self._full_delta(access_token, calendar)
        try:
            return self._follow_delta(access_token, calendar, calendar.last_sync_token)
        except StaleTokenError:
            logger.warning("Graph delta link expired for calendar %s, running full sync", calendar.id)
            return self._full_delta(access_token, calendar)

    def discover_calendars(self, access_token: str) -> list[DiscoveredCalendar]:
        calendars: list[DiscoveredCalendar] = []
        next_url: str | None = f"{GRAPH_BASE}/me/calendars"
        params: dict[str, Any] | None = {"$select": "id,name,hexColor,isDefaultCalendar"}
        while next_url:
            payload = self._get(access_token, next_url, params)
            params = None
            for item in payload.get("value") or []:
                if not item.get("id"):
                    continue
                hex_color = item.get("hexColor") or ""
                if hex_color and not hex_color.startswith("#"):
                    hex_color = f"#{hex_color}"
                calendars.append(
                    DiscoveredCalendar(
                        external_id=str(item["id"]),
                        display_name=str(item.get("name") or "Calendar"),
                        color=hex_color or None,
                        primary=bool(item.get("isDefaultCalendar")),
                    )
                )
            next_url = payload.get("@odata.nextLink")
        return calendars

    def list_calendars(self, connection: Connection) -> list[DiscoveredCalendar]:
        return self.discover_calendars(self.access_token(connection))

    def exchange_code(self, code: str) -> OAuthGrant:
        app = self._app_factory()
        result = app.acquire_token_by_authorization_code(
            code,
            scopes=GRAPH_SCOPES,
            redirect_uri=self.config.microsoft.redirect_uri,
        )
        if not result or "access_token" not in result:
            detail = (result or {}).get("error_description") or "unknown error"
            raise AuthError(f"Microsoft rejected the authorization code: {detail}", code=400)

        access_token = str(result["access_token"])
        claims = result.get("id_token_claims") or {}
        label = claims.get("preferred_username") or claims.get("email")
        if not label:
            profile = self._get(access_token, f"{GRAPH_BASE}/me")
            label = profile.get("mail") or profile.get("userPrincipalName")
        expires_in = int(result.get("expires_in") or 3600)
        return OAuthGrant(
            access_token=access_token,
            refresh_token=refresh_token_from_cache(app) or result.get("refresh_token"),
            expires_at=utc_now() + timedelta(seconds=expires_in),
            account_label=str(label or "Outlook Calendar"),
        )
