from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import google.auth.exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2.credentials import Credentials

from calsync.errors import AuthError, StaleTokenError, TransientProviderError, raise_for_provider_status
from calsync.models import (
    Calendar,
    Connection,
    DiscoveredCalendar,
    FetchResult,
    NormalizedEvent,
    parse_iso_datetime,
    serialize_datetime,
    sync_window,
    utc_now,
)
from calsync.providers import CalendarProviderAdapter, OAuthGrant, normalize_event, send_request


logger = logging.getLogger(__name__)

GOOGLE_API_BASE = "https://www.googleapis.com/calendar/v3"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
]
EXPIRY_BUFFER = timedelta(seconds=60)
PAGE_SIZE = 250


@dataclass
class GoogleCredential:
    access_token: str
    refresh_token: str | None = None

    @classmethod
    def from_plaintext(cls, plaintext: str) -> "GoogleCredential":
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise AuthError("Stored Google credential is not valid JSON") from exc
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthError("Stored Google credential has no access token")
        return cls(access_token=str(data["access_token"]), refresh_token=data.get("refresh_token") or None)

    def to_plaintext(self) -> str:
        return json.dumps({"access_token": self.access_token, "refresh_token": self.refresh_token})


def map_google_event(item: dict[str, Any], calendar: Calendar) -> NormalizedEvent | None:
    event_id = item.get("id")
    if not event_id:
        return None
    if item.get("status") == "cancelled":
        return NormalizedEvent.tombstone(event_id)

    start = item.get("start") or {}
    end = item.get("end") or {}
    all_day = bool(start.get("date"))
    start_at = parse_iso_datetime(start.get("dateTime") or start.get("date"))
    end_at = parse_iso_datetime(end.get("dateTime") or end.get("date")) or start_at
    return normalize_event(
        calendar,
        external_id=event_id,
        title=item.get("summary"),
        description=item.get("description"),
        location=item.get("location"),
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
    )


class GoogleCalendarAdapter(CalendarProviderAdapter):
    def read_credential(self, connection: Connection) -> GoogleCredential:
        return GoogleCredential.from_plaintext(self.decrypt_credential(connection))

    def needs_refresh(self, connection: Connection, now: datetime | None = None) -> bool:
        if connection.token_expires_at is None:
            return False
        return connection.token_expires_at < (now or utc_now()) + EXPIRY_BUFFER

    def refresh_if_needed(self, connection: Connection, credential: GoogleCredential) -> GoogleCredential:
        if not self.needs_refresh(connection) or not credential.refresh_token:
            return credential

        google_config = self.config.google
        creds = Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=google_config.token_uri,
            client_id=google_config.client_id,
            client_secret=google_config.client_secret,
            scopes=GOOGLE_SCOPES,
        )
        try:
            creds.refresh(GoogleAuthRequest(session=self.session))
        except google.auth.exceptions.RefreshError as exc:
            raise self.expire(connection, f"Google token refresh failed: {exc}") from exc
        except google.auth.exceptions.TransportError as exc:
            raise TransientProviderError(f"Google token refresh unreachable: {exc}") from exc

        refreshed = GoogleCredential(
            access_token=str(creds.token),
            refresh_token=creds.refresh_token or credential.refresh_token,
        )
        # google-auth reports expiry as a naive UTC datetime.
        expires_at = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
        self.store_credential(connection, refreshed.to_plaintext(), expires_at)
        logger.info("Refreshed Google access token for connection %s", connection.id)
        return refreshed

    def refresh_auth(self, connection: Connection) -> None:
        self.refresh_if_needed(connection, self.read_credential(connection))

    def _get(self, access_token: str, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = send_request(
            self.session,
            "GET",
            url,
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self.timeout,
        )
        raise_for_provider_status(response.status_code, response.text, context="Google Calendar")
        return response.json()

    def _list_events(self, access_token: str, calendar: Calendar, sync_token: str | None) -> FetchResult:
        url = f"{GOOGLE_API_BASE}/calendars/{quote(calendar.external_calendar_id, safe='')}/events"
        base_params: dict[str, Any] = {"maxResults": PAGE_SIZE, "singleEvents": "true"}
        if sync_token:
            base_params["syncToken"] = sync_token
        else:
            time_min, time_max = sync_window()
            base_params["timeMin"] = serialize_datetime(time_min)
            base_params["timeMax"] = serialize_datetime(time_max)
            base_params["orderBy"] = "startTime"

        events: list[NormalizedEvent] = []
        next_sync_token: str | None = None
        page_token: str | None = None
        while True:
            params = dict(base_params)
            if page_token:
                params["pageToken"] = page_token
            payload = self._get(access_token, url, params)
            for item in payload.get("items") or []:
                event = map_google_event(item, calendar)
                if event is not None:
                    events.append(event)
            page_token = payload.get("nextPageToken")
            if payload.get("nextSyncToken"):
                next_sync_token = payload["nextSyncToken"]
            if not page_token:
                break
        return FetchResult(events=events, next_sync_token=next_sync_token)

    def fetch_events(self, connection: Connection, calendar: Calendar) -> FetchResult:
        credential = self.refresh_if_needed(connection, self.read_credential(connection))
        if not calendar.last_sync_token:
            return self._list_events(credential.access_token, calendar, None)
        try:
            return self._list_events(credential.access_token, calendar, calendar.last_sync_token)
        except StaleTokenError:
            logger.warning("Google sync token expired for calendar %s, running full sync", calendar.id)
            return self._list_events(credential.access_token, calendar, None)

    def discover_calendars(self, access_token: str) -> list[DiscoveredCalendar]:
        calendars: list[DiscoveredCalendar] = []
        page_token: str | None = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            payload = self._get(access_token, f"{GOOGLE_API_BASE}/users/me/calendarList", params)
            for item in payload.get("items") or []:
                if not item.get("id"):
                    continue
                calendars.append(
                    DiscoveredCalendar(
                        external_id=str(item["id"]),
                        display_name=str(item.get("summaryOverride") or item.get("summary") or item["id"]),
                        color=item.get("backgroundColor"),
                        primary=bool(item.get("primary")),
                    )
                )
            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars

    def list_calendars(self, connection: Connection) -> list[DiscoveredCalendar]:
        credential = self.refresh_if_needed(connection, self.read_credential(connection))
        return self.discover_calendars(credential.access_token)

    def exchange_code(self, code: str) -> OAuthGrant:
        google_config = self.config.google
        response = send_request(
            self.session,
            "POST",
            google_config.token_uri,
            data={
                "code": code,
                "client_id": google_config.client_id,
                "client_secret": google_config.client_secret,
                "redirect_uri": google_config.redirect_uri,
                "grant_type": "authorization_code",
            },
            timeout=self.timeout,
        )
        if response.status_code == 400:
            raise AuthError("Google rejected the authorization code", code=400)
        raise_for_provider_status(response.status_code, response.text, context="Google token endpoint")
        token = response.json()
        access_token = token.get("access_token")
        if not access_token:
            raise AuthError("Google token response carried no access token")
        expires_in = token.get("expires_in")
        expires_at = utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None

        profile = self._get(access_token, GOOGLE_USERINFO_URL)
        return OAuthGrant(
            access_token=access_token,
            refresh_token=token.get("refresh_token"),
            expires_at=expires_at,
            account_label=str(profile.get("email") or "Google Calendar"),
        )
