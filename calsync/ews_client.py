from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import requests
from requests_ntlm import HttpNtlmAuth

from calsync.errors import AuthError, DiscoveryError, ProviderError, TransientProviderError
from calsync.models import (
    Calendar,
    Connection,
    DiscoveredCalendar,
    FetchResult,
    NormalizedEvent,
    parse_iso_datetime,
    sync_window,
)
from calsync.providers import (
    CalendarProviderAdapter,
    ProbeResult,
    ProbeStatus,
    first_conclusive,
    normalize_event,
    send_request,
)
from calsync.xml_extract import (
    escape_xml,
    extract_all_elements,
    extract_attribute,
    extract_tag,
    extract_text,
)


logger = logging.getLogger(__name__)

EWS_TIMEOUT_SECONDS = 30
CALENDAR_VIEW_PAGE_SIZE = 500
SYNC_PAGE_SIZE = 512
INVALID_SYNC_STATE_CODES = {"ErrorInvalidSyncStateData", "ErrorSyncFolderNotFound"}

CALENDAR_ITEM_PROPERTIES = """
          <t:FieldURI FieldURI="item:Subject"/>
          <t:FieldURI FieldURI="item:Body"/>
          <t:FieldURI FieldURI="calendar:Start"/>
          <t:FieldURI FieldURI="calendar:End"/>
          <t:FieldURI FieldURI="calendar:Location"/>
          <t:FieldURI FieldURI="calendar:IsAllDayEvent"/>
          <t:FieldURI FieldURI="calendar:IsCancelled"/>"""


@dataclass
class EwsCredentials:
    domain: str
    username: str
    password: str
    email: str

    @classmethod
    def from_plaintext(cls, plaintext: str) -> "EwsCredentials":
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise AuthError("Stored Exchange credential is not valid JSON") from exc
        if not isinstance(data, dict) or not data.get("username"):
            raise AuthError("Stored Exchange credential is malformed")
        return cls(
            domain=str(data.get("domain") or ""),
            username=str(data["username"]),
            password=str(data.get("password") or ""),
            email=str(data.get("email") or ""),
        )

    def to_plaintext(self) -> str:
        return json.dumps(
            {
                "domain": self.domain,
                "username": self.username,
                "password": self.password,
                "email": self.email,
            }
        )

    @property
    def ntlm_user(self) -> str:
        return f"{self.domain}\\{self.username}" if self.domain else self.username


class EwsChannel:
    """One NTLM-authenticated HTTP session.

    NTLM authenticates the TCP connection rather than each request, so a
    channel is opened per sync invocation and every SOAP call in that
    invocation goes through it.
    """

    def __init__(self, endpoint: str, credentials: EwsCredentials, session: requests.Session | None = None) -> None:
        self.endpoint = endpoint
        self.session = session or requests.Session()
        self.session.auth = HttpNtlmAuth(credentials.ntlm_user, credentials.password)
        self.session.headers.update({"Content-Type": "text/xml; charset=utf-8"})

    def post(self, soap_body: str) -> tuple[int, str]:
        response = send_request(
            self.session,
            "POST",
            self.endpoint,
            data=build_envelope(soap_body).encode("utf-8"),
            timeout=EWS_TIMEOUT_SECONDS,
        )
        return response.status_code, response.text

    def close(self) -> None:
        self.session.close()


ChannelFactory = Callable[[str, EwsCredentials], EwsChannel]


def build_envelope(body: str) -> str:
    return f"""<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope
  xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"
  xmlns:t="http://schemas.microsoft.com/exchange/services/2006/types"
  xmlns:m="http://schemas.microsoft.com/exchange/services/2006/messages">
  <soap:Header>
    <t:RequestServerVersion Version="Exchange2013"/>
  </soap:Header>
  <soap:Body>
{body}
  </soap:Body>
</soap:Envelope>"""


def get_folder_body(email: str | None = None, base_shape: str = "Default") -> str:
    if email:
        folder = (
            '<t:DistinguishedFolderId Id="calendar">'
            f"<t:Mailbox><t:EmailAddress>{escape_xml(email)}</t:EmailAddress></t:Mailbox>"
            "</t:DistinguishedFolderId>"
        )
    else:
        folder = '<t:DistinguishedFolderId Id="calendar"/>'
    return f"""    <m:GetFolder>
      <m:FolderShape>
        <t:BaseShape>{base_shape}</t:BaseShape>
      </m:FolderShape>
      <m:FolderIds>
        {folder}
      </m:FolderIds>
    </m:GetFolder>"""


def find_item_body(folder_id: str, start: datetime, end: datetime, max_entries: int) -> str:
    return f"""    <m:FindItem Traversal="Shallow">
      <m:ItemShape>
        <t:BaseShape>Default</t:BaseShape>
        <t:AdditionalProperties>{CALENDAR_ITEM_PROPERTIES}
          <t:FieldURI FieldURI="item:ItemId"/>
        </t:AdditionalProperties>
      </m:ItemShape>
      <m:CalendarView StartDate="{_ews_timestamp(start)}" EndDate="{_ews_timestamp(end)}" MaxEntriesReturned="{max_entries}"/>
      <m:ParentFolderIds>
        <t:FolderId Id="{escape_xml(folder_id)}"/>
      </m:ParentFolderIds>
    </m:FindItem>"""


def sync_folder_items_body(folder_id: str, sync_state: str | None, *, id_only: bool) -> str:
    if id_only:
        shape = "<t:BaseShape>IdOnly</t:BaseShape>"
    else:
        shape = f"""<t:BaseShape>Default</t:BaseShape>
        <t:AdditionalProperties>{CALENDAR_ITEM_PROPERTIES}
        </t:AdditionalProperties>"""
    state = f"<m:SyncState>{escape_xml(sync_state)}</m:SyncState>" if sync_state else ""
    return f"""    <m:SyncFolderItems>
      <m:ItemShape>
        {shape}
      </m:ItemShape>
      <m:SyncFolderId>
        <t:FolderId Id="{escape_xml(folder_id)}"/>
      </m:SyncFolderId>
      {state}
      <m:MaxChangesReturned>{SYNC_PAGE_SIZE}</m:MaxChangesReturned>
    </m:SyncFolderItems>"""


def _ews_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def is_success(xml: str) -> bool:
    return extract_attribute(xml, "ResponseClass") == "Success"


def _check_auth(status: int) -> None:
    if status in {401, 403}:
        raise AuthError("Exchange server rejected the credentials", code=status)


def _check_transport(status: int, text: str, operation: str) -> None:
    _check_auth(status)
    # SOAP faults arrive as 500 with an error response body.
    if status in {502, 503, 504, 429}:
        raise TransientProviderError(f"Exchange {operation} unavailable ({status})", status=status)
    if status >= 400 and not extract_tag(text, "ResponseCode"):
        raise ProviderError(f"Exchange {operation} failed ({status})", status=status)


def _item_id(xml: str) -> str | None:
    elements = extract_all_elements(xml, "ItemId")
    if not elements:
        return None
    return extract_attribute(elements[0], "Id")


def parse_folders(xml: str) -> list[DiscoveredCalendar]:
    folders = extract_all_elements(xml, "CalendarFolder") or extract_all_elements(xml, "Folder")
    calendars: list[DiscoveredCalendar] = []
    for block in folders:
        folder_elements = extract_all_elements(block, "FolderId")
        if not folder_elements:
            continue
        folder_id = extract_attribute(folder_elements[0], "Id")
        if not folder_id:
            continue
        calendars.append(
            DiscoveredCalendar(
                external_id=folder_id,
                display_name=extract_text(block, "DisplayName") or "Calendar",
                primary=not calendars,
            )
        )
    return calendars


def map_ews_item(xml: str, calendar: Calendar) -> NormalizedEvent | None:
    item_id = _item_id(xml)
    if not item_id:
        return None
    if (extract_text(xml, "IsCancelled") or "").lower() == "true":
        return NormalizedEvent.tombstone(item_id)
    start_at = parse_iso_datetime(extract_text(xml, "Start"))
    end_at = parse_iso_datetime(extract_text(xml, "End")) or start_at
    return normalize_event(
        calendar,
        external_id=item_id,
        title=extract_text(xml, "Subject"),
        description=extract_text(xml, "Body"),
        location=extract_text(xml, "Location"),
        start_at=start_at,
        end_at=end_at,
        all_day=(extract_text(xml, "IsAllDayEvent") or "").lower() == "true",
    )


def discover_folders(channel: EwsChannel, email: str) -> list[DiscoveredCalendar]:
    def probe(mailbox: str | None) -> ProbeResult:
        status, text = channel.post(get_folder_body(mailbox))
        if status in {401, 403}:
            return ProbeResult.auth_failed()
        if status == 200 and is_success(text):
            return ProbeResult.found(text)
        logger.info(
            "Exchange GetFolder %s mailbox rejected (%s)",
            "with" if mailbox else "without",
            extract_text(text, "ResponseCode") or status,
        )
        return ProbeResult.not_supported()

    strategies: list[Callable[[], ProbeResult]] = []
    if email:
        strategies.append(lambda: probe(email))
    strategies.append(lambda: probe(None))

    result = first_conclusive(strategies)
    if result is None:
        raise DiscoveryError("Failed to discover the Exchange calendar folder")
    if result.status == ProbeStatus.AUTH_FAILED:
        raise AuthError("Exchange server rejected the credentials")
    return parse_folders(result.value or "")


def find_calendar_view(
    channel: EwsChannel,
    folder_id: str,
    calendar: Calendar,
    start: datetime,
    end: datetime,
    max_entries: int = CALENDAR_VIEW_PAGE_SIZE,
) -> list[NormalizedEvent]:
    events: list[NormalizedEvent] = []
    seen: set[str] = set()
    page_start = start
    while True:
        status, text = channel.post(find_item_body(folder_id, page_start, end, max_entries))
        _check_transport(status, text, "FindItem")
        if not is_success(text):
            code = extract_text(text, "ResponseCode") or "unknown"
            raise ProviderError(f"Exchange FindItem failed: {code}", status=status)

        items = extract_all_elements(text, "CalendarItem")
        latest_start: datetime | None = None
        for item in items:
            item_id = _item_id(item)
            if not item_id or item_id in seen:
                continue
            seen.add(item_id)
            event = map_ews_item(item, calendar)
            if event is not None:
                events.append(event)
            item_start = parse_iso_datetime(extract_text(item, "Start"))
            if item_start is not None and (latest_start is None or item_start > latest_start):
                latest_start = item_start

        if (extract_attribute(text, "IncludesLastItemInRange") or "").lower() == "true":
            break
        if len(items) < max_entries:
            break
        if latest_start is None or latest_start <= page_start:
            logger.warning("Exchange CalendarView made no progress past %s; stopping", page_start.isoformat())
            break
        page_start = latest_start
    return events


def _sync_state_invalid(text: str) -> bool:
    return (extract_text(text, "ResponseCode") or "") in INVALID_SYNC_STATE_CODES


def bootstrap_sync_state(channel: EwsChannel, folder_id: str) -> str | None:
    sync_state: str | None = None
    while True:
        status, text = channel.post(sync_folder_items_body(folder_id, sync_state, id_only=True))
        _check_transport(status, text, "SyncFolderItems")
        if not is_success(text):
            code = extract_text(text, "ResponseCode") or "unknown"
            logger.warning("Exchange SyncState bootstrap failed: %s", code)
            return sync_state
        next_state = extract_text(text, "SyncState")
        if next_state:
            sync_state = next_state
        if (extract_text(text, "IncludesLastItemInRange") or "").lower() == "true" or not next_state:
            return sync_state


def sync_folder_items(channel: EwsChannel, folder_id: str, sync_state: str, calendar: Calendar) -> FetchResult:
    """Page through changes since ``sync_state``.

    Returns ``FetchResult([], None)`` when the server no longer recognises the state.
    """
    events: list[NormalizedEvent] = []
    current = sync_state
    while True:
        status, text = channel.post(sync_folder_items_body(folder_id, current, id_only=False))
        _check_transport(status, text, "SyncFolderItems")
        if not is_success(text):
            if _sync_state_invalid(text):
                return FetchResult(events=[], next_sync_token=None)
            code = extract_text(text, "ResponseCode") or "unknown"
            raise ProviderError(f"Exchange SyncFolderItems failed: {code}", status=status)

        for change in extract_all_elements(text, "Create") + extract_all_elements(text, "Update"):
            event = map_ews_item(change, calendar)
            if event is not None:
                events.append(event)
        for change in extract_all_elements(text, "Delete"):
            item_id = _item_id(change)
            if item_id:
                events.append(NormalizedEvent.tombstone(item_id))

        next_state = extract_text(text, "SyncState")
        if not next_state:
            raise ProviderError("Exchange SyncFolderItems returned no SyncState")
        current = next_state
        if (extract_text(text, "IncludesLastItemInRange") or "").lower() == "true":
            return FetchResult(events=events, next_sync_token=current)


class EwsAdapter(CalendarProviderAdapter):
    def __init__(self, *args: Any, channel_factory: ChannelFactory | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.channel_factory: ChannelFactory = channel_factory or EwsChannel

    def read_credential(self, connection: Connection) -> EwsCredentials:
        return EwsCredentials.from_plaintext(self.decrypt_credential(connection))

    def refresh_auth(self, connection: Connection) -> None:
        if not connection.server_endpoint:
            raise AuthError("No EWS URL configured")
        channel = self.channel_factory(connection.server_endpoint, self.read_credential(connection))
        try:
            status, _ = channel.post(get_folder_body(base_shape="IdOnly"))
        finally:
            channel.close()
        if status in {401, 403}:
            raise self.expire(connection, "Exchange server rejected the credentials", code=status)

    def _full_sync(self, channel: EwsChannel, calendar: Calendar) -> FetchResult:
        start, end = sync_window()
        folder_id = calendar.external_calendar_id
        events = find_calendar_view(channel, folder_id, calendar, start, end)
        return FetchResult(events=events, next_sync_token=bootstrap_sync_state(channel, folder_id))

    def fetch_events(self, connection: Connection, calendar: Calendar) -> FetchResult:
        if not connection.server_endpoint:
            raise AuthError("No EWS URL configured")
        credentials = self.read_credential(connection)
        channel = self.channel_factory(connection.server_endpoint, credentials)
        try:
            if calendar.last_sync_token:
                try:
                    result = sync_folder_items(
                        channel, calendar.external_calendar_id, calendar.last_sync_token, calendar
                    )
                    if result.next_sync_token is not None:
                        return result
                    logger.warning("Exchange SyncState for calendar %s is no longer valid, running full sync", calendar.id)
                except AuthError:
                    logger.warning("Exchange rejected incremental sync for calendar %s, reopening channel", calendar.id)
                    channel.close()
                    channel = self.channel_factory(connection.server_endpoint, credentials)
                except TransientProviderError:
                    raise
                except ProviderError as exc:
                    logger.warning("Exchange incremental sync failed for calendar %s: %s", calendar.id, exc)
            return self._full_sync(channel, calendar)
        finally:
            channel.close()

    def discover_calendars(self, endpoint: str, credentials: EwsCredentials) -> list[DiscoveredCalendar]:
        channel = self.channel_factory(endpoint, credentials)
        try:
            return discover_folders(channel, credentials.email)
        finally:
            channel.close()

    def list_calendars(self, connection: Connection) -> list[DiscoveredCalendar]:
        if not connection.server_endpoint:
            raise AuthError("No EWS URL configured")
        return self.discover_calendars(connection.server_endpoint, self.read_credential(connection))
