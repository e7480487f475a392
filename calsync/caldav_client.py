from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urljoin, urlsplit

import requests
from requests.auth import HTTPBasicAuth

from calsync.errors import AuthError, DiscoveryError, ProviderError, TransientProviderError, raise_for_provider_status
from calsync.ical_parser import parse_ical_events
from calsync.models import (
    Calendar,
    Connection,
    DiscoveredCalendar,
    FetchResult,
    NormalizedEvent,
    sync_window,
)
from calsync.providers import (
    CalendarProviderAdapter,
    ProbeResult,
    ProbeStatus,
    first_conclusive,
    send_request,
)
from calsync.xml_extract import extract_all_elements, extract_tag, extract_text, has_element


logger = logging.getLogger(__name__)

REDIRECT_STATUSES = {301, 302, 307, 308}
WELL_KNOWN_PATH = "/.well-known/caldav"
DEFAULT_CALENDAR_NAME = "Calendar"

PRINCIPAL_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:current-user-principal />
  </d:prop>
</d:propfind>"""

HOME_SET_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <c:calendar-home-set />
  </d:prop>
</d:propfind>"""

COLLECTIONS_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:ic="http://apple.com/ns/ical/">
  <d:prop>
    <d:resourcetype />
    <d:displayname />
    <ic:calendar-color />
    <c:supported-calendar-component-set />
  </d:prop>
</d:propfind>"""

RESOURCETYPE_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:resourcetype />
  </d:prop>
</d:propfind>"""

CTAG_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:" xmlns:cs="http://calendarserver.org/ns/">
  <d:prop>
    <cs:getctag />
  </d:prop>
</d:propfind>"""

CALENDAR_QUERY_TEMPLATE = """<?xml version="1.0" encoding="utf-8" ?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag />
    <c:calendar-data />
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}" />
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""


def _caldav_timestamp(value: datetime) -> str:
    return value.strftime("%Y%m%dT%H%M%SZ")


def resolve_href(base_url: str, href: str) -> str:
    return urljoin(base_url, href)


@dataclass
class CaldavCredentials:
    username: str
    password: str

    @classmethod
    def from_plaintext(cls, plaintext: str) -> "CaldavCredentials":
        # No colon means the whole value is the username.
        username, _, password = plaintext.partition(":")
        return cls(username=username, password=password)

    def to_plaintext(self) -> str:
        return f"{self.username}:{self.password}"


@dataclass
class DavResponse:
    status: int
    text: str
    url: str


class CaldavHttp:
    """Basic-auth WebDAV requests with redirects followed by hand.

    ``requests`` drops the Authorization header when a redirect changes host,
    so every hop is re-issued with the same method, body and credentials.
    """

    def __init__(
        self,
        credentials: CaldavCredentials,
        session: requests.Session,
        timeout: int = 30,
        max_redirects: int = 5,
    ) -> None:
        self.credentials = credentials
        self.session = session
        self.timeout = timeout
        self.max_redirects = max_redirects

    def request(self, url: str, method: str, body: str | None = None, depth: str | None = None) -> DavResponse:
        headers = {"Content-Type": "application/xml; charset=utf-8"}
        if depth is not None:
            headers["Depth"] = depth
        data = body.encode("utf-8") if body is not None else None
        auth = HTTPBasicAuth(self.credentials.username, self.credentials.password)

        current = url
        for _ in range(self.max_redirects + 1):
            response = send_request(
                self.session,
                method,
                current,
                data=data,
                headers=headers,
                auth=auth,
                timeout=self.timeout,
                allow_redirects=False,
            )
            if response.status_code not in REDIRECT_STATUSES:
                return DavResponse(status=response.status_code, text=response.text, url=current)
            location = response.headers.get("Location")
            if not location:
                raise ProviderError(f"CalDAV redirect from {current} has no Location", status=response.status_code)
            current = urljoin(current, location)
        raise TransientProviderError(f"Too many redirects following {url}")


def _probe_principal(http: CaldavHttp, url: str) -> ProbeResult:
    response = http.request(url, "PROPFIND", PRINCIPAL_BODY, depth="0")
    if response.status in {401, 403}:
        return ProbeResult.auth_failed()
    if response.status in {404, 405}:
        return ProbeResult.not_supported()
    principal = extract_tag(response.text, "current-user-principal")
    href = extract_text(principal, "href") if principal else None
    if href:
        return ProbeResult.found(resolve_href(response.url, href))
    if 200 <= response.status < 300:
        return ProbeResult.found(response.url)
    return ProbeResult.not_supported()


def discover_principal(http: CaldavHttp, base_url: str) -> str:
    parts = urlsplit(base_url)
    well_known = f"{parts.scheme}://{parts.netloc}{WELL_KNOWN_PATH}"
    candidates = [well_known]
    if base_url.rstrip("/") != well_known:
        candidates.append(base_url)

    result = first_conclusive(lambda url=url: _probe_principal(http, url) for url in candidates)
    if result is None:
        return base_url
    if result.status == ProbeStatus.AUTH_FAILED:
        raise AuthError("CalDAV server rejected the credentials")
    return result.value or base_url


def discover_calendar_home(http: CaldavHttp, principal_url: str) -> str:
    response = http.request(principal_url, "PROPFIND", HOME_SET_BODY, depth="0")
    if response.status in {401, 403}:
        raise AuthError("CalDAV server rejected the credentials", code=response.status)
    home_set = extract_tag(response.text, "calendar-home-set")
    href = extract_text(home_set, "href") if home_set else None
    if href:
        return resolve_href(response.url, href)
    return principal_url


def list_calendar_collections(http: CaldavHttp, home_url: str) -> list[DiscoveredCalendar]:
    response = http.request(home_url, "PROPFIND", COLLECTIONS_BODY, depth="1")
    if response.status in {401, 403}:
        raise AuthError("CalDAV server rejected the credentials", code=response.status)
    if response.status >= 400:
        raise DiscoveryError(f"Listing CalDAV calendars at {home_url} failed ({response.status})")

    calendars: list[DiscoveredCalendar] = []
    for block in extract_all_elements(response.text, "response"):
        resource_type = extract_tag(block, "resourcetype") or ""
        if not has_element(resource_type, "calendar"):
            continue
        if "VEVENT" not in block.upper():
            continue
        href = extract_text(block, "href")
        if not href:
            continue
        color = extract_text(block, "calendar-color")
        calendars.append(
            DiscoveredCalendar(
                external_id=resolve_href(response.url, href),
                display_name=extract_text(block, "displayname") or DEFAULT_CALENDAR_NAME,
                color=color[:7] if color else None,
            )
        )
    return calendars


def fetch_ctag(http: CaldavHttp, calendar_url: str) -> str | None:
    response = http.request(calendar_url, "PROPFIND", CTAG_BODY, depth="0")
    if response.status in {401, 403}:
        raise AuthError("CalDAV server rejected the credentials", code=response.status)
    if response.status >= 400:
        logger.warning("CalDAV ctag lookup on %s failed (%s)", calendar_url, response.status)
        return None
    return extract_text(response.text, "getctag") or None


def fetch_calendar_objects(http: CaldavHttp, calendar_url: str, start: datetime, end: datetime) -> list[str]:
    body = CALENDAR_QUERY_TEMPLATE.format(start=_caldav_timestamp(start), end=_caldav_timestamp(end))
    response = http.request(calendar_url, "REPORT", body, depth="1")
    raise_for_provider_status(response.status, response.text, context="CalDAV REPORT")
    blobs: list[str] = []
    for block in extract_all_elements(response.text, "response"):
        data = extract_text(block, "calendar-data")
        if data:
            blobs.append(data)
    return blobs


class CaldavAdapter(CalendarProviderAdapter):
    def read_credential(self, connection: Connection) -> CaldavCredentials:
        return CaldavCredentials.from_plaintext(self.decrypt_credential(connection))

    def open_http(self, credentials: CaldavCredentials) -> CaldavHttp:
        return CaldavHttp(
            credentials,
            self.session,
            timeout=self.timeout,
            max_redirects=self.config.http.max_redirects,
        )

    def refresh_auth(self, connection: Connection) -> None:
        if not connection.server_endpoint:
            raise AuthError("No CalDAV server URL configured")
        http = self.open_http(self.read_credential(connection))
        response = http.request(connection.server_endpoint, "PROPFIND", RESOURCETYPE_BODY, depth="0")
        if response.status in {401, 403}:
            raise self.expire(connection, "CalDAV server rejected the credentials", code=response.status)

    def fetch_events(self, connection: Connection, calendar: Calendar) -> FetchResult:
        http = self.open_http(self.read_credential(connection))
        calendar_url = calendar.external_calendar_id

        ctag = fetch_ctag(http, calendar_url)
        if ctag and calendar.last_sync_token == ctag:
            logger.debug("CalDAV calendar %s unchanged (ctag %s)", calendar.id, ctag)
            return FetchResult(events=[], next_sync_token=ctag)

        start, end = sync_window()
        events: list[NormalizedEvent] = []
        for blob in fetch_calendar_objects(http, calendar_url, start, end):
            events.extend(parse_ical_events(blob, calendar))
        return FetchResult(events=events, next_sync_token=ctag)

    def discover_calendars(self, server_url: str, credentials: CaldavCredentials) -> list[DiscoveredCalendar]:
        http = self.open_http(credentials)
        principal = discover_principal(http, server_url)
        home = discover_calendar_home(http, principal)
        return list_calendar_collections(http, home)

    def list_calendars(self, connection: Connection) -> list[DiscoveredCalendar]:
        if not connection.server_endpoint:
            raise AuthError("No CalDAV server URL configured")
        return self.discover_calendars(connection.server_endpoint, self.read_credential(connection))
