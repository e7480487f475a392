import unittest
from unittest import mock

from calsync.caldav_client import (
    CaldavAdapter,
    CaldavCredentials,
    CaldavHttp,
    discover_principal,
    list_calendar_collections,
)
from calsync.errors import AuthError, TransientProviderError
from calsync.models import AppConfig, Calendar, Connection, ConnectionStatus, Provider
from calsync.vault import CredentialVault


KEY = "0f" * 32


class FakeResponse:
    def __init__(self, status_code: int, text: str = "", headers: dict | None = None) -> None:
        self.status_code = status_code
        self.text = text
        self.headers = headers or {}


class FakeSession:
    """Answers by (method, url); each route holds a list of responses consumed in order."""

    def __init__(self, routes: dict) -> None:
        self.routes = {key: list(value) if isinstance(value, list) else [value] for key, value in routes.items()}
        self.calls: list[tuple[str, str, dict]] = []

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        responses = self.routes.get((method, url))
        if not responses:
            return FakeResponse(404)
        return responses.pop(0) if len(responses) > 1 else responses[0]


def _multistatus(*responses: str) -> str:
    return '<d:multistatus xmlns:d="DAV:">' + "".join(responses) + "</d:multistatus>"


CTAG_BODY = _multistatus(
    "<d:response><d:href>/cal/work/</d:href><d:propstat><d:prop>"
    "<cs:getctag>ctag-2</cs:getctag></d:prop></d:propstat></d:response>"
)

REPORT_BODY = _multistatus(
    "<d:response><d:href>/cal/work/1.ics</d:href><d:propstat><d:prop>"
    "<c:calendar-data>BEGIN:VCALENDAR\nBEGIN:VEVENT\nUID:one\nDTSTART:20250101T100000Z\n"
    "SUMMARY:Dentist &amp; checkup\nEND:VEVENT\nEND:VCALENDAR</c:calendar-data>"
    "</d:prop></d:propstat></d:response>"
)


class CaldavHttpTests(unittest.TestCase):
    def test_relative_redirect_is_resolved_against_requested_url(self) -> None:
        session = FakeSession(
            {
                ("PROPFIND", "https://dav.example.com/.well-known/caldav"): FakeResponse(
                    301, headers={"Location": "/dav/principals/"}
                ),
                ("PROPFIND", "https://dav.example.com/dav/principals/"): FakeResponse(207, "<ok/>"),
            }
        )
        http = CaldavHttp(CaldavCredentials("alice", "pw"), session)
        response = http.request("https://dav.example.com/.well-known/caldav", "PROPFIND", "<x/>", depth="0")

        self.assertEqual(response.status, 207)
        self.assertEqual(response.url, "https://dav.example.com/dav/principals/")
        method, url, kwargs = session.calls[-1]
        self.assertEqual(method, "PROPFIND")
        self.assertEqual(kwargs["data"], b"<x/>")
        self.assertEqual(kwargs["headers"]["Depth"], "0")
        self.assertFalse(kwargs["allow_redirects"])
        self.assertEqual(kwargs["auth"].username, "alice")

    def test_redirect_loop_raises_transient_error(self) -> None:
        session = FakeSession(
            {("GET", "https://dav.example.com/loop"): FakeResponse(302, headers={"Location": "/loop"})}
        )
        http = CaldavHttp(CaldavCredentials("alice", "pw"), session, max_redirects=5)
        with self.assertRaises(TransientProviderError):
            http.request("https://dav.example.com/loop", "GET")
        self.assertEqual(len(session.calls), 6)


class CaldavDiscoveryTests(unittest.TestCase):
    def _http(self, routes: dict) -> CaldavHttp:
        return CaldavHttp(CaldavCredentials("alice", "pw"), FakeSession(routes))

    def test_well_known_unsupported_falls_back_to_base_url(self) -> None:
        principal = _multistatus(
            "<d:response><d:propstat><d:prop><d:current-user-principal>"
            "<d:href>/principals/alice/</d:href></d:current-user-principal></d:prop></d:propstat></d:response>"
        )
        http = self._http(
            {
                ("PROPFIND", "https://dav.example.com/.well-known/caldav"): FakeResponse(405),
                ("PROPFIND", "https://dav.example.com/dav/"): FakeResponse(207, principal),
            }
        )
        self.assertEqual(
            discover_principal(http, "https://dav.example.com/dav/"),
            "https://dav.example.com/principals/alice/",
        )

    def test_principal_auth_failure_raises(self) -> None:
        http = self._http({("PROPFIND", "https://dav.example.com/.well-known/caldav"): FakeResponse(401)})
        with self.assertRaises(AuthError):
            discover_principal(http, "https://dav.example.com/dav/")

    def test_nothing_found_uses_base_url(self) -> None:
        http = self._http({})
        self.assertEqual(discover_principal(http, "https://dav.example.com/dav/"), "https://dav.example.com/dav/")

    def test_collections_keep_event_calendars_only(self) -> None:
        body = _multistatus(
            "<d:response><d:href>/cal/</d:href><d:propstat><d:prop>"
            "<d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat></d:response>",
            "<d:response><d:href>/cal/work/</d:href><d:propstat><d:prop>"
            "<d:resourcetype><d:collection/><c:calendar/></d:resourcetype>"
            "<d:displayname>Work</d:displayname><ic:calendar-color>#FF8800FF</ic:calendar-color>"
            '<c:supported-calendar-component-set><c:comp name="VEVENT"/></c:supported-calendar-component-set>'
            "</d:prop></d:propstat></d:response>",
            "<d:response><d:href>/cal/todo/</d:href><d:propstat><d:prop>"
            "<d:resourcetype><d:collection/><c:calendar/></d:resourcetype>"
            '<c:supported-calendar-component-set><c:comp name="VTODO"/></c:supported-calendar-component-set>'
            "</d:prop></d:propstat></d:response>",
            "<d:response><d:href>/cal/home/</d:href><d:propstat><d:prop>"
            "<d:resourcetype><d:collection/><c:calendar/></d:resourcetype>"
            '<c:supported-calendar-component-set><c:comp name="VEVENT"/></c:supported-calendar-component-set>'
            "</d:prop></d:propstat></d:response>",
        )
        http = self._http({("PROPFIND", "https://dav.example.com/cal/"): FakeResponse(207, body)})
        calendars = list_calendar_collections(http, "https://dav.example.com/cal/")

        self.assertEqual([item.external_id for item in calendars], [
            "https://dav.example.com/cal/work/",
            "https://dav.example.com/cal/home/",
        ])
        self.assertEqual(calendars[0].display_name, "Work")
        self.assertEqual(calendars[0].color, "#FF8800")
        self.assertEqual(calendars[1].display_name, "Calendar")
        self.assertIsNone(calendars[1].color)


class CaldavAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.vault = CredentialVault(KEY)
        self.store = mock.Mock()
        self.connection = Connection(
            id="conn-1",
            owner_member_id="member-1",
            provider=Provider.CALDAV,
            account_label="alice",
            encrypted_credential=self.vault.encrypt("alice:pw"),
            server_endpoint="https://dav.example.com/dav/",
        )
        self.calendar = Calendar(
            id="cal-1",
            connection_id="conn-1",
            external_calendar_id="https://dav.example.com/cal/work/",
            display_name="Work",
            sync_enabled=True,
        )

    def _adapter(self, session: FakeSession) -> CaldavAdapter:
        return CaldavAdapter(self.store, self.vault, AppConfig(), session=session)

    def test_unchanged_ctag_skips_report(self) -> None:
        self.calendar.last_sync_token = "ctag-2"
        session = FakeSession({("PROPFIND", self.calendar.external_calendar_id): FakeResponse(207, CTAG_BODY)})
        result = self._adapter(session).fetch_events(self.connection, self.calendar)

        self.assertEqual(result.events, [])
        self.assertEqual(result.next_sync_token, "ctag-2")
        self.assertEqual([call[0] for call in session.calls], ["PROPFIND"])

    def test_changed_ctag_runs_report(self) -> None:
        self.calendar.last_sync_token = "ctag-1"
        session = FakeSession(
            {
                ("PROPFIND", self.calendar.external_calendar_id): FakeResponse(207, CTAG_BODY),
                ("REPORT", self.calendar.external_calendar_id): FakeResponse(207, REPORT_BODY),
            }
        )
        result = self._adapter(session).fetch_events(self.connection, self.calendar)

        self.assertEqual(result.next_sync_token, "ctag-2")
        self.assertEqual(len(result.events), 1)
        self.assertEqual(result.events[0].external_id, "one")
        self.assertEqual(result.events[0].title, "Dentist & checkup")
        report_call = session.calls[-1]
        self.assertEqual(report_call[0], "REPORT")
        self.assertIn(b"time-range", report_call[2]["data"])

    def test_refresh_auth_rejection_marks_expired(self) -> None:
        session = FakeSession({("PROPFIND", "https://dav.example.com/dav/"): FakeResponse(401)})
        with self.assertRaises(AuthError):
            self._adapter(session).refresh_auth(self.connection)
        self.store.set_connection_status.assert_called_once_with("conn-1", ConnectionStatus.EXPIRED)

    def test_refresh_auth_without_endpoint(self) -> None:
        self.connection.server_endpoint = None
        with self.assertRaises(AuthError):
            self._adapter(FakeSession({})).refresh_auth(self.connection)


    def test_stored_credential_without_colon_is_username_only(self) -> None:
        self.connection.encrypted_credential = self.vault.encrypt("alice")
        credentials = self._adapter(FakeSession({})).read_credential(self.connection)
        self.assertEqual(credentials, CaldavCredentials(username="alice", password=""))

    def test_password_may_contain_colons(self) -> None:
        credentials = CaldavCredentials.from_plaintext("alice:p:w")
        self.assertEqual((credentials.username, credentials.password), ("alice", "p:w"))

if __name__ == "__main__":
    unittest.main()
