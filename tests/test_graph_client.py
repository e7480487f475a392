import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from calsync.errors import AuthError
from calsync.graph_client import GraphCalendarAdapter, map_graph_event, refresh_token_from_cache
from calsync.models import (
    AppConfig,
    Calendar,
    Connection,
    ConnectionStatus,
    PrivacyMode,
    Provider,
)
from calsync.vault import CredentialVault


KEY = "0f" * 32


class FakeResponse:
    def __init__(self, status_code: int, payload: dict | None = None) -> None:
        self.status_code = status_code
        self._payload = payload or {}
        self.text = json.dumps(self._payload)

    def json(self) -> dict:
        return self._payload


class QueuedSession:
    def __init__(self, *responses: FakeResponse) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str, dict]] = []

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        return self.responses.pop(0)


def _calendar(privacy_mode: PrivacyMode = PrivacyMode.FULL_DETAILS, token: str | None = None) -> Calendar:
    return Calendar(
        id="cal-1",
        connection_id="conn-1",
        external_calendar_id="AAMk/calendar=",
        display_name="Calendar",
        sync_enabled=True,
        privacy_mode=privacy_mode,
        last_sync_token=token,
    )


def _graph_item(event_id: str, subject: str = "Review") -> dict:
    return {
        "id": event_id,
        "subject": subject,
        "bodyPreview": "Agenda",
        "location": {"displayName": "Room 2"},
        "start": {"dateTime": "2025-02-03T10:00:00.0000000", "timeZone": "UTC"},
        "end": {"dateTime": "2025-02-03T11:00:00.0000000", "timeZone": "UTC"},
        "isAllDay": False,
    }


class MapGraphEventTests(unittest.TestCase):
    def test_maps_fields_as_utc(self) -> None:
        event = map_graph_event(_graph_item("e1"), _calendar())
        self.assertEqual(event.title, "Review")
        self.assertEqual(event.description, "Agenda")
        self.assertEqual(event.location, "Room 2")
        self.assertEqual(event.start_at, datetime(2025, 2, 3, 10, tzinfo=timezone.utc))

    def test_removed_and_cancelled_items_become_tombstones(self) -> None:
        removed = map_graph_event({"id": "e1", "@removed": {"reason": "deleted"}}, _calendar())
        cancelled = map_graph_event({**_graph_item("e2"), "isCancelled": True}, _calendar())
        self.assertTrue(removed.is_cancelled)
        self.assertTrue(cancelled.is_cancelled)

    def test_busy_free_only_masks(self) -> None:
        event = map_graph_event(_graph_item("e1"), _calendar(PrivacyMode.BUSY_FREE_ONLY))
        self.assertEqual((event.title, event.description, event.location), ("Busy", None, None))

    def test_item_without_id_is_ignored(self) -> None:
        self.assertIsNone(map_graph_event({"subject": "x"}, _calendar()))


class RefreshTokenCacheTests(unittest.TestCase):
    def test_reads_secret_from_serialized_cache(self) -> None:
        app = mock.Mock()
        app.token_cache.serialize.return_value = json.dumps({"RefreshToken": {"k": {"secret": "rt-2"}}})
        self.assertEqual(refresh_token_from_cache(app), "rt-2")

    def test_empty_cache(self) -> None:
        app = mock.Mock()
        app.token_cache.serialize.return_value = ""
        self.assertIsNone(refresh_token_from_cache(app))


class GraphAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.vault = CredentialVault(KEY)
        self.store = mock.Mock()
        self.app = mock.Mock()
        self.app.token_cache.serialize.return_value = json.dumps({"RefreshToken": {"k": {"secret": "rt-rotated"}}})
        self.connection = Connection(
            id="conn-1",
            owner_member_id="member-1",
            provider=Provider.OUTLOOK,
            account_label="alice@example.com",
            encrypted_credential=self.vault.encrypt(json.dumps({"refresh_token": "rt-1"})),
        )

    def _adapter(self, session: QueuedSession | None = None) -> GraphCalendarAdapter:
        return GraphCalendarAdapter(
            self.store,
            self.vault,
            AppConfig(),
            session=session or QueuedSession(),
            app_factory=lambda: self.app,
        )

    def test_refresh_persists_rotated_token_and_keeps_access_token_in_memory(self) -> None:
        self.app.acquire_token_by_refresh_token.return_value = {"access_token": "at-1", "expires_in": 3600}
        self._adapter().refresh_auth(self.connection)

        self.app.acquire_token_by_refresh_token.assert_called_once_with("rt-1", scopes=["Calendars.Read", "User.Read"])
        self.assertEqual(self.connection.session_access_token, "at-1")
        kwargs = self.store.update_connection_credential.call_args.kwargs
        stored = json.loads(self.vault.decrypt(kwargs["encrypted_credential"]))
        self.assertEqual(stored, {"refresh_token": "rt-rotated"})
        self.assertNotIn("at-1", self.vault.decrypt(kwargs["encrypted_credential"]))
        self.assertGreater(kwargs["token_expires_at"], datetime.now(timezone.utc))

    def test_unexpired_token_skips_refresh(self) -> None:
        self.connection.token_expires_at = datetime.now(timezone.utc) + timedelta(minutes=30)
        self._adapter().refresh_auth(self.connection)
        self.app.acquire_token_by_refresh_token.assert_not_called()

    def test_missing_refresh_token_is_auth_error(self) -> None:
        self.connection.encrypted_credential = self.vault.encrypt(json.dumps({}))
        with self.assertRaises(AuthError):
            self._adapter().refresh_auth(self.connection)
        self.app.acquire_token_by_refresh_token.assert_not_called()

    def test_rejected_refresh_marks_expired(self) -> None:
        self.app.acquire_token_by_refresh_token.return_value = {"error": "invalid_grant"}
        with self.assertRaises(AuthError):
            self._adapter().refresh_auth(self.connection)
        self.store.set_connection_status.assert_called_once_with("conn-1", ConnectionStatus.EXPIRED)

    def test_delta_pages_follow_next_link_and_keep_delta_link(self) -> None:
        self.connection.session_access_token = "at-1"
        session = QueuedSession(
            FakeResponse(200, {"value": [_graph_item("e1")], "@odata.nextLink": "https://graph/next"}),
            FakeResponse(200, {"value": [{"id": "e0", "@removed": {}}], "@odata.deltaLink": "https://graph/delta-2"}),
        )
        result = self._adapter(session).fetch_events(self.connection, _calendar())

        self.assertEqual(result.next_sync_token, "https://graph/delta-2")
        self.assertEqual([(event.external_id, event.is_cancelled) for event in result.events], [
            ("e1", False),
            ("e0", True),
        ])
        first, second = session.calls
        self.assertTrue(first[1].endswith("/me/calendars/AAMk%2Fcalendar%3D/calendarView/delta"))
        self.assertIn("startDateTime", first[2]["params"])
        self.assertEqual(first[2]["headers"]["Prefer"], 'outlook.timezone="UTC"')
        self.assertEqual(second[1], "https://graph/next")
        self.assertIsNone(second[2]["params"])

    def test_expired_delta_link_runs_full_delta(self) -> None:
        self.connection.session_access_token = "at-1"
        session = QueuedSession(
            FakeResponse(410, {"error": {"code": "SyncStateNotFound"}}),
            FakeResponse(200, {"value": [_graph_item("e1")], "@odata.deltaLink": "https://graph/delta-3"}),
        )
        result = self._adapter(session).fetch_events(self.connection, _calendar(token="https://graph/delta-1"))

        self.assertEqual(result.next_sync_token, "https://graph/delta-3")
        self.assertEqual(session.calls[0][1], "https://graph/delta-1")
        self.assertIn("calendarView/delta", session.calls[1][1])

    def test_discover_calendars_normalizes_colors(self) -> None:
        session = QueuedSession(
            FakeResponse(
                200,
                {
                    "value": [
                        {"id": "c1", "name": "Calendar", "hexColor": "ff0000", "isDefaultCalendar": True},
                        {"id": "c2", "name": "Team", "hexColor": ""},
                    ]
                },
            )
        )
        calendars = self._adapter(session).discover_calendars("at-1")
        self.assertEqual([(item.external_id, item.color, item.primary) for item in calendars], [
            ("c1", "#ff0000", True),
            ("c2", None, False),
        ])


if __name__ == "__main__":
    unittest.main()
