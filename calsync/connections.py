from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, cast

from calsync.caldav_client import CaldavAdapter, CaldavCredentials
from calsync.errors import AuthError, DiscoveryError, NotFoundError
from calsync.ews_client import EwsAdapter, EwsCredentials
from calsync.google_client import GoogleCalendarAdapter, GoogleCredential
from calsync.graph_client import GraphCalendarAdapter
from calsync.models import (
    APPLE_CALDAV_URL,
    Calendar,
    Connection,
    ConnectionStatus,
    DiscoveredCalendar,
    PrivacyMode,
    Provider,
    SyncDirection,
)
from calsync.providers import CalendarProviderAdapter
from calsync.state_store import StateStore
from calsync.vault import CredentialVault


logger = logging.getLogger(__name__)

EnqueueSync = Callable[[str, bool], object]


class ConnectionService:
    """Member-facing operations on external calendar connections."""

    def __init__(
        self,
        state_store: StateStore,
        vault: CredentialVault,
        adapters: dict[Provider, CalendarProviderAdapter],
        enqueue_sync: EnqueueSync,
        default_interval_minutes: int = 15,
    ) -> None:
        self.state_store = state_store
        self.vault = vault
        self.adapters = adapters
        self.enqueue_sync = enqueue_sync
        self.default_interval_minutes = default_interval_minutes

    def _adapter(self, provider: Provider) -> CalendarProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ValueError(f"No adapter registered for provider {provider.value}")
        return adapter

    def _owned_connection(self, member_id: str, connection_id: str) -> Connection:
        connection = self.state_store.get_connection(connection_id)
        if connection is None or connection.owner_member_id != member_id:
            raise NotFoundError("Connection not found")
        return connection

    def _owned_calendar(self, member_id: str, calendar_id: str) -> tuple[Connection, Calendar]:
        calendar = self.state_store.get_calendar(calendar_id)
        if calendar is None:
            raise NotFoundError("Calendar not found")
        connection = self.state_store.get_connection(calendar.connection_id)
        if connection is None or connection.owner_member_id != member_id:
            raise NotFoundError("Calendar not found")
        return connection, calendar

    def _try_enqueue(self, connection_id: str, immediate: bool = True) -> None:
        try:
            self.enqueue_sync(connection_id, immediate)
        except Exception:
            logger.warning("Could not enqueue sync for connection %s", connection_id, exc_info=True)

    def _create(
        self,
        *,
        member_id: str,
        provider: Provider,
        account_label: str,
        plaintext_credential: str,
        calendars: list[DiscoveredCalendar],
        enabled_external_id: str | None,
        server_endpoint: str | None = None,
        token_expires_at: datetime | None = None,
    ) -> Connection:
        connection = self.state_store.create_connection(
            owner_member_id=member_id,
            provider=provider,
            account_label=account_label,
            encrypted_credential=self.vault.encrypt(plaintext_credential),
            server_endpoint=server_endpoint,
            token_expires_at=token_expires_at,
            sync_interval_minutes=self.default_interval_minutes,
            calendars=[(item, item.external_id == enabled_external_id) for item in calendars],
        )
        logger.info(
            "Connected %s account %s for member %s with %s calendars",
            provider.value,
            account_label,
            member_id,
            len(calendars),
        )
        self._try_enqueue(connection.id)
        return connection

    def connect_caldav(
        self,
        member_id: str,
        provider: Provider | str,
        server_url: str,
        username: str,
        password: str,
        account_label: str | None = None,
    ) -> Connection:
        provider = Provider.parse(provider)
        if not provider.is_caldav:
            raise ValueError(f"{provider.value} is not a CalDAV provider")
        endpoint = APPLE_CALDAV_URL if provider == Provider.APPLE else (server_url or "").strip()
        if not endpoint:
            raise ValueError("A CalDAV server URL is required")
        credentials = CaldavCredentials(username=username, password=password)

        adapter = cast(CaldavAdapter, self._adapter(provider))
        calendars = adapter.discover_calendars(endpoint, credentials)
        return self._create(
            member_id=member_id,
            provider=provider,
            account_label=account_label or username,
            plaintext_credential=credentials.to_plaintext(),
            calendars=calendars,
            enabled_external_id=calendars[0].external_id if calendars else None,
            server_endpoint=endpoint,
        )

    def connect_ews(
        self,
        member_id: str,
        ews_url: str,
        domain: str,
        username: str,
        password: str,
        email: str,
        account_label: str | None = None,
    ) -> Connection:
        endpoint = (ews_url or "").strip()
        if not endpoint:
            raise ValueError("An EWS URL is required")
        credentials = EwsCredentials(domain=domain, username=username, password=password, email=email)

        adapter = cast(EwsAdapter, self._adapter(Provider.EXCHANGE_EWS))
        calendars = adapter.discover_calendars(endpoint, credentials)
        if not calendars:
            raise DiscoveryError("No calendars found on the Exchange server")
        return self._create(
            member_id=member_id,
            provider=Provider.EXCHANGE_EWS,
            account_label=account_label or email or username,
            plaintext_credential=credentials.to_plaintext(),
            calendars=calendars,
            enabled_external_id=calendars[0].external_id,
            server_endpoint=endpoint,
        )

    def connect_google(self, member_id: str, code: str) -> Connection:
        adapter = cast(GoogleCalendarAdapter, self._adapter(Provider.GOOGLE))
        grant = adapter.exchange_code(code)
        calendars = adapter.discover_calendars(grant.access_token)
        primary = next((item for item in calendars if item.primary), None)
        credential = GoogleCredential(access_token=grant.access_token, refresh_token=grant.refresh_token)
        return self._create(
            member_id=member_id,
            provider=Provider.GOOGLE,
            account_label=grant.account_label,
            plaintext_credential=credential.to_plaintext(),
            calendars=calendars,
            enabled_external_id=primary.external_id if primary else None,
            token_expires_at=grant.expires_at,
        )

    def connect_outlook(self, member_id: str, code: str) -> Connection:
        adapter = cast(GraphCalendarAdapter, self._adapter(Provider.OUTLOOK))
        grant = adapter.exchange_code(code)
        if not grant.refresh_token:
            raise AuthError("Microsoft did not return a refresh token")
        calendars = adapter.discover_calendars(grant.access_token)
        return self._create(
            member_id=member_id,
            provider=Provider.OUTLOOK,
            account_label=grant.account_label,
            plaintext_credential=json.dumps({"refresh_token": grant.refresh_token}),
            calendars=calendars,
            enabled_external_id=calendars[0].external_id if calendars else None,
            token_expires_at=grant.expires_at,
        )

    def list_connections(self, member_id: str) -> list[dict]:
        payload: list[dict] = []
        for connection in self.state_store.list_connections(member_id):
            item = connection.to_dict()
            item["calendars"] = [calendar.to_dict() for calendar in self.state_store.list_calendars(connection.id)]
            payload.append(item)
        return payload

    def reconnect(self, member_id: str, connection_id: str) -> Connection:
        connection = self._owned_connection(member_id, connection_id)
        if connection.status == ConnectionStatus.ACTIVE:
            return connection

        # The stored status stays EXPIRED until the credentials have been re-validated.
        connection.status = ConnectionStatus.ACTIVE
        try:
            self._adapter(connection.provider).refresh_auth(connection)
        except Exception:
            connection.status = ConnectionStatus.EXPIRED
            raise
        self.state_store.set_connection_status(connection_id, ConnectionStatus.ACTIVE)
        self._try_enqueue(connection_id)
        return connection

    def refresh_calendar_list(self, member_id: str, connection_id: str) -> int:
        connection = self._owned_connection(member_id, connection_id)
        discovered = self._adapter(connection.provider).list_calendars(connection)
        existing = {calendar.external_calendar_id: calendar for calendar in self.state_store.list_calendars(connection_id)}

        added = 0
        for item in discovered:
            known = existing.get(item.external_id)
            if known is None:
                self.state_store.add_calendar(connection_id, item, sync_enabled=False)
                added += 1
            elif known.display_name != item.display_name or (item.color and known.color != item.color):
                self.state_store.update_calendar(
                    known.id,
                    display_name=item.display_name,
                    color=item.color or known.color,
                )
        return added

    def update_calendar(
        self,
        member_id: str,
        calendar_id: str,
        *,
        sync_enabled: bool | None = None,
        privacy_mode: PrivacyMode | str | None = None,
        sync_direction: SyncDirection | str | None = None,
    ) -> Calendar:
        connection, calendar = self._owned_calendar(member_id, calendar_id)
        updates: dict[str, object] = {}
        if sync_enabled is not None:
            updates["sync_enabled"] = bool(sync_enabled)
        if privacy_mode is not None:
            updates["privacy_mode"] = PrivacyMode(privacy_mode)
        if sync_direction is not None:
            updates["sync_direction"] = SyncDirection(sync_direction)
        if sync_enabled is False:
            updates["last_sync_token"] = None
        self.state_store.update_calendar(calendar_id, **updates)

        needs_sync = False
        if sync_enabled is False:
            purged = self.state_store.delete_calendar_events(calendar_id)
            logger.info("Disabled calendar %s and removed %s mirrored events", calendar_id, purged)
        elif sync_enabled is True and not calendar.sync_enabled:
            needs_sync = True

        if privacy_mode is not None and PrivacyMode(privacy_mode) != calendar.privacy_mode:
            if PrivacyMode(privacy_mode) == PrivacyMode.BUSY_FREE_ONLY:
                self.state_store.mask_calendar_events(calendar_id)
            elif sync_enabled is not False:
                # Full details come back with the next fetch.
                self.state_store.set_calendar_sync_token(calendar_id, None)
                needs_sync = True

        if needs_sync:
            self._try_enqueue(connection.id)
        updated = self.state_store.get_calendar(calendar_id)
        assert updated is not None
        return updated

    def delete_connection(self, member_id: str, connection_id: str) -> None:
        self._owned_connection(member_id, connection_id)
        self.state_store.delete_connection(connection_id)
        logger.info("Deleted connection %s for member %s", connection_id, member_id)

    def trigger_sync(self, member_id: str, connection_id: str) -> int | None:
        connection = self._owned_connection(member_id, connection_id)
        if connection.status != ConnectionStatus.ACTIVE:
            raise AuthError("Connection has expired; reconnect it first", code=401)
        job_id = self.enqueue_sync(connection_id, True)
        return job_id if isinstance(job_id, int) else None
