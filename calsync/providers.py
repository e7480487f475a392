from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable

import requests

from calsync.errors import AuthError, TransientProviderError
from calsync.models import (
    BUSY_TITLE,
    UNTITLED,
    AppConfig,
    Calendar,
    Connection,
    ConnectionStatus,
    DiscoveredCalendar,
    FetchResult,
    NormalizedEvent,
    Provider,
)
from calsync.state_store import StateStore
from calsync.vault import CredentialVault


logger = logging.getLogger(__name__)


class ProbeStatus(str, Enum):
    FOUND = "found"
    NOT_SUPPORTED = "not_supported"
    AUTH_FAILED = "auth_failed"


@dataclass
class ProbeResult:
    status: ProbeStatus
    value: str | None = None

    @classmethod
    def found(cls, value: str) -> "ProbeResult":
        return cls(ProbeStatus.FOUND, value)

    @classmethod
    def not_supported(cls) -> "ProbeResult":
        return cls(ProbeStatus.NOT_SUPPORTED)

    @classmethod
    def auth_failed(cls) -> "ProbeResult":
        return cls(ProbeStatus.AUTH_FAILED)


@dataclass
class OAuthGrant:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    account_label: str


def first_conclusive(strategies: Iterable[Callable[[], ProbeResult]]) -> ProbeResult | None:
    """Run strategies in order until one finds a value or reports an auth failure."""
    for strategy in strategies:
        result = strategy()
        if result.status != ProbeStatus.NOT_SUPPORTED:
            return result
    return None


def normalize_event(
    calendar: Calendar,
    *,
    external_id: str,
    title: str | None,
    description: str | None,
    location: str | None,
    start_at: datetime | None,
    end_at: datetime | None,
    all_day: bool,
) -> NormalizedEvent:
    if calendar.is_busy_free_only:
        return NormalizedEvent(
            external_id=external_id,
            title=BUSY_TITLE,
            description=None,
            location=None,
            start_at=start_at,
            end_at=end_at,
            all_day=all_day,
        )
    return NormalizedEvent(
        external_id=external_id,
        title=title or UNTITLED,
        description=description or None,
        location=location or None,
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
    )


def send_request(session: requests.Session, method: str, url: str, **kwargs) -> requests.Response:
    try:
        return session.request(method, url, **kwargs)
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise TransientProviderError(f"{method} {url} failed: {exc}") from exc


class CalendarProviderAdapter:
    """Common plumbing for provider adapters.

    Subclasses implement ``refresh_auth``, ``fetch_events`` and ``list_calendars``.
    """

    provider: Provider

    def __init__(
        self,
        state_store: StateStore,
        vault: CredentialVault,
        config: AppConfig,
        session: requests.Session | None = None,
    ) -> None:
        self.state_store = state_store
        self.vault = vault
        self.config = config
        self.session = session or requests.Session()

    @property
    def timeout(self) -> int:
        return self.config.http.timeout_seconds

    def refresh_auth(self, connection: Connection) -> None:
        raise NotImplementedError

    def fetch_events(self, connection: Connection, calendar: Calendar) -> FetchResult:
        raise NotImplementedError

    def list_calendars(self, connection: Connection) -> list[DiscoveredCalendar]:
        raise NotImplementedError

    def decrypt_credential(self, connection: Connection) -> str:
        return self.vault.decrypt(connection.encrypted_credential)

    def store_credential(self, connection: Connection, plaintext: str, expires_at: datetime | None) -> None:
        encrypted = self.vault.encrypt(plaintext)
        self.state_store.update_connection_credential(
            connection.id,
            encrypted_credential=encrypted,
            token_expires_at=expires_at,
        )
        connection.encrypted_credential = encrypted
        connection.token_expires_at = expires_at

    def mark_expired(self, connection: Connection) -> None:
        logger.error("Marking %s connection %s as expired", connection.provider.value, connection.id)
        self.state_store.set_connection_status(connection.id, ConnectionStatus.EXPIRED)
        connection.status = ConnectionStatus.EXPIRED

    def expire(self, connection: Connection, message: str, code: int = 401) -> AuthError:
        self.mark_expired(connection)
        return AuthError(message, code=code)


def build_adapters(
    state_store: StateStore,
    vault: CredentialVault,
    config: AppConfig,
) -> dict[Provider, CalendarProviderAdapter]:
    from calsync.caldav_client import CaldavAdapter
    from calsync.ews_client import EwsAdapter
    from calsync.google_client import GoogleCalendarAdapter
    from calsync.graph_client import GraphCalendarAdapter

    caldav = CaldavAdapter(state_store, vault, config)
    return {
        Provider.GOOGLE: GoogleCalendarAdapter(state_store, vault, config),
        Provider.OUTLOOK: GraphCalendarAdapter(state_store, vault, config),
        Provider.CALDAV: caldav,
        Provider.APPLE: caldav,
        Provider.EXCHANGE_EWS: EwsAdapter(state_store, vault, config),
    }
