from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


FULL_SYNC_PAST_DAYS = 30
FULL_SYNC_FUTURE_DAYS = 365
BUSY_TITLE = "Busy"
UNTITLED = "Untitled"
APPLE_CALDAV_URL = "https://caldav.icloud.com"

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Graph sends seven fractional digits; fromisoformat accepts at most six.
    text = _FRACTION_PATTERN.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def sync_window(
    now: datetime | None = None,
    past_days: int = FULL_SYNC_PAST_DAYS,
    future_days: int = FULL_SYNC_FUTURE_DAYS,
) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now or utc_now())
    return now_utc - timedelta(days=past_days), now_utc + timedelta(days=future_days)


class Provider(str, Enum):
    GOOGLE = "GOOGLE"
    OUTLOOK = "OUTLOOK"
    CALDAV = "CALDAV"
    APPLE = "APPLE"
    EXCHANGE_EWS = "EXCHANGE_EWS"

    @classmethod
    def parse(cls, value: "str | Provider") -> "Provider":
        if isinstance(value, Provider):
            return value
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError as exc:
            raise ValueError(f"Unknown calendar provider: {value!r}") from exc

    @property
    def is_caldav(self) -> bool:
        return self in {Provider.CALDAV, Provider.APPLE}

    @property
    def requires_endpoint(self) -> bool:
        return self in {Provider.CALDAV, Provider.APPLE, Provider.EXCHANGE_EWS}


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


class PrivacyMode(str, Enum):
    FULL_DETAILS = "FULL_DETAILS"
    BUSY_FREE_ONLY = "BUSY_FREE_ONLY"


class SyncDirection(str, Enum):
    INBOUND_ONLY = "INBOUND_ONLY"
    TWO_WAY = "TWO_WAY"


@dataclass
class SyncConfig:
    periodic_interval_seconds: int = 300
    worker_concurrency: int = 3
    job_attempts: int = 3
    backoff_delay_seconds: float = 5.0
    keep_completed_jobs: int = 100
    keep_failed_jobs: int = 50
    poll_interval_seconds: float = 1.0
    default_interval_minutes: int = 15

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            periodic_interval_seconds=max(30, int(data.get("periodic_interval_seconds", 300))),
            worker_concurrency=max(1, int(data.get("worker_concurrency", 3))),
            job_attempts=max(1, int(data.get("job_attempts", 3))),
            backoff_delay_seconds=max(0.0, float(data.get("backoff_delay_seconds", 5.0))),
            keep_completed_jobs=max(0, int(data.get("keep_completed_jobs", 100))),
            keep_failed_jobs=max(0, int(data.get("keep_failed_jobs", 50))),
            poll_interval_seconds=max(0.05, float(data.get("poll_interval_seconds", 1.0))),
            default_interval_minutes=max(1, int(data.get("default_interval_minutes", 15))),
        )


@dataclass
class HttpConfig:
    timeout_seconds: int = 30
    max_redirects: int = 5

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "HttpConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            max_redirects=max(1, int(data.get("max_redirects", 5))),
        )


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    token_uri: str = "https://oauth2.googleapis.com/token"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            redirect_uri=str(data.get("redirect_uri", "")).strip(),
            token_uri=str(data.get("token_uri", "")).strip() or "https://oauth2.googleapis.com/token",
        )


@dataclass
class MicrosoftConfig:
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = "common"
    redirect_uri: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MicrosoftConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            tenant_id=str(data.get("tenant_id", "common")).strip() or "common",
            redirect_uri=str(data.get("redirect_uri", "")).strip(),
        )

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant_id}"


@dataclass
class VaultConfig:
    encryption_key: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "VaultConfig":
        data = data or {}
        return cls(encryption_key=str(data.get("encryption_key", "")).strip())


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    microsoft: MicrosoftConfig = field(default_factory=MicrosoftConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            http=HttpConfig.from_dict(data.get("http")),
            google=GoogleConfig.from_dict(data.get("google")),
            microsoft=MicrosoftConfig.from_dict(data.get("microsoft")),
            vault=VaultConfig.from_dict(data.get("vault")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Connection:
    id: str
    owner_member_id: str
    provider: Provider
    account_label: str
    encrypted_credential: str
    server_endpoint: str | None = None
    token_expires_at: datetime | None = None
    sync_enabled: bool = True
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    last_sync_at: datetime | None = None
    sync_interval_minutes: int = 15
    created_at: datetime | None = None
    # Short-lived access token held for one sync invocation; never persisted.
    session_access_token: str | None = field(default=None, repr=False, compare=False)

    def is_due(self, now: datetime) -> bool:
        if self.last_sync_at is None:
            return True
        next_sync_at = self.last_sync_at + timedelta(minutes=self.sync_interval_minutes)
        return now >= next_sync_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_member_id": self.owner_member_id,
            "provider": self.provider.value,
            "account_label": self.account_label,
            "server_endpoint": self.server_endpoint,
            "sync_enabled": self.sync_enabled,
            "status": self.status.value,
            "last_sync_at": serialize_datetime(self.last_sync_at),
            "sync_interval_minutes": self.sync_interval_minutes,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class Calendar:
    id: str
    connection_id: str
    external_calendar_id: str
    display_name: str
    color: str | None = None
    sync_enabled: bool = False
    privacy_mode: PrivacyMode = PrivacyMode.FULL_DETAILS
    sync_direction: SyncDirection = SyncDirection.INBOUND_ONLY
    last_sync_token: str | None = None

    @property
    def is_busy_free_only(self) -> bool:
        return self.privacy_mode == PrivacyMode.BUSY_FREE_ONLY

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "external_calendar_id": self.external_calendar_id,
            "display_name": self.display_name,
            "color": self.color,
            "sync_enabled": self.sync_enabled,
            "privacy_mode": self.privacy_mode.value,
            "sync_direction": self.sync_direction.value,
            "has_sync_token": self.last_sync_token is not None,
        }


@dataclass
class NormalizedEvent:
    external_id: str
    title: str = ""
    description: str | None = None
    location: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day: bool = False
    is_cancelled: bool = False

    @classmethod
    def tombstone(cls, external_id: str) -> "NormalizedEvent":
        return cls(external_id=external_id, is_cancelled=True)


@dataclass
class FetchResult:
    events: list[NormalizedEvent] = field(default_factory=list)
    next_sync_token: str | None = None


@dataclass
class DiscoveredCalendar:
    external_id: str
    display_name: str
    color: str | None = None
    primary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class LocalEvent:
    id: str
    title: str
    description: str | None
    location: str | None
    start_at: datetime | None
    end_at: datetime | None
    all_day: bool
    category: str
    source: str
    external_id: str | None
    external_calendar_id: str | None
    is_read_only: bool
    created_by_member_id: str
    assignee_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_at"] = serialize_datetime(self.start_at)
        payload["end_at"] = serialize_datetime(self.end_at)
        return payload


@dataclass
class SyncResult:
    connection_id: str
    status: str
    message: str
    duration_ms: int = 0
    events_merged: int = 0
    calendars_failed: int = 0
    trigger: str = "job"
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "events_merged": self.events_merged,
            "calendars_failed": self.calendars_failed,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }
