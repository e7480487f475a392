from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from calsync.models import (
    BUSY_TITLE,
    Calendar,
    Connection,
    ConnectionStatus,
    DiscoveredCalendar,
    LocalEvent,
    NormalizedEvent,
    PrivacyMode,
    Provider,
    SyncDirection,
    parse_iso_datetime,
    serialize_datetime,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


CALENDAR_MUTABLE_FIELDS = {
    "display_name",
    "color",
    "sync_enabled",
    "privacy_mode",
    "sync_direction",
    "last_sync_token",
}


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS connections (
            id TEXT PRIMARY KEY,
            owner_member_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            account_label TEXT NOT NULL,
            encrypted_credential TEXT NOT NULL,
            server_endpoint TEXT,
            token_expires_at TEXT,
            sync_enabled INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'ACTIVE',
            last_sync_at TEXT,
            sync_interval_minutes INTEGER NOT NULL DEFAULT 15,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS calendars (
            id TEXT PRIMARY KEY,
            connection_id TEXT NOT NULL REFERENCES connections(id) ON DELETE CASCADE,
            external_calendar_id TEXT NOT NULL,
            display_name TEXT NOT NULL,
            color TEXT,
            sync_enabled INTEGER NOT NULL DEFAULT 0,
            privacy_mode TEXT NOT NULL DEFAULT 'FULL_DETAILS',
            sync_direction TEXT NOT NULL DEFAULT 'INBOUND_ONLY',
            last_sync_token TEXT,
            UNIQUE (connection_id, external_calendar_id)
        );

        CREATE TABLE IF NOT EXISTS calendar_events (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            start_at TEXT,
            end_at TEXT,
            all_day INTEGER NOT NULL DEFAULT 0,
            category TEXT NOT NULL DEFAULT 'OTHER',
            source TEXT NOT NULL,
            external_id TEXT,
            external_calendar_id TEXT REFERENCES calendars(id) ON DELETE CASCADE,
            is_read_only INTEGER NOT NULL DEFAULT 0,
            created_by_member_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (external_calendar_id, external_id)
        );

        CREATE TABLE IF NOT EXISTS event_assignees (
            event_id TEXT NOT NULL REFERENCES calendar_events(id) ON DELETE CASCADE,
            member_id TEXT NOT NULL,
            PRIMARY KEY (event_id, member_id)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            connection_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            events_merged INTEGER NOT NULL,
            calendars_failed INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Connections

    @staticmethod
    def _row_to_connection(row: sqlite3.Row) -> Connection:
        return Connection(
            id=str(row["id"]),
            owner_member_id=str(row["owner_member_id"]),
            provider=Provider.parse(row["provider"]),
            account_label=str(row["account_label"]),
            encrypted_credential=str(row["encrypted_credential"]),
            server_endpoint=row["server_endpoint"],
            token_expires_at=parse_iso_datetime(row["token_expires_at"]),
            sync_enabled=bool(row["sync_enabled"]),
            status=ConnectionStatus(row["status"]),
            last_sync_at=parse_iso_datetime(row["last_sync_at"]),
            sync_interval_minutes=int(row["sync_interval_minutes"]),
            created_at=parse_iso_datetime(row["created_at"]),
        )

    def create_connection(
        self,
        *,
        owner_member_id: str,
        provider: Provider,
        account_label: str,
        encrypted_credential: str,
        server_endpoint: str | None = None,
        token_expires_at: datetime | None = None,
        sync_interval_minutes: int = 15,
        calendars: Iterable[tuple[DiscoveredCalendar, bool]] = (),
    ) -> Connection:
        connection_id = _new_id()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO connections(
                        id, owner_member_id, provider, account_label, encrypted_credential,
                        server_endpoint, token_expires_at, sync_enabled, status,
                        sync_interval_minutes, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
                    """,
                    (
                        connection_id,
                        owner_member_id,
                        Provider.parse(provider).value,
                        account_label,
                        encrypted_credential,
                        server_endpoint,
                        serialize_datetime(token_expires_at),
                        ConnectionStatus.ACTIVE.value,
                        int(sync_interval_minutes),
                        _utc_now(),
                    ),
                )
                for discovered, enabled in calendars:
                    self._insert_calendar(conn, connection_id, discovered, enabled)
                conn.commit()
        created = self.get_connection(connection_id)
        assert created is not None
        return created

    def get_connection(self, connection_id: str) -> Connection | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM connections WHERE id = ?", (connection_id,)).fetchone()
        return self._row_to_connection(row) if row else None

    def list_connections(self, owner_member_id: str | None = None) -> list[Connection]:
        with self._lock:
            with self._connect() as conn:
                if owner_member_id is None:
                    rows = conn.execute("SELECT * FROM connections ORDER BY created_at DESC").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM connections WHERE owner_member_id = ? ORDER BY created_at DESC",
                        (owner_member_id,),
                    ).fetchall()
        return [self._row_to_connection(row) for row in rows]

    def list_syncable_connection_ids(self) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id FROM connections
                    WHERE status = ? AND sync_enabled = 1
                    ORDER BY created_at
                    """,
                    (ConnectionStatus.ACTIVE.value,),
                ).fetchall()
        return [str(row["id"]) for row in rows]

    def set_connection_status(self, connection_id: str, status: ConnectionStatus) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE connections SET status = ? WHERE id = ?",
                    (ConnectionStatus(status).value, connection_id),
                )
                conn.commit()

    def update_connection_credential(
        self,
        connection_id: str,
        *,
        encrypted_credential: str,
        token_expires_at: datetime | None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE connections
                    SET encrypted_credential = ?, token_expires_at = ?
                    WHERE id = ?
                    """,
                    (encrypted_credential, serialize_datetime(token_expires_at), connection_id),
                )
                conn.commit()

    def mark_synced(self, connection_id: str, when: datetime) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE connections SET last_sync_at = ? WHERE id = ?",
                    (serialize_datetime(when), connection_id),
                )
                conn.commit()

    def delete_connection(self, connection_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                # Foreign keys cascade to calendars, mirrored events and assignees.
                conn.execute("DELETE FROM connections WHERE id = ?", (connection_id,))
                conn.commit()

    # Calendars

    @staticmethod
    def _row_to_calendar(row: sqlite3.Row) -> Calendar:
        return Calendar(
            id=str(row["id"]),
            connection_id=str(row["connection_id"]),
            external_calendar_id=str(row["external_calendar_id"]),
            display_name=str(row["display_name"]),
            color=row["color"],
            sync_enabled=bool(row["sync_enabled"]),
            privacy_mode=PrivacyMode(row["privacy_mode"]),
            sync_direction=SyncDirection(row["sync_direction"]),
            last_sync_token=row["last_sync_token"],
        )

    @staticmethod
    def _insert_calendar(
        conn: sqlite3.Connection,
        connection_id: str,
        discovered: DiscoveredCalendar,
        sync_enabled: bool,
    ) -> str:
        calendar_id = _new_id()
        conn.execute(
            """
            INSERT INTO calendars(
                id, connection_id, external_calendar_id, display_name, color,
                sync_enabled, privacy_mode, sync_direction
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                calendar_id,
                connection_id,
                discovered.external_id,
                discovered.display_name,
                discovered.color,
                1 if sync_enabled else 0,
                PrivacyMode.FULL_DETAILS.value,
                SyncDirection.INBOUND_ONLY.value,
            ),
        )
        return calendar_id

    def add_calendar(self, connection_id: str, discovered: DiscoveredCalendar, sync_enabled: bool = False) -> Calendar:
        with self._lock:
            with self._connect() as conn:
                calendar_id = self._insert_calendar(conn, connection_id, discovered, sync_enabled)
                conn.commit()
        created = self.get_calendar(calendar_id)
        assert created is not None
        return created

    def get_calendar(self, calendar_id: str) -> Calendar | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM calendars WHERE id = ?", (calendar_id,)).fetchone()
        return self._row_to_calendar(row) if row else None

    def list_calendars(self, connection_id: str, *, sync_enabled_only: bool = False) -> list[Calendar]:
        query = "SELECT * FROM calendars WHERE connection_id = ?"
        if sync_enabled_only:
            query += " AND sync_enabled = 1"
        query += " ORDER BY display_name, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, (connection_id,)).fetchall()
        return [self._row_to_calendar(row) for row in rows]

    def update_calendar(self, calendar_id: str, **fields: Any) -> None:
        unknown = set(fields) - CALENDAR_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown calendar fields: {sorted(unknown)}")
        if not fields:
            return
        assignments: list[str] = []
        values: list[Any] = []
        for key, value in fields.items():
            if isinstance(value, bool):
                value = 1 if value else 0
            elif isinstance(value, (PrivacyMode, SyncDirection)):
                value = value.value
            assignments.append(f"{key} = ?")
            values.append(value)
        values.append(calendar_id)
        with self._lock:
            with self._connect() as conn:
                conn.execute(f"UPDATE calendars SET {', '.join(assignments)} WHERE id = ?", values)  # nosec B608
                conn.commit()

    def set_calendar_sync_token(self, calendar_id: str, token: str | None) -> None:
        self.update_calendar(calendar_id, last_sync_token=token)

    # Mirrored calendar events

    def upsert_synced_event(
        self,
        *,
        external_calendar_id: str,
        event: NormalizedEvent,
        owner_member_id: str,
        source: str,
    ) -> bool:
        """Insert or update by (external_calendar_id, external_id). Returns True when created."""
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id FROM calendar_events
                    WHERE external_calendar_id = ? AND external_id = ?
                    """,
                    (external_calendar_id, event.external_id),
                ).fetchone()
                if row is not None:
                    conn.execute(
                        """
                        UPDATE calendar_events
                        SET title = ?, description = ?, location = ?, start_at = ?, end_at = ?,
                            all_day = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            event.title,
                            event.description,
                            event.location,
                            serialize_datetime(event.start_at),
                            serialize_datetime(event.end_at),
                            1 if event.all_day else 0,
                            now,
                            row["id"],
                        ),
                    )
                    conn.commit()
                    return False

                event_id = _new_id()
                conn.execute(
                    """
                    INSERT INTO calendar_events(
                        id, title, description, location, start_at, end_at, all_day, category,
                        source, external_id, external_calendar_id, is_read_only,
                        created_by_member_id, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'OTHER', ?, ?, ?, 1, ?, ?, ?)
                    """,
                    (
                        event_id,
                        event.title,
                        event.description,
                        event.location,
                        serialize_datetime(event.start_at),
                        serialize_datetime(event.end_at),
                        1 if event.all_day else 0,
                        source,
                        event.external_id,
                        external_calendar_id,
                        owner_member_id,
                        now,
                        now,
                    ),
                )
                conn.execute(
                    "INSERT INTO event_assignees(event_id, member_id) VALUES (?, ?)",
                    (event_id, owner_member_id),
                )
                conn.commit()
                return True

    def delete_synced_event(self, external_calendar_id: str, external_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM calendar_events WHERE external_calendar_id = ? AND external_id = ?",
                    (external_calendar_id, external_id),
                )
                conn.commit()
                return int(cursor.rowcount)

    def delete_calendar_events(self, external_calendar_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM calendar_events WHERE external_calendar_id = ?",
                    (external_calendar_id,),
                )
                conn.commit()
                return int(cursor.rowcount)

    def mask_calendar_events(self, external_calendar_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE calendar_events
                    SET title = ?, description = NULL, location = NULL, updated_at = ?
                    WHERE external_calendar_id = ?
                    """,
                    (BUSY_TITLE, _utc_now(), external_calendar_id),
                )
                conn.commit()
                return int(cursor.rowcount)

    def list_calendar_events(self, external_calendar_id: str) -> list[LocalEvent]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM calendar_events
                    WHERE external_calendar_id = ?
                    ORDER BY start_at, id
                    """,
                    (external_calendar_id,),
                ).fetchall()
                assignees: dict[str, list[str]] = {}
                for row in rows:
                    assignee_rows = conn.execute(
                        "SELECT member_id FROM event_assignees WHERE event_id = ? ORDER BY member_id",
                        (row["id"],),
                    ).fetchall()
                    assignees[str(row["id"])] = [str(item["member_id"]) for item in assignee_rows]
        return [
            LocalEvent(
                id=str(row["id"]),
                title=str(row["title"]),
                description=row["description"],
                location=row["location"],
                start_at=parse_iso_datetime(row["start_at"]),
                end_at=parse_iso_datetime(row["end_at"]),
                all_day=bool(row["all_day"]),
                category=str(row["category"]),
                source=str(row["source"]),
                external_id=row["external_id"],
                external_calendar_id=row["external_calendar_id"],
                is_read_only=bool(row["is_read_only"]),
                created_by_member_id=str(row["created_by_member_id"]),
                assignee_ids=assignees.get(str(row["id"]), []),
            )
            for row in rows
        ]

    def count_calendar_events(self, external_calendar_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM calendar_events WHERE external_calendar_id = ?",
                    (external_calendar_id,),
                ).fetchone()
        return int(row["total"])

    # Sync history

    def record_sync_run(
        self,
        *,
        connection_id: str,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        events_merged: int,
        calendars_failed: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        connection_id, run_at, trigger, status, message, duration_ms,
                        events_merged, calendars_failed
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        connection_id,
                        _utc_now(),
                        trigger,
                        status,
                        message,
                        int(duration_ms),
                        int(events_merged),
                        int(calendars_failed),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, connection_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if connection_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, connection_id, run_at, trigger, status, message, duration_ms,
                               events_merged, calendars_failed
                        FROM sync_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, connection_id, run_at, trigger, status, message, duration_ms,
                               events_merged, calendars_failed
                        FROM sync_runs
                        WHERE connection_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (connection_id, max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]
