from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from calsync.errors import AuthError, PartialCalendarError
from calsync.merge import merge_events
from calsync.models import ConnectionStatus, Provider, SyncResult, utc_now
from calsync.providers import CalendarProviderAdapter
from calsync.state_store import StateStore


logger = logging.getLogger(__name__)


class SyncEngine:
    def __init__(
        self,
        state_store: StateStore,
        adapters: dict[Provider, CalendarProviderAdapter],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.adapters = adapters
        self.clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def resolve_adapter(self, provider: Provider) -> CalendarProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ValueError(f"No adapter registered for provider {provider.value}")
        return adapter

    def _try_lock(self, connection_id: str) -> threading.Lock | None:
        with self._locks_guard:
            lock = self._locks.setdefault(connection_id, threading.Lock())
            return lock if lock.acquire(blocking=False) else None

    def _drop_lock(self, connection_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(connection_id, None)

    def _prune_locks(self, live_ids: set[str]) -> None:
        with self._locks_guard:
            for connection_id, lock in list(self._locks.items()):
                if connection_id not in live_ids and not lock.locked():
                    del self._locks[connection_id]

    def _elapsed_ms(self, started_at: datetime) -> int:
        return int((self.clock() - started_at).total_seconds() * 1000)

    def _finish(
        self,
        *,
        connection_id: str,
        trigger: str,
        status: str,
        message: str,
        started_at: datetime,
        events_merged: int = 0,
        calendars_failed: int = 0,
        record: bool = True,
    ) -> SyncResult:
        duration_ms = self._elapsed_ms(started_at)
        if record:
            self.state_store.record_sync_run(
                connection_id=connection_id,
                trigger=trigger,
                status=status,
                message=message,
                duration_ms=duration_ms,
                events_merged=events_merged,
                calendars_failed=calendars_failed,
            )
        return SyncResult(
            connection_id=connection_id,
            status=status,
            message=message,
            duration_ms=duration_ms,
            events_merged=events_merged,
            calendars_failed=calendars_failed,
            trigger=trigger,
            run_at=started_at,
        )

    def sync_connection(self, connection_id: str, force: bool = False, trigger: str = "job") -> SyncResult:
        started_at = self.clock()
        lock = self._try_lock(connection_id)
        if lock is None:
            logger.info("Sync for connection %s already running; skipping", connection_id)
            return self._finish(
                connection_id=connection_id,
                trigger=trigger,
                status="skipped",
                message="sync already in progress",
                started_at=started_at,
            )

        events_merged = 0
        calendars_failed = 0
        try:
            # Loaded under the lock; a run that just finished may have rotated the credential or expired it.
            connection = self.state_store.get_connection(connection_id)
            if connection is None:
                self._drop_lock(connection_id)
                return self._finish(
                    connection_id=connection_id,
                    trigger=trigger,
                    status="skipped",
                    message="connection not found",
                    started_at=started_at,
                    record=False,
                )
            if not connection.sync_enabled or connection.status != ConnectionStatus.ACTIVE:
                return self._finish(
                    connection_id=connection_id,
                    trigger=trigger,
                    status="skipped",
                    message=f"connection is {connection.status.value.lower()} or disabled",
                    started_at=started_at,
                )
            if not force and not connection.is_due(started_at):
                return self._finish(
                    connection_id=connection_id,
                    trigger=trigger,
                    status="skipped",
                    message="sync interval not elapsed",
                    started_at=started_at,
                    record=False,
                )

            adapter = self.resolve_adapter(connection.provider)
            try:
                adapter.refresh_auth(connection)
                calendars = self.state_store.list_calendars(connection_id, sync_enabled_only=True)
                for calendar in calendars:
                    try:
                        result = adapter.fetch_events(connection, calendar)
                        outcome = merge_events(
                            self.state_store,
                            connection=connection,
                            calendar=calendar,
                            events=result.events,
                        )
                        if result.next_sync_token:
                            self.state_store.set_calendar_sync_token(calendar.id, result.next_sync_token)
                        events_merged += outcome.total
                    except AuthError:
                        raise
                    except Exception as exc:
                        calendars_failed += 1
                        logger.warning("%s", PartialCalendarError(calendar.id, exc), exc_info=True)
            except AuthError as exc:
                self.state_store.set_connection_status(connection_id, ConnectionStatus.EXPIRED)
                logger.error("Connection %s expired: %s", connection_id, exc)
                return self._finish(
                    connection_id=connection_id,
                    trigger=trigger,
                    status="expired",
                    message=str(exc),
                    started_at=started_at,
                    events_merged=events_merged,
                    calendars_failed=calendars_failed,
                )

            self.state_store.mark_synced(connection_id, self.clock())
            status = "partial" if calendars_failed else "success"
            message = f"Merged {events_merged} events from {len(calendars)} calendars."
            if calendars_failed:
                message += f" {calendars_failed} calendars failed."
            logger.info("Synced connection %s: %s", connection_id, message)
            return self._finish(
                connection_id=connection_id,
                trigger=trigger,
                status=status,
                message=message,
                started_at=started_at,
                events_merged=events_merged,
                calendars_failed=calendars_failed,
            )
        except Exception as exc:
            self._finish(
                connection_id=connection_id,
                trigger=trigger,
                status="error",
                message=f"{type(exc).__name__}: {exc}",
                started_at=started_at,
                events_merged=events_merged,
                calendars_failed=calendars_failed,
            )
            raise
        finally:
            lock.release()

    def sync_all(self, trigger: str = "periodic") -> list[SyncResult]:
        results: list[SyncResult] = []
        connection_ids = self.state_store.list_syncable_connection_ids()
        self._prune_locks(set(connection_ids))
        for connection_id in connection_ids:
            try:
                results.append(self.sync_connection(connection_id, force=False, trigger=trigger))
            except Exception:
                logger.exception("Periodic sync failed for connection %s", connection_id)
        return results
