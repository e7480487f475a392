from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from calsync.models import Calendar, Connection, NormalizedEvent
from calsync.state_store import StateStore


@dataclass
class MergeOutcome:
    created: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated + self.deleted


def merge_events(
    state_store: StateStore,
    *,
    connection: Connection,
    calendar: Calendar,
    events: Iterable[NormalizedEvent],
) -> MergeOutcome:
    """Apply fetched events to the mirrored copies of ``calendar``.

    Tombstones delete by external id (absent rows are ignored); everything
    else is upserted by (calendar, external id). Events arrive already masked.
    """
    outcome = MergeOutcome()
    for event in events:
        if event.is_cancelled:
            outcome.deleted += state_store.delete_synced_event(calendar.id, event.external_id)
            continue
        created = state_store.upsert_synced_event(
            external_calendar_id=calendar.id,
            event=event,
            owner_member_id=connection.owner_member_id,
            source=connection.provider.value,
        )
        if created:
            outcome.created += 1
        else:
            outcome.updated += 1
    return outcome
