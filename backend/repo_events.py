"""
Repository: SQL operations for `calendar_events`.

This file contains only DB interaction code. It maps Pydantic models
to SQL parameters and converts DB rows back into `CalendarEvent` models.
Keep business rules out of this module.

Important notes:
- `scheduled_time` is a `TIMESTAMP WITHOUT TIME ZONE` column; values go in
  and come out as naive datetimes, so local wall-clock time never drifts.
- The table carries `UNIQUE (source_id, event_type, scheduled_time)`;
  `create()` uses `ON CONFLICT DO NOTHING` so two writers racing on the
  same obligation cannot produce a duplicate.
- `metadata` is stored as JSONB via `Jsonb`.
- Every method commits before returning; callers expect the write to be
  durable after the method returns.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from psycopg.types.json import Jsonb
from db import get_conn, store_errors
from models import CalendarEvent, EventPatch, EventQuery, EventStats, EventStatus, EventType

_COLUMNS = (
    "id, profile_id, event_type, source_id, title, scheduled_time, "
    "end_time, status, completed_time, metadata"
)


class EventStore(Protocol):
    """What the engine needs from event storage.

    `PgEventRepo` is the production implementation; tests supply an
    in-memory double with the same surface.
    """

    def find_existing(
        self, source_id: str, event_type: EventType, scheduled_time: datetime
    ) -> Optional[CalendarEvent]: ...

    def create(self, event: CalendarEvent) -> Optional[CalendarEvent]: ...

    def get_by_id(self, event_id: str) -> Optional[CalendarEvent]: ...

    def get_by_source(self, source_id: str) -> List[CalendarEvent]: ...

    def update(
        self, event_id: str, patch: EventPatch, expected_status: Optional[EventStatus] = None
    ) -> Optional[CalendarEvent]: ...

    def delete_future_pending(self, source_id: str, after: datetime) -> int: ...

    def delete_by_source(self, source_id: str) -> int: ...

    def query(self, q: EventQuery) -> List[CalendarEvent]: ...

    def get_stats(self, profile_id: str, start: datetime, end: datetime) -> EventStats: ...

    def ping(self) -> None: ...


def _row_to_event(r) -> CalendarEvent:
    return CalendarEvent(
        id=str(r[0]),
        profile_id=r[1],
        event_type=r[2],
        source_id=r[3],
        title=r[4],
        scheduled_time=r[5],
        end_time=r[6],
        status=r[7],
        completed_time=r[8],
        metadata=r[9],
    )


def _metadata_param(event_metadata) -> Optional[Jsonb]:
    if event_metadata is None:
        return None
    return Jsonb(event_metadata.model_dump(mode="json"))


class PgEventRepo:
    """DB access only. No business logic here.

    Responsibilities:
    - Map `CalendarEvent` -> SQL parameters
    - Execute queries and return `CalendarEvent` models
    - Keep transaction/commit boundaries local and explicit
    """

    def find_existing(
        self, source_id: str, event_type: EventType, scheduled_time: datetime
    ) -> Optional[CalendarEvent]:
        with store_errors("find_existing"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT {_COLUMNS} FROM calendar_events "
                        "WHERE source_id=%s AND event_type=%s AND scheduled_time=%s",
                        (source_id, EventType(event_type).value, scheduled_time),
                    )
                    row = cur.fetchone()
                    return _row_to_event(row) if row else None

    def create(self, event: CalendarEvent) -> Optional[CalendarEvent]:
        """Insert one event.

        Returns the event, or None when a row with the same
        `(source_id, event_type, scheduled_time)` already exists.
        """

        with store_errors("create event"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"INSERT INTO calendar_events ({_COLUMNS}) "
                        "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
                        "ON CONFLICT (source_id, event_type, scheduled_time) DO NOTHING",
                        (
                            event.id,
                            event.profile_id,
                            event.event_type.value,
                            event.source_id,
                            event.title,
                            event.scheduled_time,
                            event.end_time,
                            event.status.value,
                            event.completed_time,
                            _metadata_param(event.metadata),
                        ),
                    )
                    inserted = cur.rowcount
                conn.commit()
        return event if inserted else None

    def get_by_id(self, event_id: str) -> Optional[CalendarEvent]:
        with store_errors("get event"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT {_COLUMNS} FROM calendar_events WHERE id=%s", (event_id,))
                    row = cur.fetchone()
                    return _row_to_event(row) if row else None

    def get_by_source(self, source_id: str) -> List[CalendarEvent]:
        with store_errors("get events by source"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT {_COLUMNS} FROM calendar_events "
                        "WHERE source_id=%s ORDER BY scheduled_time DESC",
                        (source_id,),
                    )
                    return [_row_to_event(r) for r in cur.fetchall()]

    def update(
        self, event_id: str, patch: EventPatch, expected_status: Optional[EventStatus] = None
    ) -> Optional[CalendarEvent]:
        """Apply the set fields of `patch`.

        With `expected_status` the update only happens if the row still has
        that status (compare-and-set); None is returned when it did not.
        """

        fields: Dict[str, Any] = patch.model_dump(exclude_unset=True)
        if not fields:
            return self.get_by_id(event_id)

        assignments = []
        params: List[Any] = []
        for column, value in fields.items():
            assignments.append(f"{column}=%s")
            if column == "status":
                params.append(EventStatus(value).value)
            elif column == "metadata":
                params.append(_metadata_param(patch.metadata))
            else:
                params.append(value)
        assignments.append("updated_at=now()")

        where = "id=%s"
        params.append(event_id)
        if expected_status is not None:
            where += " AND status=%s"
            params.append(expected_status.value)

        with store_errors("update event"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"UPDATE calendar_events SET {', '.join(assignments)} "
                        f"WHERE {where} RETURNING {_COLUMNS}",
                        params,
                    )
                    row = cur.fetchone()
                conn.commit()
        return _row_to_event(row) if row else None

    def delete_future_pending(self, source_id: str, after: datetime) -> int:
        """Remove pending events for `source_id` scheduled strictly after `after`."""

        with store_errors("delete future pending events"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM calendar_events "
                        "WHERE source_id=%s AND status='pending' AND scheduled_time > %s",
                        (source_id, after),
                    )
                    deleted = cur.rowcount
                conn.commit()
        return deleted

    def delete_by_source(self, source_id: str) -> int:
        with store_errors("delete events by source"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM calendar_events WHERE source_id=%s", (source_id,))
                    deleted = cur.rowcount
                conn.commit()
        return deleted

    def query(self, q: EventQuery) -> List[CalendarEvent]:
        """Events for a profile ordered by scheduled time (oldest first).

        `start` is inclusive and `end` exclusive; empty filter lists match all.
        """

        clauses = ["profile_id=%s"]
        params: List[Any] = [q.profile_id]
        if q.start is not None:
            clauses.append("scheduled_time >= %s")
            params.append(q.start)
        if q.end is not None:
            clauses.append("scheduled_time < %s")
            params.append(q.end)
        if q.statuses:
            clauses.append("status = ANY(%s)")
            params.append([s.value for s in q.statuses])
        if q.event_types:
            clauses.append("event_type = ANY(%s)")
            params.append([t.value for t in q.event_types])
        params.append(q.limit)

        with store_errors("query events"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT {_COLUMNS} FROM calendar_events "
                        f"WHERE {' AND '.join(clauses)} "
                        "ORDER BY scheduled_time ASC LIMIT %s",
                        params,
                    )
                    return [_row_to_event(r) for r in cur.fetchall()]

    def get_stats(self, profile_id: str, start: datetime, end: datetime) -> EventStats:
        with store_errors("event stats"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT COUNT(*), "
                        "COUNT(*) FILTER (WHERE status='completed'), "
                        "COUNT(*) FILTER (WHERE status='missed'), "
                        "COUNT(*) FILTER (WHERE status='skipped'), "
                        "COUNT(*) FILTER (WHERE status='pending') "
                        "FROM calendar_events "
                        "WHERE profile_id=%s AND scheduled_time >= %s AND scheduled_time < %s",
                        (profile_id, start, end),
                    )
                    total, completed, missed, skipped, pending = cur.fetchone()
        return EventStats(
            total=total, completed=completed, missed=missed, skipped=skipped, pending=pending
        )

    def ping(self) -> None:
        """Lightweight DB health check. Raises on error."""

        with store_errors("ping"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1;")
