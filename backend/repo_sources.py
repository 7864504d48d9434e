"""
Repository: source entities (medications, supplements, appointments,
reminders) stored in `source_entities` as JSONB payloads.

Each repository instance serves one `SourceKind`. After a write commits it
publishes a `SourceChange` to its subscribers; the regeneration queue is
the main subscriber. Listeners run after the commit, so a failing
listener never rolls back the entity write.
"""

import logging
from typing import Callable, List, Optional, Protocol

from psycopg.types.json import Jsonb
from db import get_conn, store_errors
from models import Appointment, ChangeKind, SourceChange, SourceKind, parse_source

logger = logging.getLogger(__name__)

Listener = Callable[[SourceChange], None]


class SourceStore(Protocol):
    kind: SourceKind

    def get_by_id(self, source_id: str): ...

    def get_all_by_profile(self, profile_id: str, include_inactive: bool = False) -> list: ...

    def save(self, entity) -> SourceChange: ...

    def delete(self, source_id: str) -> bool: ...

    def decrement_quantity(self, source_id: str) -> Optional[int]: ...

    def subscribe(self, listener: Listener) -> None: ...


def schedule_signature(entity) -> tuple:
    """The fields whose change invalidates already generated future events."""

    if isinstance(entity, Appointment):
        return (entity.scheduled_time, entity.duration, entity.title, entity.is_active)
    rule = entity.frequency_rule.model_dump(mode="json") if entity.frequency_rule else None
    return (repr(rule), tuple(entity.time_of_day), entity.is_active)


class ChangePublisher:
    """Fan-out of `SourceChange` notifications to subscribed listeners."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def publish(self, change: SourceChange) -> None:
        for listener in self._listeners:
            listener(change)


class PgSourceRepo(ChangePublisher):
    """DB access for one source kind. No business logic here."""

    def __init__(self, kind: SourceKind):
        super().__init__()
        self.kind = kind

    def get_by_id(self, source_id: str):
        with store_errors(f"get {self.kind.value}"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT payload FROM source_entities WHERE kind=%s AND id=%s",
                        (self.kind.value, source_id),
                    )
                    row = cur.fetchone()
        return parse_source(row[0]) if row else None

    def get_all_by_profile(self, profile_id: str, include_inactive: bool = False) -> list:
        sql = "SELECT payload FROM source_entities WHERE kind=%s AND profile_id=%s"
        if not include_inactive:
            sql += " AND is_active"
        with store_errors(f"list {self.kind.value}"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql + " ORDER BY created_at ASC", (self.kind.value, profile_id))
                    rows = cur.fetchall()
        return [parse_source(r[0]) for r in rows]

    def save(self, entity) -> SourceChange:
        """Insert or replace `entity`, then publish the change."""

        if entity.kind != self.kind.value:
            raise ValueError(f"{self.kind.value} repository cannot store a {entity.kind}")

        existing = self.get_by_id(entity.id)
        payload = Jsonb(entity.model_dump(mode="json"))
        with store_errors(f"save {self.kind.value}"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "INSERT INTO source_entities (kind, id, profile_id, is_active, payload, created_at) "
                        "VALUES (%s, %s, %s, %s, %s, %s) "
                        "ON CONFLICT (kind, id) DO UPDATE SET "
                        "profile_id=EXCLUDED.profile_id, is_active=EXCLUDED.is_active, "
                        "payload=EXCLUDED.payload, updated_at=now()",
                        (
                            self.kind.value,
                            entity.id,
                            entity.profile_id,
                            entity.is_active,
                            payload,
                            entity.created_at,
                        ),
                    )
                conn.commit()

        if existing is None:
            change = SourceChange(
                kind=self.kind,
                source_id=entity.id,
                profile_id=entity.profile_id,
                change=ChangeKind.CREATED,
            )
        else:
            change = SourceChange(
                kind=self.kind,
                source_id=entity.id,
                profile_id=entity.profile_id,
                change=ChangeKind.UPDATED,
                schedule_changed=schedule_signature(existing) != schedule_signature(entity),
            )
        self.publish(change)
        return change

    def delete(self, source_id: str) -> bool:
        existing = self.get_by_id(source_id)
        if existing is None:
            return False
        with store_errors(f"delete {self.kind.value}"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM source_entities WHERE kind=%s AND id=%s",
                        (self.kind.value, source_id),
                    )
                conn.commit()
        self.publish(
            SourceChange(
                kind=self.kind,
                source_id=source_id,
                profile_id=existing.profile_id,
                change=ChangeKind.DELETED,
            )
        )
        return True

    def decrement_quantity(self, source_id: str) -> Optional[int]:
        """Decrease `current_quantity` by one, never below zero.

        Returns the new quantity, or None when the entity tracks no stock
        or no longer exists.
        """

        with store_errors(f"decrement {self.kind.value} stock"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "UPDATE source_entities SET payload = jsonb_set(payload, '{current_quantity}', "
                        "to_jsonb(GREATEST((payload->>'current_quantity')::int - 1, 0))), "
                        "updated_at=now() "
                        "WHERE kind=%s AND id=%s AND payload->>'current_quantity' IS NOT NULL "
                        "RETURNING (payload->>'current_quantity')::int",
                        (self.kind.value, source_id),
                    )
                    row = cur.fetchone()
                conn.commit()
        return row[0] if row else None
