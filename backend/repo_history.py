"""
Repository: the append-only dose ledgers (`medication_history`,
`supplement_history`).

Rows are never updated in place. A correction for an already recorded
dose inserts a new revision for the same `(source_id, scheduled_time)`;
readers only ever see the latest revision per key, and the older rows
remain as the audit trail.
"""

from datetime import datetime
from typing import List, Optional, Protocol

from db import get_conn, store_errors
from models import DoseStatus, HistoryEntry, SourceKind

_TABLES = {
    SourceKind.MEDICATION: ("medication_history", "medication_id"),
    SourceKind.SUPPLEMENT: ("supplement_history", "supplement_id"),
}


class LedgerStore(Protocol):
    def upsert_status(
        self,
        profile_id: str,
        source_id: str,
        scheduled_time: datetime,
        status: DoseStatus,
        actual_time: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> HistoryEntry: ...

    def revisions(self, source_id: str, scheduled_time: datetime) -> List[HistoryEntry]: ...

    def query_by_date_range(
        self,
        profile_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        source_id: Optional[str] = None,
    ) -> List[HistoryEntry]: ...

    def delete_by_source(self, source_id: str) -> int: ...


def _row_to_entry(r) -> HistoryEntry:
    return HistoryEntry(
        id=r[0],
        profile_id=r[1],
        source_id=r[2],
        scheduled_time=r[3],
        actual_time=r[4],
        status=r[5],
        notes=r[6],
    )


class PgHistoryRepo:
    """Ledger access for one source kind (medication or supplement)."""

    def __init__(self, kind: SourceKind):
        if kind not in _TABLES:
            raise ValueError(f"No dose ledger for {kind.value}")
        self.kind = kind
        self.table, self.source_column = _TABLES[kind]
        self._columns = (
            f"id, profile_id, {self.source_column}, scheduled_time, actual_time, status, notes"
        )

    def upsert_status(
        self,
        profile_id: str,
        source_id: str,
        scheduled_time: datetime,
        status: DoseStatus,
        actual_time: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> HistoryEntry:
        """Record `status` for one scheduled dose.

        Idempotent per `(source_id, scheduled_time)`: when the latest revision
        already carries `status`, it is returned and nothing is written.
        The transaction-scoped advisory lock keeps the read and the insert
        atomic with respect to other writers for the same key.
        """

        with store_errors(f"upsert {self.table}"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (f"{self.table}:{source_id}:{scheduled_time.isoformat()}",),
                    )
                    cur.execute(
                        f"SELECT {self._columns} FROM {self.table} "
                        f"WHERE {self.source_column}=%s AND scheduled_time=%s "
                        "ORDER BY id DESC LIMIT 1",
                        (source_id, scheduled_time),
                    )
                    row = cur.fetchone()
                    if row and row[5] == status.value:
                        conn.commit()
                        return _row_to_entry(row)

                    cur.execute(
                        f"INSERT INTO {self.table} "
                        f"(profile_id, {self.source_column}, scheduled_time, actual_time, status, notes) "
                        f"VALUES (%s, %s, %s, %s, %s, %s) RETURNING {self._columns}",
                        (profile_id, source_id, scheduled_time, actual_time, status.value, notes),
                    )
                    row = cur.fetchone()
                conn.commit()
        return _row_to_entry(row)

    def revisions(self, source_id: str, scheduled_time: datetime) -> List[HistoryEntry]:
        """Full audit trail for one dose, oldest first."""

        with store_errors(f"read {self.table}"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT {self._columns} FROM {self.table} "
                        f"WHERE {self.source_column}=%s AND scheduled_time=%s ORDER BY id ASC",
                        (source_id, scheduled_time),
                    )
                    return [_row_to_entry(r) for r in cur.fetchall()]

    def query_by_date_range(
        self,
        profile_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        source_id: Optional[str] = None,
    ) -> List[HistoryEntry]:
        """Latest revision of every dose in `[start, end)`, newest dose first."""

        clauses = ["profile_id=%s"]
        params: list = [profile_id]
        if start is not None:
            clauses.append("scheduled_time >= %s")
            params.append(start)
        if end is not None:
            clauses.append("scheduled_time < %s")
            params.append(end)
        if source_id is not None:
            clauses.append(f"{self.source_column}=%s")
            params.append(source_id)

        with store_errors(f"query {self.table}"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT * FROM ("
                        f"SELECT DISTINCT ON ({self.source_column}, scheduled_time) {self._columns} "
                        f"FROM {self.table} WHERE {' AND '.join(clauses)} "
                        f"ORDER BY {self.source_column}, scheduled_time, id DESC"
                        ") latest ORDER BY scheduled_time DESC",
                        params,
                    )
                    return [_row_to_entry(r) for r in cur.fetchall()]

    def delete_by_source(self, source_id: str) -> int:
        with store_errors(f"delete {self.table}"):
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"DELETE FROM {self.table} WHERE {self.source_column}=%s", (source_id,)
                    )
                    deleted = cur.rowcount
                conn.commit()
        return deleted
