"""
Database connection helper.

This module centralizes how connections are created. Right now we use
`psycopg.connect(settings.db_url)` which opens a new connection per call.

Every connection carries both a `connect_timeout` and a server-side
`statement_timeout` so a store call surfaces a failure instead of hanging.

Usage:
    from db import get_conn, store_errors
    with store_errors("load events"):
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
"""

from contextlib import contextmanager

import psycopg
from errors import StoreError
from settings import settings


def get_conn():
    """Return a new psycopg connection using `settings.db_url`."""

    timeout = settings.store_timeout_seconds
    return psycopg.connect(
        settings.db_url,
        connect_timeout=timeout,
        options=f"-c statement_timeout={timeout * 1000}",
    )


@contextmanager
def store_errors(action: str):
    """Translate driver exceptions into `StoreError`.

    Repositories wrap each call with this so services only ever see the
    engine's own error taxonomy.
    """

    try:
        yield
    except psycopg.Error as e:
        raise StoreError(f"{action} failed: {e}") from e
