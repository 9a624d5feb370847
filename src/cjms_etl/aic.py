"""cjms_etl.aic

Storage helpers for the live AIC table and its archive.

Depends on: 0001_aic (aic), 0002_aic_archive (aic_archive)

All functions take an open psycopg connection; the caller manages the
transaction.  psycopg errors propagate unchanged so the pipeline can
classify them per stage.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from uuid import UUID

import psycopg

from cjms_etl.models import (
    DEFAULT_AIC_EXPIRATION_DAYS,
    AttributionArchiveRecord,
    AttributionRecord,
    aic_expiration,
)
from cjms_etl.normalize import utc_now
from cjms_etl.shared import AttributionNotFoundError

_AIC_COLS = "id, cj_event_value, flow_id, created, expires"


# ---------------------------------------------------------------------------
# Create / update (ingestion side)
# ---------------------------------------------------------------------------

def create(
    conn: psycopg.Connection,
    cj_event_value: str,
    flow_id: str,
    expiration_days: int = DEFAULT_AIC_EXPIRATION_DAYS,
    now: datetime | None = None,
) -> AttributionRecord:
    created = now or utc_now()
    row = conn.execute(
        f"""
        INSERT INTO aic ({_AIC_COLS})
        VALUES (%s, %s, %s, %s, %s)
        RETURNING {_AIC_COLS}
        """,
        (uuid.uuid4(), cj_event_value, flow_id, created,
         aic_expiration(created, expiration_days)),
    ).fetchone()
    return AttributionRecord(*row)


def update(
    conn: psycopg.Connection,
    aic_id: UUID,
    cj_event_value: str,
    flow_id: str,
    expiration_days: int = DEFAULT_AIC_EXPIRATION_DAYS,
    now: datetime | None = None,
) -> AttributionRecord:
    """Update an AIC.  created/expires restart only when cj_event_value changes."""
    existing = fetch_one_by_id(conn, aic_id)
    if existing is None:
        raise AttributionNotFoundError(str(aic_id))

    created, expires = existing.created, existing.expires
    if existing.cj_event_value != cj_event_value:
        created = now or utc_now()
        expires = aic_expiration(created, expiration_days)

    row = conn.execute(
        f"""
        UPDATE aic
        SET cj_event_value = %s,
            flow_id = %s,
            created = %s,
            expires = %s
        WHERE id = %s
        RETURNING {_AIC_COLS}
        """,
        (cj_event_value, flow_id, created, expires, aic_id),
    ).fetchone()
    return AttributionRecord(*row)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def fetch_one_by_id(conn: psycopg.Connection, aic_id: UUID) -> AttributionRecord | None:
    row = conn.execute(
        f"SELECT {_AIC_COLS} FROM aic WHERE id = %s",
        (aic_id,),
    ).fetchone()
    return AttributionRecord(*row) if row else None


def fetch_one_by_flow_id(conn: psycopg.Connection, flow_id: str) -> AttributionRecord | None:
    """Return the newest live AIC for flow_id, or None."""
    row = conn.execute(
        f"""
        SELECT {_AIC_COLS} FROM aic
        WHERE flow_id = %s
        ORDER BY created DESC, id ASC
        LIMIT 1
        """,
        (flow_id,),
    ).fetchone()
    return AttributionRecord(*row) if row else None


# ---------------------------------------------------------------------------
# Retirement
# ---------------------------------------------------------------------------

def archive(conn: psycopg.Connection, aic: AttributionRecord) -> AttributionArchiveRecord:
    """Write the archive snapshot for aic.

    Idempotent: a snapshot already present for aic.id is kept as-is and
    returned, so a retry after a crash between archive and delete does not
    duplicate it.
    """
    conn.execute(
        f"""
        INSERT INTO aic_archive ({_AIC_COLS})
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (id) DO NOTHING
        """,
        (aic.id, aic.cj_event_value, aic.flow_id, aic.created, aic.expires),
    )
    snapshot = fetch_archive_by_id(conn, aic.id)
    if snapshot is None:
        raise psycopg.DataError(f"aic_archive row for {aic.id} missing after insert")
    return snapshot


def delete(conn: psycopg.Connection, aic_id: UUID) -> int:
    """Delete a live AIC.  Returns the number of rows removed."""
    cur = conn.execute("DELETE FROM aic WHERE id = %s", (aic_id,))
    return cur.rowcount


def fetch_archive_by_id(
    conn: psycopg.Connection, aic_id: UUID
) -> AttributionArchiveRecord | None:
    row = conn.execute(
        f"SELECT {_AIC_COLS}, archived_at FROM aic_archive WHERE id = %s",
        (aic_id,),
    ).fetchone()
    return AttributionArchiveRecord(*row) if row else None
