"""cjms_etl.subscriptions

Storage helpers for the subscriptions table.

Depends on: 0003_subscriptions (subscriptions, uq_subscriptions_flow_id)
"""

from __future__ import annotations

import psycopg

from cjms_etl.models import Subscription, parse_status_history

# SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"

_SUB_COLS = (
    "id, flow_id, subscription_id, report_timestamp, subscription_created, "
    "fxa_uid, quantity, plan_id, plan_currency, plan_amount, country, "
    "aic_id, aic_expires, cj_event_value, status, status_history"
)


def is_unique_violation(exc: BaseException) -> bool:
    return getattr(exc, "sqlstate", None) == UNIQUE_VIOLATION


def create_from_sub(conn: psycopg.Connection, sub: Subscription) -> Subscription:
    """INSERT sub.  Duplicate flow_id surfaces as psycopg.errors.UniqueViolation."""
    conn.execute(
        f"""
        INSERT INTO subscriptions ({_SUB_COLS})
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        """,
        (
            sub.id, sub.flow_id, sub.subscription_id, sub.report_timestamp,
            sub.subscription_created, sub.fxa_uid, sub.quantity, sub.plan_id,
            sub.plan_currency, sub.plan_amount, sub.country, sub.aic_id,
            sub.aic_expires, sub.cj_event_value, sub.status,
            sub.status_history_json(),
        ),
    )
    return sub


def fetch_one_by_flow_id(conn: psycopg.Connection, flow_id: str) -> Subscription | None:
    row = conn.execute(
        f"SELECT {_SUB_COLS} FROM subscriptions WHERE flow_id = %s",
        (flow_id,),
    ).fetchone()
    if row is None:
        return None
    return Subscription(*row[:-1], status_history=parse_status_history(row[-1]))


def count_by_flow_id(conn: psycopg.Connection, flow_id: str) -> int:
    row = conn.execute(
        "SELECT count(*) FROM subscriptions WHERE flow_id = %s",
        (flow_id,),
    ).fetchone()
    return int(row[0])
