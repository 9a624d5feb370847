"""Integration tests for the check_subscriptions reconciliation pipeline.

Runs the full decode → resolve → archive → delete → insert path against a
live DB.  Storage failures are injected with plpgsql triggers.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from cjms_etl import aic as aic_store
from cjms_etl import subscriptions as subscription_store
from cjms_etl.check_subscriptions import (
    CheckSubscriptionsResult,
    run_check_subscriptions,
)
from cjms_etl.shared import ArchiveDeleteError, ReconcileCounters, RejectWriter
from cjms_etl.warehouse import RowsResultSet

T0 = datetime(2021, 10, 1, 12, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2021, 10, 5, 9, 30, 0, tzinfo=timezone.utc)
NOW = datetime(2021, 10, 6, 0, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _row(**overrides) -> dict:
    row = {
        "flow_id": "f1",
        "subscription_id": "s1",
        "report_timestamp": T1.isoformat(),
        "subscription_created": T1.isoformat(),
        "fxa_uid": "u1",
        "quantity": 1,
        "plan_id": "p1",
        "plan_currency": "usd",
        "plan_amount": 999,
        "country": "US",
    }
    row.update(overrides)
    return row


def _run(conn: psycopg.Connection, rows: list[dict], **kwargs) -> CheckSubscriptionsResult:
    return run_check_subscriptions(
        conn, RowsResultSet(rows), clock=lambda: NOW, **kwargs
    )


def _count(conn: psycopg.Connection, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


def _install_trigger(
    conn: psycopg.Connection, table: str, timing: str, body: str
) -> None:
    """Attach a row trigger to table with the given plpgsql body."""
    fn = f"test_{table}_{timing.lower().replace(' ', '_')}"
    conn.execute(
        f"""
        CREATE FUNCTION {fn}() RETURNS trigger AS $$
        BEGIN
            {body}
        END
        $$ LANGUAGE plpgsql
        """
    )
    conn.execute(
        f"CREATE TRIGGER {fn}_trg {timing} ON {table} "
        f"FOR EACH ROW EXECUTE FUNCTION {fn}()"
    )


def _events(caplog) -> list[str]:
    return [getattr(r, "event", None) for r in caplog.records]


# ---------------------------------------------------------------------------
# Scenario A: happy path
# ---------------------------------------------------------------------------

class TestReconcile:
    def test_scenario_a_enriches_and_retires_aic(self, conn):
        aic = aic_store.create(conn, "cj1", "f1", now=T0)

        result = _run(conn, [_row()])

        assert result.ok
        assert result.counters.subscriptions_created == 1
        assert result.counters.aics_archived == 1

        sub = subscription_store.fetch_one_by_flow_id(conn, "f1")
        assert sub is not None
        assert sub.aic_id == aic.id
        assert sub.cj_event_value == "cj1"
        assert sub.aic_expires == T0 + timedelta(days=30)
        assert sub.status == "not_reported"
        assert len(sub.status_history) == 1
        assert sub.status_history[0].status == "not_reported"
        assert sub.status_history[0].t == NOW

        snap = aic_store.fetch_archive_by_id(conn, aic.id)
        assert snap is not None and snap.matches(aic)
        assert aic_store.fetch_one_by_id(conn, aic.id) is None

    def test_decoded_fields_are_persisted(self, conn):
        aic_store.create(conn, "cj1", "f1", now=T0)
        _run(conn, [_row(quantity="3", plan_amount="4999", country=None)])
        sub = subscription_store.fetch_one_by_flow_id(conn, "f1")
        assert sub.subscription_id == "s1"
        assert sub.fxa_uid == "u1"
        assert sub.quantity == 3
        assert sub.plan_id == "p1"
        assert sub.plan_currency == "usd"
        assert sub.plan_amount == 4999
        assert sub.country is None
        assert sub.report_timestamp == T1
        assert sub.subscription_created == T1

    def test_exactly_one_archive_snapshot_after_reconcile(self, conn):
        aic = aic_store.create(conn, "cj1", "f1", now=T0)
        _run(conn, [_row()])
        count = conn.execute(
            "SELECT count(*) FROM aic_archive WHERE id = %s", (aic.id,)
        ).fetchone()[0]
        assert count == 1

    def test_snapshot_left_by_earlier_crash_is_not_duplicated(self, conn):
        # Archive written, delete never happened: a retry must reuse the snapshot
        aic = aic_store.create(conn, "cj1", "f1", now=T0)
        aic_store.archive(conn, aic)

        result = _run(conn, [_row()])

        assert result.counters.subscriptions_created == 1
        assert _count(conn, "aic_archive") == 1
        assert aic_store.fetch_one_by_id(conn, aic.id) is None


# ---------------------------------------------------------------------------
# Scenarios B and C: recoverable skips before any write
# ---------------------------------------------------------------------------

class TestSkips:
    def test_scenario_b_missing_plan_amount(self, conn, caplog):
        aic = aic_store.create(conn, "cj1", "f1", now=T0)
        row = _row()
        del row["plan_amount"]

        with caplog.at_level(logging.WARNING, logger="cjms_etl.check_subscriptions"):
            result = _run(conn, [row])

        assert result.ok
        assert result.counters.decoding_errors == 1
        assert result.counters.rows_skipped == 1
        assert _count(conn, "subscriptions") == 0
        assert _count(conn, "aic_archive") == 0
        assert aic_store.fetch_one_by_id(conn, aic.id) == aic
        assert _events(caplog).count("decoding_error") == 1

    @pytest.mark.parametrize("field", [
        "flow_id", "subscription_id", "report_timestamp", "subscription_created",
        "fxa_uid", "quantity", "plan_id", "plan_currency", "plan_amount",
    ])
    def test_any_missing_required_field_mutates_nothing(self, conn, field):
        aic = aic_store.create(conn, "cj1", "f1", now=T0)
        result = _run(conn, [_row(**{field: None})])
        assert result.counters.decoding_errors == 1
        assert _count(conn, "subscriptions") == 0
        assert _count(conn, "aic_archive") == 0
        assert aic_store.fetch_one_by_id(conn, aic.id) == aic

    def test_scenario_c_no_matching_aic(self, conn, caplog):
        other = aic_store.create(conn, "cj1", "f1", now=T0)

        with caplog.at_level(logging.WARNING, logger="cjms_etl.check_subscriptions"):
            result = _run(conn, [_row(flow_id="f2")])

        assert result.ok
        assert result.counters.aic_not_found == 1
        assert _count(conn, "subscriptions") == 0
        assert _count(conn, "aic_archive") == 0
        assert aic_store.fetch_one_by_id(conn, other.id) == other
        assert _events(caplog).count("aic_not_found") == 1

    def test_skipped_rows_go_to_rejects(self, conn, tmp_path):
        rejects_path = tmp_path / "rejects.csv"
        rejects = RejectWriter(rejects_path)
        try:
            _run(conn, [_row(flow_id="f2")], rejects=rejects)
        finally:
            rejects.close()
        content = rejects_path.read_text(encoding="utf-8")
        assert "_reject_reason" in content
        assert "aic_not_found" in content

    def test_batch_continues_after_skips(self, conn):
        aic_store.create(conn, "cj3", "f3", now=T0)
        rows = [
            _row(flow_id="f1", plan_amount="not-a-number"),
            _row(flow_id="f2"),
            _row(flow_id="f3", subscription_id="s3"),
        ]
        result = _run(conn, rows)
        assert result.counters.rows_read == 3
        assert result.counters.rows_skipped == 2
        assert result.counters.subscriptions_created == 1
        assert subscription_store.fetch_one_by_flow_id(conn, "f3") is not None


# ---------------------------------------------------------------------------
# Scenario D: duplicate flow_id
# ---------------------------------------------------------------------------

class TestUniqueness:
    def test_scenario_d_second_row_is_duplicate_key(self, conn, caplog):
        first = aic_store.create(conn, "cj3a", "f3", now=T0)
        second = aic_store.create(conn, "cj3b", "f3", now=T0 + timedelta(hours=1))
        aic_store.create(conn, "cj4", "f4", now=T0)
        rows = [
            _row(flow_id="f3", subscription_id="s3a"),
            _row(flow_id="f3", subscription_id="s3b"),
            _row(flow_id="f4", subscription_id="s4"),
        ]

        with caplog.at_level(logging.WARNING, logger="cjms_etl.check_subscriptions"):
            result = _run(conn, rows)

        assert result.ok
        assert result.counters.uniqueness_violations == 1
        assert result.counters.subscriptions_created == 2
        assert subscription_store.count_by_flow_id(conn, "f3") == 1
        assert subscription_store.fetch_one_by_flow_id(conn, "f4") is not None
        assert _events(caplog).count("duplicate_key") == 1

        # Newest AIC was used for the first row; the rejected row's AIC stays live
        sub = subscription_store.fetch_one_by_flow_id(conn, "f3")
        assert sub.aic_id == second.id
        assert aic_store.fetch_one_by_id(conn, first.id) == first
        assert aic_store.fetch_archive_by_id(conn, first.id) is None

    def test_same_aic_cannot_be_matched_twice(self, conn):
        aic_store.create(conn, "cj3", "f3", now=T0)
        result = _run(conn, [_row(flow_id="f3"), _row(flow_id="f3")])
        assert result.counters.subscriptions_created == 1
        assert result.counters.aic_not_found == 1
        assert subscription_store.count_by_flow_id(conn, "f3") == 1


# ---------------------------------------------------------------------------
# Storage failures
# ---------------------------------------------------------------------------

class TestStorageFailures:
    def test_archive_write_failure_leaves_live_aic(self, conn):
        _install_trigger(
            conn, "aic_archive", "BEFORE INSERT",
            "IF NEW.flow_id = 'bad-archive' THEN RAISE EXCEPTION 'archive down'; END IF;"
            " RETURN NEW;",
        )
        bad = aic_store.create(conn, "cjx", "bad-archive", now=T0)
        aic_store.create(conn, "cj1", "f1", now=T0)

        result = _run(conn, [_row(flow_id="bad-archive"), _row(flow_id="f1")])

        assert result.ok
        assert result.counters.archive_write_errors == 1
        assert result.counters.subscriptions_created == 1
        assert aic_store.fetch_one_by_id(conn, bad.id) == bad
        assert subscription_store.fetch_one_by_flow_id(conn, "bad-archive") is None

    def test_generic_insert_failure_restores_aic(self, conn):
        _install_trigger(
            conn, "subscriptions", "BEFORE INSERT",
            "IF NEW.flow_id = 'bad-insert' THEN RAISE EXCEPTION 'insert down'; END IF;"
            " RETURN NEW;",
        )
        aic = aic_store.create(conn, "cjx", "bad-insert", now=T0)

        result = _run(conn, [_row(flow_id="bad-insert")])

        assert result.ok
        assert result.counters.storage_errors == 1
        assert result.counters.uniqueness_violations == 0
        assert aic_store.fetch_one_by_id(conn, aic.id) == aic
        assert aic_store.fetch_archive_by_id(conn, aic.id) is None


# ---------------------------------------------------------------------------
# Fatal: delete after archive fails
# ---------------------------------------------------------------------------

class TestFatal:
    def test_delete_error_stops_run(self, conn, caplog):
        _install_trigger(
            conn, "aic", "BEFORE DELETE",
            "IF OLD.flow_id = 'boom' THEN RAISE EXCEPTION 'delete down'; END IF;"
            " RETURN OLD;",
        )
        aic_store.create(conn, "cj1", "f1", now=T0)
        boom = aic_store.create(conn, "cjb", "boom", now=T0)
        after = aic_store.create(conn, "cj9", "f9", now=T0)
        rows = [_row(flow_id="f1"), _row(flow_id="boom"), _row(flow_id="f9")]

        with caplog.at_level(logging.ERROR, logger="cjms_etl.check_subscriptions"):
            result = _run(conn, rows)

        assert not result.ok
        assert isinstance(result.fatal, ArchiveDeleteError)
        assert result.counters.fatal_errors == 1
        assert result.counters.rows_read == 2
        # Row before the failure is kept, the failing row is undone, the next is never read
        assert subscription_store.fetch_one_by_flow_id(conn, "f1") is not None
        assert subscription_store.fetch_one_by_flow_id(conn, "boom") is None
        assert aic_store.fetch_one_by_id(conn, boom.id) == boom
        assert aic_store.fetch_archive_by_id(conn, boom.id) is None
        assert aic_store.fetch_one_by_id(conn, after.id) == after
        assert "aic_archive_delete_error" in _events(caplog)

    def test_delete_removing_nothing_is_fatal(self, conn):
        # Trigger swallows the delete: the archive exists but the live row remains
        _install_trigger(conn, "aic", "BEFORE DELETE", "RETURN NULL;")
        aic_store.create(conn, "cj1", "f1", now=T0)

        result = _run(conn, [_row(flow_id="f1"), _row(flow_id="f2")])

        assert isinstance(result.fatal, ArchiveDeleteError)
        assert result.counters.rows_read == 1
        assert _count(conn, "aic_archive") == 0
        assert _count(conn, "subscriptions") == 0

    def test_counters_passed_in_are_accumulated(self, conn):
        aic_store.create(conn, "cj1", "f1", now=T0)
        ctrs = ReconcileCounters(rows_read=10)
        result = _run(conn, [_row()], counters=ctrs)
        assert result.counters is ctrs
        assert ctrs.rows_read == 11
