"""cjms_etl.check_subscriptions

Warehouse subscription → AIC reconciliation pipeline (--mode check_subscriptions).

For every row of the warehouse subscription view:
  1. Decode the row into a SubscriptionDraft           (DecodingError → skip)
  2. Resolve the live AIC for the row's flow_id         (not found / lookup error → skip)
  3. Archive the AIC into aic_archive                   (ArchiveWriteError → skip)
  4. Delete the live AIC                                (ArchiveDeleteError → FATAL)
  5. Insert the subscription as 'not_reported'          (duplicate key / storage error → skip)

Transactions:
  - The caller owns the transaction (autocommit must be off).
  - Each row runs under SAVEPOINT row_<n>.  A skipped row rolls back to it,
    so an archived-and-deleted AIC is restored when the subscription insert
    fails.  A completed row releases it.
  - ArchiveDeleteError rolls back the current row and stops the run; rows
    already completed stay in the transaction.  The result carries the error
    in `fatal` and the caller decides the exit code.
  - A lost connection surfaces as the psycopg error raised by the savepoint
    rollback.  It is not classified as a row skip; the whole run is lost.

Rows are processed strictly one after another; nothing carries over from
one row to the next except the stores themselves.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import psycopg

from cjms_etl import aic as aic_store
from cjms_etl import subscriptions as subscription_store
from cjms_etl.models import (
    STATUS_NOT_REPORTED,
    AttributionArchiveRecord,
    AttributionRecord,
    Subscription,
    SubscriptionDraft,
)
from cjms_etl.normalize import utc_now
from cjms_etl.shared import (
    ArchiveDeleteError,
    ArchiveWriteError,
    AttributionLookupError,
    AttributionNotFoundError,
    ReconcileCounters,
    RejectWriter,
    RowSkipError,
    SubscriptionStorageError,
    UniquenessViolationError,
)
from cjms_etl.warehouse import ResultSet

log = logging.getLogger(__name__)

StatusPolicy = Callable[[SubscriptionDraft, AttributionRecord], str]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class CheckSubscriptionsResult:
    counters: ReconcileCounters = field(default_factory=ReconcileCounters)
    fatal: ArchiveDeleteError | None = None

    @property
    def ok(self) -> bool:
        return self.fatal is None


# ---------------------------------------------------------------------------
# Status policy
# ---------------------------------------------------------------------------

def report_status_for(draft: SubscriptionDraft, aic: AttributionRecord) -> str:
    """Initial status for a reconciled subscription.

    This is where an attribution-window rule (e.g. 'do_not_report' when the
    subscription falls outside the AIC's lifetime) plugs in.  No window
    comparison is applied yet: every reconciled subscription starts as
    'not_reported'.
    """
    return STATUS_NOT_REPORTED


# ---------------------------------------------------------------------------
# Stage 1: decode
# ---------------------------------------------------------------------------

def make_subscription_from_row(rs: ResultSet) -> SubscriptionDraft:
    """Decode the cursor's current row.  Raises DecodingError on a bad required field."""
    return SubscriptionDraft(
        id=uuid.uuid4(),
        flow_id=rs.require_string("flow_id"),
        subscription_id=rs.require_string("subscription_id"),
        report_timestamp=rs.require_timestamp("report_timestamp"),
        subscription_created=rs.require_timestamp("subscription_created"),
        fxa_uid=rs.require_string("fxa_uid"),
        quantity=rs.require_int32("quantity"),
        plan_id=rs.require_string("plan_id"),
        plan_currency=rs.require_string("plan_currency"),
        plan_amount=rs.require_int32("plan_amount"),
        country=rs.get_string("country"),
    )


# ---------------------------------------------------------------------------
# Stage 2: resolve
# ---------------------------------------------------------------------------

def resolve_attribution(conn: psycopg.Connection, flow_id: str) -> AttributionRecord:
    try:
        aic = aic_store.fetch_one_by_flow_id(conn, flow_id)
    except psycopg.Error as exc:
        raise AttributionLookupError(
            f"aic lookup failed for flow_id={flow_id!r}: {exc}"
        ) from exc
    if aic is None:
        raise AttributionNotFoundError(flow_id)
    return aic


# ---------------------------------------------------------------------------
# Stage 3: archive, then delete
# ---------------------------------------------------------------------------

def retire_attribution(
    conn: psycopg.Connection, aic: AttributionRecord
) -> AttributionArchiveRecord:
    """Copy aic into aic_archive, then delete it from aic.

    Raises ArchiveWriteError if the snapshot cannot be written (nothing was
    deleted) and ArchiveDeleteError if the live row cannot be removed
    afterwards.
    """
    try:
        snapshot = aic_store.archive(conn, aic)
    except psycopg.Error as exc:
        raise ArchiveWriteError(f"aic_archive write failed for aic {aic.id}: {exc}") from exc

    if not snapshot.matches(aic):
        log.warning(
            "Existing aic_archive snapshot differs from live aic %s; keeping the original",
            aic.id,
            extra={"event": "aic_archive_mismatch", "aic_id": str(aic.id)},
        )

    try:
        deleted = aic_store.delete(conn, aic.id)
    except psycopg.Error as exc:
        raise ArchiveDeleteError(
            f"failed to delete aic {aic.id} after creating aic_archive entry: {exc}"
        ) from exc
    if deleted != 1:
        raise ArchiveDeleteError(
            f"failed to delete aic {aic.id} after creating aic_archive entry: "
            f"{deleted} rows removed"
        )
    return snapshot


# ---------------------------------------------------------------------------
# Stage 4: write
# ---------------------------------------------------------------------------

def write_subscription(conn: psycopg.Connection, sub: Subscription) -> Subscription:
    try:
        return subscription_store.create_from_sub(conn, sub)
    except psycopg.Error as exc:
        if subscription_store.is_unique_violation(exc):
            raise UniquenessViolationError(
                f"duplicate key for flow_id={sub.flow_id!r}: {exc}"
            ) from exc
        raise SubscriptionStorageError(
            f"subscription insert failed for flow_id={sub.flow_id!r}: {exc}"
        ) from exc


# ---------------------------------------------------------------------------
# Per-row processing
# ---------------------------------------------------------------------------

def _process_row(
    conn: psycopg.Connection,
    rs: ResultSet,
    status_policy: StatusPolicy,
    clock: Callable[[], datetime],
) -> Subscription:
    """Carry one row from decoding to a written subscription.  Caller manages savepoint."""
    draft = make_subscription_from_row(rs)
    aic = resolve_attribution(conn, draft.flow_id)
    draft = draft.with_attribution(aic)
    retire_attribution(conn, aic)
    sub = draft.finalize(status_policy(draft, aic), clock())
    return write_subscription(conn, sub)


def _rollback_row(conn: psycopg.Connection, sp: str, row_index: int) -> None:
    try:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
    except psycopg.Error:
        log.error(
            "Could not roll back row %d; connection lost. Aborting run.",
            row_index,
            extra={"event": "connection_lost", "row_index": row_index},
        )
        raise


def _log_skip(exc: RowSkipError, row_index: int, flow_id: str | None) -> None:
    extra = {"event": exc.reason, "row_index": row_index, "flow_id": flow_id}
    if isinstance(exc, UniquenessViolationError):
        # A duplicate flow_id in the warehouse view points at an upstream ETL issue
        log.warning(
            "Duplicate key violation on subscription flow_id=%s (row %d). Continuing...",
            flow_id, row_index, extra=extra,
        )
        return
    log.warning(
        "Skipping row %d (flow_id=%s): %s: %s. Continuing...",
        row_index, flow_id, exc.reason, exc, extra=extra,
    )


# ---------------------------------------------------------------------------
# Top-level runner
# ---------------------------------------------------------------------------

def run_check_subscriptions(
    conn: psycopg.Connection,
    rs: ResultSet,
    counters: ReconcileCounters | None = None,
    rejects: RejectWriter | None = None,
    status_policy: StatusPolicy = report_status_for,
    clock: Callable[[], datetime] = utc_now,
) -> CheckSubscriptionsResult:
    """Reconcile every row of rs against the live AIC table.

    Args:
        conn: Open psycopg connection with autocommit off (caller commits).
        rs: Warehouse cursor, consumed to the end unless a fatal error occurs.
        counters: Optional counters to accumulate into.
        rejects: Optional writer receiving every skipped row with its reason.
        status_policy: Decides the initial status of a reconciled subscription.
        clock: Source of the status_history timestamp.

    Returns:
        CheckSubscriptionsResult; `fatal` is set when an AIC could not be
        deleted after archiving, in which case no further rows were read.

    Raises:
        psycopg.OperationalError (or another psycopg.Error) when the
        connection itself fails: the row-level ROLLBACK TO SAVEPOINT cannot
        run, so the failure is not a row skip.  Counters reflect the rows
        handled up to that point and the caller must roll back.
    """
    result = CheckSubscriptionsResult(counters=counters or ReconcileCounters())
    ctrs = result.counters
    row_index = 0

    while rs.advance():
        row_index += 1
        ctrs.rows_read += 1
        sp = f"row_{row_index}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            sub = _process_row(conn, rs, status_policy, clock)
            conn.execute(f"RELEASE SAVEPOINT {sp}")
        except RowSkipError as exc:
            _rollback_row(conn, sp, row_index)
            flow_id = rs.get_string("flow_id")
            _log_skip(exc, row_index, flow_id)
            ctrs.record_skip(exc)
            ctrs.warnings.append(f"row {row_index} flow_id={flow_id}: {exc.reason}: {exc}")
            if rejects is not None:
                rejects.write(rs.current_row(), f"{exc.reason}: {exc}")
            continue
        except ArchiveDeleteError as exc:
            _rollback_row(conn, sp, row_index)
            flow_id = rs.get_string("flow_id")
            log.error(
                "FATAL at row %d (flow_id=%s): %s. Stopping run.",
                row_index, flow_id, exc,
                extra={"event": exc.reason, "row_index": row_index, "flow_id": flow_id},
            )
            ctrs.fatal_errors += 1
            ctrs.warnings.append(f"row {row_index} flow_id={flow_id}: {exc.reason}: {exc}")
            result.fatal = exc
            return result

        ctrs.aics_archived += 1
        ctrs.subscriptions_created += 1
        log.debug(
            "Reconciled subscription %s for flow_id=%s (aic %s)",
            sub.subscription_id, sub.flow_id, sub.aic_id,
            extra={"event": "reconciled", "row_index": row_index, "flow_id": sub.flow_id},
        )

    log.info(
        "check_subscriptions finished: %d read, %d created, %d skipped",
        ctrs.rows_read, ctrs.subscriptions_created, ctrs.rows_skipped,
        extra={"event": "run_finished"},
    )
    return result


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_check_subscriptions_report(
    ctrs: ReconcileCounters, dry_run: bool = False
) -> str:
    lines = [
        "=" * 60,
        "Subscription ↔ AIC Reconciliation Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  rows read:                   {ctrs.rows_read}",
        f"  subscriptions created:       {ctrs.subscriptions_created}",
        f"  aics archived:               {ctrs.aics_archived}",
        f"  rows skipped:                {ctrs.rows_skipped}",
        f"    decoding errors:           {ctrs.decoding_errors}",
        f"    aic not found:             {ctrs.aic_not_found}",
        f"    aic lookup errors:         {ctrs.aic_lookup_errors}",
        f"    archive write errors:      {ctrs.archive_write_errors}",
        f"    duplicate keys:            {ctrs.uniqueness_violations}",
        f"    storage errors:            {ctrs.storage_errors}",
        f"FATAL errors:                  {ctrs.fatal_errors}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
