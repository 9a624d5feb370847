"""cjms_etl.cli

Unified CLI entrypoint for the CJMS subscription back office.

Modes (--mode):
  check_subscriptions  — reconcile warehouse subscription rows with live AICs (default)
  aic_create           — create (or, with --aic-id, update) one AIC

Usage (check_subscriptions, live warehouse):
    cjms-etl \\
        --mode check_subscriptions \\
        --db-dsn "$CJMS_DB_DSN" \\
        --source bigquery \\
        --bq-project "$CJMS_BQ_PROJECT"

Usage (check_subscriptions, replay of an exported view):
    cjms-etl \\
        --mode check_subscriptions \\
        --db-dsn "$CJMS_DB_DSN" \\
        --source csv \\
        --rows-path "exports/cj_attribution_v1.csv" \\
        --rejects-path "artifacts/rejects/check_subscriptions_rejects.csv"

Usage (aic_create):
    cjms-etl --mode aic_create --db-dsn "$CJMS_DB_DSN" \\
        --cj-event-value "abc123" --flow-id "f1"

Exit status is 1 when an AIC could not be deleted after archiving (rows
reconciled before that point are committed) or when the database connection
fails mid-run (nothing is committed).
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from cjms_etl import aic as aic_store
from cjms_etl.check_subscriptions import (
    build_check_subscriptions_report,
    run_check_subscriptions,
)
from cjms_etl.models import DEFAULT_AIC_EXPIRATION_DAYS
from cjms_etl.shared import RejectWriter, ReconcileCounters, write_run_report
from cjms_etl.warehouse import (
    DEFAULT_BQ_QUERY,
    BigQueryResultSet,
    ResultSet,
    RowsResultSet,
)


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_check_subscriptions_flags(
    source: str,
    rows_path: str | None,
    run_id: str,
) -> None:
    if source == "csv":
        if not rows_path:
            click.echo(
                f"[{run_id}] FATAL: --source csv requires: --rows-path",
                err=True,
            )
            sys.exit(1)
        if not Path(rows_path).exists():
            click.echo(
                f"[{run_id}] FATAL: --rows-path not found: {rows_path}",
                err=True,
            )
            sys.exit(1)


def _validate_aic_create_flags(
    cj_event_value: str | None,
    flow_id: str | None,
    run_id: str,
) -> None:
    missing = [
        flag for flag, value in (("--cj-event-value", cj_event_value), ("--flow-id", flow_id))
        if not value
    ]
    if missing:
        click.echo(
            f"[{run_id}] FATAL: aic_create mode requires: {', '.join(missing)}",
            err=True,
        )
        sys.exit(1)


def _open_source(
    source: str,
    rows_path: str | None,
    bq_project: str | None,
    bq_query: str,
) -> ResultSet:
    if source == "csv":
        return RowsResultSet.from_csv(Path(rows_path))  # type: ignore[arg-type]
    return BigQueryResultSet.run_query(bq_project, bq_query)


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="check_subscriptions",
    type=click.Choice(["check_subscriptions", "aic_create"]),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", required=True, envvar="CJMS_DB_DSN", help="PostgreSQL DSN")
# check_subscriptions flags
@click.option(
    "--source",
    default="bigquery",
    type=click.Choice(["bigquery", "csv"]),
    show_default=True,
    help="[check_subscriptions] Where warehouse rows come from",
)
@click.option("--bq-project", default=None, envvar="CJMS_BQ_PROJECT", help="[check_subscriptions] BigQuery project")
@click.option("--bq-query", default=DEFAULT_BQ_QUERY, show_default=True, help="[check_subscriptions] Warehouse query")
@click.option("--rows-path", default=None, type=click.Path(), help="[check_subscriptions] CSV export of the warehouse view")
# aic_create flags
@click.option("--cj-event-value", default=None, help="[aic_create] CJ event value")
@click.option("--flow-id", default=None, help="[aic_create] Flow id")
@click.option("--aic-id", default=None, type=click.UUID, help="[aic_create] Update this AIC instead of creating one")
@click.option(
    "--aic-expiration-days",
    default=DEFAULT_AIC_EXPIRATION_DAYS,
    type=click.IntRange(min=1),
    show_default=True,
    help="[aic_create] Lifetime of a new or re-valued AIC",
)
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/check_subscriptions_rejects.csv",
    show_default=True,
)
@click.option("--report-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    # check_subscriptions
    source: str,
    bq_project: str | None,
    bq_query: str,
    rows_path: str | None,
    # aic_create
    cj_event_value: str | None,
    flow_id: str | None,
    aic_id: uuid.UUID | None,
    aic_expiration_days: int,
    # shared
    dry_run: bool,
    rejects_path: str,
    report_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """CJMS subscription reconciliation CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "aic_create":
        _validate_aic_create_flags(cj_event_value, flow_id, run_id)
        conn = psycopg.connect(db_dsn, autocommit=False)
        try:
            if aic_id is not None:
                record = aic_store.update(
                    conn, aic_id, cj_event_value, flow_id,  # type: ignore[arg-type]
                    expiration_days=aic_expiration_days,
                )
            else:
                record = aic_store.create(
                    conn, cj_event_value, flow_id,  # type: ignore[arg-type]
                    expiration_days=aic_expiration_days,
                )
            click.echo(
                f"[{run_id}] aic id={record.id} flow_id={record.flow_id} "
                f"created={record.created.isoformat()} expires={record.expires.isoformat()}"
            )
            if dry_run:
                conn.rollback()
                click.echo(f"[{run_id}] DRY RUN — rolled back.")
            else:
                conn.commit()
                click.echo(f"[{run_id}] Committed.")
        except Exception:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            conn.close()
        return

    # check_subscriptions
    _validate_check_subscriptions_flags(source, rows_path, run_id)
    counters = ReconcileCounters()
    rejects = RejectWriter(Path(rejects_path))
    click.echo(f"[{run_id}] check_subscriptions source={source}")

    rs = _open_source(source, rows_path, bq_project, bq_query)
    lost: psycopg.OperationalError | None = None
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        result = run_check_subscriptions(conn, rs, counters=counters, rejects=rejects)
        click.echo(build_check_subscriptions_report(counters, dry_run=dry_run))
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN — rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
    except psycopg.OperationalError as exc:
        # Raised past the row savepoints: nothing from this run is kept
        if not conn.closed:
            conn.rollback()
        lost = exc
        counters.fatal_errors += 1
        counters.warnings.append(f"connection lost: {exc}")
    except Exception:
        if not conn.closed:
            conn.rollback()
        raise
    finally:
        conn.close()
        rejects.close()

    source_info = (
        {"rows_path": rows_path} if source == "csv" else {"bq_project": bq_project, "bq_query": bq_query}
    )
    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"source": source, **source_info},
        counters,
        report_dir=Path(report_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if lost is not None:
        click.echo(
            f"[{run_id}] FATAL: database connection failed after "
            f"{counters.rows_read} row(s): {lost}. Nothing was committed.",
            err=True,
        )
        sys.exit(1)

    if result.fatal is not None:
        click.echo(
            f"[{run_id}] FATAL: {result.fatal}. Stopped before remaining rows; "
            "operator intervention required.",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
