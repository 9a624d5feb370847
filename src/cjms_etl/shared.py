"""cjms_etl.shared

Shared pieces used by the reconciliation pipeline and the CLI.
Includes the error taxonomy, RejectWriter, ReconcileCounters, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ReconcileError(Exception):
    """Base class for every error raised while reconciling a warehouse row."""

    # Short machine-readable tag used in logs, reject CSVs and counters
    reason = "reconcile_error"


class RowSkipError(ReconcileError):
    """A row-level failure.  The row is abandoned and the batch continues."""


class DecodingError(RowSkipError):
    """A required warehouse field is missing or malformed."""

    reason = "decoding_error"

    def __init__(self, field_name: str, detail: str) -> None:
        super().__init__(f"{field_name}: {detail}")
        self.field_name = field_name
        self.detail = detail


class AttributionNotFoundError(RowSkipError):
    """No live AIC matches the requested key."""

    reason = "aic_not_found"

    def __init__(self, key: str) -> None:
        super().__init__(f"no aic found for {key!r}")
        self.key = key


class AttributionLookupError(RowSkipError):
    """Storage or transport failure while looking up an AIC."""

    reason = "aic_lookup_error"


class ArchiveWriteError(RowSkipError):
    """The aic_archive snapshot could not be written.  Live AIC left untouched."""

    reason = "aic_archive_write_error"


class UniquenessViolationError(RowSkipError):
    """Subscription insert rejected by a unique constraint (SQLSTATE 23505)."""

    reason = "duplicate_key"


class SubscriptionStorageError(RowSkipError):
    """Any other failure inserting a subscription."""

    reason = "subscription_storage_error"


class ArchiveDeleteError(ReconcileError):
    """The live AIC could not be removed after its archive snapshot was written.

    Never handled at the row boundary: the run stops and the caller decides
    how to surface it.
    """

    reason = "aic_archive_delete_error"


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

def _reject_cell(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value), default=str)
    return value


class RejectWriter:
    """Lazy-open CSV writer for rejected warehouse rows.

    The header is taken from the first rejected row plus `_reject_reason`.
    BigQuery timestamps are written as ISO-8601 and list cells (the overflow
    of a ragged CSV line) as JSON, so a reject file can be replayed with
    `--source csv`.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = {k: _reject_cell(v) for k, v in row.items()}
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# ReconcileCounters
# ---------------------------------------------------------------------------

@dataclass
class ReconcileCounters:
    rows_read: int = 0
    rows_skipped: int = 0
    subscriptions_created: int = 0
    aics_archived: int = 0
    # Error buckets
    decoding_errors: int = 0
    aic_not_found: int = 0
    aic_lookup_errors: int = 0
    archive_write_errors: int = 0
    uniqueness_violations: int = 0
    storage_errors: int = 0
    fatal_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    _BUCKETS = {
        DecodingError: "decoding_errors",
        AttributionNotFoundError: "aic_not_found",
        AttributionLookupError: "aic_lookup_errors",
        ArchiveWriteError: "archive_write_errors",
        UniquenessViolationError: "uniqueness_violations",
        SubscriptionStorageError: "storage_errors",
    }

    def record_skip(self, exc: RowSkipError) -> None:
        """Bump rows_skipped and the bucket matching the error class."""
        self.rows_skipped += 1
        for cls, attr in self._BUCKETS.items():
            if isinstance(exc, cls):
                setattr(self, attr, getattr(self, attr) + 1)
                return

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_info: dict[str, Any],
    counters: ReconcileCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_info,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
