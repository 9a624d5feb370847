"""cjms_etl.warehouse

Forward-only cursors over the warehouse subscription view.

A cursor yields one row at a time:

    rs = RowsResultSet.from_csv(Path("export.csv"))
    while rs.advance():
        flow_id = rs.require_string("flow_id")
        country = rs.get_string("country")

Strict accessors (require_*) raise DecodingError when a field is absent,
null or malformed.  Lenient accessors (get_*) return None instead.
Cursors are not restartable: once advance() has returned False it keeps
returning False.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable, Iterator, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from cjms_etl.normalize import parse_int32, parse_ts, trim
from cjms_etl.shared import DecodingError

log = logging.getLogger(__name__)

DEFAULT_BQ_QUERY = "SELECT * FROM `cjms_bigquery.cj_attribution_v1`;"

# Row key holding the cells of a CSV line that has more cells than the header
EXTRA_CELLS_KEY = "_extra_cells"


class ResultSet(Protocol):
    def advance(self) -> bool:
        """Move to the next row.  Returns False once the result set is exhausted."""
        ...

    def current_row(self) -> dict[str, Any]:
        ...

    def require_string(self, name: str) -> str:
        ...

    def require_timestamp(self, name: str) -> datetime:
        ...

    def require_int32(self, name: str) -> int:
        ...

    def get_string(self, name: str) -> str | None:
        ...


class _MappingCursor:
    """Accessor logic shared by every cursor whose rows are mappings."""

    def __init__(self, rows: Iterable[Mapping[str, Any]]) -> None:
        self._rows: Iterator[Mapping[str, Any]] = iter(rows)
        self._row: Mapping[str, Any] | None = None
        self._exhausted = False

    def advance(self) -> bool:
        if self._exhausted:
            return False
        try:
            self._row = next(self._rows)
        except StopIteration:
            self._row = None
            self._exhausted = True
            return False
        return True

    def current_row(self) -> dict[str, Any]:
        if self._row is None:
            raise RuntimeError("cursor is not positioned on a row; call advance() first")
        return dict(self._row)

    def _raw(self, name: str) -> Any:
        if self._row is None:
            raise RuntimeError("cursor is not positioned on a row; call advance() first")
        if name not in self._row:
            raise DecodingError(name, "field not present in row")
        return self._row[name]

    def require_string(self, name: str) -> str:
        raw = self._raw(name)
        if raw is not None and not isinstance(raw, str):
            raise DecodingError(name, f"expected string, got {type(raw).__name__}")
        v = trim(raw)
        if v is None:
            raise DecodingError(name, "required value is null or empty")
        return v

    def require_timestamp(self, name: str) -> datetime:
        raw = self._raw(name)
        if trim(raw) is None:
            raise DecodingError(name, "required value is null or empty")
        ts = parse_ts(raw)
        if ts is None:
            raise DecodingError(name, f"unparseable timestamp {raw!r}")
        return ts

    def require_int32(self, name: str) -> int:
        raw = self._raw(name)
        if trim(raw) is None:
            raise DecodingError(name, "required value is null or empty")
        n = parse_int32(raw)
        if n is None:
            raise DecodingError(name, f"not a 32-bit integer: {raw!r}")
        return n

    def get_string(self, name: str) -> str | None:
        if self._row is None:
            raise RuntimeError("cursor is not positioned on a row; call advance() first")
        raw = self._row.get(name)
        if raw is not None and not isinstance(raw, str):
            return None
        return trim(raw)


# ---------------------------------------------------------------------------
# In-memory / CSV replay
# ---------------------------------------------------------------------------

class RowsResultSet(_MappingCursor):
    """Cursor over an iterable of dicts (tests, CSV replays of the warehouse view)."""

    @classmethod
    def from_csv(cls, path: Path) -> RowsResultSet:
        """Lazily stream a CSV export.  Empty cells are treated as null.

        Cells beyond the header are kept as a list under EXTRA_CELLS_KEY so
        the named fields of a ragged row still reach the decoder.  Missing
        trailing cells read as null.
        """

        def _rows() -> Iterator[dict[str, Any]]:
            with path.open(encoding="utf-8-sig", newline="") as fh:
                reader = csv.DictReader(fh, restkey=EXTRA_CELLS_KEY)
                for raw in reader:
                    row = {
                        k.strip(): (v if v != "" else None)
                        for k, v in raw.items()
                        if k != EXTRA_CELLS_KEY
                    }
                    if EXTRA_CELLS_KEY in raw:
                        line_no = reader.line_num
                        row[EXTRA_CELLS_KEY] = raw[EXTRA_CELLS_KEY]
                        log.warning(
                            "%s line %d has %d cell(s) beyond the header",
                            path, line_no, len(raw[EXTRA_CELLS_KEY]),
                            extra={"event": "csv_ragged_row", "line": line_no},
                        )
                    yield row

        return cls(_rows())


# ---------------------------------------------------------------------------
# BigQuery
# ---------------------------------------------------------------------------

class BigQueryResultSet(_MappingCursor):
    """Cursor over a BigQuery query result.  Pages are fetched as the cursor advances."""

    def __init__(self, rows: Iterable[Mapping[str, Any]], query: str) -> None:
        super().__init__(rows)
        self.query = query

    @classmethod
    def run_query(cls, project: str | None, query: str = DEFAULT_BQ_QUERY) -> BigQueryResultSet:
        from google.cloud import bigquery  # type: ignore[import-untyped]

        client = bigquery.Client(project=project)
        log.info("Running warehouse query", extra={"event": "bq_query", "query": query})
        result = client.query(query).result()
        return cls((dict(row.items()) for row in result), query)
