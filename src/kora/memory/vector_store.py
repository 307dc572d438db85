"""LanceDB-backed vector tables.

A thin layer over a LanceDB connection that the chunk and fact stores
share. Predicates are SQL strings with '?' placeholders bound from a
parameter sequence; rows are plain dicts with a 'vector' column.

Schemas are inferred from a seed row when a table is first created; the
seed is deleted right after, so an empty table still knows its columns
and vector dimensions.
"""

import logging
import re
from pathlib import Path
from typing import Any, Sequence

import lancedb
import pyarrow as pa

logger = logging.getLogger(__name__)

VECTOR_COLUMN = "vector"
DISTANCE_KEY = "_distance"
DISTANCE_TYPE = "cosine"

# Columns LanceDB adds to full-text results
_SCORE_COLUMNS = ("_score", "_relevance_score")


def _literal(value: Any) -> str:
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    raise TypeError(f"Unsupported parameter type: {type(value).__name__}")


def bind(where: str, params: Sequence[Any] = ()) -> str:
    """Substitute '?' placeholders in a predicate with SQL literals."""
    parts = where.split("?")
    if len(parts) - 1 != len(params):
        raise ValueError(
            f"Predicate has {len(parts) - 1} placeholders, got {len(params)} parameters"
        )
    bound = [part + _literal(value) for part, value in zip(parts, params)]
    return "".join(bound) + parts[-1]


def id_in(ids: Sequence[str]) -> tuple[str, list[str]]:
    """Predicate and parameters matching any of the given ids."""
    placeholders = ", ".join("?" for _ in ids)
    return f"id IN ({placeholders})", list(ids)


def infer_schema(seed_row: dict[str, Any]) -> pa.Schema:
    """Arrow schema for rows shaped like the seed; vectors are float32."""
    fields = []
    for name, value in seed_row.items():
        if name == VECTOR_COLUMN:
            if not value:
                raise ValueError("Seed vector must not be empty")
            fields.append(pa.field(name, pa.list_(pa.float32(), len(value))))
        elif isinstance(value, bool):
            fields.append(pa.field(name, pa.bool_()))
        elif isinstance(value, int):
            fields.append(pa.field(name, pa.int64()))
        elif isinstance(value, float):
            fields.append(pa.field(name, pa.float64()))
        elif isinstance(value, str):
            fields.append(pa.field(name, pa.string()))
        else:
            raise TypeError(f"Unsupported column value type: {type(value).__name__}")
    return pa.schema(fields)


class VectorTable:
    """A table of rows with a fixed-dimension vector column."""

    def __init__(self, table: Any, fts_column: str | None = None) -> None:
        self._table = table
        self.name: str = table.name
        self.fts_column = fts_column
        self._fts_stale = True

        schema = table.schema
        self.columns = [n for n in schema.names if n != VECTOR_COLUMN]
        self.dimensions: int = schema.field(VECTOR_COLUMN).type.list_size

    @property
    def has_fts(self) -> bool:
        """Whether full-text search is available on this table."""
        return self.fts_column is not None

    def _check_row(self, row: dict[str, Any], partial: bool = False) -> None:
        unknown = set(row) - set(self.columns) - {VECTOR_COLUMN}
        if unknown:
            raise ValueError(f"Unknown columns for {self.name}: {sorted(unknown)}")
        if not partial:
            missing = [n for n in [*self.columns, VECTOR_COLUMN] if n not in row]
            if missing:
                raise ValueError(f"Row is missing columns: {missing}")
        if VECTOR_COLUMN in row and len(row[VECTOR_COLUMN]) != self.dimensions:
            raise ValueError(
                f"Vector has {len(row[VECTOR_COLUMN])} dimensions, "
                f"table {self.name} expects {self.dimensions}"
            )

    def _to_arrow(self, rows: list[dict[str, Any]]) -> pa.Table:
        return pa.Table.from_pylist(rows, schema=self._table.schema)

    def add_rows(self, rows: list[dict[str, Any]]) -> int:
        """Insert rows. Every row must carry all columns and a vector.

        Returns:
            Number of rows inserted.
        """
        if not rows:
            return 0
        for row in rows:
            self._check_row(row)

        self._table.add(self._to_arrow(rows))
        self._fts_stale = True
        return len(rows)

    def add_row(self, row: dict[str, Any]) -> None:
        """Insert a single row."""
        self.add_rows([row])

    def query(
        self,
        where: str | None = None,
        params: Sequence[Any] = (),
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch rows matching an SQL predicate."""
        if limit is None:
            limit = self.count_rows(where, params)
        if limit <= 0:
            return []

        builder = self._table.search()
        if where:
            builder = builder.where(bind(where, params))
        return builder.limit(limit).to_list()

    def vector_search(
        self,
        vector: Sequence[float],
        limit: int = 10,
        where: str | None = None,
        params: Sequence[Any] = (),
        text: str | None = None,
    ) -> list[dict[str, Any]]:
        """Nearest rows by cosine distance.

        Args:
            vector: Query vector.
            limit: Maximum rows to return.
            where: Optional SQL predicate over metadata columns.
            params: Parameters for the predicate.
            text: Optional full-text query; only rows matching it are ranked.

        Returns:
            Rows sorted by ascending cosine distance, each with a
            '_distance' key (1 - cosine similarity).
        """
        if limit <= 0:
            return []

        predicate = bind(where, params) if where else None
        if text is not None:
            matched = [r["id"] for r in self.full_text_search(text, limit=self.count_rows())]
            if not matched:
                return []
            restriction = bind(*id_in(matched))
            predicate = f"({predicate}) AND {restriction}" if predicate else restriction

        if self._table.count_rows(predicate) == 0:
            return []

        builder = self._table.search(
            list(vector), vector_column_name=VECTOR_COLUMN
        ).distance_type(DISTANCE_TYPE)
        if predicate:
            builder = builder.where(predicate, prefilter=True)
        return builder.limit(limit).to_list()

    def _ensure_fts_index(self) -> bool:
        if not self._fts_stale:
            return True
        if self._table.count_rows() == 0:
            return False
        # The native index covers the rows present when it was built
        self._table.create_fts_index(self.fts_column, replace=True, use_tantivy=False)
        self._fts_stale = False
        return True

    def full_text_search(self, text: str, limit: int = 10) -> list[dict[str, Any]]:
        """Rows whose text column matches any word of the query, best first."""
        if not self.has_fts:
            logger.warning("Full-text search requested on %s without an FTS index", self.name)
            return []

        words = re.findall(r"\w+", text)
        if not words or limit <= 0 or not self._ensure_fts_index():
            return []

        rows = (
            self._table.search(" ".join(words), query_type="fts")
            .limit(limit)
            .to_list()
        )
        for row in rows:
            for column in _SCORE_COLUMNS:
                row.pop(column, None)
        return rows

    def update_where(
        self, where: str, params: Sequence[Any], values: dict[str, Any]
    ) -> int:
        """Set column values on all rows matching a predicate.

        Returns:
            Number of rows updated.
        """
        if not values:
            return 0
        self._check_row(values, partial=True)
        if "id" in values:
            raise ValueError("Row ids cannot be updated in place")

        rows = self.query(where, params)
        if not rows:
            return 0

        for row in rows:
            row.update(values)
        (
            self._table.merge_insert("id")
            .when_matched_update_all()
            .execute(self._to_arrow(rows))
        )
        self._fts_stale = True
        return len(rows)

    def update_many(self, ids: Sequence[str], values: dict[str, Any]) -> int:
        """Apply the same values to a batch of rows by id in one write."""
        if not ids:
            return 0
        return self.update_where(*id_in(ids), values)

    def replace_rows(self, old_ids: Sequence[str], rows: list[dict[str, Any]]) -> int:
        """Swap rows for new versions that may carry different ids.

        Returns:
            Number of rows removed.
        """
        for row in rows:
            self._check_row(row)
        count = self.delete_where(*id_in(old_ids)) if old_ids else 0
        self.add_rows(rows)
        return count

    def delete_where(self, where: str, params: Sequence[Any] = ()) -> int:
        """Delete rows matching a predicate.

        Returns:
            Number of rows deleted.
        """
        predicate = bind(where, params)
        count = self._table.count_rows(predicate)
        if count:
            self._table.delete(predicate)
            self._fts_stale = True
        return count

    def count_rows(self, where: str | None = None, params: Sequence[Any] = ()) -> int:
        """Count rows, optionally filtered."""
        if where:
            return self._table.count_rows(bind(where, params))
        return self._table.count_rows()


class VectorDatabase:
    """A LanceDB directory holding any number of vector tables."""

    def __init__(self, db_path: Path) -> None:
        """Initialize the database with a directory path.

        Args:
            db_path: Directory LanceDB stores its tables in.
        """
        self.db_path = db_path
        self._conn: Any = None

    def _get_connection(self) -> Any:
        """Get or create the database connection."""
        if self._conn is None:
            self.db_path.mkdir(parents=True, exist_ok=True)
            self._conn = lancedb.connect(str(self.db_path))
        return self._conn

    def table_names(self) -> list[str]:
        """Names of the vector tables created so far."""
        return sorted(self._get_connection().table_names())

    def open_table(self, name: str, fts_column: str | None = None) -> VectorTable:
        """Open an existing vector table.

        Raises:
            KeyError: If the table was never created.
        """
        if name not in self.table_names():
            raise KeyError(f"No vector table named {name!r}")
        return VectorTable(self._get_connection().open_table(name), fts_column)

    def create_table(
        self,
        name: str,
        seed_row: dict[str, Any],
        fts_column: str | None = None,
    ) -> VectorTable:
        """Create a table whose schema is inferred from a seed row.

        The seed row must have an 'id' and a 'vector'; it is inserted to
        check the schema accepts it and then deleted.

        Args:
            name: Table name.
            seed_row: Example row establishing column types and dimensions.
            fts_column: Optional string column to index for full-text search.

        Returns:
            The new, empty table.
        """
        if "id" not in seed_row or VECTOR_COLUMN not in seed_row:
            raise ValueError("Seed row needs 'id' and 'vector'")
        if fts_column is not None and not isinstance(seed_row.get(fts_column), str):
            raise ValueError(f"FTS column {fts_column!r} must be a string column")

        schema = infer_schema(seed_row)
        table = self._get_connection().create_table(name, schema=schema)
        table.add(pa.Table.from_pylist([seed_row], schema=schema))
        table.delete(bind("id = ?", (seed_row["id"],)))

        logger.debug("Created vector table %s (%d dimensions)", name, len(seed_row[VECTOR_COLUMN]))
        return VectorTable(table, fts_column)

    def close(self) -> None:
        """Release the connection."""
        self._conn = None
