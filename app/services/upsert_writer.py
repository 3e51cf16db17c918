"""
Upsert Writer

Writes cached rows in fixed-size batches keyed on the source's external id.
Each batch is one INSERT ... ON CONFLICT DO UPDATE in its own transaction,
so a row is created or fully overwritten and never duplicated.

A failing batch raises immediately. Batches committed before it stay
committed; the next sync pass overwrites them anyway. Nothing is deleted.
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.utils.logger import log

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class UpsertError(Exception):
    """A batch failed to write"""

    def __init__(self, table: str, batch_number: int, rows_committed: int, cause: Exception):
        super().__init__(
            f"Upsert into {table} failed on batch {batch_number} "
            f"after {rows_committed} rows committed: {cause}"
        )
        self.table = table
        self.batch_number = batch_number
        self.rows_committed = rows_committed
        self.cause = cause


def _normalize_rows(table, rows: Sequence[Dict[str, Any]], conflict_key: str) -> List[Dict[str, Any]]:
    """
    Give every row the same full column set and collapse duplicate keys.

    Postgres rejects a statement that touches one conflict key twice, so the
    last row for a key wins.
    """
    columns = [c.name for c in table.columns if not c.primary_key]
    now = datetime.utcnow()
    by_key: Dict[Any, Dict[str, Any]] = {}
    for row in rows:
        key = row.get(conflict_key)
        if key is None:
            raise ValueError(f"Row for {table.name} is missing conflict key '{conflict_key}'")
        normalized = {c: row.get(c) for c in columns}
        if "synced_at" in normalized and normalized["synced_at"] is None:
            normalized["synced_at"] = now
        by_key[key] = normalized
    return list(by_key.values())


def build_upsert(dialect_name: str, table, batch: List[Dict[str, Any]], conflict_key: str):
    """INSERT ... ON CONFLICT (conflict_key) DO UPDATE for every non-key column"""
    insert_fn = _INSERTS.get(dialect_name)
    if insert_fn is None:
        raise NotImplementedError(f"Upserts are not supported on {dialect_name}")

    stmt = insert_fn(table).values(batch)
    update_cols = {
        c.name: stmt.excluded[c.name]
        for c in table.columns
        if not c.primary_key and c.name != conflict_key
    }
    return stmt.on_conflict_do_update(index_elements=[conflict_key], set_=update_cols)


async def upsert_rows(
    session_factory: Callable[[], Session],
    model,
    rows: Sequence[Dict[str, Any]],
    conflict_key: str,
    batch_size: int = 500
) -> int:
    """
    Upsert rows into model's table in batches

    Args:
        session_factory: Callable returning a new Session
        model: Declarative model class
        rows: Translated cached rows
        conflict_key: Unique column holding the external id
        batch_size: Rows per atomic write

    Returns:
        Number of rows written

    Raises:
        UpsertError: when a batch fails (earlier batches stay committed)
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    table = model.__table__
    prepared = _normalize_rows(table, rows, conflict_key)
    if not prepared:
        return 0

    written = 0
    batch_count = (len(prepared) + batch_size - 1) // batch_size
    log.info(f"Upserting {len(prepared)} rows into {table.name} in {batch_count} batches of {batch_size}")

    for i in range(0, len(prepared), batch_size):
        batch = prepared[i:i + batch_size]
        batch_number = i // batch_size + 1

        db = session_factory()
        try:
            stmt = build_upsert(db.get_bind().dialect.name, table, batch, conflict_key)
            db.execute(stmt)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            log.error(f"Batch {batch_number}/{batch_count} upsert into {table.name} failed: {e}")
            raise UpsertError(table.name, batch_number, written, e) from e
        finally:
            db.close()

        written += len(batch)
        log.debug(f"Upserted {written}/{len(prepared)} rows into {table.name}")
        # Yield to the loop so the other entity's sync can progress
        await asyncio.sleep(0)

    return written

