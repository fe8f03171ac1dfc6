"""
Idempotent upserts keyed by natural composite keys

Each row is written inside its own SAVEPOINT, so a rejected row rolls back
alone and the rest of the page still lands. Failures come back as values
(RecordResult / BatchOutcome), not exceptions.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from outreach_sync.utils.helpers import utcnow
from outreach_sync.utils.logger import log


@dataclass
class RecordResult:
    """Outcome of mapping (and later writing) one upstream record"""
    row: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    ref: Optional[str] = None  # external id or email, for error messages

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, row: Dict[str, Any], ref: Optional[str] = None) -> "RecordResult":
        return cls(row=row, ref=ref)

    @classmethod
    def failure(cls, error: str, ref: Optional[str] = None) -> "RecordResult":
        return cls(error=error, ref=ref)


@dataclass
class BatchOutcome:
    """Per-page totals: rows written, rows rejected, and why"""
    upserted: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def add_failure(self, error: str, ref: Optional[str] = None):
        self.failed += 1
        self.errors.append(f"{ref}: {error}" if ref else error)

    def merge(self, other: "BatchOutcome"):
        self.upserted += other.upserted
        self.failed += other.failed
        self.errors.extend(other.errors)


def dialect_insert(db: Session, model):
    """INSERT construct with ON CONFLICT support for the session's dialect"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


def upsert_row(
    db: Session,
    model,
    values: Dict[str, Any],
    conflict_keys: Sequence[str],
    update_columns: Optional[Iterable[str]] = None,
):
    """
    INSERT ... ON CONFLICT (conflict_keys) DO UPDATE for a single row.

    Only the columns present in `values` (or `update_columns`) are
    overwritten, so columns owned by other writers keep their values.
    """
    stmt = dialect_insert(db, model).values(**values)
    columns = update_columns if update_columns is not None else values.keys()
    set_ = {c: stmt.excluded[c] for c in columns if c not in conflict_keys}
    if set_ and "updated_at" in model.__table__.c and "updated_at" not in set_:
        set_["updated_at"] = utcnow()

    if set_:
        stmt = stmt.on_conflict_do_update(index_elements=list(conflict_keys), set_=set_)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_keys))
    return db.execute(stmt)


def insert_if_missing(db: Session, model, values: Dict[str, Any], conflict_keys: Sequence[str]) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING; True when a row was inserted"""
    stmt = dialect_insert(db, model).values(**values).on_conflict_do_nothing(
        index_elements=list(conflict_keys)
    )
    return db.execute(stmt).rowcount == 1


def upsert_batch(
    db: Session,
    model,
    results: Iterable[RecordResult],
    conflict_keys: Sequence[str],
    prepare: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None,
) -> BatchOutcome:
    """
    Upsert a page of mapped records.

    Mapping failures are counted without touching the database. Each
    remaining row gets a SAVEPOINT; `prepare` runs inside it so lookups it
    makes (e.g. contact get-or-create) roll back with the row. The caller
    owns the enclosing transaction.
    """
    outcome = BatchOutcome()
    for result in results:
        if not result.ok:
            outcome.add_failure(result.error, result.ref)
            continue
        try:
            with db.begin_nested():
                row = prepare(result.row) if prepare else result.row
                upsert_row(db, model, row, conflict_keys)
            outcome.upserted += 1
        except (SQLAlchemyError, ValueError, KeyError) as e:
            log.warning(f"{model.__tablename__}: row rejected ({result.ref}): {e}")
            outcome.add_failure(f"{type(e).__name__}: {str(e)[:200]}", result.ref)
    return outcome
