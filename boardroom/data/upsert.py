from __future__ import annotations

from typing import Any, Dict, Sequence

from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

_NATIVE_UPSERT = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


def upsert_row(
    db: Session,
    model,
    values: Dict[str, Any],
    *,
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
) -> None:
    """Insert a row or update it in place when the unique key already exists.

    SQLite and PostgreSQL use INSERT ... ON CONFLICT DO UPDATE so two racing
    writers for the same key collapse into one row. Other backends fall back to
    letting the unique constraint reject the insert and updating instead.
    Does not commit.
    """
    dialect = db.get_bind().dialect.name
    insert = _NATIVE_UPSERT.get(dialect)
    if insert is not None:
        statement = insert(model).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={column: statement.excluded[column] for column in update_columns},
        )
        db.execute(statement)
        return

    key = {column: values[column] for column in conflict_columns}
    changes = {column: values[column] for column in update_columns}
    try:
        with db.begin_nested():
            db.add(model(**values))
    except IntegrityError:
        db.query(model).filter_by(**key).update(changes, synchronize_session=False)
