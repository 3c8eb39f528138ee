"""Store-level serialization primitives.

Everything in the broker that has to be decided exactly once per key (a pending
connection per user and platform, a state token consumption, a wallet debit, a rate
limit window) goes through one of these two functions, so the decision is made by
the database and not by the process that happens to serve the request.
"""

from typing import Any

from sqlalchemy import ColumnElement, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _dialect_insert(db: Session):
    dialect_name = db.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect_name)
    if insert is None:
        raise NotImplementedError(f"Conditional insert is not supported for dialect {dialect_name}")
    return insert


def insert_if_absent(
    db: Session,
    model,
    *,
    values: dict[str, Any],
    conflict_columns: list[str],
    conflict_where: ColumnElement[bool] | None = None,
) -> Any | None:
    """Insert a row unless one already occupies the unique key.

    Returns the primary key of the inserted row, or ``None`` when the key was
    already taken (including by a concurrent transaction that committed first).
    """
    insert = _dialect_insert(db)
    primary_key = model.__table__.primary_key.columns.values()[0]
    stmt = (
        insert(model.__table__)
        .values(**values)
        .on_conflict_do_nothing(index_elements=conflict_columns, index_where=conflict_where)
        .returning(primary_key)
    )
    return db.execute(stmt).scalar_one_or_none()


def compare_and_set(
    db: Session,
    model,
    *,
    where: list[ColumnElement[bool]],
    values: dict[str, Any],
    returning: list[Any] | None = None,
):
    """Apply ``values`` only to rows still matching ``where``.

    Without ``returning`` the number of rows that transitioned is returned. With
    ``returning`` the first transitioned row (or ``None``) is returned.
    """
    stmt = update(model).where(*where).values(**values).execution_options(synchronize_session=False)
    if returning:
        return db.execute(stmt.returning(*returning)).first()
    result = db.execute(stmt)
    return int(result.rowcount or 0)
