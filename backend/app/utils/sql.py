"""
SQL helpers for aggregate queries.

COUNT results come back as a plain int or as a 1-tuple/Row depending on how the
statement was built; scalar_int() normalizes both. count_rows() is the common
"how many rows of this model match" query used by the services and routes.
"""
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, select


def scalar_int(x: Any) -> int:
    """Convert COUNT/aggregate result to int. Handles int or 1-tuple/Row."""
    try:
        return int(x[0])
    except (TypeError, IndexError):
        return int(x)


def count_rows(session: Session, column: Any, *criteria: Any) -> int:
    """COUNT(column) over rows matching every criterion."""
    query = select(func.count(column))
    if criteria:
        query = query.where(*criteria)
    return scalar_int(session.exec(query).one())
