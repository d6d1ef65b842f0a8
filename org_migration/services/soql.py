"""Helpers for building query strings."""

from typing import Any, Iterable, Iterator, List, Optional, Sequence, TypeVar

T = TypeVar("T")

# Upper bound on ids placed in one IN clause
IN_CLAUSE_CHUNK_SIZE = 200


def escape_value(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


def format_id_list(values: Iterable[Any]) -> str:
    """Format values for an IN clause: 'a', 'b', 'c'."""
    return ", ".join(f"'{escape_value(v)}'" for v in values)


def chunked(items: Sequence[T], size: int = IN_CLAUSE_CHUNK_SIZE) -> Iterator[List[T]]:
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def build_select(
    object_type: str,
    fields: Iterable[str],
    where: Optional[str] = None,
    order_by: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None
) -> str:
    """Build SELECT f FROM obj [WHERE][ORDER BY][LIMIT n][OFFSET m]."""
    soql = f"SELECT {', '.join(fields)} FROM {object_type}"
    if where:
        soql += f" WHERE {where}"
    if order_by:
        soql += f" ORDER BY {order_by}"
    if limit is not None:
        soql += f" LIMIT {limit}"
    if offset:
        soql += f" OFFSET {offset}"
    return soql


def add_where(soql: str, condition: str) -> str:
    """Append a condition to a query, joining any existing WHERE with AND."""
    if not condition:
        return soql
    soql = " ".join(soql.split())
    upper = soql.upper()
    clause_start = len(soql)
    for keyword in (" ORDER BY ", " LIMIT ", " OFFSET "):
        position = upper.find(keyword)
        if position != -1:
            clause_start = min(clause_start, position)

    head, tail = soql[:clause_start], soql[clause_start:]
    if " WHERE " in head.upper():
        head = f"{head} AND ({condition})"
    else:
        head = f"{head} WHERE {condition}"
    return head + tail


def where_clause(soql: str) -> Optional[str]:
    """Get the WHERE condition of a query, without ORDER BY / LIMIT / OFFSET."""
    soql = " ".join(soql.split())
    upper = soql.upper()
    start = upper.find(" WHERE ")
    if start == -1:
        return None
    end = len(soql)
    for keyword in (" ORDER BY ", " LIMIT ", " OFFSET "):
        position = upper.find(keyword, start)
        if position != -1:
            end = min(end, position)
    return soql[start + len(" WHERE "):end].strip() or None
