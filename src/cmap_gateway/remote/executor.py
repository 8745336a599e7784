"""Read-only query execution.

`ManualQueryExecutor` is the single door to the remote service: built specs
and free-text queries both pass its read-only guard before they are sent.
The guard is a case-insensitive keyword scan, not a parser.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import List, Optional

from cmap_gateway.core.errors import ForbiddenStatement
from cmap_gateway.core.query.normalize import QueryResult, RawTable, normalize
from cmap_gateway.core.schemas import MUTATING_KEYWORDS
from .client import RemoteClient

logger = logging.getLogger(__name__)

_MUTATING_RE = re.compile(r"\b(" + "|".join(MUTATING_KEYWORDS) + r")\b", re.IGNORECASE)


def check_read_only(query: str) -> str:
    """Return the query unchanged, or raise if it looks mutating.

    Examples:
        >>> check_read_only("select * from tblCHL_REP")
        'select * from tblCHL_REP'
    """
    if not query or not query.strip():
        raise ForbiddenStatement("<empty>", query=query)
    match = _MUTATING_RE.search(query)
    if match:
        raise ForbiddenStatement(match.group(1).upper(), query=query)
    return query


def name_columns(columns: List[str]) -> List[str]:
    """Replace empty or repeated column names with positional names col1, col2, ...

    Examples:
        >>> name_columns(["lat", "", "lat"])
        ['lat', 'col2', 'col3']
    """
    seen = set()
    named: List[str] = []
    for i, name in enumerate(columns, start=1):
        name = (name or "").strip()
        if not name or name in seen:
            name = f"col{i}"
        while name in seen:
            name = f"{name}_"
        seen.add(name)
        named.append(name)
    return named


class ManualQueryExecutor:
    """Send read-only query text and return typed results."""

    def __init__(self, client: RemoteClient) -> None:
        self.client = client

    def fetch_raw(
        self,
        query: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> RawTable:
        """Guard, send and return the untyped table with every column named."""
        check_read_only(query)
        raw = self.client.fetch(query, timeout=timeout, cancel=cancel)
        columns = name_columns(raw.columns)
        if columns != raw.columns:
            logger.debug("Synthesized column names: %s -> %s", raw.columns, columns)
        return RawTable(columns=columns, rows=raw.rows)

    def execute(
        self,
        query: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> QueryResult:
        """Send query text verbatim and return a normalized QueryResult.

        Raises:
            ForbiddenStatement: Mutating keyword found; nothing was sent.
        """
        raw = self.fetch_raw(query, timeout=timeout, cancel=cancel)
        result = normalize(raw, query=query)
        logger.info("Query returned %d rows, %d columns", result.rows_returned, len(result.columns))
        return result


__all__ = ["ManualQueryExecutor", "check_read_only", "name_columns"]
