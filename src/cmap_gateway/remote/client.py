from __future__ import annotations

import csv
import io
import json
import logging
import threading
import time
from typing import Any, List, Optional

import httpx

from cmap_gateway import __version__
from cmap_gateway.core.config import GatewaySettings
from cmap_gateway.core.errors import (
    MalformedResponse,
    QueryCancelled,
    QueryRejected,
    QueryTimeout,
    RemoteUnavailable,
)
from cmap_gateway.core.query.normalize import RawTable

DOWNLOAD_CHUNK_SIZE = 1024 * 256
ERROR_BODY_PREVIEW = 500


def _check_interrupt(
    cancel: Optional[threading.Event], deadline: float, query: str
) -> None:
    if cancel is not None and cancel.is_set():
        raise QueryCancelled("Query cancelled by caller", query=query)
    if time.monotonic() > deadline:
        raise QueryTimeout("Query deadline exceeded", query=query)


def parse_csv_payload(
    text: str, *, has_header: bool = True, query: Optional[str] = None
) -> RawTable:
    """Split a delimited payload into header and rows.

    Empty header cells stay empty strings; the executor names them. In a
    single-column table an empty line is a null cell, so only one trailing
    empty line is dropped.
    """
    rows: List[List[Any]] = list(csv.reader(io.StringIO(text)))
    if rows and not rows[-1]:
        rows.pop()
    if not rows:
        return RawTable(columns=[], rows=[])
    width = len(rows[0])
    for i, row in enumerate(rows):
        if row:
            continue
        if width != 1:
            raise MalformedResponse(f"Empty line {i + 1} in a {width}-column payload", query=query)
        rows[i] = [""]
    if has_header:
        return RawTable(columns=list(rows[0]), rows=rows[1:])
    return RawTable(columns=[""] * width, rows=rows)


def parse_json_payload(data: Any, query: Optional[str] = None) -> RawTable:
    """Accept records, {"columns", "data"} objects, or headerless row arrays."""
    if isinstance(data, dict) and "data" in data:
        rows = data["data"]
        columns = data.get("columns")
        if not isinstance(rows, list) or not all(isinstance(r, list) for r in rows):
            raise MalformedResponse("JSON 'data' must be a list of rows", query=query)
        if columns is None:
            columns = [""] * (len(rows[0]) if rows else 0)
        return RawTable(columns=[str(c) if c is not None else "" for c in columns], rows=rows)
    if isinstance(data, list):
        if not data:
            return RawTable(columns=[], rows=[])
        if all(isinstance(r, dict) for r in data):
            columns: List[str] = []
            for record in data:
                for key in record:
                    if key not in columns:
                        columns.append(key)
            return RawTable(
                columns=columns,
                rows=[[record.get(c) for c in columns] for record in data],
            )
        if all(isinstance(r, list) for r in data):
            return RawTable(columns=[""] * len(data[0]), rows=data)
    raise MalformedResponse(f"Unsupported JSON payload shape: {type(data).__name__}", query=query)


class RemoteClient:
    """Blocking HTTP client for the remote query endpoint.

    One call is one round trip; nothing is retried here. The deadline and the
    optional cancel event are checked before submission, once the response
    headers arrive, and between body chunks.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        has_header: bool = True,
    ) -> None:
        self.settings = settings
        self.has_header = has_header
        self.logger = logging.getLogger(__name__)
        headers = {
            "User-Agent": f"cmap-gateway/{__version__}",
            "Accept": "text/csv, application/json;q=0.9",
        }
        if settings.api_key:
            headers["Authorization"] = f"Api-Key {settings.api_key}"
        self._client = httpx.Client(
            base_url=settings.base_url,
            timeout=settings.timeout_sec,
            follow_redirects=True,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RemoteClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _raise_for_status(self, response: httpx.Response, query: str) -> None:
        if response.status_code < 400:
            return
        response.read()
        detail = response.text[:ERROR_BODY_PREVIEW]
        code = response.status_code
        if code in (401, 403):
            raise RemoteUnavailable(f"Credentials rejected ({code}): {detail}", status_code=code, query=query)
        if code < 500:
            raise QueryRejected(f"Query rejected ({code}): {detail}", status_code=code, query=query)
        raise RemoteUnavailable(f"Remote service error ({code}): {detail}", status_code=code, query=query)

    def fetch(
        self,
        query: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> RawTable:
        """Send query text and parse the tabular response.

        Raises:
            RemoteUnavailable: Transport failure, 5xx, or rejected credentials.
            QueryRejected: Remote 4xx for the query text.
            QueryTimeout: Deadline exceeded.
            QueryCancelled: `cancel` was set.
            MalformedResponse: Body cannot be decoded as CSV or JSON.
        """
        budget = timeout if timeout is not None else self.settings.timeout_sec
        deadline = time.monotonic() + budget
        _check_interrupt(cancel, deadline, query)
        self.logger.debug("Submitting query: %s", query)

        started = time.monotonic()
        chunks: List[bytes] = []
        try:
            with self._client.stream(
                "GET",
                self.settings.query_path,
                params={"query": query},
                timeout=budget,
            ) as response:
                _check_interrupt(cancel, deadline, query)
                self._raise_for_status(response, query)
                content_type = response.headers.get("content-type", "")
                for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                    chunks.append(chunk)
                    _check_interrupt(cancel, deadline, query)
        except httpx.TimeoutException as e:
            raise QueryTimeout(f"Remote request timed out: {e}", query=query) from e
        except httpx.RequestError as e:
            raise RemoteUnavailable(f"Remote request failed: {e}", query=query) from e

        body = b"".join(chunks)
        self.logger.debug(
            "Received %d bytes in %.2fs (%s)", len(body), time.monotonic() - started, content_type
        )
        try:
            text = body.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise MalformedResponse(f"Response is not UTF-8: {e}", query=query) from e

        if "json" in content_type.lower():
            try:
                data = json.loads(text) if text.strip() else []
            except json.JSONDecodeError as e:
                raise MalformedResponse(f"Invalid JSON response: {e}", query=query) from e
            return parse_json_payload(data, query)
        try:
            return parse_csv_payload(text, has_header=self.has_header, query=query)
        except csv.Error as e:
            raise MalformedResponse(f"Invalid delimited response: {e}", query=query) from e


__all__ = ["RemoteClient", "parse_csv_payload", "parse_json_payload"]
