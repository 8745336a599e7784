"""Shared pytest fixtures: catalog payload and an in-memory stand-in for the remote service.

The fake service answers `GET /api/data/query?query=...` the way the real
endpoint does (CSV with a header row), running the T-SQL text against an
in-memory sqlite database after a few dialect rewrites.
"""

from __future__ import annotations

import csv
import io
import logging
import math
import re
import sqlite3
import statistics
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from cmap_gateway.core.config import DEFAULT_CATALOG_QUERY, GatewaySettings
from cmap_gateway.core.schemas import CATALOG_FIELDS
from cmap_gateway.remote.client import RemoteClient
from cmap_gateway.remote.executor import ManualQueryExecutor


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """Keep CLI setup_logging() calls from leaking root logger state into other tests."""
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield
    root.setLevel(level)
    root.handlers[:] = handlers


# ============================================================================
# CATALOG
# ============================================================================

_TABLES = {
    "tblCHL_REP": {
        "Variable_Count": 1,
        "Lat_Min": -89.98,
        "Lat_Max": 89.98,
        "Lon_Min": -179.98,
        "Lon_Max": 179.98,
        "Depth_Min": "",
        "Depth_Max": "",
        "Time_Min": "1997-09-04T00:00:00",
        "Time_Max": "2021-12-01T00:00:00",
        "Temporal_Resolution": "Monthly",
        "Spatial_Resolution": "1/4° X 1/4°",
        "Dataset_Name": "CHL_REP",
        "Dataset_Description": "Multi-sensor reprocessed ocean colour product",
        "Data_Source": "Copernicus",
        "Distributor": "CMEMS",
    },
    "tblArgo": {
        "Variable_Count": 2,
        "Lat_Min": -78.5,
        "Lat_Max": 89.9,
        "Lon_Min": -180.0,
        "Lon_Max": 180.0,
        "Depth_Min": 0.0,
        "Depth_Max": 2000.0,
        "Time_Min": "2002-01-01T00:00:00",
        "Time_Max": "2020-12-31T00:00:00",
        "Temporal_Resolution": "Irregular",
        "Spatial_Resolution": "Irregular",
        "Dataset_Name": "Argo Floats",
        "Dataset_Description": "Profiling float temperature and salinity",
        "Data_Source": "Argo",
        "Distributor": "GDAC",
    },
}

_VARIABLES = [
    ("tblCHL_REP", "chl", "Chlorophyll", "mg m^-3", "Observation", "Satellite", "chlorophyll, ocean color"),
    ("tblArgo", "argo_temp", "Temperature", "degC", "Observation", "In-Situ", "argo, temperature"),
    ("tblArgo", "argo_psal", "Practical Salinity", "psu", "Observation", "In-Situ", "argo, salinity"),
]


def catalog_rows() -> List[Dict[str, object]]:
    rows = []
    for table, var, long_name, unit, make, sensor, keywords in _VARIABLES:
        row = {
            "Variable": var,
            "Table_Name": table,
            "Long_Name": long_name,
            "Unit": unit,
            "Make": make,
            "Sensor": sensor,
            "Keywords": keywords,
        }
        row.update(_TABLES[table])
        rows.append(row)
    return rows


def catalog_csv(rows: Optional[List[Dict[str, object]]] = None) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=list(CATALOG_FIELDS), lineterminator="\n")
    writer.writeheader()
    for row in rows if rows is not None else catalog_rows():
        writer.writerow(row)
    return buf.getvalue()


# ============================================================================
# DATA TABLES
# ============================================================================

CHL_TIMES = (
    "2016-01-01T00:00:00",
    "2016-01-15T00:00:00",
    "2016-02-01T00:00:00",
    "2017-03-01T00:00:00",
)
CHL_LATS = (45.03, 45.26, 45.31, 45.74, 46.12, 46.98, 50.2)
CHL_LONS = (50.2, 51.7, 53.05, 55.9, 61.3)


def chl_rows():
    """(time, lat, lon, chl) rows; every fifth chl is missing."""
    rows = []
    i = 0
    for t in CHL_TIMES:
        for lat in CHL_LATS:
            for lon in CHL_LONS:
                chl = None if i % 5 == 0 else round(0.1 + 0.013 * i, 4)
                rows.append((t, lat, lon, chl))
                i += 1
    return rows


def argo_rows():
    """(time, lat, lon, depth, argo_temp, argo_psal) rows."""
    rows = []
    for k, depth in enumerate((5.0, 5.0, 100.0, 100.0, 500.0)):
        temp = None if k == 3 else 20.0 - depth / 50.0 + k * 0.1
        rows.append(("2018-06-01T00:00:00", 10.0 + k, -40.0, depth, temp, 35.0 + k * 0.01))
    return rows


# ============================================================================
# FAKE REMOTE SERVICE
# ============================================================================


class _Stdev:
    def __init__(self):
        self.values = []

    def step(self, value):
        if value is not None:
            self.values.append(value)

    def finalize(self):
        if len(self.values) < 2:
            return None
        return statistics.stdev(self.values)


def _datediff(unit, start, end):
    a = datetime.fromisoformat(start)
    b = datetime.fromisoformat(end)
    if unit == "day":
        return (b.date() - a.date()).days
    return int((b - a).total_seconds())


def _floor(x):
    if x is None:
        return None
    return float(math.floor(x))


def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.create_function("FLOOR", 1, _floor)
    conn.create_function("DATEDIFF", 3, _datediff)
    conn.create_function("YEAR", 1, lambda t: None if t is None else int(t[:4]))
    conn.create_function("MONTH", 1, lambda t: None if t is None else int(t[5:7]))
    conn.create_aggregate("STDEV", 1, _Stdev)
    conn.execute("CREATE TABLE tblCHL_REP (time TEXT, lat REAL, lon REAL, chl REAL)")
    conn.executemany("INSERT INTO tblCHL_REP VALUES (?, ?, ?, ?)", chl_rows())
    conn.execute(
        "CREATE TABLE tblArgo (time TEXT, lat REAL, lon REAL, depth REAL, argo_temp REAL, argo_psal REAL)"
    )
    conn.executemany("INSERT INTO tblArgo VALUES (?, ?, ?, ?, ?, ?)", argo_rows())
    return conn


_TOP_RE = re.compile(r"^\s*SELECT\s+TOP\((\d+)\)\s+", re.IGNORECASE)
_DATEDIFF_RE = re.compile(r"DATEDIFF\((day|second),", re.IGNORECASE)


def to_sqlite(query: str) -> str:
    """Rewrite the T-SQL constructs the gateway emits into sqlite syntax."""
    sql = _DATEDIFF_RE.sub(lambda m: f"DATEDIFF('{m.group(1).lower()}',", query)
    sql = sql.replace("NEWID()", "RANDOM()")
    m = _TOP_RE.match(sql)
    if m:
        sql = "SELECT " + sql[m.end():] + f" LIMIT {m.group(1)}"
    return sql


@dataclass
class FakeRemote:
    """Records every query it receives; `override` can replace any response."""

    conn: sqlite3.Connection = field(default_factory=_connect)
    queries: List[str] = field(default_factory=list)
    headers: List[httpx.Headers] = field(default_factory=list)
    catalog_payload: str = field(default_factory=catalog_csv)
    override: Optional[Callable[[str], Optional[httpx.Response]]] = None

    @property
    def data_queries(self) -> List[str]:
        return [q for q in self.queries if q != DEFAULT_CATALOG_QUERY]

    def handler(self, request: httpx.Request) -> httpx.Response:
        query = request.url.params.get("query", "")
        self.queries.append(query)
        self.headers.append(request.headers)
        if self.override is not None:
            response = self.override(query)
            if response is not None:
                return response
        if query == DEFAULT_CATALOG_QUERY:
            return httpx.Response(200, text=self.catalog_payload, headers={"content-type": "text/csv"})
        try:
            cur = self.conn.execute(to_sqlite(query))
        except sqlite3.Error as e:
            return httpx.Response(400, text=f"Invalid query: {e}")
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow([d[0] for d in cur.description])
        for row in cur.fetchall():
            writer.writerow(["" if v is None else v for v in row])
        return httpx.Response(200, text=buf.getvalue(), headers={"content-type": "text/csv"})


@pytest.fixture
def settings() -> GatewaySettings:
    return GatewaySettings(base_url="https://cmap.test", api_key="test-key", warn_rows=50)


@pytest.fixture
def fake_remote():
    remote = FakeRemote()
    yield remote
    remote.conn.close()


@pytest.fixture
def client(settings, fake_remote):
    with RemoteClient(settings, transport=httpx.MockTransport(fake_remote.handler)) as c:
        yield c


@pytest.fixture
def executor(client) -> ManualQueryExecutor:
    return ManualQueryExecutor(client)


@pytest.fixture
def chl_data():
    return chl_rows()


@pytest.fixture
def argo_data():
    return argo_rows()


@pytest.fixture
def make_catalog_csv():
    return catalog_csv


@pytest.fixture
def catalog_records():
    return catalog_rows()
