"""Field definitions for the remote catalog and the query dialect.

This module defines the fixed catalog schema, the split between table-level
and variable-level catalog fields, the coordinate columns every data table
carries, and the reserved words of the target T-SQL dialect.
Used by the catalog, the query builder and the executor to stay consistent.
"""

from __future__ import annotations

from typing import FrozenSet, Tuple

# ============================================================================
# CATALOG SCHEMA
# ============================================================================

# One row per (table, variable); table-level fields repeat on every row.
CATALOG_FIELDS: Tuple[str, ...] = (
    "Variable",
    "Table_Name",
    "Long_Name",
    "Unit",
    "Variable_Count",
    "Lat_Min",
    "Lat_Max",
    "Lon_Min",
    "Lon_Max",
    "Depth_Min",
    "Depth_Max",
    "Time_Min",
    "Time_Max",
    "Temporal_Resolution",
    "Spatial_Resolution",
    "Make",
    "Sensor",
    "Dataset_Name",
    "Dataset_Description",
    "Keywords",
    "Data_Source",
    "Distributor",
)

TABLE_LEVEL_FIELDS: Tuple[str, ...] = (
    "Table_Name",
    "Variable_Count",
    "Lat_Min",
    "Lat_Max",
    "Lon_Min",
    "Lon_Max",
    "Depth_Min",
    "Depth_Max",
    "Time_Min",
    "Time_Max",
    "Temporal_Resolution",
    "Spatial_Resolution",
    "Dataset_Name",
    "Dataset_Description",
    "Data_Source",
    "Distributor",
)

DEFAULT_SEARCH_FIELDS: Tuple[str, ...] = ("Long_Name",)

EXPANDED_SEARCH_FIELDS: Tuple[str, ...] = (
    "Variable",
    "Long_Name",
    "Keywords",
    "Dataset_Name",
    "Dataset_Description",
    "Make",
    "Sensor",
    "Data_Source",
    "Distributor",
    "Table_Name",
)


# ============================================================================
# DATA TABLE COORDINATES
# ============================================================================

LAT = "lat"
LON = "lon"
DEPTH = "depth"
TIME = "time"

AXES: Tuple[str, ...] = (LAT, LON, DEPTH, TIME)
SPATIAL_AXES: Tuple[str, ...] = (LAT, LON)


# ============================================================================
# QUERY DIALECT
# ============================================================================

# Keywords rejected by the read-only guard of the manual executor.
MUTATING_KEYWORDS: Tuple[str, ...] = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "ALTER",
    "EXEC",
    "EXECUTE",
    "TRUNCATE",
    "MERGE",
    "CREATE",
)

# T-SQL reserved words; column names colliding with these must be bracketed.
RESERVED_WORDS: FrozenSet[str] = frozenset(
    """
    ADD ALL ALTER AND ANY AS ASC AUTHORIZATION BACKUP BEGIN BETWEEN BREAK
    BROWSE BULK BY CASCADE CASE CHECK CHECKPOINT CLOSE CLUSTERED COALESCE
    COLLATE COLUMN COMMIT COMPUTE CONSTRAINT CONTAINS CONTAINSTABLE CONTINUE
    CONVERT CREATE CROSS CURRENT CURRENT_DATE CURRENT_TIME CURRENT_TIMESTAMP
    CURRENT_USER CURSOR DATABASE DBCC DEALLOCATE DECLARE DEFAULT DELETE DENY
    DESC DISK DISTINCT DISTRIBUTED DOUBLE DROP DUMP ELSE END ERRLVL ESCAPE
    EXCEPT EXEC EXECUTE EXISTS EXIT EXTERNAL FETCH FILE FILLFACTOR FOR FOREIGN
    FREETEXT FREETEXTTABLE FROM FULL FUNCTION GOTO GRANT GROUP HAVING HOLDLOCK
    IDENTITY IDENTITY_INSERT IDENTITYCOL IF IN INDEX INNER INSERT INTERSECT
    INTO IS JOIN KEY KILL LEFT LIKE LINENO LOAD MERGE NATIONAL NOCHECK
    NONCLUSTERED NOT NULL NULLIF OF OFF OFFSETS ON OPEN OPENDATASOURCE
    OPENQUERY OPENROWSET OPENXML OPTION OR ORDER OUTER OVER PERCENT PIVOT PLAN
    PRECISION PRIMARY PRINT PROC PROCEDURE PUBLIC RAISERROR READ READTEXT
    RECONFIGURE REFERENCES REPLICATION RESTORE RESTRICT RETURN REVERT REVOKE
    RIGHT ROLLBACK ROWCOUNT ROWGUIDCOL RULE SAVE SCHEMA SECURITYAUDIT SELECT
    SEMANTICKEYPHRASETABLE SEMANTICSIMILARITYDETAILSTABLE
    SEMANTICSIMILARITYTABLE SESSION_USER SET SETUSER SHUTDOWN SOME STATISTICS
    SYSTEM_USER TABLE TABLESAMPLE TEXTSIZE THEN TO TOP TRAN TRANSACTION
    TRIGGER TRUNCATE TRY_CONVERT TSEQUAL UNION UNIQUE UNPIVOT UPDATE
    UPDATETEXT USE USER VALUES VARYING VIEW WAITFOR WHEN WHERE WHILE WITH
    WITHIN WRITETEXT
    """.split()
)


__all__ = [
    "CATALOG_FIELDS",
    "TABLE_LEVEL_FIELDS",
    "DEFAULT_SEARCH_FIELDS",
    "EXPANDED_SEARCH_FIELDS",
    "LAT",
    "LON",
    "DEPTH",
    "TIME",
    "AXES",
    "SPATIAL_AXES",
    "MUTATING_KEYWORDS",
    "RESERVED_WORDS",
]
