"""Bulk load of staged Parquet files into the destination table."""

from __future__ import annotations

import re
from typing import Sequence

from snowflake.connector.errors import Error as SnowflakeError

from syncronicity.exceptions import ConfigurationError, LoadError
from syncronicity.logging_utils import get_logger, log_event, log_operation
from syncronicity.models import LoadResult
from syncronicity.stage import normalize_stage_ref

logger = get_logger(__name__)

_IDENTIFIER_PART = r'(?:[A-Za-z_][A-Za-z0-9_$]*|"(?:[^"]|"")+")'
_TABLE_NAME = re.compile(rf"^{_IDENTIFIER_PART}(?:\.{_IDENTIFIER_PART}){{0,2}}$")
_FILE_NAME = re.compile(r"^[A-Za-z0-9_.\-/=]+$")

FAILED_STATUSES = {"LOAD_FAILED", "PARTIALLY_LOADED"}


def validate_table_name(table: str) -> str:
    table = table.strip()
    if not _TABLE_NAME.match(table):
        raise ConfigurationError("Invalid destination table name", details={"destination_table": table})
    return table


def build_copy_statement(stage_ref: str, destination_table: str, files: Sequence[str] | None = None) -> str:
    """COPY INTO matching Parquet columns to table columns by name, case-insensitively."""
    table = validate_table_name(destination_table)
    stage = normalize_stage_ref(stage_ref)
    sql = (
        f"COPY INTO {table} FROM {stage} "
        "FILE_FORMAT = (TYPE = PARQUET) "
        "MATCH_BY_COLUMN_NAME = CASE_INSENSITIVE"
    )
    if files:
        for name in files:
            if not _FILE_NAME.match(name):
                raise ConfigurationError("Invalid staged file name", details={"file": name})
        sql += " FILES = (" + ", ".join(f"'{name}'" for name in files) + ")"
    return sql


class BulkLoader:
    """Runs ``COPY INTO`` from a stage. Staged files are left in place whatever the outcome."""

    def __init__(self, connection):
        self.connection = connection

    def load(self, stage_ref: str, destination_table: str, files: Sequence[str] | None = None) -> LoadResult:
        sql = build_copy_statement(stage_ref, destination_table, files)
        file_list = tuple(files or ())

        with log_operation(logger, "bulk_load", stage=stage_ref, table=destination_table, files=len(file_list)):
            try:
                cursor = self.connection.cursor()
                try:
                    cursor.execute(sql)
                    columns = [desc[0].lower() for desc in (cursor.description or [])]
                    results = [dict(zip(columns, row)) for row in cursor.fetchall()]
                finally:
                    cursor.close()
            except SnowflakeError as e:
                raise LoadError(
                    f"COPY INTO {destination_table} failed: {e}",
                    details={"stage": stage_ref, "files": list(file_list)},
                ) from e

            # A stage with nothing new to load yields one "status" row and no per-file results.
            file_results = [r for r in results if "rows_loaded" in r]
            failed = [r for r in file_results if str(r.get("status", "")).upper() in FAILED_STATUSES]
            if failed:
                raise LoadError(
                    f"COPY INTO {destination_table} reported failed files",
                    details={
                        "failed_files": [r.get("file") for r in failed],
                        "first_error": failed[0].get("first_error"),
                    },
                )

            rows_loaded = sum(int(r.get("rows_loaded") or 0) for r in file_results)
            loaded_files = tuple(str(r.get("file")) for r in file_results)

        log_event(logger, "load_completed", table=destination_table, rows=rows_loaded, files=len(loaded_files))
        return LoadResult(rows_loaded=rows_loaded, files=loaded_files)
