"""Transfer of local Parquet files into a Snowflake stage."""

from __future__ import annotations

from pathlib import Path

from snowflake.connector.errors import Error as SnowflakeError

from syncronicity.exceptions import ConfigurationError, UploadError
from syncronicity.logging_utils import get_logger, log_event, log_operation
from syncronicity.models import StagedFile

logger = get_logger(__name__)

STAGE_MARKER = "@"
PUT_OK_STATUSES = {"UPLOADED", "SKIPPED"}


def normalize_stage_ref(stage_ref: str) -> str:
    """Return ``stage_ref`` with exactly one leading ``@``.

    ``"my_stage"``, ``"@my_stage"`` and ``"@@my_stage"`` all normalize to ``"@my_stage"``;
    trailing slashes are dropped.
    """
    name = (stage_ref or "").strip().lstrip(STAGE_MARKER).rstrip("/")
    if not name:
        raise ConfigurationError("Stage reference is empty", details={"stage_ref": stage_ref})
    return f"{STAGE_MARKER}{name}"


def stage_location(stage_ref: str, prefix: str = "") -> str:
    stage = normalize_stage_ref(stage_ref)
    prefix = prefix.strip("/")
    return f"{stage}/{prefix}" if prefix else stage


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _rows_as_dicts(cursor) -> list[dict]:
    columns = [desc[0].lower() for desc in (cursor.description or [])]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class StageUploader:
    """PUTs local files into one stage location; no automatic retry at this layer."""

    def __init__(self, connection, stage_ref: str, *, upload_concurrency: int = 8, prefix: str = ""):
        if not 1 <= upload_concurrency <= 99:
            raise ConfigurationError(
                "upload_concurrency must be between 1 and 99",
                details={"upload_concurrency": upload_concurrency},
            )
        self.connection = connection
        self.stage_ref = normalize_stage_ref(stage_ref)
        self.prefix = prefix.strip("/")
        self.upload_concurrency = upload_concurrency

    @property
    def location(self) -> str:
        return stage_location(self.stage_ref, self.prefix)

    def upload(self, local_file: Path, row_count: int = 0, sha256: str = "") -> StagedFile:
        local_file = Path(local_file)
        if not local_file.is_file():
            raise UploadError("Local file does not exist", details={"path": str(local_file)})
        try:
            absolute = local_file.resolve(strict=True)
        except OSError as e:
            raise UploadError("Local file path cannot be resolved", details={"path": str(local_file)}) from e

        size_bytes = absolute.stat().st_size
        sql = (
            f"PUT {_quote('file://' + absolute.as_posix())} {self.location} "
            f"AUTO_COMPRESS=FALSE OVERWRITE=TRUE PARALLEL={self.upload_concurrency}"
        )

        with log_operation(logger, "stage_upload", path=str(absolute), stage=self.location):
            try:
                cursor = self.connection.cursor()
                try:
                    cursor.execute(sql)
                    results = _rows_as_dicts(cursor)
                finally:
                    cursor.close()
            except SnowflakeError as e:
                raise UploadError(
                    f"Stage upload rejected: {e}",
                    details={"path": str(absolute), "stage": self.location},
                ) from e

            failed = [r for r in results if str(r.get("status", "")).upper() not in PUT_OK_STATUSES]
            if not results or failed:
                raise UploadError(
                    "Stage upload did not report success",
                    details={"path": str(absolute), "stage": self.location, "results": failed or results},
                )

        staged = StagedFile(
            name=absolute.name,
            stage_ref=self.location,
            local_path=str(absolute),
            row_count=row_count,
            size_bytes=size_bytes,
            sha256=sha256,
        )
        log_event(logger, "file_staged", file=staged.name, stage=staged.stage_ref, bytes=size_bytes, rows=row_count)
        return staged

    def list_files(self) -> list[str]:
        """Base names of the files currently present at the stage location."""
        try:
            cursor = self.connection.cursor()
            try:
                cursor.execute(f"LIST {self.location}")
                rows = _rows_as_dicts(cursor)
            finally:
                cursor.close()
        except SnowflakeError as e:
            raise UploadError(f"Failed to list stage: {e}", details={"stage": self.location}) from e
        return [str(r["name"]).rsplit("/", 1)[-1] for r in rows if r.get("name")]

    def is_staged(self, name: str) -> bool:
        return name in self.list_files()
