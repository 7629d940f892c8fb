"""Parquet serialization of reconstructed record batches."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Iterable

import pyarrow as pa
import pyarrow.parquet as pq

from syncronicity.exceptions import SerializeError
from syncronicity.logging_utils import get_logger, log_operation
from syncronicity.models import SerializedFile

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE_BYTES = 64 * 1024 * 1024
INPROGRESS_SUFFIX = ".inprogress"


def sha256_file(path: Path) -> str:
    """Calculate SHA256 hash of a file."""
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def ensure_dir(path: Path) -> None:
    """Create directory if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)


def inprogress_path(destination: Path) -> Path:
    return destination.with_name(destination.name + INPROGRESS_SUFFIX)


class BatchSerializer:
    """Writes record batches of one schema into Parquet files.

    Records are buffered until ``batch_size_bytes`` of uncompressed data is pending, then
    flushed as one row group. Files are written under an ``.inprogress`` name and renamed
    only once fully flushed and closed, so the final name is either complete or absent.
    """

    def __init__(
        self,
        schema: pa.Schema,
        *,
        batch_size_bytes: int = DEFAULT_BATCH_SIZE_BYTES,
        compression: str | None = "snappy",
        format_version: str = "2.6",
    ):
        if batch_size_bytes < 1:
            raise ValueError("batch_size_bytes must be positive")
        self.schema = schema
        self.batch_size_bytes = batch_size_bytes
        self.compression = compression
        self.format_version = format_version

    def write(self, records: Iterable[pa.RecordBatch], destination: Path) -> SerializedFile:
        """Consume ``records`` into ``destination``; the caller keeps no reference to them."""
        destination = Path(destination)
        temp_path = inprogress_path(destination)
        promoted = False
        rows = 0

        with log_operation(logger, "write_parquet", output_path=str(destination)):
            try:
                ensure_dir(destination.parent)
                writer = pq.ParquetWriter(
                    str(temp_path),
                    self.schema,
                    compression=self.compression,
                    version=self.format_version,
                )
                try:
                    pending: list[pa.RecordBatch] = []
                    pending_bytes = 0
                    for record in records:
                        if not record.schema.equals(self.schema):
                            raise SerializeError(
                                "Record schema differs from file schema",
                                details={"path": str(destination), "got": str(record.schema)},
                            )
                        pending.append(record)
                        pending_bytes += record.nbytes
                        rows += record.num_rows
                        if pending_bytes >= self.batch_size_bytes:
                            self._flush(writer, pending)
                            pending = []
                            pending_bytes = 0
                    if pending:
                        self._flush(writer, pending)
                        pending = []
                finally:
                    writer.close()

                with temp_path.open("rb+") as f:
                    os.fsync(f.fileno())
                os.replace(temp_path, destination)
                promoted = True

            except SerializeError:
                raise
            except (pa.ArrowException, OSError, ValueError) as e:
                raise SerializeError(
                    f"Failed to write parquet file: {e}",
                    details={"path": str(destination)},
                ) from e
            finally:
                if not promoted and temp_path.exists():
                    temp_path.unlink()

        result = SerializedFile(
            path=str(destination),
            row_count=rows,
            size_bytes=destination.stat().st_size,
            sha256=sha256_file(destination),
        )
        logger.info(
            "Parquet file written successfully",
            extra={"path": result.path, "row_count": result.row_count, "size_bytes": result.size_bytes},
        )
        return result

    def _flush(self, writer: pq.ParquetWriter, pending: list[pa.RecordBatch]) -> None:
        table = pa.Table.from_batches(pending, schema=self.schema)
        writer.write_table(table, row_group_size=max(table.num_rows, 1))
