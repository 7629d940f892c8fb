"""Rebuild self-describing Arrow record batches from schema-less read responses."""

from __future__ import annotations

import pyarrow as pa

from syncronicity.exceptions import DecodeError
from syncronicity.models import RawBatch


class RecordReconstructor:
    """Decodes raw batches of one read session.

    Read responses carry only the record batch message, so every batch is decoded as a
    fresh IPC stream made of the session's schema message followed by the batch body.
    Nothing is shared between calls: each returned batch owns its buffers.
    """

    def __init__(self, schema_descriptor: bytes, schema: pa.Schema | None = None):
        self.schema_descriptor = bytes(schema_descriptor)
        if schema is None:
            try:
                schema = pa.ipc.read_schema(pa.py_buffer(self.schema_descriptor))
            except (pa.ArrowException, OSError, ValueError) as e:
                raise DecodeError("Failed to decode Arrow schema message", details={"error": str(e)}) from e
        self.schema = schema

    def reconstruct(self, raw: RawBatch | bytes) -> pa.RecordBatch | None:
        """Return the first record batch in ``raw``, or ``None`` when it holds no rows."""
        data = raw.data if isinstance(raw, RawBatch) else raw
        if not data:
            return None

        buffer = pa.py_buffer(self.schema_descriptor + bytes(data))
        try:
            reader = pa.ipc.open_stream(buffer)
            try:
                batch = reader.read_next_batch()
            except StopIteration:
                return None
        except (pa.ArrowException, OSError, ValueError) as e:
            raise DecodeError(
                "Failed to decode Arrow record batch",
                details={"bytes": len(data), "error": str(e)},
            ) from e

        if not batch.schema.equals(self.schema):
            raise DecodeError(
                "Decoded batch schema differs from the session schema",
                details={"expected": str(self.schema), "got": str(batch.schema)},
            )
        if batch.num_rows == 0:
            return None
        return batch


def reconstruct(schema_descriptor: bytes, raw: RawBatch | bytes) -> pa.RecordBatch | None:
    return RecordReconstructor(schema_descriptor).reconstruct(raw)
