"""Shared test fixtures for the transfer pipeline."""

import re
import threading
from pathlib import Path
from types import SimpleNamespace

import pyarrow as pa
import pyarrow.parquet as pq
import pytest
from google.api_core import exceptions as gexc
from snowflake.connector.errors import ProgrammingError

from syncronicity.config import TransferConfig


# ---------------------------------------------------------------------------
# Arrow helpers
# ---------------------------------------------------------------------------

SCHEMA = pa.schema([("id", pa.int64()), ("name", pa.string())])


def make_batch(start: int, rows: int, schema: pa.Schema = SCHEMA) -> pa.RecordBatch:
    ids = list(range(start, start + rows))
    return pa.record_batch(
        [pa.array(ids, type=pa.int64()), pa.array([f"row-{i}" for i in ids], type=pa.string())],
        schema=schema,
    )


def schema_bytes(schema: pa.Schema = SCHEMA) -> bytes:
    return schema.serialize().to_pybytes()


def batch_bytes(batch: pa.RecordBatch) -> bytes:
    return batch.serialize().to_pybytes()


def response(batch: pa.RecordBatch | None = None, *, data: bytes | None = None, row_count: int | None = None):
    """A read_rows response carrying one serialized batch body and no schema."""
    if data is None:
        data = batch_bytes(batch) if batch is not None else b""
    if row_count is None:
        row_count = batch.num_rows if batch is not None else 0
    return SimpleNamespace(
        row_count=row_count,
        arrow_record_batch=SimpleNamespace(serialized_record_batch=data),
    )


# ---------------------------------------------------------------------------
# In-memory BigQuery read client
# ---------------------------------------------------------------------------

class FakeReadClient:
    """Serves fixed responses per stream and honours the requested start offset.

    ``failures`` maps a stream name to a list of ``(response_index, exception)``; each entry
    is raised once, when the stream is about to deliver that response.
    """

    def __init__(self, streams=None, schema: pa.Schema = SCHEMA, failures=None, session_errors=None):
        self.streams = streams or {}
        self.schema_descriptor = schema_bytes(schema)
        self.failures = {name: list(items) for name, items in (failures or {}).items()}
        self.session_errors = list(session_errors or [])
        self.session_calls = []
        self.read_calls = []

    def create_read_session(self, **kwargs):
        self.session_calls.append(kwargs)
        if self.session_errors:
            raise self.session_errors.pop(0)
        return SimpleNamespace(
            name="projects/test-project/locations/us/sessions/session-1",
            streams=[SimpleNamespace(name=name) for name in self.streams],
            arrow_schema=SimpleNamespace(serialized_schema=self.schema_descriptor),
        )

    def read_rows(self, stream_name, offset, timeout=None):
        self.read_calls.append((stream_name, offset))
        return self._iter(stream_name, offset)

    def _iter(self, stream_name, offset):
        responses = self.streams[stream_name]
        position = 0
        index = 0
        while position < offset:
            position += responses[index].row_count
            index += 1
        for i in range(index, len(responses)):
            pending = self.failures.get(stream_name, [])
            for j, (at, error) in enumerate(pending):
                if at == i:
                    pending.pop(j)
                    raise error
            yield responses[i]


class BlockingCall:
    """A streaming read_rows call that, once its responses run out, blocks like an idle server.

    It ends with ``Cancelled`` when ``cancel()`` is called, or cleanly after ``block_seconds``.
    """

    def __init__(self, responses, block_seconds: float = 5.0):
        self._responses = iter(responses)
        self.block_seconds = block_seconds
        self.cancelled = threading.Event()

    def __iter__(self):
        return self

    def __next__(self):
        try:
            return next(self._responses)
        except StopIteration:
            pass
        if self.cancelled.wait(self.block_seconds):
            raise gexc.Cancelled("Locally cancelled by application!")
        raise StopIteration

    def cancel(self):
        self.cancelled.set()


class BlockingReadClient(FakeReadClient):
    """Serves the streams named in ``blocking`` (all by default) through a ``BlockingCall``."""

    def __init__(self, streams=None, block_seconds: float = 5.0, blocking=None, **kwargs):
        super().__init__(streams, **kwargs)
        self.block_seconds = block_seconds
        self.blocking = set(self.streams if blocking is None else blocking)
        self.calls = []

    def read_rows(self, stream_name, offset, timeout=None):
        responses = super().read_rows(stream_name, offset, timeout=timeout)
        if stream_name not in self.blocking:
            return responses
        call = BlockingCall(responses, self.block_seconds)
        self.calls.append(call)
        return call


# ---------------------------------------------------------------------------
# In-memory Snowflake connection
# ---------------------------------------------------------------------------

_PUT = re.compile(r"^PUT '(?:file://)(?P<path>[^']+)' (?P<location>@\S+)")
_FILES = re.compile(r"FILES = \((?P<files>[^)]*)\)")


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.description = None
        self._rows = []

    def execute(self, sql):
        self.connection.executed.append(sql)
        if sql.startswith("PUT"):
            self._put(sql)
        elif sql.startswith("LIST"):
            self._list()
        elif sql.startswith("COPY INTO"):
            self._copy(sql)
        else:
            raise ProgrammingError(f"unsupported statement: {sql}")
        return self

    def fetchall(self):
        return list(self._rows)

    def close(self):
        pass

    def _put(self, sql):
        if self.connection.fail_put:
            raise ProgrammingError("PUT rejected")
        match = _PUT.match(sql)
        path = Path(match.group("path"))
        self.connection.staged[path.name] = path
        self.description = [("source",), ("target",), ("source_size",), ("target_size",), ("status",)]
        size = path.stat().st_size
        self._rows = [(path.name, path.name, size, size, self.connection.put_status)]

    def _list(self):
        self.description = [("name",), ("size",), ("md5",), ("last_modified",)]
        self._rows = [(f"stage/{name}", 1, "", "") for name in sorted(self.connection.staged)]

    def _copy(self, sql):
        self.connection.copy_calls.append(sql)
        if self.connection.fail_copy:
            raise ProgrammingError("COPY INTO failed: table does not exist")
        match = _FILES.search(sql)
        if match:
            names = re.findall(r"'([^']+)'", match.group("files"))
        else:
            names = sorted(self.connection.staged)
        self.description = [
            ("file",), ("status",), ("rows_parsed",), ("rows_loaded",), ("error_limit",),
            ("errors_seen",), ("first_error",),
        ]
        rows = []
        for name in names:
            num_rows = pq.read_metadata(str(self.connection.staged[name])).num_rows
            self.connection.loaded_rows += num_rows
            rows.append((f"stage/{name}", "LOADED", num_rows, num_rows, 1, 0, None))
        self._rows = rows


class FakeSnowflakeConnection:
    def __init__(self, fail_put=False, fail_copy=False, put_status="UPLOADED"):
        self.fail_put = fail_put
        self.fail_copy = fail_copy
        self.put_status = put_status
        self.staged: dict[str, Path] = {}
        self.executed: list[str] = []
        self.copy_calls: list[str] = []
        self.loaded_rows = 0
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def arrow_schema():
    return SCHEMA


@pytest.fixture
def snowflake_connection():
    return FakeSnowflakeConnection()


@pytest.fixture
def sample_config(tmp_path):
    """Minimal TransferConfig for testing (no real BigQuery/Snowflake)."""
    return TransferConfig(
        _env_file=None,
        project_id="test-project",
        dataset="sales",
        table="orders",
        snowflake_account="test-account",
        snowflake_user="loader",
        snowflake_stage="RAW.PUBLIC.ORDERS_STAGE",
        destination_table="RAW.PUBLIC.ORDERS",
        data_dir=tmp_path / "data",
        state_dir=tmp_path / "state",
        retry_initial_delay=0.001,
        retry_max_delay=0.01,
        transfer_timeout_seconds=60,
    )
