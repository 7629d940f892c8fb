"""Tests for syncronicity.reader — resumable stream reading and record iteration."""

import threading
import time

import pytest
from google.api_core import exceptions as gexc
from google.auth.exceptions import RefreshError

from conftest import BlockingReadClient, FakeReadClient, batch_bytes, make_batch, response, schema_bytes
from syncronicity.backoff import BackoffPolicy
from syncronicity.context import TransferContext
from syncronicity.exceptions import AuthError, DecodeError, TransferCancelled, TransferTimeout, TransportError
from syncronicity.models import ReadStream, TransferState
from syncronicity.reader import StreamReader, iter_records
from syncronicity.reconstruct import RecordReconstructor

FAST = BackoffPolicy(initial_delay=0.001, max_delay=0.002, max_attempts=4)


def _responses(sizes):
    start = 0
    out = []
    for size in sizes:
        out.append(response(make_batch(start, size)))
        start += size
    return out


def _reader(client, name="s0", policy=FAST, context=None):
    return StreamReader(client, ReadStream(name=name), policy=policy, context=context)


class TestStreamReader:
    def test_reads_until_end_of_stream(self):
        client = FakeReadClient({"s0": _responses([10, 20, 30])})
        reader = _reader(client)
        batches = list(reader.open())

        assert [b.row_count for b in batches] == [10, 20, 30]
        assert [b.offset for b in batches] == [0, 10, 30]
        assert reader.stream.offset == 60
        assert reader.stream.exhausted is True
        assert reader.stream.failed is False
        assert client.read_calls == [("s0", 0)]

    def test_exhausted_stream_not_reopened(self):
        client = FakeReadClient({"s0": _responses([5])})
        reader = _reader(client)
        list(reader)
        with pytest.raises(StopIteration):
            reader.next()
        assert len(client.read_calls) == 1

    def test_empty_response_advances_nothing_and_continues(self):
        client = FakeReadClient({"s0": [response(make_batch(0, 100)), response(), response(make_batch(100, 50))]})
        reader = _reader(client)
        batches = list(reader)
        assert [b.row_count for b in batches] == [100, 0, 50]
        assert batches[1].data == b""
        assert reader.stream.offset == 150

    @pytest.mark.parametrize("fail_at", [0, 1, 2, 3])
    def test_resume_after_retryable_error(self, fail_at):
        sizes = [100, 40, 60, 25]
        client = FakeReadClient(
            {"s0": _responses(sizes)},
            failures={"s0": [(fail_at, gexc.ServiceUnavailable("connection reset"))]},
        )
        reader = _reader(client)
        reconstructor = RecordReconstructor(schema_bytes())
        ids = [i for record in iter_records(reader, reconstructor) for i in record.column("id").to_pylist()]

        assert ids == list(range(sum(sizes)))
        assert reader.opens == 2
        assert client.read_calls == [("s0", 0), ("s0", sum(sizes[:fail_at]))]

    def test_resume_after_repeated_errors(self):
        sizes = [10, 10, 10]
        client = FakeReadClient(
            {"s0": _responses(sizes)},
            failures={"s0": [(1, gexc.DeadlineExceeded("slow")), (1, gexc.ServiceUnavailable("down")),
                             (2, gexc.ServiceUnavailable("down"))]},
        )
        reader = _reader(client)
        rows = sum(b.row_count for b in reader)
        assert rows == 30
        assert client.read_calls == [("s0", 0), ("s0", 10), ("s0", 10), ("s0", 20)]

    def test_retries_exhausted(self):
        client = FakeReadClient(
            {"s0": _responses([10, 10])},
            failures={"s0": [(1, gexc.ServiceUnavailable("down"))] * 4},
        )
        reader = _reader(client)
        reader.next()
        with pytest.raises(TransportError) as exc_info:
            reader.next()

        err = exc_info.value
        assert err.code == "UNAVAILABLE"
        assert err.retryable is True
        assert err.attempts == 4
        assert err.stage == "read"
        assert reader.stream.failed is True
        assert reader.stream.offset == 10

    def test_fatal_error_not_retried(self):
        client = FakeReadClient({"s0": _responses([10])}, failures={"s0": [(0, gexc.PermissionDenied("no"))]})
        reader = _reader(client)
        with pytest.raises(TransportError) as exc_info:
            reader.next()
        assert exc_info.value.code == "PERMISSION_DENIED"
        assert exc_info.value.retryable is False
        assert exc_info.value.attempts == 1
        assert len(client.read_calls) == 1

    def test_unauthenticated(self):
        client = FakeReadClient({"s0": _responses([10])}, failures={"s0": [(0, gexc.Unauthenticated("expired"))]})
        with pytest.raises(AuthError):
            _reader(client).next()

    def test_credential_refresh_failure(self):
        client = FakeReadClient({"s0": _responses([10])}, failures={"s0": [(0, RefreshError("token expired"))]})
        reader = _reader(client)
        with pytest.raises(AuthError) as exc_info:
            reader.next()
        assert exc_info.value.stage == "read"
        assert reader.stream.failed is True
        assert len(client.read_calls) == 1

    def test_cancelled_context(self):
        context = TransferContext()
        context.cancel("shutdown")
        client = FakeReadClient({"s0": _responses([10])})
        with pytest.raises(TransferCancelled):
            _reader(client, context=context).next()
        assert client.read_calls == []

    def test_expired_context(self):
        now = [0.0]
        context = TransferContext(timeout_seconds=5, clock=lambda: now[0])
        client = FakeReadClient({"s0": _responses([10, 10])})
        reader = _reader(client, context=context)
        reader.next()
        now[0] = 10.0
        with pytest.raises(TransferTimeout):
            reader.next()

    def test_cancel_aborts_blocked_call(self):
        context = TransferContext()
        client = BlockingReadClient({"s0": _responses([10])})
        reader = _reader(client, context=context)
        reader.next()

        threading.Timer(0.1, context.cancel, args=("shutdown",)).start()
        start = time.monotonic()
        with pytest.raises(TransferCancelled):
            reader.next()
        assert time.monotonic() - start < 2
        assert client.calls[0].cancelled.is_set()
        assert reader.stream.exhausted is False
        assert len(client.read_calls) == 1

    def test_close_cancels_open_call(self):
        client = BlockingReadClient({"s0": _responses([10])})
        reader = _reader(client)
        reader.next()
        reader.close()
        assert client.calls[0].cancelled.is_set()

    def test_close_unregisters_from_context(self):
        context = TransferContext()
        client = BlockingReadClient({"s0": _responses([10])})
        reader = _reader(client, context=context)
        reader.next()
        reader.close()
        client.calls[0].cancelled.clear()
        context.cancel()
        assert not client.calls[0].cancelled.is_set()


class TestIterRecords:
    def test_skips_empty_batches_and_counts(self):
        client = FakeReadClient(
            {"s0": [response(make_batch(0, 100)), response(), response(make_batch(0, 0)), response(make_batch(100, 50))]}
        )
        state = TransferState()
        records = list(iter_records(_reader(client), RecordReconstructor(schema_bytes()), state))

        assert [r.num_rows for r in records] == [100, 50]
        assert state.rows_read == 150
        assert state.batches_decoded == 2

    def test_decode_error_marks_stream_failed_without_retry(self):
        corrupt = batch_bytes(make_batch(0, 20))[:-8]
        client = FakeReadClient({"s0": [response(make_batch(0, 10)), response(data=corrupt, row_count=20)]})
        reader = _reader(client)
        records = iter_records(reader, RecordReconstructor(schema_bytes()))

        assert next(records).num_rows == 10
        with pytest.raises(DecodeError):
            next(records)
        assert reader.stream.failed is True
        assert reader.opens == 1
        assert reader.stream.offset == 30
