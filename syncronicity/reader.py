"""Resumable reading of one read stream."""

from __future__ import annotations

import logging
from typing import Callable, Iterator

import pyarrow as pa
from google.api_core import exceptions as gexc
from google.auth.exceptions import GoogleAuthError
from tenacity import Retrying

from syncronicity.backoff import BackoffPolicy, classify_error, log_retry, tenacity_retry, tenacity_wait
from syncronicity.context import TransferContext
from syncronicity.exceptions import AuthError, TransportError
from syncronicity.logging_utils import get_logger, log_event
from syncronicity.models import RawBatch, ReadStream, TransferState
from syncronicity.reconstruct import RecordReconstructor

logger = get_logger(__name__)


class StreamReader:
    """Pulls raw batches from one stream over a server-streaming ``read_rows`` call.

    After a retryable failure the call is reopened at ``stream.offset``, the number of rows
    of every fully received response. The offset is never advanced before a response has
    arrived, so a resumed stream neither skips nor repeats rows.
    """

    def __init__(
        self,
        client,
        stream: ReadStream,
        *,
        policy: BackoffPolicy | None = None,
        context: TransferContext | None = None,
    ):
        self.client = client
        self.stream = stream
        self.policy = policy or BackoffPolicy()
        self.context = context or TransferContext()
        self.opens = 0
        self._call = None
        self._responses: Iterator | None = None
        self._unregister: Callable[[], None] | None = None
        self._retrying = Retrying(
            retry=tenacity_retry(self.policy),
            wait=tenacity_wait(self.policy),
            sleep=self.context.sleep,
            before_sleep=log_retry(logger, f"read_rows {stream.name}"),
            reraise=True,
        )

    def open(self) -> "StreamReader":
        """Return the reader as a cursor; the RPC itself starts on the first ``next()``."""
        return self

    def close(self) -> None:
        """Abandon the open call, if any."""
        self._release(cancel=True)

    def __iter__(self) -> "StreamReader":
        return self

    def __next__(self) -> RawBatch:
        return self.next()

    def next(self) -> RawBatch:
        """Return the next raw batch; ``StopIteration`` marks the normal end of the stream."""
        if self.stream.exhausted:
            raise StopIteration
        try:
            response = self._retrying(self._receive)
        except (gexc.Unauthenticated, GoogleAuthError) as e:
            self.stream.failed = True
            raise AuthError(
                "BigQuery authentication failed while reading",
                details={"stream": self.stream.name, "error": str(e)},
                stage="read",
            ) from e
        except gexc.GoogleAPICallError as e:
            self.stream.failed = True
            error_class = classify_error(e)
            raise TransportError(
                f"read_rows failed on stream {self.stream.name}",
                code=error_class.value,
                retryable=self.policy.is_retryable(error_class),
                attempts=self._retrying.statistics.get("attempt_number", 1),
                details={"stream": self.stream.name, "offset": self.stream.offset, "error": str(e)},
            ) from e

        if response is None:
            self.stream.exhausted = True
            raise StopIteration

        row_count = int(response.row_count)
        raw = RawBatch(
            data=bytes(response.arrow_record_batch.serialized_record_batch),
            row_count=row_count,
            offset=self.stream.offset,
        )
        self.stream.offset += row_count
        return raw

    def _open(self) -> None:
        self.context.check()
        call = self.client.read_rows(self.stream.name, self.stream.offset, timeout=self.context.remaining())
        self._call = call
        self._responses = iter(call)
        # Cancelling the transfer aborts a call blocked waiting for the server.
        self._unregister = self.context.add_callback(self._cancel_call)
        self.opens += 1
        log_event(logger, "stream_opened", stream=self.stream.name, offset=self.stream.offset, opens=self.opens)

    def _receive(self):
        self.context.check()
        if self._responses is None:
            self._open()
        try:
            return next(self._responses)
        except StopIteration:
            self._release()
            # A cancelled call may end without an error; it is not the end of the stream.
            if self.context.cancelled:
                self.context.check()
            return None
        except (gexc.GoogleAPICallError, GoogleAuthError):
            # Reopen at the last acknowledged offset on the next attempt.
            self._release()
            self.context.check()
            raise

    def _cancel_call(self) -> None:
        call = self._call
        if call is not None and hasattr(call, "cancel"):
            call.cancel()

    def _release(self, cancel: bool = False) -> None:
        if self._unregister is not None:
            self._unregister()
            self._unregister = None
        if cancel:
            self._cancel_call()
        self._call = None
        self._responses = None


def iter_records(
    reader: StreamReader,
    reconstructor: RecordReconstructor,
    state: TransferState | None = None,
) -> Iterator[pa.RecordBatch]:
    """Yield decoded records of one stream in stream order.

    Batches that decode to no rows are skipped. Any error marks the stream failed.
    """
    try:
        for raw in reader.open():
            if state is not None:
                state.add(rows_read=raw.row_count)
            record = reconstructor.reconstruct(raw)
            if record is None:
                continue
            if state is not None:
                state.add(batches_decoded=1)
            log_event(logger, "batch_decoded", logging.DEBUG, stream=reader.stream.name, rows=record.num_rows)
            yield record
    except Exception:
        reader.stream.failed = True
        raise
    finally:
        reader.close()
