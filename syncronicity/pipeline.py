"""Transfer orchestration: session, stream fan-in, file pipeline and load scheduling."""

from __future__ import annotations

import contextvars
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter

import pyarrow as pa

from syncronicity.checkpoint import build_state_payload, write_transfer_state
from syncronicity.config import TransferConfig
from syncronicity.context import TransferContext
from syncronicity.exceptions import TransferCancelled, TransferError, TransferTimeout
from syncronicity.loader import BulkLoader
from syncronicity.logging_utils import TransferIdFilter, get_logger, log_event, log_operation
from syncronicity.models import Outcome, ReadStream, StagedFile, TransferResult, TransferState
from syncronicity.reader import StreamReader, iter_records
from syncronicity.reconstruct import RecordReconstructor
from syncronicity.serializer import BatchSerializer, ensure_dir
from syncronicity.session import create_session
from syncronicity.source import BigQueryReadSource
from syncronicity.snowflake_client import get_snowflake_connection
from syncronicity.stage import StageUploader

logger = get_logger(__name__)

# Records each stream worker may have queued ahead of the consumer.
QUEUE_DEPTH_PER_STREAM = 4
_PUT_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class _StreamDone:
    """Last item every stream worker puts on the queue, with the error that ended it if any."""

    stream: str
    error: BaseException | None = None


def local_file_name(table: str, transfer_id: str, seq: int) -> str:
    return f"{table}-{transfer_id}-{seq:05d}.parquet"


def _submit(pool: ThreadPoolExecutor, fn, *args) -> Future:
    # Run under a copy of the submitting context so worker logs carry its transfer id.
    return pool.submit(contextvars.copy_context().run, fn, *args)


class TransferRunner:
    """Runs one transfer on behalf of ``run_transfer``.

    Stream workers push decoded records onto one bounded queue and the calling thread is
    its only consumer. It cuts a file whenever ``batch_size_bytes`` of records are buffered
    and hands the records to the writer pool, which serializes and stages them. After the
    first error nothing new is started: queued records are drained and dropped, in-flight
    files finish, and no load runs.
    """

    def __init__(
        self,
        config: TransferConfig,
        read_client,
        connection,
        context: TransferContext,
        state: TransferState,
        transfer_id: str,
    ):
        self.config = config
        self.read_client = read_client
        self.connection = connection
        self.context = context
        # Cancelled on the first error so the other stream workers stop; the caller's
        # context stays untouched.
        self.run_context = context.child()
        self.state = state
        self.transfer_id = transfer_id

        self.error: TransferError | None = None
        self.stream_failure = False
        self.staged: dict[int, StagedFile] = {}
        self.rows_loaded = 0
        self.files_loaded = 0

        self._pending: list[pa.RecordBatch] = []
        self._pending_bytes = 0
        self._seq = 0
        self._futures: list[tuple[int, Future]] = []
        self._next_load = 0

    def run(self) -> None:
        session = create_session(
            self.read_client,
            self.config.source_ref,
            self.config.max_stream_count,
            policy=self.config.backoff_policy,
            context=self.context,
            parent=self.config.parent_project,
            selected_fields=self.config.selected_fields,
            row_restriction=self.config.row_restriction,
            allow_empty=self.config.allow_empty_session,
        )
        if not session.streams:
            logger.warning("Read session has no streams; nothing to transfer", extra={"session": session.name})
            return

        if self.connection is None:
            self.connection = get_snowflake_connection(self.config)

        self.session = session
        self.local_dir = Path(self.config.data_dir) / self.transfer_id
        ensure_dir(self.local_dir)
        self.reconstructor = RecordReconstructor(session.schema_descriptor, session.schema)
        self.serializer = BatchSerializer(
            session.schema,
            batch_size_bytes=self.config.batch_size_bytes,
            compression=self.config.parquet_compression,
            format_version=self.config.parquet_version,
        )
        self.uploader = StageUploader(
            self.connection,
            self.config.snowflake_stage,
            upload_concurrency=self.config.upload_concurrency,
        )
        self.loader = BulkLoader(self.connection)

        self.queue: queue.Queue = queue.Queue(maxsize=len(session.streams) * QUEUE_DEPTH_PER_STREAM)
        # Bounds records held by queued file tasks; blocks the consumer, which blocks the workers.
        self._file_slots = threading.BoundedSemaphore(self.config.writer_concurrency * 2)

        self.writer_pool = ThreadPoolExecutor(max_workers=self.config.writer_concurrency, thread_name_prefix="writer")
        with self.writer_pool:
            with ThreadPoolExecutor(
                max_workers=len(session.streams), thread_name_prefix="stream"
            ) as stream_pool:
                self._streams_running = len(session.streams)
                for stream in session.streams:
                    _submit(stream_pool, self._stream_worker, stream)
                try:
                    self._consume()
                except BaseException:
                    self._abandon()
                    raise

            if self.error is None and self._pending:
                self._guarded(self._cut_file)
            self._pending = []
            self._pending_bytes = 0

            wait([future for _, future in self._futures])
            self._collect_files()

        if self.error is None:
            self._guarded(self._final_load)
        if self.error is not None:
            raise self.error

    # -- stream side ------------------------------------------------------

    def _stream_worker(self, stream: ReadStream) -> None:
        reader = StreamReader(
            self.read_client,
            stream,
            policy=self.config.backoff_policy,
            context=self.run_context,
        )
        error = None
        try:
            for record in iter_records(reader, self.reconstructor, self.state):
                self._put(record)
        except Exception as e:
            # Handed to the consumer thread, which decides the transfer outcome.
            error = e
        self.queue.put(_StreamDone(stream.name, error))

    def _put(self, record: pa.RecordBatch) -> None:
        while True:
            try:
                self.queue.put(record, timeout=_PUT_POLL_SECONDS)
                return
            except queue.Full:
                self.run_context.check()

    # -- consumer side ----------------------------------------------------

    def _consume(self) -> None:
        while self._streams_running:
            item = self.queue.get()
            if isinstance(item, _StreamDone):
                self._streams_running -= 1
                self._stream_finished(item)
                continue
            if self.error is not None:
                continue

            self._pending.append(item)
            self._pending_bytes += item.nbytes
            self._guarded(self.context.check)
            if self.error is None and self._pending_bytes >= self.config.batch_size_bytes:
                self._guarded(self._cut_file)
            if self.error is None and self.config.load_mode == "per_file":
                self._guarded(self._load_ready)

    def _abandon(self) -> None:
        """Stop the workers and drain the queue until every one of them has finished."""
        self.run_context.cancel("transfer aborted")
        while self._streams_running:
            if isinstance(self.queue.get(), _StreamDone):
                self._streams_running -= 1

    def _stream_finished(self, done: _StreamDone) -> None:
        if done.error is None:
            self.state.add(streams_completed=1)
            logger.info("Stream completed", extra={"stream": done.stream})
            return

        self.state.add(streams_failed=1)
        if self.error is not None:
            return
        if not isinstance(done.error, TransferError):
            raise done.error
        logger.error(
            "Stream failed; aborting transfer",
            extra={"stream": done.stream, "error_type": type(done.error).__name__, "error": str(done.error)},
        )
        if not isinstance(done.error, (TransferCancelled, TransferTimeout)):
            self.stream_failure = True
        self._fail(done.error)

    def _fail(self, error: TransferError) -> None:
        if self.error is None:
            self.error = error
            self.run_context.cancel(f"{error.stage} failed: {error.message}")

    def _guarded(self, step) -> None:
        try:
            step()
        except TransferError as e:
            self._fail(e)

    # -- files ------------------------------------------------------------

    def _cut_file(self) -> None:
        records, self._pending = self._pending, []
        self._pending_bytes = 0
        self._seq += 1
        seq = self._seq
        destination = self.local_dir / local_file_name(self.config.table, self.transfer_id, seq)

        self._file_slots.acquire()
        try:
            future = _submit(self.writer_pool, self._write_and_stage, records, destination)
        except RuntimeError:
            self._file_slots.release()
            raise
        self._futures.append((seq, future))

    def _write_and_stage(self, records: list[pa.RecordBatch], destination: Path) -> StagedFile:
        try:
            # A cancelled or expired transfer promotes and uploads nothing new.
            self.context.check()
            written = self.serializer.write(records, destination)
            self.state.add(files_written=1)

            self.context.check()
            staged = self.uploader.upload(Path(written.path), row_count=written.row_count, sha256=written.sha256)
            self.state.add(files_uploaded=1, rows_staged=written.row_count)
            return staged
        finally:
            records.clear()
            self._file_slots.release()

    def _collect_files(self) -> None:
        for seq, future in self._futures:
            try:
                self.staged[seq] = future.result()
            except TransferError as e:
                self._fail(e)

    # -- loads ------------------------------------------------------------

    def _load_ready(self) -> None:
        """Load staged files strictly in sequence order, stopping at the first unfinished one."""
        while self._next_load < len(self._futures):
            seq, future = self._futures[self._next_load]
            if not future.done():
                return
            staged = future.result()
            self.staged[seq] = staged
            self._load([staged.name])
            self._next_load += 1

    def _final_load(self) -> None:
        self.context.check()
        ordered = [self.staged[seq] for seq in sorted(self.staged)]
        if self.config.load_mode == "per_file":
            for staged in ordered[self._next_load:]:
                self._load([staged.name])
            return
        if ordered:
            self._load([f.name for f in ordered])
        else:
            logger.info("No rows read; skipping load")

    def _load(self, names: list[str]) -> None:
        self.context.check()
        result = self.loader.load(self.config.snowflake_stage, self.config.destination_table, files=names)
        self.rows_loaded += result.rows_loaded
        self.files_loaded += len(names)
        self.state.add(load_jobs=1, rows_loaded=result.rows_loaded)


def _outcome(runner: TransferRunner | None, error: TransferError | None, state: TransferState) -> Outcome:
    if error is None:
        return Outcome.SUCCESS
    if runner is not None and runner.stream_failure and state.streams_completed > 0:
        return Outcome.PARTIAL_FAILURE
    return Outcome.FATAL


def run_transfer(
    config: TransferConfig,
    *,
    read_client=None,
    connection=None,
    context: TransferContext | None = None,
) -> TransferResult:
    """Run one BigQuery to Snowflake transfer and report its outcome.

    Transfer errors never escape: they are carried on the returned result along with the
    counters reached before the failure. Connections the function opens, it also closes;
    ``read_client`` and ``connection`` passed in stay owned by the caller.

    The transfer is always bounded by ``transfer_timeout_seconds``, and by the deadline of
    ``context`` when that is sooner. Cancelling ``context`` cancels the transfer.
    """
    transfer_id = TransferIdFilter.generate_transfer_id()
    token = TransferIdFilter.set_transfer_id(transfer_id)
    try:
        return _run(config, read_client, connection, context, transfer_id)
    finally:
        TransferIdFilter.reset_transfer_id(token)


def _run(
    config: TransferConfig,
    read_client,
    connection,
    context: TransferContext | None,
    transfer_id: str,
) -> TransferResult:
    context = (context or TransferContext()).child(timeout_seconds=config.transfer_timeout_seconds)
    source = f"{config.project_id}.{config.dataset}.{config.table}"
    state = TransferState()
    result = TransferResult(transfer_id=transfer_id)
    start = perf_counter()
    runner: TransferRunner | None = None
    error: TransferError | None = None

    try:
        with log_operation(
            logger,
            "transfer",
            source=source,
            destination=config.destination_table,
            load_mode=config.load_mode,
        ):
            source = str(config.source_ref)
            if read_client is None:
                read_client = BigQueryReadSource.from_service_account(config.service_account_file)
            runner = TransferRunner(config, read_client, connection, context, state, transfer_id)
            runner.run()
    except TransferError as e:
        error = e
    finally:
        if runner is not None and connection is None and runner.connection is not None:
            runner.connection.close()

    result.error = error
    result.outcome = _outcome(runner, error, state)
    if runner is not None:
        result.rows_transferred = runner.rows_loaded
        result.files_loaded = runner.files_loaded
        result.staged_files = [runner.staged[seq] for seq in sorted(runner.staged)]
    result.state = state.snapshot()
    result.end_time = datetime.now(timezone.utc)
    result.duration_ms = int((perf_counter() - start) * 1000)

    log_event(
        logger,
        "transfer_finished",
        outcome=result.outcome.value,
        rows=result.rows_transferred,
        files=result.files_loaded,
        duration_ms=result.duration_ms,
        error_type=result.error_type or None,
        error_stage=result.error_stage or None,
    )
    write_transfer_state(
        config.state_file,
        build_state_payload(result, source=source, destination=config.destination_table),
    )
    return result
