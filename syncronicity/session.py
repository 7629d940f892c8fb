"""Read session negotiation against the BigQuery Storage Read API."""

from __future__ import annotations

import re

import pyarrow as pa
from google.api_core import exceptions as gexc
from google.auth.exceptions import GoogleAuthError
from pydantic import BaseModel, field_validator
from tenacity import Retrying

from syncronicity.backoff import BackoffPolicy, classify_error, log_retry, tenacity_retry, tenacity_wait
from syncronicity.context import TransferContext
from syncronicity.exceptions import AuthError, ConfigurationError, SessionError
from syncronicity.logging_utils import get_logger, log_event
from syncronicity.models import ReadSession, ReadStream

logger = get_logger(__name__)

_RESOURCE_PATH = re.compile(r"^projects/([^/]+)/datasets/([^/]+)/tables/([^/]+)$")
_DOTTED = re.compile(r"^([^.:]+)[.:]([^.]+)\.([^.]+)$")


class SourceRef(BaseModel):
    """Identifies one BigQuery table; accepts ``p.d.t``, ``p:d.t`` or the resource path."""

    project: str
    dataset: str
    table: str

    model_config = {"frozen": True, "str_strip_whitespace": True}

    @field_validator("project", "dataset", "table")
    @classmethod
    def validate_part(cls, v: str) -> str:
        if not v or "/" in v:
            raise ValueError(f"Invalid table reference component: {v!r}")
        return v

    @classmethod
    def parse(cls, ref: str) -> "SourceRef":
        ref = ref.strip()
        match = _RESOURCE_PATH.match(ref) or _DOTTED.match(ref)
        if not match:
            raise ConfigurationError(
                "Source table must look like project.dataset.table",
                details={"source_ref": ref},
            )
        project, dataset, table = match.groups()
        return cls(project=project, dataset=dataset, table=table)

    @property
    def table_path(self) -> str:
        return f"projects/{self.project}/datasets/{self.dataset}/tables/{self.table}"

    @property
    def parent(self) -> str:
        return f"projects/{self.project}"

    def __str__(self) -> str:
        return f"{self.project}.{self.dataset}.{self.table}"


def parse_schema(schema_descriptor: bytes) -> pa.Schema:
    """Parse the serialized Arrow schema message of a read session."""
    if not schema_descriptor:
        raise SessionError("Read session returned no Arrow schema")
    try:
        return pa.ipc.read_schema(pa.py_buffer(schema_descriptor))
    except (pa.ArrowException, OSError, ValueError) as e:
        raise SessionError("Failed to parse Arrow schema from read session", details={"error": str(e)}) from e


def create_session(
    client,
    source_ref: SourceRef,
    max_stream_count: int,
    *,
    policy: BackoffPolicy | None = None,
    context: TransferContext | None = None,
    parent: str | None = None,
    selected_fields: list[str] | None = None,
    row_restriction: str | None = None,
    allow_empty: bool = False,
) -> ReadSession:
    """Create a read session for one table and return its schema and streams.

    A session without streams is a ``SessionError`` unless ``allow_empty`` is set,
    in which case an empty session is returned and the caller transfers nothing.
    """
    if max_stream_count < 1:
        raise ConfigurationError("max_stream_count must be >= 1", details={"max_stream_count": max_stream_count})

    policy = policy or BackoffPolicy()
    context = context or TransferContext()
    parent = parent or source_ref.parent

    def _create():
        context.check()
        return client.create_read_session(
            parent=parent,
            table_path=source_ref.table_path,
            max_stream_count=max_stream_count,
            selected_fields=selected_fields or None,
            row_restriction=row_restriction,
            timeout=context.remaining(),
        )

    retrying = Retrying(
        retry=tenacity_retry(policy),
        wait=tenacity_wait(policy),
        sleep=context.sleep,
        before_sleep=log_retry(logger, "create_read_session"),
        reraise=True,
    )

    try:
        raw_session = retrying(_create)
    except (gexc.Unauthenticated, GoogleAuthError) as e:
        raise AuthError("BigQuery authentication failed", details={"error": str(e)}, stage="session") from e
    except gexc.GoogleAPICallError as e:
        raise SessionError(
            f"Failed to create read session for {source_ref}",
            details={"code": classify_error(e).value, "error": str(e)},
        ) from e

    schema_descriptor = bytes(raw_session.arrow_schema.serialized_schema)
    schema = parse_schema(schema_descriptor)
    streams = tuple(ReadStream(name=s.name) for s in raw_session.streams)

    if not streams and not allow_empty:
        raise SessionError(
            f"No streams available in read session for table {source_ref}",
            details={"session": raw_session.name},
        )

    session = ReadSession(
        name=raw_session.name,
        table=str(source_ref),
        schema_descriptor=schema_descriptor,
        schema=schema,
        streams=streams,
    )
    log_event(
        logger,
        "session_created",
        session=session.name,
        table=session.table,
        streams=session.stream_count,
        columns=len(schema),
    )
    return session
