"""Data models for the transfer pipeline."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import pyarrow as pa


@dataclass
class ReadStream:
    """One independently resumable stream of a read session.

    ``offset`` counts rows already received; only the owning reader changes it.
    """

    name: str
    offset: int = 0
    exhausted: bool = False
    failed: bool = False


@dataclass(frozen=True)
class ReadSession:
    name: str
    table: str
    schema_descriptor: bytes
    schema: pa.Schema
    streams: tuple[ReadStream, ...] = ()

    @property
    def stream_count(self) -> int:
        return len(self.streams)


@dataclass(frozen=True)
class RawBatch:
    """Serialized record batch body as received; only decodable with the session schema."""

    data: bytes
    row_count: int
    offset: int


@dataclass(frozen=True)
class SerializedFile:
    path: str
    row_count: int
    size_bytes: int
    sha256: str


@dataclass(frozen=True)
class StagedFile:
    name: str
    stage_ref: str
    local_path: str
    row_count: int
    size_bytes: int
    sha256: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "stage_ref": self.stage_ref,
            "local_path": self.local_path,
            "row_count": self.row_count,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
        }


@dataclass(frozen=True)
class LoadResult:
    rows_loaded: int
    files: tuple[str, ...] = ()


class Outcome(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    FATAL = "FATAL"


class TransferState:
    """Counters shared by all stream workers; every update is taken under one lock."""

    FIELDS = (
        "rows_read",
        "batches_decoded",
        "rows_staged",
        "files_written",
        "files_uploaded",
        "load_jobs",
        "rows_loaded",
        "streams_completed",
        "streams_failed",
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._counters = dict.fromkeys(self.FIELDS, 0)

    def add(self, **increments: int) -> None:
        with self._lock:
            for key, value in increments.items():
                if key not in self._counters:
                    raise KeyError(f"Unknown transfer counter: {key}")
                self._counters[key] += value

    def __getattr__(self, item: str) -> int:
        counters = self.__dict__.get("_counters")
        if counters is not None and item in counters:
            with self.__dict__["_lock"]:
                return counters[item]
        raise AttributeError(item)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)


@dataclass
class TransferResult:
    """Terminal report of one transfer."""

    transfer_id: str
    outcome: Outcome = Outcome.FATAL
    rows_transferred: int = 0
    files_loaded: int = 0
    duration_ms: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    error: Exception | None = None
    staged_files: list[StagedFile] = field(default_factory=list)
    state: dict[str, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def error_type(self) -> str:
        return type(self.error).__name__ if self.error is not None else ""

    @property
    def error_stage(self) -> str:
        return getattr(self.error, "stage", "") if self.error is not None else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "transfer_id": self.transfer_id,
            "outcome": self.outcome.value,
            "rows_transferred": self.rows_transferred,
            "files_loaded": self.files_loaded,
            "duration_ms": self.duration_ms,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error_type": self.error_type,
            "error_stage": self.error_stage,
            "error_message": str(self.error) if self.error is not None else "",
            "staged_files": [f.name for f in self.staged_files],
            "state": self.state,
        }
