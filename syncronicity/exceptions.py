"""Custom exception hierarchy for the transfer pipeline."""

from __future__ import annotations


class TransferError(Exception):
    """Base exception for all transfer-related errors."""

    stage: str = "transfer"

    def __init__(self, message: str, details: dict | None = None, stage: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(TransferError):
    """Raised when configuration is missing or invalid."""

    stage = "config"


class AuthError(TransferError):
    """Raised when authentication against the source or destination fails."""

    stage = "auth"


class SessionError(TransferError):
    """Raised when a read session cannot be created or has no usable streams."""

    stage = "session"


class TransportError(TransferError):
    """Raised when a read RPC fails fatally or exhausts its retry budget."""

    stage = "read"

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN",
        retryable: bool = False,
        attempts: int = 1,
        details: dict | None = None,
    ):
        super().__init__(message, details={**(details or {}), "code": code, "attempts": attempts})
        self.code = code
        self.retryable = retryable
        self.attempts = attempts


class DecodeError(TransferError):
    """Raised when a raw batch cannot be decoded into a record."""

    stage = "decode"


class SerializeError(TransferError):
    """Raised when records cannot be written to a local file."""

    stage = "serialize"


class UploadError(TransferError):
    """Raised when a local file cannot be transferred to the stage."""

    stage = "upload"


class LoadError(TransferError):
    """Raised when the bulk load into the destination table fails."""

    stage = "load"


class TransferCancelled(TransferError):
    """Raised when the transfer was cancelled by the caller."""

    stage = "cancel"


class TransferTimeout(TransferError):
    """Raised when the transfer deadline passed."""

    stage = "timeout"
