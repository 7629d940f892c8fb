"""BigQuery to Snowflake transfer over the Arrow columnar format."""

from syncronicity.config import TransferConfig, get_config
from syncronicity.context import TransferContext
from syncronicity.exceptions import (
    AuthError,
    ConfigurationError,
    DecodeError,
    LoadError,
    SerializeError,
    SessionError,
    TransferCancelled,
    TransferError,
    TransferTimeout,
    TransportError,
    UploadError,
)
from syncronicity.models import Outcome, TransferResult
from syncronicity.pipeline import run_transfer
from syncronicity.cli import main

__all__ = [
    "TransferConfig",
    "get_config",
    "TransferContext",
    "TransferError",
    "ConfigurationError",
    "AuthError",
    "SessionError",
    "TransportError",
    "DecodeError",
    "SerializeError",
    "UploadError",
    "LoadError",
    "TransferCancelled",
    "TransferTimeout",
    "Outcome",
    "TransferResult",
    "run_transfer",
    "main",
]
