"""BigQuery Storage Read API client construction."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from google.auth.exceptions import GoogleAuthError
from google.cloud.bigquery_storage_v1 import types
from google.cloud.bigquery_storage_v1.services.big_query_read import BigQueryReadClient
from google.oauth2 import service_account

from syncronicity.exceptions import AuthError
from syncronicity.logging_utils import get_logger

logger = get_logger(__name__)

SCOPES = ("https://www.googleapis.com/auth/bigquery.readonly",)


def get_credentials(service_account_file: Path | None):
    """Explicit service-account credentials, or ``None`` to use application default credentials."""
    if service_account_file is None:
        return None
    try:
        credentials = service_account.Credentials.from_service_account_file(
            str(service_account_file), scopes=SCOPES
        )
    except (OSError, ValueError) as e:
        raise AuthError(
            "Failed to load service account credentials",
            details={"path": str(service_account_file), "error": str(e)},
            stage="session",
        ) from e
    logger.info("Using service account credentials", extra={"path": str(service_account_file)})
    return credentials


class BigQueryReadSource:
    """Thin wrapper over the generated read client.

    Client-side retries are disabled on both calls; the pipeline retries with its own policy
    so a stream is always reopened at the offset it tracked.
    """

    def __init__(self, client: BigQueryReadClient):
        self._client = client

    @classmethod
    def from_service_account(cls, service_account_file: Path | None = None) -> "BigQueryReadSource":
        credentials = get_credentials(service_account_file)
        try:
            client = BigQueryReadClient(credentials=credentials)
        except GoogleAuthError as e:
            raise AuthError(
                "BigQuery authentication failed. Set a service account or application default credentials.",
                details={"error": str(e)},
                stage="session",
            ) from e
        return cls(client)

    def create_read_session(
        self,
        parent: str,
        table_path: str,
        max_stream_count: int,
        selected_fields: list[str] | None = None,
        row_restriction: str | None = None,
        timeout: float | None = None,
    ) -> types.ReadSession:
        read_options = types.ReadSession.TableReadOptions(
            selected_fields=selected_fields or [],
            row_restriction=row_restriction or "",
        )
        requested = types.ReadSession(
            table=table_path,
            data_format=types.DataFormat.ARROW,
            read_options=read_options,
        )
        return self._client.create_read_session(
            parent=parent,
            read_session=requested,
            max_stream_count=max_stream_count,
            retry=None,
            timeout=timeout,
        )

    def read_rows(self, stream_name: str, offset: int, timeout: float | None = None) -> Iterable[types.ReadRowsResponse]:
        return self._client.read_rows(read_stream=stream_name, offset=offset, retry=None, timeout=timeout)
