"""Snowflake connection construction."""

from __future__ import annotations

import snowflake.connector
from snowflake.connector.errors import DatabaseError, Error as SnowflakeError

from syncronicity.config import TransferConfig
from syncronicity.exceptions import AuthError, ConfigurationError
from syncronicity.logging_utils import get_logger

logger = get_logger(__name__)

# Snowflake error numbers raised for bad credentials / expired sessions.
AUTH_ERRNOS = {390100, 390101, 390102, 390144, 390318}


def get_snowflake_connection(config: TransferConfig):
    """Open a Snowflake connection using snowflake-connector-python."""
    params = {
        "account": config.snowflake_account,
        "user": config.snowflake_user,
        "password": config.snowflake_password,
        "role": config.snowflake_role,
        "warehouse": config.snowflake_warehouse,
        "database": config.snowflake_database,
        "schema": config.snowflake_schema,
        "login_timeout": int(min(config.transfer_timeout_seconds, 120)),
    }
    params = {k: v for k, v in params.items() if v is not None}

    try:
        conn = snowflake.connector.connect(**params)
    except DatabaseError as e:
        if getattr(e, "errno", None) in AUTH_ERRNOS:
            raise AuthError(
                "Snowflake authentication failed",
                details={"account": config.snowflake_account, "user": config.snowflake_user, "error": str(e)},
                stage="connect",
            ) from e
        raise ConfigurationError(
            f"Failed to connect to Snowflake: {e}",
            details={"account": config.snowflake_account},
        ) from e
    except SnowflakeError as e:
        raise ConfigurationError(
            f"Failed to connect to Snowflake: {e}",
            details={"account": config.snowflake_account},
        ) from e

    logger.info(
        "Connected to Snowflake",
        extra={"account": config.snowflake_account, "database": config.snowflake_database},
    )
    return conn
