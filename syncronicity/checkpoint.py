"""JSON snapshot of the last transfer's state."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from syncronicity.logging_utils import get_logger
from syncronicity.models import TransferResult
from syncronicity.serializer import ensure_dir

logger = get_logger(__name__)


def build_state_payload(result: TransferResult, source: str, destination: str) -> dict:
    return {
        "source": source,
        "destination": destination,
        **result.to_dict(),
        "staged_files": [f.to_dict() for f in result.staged_files],
        "written_at_utc": datetime.now(timezone.utc).isoformat(),
    }


def read_transfer_state(path: Path) -> dict | None:
    """Read the last snapshot; a missing or unreadable file is treated as no state."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as e:
        logger.warning("Failed to read transfer state file", extra={"path": str(path), "error": str(e)})
        return None


def write_transfer_state(path: Path, payload: dict) -> bool:
    """Replace the snapshot at ``path``.

    Uses write-to-temp + atomic rename so a reader never sees a partial file.
    A failed write is logged and reported as ``False``; it never fails the transfer.
    """
    path = Path(path)
    temp_file = path.parent / f"{path.name}.tmp"
    try:
        ensure_dir(path.parent)
        temp_file.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        temp_file.replace(path)
    except OSError as e:
        logger.error("Failed to write transfer state file", extra={"path": str(path), "error": str(e)})
        if temp_file.exists():
            temp_file.unlink()
        return False
    logger.info("Transfer state written", extra={"state_path": str(path)})
    return True
