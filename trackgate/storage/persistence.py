"""JSON snapshot files for the in-process record stores."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

import aiofiles

from trackgate.utils.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


async def write_snapshot(path: str | Path, sections: dict[str, list[dict[str, Any]]]) -> None:
    """Write ``sections`` to ``path`` atomically.

    The payload is written to a sibling ``.tmp`` file and renamed over the
    target, so readers never observe a half-written snapshot.

    Raises:
        StoreUnavailableError: if the file cannot be written

    """
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {"version": SNAPSHOT_VERSION, **sections}
    data["metadata"] = {
        "last_updated": time.time(),
        "counts": {name: len(items) for name, items in sections.items()},
    }

    temp_file = target.with_suffix(".tmp")
    try:
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2))
        temp_file.replace(target)
    except OSError as e:
        logger.warning("Failed to save snapshot to %s: %s", target, e)
        temp_file.unlink(missing_ok=True)
        msg = f"Failed to save snapshot to {target}: {e}"
        raise StoreUnavailableError(msg, {"path": str(target)}) from e
    logger.debug("Saved snapshot to %s", target)


async def read_snapshot(path: str | Path) -> dict[str, Any]:
    """Read a snapshot written by ``write_snapshot``.

    Returns an empty dict when the file does not exist yet.

    Raises:
        StoreUnavailableError: if the file exists but cannot be read or parsed

    """
    source = Path(path).expanduser()
    if not source.exists():
        logger.debug("Snapshot %s not found, starting empty", source)
        return {}

    try:
        async with aiofiles.open(source, encoding="utf-8") as f:
            content = await f.read()
        data = json.loads(content)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to load snapshot from %s: %s", source, e)
        msg = f"Failed to load snapshot from {source}: {e}"
        raise StoreUnavailableError(msg, {"path": str(source)}) from e

    if not isinstance(data, dict) or data.get("version") != SNAPSHOT_VERSION:
        msg = f"Unsupported snapshot format in {source}"
        raise StoreUnavailableError(msg, {"path": str(source)})
    return data
