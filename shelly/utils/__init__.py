"""Small helpers shared across shelly.

Kept dependency-free so the daemon entry point and the CLI can both import
them without pulling in the rest of the package.
"""

from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


def seed_hash(seed: str) -> str:
    """Return the sha256 hex digest of `seed`."""

    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def best_effort_unlink(path: Union[str, Path]) -> bool:
    """
    Remove `path` if it exists.

    Cleanup is advisory: failures are logged at debug level and never
    propagate. Returns True only when this call removed the file.
    """

    path = Path(path)
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.debug(f"Could not remove {path}: {e}")
        return False


__all__ = ["best_effort_unlink", "now_ms", "seed_hash"]
