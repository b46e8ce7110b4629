"""Per-seed context records and their on-disk store."""

from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any, Dict, List, Optional

from shelly.errors import SeedMismatchError, ValidationError
from shelly.utils import best_effort_unlink, now_ms, seed_hash

logger = logging.getLogger(__name__)

MAX_SEED_LENGTH = 1024

# Persisted key -> attribute name.
_FIELDS = {
    "seed": "seed",
    "connected": "connected",
    "hypersshSeed": "hyperssh_seed",
    "user": "user",
    "serving": "serving",
    "serverPort": "server_port",
    "serverPid": "server_pid",
    "createdAt": "created_at",
    "lastCmd": "last_cmd",
    "daemonPid": "daemon_pid",
    "connectedAt": "connected_at",
}

# Expected JSON type per persisted key; None is allowed except for the flags.
_TYPES = {
    "connected": bool,
    "hypersshSeed": str,
    "user": str,
    "serving": bool,
    "serverPort": int,
    "serverPid": int,
    "createdAt": int,
    "lastCmd": dict,
    "daemonPid": int,
    "connectedAt": int,
}


@dataclass
class SeedContext:
    """Connection and serving state for one seed."""
    seed: str
    connected: bool = False
    hyperssh_seed: Optional[str] = None
    user: Optional[str] = None
    serving: bool = False
    server_port: Optional[int] = None
    server_pid: Optional[int] = None
    created_at: int = field(default_factory=now_ms)
    last_cmd: Optional[Dict[str, Any]] = None
    daemon_pid: Optional[int] = None
    connected_at: Optional[int] = None

    def reset_connection(self) -> None:
        """Return to the disconnected baseline."""
        self.connected = False
        self.hyperssh_seed = None
        self.user = None
        self.daemon_pid = None
        self.connected_at = None

    def reset_serving(self) -> None:
        """Return to the not-serving baseline."""
        self.serving = False
        self.server_port = None
        self.server_pid = None

    def record_command(self, name: str, args: Optional[Dict[str, Any]] = None) -> None:
        self.last_cmd = {"name": name, "args": dict(args or {}), "ts": now_ms()}

    def to_record(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in _FIELDS.items()}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SeedContext":
        if not isinstance(record, dict) or not isinstance(record.get("seed"), str):
            raise ValidationError("Context record must be an object with a string 'seed'")
        for key, expected in _TYPES.items():
            if key not in record:
                continue
            value = record[key]
            if value is None and expected is not bool:
                continue
            # bool is an int subclass, so it is excluded from int fields explicitly
            if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
                raise ValidationError(
                    f"Context field '{key}' must be {expected.__name__}, got {type(value).__name__}"
                )
        kwargs = {attr: record[key] for key, attr in _FIELDS.items() if key in record}
        if kwargs.get("created_at") is None:
            kwargs.pop("created_at", None)
        return cls(**kwargs)


def validate_seed(seed: Any) -> str:
    if not isinstance(seed, str) or not seed:
        raise ValidationError("Invalid seed: must be non-empty string")
    if len(seed) > MAX_SEED_LENGTH:
        raise ValidationError(
            f"Seed exceeds maximum length of {MAX_SEED_LENGTH} characters"
        )
    return seed


class ContextStore:
    """
    Loads and saves SeedContext records.

    Each seed is stored as JSON in {state_dir}/{sha256(seed)}.json. Records are
    cached after the first load so every component in one process sees the
    same mutable object; callers must call save() after mutating it.

    Not locked: one writer per seed at a time is assumed.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self._cache: Dict[str, SeedContext] = {}

    def path_for(self, seed: str) -> Path:
        return self.state_dir / f"{seed_hash(seed)}.json"

    def load(self, seed: str) -> SeedContext:
        """
        Return the context for `seed`, materializing a default one when nothing
        usable is persisted.
        """
        validate_seed(seed)
        if seed in self._cache:
            return self._cache[seed]

        ctx = self._read(seed)
        if ctx is None:
            ctx = SeedContext(seed=seed)
        self._cache[seed] = ctx
        return ctx

    def _read(self, seed: str) -> Optional[SeedContext]:
        path = self.path_for(seed)
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                ctx = SeedContext.from_record(json.load(f))
        except (OSError, ValueError, TypeError, ValidationError) as e:
            # Unreadable, undecodable or corrupted record - ignore and start fresh
            logger.warning(f"Ignoring corrupted context file {path}: {e}")
            return None
        if ctx.seed != seed:
            logger.warning(f"Ignoring context file {path}: stored for another seed")
            return None
        return ctx

    def save(self, ctx: SeedContext) -> None:
        """Persist `ctx` atomically (write to a temp file, then rename)."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(ctx.seed)
        fd, tmp = tempfile.mkstemp(dir=self.state_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(ctx.to_record(), f, indent=2)
            os.replace(tmp, path)
        except BaseException:
            best_effort_unlink(tmp)
            raise
        self._cache[ctx.seed] = ctx

    def delete(self, seed: str) -> bool:
        self._cache.pop(seed, None)
        return best_effort_unlink(self.path_for(seed))

    def list_seeds(self) -> List[str]:
        """Seeds with a readable persisted record."""
        if not self.state_dir.exists():
            return []
        seeds = []
        for path in sorted(self.state_dir.glob("*.json")):
            try:
                with open(path, "r") as f:
                    seed = json.load(f).get("seed")
            except (OSError, ValueError, AttributeError):
                continue
            if isinstance(seed, str):
                seeds.append(seed)
        return seeds

    def export(self, seed: str) -> Dict[str, Any]:
        return self.load(seed).to_record()

    def import_record(self, seed: str, record: Dict[str, Any]) -> SeedContext:
        """
        Replace the context for `seed` with `record`.

        Raises SeedMismatchError if the record belongs to another seed.
        """
        validate_seed(seed)
        if not isinstance(record, dict) or record.get("seed") != seed:
            raise SeedMismatchError("Seed mismatch on import")
        ctx = SeedContext.from_record(record)
        self.save(ctx)
        return ctx
