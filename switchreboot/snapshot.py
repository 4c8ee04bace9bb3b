"""State snapshot for warm reboot.

Order is filter → persist → scrub/relocate → clear source. The target path
only ever holds a complete file: it is written to a temp file in the same
directory and renamed into place. A previous snapshot is rotated aside with a
timestamp suffix, never overwritten.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .config import RebootConfig
from .models import ExitCode, SnapshotHandle
from .statedb import StateStore, StateStoreError

logger = logging.getLogger("switchreboot.snapshot")

SNAPSHOT_VERSION = 1


class SnapshotIOError(Exception):
    """Raised when the snapshot could not be produced in full."""

    exit_code = ExitCode.FAILURE


def _ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _allowed(key: str, namespaces: tuple[str, ...]) -> bool:
    return key.startswith(namespaces)


def atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        os.write(fd, data)
        os.fsync(fd)
        os.close(fd)
        fd = -1  # mark as closed
        os.rename(tmp, path)
    except BaseException:
        if fd >= 0:
            try:
                os.close(fd)
            except OSError:
                pass
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def rotate(path: Path) -> Optional[Path]:
    """Move *path* aside to ``<path>.<timestamp>``; return the new name."""
    if not path.exists():
        return None
    rotated = path.with_name(f"{path.name}.{_ts()}")
    n = 1
    while rotated.exists():
        rotated = path.with_name(f"{path.name}.{_ts()}.{n}")
        n += 1
    os.rename(path, rotated)
    logger.info("Rotated %s -> %s", path, rotated)
    return rotated


class StateSnapshotStore:

    def __init__(self, store: StateStore, config: RebootConfig) -> None:
        self._store = store
        self._config = config

    @property
    def target(self) -> Path:
        return Path(self._config.warm_dir) / self._config.snapshot_name

    def snapshot(self, allowed_namespaces: Optional[Iterable[str]] = None) -> SnapshotHandle:
        """Persist the allow-listed part of the state store to the warm dir."""
        namespaces = tuple(allowed_namespaces or self._config.allowed_namespaces)
        target = self.target
        dump: Optional[Path] = None
        try:
            rotated = rotate(target)

            removed = self._store.delete_except(namespaces)
            logger.info("Removed %d keys outside %d allowed namespaces", removed, len(namespaces))

            dump = Path(self._store.persist())
            body, kept, dropped = self._scrub(dump, namespaces)
            atomic_write(target, body)

            self._store.flush()
        except (OSError, ValueError, StateStoreError) as exc:
            raise SnapshotIOError(f"snapshot to {target} failed: {exc}") from exc
        finally:
            # the raw dump is unfiltered and must not outlive this call
            if dump is not None:
                dump.unlink(missing_ok=True)

        if dropped:
            logger.warning("Dropped %d keys written during snapshot: %s", len(dropped), ", ".join(dropped))
        handle = SnapshotHandle(
            path=str(target),
            key_count=kept,
            checksum_sha256=_sha256(body),
            dropped_keys=dropped,
            rotated_from=str(rotated) if rotated else "",
        )
        logger.info("State snapshot saved to %s (%d keys, %d bytes)", target, kept, len(body))
        return handle

    @staticmethod
    def _scrub(dump: Path, namespaces: tuple[str, ...]) -> tuple[bytes, int, list[str]]:
        """Re-check the persisted dump against the allow-list.

        Keys can land in the store between the delete and the persist; they
        must never reach the durable copy.
        """
        raw = json.loads(dump.read_bytes())
        contents: dict[str, dict[str, str]] = raw.get("keys", {})
        kept = {k: v for k, v in contents.items() if _allowed(k, namespaces)}
        dropped = sorted(k for k in contents if k not in kept)
        body = json.dumps({
            "version": SNAPSHOT_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "namespaces": list(namespaces),
            "keys": kept,
        }, sort_keys=True, ensure_ascii=False).encode()
        return body, len(kept), dropped


def load_snapshot(path: str) -> dict[str, dict[str, str]]:
    """Read a snapshot written by StateSnapshotStore; raises on version mismatch."""
    raw = json.loads(Path(path).read_bytes())
    if raw.get("version") != SNAPSHOT_VERSION:
        raise SnapshotIOError(f"unsupported snapshot version {raw.get('version')!r} in {path}")
    return raw["keys"]
