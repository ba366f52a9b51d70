"""
Crash-safe file replacement.

    write <name>.tmp  ->  flush + fsync  ->  chmod 0600 (POSIX)  ->  os.replace

os.replace is atomic on the same filesystem, so readers see either the old
file or the new one, never a torn write.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def tmp_path_for(path: Path) -> Path:
    return path.with_suffix(".tmp")


def atomic_write_text(path: Path, text: str) -> None:
    """Atomically replace `path` with `text`. Raises OSError on failure."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tmp_path_for(path)
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError as e:
                # Some filesystems (network mounts) refuse fsync
                logger.debug("fsync unavailable for %s: %s", tmp, e)
        if os.name == "posix":
            os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except OSError:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise
