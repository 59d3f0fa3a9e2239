"""Cheap change-sensitive cache keys for source media.

The key covers path, size and modification time only; no file content is
read. Any re-save or resize yields a new key. A rename also yields a new key,
so renamed files are cached again under their new path.
"""

import hashlib
import logging
import os
from pathlib import Path

from clipfolio.domain.models import CacheFingerprint

logger = logging.getLogger(__name__)


def _digest(*parts: str, length: int) -> str:
    hasher = hashlib.sha1()
    for part in parts:
        hasher.update(part.encode("utf-8"))
    return hasher.hexdigest()[:length]


def compute_fingerprint(path: Path, length: int = 16) -> CacheFingerprint:
    """Hashes ``path ‖ size ‖ mtime``; falls back to the path alone if stat fails."""
    path = Path(path)
    source = str(path)
    try:
        stat = os.stat(source)
    except OSError as exc:
        logger.debug(f"FINGERPRINT_FALLBACK: {path.name} ({exc})")
        return CacheFingerprint(source=path, digest=_digest(source, length=length), from_stat=False)

    return CacheFingerprint(
        source=path,
        digest=_digest(source, str(stat.st_size), str(stat.st_mtime_ns), length=length),
    )
