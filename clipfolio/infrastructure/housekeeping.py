import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional, Tuple


class HousekeepingService:
    """Service for cleaning up cache artifacts and partial export output."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def clear_directory(self, directory: Path):
        """Removes every file inside ``directory``, keeping the directory itself."""
        if not directory.exists():
            return
        for entry in directory.iterdir():
            try:
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as exc:
                self.logger.warning(f"Failed to delete cache file {entry}: {exc}")

    def remove_file(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            self.logger.warning(f"Failed to delete {path}: {exc}")
            return False

    def directory_size(self, directory: Path) -> int:
        total = 0
        for root, dirs, files in os.walk(directory):
            for file in files:
                try:
                    total += (Path(root) / file).stat().st_size
                except OSError:
                    pass
        return total

    def _collect_entries(self, root: Path) -> List[Tuple[float, int, Path]]:
        """Lists evictable units under each kind directory: files, or whole per-source directories."""
        entries: List[Tuple[float, int, Path]] = []
        if not root.exists():
            return entries
        for kind_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            for entry in kind_dir.iterdir():
                try:
                    if entry.is_dir():
                        size = self.directory_size(entry)
                        mtime = max((f.stat().st_mtime for f in entry.iterdir()), default=entry.stat().st_mtime)
                    else:
                        stat = entry.stat()
                        size, mtime = stat.st_size, stat.st_mtime
                except OSError:
                    continue
                entries.append((mtime, size, entry))
        return entries

    def prune(self, root: Path, max_bytes: int, keep: Optional[set] = None) -> List[Path]:
        """Deletes least-recently-written artifacts until the cache fits ``max_bytes``."""
        entries = sorted(self._collect_entries(root), key=lambda e: e[0])
        total = sum(size for _, size, _ in entries)
        removed: List[Path] = []
        for _, size, path in entries:
            if total <= max_bytes:
                break
            if keep and path in keep:
                continue
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except OSError as exc:
                self.logger.warning(f"CACHE_PRUNE_FAILED: {path} ({exc})")
                continue
            total -= size
            removed.append(path)
        if removed:
            self.logger.info(f"CACHE_PRUNE: removed={len(removed)} remaining_bytes={total}")
        return removed
