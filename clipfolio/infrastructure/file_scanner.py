import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Generator, Optional
from clipfolio.domain.models import SourceFile, VideoEntry


def stat_source(path: Path) -> SourceFile:
    """Stats one file; creation time falls back to ctime where birthtime is missing."""
    stat = path.stat()
    created = getattr(stat, "st_birthtime", None) or stat.st_ctime
    return SourceFile(
        path=path,
        size_bytes=stat.st_size,
        modified=datetime.fromtimestamp(stat.st_mtime),
        created=datetime.fromtimestamp(created),
    )


def to_entry(source: SourceFile, root: Optional[Path]) -> VideoEntry:
    relative = source.path.name
    if root is not None:
        try:
            relative = str(source.path.relative_to(root))
        except ValueError:
            pass
    folder = os.path.dirname(relative)
    return VideoEntry(
        name=source.path.name,
        path=source.path,
        size=source.size_bytes,
        created=source.created,
        modified=source.modified,
        relative_path=relative,
        folder_path="" if folder in ("", ".") else folder,
    )


class FileScanner:
    """Recursively scans for video files in a directory."""

    def __init__(self, extensions: Iterable[str]):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]

    def is_video(self, path: Path) -> bool:
        return Path(path).suffix.lower() in self.extensions

    def iter_paths(self, root_dir: Path) -> Generator[Path, None, None]:
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            # Ensure deterministic traversal: sort directories and files
            dirs.sort()
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                if self.is_video(file_path):
                    yield file_path

    def scan(self, root_dir: Path) -> Generator[VideoEntry, None, None]:
        """Scans the directory and yields one VideoEntry per video file."""
        root_dir = Path(root_dir)
        for file_path in self.iter_paths(root_dir):
            try:
                source = stat_source(file_path)
            except OSError:
                # Skip files we can't access
                continue
            yield to_entry(source, root_dir)

    def scan_all(self, root_dir: Path) -> List[VideoEntry]:
        root_dir = Path(root_dir)
        if not root_dir.exists():
            raise FileNotFoundError(f"Folder not found: {root_dir}")
        if not root_dir.is_dir():
            raise NotADirectoryError(f"Not a directory: {root_dir}")
        return list(self.scan(root_dir))
