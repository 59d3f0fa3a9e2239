"""Recursive folder watching with per-path debounce.

Raw filesystem notifications arrive in bursts and often while a clip is
still being written. Each video path gets its own debounce timer that is
restarted by every notification; only when it fires undisturbed is the
path compared against the known-file set:

- present, non-empty and unknown  -> known, FileAdded
- missing and known               -> forgotten, FileRemoved
- anything else                   -> nothing (still growing, already known, ...)

The files present when a watch starts form a silent baseline.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from clipfolio.domain.events import FileAdded, FileRemoved
from clipfolio.infrastructure.event_bus import EventBus
from clipfolio.infrastructure.file_scanner import FileScanner

TimerFactory = Callable[..., threading.Timer]


class WatchState:
    """Known files and pending debounce timers for one watched root."""

    def __init__(
        self,
        root: Path,
        scanner: FileScanner,
        debounce_s: float,
        on_added: Callable[[Path], None],
        on_removed: Callable[[Path], None],
        timer_factory: TimerFactory = threading.Timer,
    ):
        self.root = root
        self.scanner = scanner
        self.debounce_s = debounce_s
        self.on_added = on_added
        self.on_removed = on_removed
        self.timer_factory = timer_factory
        self.logger = logging.getLogger(__name__)

        self.known: set = set()
        self._timers: Dict[Path, threading.Timer] = {}
        self._generation: Dict[Path, int] = {}
        self._stopped = False
        self._lock = threading.Lock()

    def baseline(self) -> int:
        found = set(self.scanner.iter_paths(self.root))
        with self._lock:
            self.known = found
        return len(found)

    @property
    def pending(self) -> List[Path]:
        with self._lock:
            return list(self._timers)

    def notify(self, path: Path):
        """Restarts the debounce window for ``path`` if it looks like a video."""
        path = Path(path)
        if not self.scanner.is_video(path):
            return
        with self._lock:
            if self._stopped:
                return
            existing = self._timers.pop(path, None)
            if existing is not None:
                existing.cancel()
            generation = self._generation.get(path, 0) + 1
            self._generation[path] = generation
            timer = self.timer_factory(self.debounce_s, self._settle, args=(path, generation))
            timer.daemon = True
            self._timers[path] = timer
        timer.start()

    def _settle(self, path: Path, generation: int):
        with self._lock:
            # A newer notification restarted the window after this timer fired
            if self._stopped or self._generation.get(path) != generation:
                return
            self._timers.pop(path, None)
            self._generation.pop(path, None)

            try:
                stat = path.stat()
                exists = path.is_file()
                size = stat.st_size
            except FileNotFoundError:
                exists, size = False, 0
            except OSError as exc:
                self.logger.debug(f"WATCH_UNREADABLE: {path} ({exc})")
                return

            was_known = path in self.known
            action = None
            if exists and not was_known:
                if size > 0:
                    self.known.add(path)
                    action = "added"
                else:
                    self.logger.debug(f"WATCH_EMPTY: {path} has 0 bytes, waiting")
            elif not exists and was_known:
                self.known.discard(path)
                action = "removed"

        if action == "added":
            self.logger.info(f"WATCH_ADDED: {path}")
            self.on_added(path)
        elif action == "removed":
            self.logger.info(f"WATCH_REMOVED: {path}")
            self.on_removed(path)

    def stop(self):
        """Drops timers and the known set without reporting anything."""
        with self._lock:
            self._stopped = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._generation.clear()
            self.known.clear()


class _VideoEventHandler(FileSystemEventHandler):
    def __init__(self, state: WatchState):
        super().__init__()
        self.state = state

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory:
            return
        self.state.notify(Path(event.src_path))
        dest = getattr(event, "dest_path", None)
        if dest:
            self.state.notify(Path(dest))


class FolderWatcher:
    """Owns one watchdog observer and one WatchState per watched root."""

    def __init__(
        self,
        scanner: FileScanner,
        event_bus: EventBus,
        debounce_s: float = 0.5,
        observer_factory: Callable[[], Observer] = Observer,
        timer_factory: TimerFactory = threading.Timer,
    ):
        self.scanner = scanner
        self.event_bus = event_bus
        self.debounce_s = debounce_s
        self.observer_factory = observer_factory
        self.timer_factory = timer_factory
        self.logger = logging.getLogger(__name__)

        self._watches: Dict[Path, tuple] = {}
        self._lock = threading.Lock()

    def watch(self, root: Path) -> WatchState:
        root = Path(root).resolve()
        if not root.is_dir():
            raise NotADirectoryError(f"Cannot watch {root}: not a directory")
        with self._lock:
            existing = self._watches.get(root)
            if existing is not None:
                self.logger.info(f"Already watching: {root}")
                return existing[0]

            state = WatchState(
                root,
                self.scanner,
                self.debounce_s,
                on_added=lambda p: self.event_bus.publish(FileAdded(file_path=p, root=root)),
                on_removed=lambda p: self.event_bus.publish(FileRemoved(file_path=p, root=root)),
                timer_factory=self.timer_factory,
            )
            count = state.baseline()
            observer = self.observer_factory()
            observer.schedule(_VideoEventHandler(state), str(root), recursive=True)
            observer.start()
            self._watches[root] = (state, observer)

        self.logger.info(f"WATCH_START: {root} baseline={count}")
        return state

    def unwatch(self, root: Path) -> bool:
        root = Path(root).resolve()
        with self._lock:
            entry = self._watches.pop(root, None)
        if entry is None:
            return False
        state, observer = entry
        state.stop()
        observer.stop()
        observer.join(timeout=5)
        self.logger.info(f"WATCH_STOP: {root}")
        return True

    def stop_all(self):
        for root in self.roots():
            self.unwatch(root)

    def roots(self) -> List[Path]:
        with self._lock:
            return list(self._watches)

    def root_for(self, path: Path) -> Optional[Path]:
        """Returns the watched root containing ``path``, if any."""
        path = Path(path)
        for root in self.roots():
            try:
                path.relative_to(root)
                return root
            except ValueError:
                continue
        return None
