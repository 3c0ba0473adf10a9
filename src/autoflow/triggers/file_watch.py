"""Polling file-system watcher trigger."""

import fnmatch
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .base import Trigger, TriggerSpec

logger = logging.getLogger(__name__)

FILE_EVENTS = ("created", "modified", "deleted")


class FileWatchTrigger(Trigger):
    """
    Watches a file or directory by polling modification times.

    Changes are debounced per (path, event): an entry fires once it has been
    quiet for ``debounce_ms``, so an editor writing a file in several chunks
    produces one fire. The dedup content is path + event + mtime.
    """

    type_name = "file_watch"

    def __init__(self, spec: TriggerSpec):
        super().__init__(spec)
        self.path = Path(str(spec.config["path"])).expanduser()
        self.pattern = spec.config.get("pattern", "*")
        self.recursive = bool(spec.config.get("recursive", False))
        self.events = tuple(spec.config.get("events") or FILE_EVENTS)
        settings = spec.settings
        self.poll_interval = settings.file_poll_interval if settings is not None else 1.0
        debounce_ms = spec.config.get("debounce_ms", settings.debounce_ms if settings is not None else 500)
        self.debounce = debounce_ms / 1000.0
        self._snapshot: Dict[str, float] = {}
        # (path, event) -> (mtime, monotonic time of the last change)
        self._pending: Dict[Tuple[str, str], Tuple[float, float]] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def validate_config(cls, config: Dict[str, Any]) -> List[str]:
        errors = []
        if not config.get("path"):
            errors.append("file_watch needs a path")
        for event in config.get("events") or ():
            if event not in FILE_EVENTS:
                errors.append(f"unknown file event '{event}' (expected one of {', '.join(FILE_EVENTS)})")
        return errors

    def dedup_content(self, payload: Dict[str, Any]) -> str:
        return f"{payload.get('path')}|{payload.get('event')}|{payload.get('mtime')}"

    def scan(self) -> Dict[str, float]:
        """Current {path: mtime} of watched files."""
        if self.path.is_file():
            candidates = [self.path]
        elif self.path.is_dir():
            candidates = self.path.rglob("*") if self.recursive else self.path.iterdir()
        else:
            return {}
        snapshot = {}
        for candidate in candidates:
            if not fnmatch.fnmatch(candidate.name, self.pattern):
                continue
            try:
                if candidate.is_file():
                    snapshot[str(candidate)] = candidate.stat().st_mtime
            except OSError:
                # Vanished between listing and stat; the next poll reports it
                continue
        return snapshot

    def poll(self, now: Optional[float] = None) -> List[Dict[str, Any]]:
        """Diff against the previous scan and return the changes that are due."""
        now = time.monotonic() if now is None else now
        current = self.scan()
        for path, mtime in current.items():
            previous = self._snapshot.get(path)
            if previous is None:
                self._note(path, "created", mtime, now)
            elif mtime != previous:
                self._note(path, "modified", mtime, now)
        for path, mtime in self._snapshot.items():
            if path not in current:
                self._note(path, "deleted", mtime, now)
        self._snapshot = current

        due = []
        for (path, event), (mtime, seen) in list(self._pending.items()):
            if now - seen >= self.debounce:
                del self._pending[(path, event)]
                due.append({"path": path, "event": event, "mtime": mtime})
        return due

    def _note(self, path: str, event: str, mtime: float, now: float) -> None:
        if event not in self.events:
            return
        if event == "modified" and (path, "created") in self._pending:
            # Still settling after creation: keep it a single "created"
            self._pending[(path, "created")] = (mtime, now)
            return
        self._pending[(path, event)] = (mtime, now)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._snapshot = self.scan()
        self._pending.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"file-watch-{self.trigger_id}", daemon=True
        )
        self._thread.start()
        logger.debug(f"Watching {self.path} ({', '.join(self.events)})")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_interval * 2)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            for change in self.poll():
                if self.paused:
                    continue
                self._safe_emit(change)
