"""
Persisted State

A single JSON document holding everything that must survive a restart:

    {
      "version": 1,
      "seen_ids": ["..."],          # owned by DedupStore
      "last_poll_at": "...",        # owned by DedupStore
      "queue": [{...}],             # owned by ReviewQueue
      "updated_at": "..."
    }

Each owner reads and writes only its own sections. Every write rewrites the
whole document through a temp file + os.replace, so a crash leaves either the
previous or the new document on disk, never a partial one.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..common.errors import PersistenceError

logger = logging.getLogger("kbdraft.pipeline.state_file")

STATE_VERSION = 1


class StateFile:
    """Owner of the on-disk state document."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self._document: Dict[str, Any] = self._empty()
        self._loaded = False

    @staticmethod
    def _empty() -> Dict[str, Any]:
        return {"version": STATE_VERSION}

    def load(self) -> Dict[str, Any]:
        """
        Read the document from disk.

        A missing file is a fresh start. An unreadable or corrupt file is
        logged and replaced by an empty document; startup never fails here.
        """
        self._loaded = True
        if not self.path.exists():
            self._document = self._empty()
            return self._document

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            self._document = data
        except (json.JSONDecodeError, OSError, UnicodeDecodeError, ValueError) as e:
            logger.warning("State file %s unreadable, starting from empty state: %s", self.path, e)
            self._document = self._empty()
        return self._document

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def read_section(self, name: str, default: Any = None) -> Any:
        self._ensure_loaded()
        return self._document.get(name, default)

    def write_section(self, name: str, value: Any) -> None:
        """Set one section and commit the whole document."""
        self._ensure_loaded()
        self._document[name] = value
        self.commit()

    def update_sections(self, sections: Dict[str, Any]) -> None:
        """Set several sections and commit them in one write."""
        self._ensure_loaded()
        self._document.update(sections)
        self.commit()

    def commit(self) -> None:
        """Atomically write the current document. Raises PersistenceError."""
        self._document["version"] = STATE_VERSION
        self._document["updated_at"] = datetime.now(timezone.utc).isoformat()

        tmp_path: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._document, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
            logger.debug("State written to %s", self.path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write state file {self.path}: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
