"""File backed persistence for saved transcriptions.

Every save creates a new file named after its UTC creation time plus a
process-wide counter. Files are created exclusively and never rewritten, so
records are immutable and two saves can never collide.
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .models import SavedTranscription

APP_DIR = Path.home() / ".voicejournal"
TRANSCRIPTIONS_DIR = APP_DIR / "transcriptions"
RECORD_PREFIX = "transcription-"
RECORD_SUFFIX = ".txt"

_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"
_RECORD_ID_RE = re.compile(r"^(\d{8}T\d{12}Z)-(\d+)$")

logger = logging.getLogger(__name__)

_counter = itertools.count(1)
_counter_lock = threading.Lock()


class PersistenceError(RuntimeError):
    """Raised when something goes wrong while writing or reading records."""


def _next_sequence() -> int:
    with _counter_lock:
        return next(_counter)


class Storage:
    """Manage immutable transcription records inside a directory."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory) if directory is not None else TRANSCRIPTIONS_DIR
        self._ensure_initialised()

    def _ensure_initialised(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot create {self.directory}: {exc}") from exc

    def save(self, text: str) -> SavedTranscription:
        created_at = datetime.now(timezone.utc)
        stamp = created_at.strftime(_TIMESTAMP_FORMAT)
        while True:
            record_id = f"{stamp}-{_next_sequence():06d}"
            path = self._path_for(record_id)
            try:
                # "x" refuses to touch an existing file; a clash just takes the next number.
                with path.open("x", encoding="utf-8", newline="") as fh:
                    fh.write(text)
            except FileExistsError:
                logger.debug("Record %s already exists, retrying with next sequence", record_id)
                continue
            except OSError as exc:
                raise PersistenceError(f"Failed to write transcription: {exc}") from exc
            break

        logger.info("Saved transcription %s (%d characters)", record_id, len(text))
        return SavedTranscription(id=record_id, text=text, created_at=created_at, path=path)

    def get(self, record_id: str) -> SavedTranscription:
        match = _RECORD_ID_RE.match(record_id)
        if match is None:
            raise PersistenceError(f"Invalid transcription id {record_id!r}")
        path = self._path_for(record_id)
        try:
            with path.open(encoding="utf-8", newline="") as fh:
                text = fh.read()
        except FileNotFoundError as exc:
            raise PersistenceError(f"Transcription with id {record_id} not found") from exc
        except UnicodeDecodeError as exc:
            raise PersistenceError(f"Transcription {record_id} is not valid UTF-8") from exc
        except OSError as exc:
            raise PersistenceError(f"Failed to read transcription {record_id}: {exc}") from exc
        return _to_record(record_id, match.group(1), text, path)

    def list(self) -> Iterator[SavedTranscription]:
        ids = []
        for path in self.directory.glob(f"{RECORD_PREFIX}*{RECORD_SUFFIX}"):
            record_id = path.name[len(RECORD_PREFIX) : -len(RECORD_SUFFIX)]
            if _RECORD_ID_RE.match(record_id):
                ids.append(record_id)
        for record_id in sorted(ids, reverse=True):
            yield self.get(record_id)

    def _path_for(self, record_id: str) -> Path:
        return self.directory / f"{RECORD_PREFIX}{record_id}{RECORD_SUFFIX}"


def _to_record(record_id: str, stamp: str, text: str, path: Path) -> SavedTranscription:
    created_at = datetime.strptime(stamp, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    return SavedTranscription(id=record_id, text=text, created_at=created_at, path=path)
