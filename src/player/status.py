"""
Observable daemon status.

The status snapshot is persisted as JSON so short-lived client processes can
read it, and broadcast over IPC on every push for live observers.
"""

import json
import os
import re
import tempfile
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse

from src.common.ipc import MessagePublisher, MessageType
from src.common.logger import setup_logger
from .media_engine import EngineEvent

logger = setup_logger(__name__)

_SCHEME_RE = re.compile(r'^[A-Za-z][A-Za-z0-9+.\-]*://')


class MediaType(Enum):
    """Where the media comes from. Selects load timeout and existence check."""
    LOCAL = "local"
    HTTP = "http"


class StatusPublishError(Exception):
    """Raised when the status snapshot cannot be persisted."""
    pass


def expand_url(url: str) -> str:
    """Substitute environment placeholders ($VAR, ${VAR}, ~) in a media url."""
    return os.path.expanduser(os.path.expandvars(url.strip()))


def classify_url(url: str) -> MediaType:
    """Derive the media type from the url form."""
    if _SCHEME_RE.match(url) and not url.lower().startswith("file://"):
        return MediaType.HTTP
    return MediaType.LOCAL


def local_path(url: str) -> str:
    """Filesystem path of a LOCAL url (file:// urls are unwrapped)."""
    if url.lower().startswith("file://"):
        return unquote(urlparse(url).path)
    return url


@dataclass
class StatusError:
    """Last error reported by the daemon (code 0 means none)."""
    code: int = 0
    message: str = ""


@dataclass
class Status:
    """Externally visible snapshot of the daemon."""
    running: bool = False
    loaded: bool = False
    paused: bool = False
    url: str = ""
    media_type: MediaType = MediaType.LOCAL
    error: StatusError = field(default_factory=StatusError)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["media_type"] = self.media_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Status":
        error = data.get("error") or {}
        try:
            media_type = MediaType(data.get("media_type", MediaType.LOCAL.value))
        except ValueError:
            media_type = MediaType.LOCAL
        return cls(
            running=bool(data.get("running", False)),
            loaded=bool(data.get("loaded", False)),
            paused=bool(data.get("paused", False)),
            url=str(data.get("url", "")),
            media_type=media_type,
            error=StatusError(
                code=int(error.get("code", 0)),
                message=str(error.get("message", ""))
            ),
        )


class StatusPublisher:
    """Holds the daemon's status and publishes it on push()."""

    def __init__(self, status_file: Path, publisher: Optional[MessagePublisher] = None):
        """
        Initialize the status publisher.

        Args:
            status_file: JSON file the snapshot is persisted to
            publisher: Optional IPC publisher for live broadcasts
        """
        self.status_file = Path(status_file)
        self._publisher = publisher
        self._status = Status()

    def attach(self, publisher: Optional[MessagePublisher]) -> None:
        """Attach (or detach, with None) the IPC publisher."""
        self._publisher = publisher

    @property
    def status(self) -> Status:
        """Current in-memory status."""
        return self._status

    def snapshot(self) -> Dict[str, Any]:
        return self._status.to_dict()

    def pull(self) -> Status:
        """
        Load the persisted status.

        A missing or unreadable file yields the default status.
        """
        if not self.status_file.exists():
            self._status = Status()
            return self._status

        try:
            with open(self.status_file, 'r') as f:
                self._status = Status.from_dict(json.load(f))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Unreadable status file %s: %s", self.status_file, e)
            self._status = Status()
        return self._status

    def push(self) -> None:
        """
        Persist the current status and broadcast it.

        Raises:
            StatusPublishError: If the status file cannot be written
        """
        data = self._status.to_dict()
        tmp_path = None
        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.status_file.parent),
                prefix=".status-",
                suffix=".json"
            )
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.status_file)
        except OSError as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StatusPublishError(f"Failed to write {self.status_file}: {e}") from e

        if self._publisher is not None:
            self._publisher.publish(MessageType.STATUS, data)

    # Setters

    def set_default(self) -> None:
        self._status = Status()

    def set_running(self, running: bool) -> None:
        self._status.running = bool(running)

    def set_loaded(self, loaded: bool) -> None:
        self._status.loaded = bool(loaded)

    def set_paused(self, paused: bool) -> None:
        self._status.paused = bool(paused)

    def set_url(self, url: str) -> None:
        """Set the url and the media type derived from it."""
        self._status.url = url
        self._status.media_type = classify_url(url)

    def set_error(self, code: int, message: str) -> None:
        self._status.error = StatusError(code=int(code), message=message)

    def clear_error(self) -> None:
        self._status.error = StatusError()

    def apply_engine_event(self, event: EngineEvent) -> bool:
        """
        Fold an engine event into the status.

        Returns:
            True if observable state changed
        """
        before = (self._status.loaded, self._status.paused)
        if event == EngineEvent.FILE_LOADED:
            self._status.loaded = True
        elif event == EngineEvent.PAUSED:
            self._status.paused = True
        elif event == EngineEvent.RESUMED:
            self._status.paused = False
        return before != (self._status.loaded, self._status.paused)
