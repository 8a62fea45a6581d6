"""
Remote commands and the single-slot command mailbox.

A client writes at most one pending command at a time. A newer command
replaces an unread older one: the daemon only ever acts on the latest.
"""

import shlex
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from src.common.logger import setup_logger

logger = setup_logger(__name__)


class CommandKind(Enum):
    """Kinds of remote commands."""
    NONE = "none"
    OPEN = "open"        # Open a file or stream, optionally paused
    STOP = "stop"        # Stop the current media
    KILL = "kill"        # Terminate the daemon
    PAUSE = "pause"      # Pause the current media
    RESUME = "resume"    # Resume the current media
    ENGINE = "command"   # Raw engine command line


class CommandParseError(ValueError):
    """Raised when a text command line cannot be parsed."""
    pass


@dataclass(frozen=True)
class Command:
    """A remote command with its in-band options."""
    kind: CommandKind = CommandKind.NONE
    url: str = ""
    start_paused: bool = False
    args: Tuple[str, ...] = ()

    @classmethod
    def none(cls) -> "Command":
        return cls()

    @classmethod
    def open(cls, url: str, start_paused: bool = False) -> "Command":
        return cls(CommandKind.OPEN, url=url, start_paused=start_paused)

    @classmethod
    def stop(cls) -> "Command":
        return cls(CommandKind.STOP)

    @classmethod
    def kill(cls) -> "Command":
        return cls(CommandKind.KILL)

    @classmethod
    def pause(cls) -> "Command":
        return cls(CommandKind.PAUSE)

    @classmethod
    def resume(cls) -> "Command":
        return cls(CommandKind.RESUME)

    @classmethod
    def engine(cls, args: Sequence[str]) -> "Command":
        return cls(CommandKind.ENGINE, args=tuple(args))

    @property
    def is_none(self) -> bool:
        return self.kind == CommandKind.NONE

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for transport."""
        return {
            "kind": self.kind.value,
            "url": self.url,
            "start_paused": self.start_paused,
            "args": list(self.args),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Command":
        """
        Deserialize a command received over the transport.

        Raises:
            CommandParseError: If the kind is unknown or an OPEN has no URL
        """
        try:
            kind = CommandKind(data.get("kind", "none"))
        except ValueError:
            raise CommandParseError(f"Unknown command kind: {data.get('kind')!r}")

        command = cls(
            kind=kind,
            url=str(data.get("url") or ""),
            start_paused=bool(data.get("start_paused", False)),
            args=tuple(str(a) for a in data.get("args") or ()),
        )
        if kind == CommandKind.OPEN and not command.url:
            raise CommandParseError("open requires a media url")
        return command

    @classmethod
    def parse(cls, line: str) -> "Command":
        """
        Parse a text command line.

        Accepted forms:
            open "<url>" [--paused]
            stop | kill | pause | resume
            command <engine args...>

        Raises:
            CommandParseError: If the line is empty or not understood
        """
        try:
            words = shlex.split(line)
        except ValueError as e:
            raise CommandParseError(f"Malformed command line: {e}")
        if not words:
            raise CommandParseError("Empty command line")

        name, rest = words[0].lower(), words[1:]
        if name == "open":
            paused = "--paused" in rest
            urls = [w for w in rest if w != "--paused"]
            if len(urls) != 1:
                raise CommandParseError("open takes exactly one media url")
            return cls.open(urls[0], start_paused=paused)
        if name in ("stop", "kill", "pause", "resume") and not rest:
            return cls(CommandKind(name))
        if name == "command" and rest:
            return cls.engine(rest)
        raise CommandParseError(f"Unknown command: {line!r}")

    def to_line(self) -> str:
        """Render as a text command line (inverse of parse)."""
        if self.kind == CommandKind.OPEN:
            line = f"open {shlex.quote(self.url)}"
            return line + " --paused" if self.start_paused else line
        if self.kind == CommandKind.ENGINE:
            return "command " + " ".join(shlex.quote(a) for a in self.args)
        return self.kind.value


class CommandMailbox:
    """
    Single-slot, overwrite-on-write command mailbox.

    Written from the transport thread, read from the control loop.
    """

    def __init__(self):
        self._slot: Optional[Command] = None
        self._cond = threading.Condition()

    def write(self, command: Command) -> None:
        """Store a command, replacing any unread one."""
        if command.is_none:
            return
        with self._cond:
            if self._slot is not None:
                logger.debug("Command %s superseded by %s", self._slot.kind.name, command.kind.name)
            self._slot = command
            self._cond.notify_all()

    def read_latest(self) -> Command:
        """Consume the pending command, or return a NONE command."""
        with self._cond:
            command, self._slot = self._slot, None
        return command if command is not None else Command.none()

    def wait(self, timeout: float) -> bool:
        """
        Block until a command is pending or the timeout elapses.

        Returns:
            True if a command is pending
        """
        with self._cond:
            if self._slot is None and timeout > 0:
                self._cond.wait(timeout)
            return self._slot is not None

    @property
    def pending(self) -> bool:
        with self._cond:
            return self._slot is not None
