"""
Media engine adapter built on python-mpv.

Each playback gets its own EngineContext: options are staged before
initialization, engine events are queued by python-mpv's event thread and
drained by the control loop with a bounded wait.
"""

import queue
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from src.common.logger import setup_logger

logger = setup_logger(__name__)

# MPV_ERROR_GENERIC, used when the engine reports no code of its own
ENGINE_GENERIC_ERROR = -20


class EngineEvent(Enum):
    """Events surfaced by the engine on each poll."""
    NONE = "none"
    FILE_LOADED = "file-loaded"
    FILE_ENDED = "end-file"
    SHUTDOWN = "shutdown"
    PAUSED = "paused"
    RESUMED = "resumed"
    OTHER = "other"


class EngineError(Exception):
    """Raised when an engine call fails. Keeps the engine's error code."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @classmethod
    def wrap(cls, exc: Exception) -> "EngineError":
        """Map an exception raised by python-mpv to an EngineError."""
        if isinstance(exc, EngineError):
            return exc
        code = ENGINE_GENERIC_ERROR
        if exc.args and isinstance(exc.args[0], int) and exc.args[0] < 0:
            code = exc.args[0]
        return cls(code, str(exc) or exc.__class__.__name__)


class EngineContext:
    """Per-playback engine handle."""

    def __init__(self):
        self.options: Dict[str, Any] = {}
        self.player = None
        self.events: "queue.Queue[EngineEvent]" = queue.Queue()
        self.terminated = False

    @property
    def initialized(self) -> bool:
        return self.player is not None

    def __repr__(self) -> str:
        state = "terminated" if self.terminated else ("running" if self.initialized else "staged")
        return f"EngineContext({state})"


def _load_mpv():
    """Import python-mpv, which needs libmpv at import time."""
    try:
        import mpv
    except (ImportError, OSError) as e:
        raise EngineError(ENGINE_GENERIC_ERROR, f"libmpv is not available: {e}")
    return mpv


class MpvEngine:
    """Drives mpv through python-mpv, one context per playback."""

    def __init__(self, preset_options: Optional[Dict[str, Any]] = None):
        """
        Initialize the engine adapter.

        Args:
            preset_options: mpv options applied to every new context
        """
        self.preset_options = dict(preset_options or {})

    def create(self) -> EngineContext:
        """Create an uninitialized playback context."""
        ctx = EngineContext()
        logger.debug("Created %s", ctx)
        return ctx

    def apply_preset_options(self, ctx: EngineContext) -> None:
        """Stage the engine-wide preset options on a context."""
        for name, value in self.preset_options.items():
            self.set_option(ctx, name, value)

    def set_option(self, ctx: EngineContext, name: str, value: Any) -> None:
        """
        Stage an option to be applied at initialization.

        Raises:
            EngineError: If the context is already initialized
        """
        if ctx.initialized:
            raise EngineError(ENGINE_GENERIC_ERROR, f"Option {name} set after initialization")
        ctx.options[name.replace('-', '_')] = value

    def initialize(self, ctx: EngineContext) -> None:
        """
        Start the engine with the staged options and hook its events.

        Raises:
            EngineError: If mpv cannot be created or rejects an option
        """
        mpv = _load_mpv()

        def _log(loglevel, component, message):
            if loglevel in ("error", "fatal"):
                logger.error("mpv/%s: %s", component, message.strip())
            else:
                logger.debug("mpv/%s: %s", component, message.strip())

        try:
            player = mpv.MPV(log_handler=_log, loglevel="warn", **ctx.options)
        except Exception as e:
            raise EngineError.wrap(e)
        ctx.player = player

        events = ctx.events
        player.event_callback('file-loaded')(lambda event: events.put(EngineEvent.FILE_LOADED))
        player.event_callback('end-file')(lambda event: events.put(EngineEvent.FILE_ENDED))
        player.event_callback('shutdown')(lambda event: events.put(EngineEvent.SHUTDOWN))

        def _on_pause(name, value):
            if value is not None:
                events.put(EngineEvent.PAUSED if value else EngineEvent.RESUMED)

        player.observe_property('pause', _on_pause)
        logger.debug("Initialized %s", ctx)

    def load_and_play(self, ctx: EngineContext, url: str) -> None:
        """
        Load a url and start playback.

        Raises:
            EngineError: If the engine rejects the load
        """
        self._require_player(ctx)
        try:
            ctx.player.loadfile(url)
        except Exception as e:
            raise EngineError.wrap(e)

    def wait_event(self, ctx: EngineContext, timeout: float) -> EngineEvent:
        """Wait up to timeout seconds for the next engine event."""
        try:
            return ctx.events.get(timeout=timeout)
        except queue.Empty:
            return EngineEvent.NONE

    def set_paused(self, ctx: EngineContext, paused: bool) -> None:
        """
        Pause or resume playback.

        Raises:
            EngineError: If the engine rejects the property change
        """
        self._require_player(ctx)
        try:
            ctx.player.pause = paused
        except Exception as e:
            raise EngineError.wrap(e)

    def command(self, ctx: EngineContext, args: Sequence[str]) -> None:
        """
        Run a raw engine command (e.g. ["seek", "10"]).

        Raises:
            EngineError: If the engine rejects the command
        """
        self._require_player(ctx)
        if not args:
            raise EngineError(ENGINE_GENERIC_ERROR, "Empty engine command")
        try:
            ctx.player.command(*args)
        except Exception as e:
            raise EngineError.wrap(e)

    def terminate(self, ctx: Optional[EngineContext]) -> None:
        """Destroy a context. No-op for None or an already terminated context."""
        if ctx is None or ctx.terminated:
            return
        ctx.terminated = True
        if ctx.player is not None:
            try:
                ctx.player.terminate()
            except Exception as e:
                logger.error("Error terminating engine: %s", e)
            ctx.player = None
        logger.debug("Terminated %s", ctx)

    @staticmethod
    def _require_player(ctx: EngineContext) -> None:
        if ctx.player is None:
            raise EngineError(ENGINE_GENERIC_ERROR, "Engine context is not initialized")
