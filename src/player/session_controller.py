"""
Session controller for MPV Remote.

Runs the daemon's control loop on a single thread. The outer loop waits for
commands while idle; an admitted OPEN starts a session whose inner loop
alternates between the engine's event queue and the command mailbox until
the media ends or a STOP/OPEN/KILL arrives. At most one engine context
exists at any time, and it is always terminated before the session is
dropped.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from src.common.logger import setup_logger
from .command_channel import DaemonChannel
from .commands import Command, CommandKind
from .media_engine import EngineContext, EngineError, EngineEvent, MpvEngine
from .state_machine import DaemonMode, DaemonStateMachine, StateTransitionError
from .status import (
    MediaType,
    StatusPublishError,
    StatusPublisher,
    classify_url,
    expand_url,
    local_path,
)

logger = setup_logger(__name__)

DEFAULT_LOAD_TIMEOUTS: Dict[MediaType, float] = {
    MediaType.LOCAL: 5.0,
    MediaType.HTTP: 30.0,
}


class SessionEnd(Enum):
    """Why a session's inner loop exited."""
    FINISHED = "finished"          # Engine reported end of file or shutdown
    STOPPED = "stopped"            # STOP command
    REOPEN = "reopen"              # OPEN command, handed back to the outer loop
    KILLED = "killed"              # KILL command
    LOAD_TIMEOUT = "load_timeout"  # Media did not load in time


@dataclass
class Session:
    """The currently open media and its load-timeout accounting."""
    context: EngineContext
    url: str
    media_type: MediaType
    started_at: float
    waited: float = 0.0


class SessionController:
    """
    Drives the media engine from remote commands.

    Owns the active session and the kill flag; the daemon lifecycle
    manager owns the transport and the process.
    """

    def __init__(
        self,
        engine: MpvEngine,
        channel: DaemonChannel,
        status: StatusPublisher,
        state_machine: Optional[DaemonStateMachine] = None,
        engine_wait: float = 0.1,
        idle_interval: float = 1.0,
        load_timeouts: Optional[Dict[MediaType, float]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the session controller.

        Args:
            engine: Media engine adapter
            channel: Daemon side of the command channel
            status: Status publisher
            state_machine: Daemon mode tracker (a new IDLE one if None)
            engine_wait: Bounded engine event wait per inner-loop iteration
            idle_interval: Bounded command wait per outer-loop iteration
            load_timeouts: Seconds allowed to reach loaded, per media type
            clock: Monotonic clock used for load-timeout accounting
        """
        self._engine = engine
        self._channel = channel
        self._status = status
        self._state = state_machine or DaemonStateMachine(initial_mode=DaemonMode.IDLE)
        self._engine_wait = engine_wait
        self._idle_interval = idle_interval
        self._load_timeouts = dict(DEFAULT_LOAD_TIMEOUTS)
        if load_timeouts:
            self._load_timeouts.update(load_timeouts)
        self._clock = clock

        self._active: Optional[Session] = None
        self._admitting: Optional[EngineContext] = None
        self._kill_requested = False

    @property
    def kill_requested(self) -> bool:
        return self._kill_requested

    @property
    def active_session(self) -> Optional[Session]:
        return self._active

    @property
    def state_machine(self) -> DaemonStateMachine:
        return self._state

    def request_kill(self) -> None:
        """Ask the loops to unwind at their next check."""
        self._kill_requested = True

    def load_timeout(self, media_type: MediaType) -> float:
        return self._load_timeouts[media_type]

    # -------------------------------------------------------------------------
    # Error reporting
    # -------------------------------------------------------------------------

    def publish(self) -> None:
        """Push the status; a failed write is logged, not raised."""
        try:
            self._status.push()
        except StatusPublishError as e:
            logger.error("Status publish failed: %s", e)

    def log_error(self, code: int, message: str) -> None:
        """Report an error to the status, the reply stream and the log."""
        self._status.set_error(code, message)
        self.publish()
        self._channel.reply(code, message)
        if code:
            logger.error(message)
        else:
            logger.info(message)

    def log_engine_error(self, error: EngineError) -> None:
        self.log_error(error.code, f"MPV API error: {error.message}")

    # -------------------------------------------------------------------------
    # Outer loop
    # -------------------------------------------------------------------------

    def run(self) -> None:
        """Serve commands until a kill is requested."""
        logger.info("Waiting for commands")
        while not self._kill_requested:
            self.poll_once()

    def poll_once(self) -> None:
        """One outer-loop iteration: wait briefly, then handle one command."""
        self._channel.wait(self._idle_interval)
        command = self._channel.read_latest()

        if command.kind == CommandKind.OPEN:
            self.open(command.url, command.start_paused)
        elif command.kind == CommandKind.KILL:
            logger.info("Kill requested")
            self.request_kill()
        elif command.kind == CommandKind.ENGINE:
            self._channel.reply(1, "No media is loaded")
        elif not command.is_none:
            logger.debug("Ignoring %s while idle", command.kind.name)

    def open(self, url: str, start_paused: bool = False) -> Optional[SessionEnd]:
        """
        Admit and play a media url.

        Returns:
            How the session ended, or None if it was not admitted
        """
        session = self._admit(url, start_paused)
        if session is None:
            return None
        return self._play(session)

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def _admit(self, raw_url: str, start_paused: bool) -> Optional[Session]:
        """Validate the url and bring up an engine context for it."""
        if self._active is not None:
            raise StateTransitionError("A session is already active")

        url = expand_url(raw_url)
        media_type = classify_url(url)
        self._status.set_url(url)

        if media_type == MediaType.LOCAL:
            try:
                with open(local_path(url), 'rb'):
                    pass
            except OSError:
                self.log_error(1, f"Media `{url}` does not exist")
                return None

        ctx: Optional[EngineContext] = None
        admitted = False
        try:
            ctx = self._engine.create()
            # Visible to terminate_active until the session owns it
            self._admitting = ctx
            self._engine.apply_preset_options(ctx)
            # Starts the media at paused state
            if start_paused:
                self._engine.set_option(ctx, "pause", True)
            self._engine.initialize(ctx)
            self._engine.load_and_play(ctx, url)
            self._state.to_playing()
            admitted = True
        except EngineError as e:
            self.log_engine_error(e)
            return None
        finally:
            self._admitting = None
            if not admitted:
                self._engine.terminate(ctx)

        session = Session(
            context=ctx,
            url=url,
            media_type=media_type,
            started_at=self._clock()
        )
        self._active = session
        self._status.set_paused(start_paused)
        self._status.clear_error()
        self.publish()
        logger.info("Playing %s (%s)", url, media_type.value)
        return session

    # -------------------------------------------------------------------------
    # Inner loop
    # -------------------------------------------------------------------------

    def _play(self, session: Session) -> SessionEnd:
        """Run the session until it ends; always tears it down."""
        end = SessionEnd.FINISHED
        last_tick = session.started_at
        timeout = self.load_timeout(session.media_type)

        try:
            while True:
                event = self._engine.wait_event(session.context, self._engine_wait)
                changed = self._status.apply_engine_event(event)
                if event in (EngineEvent.SHUTDOWN, EngineEvent.FILE_ENDED):
                    break

                # Aborts the session if loading is taking too long
                now = self._clock()
                if not self._status.status.loaded:
                    session.waited += now - last_tick
                    if session.waited > timeout:
                        self.log_error(1, f"Error loading media `{session.url}`")
                        end = SessionEnd.LOAD_TIMEOUT
                        break
                last_tick = now

                outcome = self._dispatch(session, self._channel.read_latest())
                if outcome is not None:
                    end = outcome
                    break

                if changed:
                    self.publish()
        finally:
            self._teardown(session, end)

        return end

    def _dispatch(self, session: Session, command: Command) -> Optional[SessionEnd]:
        """Handle a command received during a session."""
        kind = command.kind
        if kind == CommandKind.NONE:
            return None
        if kind == CommandKind.STOP:
            return SessionEnd.STOPPED
        if kind == CommandKind.OPEN:
            # Handed back so the outer loop admits it after this context is gone
            self._channel.write(command)
            return SessionEnd.REOPEN
        if kind == CommandKind.KILL:
            self.request_kill()
            return SessionEnd.KILLED

        try:
            if kind in (CommandKind.PAUSE, CommandKind.RESUME):
                self._engine.set_paused(session.context, kind == CommandKind.PAUSE)
            elif kind == CommandKind.ENGINE:
                self._engine.command(session.context, command.args)
                self._channel.reply(0, f"Executed `{' '.join(command.args)}`")
        except EngineError as e:
            self.log_engine_error(e)
        return None

    def _teardown(self, session: Session, end: SessionEnd) -> None:
        self._engine.terminate(session.context)
        self._active = None
        # Shutdown already published the final status
        if self._state.is_terminated:
            return
        self._status.set_loaded(False)
        self.publish()
        if self._state.is_playing:
            self._state.to_idle()
        logger.info("Finished playing the media (%s)", end.value)

    def terminate_active(self) -> None:
        """Terminate the active or half-admitted engine context, if any. Safe to repeat."""
        if self._admitting is not None:
            self._engine.terminate(self._admitting)
        if self._active is not None:
            self._engine.terminate(self._active.context)
