"""
Daemon State Machine for MPV Remote.
Tracks whether the daemon is idle, playing a session, or terminated.
"""

import threading
from enum import Enum
from typing import Dict, List

from src.common.logger import setup_logger

logger = setup_logger(__name__)


class DaemonMode(Enum):
    """Represents the current mode of the daemon."""
    STOPPED = "stopped"          # Not started yet
    IDLE = "idle"                # Running, waiting for an open command
    PLAYING = "playing"          # A session owns an engine context
    TERMINATED = "terminated"    # Shut down, final status published


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


class DaemonStateMachine:
    """
    State machine for daemon modes.

    Valid transitions:
    - STOPPED -> IDLE (startup complete)
    - IDLE -> PLAYING (open command admitted)
    - PLAYING -> IDLE (session torn down)
    - STOPPED/IDLE/PLAYING -> TERMINATED (shutdown)

    PLAYING -> PLAYING is rejected, so a second session can never start
    while one is active.
    """

    # Define valid state transitions
    VALID_TRANSITIONS: Dict[DaemonMode, List[DaemonMode]] = {
        DaemonMode.STOPPED: [DaemonMode.IDLE, DaemonMode.TERMINATED],
        DaemonMode.IDLE: [DaemonMode.PLAYING, DaemonMode.TERMINATED],
        DaemonMode.PLAYING: [DaemonMode.IDLE, DaemonMode.TERMINATED],
        DaemonMode.TERMINATED: [],
    }

    def __init__(self, initial_mode: DaemonMode = DaemonMode.STOPPED):
        """
        Initialize the daemon state machine.

        Args:
            initial_mode: Starting mode (default: STOPPED)
        """
        self._mode = initial_mode
        self._lock = threading.Lock()

        logger.debug("DaemonStateMachine initialized in %s mode", self._mode.name)

    @property
    def mode(self) -> DaemonMode:
        """Get current daemon mode."""
        with self._lock:
            return self._mode

    def transition_to(self, target_mode: DaemonMode) -> bool:
        """
        Attempt to transition to a new mode.

        Args:
            target_mode: Mode to transition to

        Returns:
            True if transition successful, False if already in target mode

        Raises:
            StateTransitionError: If transition is not valid
        """
        with self._lock:
            old_mode = self._mode

            if old_mode == target_mode:
                if target_mode == DaemonMode.PLAYING:
                    raise StateTransitionError("A session is already active")
                logger.debug("Already in %s mode", target_mode.name)
                return False

            # Check if transition is valid
            if target_mode not in self.VALID_TRANSITIONS.get(old_mode, []):
                raise StateTransitionError(
                    f"Invalid transition: {old_mode.name} -> {target_mode.name}"
                )

            self._mode = target_mode

            logger.debug(
                "Mode transition: %s -> %s",
                old_mode.name,
                target_mode.name
            )

        return True

    def to_idle(self) -> bool:
        return self.transition_to(DaemonMode.IDLE)

    def to_playing(self) -> bool:
        """
        Enter PLAYING for a newly admitted session.

        Raises:
            StateTransitionError: If a session is already active or the
                                  daemon is not idle
        """
        return self.transition_to(DaemonMode.PLAYING)

    def to_terminated(self) -> bool:
        """Enter TERMINATED. Returns False if already terminated."""
        return self.transition_to(DaemonMode.TERMINATED)

    @property
    def is_playing(self) -> bool:
        return self.mode == DaemonMode.PLAYING

    @property
    def is_terminated(self) -> bool:
        return self.mode == DaemonMode.TERMINATED

    def __repr__(self) -> str:
        """String representation."""
        return f"DaemonStateMachine(mode={self.mode.name})"
