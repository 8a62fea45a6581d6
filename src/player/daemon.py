"""
Daemon lifecycle for MPV Remote.

PlayerDaemon enforces a single running instance (with forced takeover),
opens the IPC transport, runs the session controller and guarantees that
every exit path, signals included, leaves a terminated status behind.
The module-level functions are the short-lived client side: kill the
daemon, send it a command, read its status.
"""

import signal
import sys
import time
from enum import Enum
from typing import Dict, Optional

import zmq

from src.common.config import Config
from src.common.ipc import MessagePublisher
from src.common.logger import setup_logger
from .command_channel import ChannelError, CommandClient, CommandServer, DaemonChannel
from .commands import Command
from .media_engine import MpvEngine
from .session_controller import SessionController
from .state_machine import DaemonStateMachine
from .status import MediaType, Status, StatusPublishError, StatusPublisher

logger = setup_logger(__name__)


class KillResult(Enum):
    """Outcome of a client kill request."""
    KILLED = "killed"
    NOT_RUNNING = "not_running"
    TIMED_OUT = "timed_out"


def _client(config: Config) -> CommandClient:
    return CommandClient(
        host=config.ipc_host,
        command_port=config.command_port,
        event_port=config.event_port,
        request_timeout=float(config.get('ipc.request_timeout', 1.0))
    )


class PlayerDaemon:
    """
    Single-instance MPV Remote daemon.

    Startup flow:
    1. Read the persisted status; refuse (or force a takeover) if running
    2. Open the command and event transport
    3. Publish a fresh running status
    4. Install signal handlers and run the session controller
    """

    TRANSPORT_RETRY_INTERVAL = 0.1  # seconds between bind attempts on takeover

    def __init__(
        self,
        config: Config,
        engine: Optional[MpvEngine] = None,
        status: Optional[StatusPublisher] = None,
        channel: Optional[DaemonChannel] = None
    ):
        """
        Initialize the daemon.

        Args:
            config: Loaded configuration
            engine: Media engine adapter (MpvEngine with configured presets if None)
            status: Status publisher (backed by status.file if None)
            channel: Daemon-side command channel (fresh mailbox if None)
        """
        self.config = config
        self.engine = engine or MpvEngine(config.engine_options)
        self.status = status or StatusPublisher(config.status_file)
        self.channel = channel or DaemonChannel()
        self.state_machine = DaemonStateMachine()
        self.controller = SessionController(
            engine=self.engine,
            channel=self.channel,
            status=self.status,
            state_machine=self.state_machine,
            engine_wait=float(config.get('playback.engine_wait', 0.1)),
            idle_interval=float(config.get('playback.idle_interval', 1.0)),
            load_timeouts={
                MediaType.LOCAL: float(config.get('playback.load_timeout_local', 5.0)),
                MediaType.HTTP: float(config.get('playback.load_timeout_http', 30.0)),
            }
        )

        self._publisher: Optional[MessagePublisher] = None
        self._server: Optional[CommandServer] = None
        self._shut_down = False
        self._previous_handlers: Dict[int, object] = {}

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    def start(self, force: bool = False) -> int:
        """
        Run the daemon until it is killed (blocking).

        Args:
            force: Take over from an instance that is already running

        Returns:
            Process exit status (0 = success)
        """
        self.status.pull()
        if self.status.status.running:
            if not force:
                logger.error("Another MPV remote player process is already running")
                return 1
            logger.warning("Force start attempting to kill blocking processes")
            self._kill_existing()

        # A replaced instance may still be releasing its ports
        retry_for = float(self.config.get('daemon.kill_timeout', 1.5)) if force else 0.0
        if not self._open_transport_within(retry_for):
            return 1

        # Reset status
        self.status.set_default()
        self.status.set_running(True)
        try:
            self.status.push()
        except StatusPublishError as e:
            logger.error("%s", e)
            self._close_transport()
            return 1

        # Drop anything written before we were listening
        self.channel.read_latest()

        self._install_signal_handlers()
        self.state_machine.to_idle()
        logger.info("Running MPV remote player")

        try:
            self.controller.run()
        finally:
            self.shutdown()
        return 0

    def _kill_existing(self) -> None:
        """Ask a running instance to exit and give it kill_timeout to confirm."""
        timeout = float(self.config.get('daemon.kill_timeout', 1.5))
        with _client(self.config) as client:
            client.seek_to_end()
            try:
                client.write(Command.kill())
            except ChannelError as e:
                logger.warning("Running instance did not answer: %s", e)
                return
            if client.wait_for_reply_within(timeout) is None:
                logger.warning("Running instance did not confirm the kill within %.1fs", timeout)

    def _open_transport(self) -> None:
        host = self.config.ipc_host
        self._publisher = MessagePublisher(self.config.event_port, "mpv-remote", host=host)
        self.status.attach(self._publisher)
        self.channel.attach(self._publisher)

        self._server = CommandServer(host, self.config.command_port, self.channel.mailbox)
        self._server.start()

    def _open_transport_within(self, retry_for: float) -> bool:
        """
        Open the transport, retrying binds for up to retry_for seconds.

        Returns:
            True if the transport is open
        """
        deadline = time.monotonic() + retry_for
        while True:
            try:
                self._open_transport()
                return True
            except zmq.ZMQError as e:
                self._close_transport()
                if time.monotonic() >= deadline:
                    logger.error("Failed to run IPC services: %s", e)
                    return False
                logger.debug("IPC ports busy, retrying: %s", e)
                time.sleep(self.TRANSPORT_RETRY_INTERVAL)

    def _close_transport(self) -> None:
        if self._server is not None:
            self._server.stop()
            self._server = None
        self.status.attach(None)
        self.channel.attach(None)
        if self._publisher is not None:
            self._publisher.close()
            self._publisher = None

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def shutdown(self) -> None:
        """
        Tear everything down and publish the terminated status.

        Idempotent: the loop exit path and a signal handler may both call it.
        """
        if self._shut_down:
            return
        self._shut_down = True

        self.controller.request_kill()
        self.controller.terminate_active()

        # No new commands; the command port is free before the kill is confirmed
        if self._server is not None:
            self._server.stop()
            self._server = None

        self.status.set_default()
        try:
            self.status.push()
        except StatusPublishError as e:
            logger.error("Final status publish failed: %s", e)
        # Kill confirmation for a waiting client
        self.channel.reply(0, "Stopped MPV remote player")

        self.state_machine.to_terminated()
        self._close_transport()
        self._restore_signal_handlers()
        logger.info("Stopped MPV remote player")

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def _install_signal_handlers(self) -> None:
        signums = [signal.SIGINT, signal.SIGTERM]
        if hasattr(signal, 'SIGHUP'):
            signums.append(signal.SIGHUP)
        for signum in signums:
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _signal_handler(self, signum: int, frame) -> None:
        """Handle system signals for graceful shutdown."""
        sig_name = signal.Signals(signum).name
        logger.info("Received signal: %s", sig_name)
        self.controller.request_kill()
        self.shutdown()
        sys.exit(0)


# -----------------------------------------------------------------------------
# Client side
# -----------------------------------------------------------------------------

def read_status(config: Config) -> Status:
    """Read the daemon's persisted status."""
    return StatusPublisher(config.status_file).pull()


def request_kill(config: Config, status: Optional[StatusPublisher] = None) -> KillResult:
    """
    Ask the running daemon to exit and wait for its confirmation.

    If no confirmation arrives within daemon.kill_timeout the status is reset
    anyway so a wedged daemon does not block the next start.
    """
    status = status or StatusPublisher(config.status_file)
    status.pull()
    if not status.status.running:
        return KillResult.NOT_RUNNING

    timeout = float(config.get('daemon.kill_timeout', 1.5))
    with _client(config) as client:
        client.seek_to_end()
        try:
            client.write(Command.kill())
            code = client.wait_for_reply_within(timeout)
        except ChannelError as e:
            logger.warning("Kill request failed: %s", e)
            code = None

    if code == 0:
        return KillResult.KILLED

    status.set_default()
    try:
        status.push()
    except StatusPublishError as e:
        logger.error("%s", e)
    return KillResult.TIMED_OUT


def send_command(config: Config, command: Command, wait_reply: bool = False) -> int:
    """
    Send one command to the daemon.

    Args:
        config: Loaded configuration
        command: Command to send
        wait_reply: Wait up to daemon.command_timeout for the daemon's reply

    Returns:
        0 on success, 1 on failure
    """
    timeout = float(config.get('daemon.command_timeout', 1.0))
    with _client(config) as client:
        if wait_reply:
            client.seek_to_end()
        try:
            client.write(command)
        except ChannelError as e:
            logger.error("%s", e)
            return 1
        if not wait_reply:
            return 0
        code = client.wait_for_reply_within(timeout)

    if code is None:
        logger.error("No reply from daemon within %.1fs", timeout)
        return 1
    return 0 if code == 0 else 1
