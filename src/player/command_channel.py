"""
Command channel between client processes and the daemon.

Daemon side: a REP server feeds the single-slot mailbox that the control
loop polls, and reply log entries go out on the PUB socket.
Client side: commands go out over REQ, replies are awaited over SUB.
"""

import time
from typing import Any, Dict, Optional

from src.common.ipc import (
    Message,
    MessagePublisher,
    MessageSubscriber,
    MessageType,
    ReplyServer,
    RequestClient,
)
from src.common.logger import setup_logger
from .commands import Command, CommandMailbox, CommandParseError

logger = setup_logger(__name__)


class ChannelError(Exception):
    """Raised when the daemon cannot be reached or refuses a command."""
    pass


class DaemonChannel:
    """Daemon-side view of the command channel."""

    def __init__(
        self,
        mailbox: Optional[CommandMailbox] = None,
        publisher: Optional[MessagePublisher] = None
    ):
        self.mailbox = mailbox or CommandMailbox()
        self._publisher = publisher

    def attach(self, publisher: Optional[MessagePublisher]) -> None:
        """Attach (or detach, with None) the publisher used for replies."""
        self._publisher = publisher

    def read_latest(self) -> Command:
        """Non-blocking read; consumes the pending command if any."""
        return self.mailbox.read_latest()

    def write(self, command: Command) -> None:
        """Put a command in the mailbox (latest wins)."""
        self.mailbox.write(command)

    def wait(self, timeout: float) -> bool:
        """Block until a command is pending or timeout elapses."""
        return self.mailbox.wait(timeout)

    def reply(self, code: int, message: str) -> None:
        """Write a reply log entry for clients waiting on the channel."""
        if self._publisher is None:
            return
        self._publisher.publish(MessageType.LOG, {"code": int(code), "message": message})


class CommandServer:
    """Transport that accepts client commands into the daemon's mailbox."""

    def __init__(self, host: str, port: int, mailbox: CommandMailbox):
        """
        Initialize the command server (does not bind yet).

        Args:
            host: Interface to bind
            port: Command port
            mailbox: Mailbox accepted commands are written to
        """
        self.host = host
        self.port = port
        self.mailbox = mailbox
        self._server: Optional[ReplyServer] = None

    def start(self) -> None:
        """
        Bind and start serving.

        Raises:
            zmq.ZMQError: If the port cannot be bound
        """
        if self._server is not None:
            return
        self._server = ReplyServer(
            port=self.port,
            service_name="mpv-remote",
            handler=self._handle,
            host=self.host
        )
        self._server.start()

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.stop()
        self._server = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def _handle(self, message: Message) -> Dict[str, Any]:
        """Decode a request into a command and accept it."""
        try:
            command = Command.from_dict(message.data)
        except CommandParseError as e:
            logger.warning("Rejected command from %s: %s", message.sender, e)
            return {"accepted": False, "error": str(e)}

        logger.info("Command from %s: %s", message.sender, command.to_line())
        self.mailbox.write(command)
        return {"accepted": True, "kind": command.kind.value}


class CommandClient:
    """Client-side view of the command channel."""

    def __init__(
        self,
        host: str,
        command_port: int,
        event_port: int,
        request_timeout: float = 1.0,
        service_name: str = "mpv-remote-client"
    ):
        self.host = host
        self.command_port = command_port
        self.event_port = event_port
        self.request_timeout = request_timeout
        self.service_name = service_name
        self._requests: Optional[RequestClient] = None
        self._replies: Optional[MessageSubscriber] = None

    def _reply_subscriber(self) -> MessageSubscriber:
        if self._replies is None:
            self._replies = MessageSubscriber(self.host, self.event_port, self.service_name)
            self._replies.subscribe_to(MessageType.LOG)
        return self._replies

    def write(self, command: Command) -> None:
        """
        Send a command to the daemon.

        Raises:
            ChannelError: If the daemon does not acknowledge the command
        """
        if self._requests is None:
            self._requests = RequestClient(self.host, self.command_port, self.service_name)

        reply = self._requests.send_request(
            MessageType.COMMAND,
            command.to_dict(),
            timeout_ms=int(self.request_timeout * 1000)
        )
        if reply is None:
            raise ChannelError(f"No response from daemon on port {self.command_port}")
        if not reply.data.get("accepted", False):
            raise ChannelError(reply.data.get("error", "Command rejected"))

    def seek_to_end(self) -> None:
        """Skip replies already written so the next wait sees only new ones."""
        discarded = self._reply_subscriber().drain()
        if discarded:
            logger.debug("Skipped %d stale replies", discarded)

    def wait_for_reply_within(self, timeout: float) -> Optional[int]:
        """
        Wait for the daemon's next reply.

        Args:
            timeout: Seconds to wait

        Returns:
            Reply code (0 = success), or None on timeout
        """
        subscriber = self._reply_subscriber()
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            message = subscriber.receive(timeout_ms=int(remaining * 1000))
            if message is not None and message.msg_type == MessageType.LOG:
                logger.debug("Reply: %s", message.data.get("message", ""))
                return int(message.data.get("code", 1))

    def close(self) -> None:
        if self._requests is not None:
            self._requests.close()
            self._requests = None
        if self._replies is not None:
            self._replies.close()
            self._replies = None

    def __enter__(self) -> "CommandClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
