"""
IPC (Inter-Process Communication) using ZeroMQ.
Carries commands from clients to the daemon, and status snapshots and
reply log entries from the daemon back to clients.
"""

import zmq
import json
import time
import threading
from typing import Callable, Optional, Dict, Any
from enum import Enum
from src.common.logger import setup_logger

logger = setup_logger(__name__)


class MessageType(Enum):
    """Types of messages that can be sent between processes."""
    COMMAND = "command"           # Control commands (open, stop, kill, ...)
    STATUS = "status"             # Status snapshots
    LOG = "log"                   # Reply log entries written by the daemon


class Message:
    """Standard message format for IPC."""

    def __init__(
        self,
        msg_type: MessageType,
        data: Dict[str, Any],
        sender: str,
        timestamp: Optional[float] = None
    ):
        """
        Create a message.

        Args:
            msg_type: Type of message
            data: Message payload
            sender: Name of the process that sent the message
            timestamp: Unix timestamp (auto-generated if None)
        """
        self.msg_type = msg_type
        self.data = data
        self.sender = sender
        self.timestamp = timestamp or time.time()

    def to_json(self) -> str:
        """Serialize message to JSON string."""
        return json.dumps({
            "type": self.msg_type.value,
            "data": self.data,
            "sender": self.sender,
            "timestamp": self.timestamp
        })

    @classmethod
    def from_json(cls, json_str: str) -> "Message":
        """Deserialize message from JSON string."""
        obj = json.loads(json_str)
        return cls(
            msg_type=MessageType(obj["type"]),
            data=obj["data"],
            sender=obj["sender"],
            timestamp=obj["timestamp"]
        )

    def __repr__(self) -> str:
        """String representation."""
        return f"Message(type={self.msg_type.value}, sender={self.sender}, data={self.data})"


class MessagePublisher:
    """Publishes messages to subscribers (PUB socket)."""

    def __init__(self, port: int, service_name: str, host: str = "127.0.0.1"):
        """
        Initialize publisher.

        Args:
            port: Port to publish on
            service_name: Name of this process
            host: Interface to bind
        """
        self.port = port
        self.service_name = service_name
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.PUB)
        self.socket.setsockopt(zmq.LINGER, 500)
        self._lock = threading.Lock()
        try:
            self.socket.bind(f"tcp://{host}:{port}")
        except zmq.ZMQError:
            self.socket.close()
            self.context.term()
            raise

        # Give subscribers time to connect
        time.sleep(0.1)

        logger.info(f"Publisher started: {service_name} on port {port}")

    def publish(self, msg_type: MessageType, data: Dict[str, Any]) -> None:
        """
        Publish a message.

        Args:
            msg_type: Type of message
            data: Message payload
        """
        message = Message(msg_type, data, self.service_name)
        json_str = message.to_json()

        # Send message type as topic, then message
        with self._lock:
            self.socket.send_string(f"{msg_type.value} {json_str}")
        logger.debug(f"Published: {message}")

    def close(self) -> None:
        """Close the publisher."""
        self.socket.close()
        self.context.term()
        logger.info(f"Publisher closed: {self.service_name}")


class MessageSubscriber:
    """Subscribes to messages from publishers (SUB socket)."""

    def __init__(self, host: str, port: int, service_name: str):
        """
        Initialize subscriber.

        Args:
            host: Host to connect to (usually 'localhost')
            port: Port to connect to
            service_name: Name of this process
        """
        self.host = host
        self.port = port
        self.service_name = service_name
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.SUB)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.socket.connect(f"tcp://{host}:{port}")

        logger.debug(f"Subscriber started: {service_name} connected to {host}:{port}")

    def subscribe_to(self, msg_type: MessageType) -> None:
        """
        Subscribe to specific message type.

        Args:
            msg_type: Message type to subscribe to
        """
        self.socket.setsockopt_string(zmq.SUBSCRIBE, msg_type.value)
        logger.debug(f"Subscribed to: {msg_type.value}")

    def receive(self, timeout_ms: int = 1000) -> Optional[Message]:
        """
        Receive a message (blocking with timeout).

        Args:
            timeout_ms: Timeout in milliseconds

        Returns:
            Message or None if timeout
        """
        # Set receive timeout
        self.socket.setsockopt(zmq.RCVTIMEO, max(int(timeout_ms), 0))

        try:
            raw_message = self.socket.recv_string()
            # Split topic and message
            parts = raw_message.split(' ', 1)
            if len(parts) == 2:
                json_str = parts[1]
                message = Message.from_json(json_str)
                logger.debug(f"Received: {message}")
                return message
        except zmq.Again:
            # Timeout
            return None
        except (ValueError, KeyError) as e:
            logger.error(f"Error decoding message: {e}")
        return None

    def drain(self, settle_ms: int = 50) -> int:
        """
        Discard every message already queued on the socket.

        Args:
            settle_ms: How long to wait for further messages before stopping

        Returns:
            Number of discarded messages
        """
        discarded = 0
        while self.receive(timeout_ms=settle_ms) is not None:
            discarded += 1
        return discarded

    def close(self) -> None:
        """Close the subscriber."""
        self.socket.close()
        self.context.term()
        logger.debug(f"Subscriber closed: {self.service_name}")


class RequestClient:
    """Sends requests and waits for replies (REQ socket)."""

    def __init__(self, host: str, port: int, service_name: str):
        """
        Initialize request client.

        Args:
            host: Host to connect to
            port: Port to connect to
            service_name: Name of this process
        """
        self.host = host
        self.port = port
        self.service_name = service_name
        self.context = zmq.Context()
        self.socket = self._connect()

        logger.debug(f"Request client started: {service_name} connected to {host}:{port}")

    def _connect(self) -> zmq.Socket:
        socket = self.context.socket(zmq.REQ)
        socket.setsockopt(zmq.LINGER, 0)
        socket.connect(f"tcp://{self.host}:{self.port}")
        return socket

    def send_request(
        self,
        msg_type: MessageType,
        data: Dict[str, Any],
        timeout_ms: int = 5000
    ) -> Optional[Message]:
        """
        Send a request and wait for reply.

        Args:
            msg_type: Type of message
            data: Request payload
            timeout_ms: Timeout in milliseconds

        Returns:
            Reply message or None if timeout
        """
        message = Message(msg_type, data, self.service_name)
        json_str = message.to_json()

        # Send request
        self.socket.send_string(json_str)
        logger.debug(f"Sent request: {message}")

        # Wait for reply
        self.socket.setsockopt(zmq.RCVTIMEO, int(timeout_ms))

        try:
            reply_str = self.socket.recv_string()
            reply = Message.from_json(reply_str)
            logger.debug(f"Received reply: {reply}")
            return reply
        except zmq.Again:
            logger.warning("Request timeout")
            # A REQ socket cannot send again until it has received, so start over
            self.socket.close()
            self.socket = self._connect()
            return None
        except (ValueError, KeyError) as e:
            logger.error(f"Error in request/reply: {e}")
            return None

    def close(self) -> None:
        """Close the client."""
        self.socket.close()
        self.context.term()
        logger.debug(f"Request client closed: {self.service_name}")


class ReplyServer:
    """Receives requests and sends replies (REP socket)."""

    def __init__(
        self,
        port: int,
        service_name: str,
        handler: Callable[[Message], Dict[str, Any]],
        host: str = "127.0.0.1",
        poll_ms: int = 100
    ):
        """
        Initialize reply server.

        Args:
            port: Port to listen on
            service_name: Name of this process
            handler: Function to handle requests and generate replies
            host: Interface to bind
            poll_ms: Poll granularity, bounds how long stop() waits
        """
        self.port = port
        self.service_name = service_name
        self.handler = handler
        self.poll_ms = poll_ms
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.REP)
        self.socket.setsockopt(zmq.LINGER, 0)
        try:
            self.socket.bind(f"tcp://{host}:{port}")
        except zmq.ZMQError:
            self.socket.close()
            self.context.term()
            raise
        self.running = False
        self._closed = False
        self._thread: Optional[threading.Thread] = None

        logger.info(f"Reply server started: {service_name} on port {port}")

    def start(self) -> None:
        """Start listening for requests in a background thread."""
        if self.running:
            return
        self.running = True
        self._thread = threading.Thread(
            target=self._serve,
            name=f"ReplyServer-{self.service_name}",
            daemon=True
        )
        self._thread.start()
        logger.info(f"Reply server listening: {self.service_name}")

    def _serve(self) -> None:
        """Serve requests until stop() is called (runs in background thread)."""
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)

        while self.running:
            try:
                events = dict(poller.poll(self.poll_ms))
            except zmq.ZMQError as e:
                if self.running:
                    logger.error(f"Poll failed: {e}")
                break
            if self.socket not in events:
                continue

            try:
                # Receive request
                request_str = self.socket.recv_string()
                request = Message.from_json(request_str)
                logger.debug(f"Received request: {request}")

                # Handle request
                reply_data = self.handler(request)

                # Send reply
                reply = Message(request.msg_type, reply_data, self.service_name)
                self.socket.send_string(reply.to_json())
                logger.debug(f"Sent reply: {reply}")

            except Exception as e:
                logger.error(f"Error handling request: {e}")
                # Send error reply
                error_reply = Message(
                    MessageType.COMMAND,
                    {"error": str(e)},
                    self.service_name
                )
                self.socket.send_string(error_reply.to_json())

    def stop(self) -> None:
        """Stop the server."""
        if self._closed:
            return
        self._closed = True
        self.running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
        self.socket.close()
        self.context.term()
        logger.info(f"Reply server stopped: {self.service_name}")
