"""
Pytest fixtures for MPV Remote tests.

Provides a scripted fake media engine, a manual clock, and a session
controller wired to a status file in a temporary directory.
"""

import sys
from collections import deque
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.player.command_channel import DaemonChannel
from src.player.commands import Command
from src.player.media_engine import EngineContext, EngineError, EngineEvent
from src.player.session_controller import SessionController
from src.player.state_machine import DaemonMode, DaemonStateMachine
from src.player.status import MediaType, StatusPublisher


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine:
    """
    Scripted stand-in for MpvEngine.

    Each wait_event() advances the clock by `step` and pops the next
    (event, command) pair from `script`; the command, if any, is written to
    the channel as if a client had sent it during the wait.
    """

    def __init__(self, clock: FakeClock, channel: DaemonChannel, step: float = 0.25):
        self.clock = clock
        self.channel = channel
        self.step = step
        self.script = deque()
        self.calls = []
        self.failures = {}
        self.hooks = {}
        self.live = 0
        self.max_live = 0
        self.contexts = []

    def queue(self, event: EngineEvent = EngineEvent.NONE, command: Command = None) -> None:
        self.script.append((event, command))

    def fail(self, method: str, code: int = -6, message: str = "failure") -> None:
        self.failures[method] = EngineError(code, message)

    def hook(self, method: str, fn) -> None:
        """Run fn() the next time method is called, before it returns."""
        self.hooks[method] = fn

    def _maybe_fail(self, method: str) -> None:
        if method in self.hooks:
            self.hooks.pop(method)()
        if method in self.failures:
            raise self.failures[method]

    def create(self) -> EngineContext:
        self.calls.append(("create",))
        self._maybe_fail("create")
        ctx = EngineContext()
        self.contexts.append(ctx)
        self.live += 1
        self.max_live = max(self.max_live, self.live)
        return ctx

    def apply_preset_options(self, ctx):
        self.calls.append(("apply_preset_options",))
        self._maybe_fail("apply_preset_options")

    def set_option(self, ctx, name, value):
        self.calls.append(("set_option", name, value))
        self._maybe_fail("set_option")
        ctx.options[name] = value

    def initialize(self, ctx):
        self.calls.append(("initialize",))
        self._maybe_fail("initialize")
        ctx.player = "fake-player"

    def load_and_play(self, ctx, url):
        self.calls.append(("load_and_play", url))
        self._maybe_fail("load_and_play")

    def wait_event(self, ctx, timeout):
        assert not ctx.terminated, "wait_event on a terminated context"
        if "wait_event" in self.hooks:
            self.hooks.pop("wait_event")()
        self.clock.advance(self.step)
        if not self.script:
            return EngineEvent.NONE
        event, command = self.script.popleft()
        if command is not None:
            self.channel.write(command)
        return event

    def set_paused(self, ctx, paused):
        self.calls.append(("set_paused", paused))
        self._maybe_fail("set_paused")

    def command(self, ctx, args):
        self.calls.append(("command", tuple(args)))
        self._maybe_fail("command")

    def terminate(self, ctx):
        if ctx is None or ctx.terminated:
            self.calls.append(("terminate_noop",))
            return
        self.calls.append(("terminate",))
        ctx.terminated = True
        ctx.player = None
        self.live -= 1

    def names(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return DaemonChannel()


@pytest.fixture
def status_file(tmp_path):
    return tmp_path / "status.json"


@pytest.fixture
def status(status_file):
    publisher = StatusPublisher(status_file)
    publisher.set_running(True)
    return publisher


@pytest.fixture
def engine(clock, channel):
    return FakeEngine(clock, channel)


@pytest.fixture
def controller(engine, channel, status, clock):
    return SessionController(
        engine=engine,
        channel=channel,
        status=status,
        state_machine=DaemonStateMachine(initial_mode=DaemonMode.IDLE),
        engine_wait=0.1,
        idle_interval=0.0,
        load_timeouts={MediaType.LOCAL: 5.0, MediaType.HTTP: 30.0},
        clock=clock
    )


@pytest.fixture
def media_file(tmp_path):
    path = tmp_path / "real.mp4"
    path.write_bytes(b"not really a video")
    return str(path)
