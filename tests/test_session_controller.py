"""Unit tests for the SessionController.

Covers admission, the inner playback loop, load timeouts, the re-open
handoff, and the single-active-context guarantee.
"""

import pytest
from unittest import mock

from src.common.ipc import MessageType
from src.player.commands import Command
from src.player.media_engine import EngineEvent
from src.player.session_controller import SessionEnd
from src.player.state_machine import DaemonMode, StateTransitionError
from src.player.status import MediaType, StatusPublisher


@pytest.fixture
def pushes(status):
    """Record every status snapshot the controller pushes."""
    recorded = []
    original_push = status.push

    def recording_push():
        recorded.append(status.snapshot())
        original_push()

    status.push = recording_push
    return recorded


@pytest.fixture
def replies(channel):
    """Capture reply log entries written to the channel."""
    publisher = mock.MagicMock()
    channel.attach(publisher)
    return publisher


def reply_codes(publisher):
    return [
        c.args[1]["code"]
        for c in publisher.publish.call_args_list
        if c.args[0] == MessageType.LOG
    ]


class TestAdmission:
    """Tests for OPEN admission."""

    def test_missing_local_file_is_not_admitted(self, controller, engine, status, tmp_path):
        """A missing local file reports an error and starts no session."""
        missing = str(tmp_path / "missing.mp4")

        result = controller.open(missing)

        assert result is None
        assert engine.calls == []
        assert status.status.error.code != 0
        assert "does not exist" in status.status.error.message
        assert status.status.running is True
        assert controller.active_session is None

    def test_missing_file_error_is_persisted(self, controller, status_file, tmp_path):
        """The error is pushed to the status file."""
        controller.open(str(tmp_path / "missing.mp4"))

        persisted = StatusPublisher(status_file).pull()
        assert persisted.error.code == 1

    def test_paused_option_set_before_initialize(self, controller, engine, media_file):
        """start_paused stages the pause option before initialize."""
        engine.queue(EngineEvent.FILE_LOADED)
        engine.queue(command=Command.stop())

        controller.open(media_file, start_paused=True)

        names = engine.names()
        pause_index = engine.calls.index(("set_option", "pause", True))
        assert names.index("apply_preset_options") < pause_index < names.index("initialize")
        assert names.index("initialize") < names.index("load_and_play")

    def test_unpaused_open_sets_no_pause_option(self, controller, engine, media_file):
        engine.queue(command=Command.stop())

        controller.open(media_file)

        assert not any(c[0] == "set_option" for c in engine.calls)

    def test_environment_placeholders_are_expanded(
        self, controller, engine, media_file, tmp_path, monkeypatch
    ):
        """$VARS in the url are substituted before the existence check."""
        monkeypatch.setenv("MPVR_TEST_MEDIA", str(tmp_path))
        engine.queue(command=Command.stop())

        controller.open("$MPVR_TEST_MEDIA/real.mp4")

        assert ("load_and_play", media_file) in engine.calls

    def test_http_url_skips_existence_check(self, controller, engine):
        engine.queue(command=Command.stop())

        result = controller.open("https://example.com/live.m3u8")

        assert result == SessionEnd.STOPPED
        assert ("load_and_play", "https://example.com/live.m3u8") in engine.calls

    @pytest.mark.parametrize("method", ["apply_preset_options", "initialize", "load_and_play"])
    def test_engine_failure_terminates_context(self, controller, engine, status, media_file, method):
        """An engine failure aborts the open and terminates the partial context."""
        engine.fail(method, code=-4, message="option not found")

        result = controller.open(media_file)

        assert result is None
        assert engine.names()[-1] == "terminate"
        assert engine.live == 0
        assert status.status.error.code == -4
        assert status.status.error.message.startswith("MPV API error")
        assert controller.state_machine.mode == DaemonMode.IDLE

    def test_create_failure_has_nothing_to_terminate(self, controller, engine, status, media_file):
        engine.fail("create", code=-1)

        assert controller.open(media_file) is None
        assert engine.names() == ["create", "terminate_noop"]
        assert status.status.error.code == -1

    def test_success_publishes_url_and_clears_error(self, controller, engine, status, pushes, media_file):
        status.set_error(7, "old error")
        engine.queue(command=Command.stop())

        controller.open(media_file)

        first = pushes[0]
        assert first["url"] == media_file
        assert first["media_type"] == MediaType.LOCAL.value
        assert first["error"] == {"code": 0, "message": ""}

    def test_second_admission_while_active_is_rejected(self, controller, engine, media_file):
        """Only one session may be active at a time."""
        controller._admit(media_file, False)

        with pytest.raises(StateTransitionError):
            controller.open(media_file)

        assert engine.names().count("create") == 1


class TestInnerLoop:
    """Tests for the playback loop."""

    def test_stop_ends_session_cleanly(self, controller, engine, status, pushes, media_file):
        """Scenario: paused open, load, stop."""
        engine.queue(EngineEvent.FILE_LOADED)
        engine.queue(EngineEvent.NONE, Command.stop())

        result = controller.open(media_file, start_paused=True)

        assert result == SessionEnd.STOPPED
        assert any(p["loaded"] and p["paused"] for p in pushes)
        assert pushes[-1]["loaded"] is False
        assert status.status.error.code == 0
        assert status.status.running is True
        assert controller.active_session is None
        assert controller.state_machine.mode == DaemonMode.IDLE
        assert engine.live == 0

    def test_file_ended_finishes_session(self, controller, engine):
        engine.queue(EngineEvent.FILE_LOADED)
        engine.queue(EngineEvent.FILE_ENDED)

        assert controller.open("http://example.com/a.mp3") == SessionEnd.FINISHED
        assert engine.live == 0

    def test_engine_shutdown_finishes_session(self, controller, engine):
        engine.queue(EngineEvent.SHUTDOWN)

        assert controller.open("http://example.com/a.mp3") == SessionEnd.FINISHED

    def test_kill_ends_session_and_flags(self, controller, engine):
        engine.queue(EngineEvent.FILE_LOADED)
        engine.queue(command=Command.kill())

        assert controller.open("http://example.com/a.mp3") == SessionEnd.KILLED
        assert controller.kill_requested is True
        assert engine.live == 0

    def test_pause_and_resume_drive_engine(self, controller, engine, status):
        engine.queue(EngineEvent.FILE_LOADED, Command.pause())
        engine.queue(EngineEvent.PAUSED, Command.resume())
        engine.queue(EngineEvent.RESUMED, Command.stop())

        controller.open("http://example.com/a.mp3")

        assert ("set_paused", True) in engine.calls
        assert ("set_paused", False) in engine.calls

    def test_engine_command_replies_success(self, controller, engine, replies):
        engine.queue(EngineEvent.FILE_LOADED, Command.engine(["seek", "10"]))
        engine.queue(command=Command.stop())

        controller.open("http://example.com/a.mp3")

        assert ("command", ("seek", "10")) in engine.calls
        assert reply_codes(replies) == [0]

    def test_engine_command_failure_is_not_fatal(self, controller, engine, status, replies):
        engine.fail("command", code=-12, message="invalid parameter")
        engine.queue(EngineEvent.FILE_LOADED, Command.engine(["bogus"]))
        engine.queue(command=Command.stop())

        result = controller.open("http://example.com/a.mp3")

        assert result == SessionEnd.STOPPED
        assert reply_codes(replies) == [-12]
        assert status.status.error.code == -12


class TestLoadTimeout:
    """Tests for the load-timeout policy."""

    def test_local_media_aborts_just_past_five_seconds(self, controller, clock, status, media_file):
        """Each poll advances 0.25s; the abort comes on the first poll past 5s."""
        start = clock.now

        result = controller.open(media_file)

        assert result == SessionEnd.LOAD_TIMEOUT
        assert clock.now - start == 5.25
        assert status.status.error.code == 1
        assert "Error loading media" in status.status.error.message

    def test_local_media_survives_exactly_five_seconds(self, controller, engine, media_file):
        for _ in range(20):
            engine.queue(EngineEvent.NONE)
        engine.queue(EngineEvent.FILE_LOADED)
        engine.queue(command=Command.stop())

        assert controller.open(media_file) == SessionEnd.STOPPED

    def test_http_media_gets_thirty_seconds(self, controller, clock):
        start = clock.now

        result = controller.open("http://example.com/slow-stream")

        assert result == SessionEnd.LOAD_TIMEOUT
        assert clock.now - start == 30.25

    def test_loaded_media_never_times_out(self, controller, engine, clock, media_file):
        engine.queue(EngineEvent.FILE_LOADED)
        for _ in range(100):
            engine.queue(EngineEvent.NONE)
        engine.queue(command=Command.stop())
        start = clock.now

        assert controller.open(media_file) == SessionEnd.STOPPED
        assert clock.now - start > 25.0

    def test_timeout_terminates_context(self, controller, engine, media_file):
        controller.open(media_file)

        assert engine.names()[-1] == "terminate"
        assert engine.live == 0


class TestReopenHandoff:
    """Tests for OPEN received during a session."""

    def test_open_during_session_hands_off(self, controller, engine, channel, pushes, media_file):
        second = "http://example.com/next.mp4"
        engine.queue(EngineEvent.FILE_LOADED)
        engine.queue(command=Command.open(second, start_paused=True))

        result = controller.open(media_file)

        assert result == SessionEnd.REOPEN
        assert engine.live == 0
        assert pushes[-1]["loaded"] is False
        assert channel.mailbox.pending

        engine.queue(EngineEvent.FILE_LOADED)
        engine.queue(EngineEvent.FILE_ENDED)
        controller.poll_once()

        names = engine.names()
        first_terminate = names.index("terminate")
        second_create = names.index("create", 1)
        assert first_terminate < second_create
        assert ("load_and_play", second) in engine.calls
        assert ("set_option", "pause", True) in engine.calls
        assert engine.max_live == 1

    def test_create_and_terminate_alternate(self, controller, engine, channel, media_file):
        """Across many hand-offs at most one context is ever alive."""
        urls = [f"http://example.com/{i}.mp4" for i in range(5)]
        for url in urls:
            engine.queue(command=Command.open(url))
        engine.queue(command=Command.stop())

        controller.open(media_file)
        while channel.mailbox.pending:
            controller.poll_once()

        lifecycle = [n for n in engine.names() if n in ("create", "terminate")]
        assert lifecycle == ["create", "terminate"] * 6
        assert engine.max_live == 1


class TestOuterLoop:
    """Tests for idle command handling."""

    def test_kill_while_idle(self, controller, channel):
        channel.write(Command.kill())

        controller.poll_once()

        assert controller.kill_requested is True

    def test_stop_while_idle_is_ignored(self, controller, channel, engine):
        channel.write(Command.stop())

        controller.poll_once()

        assert controller.kill_requested is False
        assert engine.calls == []

    def test_engine_command_while_idle_replies_error(self, controller, channel, replies):
        channel.write(Command.engine(["seek", "5"]))

        controller.poll_once()

        assert reply_codes(replies) == [1]

    def test_run_exits_after_kill(self, controller, channel, engine):
        engine.queue(EngineEvent.FILE_LOADED)
        engine.queue(command=Command.kill())
        channel.write(Command.open("http://example.com/a.mp4"))

        controller.run()

        assert controller.kill_requested is True
        assert engine.live == 0

    def test_latest_command_wins(self, controller, channel, engine, media_file):
        """An unread OPEN replaced by STOP is never admitted."""
        channel.write(Command.open(media_file))
        channel.write(Command.stop())

        controller.poll_once()

        assert engine.calls == []


class TestTerminateActive:
    """Tests for terminate_active (used by daemon shutdown)."""

    def test_terminate_active_is_idempotent(self, controller, engine, media_file):
        controller._admit(media_file, False)

        controller.terminate_active()
        controller.terminate_active()

        assert engine.names().count("terminate") == 1
        assert engine.names().count("terminate_noop") == 1

    def test_terminate_active_reaches_context_under_admission(self, controller, engine, media_file):
        """A context still being loaded is terminated once, and admission is abandoned."""
        engine.hook("load_and_play", controller.terminate_active)
        engine.fail("load_and_play")

        assert controller._admit(media_file, False) is None

        assert engine.live == 0
        assert engine.names().count("terminate") == 1
        assert engine.names().count("terminate_noop") == 1
        assert controller.state_machine.mode == DaemonMode.IDLE

    def test_teardown_after_shutdown_does_not_publish(self, controller, engine, pushes, media_file):
        engine.hook("wait_event", controller.state_machine.to_terminated)
        engine.queue(EngineEvent.SHUTDOWN)

        controller.open(media_file)

        assert len(pushes) == 1  # admission only
        assert engine.live == 0
        assert controller.active_session is None
        assert controller.state_machine.is_terminated is True

    def test_terminate_active_without_session(self, controller, engine):
        controller.terminate_active()

        assert engine.calls == []


class TestPublishFailures:
    """A status file that cannot be written does not stop the loop."""

    def test_publish_failure_is_logged(self, engine, channel, clock, tmp_path, media_file):
        from src.player.session_controller import SessionController

        broken = StatusPublisher(tmp_path)  # a directory, cannot be replaced by a file
        ctl = SessionController(engine, channel, broken, idle_interval=0.0, clock=clock)
        engine.queue(EngineEvent.FILE_LOADED)
        engine.queue(command=Command.stop())

        assert ctl.open(media_file) == SessionEnd.STOPPED
