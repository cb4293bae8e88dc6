"""Tests for relayd.py — PID file helpers, binding load, event loop wiring,
channel reader, and the channel/backend factories."""

import asyncio
import json
import os
from unittest.mock import patch

import pytest
from conftest import FakeBackend, FakeChannel, make_event

from backends import create_backend
from backends.codex_exec import CodexExecBackend
from backends.openai_conversations import OpenAIConversationsBackend
from channels import create_channel
from channels.cli import CLIChannel
from channels.feishu import FeishuChannel
from config import Config
from relayd import (
    RelayDaemon,
    _check_pid_file,
    _remove_pid_file,
    _write_pid_file,
    load_bindings,
)
from router import EventRouter
from store import SessionStore


def _config(tmp_path, **sections):
    data = {
        "channel": {"type": "cli"},
        "paths": {
            "state_dir": str(tmp_path / "state"),
            "session_file": str(tmp_path / "state" / "bot_sessions.json"),
            "log_file": str(tmp_path / "state" / "relayd.log"),
        },
    }
    data.update(sections)
    return Config(data, config_dir=tmp_path)


def _daemon_with_fakes(tmp_path, backend=None, channel=None):
    daemon = RelayDaemon(_config(tmp_path))
    daemon.store = SessionStore(daemon.config.session_file)
    daemon.channel = channel or FakeChannel()
    daemon.router = EventRouter(
        store=daemon.store,
        backend=backend or FakeBackend(),
        channel=daemon.channel,
        status=daemon.status,
    )
    return daemon


# ─── PID File ────────────────────────────────────────────────────

class TestPIDFile:
    def test_write_creates_file_with_pid(self, tmp_path):
        pid_file = tmp_path / "deep" / "relayd.pid"
        _write_pid_file(pid_file)
        assert int(pid_file.read_text().strip()) == os.getpid()

    def test_remove_missing_no_error(self, tmp_path):
        _remove_pid_file(tmp_path / "nonexistent.pid")

    def test_check_stale_pid_removes_file(self, tmp_path):
        pid_file = tmp_path / "relayd.pid"
        # A PID that (almost certainly) doesn't exist
        pid_file.write_text("999999999")
        _check_pid_file(pid_file)
        assert not pid_file.exists()

    def test_check_garbage_pid_removes_file(self, tmp_path):
        pid_file = tmp_path / "relayd.pid"
        pid_file.write_text("not-a-pid")
        _check_pid_file(pid_file)
        assert not pid_file.exists()

    def test_live_pid_exits(self, tmp_path):
        pid_file = tmp_path / "relayd.pid"
        pid_file.write_text(str(os.getpid()))
        with pytest.raises(SystemExit):
            _check_pid_file(pid_file)

    def test_check_pid_permission_error_exits(self, tmp_path):
        pid_file = tmp_path / "relayd.pid"
        pid_file.write_text("12345")
        with patch("os.kill", side_effect=PermissionError("Operation not permitted")):
            with pytest.raises(SystemExit):
                _check_pid_file(pid_file)


# ─── Startup State ───────────────────────────────────────────────

class TestLoadBindings:
    def test_loads_existing(self, session_path):
        session_path.parent.mkdir(parents=True)
        session_path.write_text(json.dumps({"c1": "t-1"}))
        assert load_bindings(SessionStore(session_path)) == {"c1": "t-1"}

    def test_corrupt_file_quarantined(self, session_path):
        session_path.parent.mkdir(parents=True)
        session_path.write_text("{truncated")
        assert load_bindings(SessionStore(session_path)) == {}
        assert not session_path.exists()
        moved = list(session_path.parent.glob("bot_sessions.json.corrupt-*"))
        assert len(moved) == 1
        assert moved[0].read_text() == "{truncated"

    def test_init_router_from_config(self, tmp_path, clean_env):
        daemon = RelayDaemon(_config(tmp_path))
        daemon._init_router()
        assert isinstance(daemon.channel, CLIChannel)
        assert isinstance(daemon.router.resolver.backend, CodexExecBackend)
        assert daemon.router.bindings == {}
        assert daemon.store.path == daemon.config.session_file


# ─── Event Loop ──────────────────────────────────────────────────

class TestEventLoop:
    @pytest.mark.asyncio
    async def test_events_dispatched_until_sentinel(self, tmp_path, clean_env):
        daemon = _daemon_with_fakes(tmp_path)
        await daemon.queue.put(make_event("e1", "c1", "one"))
        await daemon.queue.put(make_event("e2", "c2", "two"))
        await daemon.queue.put(None)

        await daemon._event_loop()

        assert daemon.running is False
        assert sorted(daemon.channel.replies) == [("e1", "echo: one"), ("e2", "echo: two")]
        assert daemon._tasks == set()

    @pytest.mark.asyncio
    async def test_duplicate_in_queue_handled_once(self, tmp_path, clean_env):
        daemon = _daemon_with_fakes(tmp_path)
        event = make_event("e1", "c1", "one")
        await daemon.queue.put(event)
        await daemon.queue.put(event)
        await daemon.queue.put(None)
        await daemon._event_loop()
        assert daemon.channel.replies == [("e1", "echo: one")]

    @pytest.mark.asyncio
    async def test_slow_chat_does_not_block_other_chats(self, tmp_path, clean_env):
        gate = asyncio.Event()

        class GatedBackend(FakeBackend):
            held = False

            async def start_thread(self, options):
                # First caller (the slow chat) blocks until released
                if not self.held:
                    self.held = True
                    await gate.wait()
                return await super().start_thread(options)

        daemon = _daemon_with_fakes(tmp_path, backend=GatedBackend())
        await daemon.queue.put(make_event("e1", "slow", "one"))
        await daemon.queue.put(make_event("e2", "fast", "two"))
        loop_task = asyncio.create_task(daemon._event_loop())

        for _ in range(100):
            if daemon.channel.replies:
                break
            await asyncio.sleep(0.01)
        assert daemon.channel.replies == [("e2", "echo: two")]

        gate.set()
        await daemon.queue.put(None)
        await loop_task
        assert len(daemon.channel.replies) == 2

    @pytest.mark.asyncio
    async def test_channel_reader_forwards_then_signals_end(self, tmp_path, clean_env):
        class ScriptedChannel(FakeChannel):
            async def receive(self):
                yield make_event("e1")
                yield make_event("e2")

        daemon = _daemon_with_fakes(tmp_path, channel=ScriptedChannel())
        await daemon._channel_reader()
        items = [daemon.queue.get_nowait() for _ in range(3)]
        assert [i.id if i else None for i in items] == ["e1", "e2", None]

    @pytest.mark.asyncio
    async def test_build_status(self, tmp_path, clean_env):
        daemon = _daemon_with_fakes(tmp_path)
        await daemon.router.handle(make_event("e1", "c1", "hi"))
        status = daemon._build_status()
        assert status["pid"] == os.getpid()
        assert status["channel"] == "cli"
        assert status["backend"] == "codex-exec"
        assert status["live_threads"] == 1
        assert status["messages"] == 1
        assert status["sessions"] == 1


# ─── Factories ───────────────────────────────────────────────────

class TestFactories:
    def test_cli_channel(self, tmp_path, clean_env):
        assert isinstance(create_channel(_config(tmp_path)), CLIChannel)

    def test_feishu_channel(self, minimal_toml_data, clean_env):
        minimal_toml_data["channel"]["feishu"]["webhook_port"] = 9100
        ch = create_channel(Config(minimal_toml_data))
        assert isinstance(ch, FeishuChannel)
        assert ch.app_id == "cli_test"
        assert ch.verification_token == "verify-me"
        assert ch.webhook_port == 9100
        assert ch.webhook_path == "/feishu/events"

    def test_codex_backend(self, minimal_toml_data, clean_env):
        backend = create_backend(Config(minimal_toml_data))
        assert isinstance(backend, CodexExecBackend)
        assert backend.turn_timeout == 300.0

    def test_openai_backend(self, tmp_path, clean_env):
        cfg = _config(tmp_path, backend={
            "type": "openai-conversations",
            "openai": {"api_key": "sk-test", "model": "gpt-5-mini"},
        })
        backend = create_backend(cfg)
        assert isinstance(backend, OpenAIConversationsBackend)
        assert backend.model == "gpt-5-mini"


# ─── CLI Channel ─────────────────────────────────────────────────

class TestCLIChannel:
    @pytest.mark.asyncio
    async def test_receive_until_eof(self):
        ch = CLIChannel()
        with patch("builtins.input", side_effect=["hello", "   ", "bye", EOFError]):
            events = [e async for e in ch.receive()]
        assert [e.text for e in events] == ["hello", "bye"]
        assert all(e.chat_id == "cli" for e in events)
        assert events[0].id != events[1].id

    @pytest.mark.asyncio
    async def test_reply_prints(self, capsys):
        await CLIChannel().reply("cli-1", "answer")
        assert "Codex> answer" in capsys.readouterr().out
