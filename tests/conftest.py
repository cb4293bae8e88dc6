"""Shared fixtures for the relayd test suite.

All tests use temporary directories and fake collaborators.
Nothing touches ~/.relayd/, ~/.codex/ or the network.
"""

import sys
import time
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from backends import ResumeError, ThreadOptions, TurnResult  # noqa: E402
from channels import ChatEvent, DispatchError  # noqa: E402


class FakeThread:
    """Backend thread that echoes or replays scripted replies."""

    def __init__(self, backend, thread_id=None, assign_id=None):
        self.backend = backend
        self._id = thread_id
        self._assign_id = assign_id
        self.inputs: list[str] = []

    @property
    def id(self):
        return self._id

    async def run(self, text):
        self.inputs.append(text)
        self.backend.run_calls.append((self._id, text))
        if self.backend.run_error is not None:
            raise self.backend.run_error
        if self._id is None:
            self._id = self._assign_id
        reply = self.backend.reply if self.backend.reply is not None else f"echo: {text}"
        return TurnResult(final_response=reply)


class FakeBackend:
    """In-memory AgentBackend with call recording.

    New threads get ids "t-new", "t-new-2", ... assigned on first run,
    like the Codex CLI does.
    """

    def __init__(self, resumable=None, reply=None, run_error=None):
        self.resumable = set(resumable or ())
        self.reply = reply
        self.run_error = run_error
        self.start_calls: list[ThreadOptions] = []
        self.resume_calls: list[str] = []
        self.run_calls: list[tuple] = []

    async def start_thread(self, options):
        self.start_calls.append(options)
        n = len(self.start_calls)
        return FakeThread(self, assign_id="t-new" if n == 1 else f"t-new-{n}")

    async def resume_thread(self, thread_id, options):
        self.resume_calls.append(thread_id)
        if thread_id not in self.resumable:
            raise ResumeError(f"thread {thread_id} not found")
        return FakeThread(self, thread_id=thread_id)


class FakeChannel:
    def __init__(self, fail=False):
        self.replies: list[tuple[str, str]] = []
        self.fail = fail

    async def reply(self, message_id, text):
        if self.fail:
            raise DispatchError("channel down")
        self.replies.append((message_id, text))


def make_event(event_id="e1", chat_id="c1", text="hi", created_at=None, type="text"):
    return ChatEvent(
        id=event_id,
        chat_id=chat_id,
        text=text,
        created_at=time.time() if created_at is None else created_at,
        type=type,
        source="test",
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def session_path(tmp_path):
    """Session file path inside a temp state dir (file not created)."""
    return tmp_path / "state" / "bot_sessions.json"


@pytest.fixture
def minimal_toml_data():
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "channel": {
            "type": "feishu",
            "feishu": {
                "app_id": "cli_test",
                "app_secret": "secret",
                "verification_token": "verify-me",
            },
        },
        "backend": {
            "type": "codex-exec",
            "codex": {"binary": "codex", "turn_timeout": 300},
        },
        "thread": {
            "sandbox_mode": "read-only",
            "reasoning_effort": "high",
        },
        "paths": {
            "state_dir": "/tmp/test-relayd",
            "session_file": "/tmp/test-relayd/bot_sessions.json",
            "log_file": "/tmp/test-relayd/relayd.log",
        },
    }


@pytest.fixture
def clean_env(monkeypatch):
    """Strip env vars that Config would pick up as overrides."""
    from config import _ENV_OVERRIDES
    for name in _ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch

