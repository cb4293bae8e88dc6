"""Codex CLI backend — one `codex exec --json` subprocess per turn.

A thread is created implicitly by the first turn: the CLI emits a
`thread.started` event carrying the new thread id. Later turns pass
`resume <id>`. Threads are persisted by the CLI as rollout files under
$CODEX_HOME/sessions, which is what `resume_thread` checks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import signal
from pathlib import Path

from . import BackendError, ResumeError, ThreadOptions, TurnResult, Usage

log = logging.getLogger(__name__)

_THREAD_ID_RE = re.compile(r"^[0-9A-Za-z][0-9A-Za-z-]*$")

# Relay secrets never reach the child process
_SECRET_PREFIXES = ("RELAYD_", "FEISHU_")

# Bytes of stderr kept for error messages
_STDERR_TAIL = 2000


def _child_env(codex_home: str) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items()
           if not any(k.startswith(p) for p in _SECRET_PREFIXES)}
    if codex_home:
        env["CODEX_HOME"] = str(Path(codex_home).expanduser())
    return env


def _toml_str(value: str) -> str:
    return json.dumps(value)


def build_exec_args(binary: str, options: ThreadOptions,
                    thread_id: str | None = None) -> list[str]:
    """Build argv for one turn. Prompt is written to stdin."""
    args = [binary, "exec", "--json"]
    if options.model:
        args += ["--model", options.model]
    if options.sandbox_mode:
        args += ["--sandbox", options.sandbox_mode]
    if options.working_directory:
        args += ["--cd", options.working_directory]
    if options.skip_git_repo_check:
        args.append("--skip-git-repo-check")
    if options.reasoning_effort:
        args += ["--config", f"model_reasoning_effort={_toml_str(options.reasoning_effort)}"]
    if options.approval_policy:
        args += ["--config", f"approval_policy={_toml_str(options.approval_policy)}"]
    args += ["--config",
             f"features.web_search_request={'true' if options.web_search_enabled else 'false'}"]
    if thread_id:
        args += ["resume", thread_id]
    return args


class _TurnState:
    def __init__(self) -> None:
        self.thread_id: str | None = None
        self.messages: list[str] = []
        self.usage = Usage()
        self.completed = False
        self.error = ""


def apply_event(state: _TurnState, event: dict) -> None:
    """Fold one JSONL event from `codex exec --json` into the turn state."""
    etype = event.get("type", "")
    if etype == "thread.started":
        state.thread_id = event.get("thread_id") or state.thread_id
    elif etype == "item.completed":
        item = event.get("item") or {}
        if item.get("type") == "agent_message" and item.get("text"):
            state.messages.append(item["text"])
    elif etype == "turn.completed":
        usage = event.get("usage") or {}
        state.usage = Usage(
            input_tokens=usage.get("input_tokens", 0),
            cached_input_tokens=usage.get("cached_input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
        )
        state.completed = True
    elif etype == "turn.failed":
        err = event.get("error") or {}
        state.error = err.get("message", "") or "turn failed"
    elif etype == "error":
        state.error = event.get("message", "") or "unknown error"


class CodexThread:
    def __init__(self, backend: CodexExecBackend, options: ThreadOptions,
                 thread_id: str | None = None):
        self._backend = backend
        self._options = options
        self._id = thread_id

    @property
    def id(self) -> str | None:
        return self._id

    async def run(self, text: str) -> TurnResult:
        state = _TurnState()
        try:
            await self._backend.run_turn(self._options, self._id, text, state)
        finally:
            # A failed first turn may still have created the thread
            if state.thread_id:
                self._id = state.thread_id
        return TurnResult(
            final_response=state.messages[-1] if state.messages else "",
            usage=state.usage,
        )


class CodexExecBackend:
    def __init__(self, binary: str = "codex", codex_home: str = "",
                 turn_timeout: float = 0):
        self.binary = binary
        self.codex_home = codex_home
        self.turn_timeout = turn_timeout

    @property
    def sessions_dir(self) -> Path:
        home = self.codex_home or os.environ.get("CODEX_HOME", "") or "~/.codex"
        return Path(home).expanduser() / "sessions"

    async def start_thread(self, options: ThreadOptions) -> CodexThread:
        return CodexThread(self, options)

    async def resume_thread(self, thread_id: str, options: ThreadOptions) -> CodexThread:
        if not _THREAD_ID_RE.match(thread_id):
            raise ResumeError(f"Invalid thread id: {thread_id!r}")
        found = await asyncio.to_thread(self._find_rollout, thread_id)
        if found is None:
            raise ResumeError(f"No rollout for thread {thread_id} under {self.sessions_dir}")
        log.debug("Thread %s rollout: %s", thread_id, found)
        return CodexThread(self, options, thread_id=thread_id)

    def _find_rollout(self, thread_id: str) -> Path | None:
        root = self.sessions_dir
        if not root.is_dir():
            return None
        for path in root.rglob(f"rollout-*{thread_id}.jsonl"):
            return path
        return None

    async def run_turn(self, options: ThreadOptions, thread_id: str | None,
                       text: str, state: _TurnState | None = None) -> _TurnState:
        if state is None:
            state = _TurnState()
        args = build_exec_args(self.binary, options, thread_id)
        log.debug("Running: %s", " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_child_env(self.codex_home),
                start_new_session=True,
            )
        except OSError as e:
            raise BackendError(f"Cannot start {self.binary}: {e}") from e

        try:
            if self.turn_timeout > 0:
                stderr = await asyncio.wait_for(
                    self._communicate(proc, text, state), timeout=self.turn_timeout,
                )
            else:
                stderr = await self._communicate(proc, text, state)
        except TimeoutError:
            _kill(proc)
            await proc.wait()
            raise BackendError(f"Codex turn timed out after {self.turn_timeout:g}s") from None
        except asyncio.CancelledError:
            _kill(proc)
            raise

        if state.error:
            raise BackendError(state.error)
        if proc.returncode != 0 or not state.completed:
            tail = stderr.decode("utf-8", errors="replace").strip()[-_STDERR_TAIL:]
            raise BackendError(
                f"Codex exited with code {proc.returncode}" + (f": {tail}" if tail else "")
            )
        return state

    async def _communicate(self, proc: asyncio.subprocess.Process, text: str,
                           state: _TurnState) -> bytes:
        proc.stdin.write(text.encode("utf-8"))
        await proc.stdin.drain()
        proc.stdin.close()

        stderr_task = asyncio.create_task(proc.stderr.read())
        try:
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    log.debug("Non-JSON line from codex: %s", line[:200])
                    continue
                if isinstance(event, dict):
                    apply_event(state, event)
        except BaseException:
            # Timeout or cancellation: stop the stderr reader too
            stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)
            raise
        stderr = await stderr_task
        await proc.wait()
        return stderr


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the whole process group to prevent orphans."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass
