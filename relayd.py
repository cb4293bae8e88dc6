#!/usr/bin/env python3
"""relayd — relay chat messages to persistent AI backend threads.

Entry point. Wires config → session store → backend → channel → router.
Handles PID file, Unix signals, and the main event loop.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any

# Add relayd directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from backends import create_backend
from channels import ChatEvent, create_channel
from config import Config, ConfigError, load_config
from router import EventRouter
from status import RecentLogHandler, StatusBoard, format_uptime
from store import CorruptStateError, SessionStore

log = logging.getLogger("relayd")

# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if path.exists():
        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except PermissionError:
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            log.info("Stale PID file found, removing")
            path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        pass


def load_bindings(store: SessionStore) -> dict[str, str]:
    """Load persisted bindings; a corrupt file is moved aside, not overwritten."""
    try:
        return store.load()
    except CorruptStateError as e:
        log.error("Session file is corrupt, starting with empty state: %s", e,
                  extra={"event": "store.corrupt"})
        store.quarantine()
        return {}


# ─── Daemon ──────────────────────────────────────────────────────

class RelayDaemon:
    def __init__(self, config: Config):
        self.config = config
        self.running = True
        self.queue: asyncio.Queue[ChatEvent | None] = asyncio.Queue(maxsize=1000)
        self.status = StatusBoard(max_logs=config.http_max_logs)
        self.store: SessionStore | None = None
        self.channel: Any = None
        self.router: EventRouter | None = None
        self._http_api: Any = None
        self._tasks: set[asyncio.Task] = set()

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr + status buffer."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr handler (for journald)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)
        root.addHandler(RecentLogHandler(self.status))

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "openai", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _init_router(self) -> None:
        cfg = self.config
        self.store = SessionStore(cfg.session_file)
        bindings = load_bindings(self.store)
        self.channel = create_channel(cfg)
        self.router = EventRouter(
            store=self.store,
            backend=create_backend(cfg),
            channel=self.channel,
            options=cfg.thread_options,
            bindings=bindings,
            status=self.status,
            fallback_reply=cfg.fallback_reply,
            error_prefix=cfg.error_prefix,
        )
        log.info("Backend: %s, channel: %s, %d stored sessions (%s)",
                 cfg.backend_type, cfg.channel_type, len(bindings), cfg.session_file)

    def _build_status(self) -> dict:
        """Status dict for SIGUSR2."""
        status = self.status.snapshot()
        status.update({
            "pid": os.getpid(),
            "channel": self.config.channel_type,
            "backend": self.config.backend_type,
            "live_threads": self.router.resolver.cached_count if self.router else 0,
            "in_flight": len(self._tasks),
            "queue_depth": self.queue.qsize(),
        })
        return status

    def _spawn(self, event: ChatEvent) -> None:
        task = asyncio.create_task(self.router.handle(event))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Event task crashed: %s", task.exception(),
                      exc_info=task.exception())

    async def _event_loop(self) -> None:
        """Dispatch events from the queue, one task per event."""
        while self.running:
            try:
                event = await asyncio.wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            # Sentinel from channel reader
            if event is None:
                self.running = False
                break
            self._spawn(event)

        if self._tasks:
            log.info("Waiting for %d in-flight events", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _channel_reader(self) -> None:
        """Read events from channel and push to queue."""
        try:
            async for event in self.channel.receive():
                await self.queue.put(event)
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.error("Channel reader failed: %s", e)
        # Channel exhausted (e.g., piped stdin EOF): signal shutdown
        await self.queue.put(None)

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            status_path = self.config.state_dir / "status.json"
            status_path.write_text(json.dumps(self._build_status(), indent=2))

        def handle_sigterm():
            log.info("SIGTERM: shutting down gracefully")
            self.status.status = "stopping"
            self.running = False

        try:
            loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def run(self) -> None:
        """Main entry point — starts all components and runs until stopped."""
        cfg = self.config
        pid_path = cfg.state_dir / "relayd.pid"

        self._setup_logging()
        log.info("Starting relayd (%s → %s)", cfg.channel_type, cfg.backend_type)

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)

        try:
            self._init_router()

            await self.channel.connect()
            log.info("Channel connected: %s", cfg.channel_type)

            self._setup_signals(asyncio.get_running_loop())

            if cfg.http_enabled:
                from http_api import StatusAPI
                self._http_api = StatusAPI(
                    board=self.status,
                    host=cfg.http_host,
                    port=cfg.http_port,
                    auth_token=cfg.http_auth_token,
                    get_sessions=self.router.snapshot,
                )
                await self._http_api.start()

            channel_task = asyncio.create_task(self._channel_reader())
            log.info("relayd running (PID %d)", os.getpid())

            await self._event_loop()

            channel_task.cancel()
            try:
                await channel_task
            except asyncio.CancelledError:
                pass

        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            if self._http_api is not None:
                try:
                    await self._http_api.stop()
                except Exception as e:
                    log.warning("Status API shutdown failed: %s", e)
            if self.channel is not None:
                try:
                    await self.channel.disconnect()
                except Exception as e:
                    log.warning("Channel disconnect failed: %s", e)
            _remove_pid_file(pid_path)
            log.info("relayd stopped after %s",
                     format_uptime(time.time() - self.status.started_at))


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="relayd — relay chat messages to persistent AI backend threads",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("RELAYD_CONFIG", "./relayd.toml"),
        help="Path to config file (default: $RELAYD_CONFIG or ./relayd.toml)",
    )
    parser.add_argument(
        "--channel",
        help="Override channel type (e.g., 'cli' for testing)",
    )
    args = parser.parse_args()

    overrides = {}
    if args.channel:
        overrides["channel.type"] = args.channel

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    daemon = RelayDaemon(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
