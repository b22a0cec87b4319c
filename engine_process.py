"""
Purpose: Own the USI engine subprocess. Spawns it, pumps stdout lines into the pending
operation's channel, logs stderr, detects unexpected exits and restarts the engine
with bounded backoff until the crash budget is spent.

Crash handling runs as a small state machine:
  RUNNING --exit--> RESTARTING --spawn+handshake ok--> RUNNING
                    RESTARTING --spawn/handshake failed--> (counted as another crash)
  more than MAX_RESTARTS crashes inside CRASH_WINDOW_S --> FATAL (terminal)
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Iterator, List, Optional, Sequence, Tuple

from usi_errors import EngineCrashed, EngineError, EngineNotRunning, SpawnError
from usi_parser import ParsedLine, classify

logger = logging.getLogger(__name__)

MAX_RESTARTS = 3
CRASH_WINDOW_S = 180.0
RESTART_BACKOFF_S = 1.0
QUIT_GRACE_S = 0.5
STREAM_LIMIT = 1 << 20      # longest accepted stdout line


def _dbg(msg: str) -> None:
    logger.debug(msg)


class ProcessState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    RESTARTING = "restarting"
    FATAL = "fatal"
    STOPPED = "stopped"


class CrashWindow:
    """Crash timestamps inside a rolling window."""

    def __init__(
        self,
        window: float = CRASH_WINDOW_S,
        budget: int = MAX_RESTARTS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self.budget = budget
        self._clock = clock
        self.timestamps: List[float] = []

    def record(self, now: Optional[float] = None) -> int:
        """Prune expired crashes, add one at `now`, return the count in the window."""
        if now is None:
            now = self._clock()
        self.timestamps = [t for t in self.timestamps if now - t < self.window]
        self.timestamps.append(now)
        return len(self.timestamps)

    @property
    def exhausted(self) -> bool:
        return len(self.timestamps) > self.budget

    def __len__(self) -> int:
        return len(self.timestamps)


class LineChannel:
    """Lines delivered to the one operation currently waiting on engine output."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()

    def put(self, raw: str, parsed: ParsedLine) -> None:
        self._queue.put_nowait((raw, parsed))

    def close(self, exc: BaseException) -> None:
        self._queue.put_nowait(exc)

    async def get(self, timeout: Optional[float] = None) -> Tuple[str, ParsedLine]:
        """
        Next (raw, parsed) line.
        Raises asyncio.TimeoutError when `timeout` passes without a line, and the
        close exception once the engine has gone away.
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if isinstance(item, BaseException):
            self._queue.put_nowait(item)    # stays closed for later reads
            raise item
        return item


@dataclass
class EngineHandle:
    proc: asyncio.subprocess.Process
    pumps: List[asyncio.Task] = field(default_factory=list)
    closing: bool = False


class EngineProcess:
    def __init__(
        self,
        path: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        *,
        restart_hook: Optional[Callable[[], Awaitable[None]]] = None,
        on_crash: Optional[Callable[[Optional[int]], None]] = None,
        on_restarted: Optional[Callable[[], None]] = None,
        on_fatal: Optional[Callable[[], None]] = None,
        restart_backoff: float = RESTART_BACKOFF_S,
        crash_window: Optional[CrashWindow] = None,
    ):
        self.path = path
        self.args = list(args)
        self.cwd = cwd
        self.restart_backoff = restart_backoff
        self.crash_window = crash_window or CrashWindow()
        self.state = ProcessState.IDLE
        self._restart_hook = restart_hook
        self._on_crash = on_crash
        self._on_restarted = on_restarted
        self._on_fatal = on_fatal
        self._handle: Optional[EngineHandle] = None
        self._channel: Optional[LineChannel] = None
        self._stderr_tail: Deque[str] = deque(maxlen=50)
        self._supervising = False
        self._stopping = False
        self._recovery: Optional[asyncio.Task] = None

    # ---------------- core process mgmt ----------------
    @property
    def alive(self) -> bool:
        return self._handle is not None and self._handle.proc.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._handle.proc.pid if self._handle else None

    @property
    def last_stderr(self) -> str:
        return self._stderr_tail[-1] if self._stderr_tail else ""

    @property
    def stderr_tail(self) -> List[str]:
        return list(self._stderr_tail)

    async def spawn(self) -> None:
        if self.alive:
            raise RuntimeError("engine process already running")
        logger.info("spawning engine: %s %s", self.path, " ".join(self.args))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.path,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise SpawnError(f'Failed to spawn engine at "{self.path}": {e}') from e

        handle = EngineHandle(proc)
        handle.pumps = [
            asyncio.ensure_future(self._pump_stdout(handle)),
            asyncio.ensure_future(self._pump_stderr(handle)),
        ]
        self._handle = handle
        if self.state in (ProcessState.IDLE, ProcessState.STOPPED):
            self._stopping = False
            self.state = ProcessState.RUNNING
        _dbg(f"engine pid={proc.pid}")

    def supervise(self) -> None:
        """Arm crash recovery. Called once the first handshake has succeeded."""
        self._supervising = True

    async def shutdown(self) -> None:
        self._stopping = True
        if self._recovery is not None and not self._recovery.done():
            self._recovery.cancel()
            await asyncio.gather(self._recovery, return_exceptions=True)
        handle = self._handle
        if handle is not None:
            handle.closing = True
            if handle.proc.returncode is None:
                try:
                    await self.write("quit")
                except EngineError as e:
                    _dbg(f"quit not delivered: {e}")
                try:
                    await asyncio.wait_for(handle.proc.wait(), timeout=QUIT_GRACE_S)
                except asyncio.TimeoutError:
                    logger.warning("engine still alive after quit; killing")
                    self._kill(handle)
                    await handle.proc.wait()
            await asyncio.gather(*handle.pumps, return_exceptions=True)
        self._handle = None
        if self.state is not ProcessState.FATAL:
            self.state = ProcessState.STOPPED
        logger.info("engine stopped")

    # ---------------- i/o helpers ----------------
    async def write(self, command: str) -> None:
        handle = self._handle
        if handle is None or handle.proc.returncode is not None:
            raise EngineNotRunning("No engine process running.")
        _dbg(f">> {command}")
        handle.proc.stdin.write((command + "\n").encode("utf-8"))
        try:
            await handle.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise EngineCrashed(handle.proc.returncode, self.last_stderr) from e

    @contextmanager
    def listen(self) -> Iterator[LineChannel]:
        """Route engine stdout to a fresh channel for the duration of one operation."""
        if self._channel is not None:
            raise RuntimeError("another operation is already reading engine output")
        if not self.alive:
            raise EngineNotRunning("No engine process running.")
        channel = LineChannel()
        self._channel = channel
        try:
            yield channel
        finally:
            if self._channel is channel:
                self._channel = None

    async def _pump_stdout(self, handle: EngineHandle) -> None:
        stream = handle.proc.stdout
        while True:
            try:
                chunk = await stream.readline()
            except ValueError as e:
                logger.warning("dropping oversized engine line: %s", e)
                continue
            if not chunk:
                break
            raw = chunk.decode("utf-8", errors="replace").rstrip("\r\n")
            _dbg(f"<< {raw}")
            parsed = classify(raw)
            channel = self._channel
            if handle is self._handle and channel is not None:
                channel.put(raw, parsed)
            else:
                _dbg(f"no pending operation; dropped {parsed.type} line")
        returncode = await handle.proc.wait()
        self._handle_exit(handle, returncode)

    async def _pump_stderr(self, handle: EngineHandle) -> None:
        stream = handle.proc.stderr
        while True:
            try:
                chunk = await stream.readline()
            except ValueError:
                continue
            if not chunk:
                break
            txt = chunk.decode("utf-8", errors="replace").strip()
            if txt:
                self._stderr_tail.append(txt)
                logger.warning("[engine stderr] %s", txt)

    # ---------------- crash / restart ----------------
    def _handle_exit(self, handle: EngineHandle, returncode: Optional[int]) -> None:
        if handle is not self._handle:
            return
        self._handle = None
        if self._channel is not None:
            # the waiting operation sees the crash; the next listener starts clean
            self._channel.close(EngineCrashed(returncode, self.last_stderr))
            self._channel = None

        if handle.closing or self._stopping:
            _dbg(f"engine exited (code={returncode})")
            return
        logger.warning("engine process exited (code=%s)", returncode)
        if not self._supervising or self.state is not ProcessState.RUNNING:
            # startup handshake or an in-progress restart owns this failure
            return

        self.state = ProcessState.RESTARTING
        if self._on_crash:
            self._on_crash(returncode)
        self._recovery = asyncio.ensure_future(self._recover())

    async def _recover(self) -> None:
        while True:
            count = self.crash_window.record()
            if self.crash_window.exhausted:
                self.state = ProcessState.FATAL
                logger.error(
                    "engine crashed %d times within %.0fs; giving up",
                    count, self.crash_window.window,
                )
                if self._on_fatal:
                    self._on_fatal()
                return

            delay = self.restart_backoff * count
            logger.warning(
                "restarting engine in %.1fs (attempt %d/%d)",
                delay, count, self.crash_window.budget,
            )
            await asyncio.sleep(delay)
            if self._stopping:
                return

            try:
                await self.spawn()
                if self._restart_hook:
                    await self._restart_hook()
            except EngineError as e:
                logger.error("engine restart failed: %s", e)
                await self._discard()
                continue

            self.state = ProcessState.RUNNING
            logger.info("engine restarted")
            if self._on_restarted:
                self._on_restarted()
            return

    async def _discard(self) -> None:
        """Drop the current process without triggering crash handling."""
        handle = self._handle
        if handle is None:
            return
        handle.closing = True
        self._kill(handle)
        await handle.proc.wait()
        await asyncio.gather(*handle.pumps, return_exceptions=True)
        if self._handle is handle:
            self._handle = None

    @staticmethod
    def _kill(handle: EngineHandle) -> None:
        if handle.proc.returncode is None:
            try:
                handle.proc.kill()
            except ProcessLookupError:
                pass
