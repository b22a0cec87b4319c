"""
Purpose: Manage one USI engine session: handshake, serialized commands, atomic
position+search, streaming hooks and out-of-band search cancellation.

- Every stdin/stdout interaction runs through a CommandQueue, one at a time.
- analyze() sends `position` and `go` inside a single queued unit.
- `go infinite` gets an idle watchdog: 10s without output sends one `stop`.
- stop_search() skips the queue so it can interrupt the search that holds it;
  it is authorized by the token the search was started with.
- Crashes are recovered by EngineProcess; queued callers wait until the
  re-handshake finished (or fail once the session is fatal).
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from command_queue import CommandQueue
from engine_process import CrashWindow, EngineProcess, ProcessState, RESTART_BACKOFF_S
from usi_errors import (
    CommandTimeout,
    EngineError,
    EngineFatalError,
    EngineNotReady,
    HandshakeTimeout,
    InvalidSearchToken,
    NoActiveSearch,
)
from usi_parser import (
    BestMove,
    IdLine,
    InfoLine,
    ParsedLine,
    ReadyOk,
    UsiOk,
    classify,
    go_command,
    is_bestmove,
    position_command,
    setoption_command,
)

logger = logging.getLogger(__name__)

OptionValue = Union[str, int, float, bool]
StopCondition = Callable[[ParsedLine, str], bool]
LineCallback = Callable[[str, ParsedLine], None]

USI_TIMEOUT_S = 10.0
READY_TIMEOUT_S = 30.0
INFINITE_IDLE_S = 10.0
SEARCH_HEADROOM_S = 30.0
UNBOUNDED_SEARCH_TIMEOUT_S = 5 * 60.0
STOP_DRAIN_S = 1.0


def _dbg(msg: str) -> None:
    logger.debug(msg)


class SessionState(enum.Enum):
    NOT_READY = "not_ready"
    READY = "ready"
    RESTARTING = "restarting"
    FATAL = "fatal"


@dataclass
class EngineInfo:
    name: Optional[str] = None
    author: Optional[str] = None


class UsiBridge:
    def __init__(
        self,
        engine_path: str,
        options: Optional[Mapping[str, OptionValue]] = None,
        *,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        usi_timeout: float = USI_TIMEOUT_S,
        ready_timeout: float = READY_TIMEOUT_S,
        infinite_idle: float = INFINITE_IDLE_S,
        restart_backoff: float = RESTART_BACKOFF_S,
        crash_window: Optional[CrashWindow] = None,
    ):
        self.options: Dict[str, OptionValue] = dict(options or {})
        self.usi_timeout = usi_timeout
        self.ready_timeout = ready_timeout
        self.infinite_idle = infinite_idle
        self.engine_info = EngineInfo()
        self._queue = CommandQueue()
        self._process = EngineProcess(
            engine_path,
            args,
            cwd,
            restart_hook=self._handshake,
            on_crash=self._handle_crash,
            on_restarted=self._handle_restarted,
            on_fatal=self._handle_fatal,
            restart_backoff=restart_backoff,
            crash_window=crash_window,
        )
        self._ready = False
        self._settled = asyncio.Event()     # set while READY or FATAL
        self._search_token: Optional[str] = None
        self._fatal_callbacks: List[Callable[[], None]] = []
        self._restarted_callbacks: List[Callable[[], None]] = []

    # ---------------- state ----------------
    @property
    def process(self) -> EngineProcess:
        return self._process

    @property
    def state(self) -> SessionState:
        ps = self._process.state
        if ps is ProcessState.FATAL:
            return SessionState.FATAL
        if ps is ProcessState.RESTARTING:
            return SessionState.RESTARTING
        return SessionState.READY if self._ready else SessionState.NOT_READY

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    @property
    def queue_size(self) -> int:
        return self._queue.size

    @property
    def active_search(self) -> bool:
        return self._search_token is not None

    @property
    def search_token(self) -> Optional[str]:
        """Token of the running search, if it was started with one."""
        return self._search_token

    def on_fatal(self, callback: Callable[[], None]) -> None:
        self._fatal_callbacks.append(callback)

    def on_restarted(self, callback: Callable[[], None]) -> None:
        self._restarted_callbacks.append(callback)

    # ---------------- lifecycle ----------------
    async def initialize(self) -> None:
        """Start the engine and run the handshake; raises on spawn or handshake failure."""
        if self.state is SessionState.FATAL:
            raise EngineFatalError("engine session is fatal")
        await self._process.spawn()
        try:
            await self._handshake()
        except BaseException:
            await self._process.shutdown()
            raise
        self._ready = True
        self._settled.set()
        self._process.supervise()
        logger.info(
            "engine initialized and ready: %s (%s)",
            self.engine_info.name, self.engine_info.author,
        )

    async def shutdown(self) -> None:
        self._ready = False
        await self._process.shutdown()
        # callers parked on a restart see NOT_READY and fail
        self._settled.set()

    async def _handshake(self) -> None:
        """usi -> usiok, setoption per configured option, isready -> readyok."""
        lines = await self._collect(
            "usi", lambda p, raw: isinstance(p, UsiOk), self.usi_timeout,
            timeout_error=HandshakeTimeout,
        )
        info = EngineInfo()
        for parsed in map(classify, lines):
            if isinstance(parsed, IdLine):
                if parsed.key == "name":
                    info.name = parsed.value
                elif parsed.key == "author":
                    info.author = parsed.value
        self.engine_info = info
        _dbg("usiok received")

        for name, value in self.options.items():
            await self._process.write(setoption_command(name, value))

        await self._collect(
            "isready", lambda p, raw: isinstance(p, ReadyOk), self.ready_timeout,
            timeout_error=HandshakeTimeout,
        )
        _dbg("readyok received")

    def _handle_crash(self, returncode: Optional[int]) -> None:
        self._ready = False
        self._settled.clear()

    def _handle_restarted(self) -> None:
        self._ready = True
        self._settled.set()
        for cb in list(self._restarted_callbacks):
            cb()

    def _handle_fatal(self) -> None:
        self._ready = False
        self._settled.set()
        logger.error("engine session is fatal; no further restarts")
        for cb in list(self._fatal_callbacks):
            cb()

    async def _wait_ready(self) -> None:
        while True:
            state = self.state
            if state is SessionState.READY:
                return
            if state is SessionState.FATAL:
                raise EngineFatalError("engine crashed too many times; session is fatal")
            if state is SessionState.NOT_READY:
                raise EngineNotReady("Engine is not ready.")
            _dbg("waiting for engine restart")
            await self._settled.wait()

    def _submit(self, body: Callable[[], Awaitable]) -> asyncio.Future:
        if self.state is SessionState.FATAL:
            raise EngineFatalError("engine crashed too many times; session is fatal")

        async def run():
            await self._wait_ready()
            return await body()

        return self._queue.enqueue(run)

    # ---------------- public ops ----------------
    async def send_void(self, command: str) -> None:
        """Write a command that produces no engine output."""
        await self._submit(lambda: self._process.write(command))

    async def send_and_collect(
        self,
        command: str,
        stop: StopCondition,
        timeout: float = 30.0,
        idle_timeout: Optional[float] = None,
    ) -> List[str]:
        return await self._submit(lambda: self._collect(command, stop, timeout, idle_timeout))

    async def analyze(
        self,
        sfen: Optional[str] = None,
        waittime: Optional[int] = None,
        moves: Optional[Sequence[str]] = None,
        depth: Optional[int] = None,
        nodes: Optional[int] = None,
        on_line: Optional[LineCallback] = None,
        cancel_token: Optional[str] = None,
    ) -> List[str]:
        """
        Set the position and search it as one queued unit; returns every line
        up to and including `bestmove`.

        waittime (ms): None -> plain `go` (bounded by depth/nodes if given),
        0 -> `go infinite` with the idle watchdog, N -> `go movetime N`.
        """
        position_cmd = position_command(sfen, moves)
        go_cmd = go_command(waittime, depth, nodes)

        async def body() -> List[str]:
            if cancel_token is not None:
                self._search_token = cancel_token
            try:
                await self._process.write(position_cmd)
                if waittime == 0:
                    return await self._infinite_go(go_cmd, on_line)
                timeout = (
                    waittime / 1000.0 + SEARCH_HEADROOM_S
                    if waittime is not None
                    else UNBOUNDED_SEARCH_TIMEOUT_S
                )
                try:
                    return await self._collect(go_cmd, is_bestmove, timeout, on_line=on_line)
                except CommandTimeout:
                    try:
                        await self._abort_search()
                    except EngineError as e:
                        _dbg(f"stop after timeout failed: {e}")
                    raise
            finally:
                if cancel_token is not None and self._search_token == cancel_token:
                    self._search_token = None

        return await self._submit(body)

    async def stop_search(self, token: str) -> None:
        """Interrupt the running search started with `token`. Not queued."""
        if self._search_token is None:
            raise NoActiveSearch()
        if token != self._search_token:
            raise InvalidSearchToken()
        logger.info("stopping search on request")
        await self._process.write("stop")

    # ---------------- collectors ----------------
    async def _collect(
        self,
        command: str,
        stop: StopCondition,
        timeout: float,
        idle_timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
        timeout_error=CommandTimeout,
    ) -> List[str]:
        """
        Write `command`, then gather lines until `stop` matches, the idle timer
        fires (only armed after the first non-blank line), or `timeout` passes.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        lines: List[str] = []
        has_content = False
        with self._process.listen() as channel:
            await self._process.write(command)
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise timeout_error(command, timeout)
                idle = idle_timeout is not None and has_content and idle_timeout < remaining
                try:
                    raw, parsed = await channel.get(timeout=idle_timeout if idle else remaining)
                except asyncio.TimeoutError:
                    if idle:
                        _dbg(f"no output for {idle_timeout}s after '{command}'; done")
                        return lines
                    raise timeout_error(command, timeout)
                lines.append(raw)
                if on_line and isinstance(parsed, (InfoLine, BestMove)):
                    on_line(raw, parsed)
                if stop(parsed, raw):
                    return lines
                if raw.strip():
                    has_content = True

    async def _infinite_go(self, go_cmd: str, on_line: Optional[LineCallback]) -> List[str]:
        lines: List[str] = []
        stop_sent = False
        with self._process.listen() as channel:
            await self._process.write(go_cmd)
            while True:
                try:
                    raw, parsed = await channel.get(timeout=self.infinite_idle)
                except asyncio.TimeoutError:
                    if not stop_sent:
                        stop_sent = True
                        logger.info("no engine output for %.0fs; sending stop", self.infinite_idle)
                        await self._process.write("stop")
                    continue
                lines.append(raw)
                if on_line and isinstance(parsed, (InfoLine, BestMove)):
                    on_line(raw, parsed)
                if isinstance(parsed, BestMove):
                    return lines

    async def _abort_search(self) -> None:
        """Send one `stop` after a timed-out search and swallow its late bestmove."""
        if not self._process.alive:
            return
        with self._process.listen() as channel:
            await self._process.write("stop")
            loop = asyncio.get_running_loop()
            deadline = loop.time() + STOP_DRAIN_S
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return
                try:
                    _, parsed = await channel.get(timeout=remaining)
                except asyncio.TimeoutError:
                    _dbg("no bestmove after stop")
                    return
                if isinstance(parsed, BestMove):
                    return
