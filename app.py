"""
USI Engine Service: HTTP front for a single USI engine process.

Exposes:
  - GET  /                              -> health, engine info, endpoint list
  - GET  /api/usi_command/{command}     -> raw USI command, collected output lines
  - GET  /api/setoption/{name}/{value}  -> setoption (engine answers nothing)
  - GET  /api/analyze[/{waittime}]      -> batch analysis; ?sfen=&moves=&depth=&nodes=
  - POST /api/analyze[/{waittime}]      -> same, body {sfen?, moves?, depth?, nodes?}
  - GET  /api/analyze/stream            -> SSE: start | info | bestmove | done | error
  - POST /api/analyze/stream            -> same, body adds waittime
  - POST /api/analyze/stop              -> stop the running stream search, body {token}

Notes:
  * The bridge is built by the caller and handed to create_app(); routes reach it
    through app.state, never through a module global.
  * SSE events are small JSON objects, one per `data:` line; `: keepalive`
    comments are sent every 15s while the engine is quiet.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from schemas import AnalyzeRequest, AnalyzeStreamRequest, StopRequest
from sse import sse_comment, sse_event
from usi_bridge import UsiBridge
from usi_errors import (
    EngineError,
    EngineFatalError,
    EngineNotReady,
    InvalidSearchToken,
    NoActiveSearch,
)
from usi_parser import (
    BLOCKED_COMMANDS,
    VOID_COMMANDS,
    event_dict,
    raw_command_stop,
    setoption_command,
    summarize,
)

logger = logging.getLogger(__name__)

# Batch requests must answer well inside common proxy timeouts (~30s);
# longer or infinite searches belong on /api/analyze/stream.
MAX_BATCH_WAITTIME_MS = 25_000
RAW_COMMAND_TIMEOUT_S = 10.0
RAW_COMMAND_IDLE_S = 0.5
KEEPALIVE_S = 15.0

API_ENDPOINTS = [
    {"method": "GET", "path": "/",
     "description": "Health check: engine status, engine info, and this endpoint list."},
    {"method": "GET", "path": "/api/usi_command/:command",
     "description": "Send a raw USI command and return its output lines. "
                    "Blocked: go, go mate, position, setoption, quit."},
    {"method": "GET", "path": "/api/setoption/:name/:value",
     "description": 'Send "setoption name <name> value <value>" to the engine.'},
    {"method": "POST", "path": "/api/analyze/:waittime?",
     "description": "Analyse a position. Body: { sfen?, moves?, depth?, nodes? }. "
                    "waittime (ms): omit = go, N = go movetime N (max 25000)."},
    {"method": "GET", "path": "/api/analyze/:waittime?",
     "description": "Analyse a position. Query params: sfen, moves, depth, nodes."},
    {"method": "GET", "path": "/api/analyze/stream",
     "description": "Stream analysis as SSE. Query params: sfen, moves, depth, nodes, waittime (0 = infinite)."},
    {"method": "POST", "path": "/api/analyze/stream",
     "description": "Stream analysis as SSE. Body: { sfen?, moves?, depth?, nodes?, waittime? }."},
    {"method": "POST", "path": "/api/analyze/stop",
     "description": "Stop the running streamed search. Body: { token } from the start event."},
]

router = APIRouter()


def get_bridge(request: Request) -> UsiBridge:
    return request.app.state.bridge


# ---------------- helpers ----------------
def _require_ready(bridge: UsiBridge) -> None:
    if not bridge.is_ready:
        raise HTTPException(503, "Engine is not ready.")


def _engine_http_error(e: EngineError) -> HTTPException:
    if isinstance(e, (EngineNotReady, EngineFatalError)):
        return HTTPException(503, str(e))
    return HTTPException(500, str(e))


def _clean_sfen(raw: Optional[str]) -> Optional[str]:
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def _parse_moves(raw: Union[str, List[str], None]) -> Optional[List[str]]:
    if raw is None:
        return None
    if isinstance(raw, str):
        tokens = raw.split()
    else:
        tokens = [str(t).strip() for t in raw]
    tokens = [t for t in tokens if t]
    return tokens or None


def _echo(sfen, moves, waittime, depth, nodes) -> dict:
    return {
        "sfen": sfen or "startpos",
        "moves": moves or [],
        "waittime": waittime,
        "depth": depth,
        "nodes": nodes,
    }


async def _run_analyze(
    bridge: UsiBridge,
    sfen: Optional[str],
    moves: Optional[List[str]],
    waittime: Optional[int],
    depth: Optional[int],
    nodes: Optional[int],
) -> dict:
    logger.info("analyze req sfen=%r moves=%s waittime=%s depth=%s nodes=%s", sfen, moves, waittime, depth, nodes)
    if waittime is not None and waittime < 0:
        raise HTTPException(400, "waittime must be a non-negative integer (milliseconds).")
    if waittime == 0:
        raise HTTPException(
            400,
            "waittime=0 (infinite search) is not supported on this endpoint. "
            "Use /api/analyze/stream?waittime=0 instead.",
        )
    if waittime is not None and waittime > MAX_BATCH_WAITTIME_MS:
        raise HTTPException(
            400,
            f"waittime must not exceed {MAX_BATCH_WAITTIME_MS} ms on this endpoint. "
            "For longer searches use /api/analyze/stream.",
        )
    _require_ready(bridge)

    try:
        lines = await bridge.analyze(sfen, waittime, moves, depth, nodes)
    except EngineError as e:
        logger.warning("analyze failed: %s", e)
        raise _engine_http_error(e)

    analysis = summarize(lines)
    logger.info("analyze: bestmove=%s", analysis.bestmove)
    return {**_echo(sfen, moves, waittime, depth, nodes), "lines": lines, **analysis.to_dict()}


def _run_analyze_stream(
    bridge: UsiBridge,
    sfen: Optional[str],
    moves: Optional[List[str]],
    waittime: Optional[int],
    depth: Optional[int],
    nodes: Optional[int],
) -> StreamingResponse:
    _require_ready(bridge)
    token = uuid.uuid4().hex
    logger.info("stream req token=%s sfen=%r waittime=%s depth=%s nodes=%s", token, sfen, waittime, depth, nodes)

    async def gen() -> AsyncGenerator[str, None]:
        events: asyncio.Queue = asyncio.Queue()
        state = {"abandoned": False, "stop_sent": False}

        def request_stop():
            # the client is gone; end its search once it holds the engine.
            # While still queued, the first line of its own search retries.
            if state["stop_sent"] or bridge.search_token != token:
                return
            state["stop_sent"] = True
            asyncio.ensure_future(_stop_quietly(bridge, token))

        def on_line(raw, parsed):
            if state["abandoned"]:
                request_stop()
                return
            events.put_nowait(event_dict(parsed))

        def on_done(t: asyncio.Future):
            if not t.cancelled():
                t.exception()       # retrieved here; reported below or dropped if abandoned
            events.put_nowait(None)

        task = asyncio.ensure_future(
            bridge.analyze(sfen, waittime, moves, depth, nodes, on_line=on_line, cancel_token=token)
        )
        task.add_done_callback(on_done)

        try:
            yield sse_event({"type": "start", "token": token})
            while True:
                try:
                    item = await asyncio.wait_for(events.get(), timeout=KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield sse_comment("keepalive")
                    continue
                if item is None:
                    break
                yield sse_event(item)

            try:
                lines = task.result()
            except EngineError as e:
                logger.warning("stream token=%s failed: %s", token, e)
                yield sse_event({"type": "error", "message": str(e)})
                return
            except Exception as e:
                logger.exception("stream token=%s: unexpected failure", token)
                yield sse_event({"type": "error", "message": str(e) or type(e).__name__})
                return
            analysis = summarize(lines)
            logger.info("stream token=%s done bestmove=%s", token, analysis.bestmove)
            yield sse_event({"type": "done", **_echo(sfen, moves, waittime, depth, nodes), **analysis.to_dict()})
        finally:
            if not task.done():
                logger.info("stream token=%s: client left; stopping search", token)
                state["abandoned"] = True
                request_stop()

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


async def _stop_quietly(bridge: UsiBridge, token: str) -> None:
    try:
        await bridge.stop_search(token)
    except EngineError as e:
        logger.debug("stop for abandoned stream %s not sent: %s", token, e)


# ---------------- routes ----------------
@router.get("/")
async def health(bridge: UsiBridge = Depends(get_bridge)):
    info = bridge.engine_info
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "engine": {
            "ready": bridge.is_ready,
            "state": bridge.state.value,
            "name": info.name,
            "author": info.author,
            "queued": bridge.queue_size,
        },
        "api": API_ENDPOINTS,
    }


@router.get("/api/usi_command/{command}")
async def usi_command(command: str, bridge: UsiBridge = Depends(get_bridge)):
    command = command.strip()
    lowered = command.lower()
    # whole command or its verb: go/position/setoption/quit have dedicated endpoints
    if lowered in BLOCKED_COMMANDS or lowered.split(" ", 1)[0] in BLOCKED_COMMANDS:
        raise HTTPException(400, {
            "error": f'Command "{command}" is not allowed via this endpoint.',
            "hint": "Use dedicated endpoints for go/position/setoption/quit.",
        })
    _require_ready(bridge)

    try:
        if lowered in VOID_COMMANDS:
            await bridge.send_void(command)
            return {"command": command, "result": "sent", "lines": []}
        lines = await bridge.send_and_collect(
            command, raw_command_stop(), RAW_COMMAND_TIMEOUT_S, RAW_COMMAND_IDLE_S,
        )
    except EngineError as e:
        logger.warning("usi_command %r failed: %s", command, e)
        raise _engine_http_error(e)
    return {"command": command, "lines": [line for line in lines if line.strip()]}


@router.get("/api/setoption/{name}/{value}")
async def set_option(name: str, value: str, bridge: UsiBridge = Depends(get_bridge)):
    _require_ready(bridge)
    command = setoption_command(name, value)
    try:
        await bridge.send_void(command)
    except EngineError as e:
        raise _engine_http_error(e)
    return {"command": command, "result": "sent"}


# stream/stop must be registered before the /{waittime} routes
@router.get("/api/analyze/stream")
async def analyze_stream_get(
    sfen: Optional[str] = Query(None, description="Position as SFEN"),
    moves: Optional[str] = Query(None, description="Space separated moves"),
    waittime: Optional[int] = Query(None, ge=0),
    depth: Optional[int] = Query(None, gt=0),
    nodes: Optional[int] = Query(None, gt=0),
    bridge: UsiBridge = Depends(get_bridge),
):
    return _run_analyze_stream(bridge, _clean_sfen(sfen), _parse_moves(moves), waittime, depth, nodes)


@router.post("/api/analyze/stream")
async def analyze_stream_post(
    body: Optional[AnalyzeStreamRequest] = None,
    bridge: UsiBridge = Depends(get_bridge),
):
    body = body or AnalyzeStreamRequest()
    return _run_analyze_stream(
        bridge, _clean_sfen(body.sfen), _parse_moves(body.moves), body.waittime, body.depth, body.nodes,
    )


@router.post("/api/analyze/stop")
async def analyze_stop(req: StopRequest, bridge: UsiBridge = Depends(get_bridge)):
    try:
        await bridge.stop_search(req.token)
    except NoActiveSearch as e:
        raise HTTPException(409, str(e))
    except InvalidSearchToken as e:
        raise HTTPException(403, str(e))
    except EngineError as e:
        raise _engine_http_error(e)
    return {"token": req.token, "result": "stopped"}


@router.get("/api/analyze")
@router.get("/api/analyze/{waittime}")
async def analyze_get(
    waittime: Optional[int] = None,
    sfen: Optional[str] = Query(None, description="Position as SFEN"),
    moves: Optional[str] = Query(None, description="Space separated moves"),
    depth: Optional[int] = Query(None, gt=0),
    nodes: Optional[int] = Query(None, gt=0),
    bridge: UsiBridge = Depends(get_bridge),
):
    return await _run_analyze(bridge, _clean_sfen(sfen), _parse_moves(moves), waittime, depth, nodes)


@router.post("/api/analyze")
@router.post("/api/analyze/{waittime}")
async def analyze_post(
    waittime: Optional[int] = None,
    body: Optional[AnalyzeRequest] = None,
    bridge: UsiBridge = Depends(get_bridge),
):
    body = body or AnalyzeRequest()
    return await _run_analyze(
        bridge, _clean_sfen(body.sfen), _parse_moves(body.moves), waittime, body.depth, body.nodes,
    )


# ---------------- app factory ----------------
async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(body, status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    msg = first.get("msg", "invalid request")
    return JSONResponse({"error": f'"{where}": {msg}' if where else msg}, status_code=400)


def create_app(bridge: UsiBridge, *, manage_engine: bool = True) -> FastAPI:
    """
    Build the HTTP app around `bridge`. With manage_engine the app's lifespan
    initializes the engine before serving (a failure aborts startup) and shuts
    it down on exit.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_engine:
            await bridge.initialize()
        try:
            yield
        finally:
            if manage_engine:
                logger.info("app shutdown: stopping engine")
                await bridge.shutdown()

    app = FastAPI(title="usi-bridge", version="1.0", lifespan=lifespan)
    app.state.bridge = bridge
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)
    return app
