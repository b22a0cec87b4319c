import asyncio

import pytest

import usi_bridge
from engine_process import CrashWindow
from usi_bridge import SessionState
from usi_errors import (
    CommandTimeout,
    EngineCrashed,
    EngineFatalError,
    EngineNotReady,
    HandshakeTimeout,
    InvalidSearchToken,
    NoActiveSearch,
    SpawnError,
)
from usi_parser import BestMove, InfoLine, raw_command_stop, summarize


def record_writes(bridge, monkeypatch):
    writes = []
    original = bridge.process.write

    async def spy(command):
        writes.append(command)
        await original(command)

    monkeypatch.setattr(bridge.process, "write", spy)
    return writes


# 1. Handshake
@pytest.mark.asyncio
async def test_initialize_captures_engine_info_and_applies_options(bridge):
    assert bridge.is_ready
    assert bridge.state is SessionState.READY
    assert bridge.engine_info.name == "UsiRefEngine"
    assert bridge.engine_info.author == "open-source"

    lines = await bridge.send_and_collect("options", raw_command_stop(), timeout=5)
    assert "USI_Hash = 128" in lines


@pytest.mark.asyncio
async def test_initialize_spawn_failure(make_bridge):
    from usi_bridge import UsiBridge

    b = UsiBridge("/nonexistent/usi-engine")
    with pytest.raises(SpawnError):
        await b.initialize()
    assert b.state is SessionState.NOT_READY


@pytest.mark.asyncio
async def test_initialize_handshake_timeout(make_bridge):
    b = make_bridge("--no-usiok", usi_timeout=0.3)
    with pytest.raises(HandshakeTimeout) as exc:
        await b.initialize()
    assert exc.value.command == "usi"
    assert not b.process.alive
    assert not b.is_ready


@pytest.mark.asyncio
async def test_commands_before_initialize_are_rejected(make_bridge):
    b = make_bridge()
    with pytest.raises(EngineNotReady):
        await b.send_void("usinewgame")


# 2. Raw commands
@pytest.mark.asyncio
async def test_send_void_writes_without_reading(bridge, monkeypatch):
    writes = record_writes(bridge, monkeypatch)
    assert await bridge.send_void("usinewgame") is None
    assert writes == ["usinewgame"]


@pytest.mark.asyncio
async def test_send_and_collect_stops_on_predicate(bridge):
    lines = await bridge.send_and_collect("isready", lambda p, raw: raw == "readyok", timeout=5)
    assert lines == ["readyok"]


@pytest.mark.asyncio
async def test_send_and_collect_idle_timeout_after_content(bridge):
    # `eval` prints a blank line, then one line and no terminator
    lines = await bridge.send_and_collect("eval", lambda p, raw: False, timeout=5, idle_timeout=0.2)
    assert lines == ["", "eval = 42"]


@pytest.mark.asyncio
async def test_send_and_collect_hard_timeout_names_command(bridge):
    with pytest.raises(CommandTimeout) as exc:
        await bridge.send_and_collect("usinewgame", lambda p, raw: False, timeout=0.2, idle_timeout=0.05)
    assert "usinewgame" in str(exc.value)
    # the session stays usable
    assert await bridge.send_and_collect("isready", lambda p, raw: raw == "readyok", timeout=5) == ["readyok"]


# 3. Analyze
@pytest.mark.asyncio
async def test_analyze_bounded_search(bridge, monkeypatch):
    writes = record_writes(bridge, monkeypatch)
    seen = []
    lines = await bridge.analyze(
        None, waittime=500, moves=["7g7f", "3c3d"], depth=2,
        on_line=lambda raw, parsed: seen.append(parsed),
    )
    assert writes == ["position startpos moves 7g7f 3c3d", "go movetime 500 depth 2"]
    assert lines[-1].startswith("bestmove")
    assert all(isinstance(p, (InfoLine, BestMove)) for p in seen)
    assert isinstance(seen[-1], BestMove)

    res = summarize(lines)
    assert res.bestmove == "2g2f"
    assert res.ponder == "8c8d"
    assert res.mate is False
    assert res.score == 20


@pytest.mark.asyncio
async def test_analyze_reports_mate(make_bridge):
    b = make_bridge("--mate", "-3")
    await b.initialize()
    try:
        res = summarize(await b.analyze("9/9/9/9/9/9/9/9/9 b - 1"))
    finally:
        await b.shutdown()
    assert res.mate is True
    assert res.mate_length == 3
    assert res.mate_moves == "2g2f 8c8d 2f2e"


@pytest.mark.asyncio
async def test_concurrent_analyses_do_not_interleave(bridge, monkeypatch):
    writes = record_writes(bridge, monkeypatch)
    results = await asyncio.gather(
        bridge.analyze("sfen-a", depth=1),
        bridge.analyze("sfen-b", depth=2),
        bridge.send_void("usinewgame"),
    )
    assert writes == [
        "position sfen sfen-a", "go depth 1",
        "position sfen sfen-b", "go depth 2",
        "usinewgame",
    ]
    assert results[0][-1].startswith("bestmove")
    assert results[1][-1].startswith("bestmove")


@pytest.mark.asyncio
async def test_infinite_search_idle_stop_is_sent_once(make_bridge, monkeypatch):
    b = make_bridge(infinite_idle=0.2)
    await b.initialize()
    try:
        writes = record_writes(b, monkeypatch)
        lines = await asyncio.wait_for(b.analyze(waittime=0, depth=7, nodes=100), timeout=5)
        assert writes == ["position startpos", "go infinite", "stop"]
        assert lines[-1] == "bestmove 2g2f ponder 8c8d"
        await asyncio.sleep(0.5)
        assert writes.count("stop") == 1
    finally:
        await b.shutdown()


@pytest.mark.asyncio
async def test_infinite_idle_timer_resets_on_each_line(make_bridge, monkeypatch):
    # output every 0.1s keeps a 0.5s idle window from ever firing
    b = make_bridge("--tick", "0.1", infinite_idle=0.5)
    await b.initialize()
    try:
        writes = record_writes(b, monkeypatch)
        seen = []
        search = asyncio.ensure_future(
            b.analyze(waittime=0, on_line=lambda raw, p: seen.append(p), cancel_token="tok")
        )
        await asyncio.sleep(1.5)
        assert "stop" not in writes
        assert len(seen) >= 8

        await b.stop_search("tok")
        lines = await asyncio.wait_for(search, timeout=5)
        assert lines[-1].startswith("bestmove")
        assert writes.count("stop") == 1
    finally:
        await b.shutdown()


@pytest.mark.asyncio
async def test_bounded_search_timeout_sends_stop_and_drains(make_bridge, monkeypatch):
    monkeypatch.setattr(usi_bridge, "SEARCH_HEADROOM_S", 0.2)
    b = make_bridge("--stall-search")
    await b.initialize()
    try:
        writes = record_writes(b, monkeypatch)
        with pytest.raises(CommandTimeout) as exc:
            await b.analyze(waittime=100, depth=3)
        assert exc.value.command == "go movetime 100 depth 3"
        assert exc.value.timeout == pytest.approx(0.3)
        assert writes == ["position startpos", "go movetime 100 depth 3", "stop"]

        # the late bestmove was swallowed; the next command sees only its own reply
        first_line = await b.send_and_collect("isready", lambda p, raw: True, timeout=5)
        assert first_line == ["readyok"]
    finally:
        await b.shutdown()


@pytest.mark.asyncio
async def test_search_without_waittime_uses_unbounded_timeout(make_bridge, monkeypatch):
    monkeypatch.setattr(usi_bridge, "UNBOUNDED_SEARCH_TIMEOUT_S", 0.3)
    b = make_bridge("--stall-search")
    await b.initialize()
    try:
        with pytest.raises(CommandTimeout) as exc:
            await b.analyze(depth=3)
        assert exc.value.command == "go depth 3"
        assert exc.value.timeout == 0.3
        assert not b.active_search
    finally:
        await b.shutdown()


# 4. Out-of-band stop
@pytest.mark.asyncio
async def test_stop_search_without_active_search(bridge, monkeypatch):
    writes = record_writes(bridge, monkeypatch)
    with pytest.raises(NoActiveSearch):
        await bridge.stop_search("anything")
    assert writes == []


@pytest.mark.asyncio
async def test_stop_search_by_token(make_bridge, monkeypatch):
    b = make_bridge(infinite_idle=30.0)
    await b.initialize()
    try:
        writes = record_writes(b, monkeypatch)
        first_info = asyncio.Event()
        search = asyncio.ensure_future(
            b.analyze(waittime=0, on_line=lambda raw, p: first_info.set(), cancel_token="tok-1")
        )
        await asyncio.wait_for(first_info.wait(), timeout=5)
        assert b.active_search

        with pytest.raises(InvalidSearchToken):
            await b.stop_search("tok-2")
        assert "stop" not in writes

        await b.stop_search("tok-1")
        lines = await asyncio.wait_for(search, timeout=5)
        assert lines[-1].startswith("bestmove")
        assert writes.count("stop") == 1
        assert not b.active_search
        with pytest.raises(NoActiveSearch):
            await b.stop_search("tok-1")
    finally:
        await b.shutdown()


@pytest.mark.asyncio
async def test_search_token_cleared_on_failure(make_bridge):
    b = make_bridge("--crash-on", "go")
    await b.initialize()
    try:
        with pytest.raises(EngineCrashed):
            await b.analyze(depth=1, cancel_token="tok")
        assert not b.active_search
    finally:
        await b.shutdown()


# 5. Crash recovery
@pytest.mark.asyncio
async def test_restart_reapplies_handshake_and_queue_waits(make_bridge):
    b = make_bridge("--crash-on", "go", options={"Threads": 2})
    restarted = asyncio.Event()
    b.on_restarted(restarted.set)
    await b.initialize()
    try:
        crashed = b.analyze(depth=1)
        waiting = b.send_and_collect("options", raw_command_stop(), timeout=5)
        results = await asyncio.gather(crashed, waiting, return_exceptions=True)
        assert isinstance(results[0], EngineCrashed)
        # the second caller simply waited for the restarted engine
        assert results[1] == ["Threads = 2", ""]
        assert restarted.is_set()
        assert b.is_ready
    finally:
        await b.shutdown()


@pytest.mark.asyncio
async def test_fourth_crash_in_window_is_fatal(make_bridge):
    b = make_bridge("--crash-on", "go", crash_window=CrashWindow(window=180.0, budget=3))
    restarts = []
    fatal = asyncio.Event()
    b.on_restarted(lambda: restarts.append(True))
    b.on_fatal(fatal.set)
    await b.initialize()
    try:
        for _ in range(4):
            with pytest.raises(EngineCrashed):
                await b.analyze(depth=1)
        await asyncio.wait_for(fatal.wait(), timeout=5)
        assert len(restarts) == 3
        assert b.state is SessionState.FATAL
        with pytest.raises(EngineFatalError):
            await b.send_void("usinewgame")
    finally:
        await b.shutdown()


@pytest.mark.asyncio
async def test_shutdown_while_restarting_releases_waiting_callers(make_bridge):
    b = make_bridge("--crash-on", "go", restart_backoff=5.0)
    await b.initialize()
    with pytest.raises(EngineCrashed):
        await b.analyze(depth=1)
    assert b.state is SessionState.RESTARTING

    waiter = asyncio.ensure_future(b.send_void("usinewgame"))
    await asyncio.sleep(0.05)
    assert not waiter.done()

    await b.shutdown()
    with pytest.raises(EngineNotReady):
        await asyncio.wait_for(waiter, timeout=2)
    assert b.queue_size == 0
