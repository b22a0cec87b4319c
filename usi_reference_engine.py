"""
Purpose: A scripted USI engine that speaks just enough protocol for local development
and for the bridge's tests. It does not know shogi; it replays canned search output.

Usage: python usi_reference_engine.py [--name NAME] [--mate N] [--crash-on CMD]
                                      [--no-usiok] [--stderr-banner]
                                      [--stall-search] [--tick SECONDS]
"""
from __future__ import annotations

import argparse
import sys
import threading
from typing import Dict, List, Optional

_DEFAULT_ID_NAME = "UsiRefEngine"
_DEFAULT_ID_AUTHOR = "open-source"

# Canned principal variation replayed for every search.
PV = ["2g2f", "8c8d", "2f2e", "8d8e", "6i7h"]


class ReferenceEngine:
    def __init__(
        self,
        name: str = _DEFAULT_ID_NAME,
        mate: Optional[int] = None,
        crash_on: Optional[str] = None,
        answer_usi: bool = True,
        stall_search: bool = False,
        tick: Optional[float] = None,
    ):
        self.name = name
        self.mate = mate
        self.crash_on = crash_on
        self.answer_usi = answer_usi
        self.stall_search = stall_search
        self.tick = tick
        self.options: Dict[str, str] = {}
        self.position = "startpos"
        self.searching = False
        self._out_lock = threading.Lock()
        self._ticker: Optional[threading.Thread] = None
        self._halt = threading.Event()

    # ---- output ----
    def _say(self, *lines: str) -> None:
        with self._out_lock:
            for line in lines:
                print(line)
            sys.stdout.flush()

    def _info_lines(self, depth: int) -> List[str]:
        out = []
        for d in range(1, depth + 1):
            out.append(f"info depth {d} seldepth {d + 2} score cp {10 * d} nodes {d * 1000} pv {' '.join(PV[:d])}")
        if self.mate is not None:
            out.append(f"info depth {depth} score mate {self.mate} pv {' '.join(PV[:3])}")
        out.append("info string search finished")
        return out

    def _bestmove(self) -> str:
        return f"bestmove {PV[0]} ponder {PV[1]}"

    # ---- commands ----
    def handle_usi(self) -> None:
        if not self.answer_usi:
            return
        self._say(
            f"id name {self.name}",
            f"id author {_DEFAULT_ID_AUTHOR}",
            "option name USI_Hash type spin default 256 min 1 max 4096",
            "option name Threads type spin default 1 min 1 max 64",
            "usiok",
        )

    def handle_setoption(self, cmd: str) -> None:
        # setoption name <name> value <value>
        parts = cmd.split()
        if "name" in parts and "value" in parts:
            name = parts[parts.index("name") + 1]
            self.options[name] = " ".join(parts[parts.index("value") + 1:])

    def handle_go(self, cmd: str) -> None:
        parts = cmd.split()
        if "infinite" in parts or self.stall_search:
            self.searching = True
            self._say(*self._info_lines(2)[:2])
            if self.tick and "infinite" in parts:
                self._halt.clear()
                self._ticker = threading.Thread(target=self._tick_loop, daemon=True)
                self._ticker.start()
            return
        depth = 3
        if "depth" in parts:
            depth = max(1, min(len(PV), int(parts[parts.index("depth") + 1])))
        self._say(*self._info_lines(depth), self._bestmove())

    def _tick_loop(self) -> None:
        # keeps an infinite search talking until stop
        depth = 3
        while not self._halt.wait(self.tick):
            self._say(f"info depth {depth} score cp {10 * depth} pv {' '.join(PV[:2])}")
            depth += 1

    def handle_stop(self) -> None:
        if self._ticker is not None:
            self._halt.set()
            self._ticker.join()
            self._ticker = None
        if self.searching:
            self.searching = False
            self._say(self._bestmove())

    def loop(self) -> int:
        while True:
            line = sys.stdin.readline()
            if not line:
                return 0
            cmd = line.strip()
            if not cmd:
                continue

            if self.crash_on and cmd.startswith(self.crash_on):
                print(f"crashing on '{cmd}'", file=sys.stderr, flush=True)
                return 3

            if cmd == "usi":
                self.handle_usi()
            elif cmd == "isready":
                self._say("readyok")
            elif cmd.startswith("setoption "):
                self.handle_setoption(cmd)
            elif cmd in ("usinewgame", "ponderhit") or cmd.startswith("gameover"):
                pass
            elif cmd.startswith("position "):
                self.position = cmd[len("position "):]
            elif cmd == "go" or cmd.startswith("go "):
                self.handle_go(cmd)
            elif cmd == "stop":
                self.handle_stop()
            elif cmd == "eval":
                # no terminator: callers have to rely on the idle timer
                self._say("", "eval = 42")
            elif cmd == "options":
                self._say(*(f"{k} = {v}" for k, v in sorted(self.options.items())), "")
            elif cmd == "quit":
                return 0
            else:
                self._say(f"info string unknown command {cmd}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Scripted USI reference engine")
    parser.add_argument("--name", default=_DEFAULT_ID_NAME)
    parser.add_argument("--mate", type=int, default=None, help="Finish every search with 'score mate N'")
    parser.add_argument("--crash-on", default=None, help="Exit with status 3 when a command starts with this")
    parser.add_argument("--no-usiok", action="store_true", help="Never answer the usi handshake")
    parser.add_argument("--stderr-banner", action="store_true", help="Write one line to stderr at startup")
    parser.add_argument("--stall-search", action="store_true", help="Hold bounded searches until stop, as if movetime were ignored")
    parser.add_argument("--tick", type=float, default=None, help="During go infinite, print an info line every TICK seconds")
    args = parser.parse_args(argv)

    if args.stderr_banner:
        print(f"{args.name} starting", file=sys.stderr, flush=True)

    eng = ReferenceEngine(
        name=args.name,
        mate=args.mate,
        crash_on=args.crash_on,
        answer_usi=not args.no_usiok,
        stall_search=args.stall_search,
        tick=args.tick,
    )
    return eng.loop()


if __name__ == "__main__":
    sys.exit(main())
