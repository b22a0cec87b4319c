"""
Purpose: Parse USI engine output lines into typed events, summarize a finished search,
and build the command strings the bridge writes to the engine.
Usage: Called by engine_process while pumping stdout and by usi_bridge / app.py.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

USIOK = "usiok"
READYOK = "readyok"

# Commands the engine answers with nothing at all.
VOID_COMMANDS = frozenset({"usinewgame", "gameover", "stop", "ponderhit"})

# Commands reserved for dedicated endpoints; never accepted as raw commands.
BLOCKED_COMMANDS = frozenset({"go", "go mate", "position", "setoption", "quit"})

# Lines that end the output of a raw command.
TERMINAL_TOKENS = frozenset({USIOK, READYOK, "bestmove"})


# ---------------- line types ----------------
@dataclass(frozen=True)
class IdLine:
    key: str
    value: str
    type: str = field(default="id", init=False)


@dataclass(frozen=True)
class OptionLine:
    raw: str
    type: str = field(default="option", init=False)


@dataclass(frozen=True)
class UsiOk:
    type: str = field(default=USIOK, init=False)


@dataclass(frozen=True)
class ReadyOk:
    type: str = field(default=READYOK, init=False)


@dataclass(frozen=True)
class BestMove:
    move: str
    ponder: Optional[str] = None
    type: str = field(default="bestmove", init=False)


@dataclass(frozen=True)
class InfoLine:
    raw: str
    depth: Optional[int] = None
    score: Optional[int] = None   # centipawns
    mate: Optional[int] = None    # >0 engine mates, <0 engine is mated
    pv: Optional[List[str]] = None
    string: Optional[str] = None
    type: str = field(default="info", init=False)


@dataclass(frozen=True)
class RawLine:
    line: str
    type: str = field(default="raw", init=False)


ParsedLine = Union[IdLine, OptionLine, UsiOk, ReadyOk, BestMove, InfoLine, RawLine]


def event_dict(parsed: ParsedLine) -> Dict:
    """JSON-ready dict of a parsed line, without absent fields."""
    return {k: v for k, v in asdict(parsed).items() if v is not None}


def _to_int(tok: Optional[str]) -> Optional[int]:
    if tok is None:
        return None
    try:
        return int(tok)
    except ValueError:
        return None


def parse_info_line(line: str) -> InfoLine:
    # Examples:
    #   info depth 18 seldepth 24 score cp 42 nodes 123456 pv 2g2f 8c8d
    #   info depth 9 score mate -3 pv 5e5d 4f5e
    #   info string book hit
    parts = line.split()
    depth = score = mate = None
    pv = None
    string = None
    it = iter(parts[1:])
    for tok in it:
        if tok == "depth":
            val = _to_int(next(it, None))
            if val is not None and val >= 0:
                depth = val
        elif tok == "score":
            kind = next(it, "")
            val = _to_int(next(it, None))
            if kind == "cp":
                score = val
            elif kind == "mate":
                mate = val
        elif tok == "pv":
            pv = list(it)
            break
        elif tok == "string":
            # free-form text runs to the end of the line
            string = " ".join(it)
            break
    return InfoLine(raw=line, depth=depth, score=score, mate=mate, pv=pv or None, string=string)


def classify(line: str) -> ParsedLine:
    trimmed = line.strip()

    if trimmed == USIOK:
        return UsiOk()
    if trimmed == READYOK:
        return ReadyOk()

    if trimmed.startswith("id "):
        rest = trimmed[3:]
        key, sep, value = rest.partition(" ")
        if sep:
            return IdLine(key=key, value=value)

    if trimmed.startswith("option "):
        return OptionLine(raw=trimmed)

    if trimmed.startswith("bestmove "):
        parts = trimmed.split()
        move = parts[1] if len(parts) > 1 else ""
        ponder = None
        if "ponder" in parts:
            idx = parts.index("ponder")
            if idx + 1 < len(parts):
                ponder = parts[idx + 1]
        return BestMove(move=move, ponder=ponder)

    if trimmed.startswith("info "):
        return parse_info_line(trimmed)

    return RawLine(line=trimmed)


# ---------------- analysis summary ----------------
@dataclass
class AnalysisResult:
    bestmove: Optional[str] = None
    ponder: Optional[str] = None
    mate: bool = False
    mate_length: Optional[int] = None
    mate_moves: Optional[str] = None
    score: Optional[int] = None

    def to_dict(self) -> Dict:
        out: Dict = {"bestmove": self.bestmove, "ponder": self.ponder, "mate": self.mate}
        if self.mate:
            out["mate_length"] = self.mate_length
            out["mate_moves"] = self.mate_moves
        else:
            out["score"] = self.score
        return out


def summarize(lines: Iterable[str]) -> AnalysisResult:
    """
    Reduce the output of one search to its result.

    Only the last info line that reported a score (cp or mate) is consulted;
    a mate distance there wins over any centipawn score. The first bestmove
    line supplies bestmove/ponder.
    """
    last_info: Optional[InfoLine] = None
    best: Optional[BestMove] = None
    for line in lines:
        parsed = classify(line)
        if isinstance(parsed, InfoLine):
            if parsed.mate is not None or parsed.score is not None:
                last_info = parsed
        elif isinstance(parsed, BestMove) and best is None:
            best = parsed

    result = AnalysisResult(
        bestmove=best.move if best else None,
        ponder=best.ponder if best else None,
    )
    if last_info is not None and last_info.mate is not None:
        result.mate = True
        result.mate_length = abs(last_info.mate)
        result.mate_moves = " ".join(last_info.pv or [])
    else:
        result.score = last_info.score if last_info is not None else None
    return result


# ---------------- command builders ----------------
def position_command(sfen: Optional[str] = None, moves: Optional[Sequence[str]] = None) -> str:
    sfen = (sfen or "").strip()
    base = "startpos" if sfen in ("", "startpos") else f"sfen {sfen}"
    suffix = f" moves {' '.join(moves)}" if moves else ""
    return f"position {base}{suffix}"


def go_command(
    waittime: Optional[int] = None,
    depth: Optional[int] = None,
    nodes: Optional[int] = None,
) -> str:
    # waittime == 0 is an unbounded search; depth/nodes do not apply to it
    if waittime == 0:
        return "go infinite"
    parts = ["go"]
    if waittime is not None:
        parts += ["movetime", str(int(waittime))]
    if depth is not None:
        parts += ["depth", str(int(depth))]
    if nodes is not None:
        parts += ["nodes", str(int(nodes))]
    return " ".join(parts)


def setoption_command(name: str, value: Union[str, int, float, bool]) -> str:
    if isinstance(value, bool):
        value = "true" if value else "false"
    return f"setoption name {name} value {value}"


def is_bestmove(parsed: ParsedLine, raw: str = "") -> bool:
    return isinstance(parsed, BestMove)


def raw_command_stop() -> Callable[[ParsedLine, str], bool]:
    """
    Stop predicate for free-form commands. Ends on a terminal token (whole
    line or first word), or on a blank line once real output has arrived.
    Build a fresh one per command: it remembers whether content was seen.
    """
    has_content = False

    def stop(parsed: ParsedLine, raw: str) -> bool:
        nonlocal has_content
        trimmed = raw.strip()
        if trimmed in TERMINAL_TOKENS:
            return True
        first = trimmed.split(" ", 1)[0]
        if first and first in TERMINAL_TOKENS:
            return True
        if trimmed == "":
            return has_content
        has_content = True
        return False

    return stop
