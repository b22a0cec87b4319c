"""
Purpose: Exception types raised by the engine process, the USI session and the search stop path.
Usage: Caught by app.py and mapped onto HTTP status codes.
"""
from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for every engine-side failure."""


class SpawnError(EngineError):
    """The engine binary could not be launched (missing, not executable, OS error)."""


class CommandTimeout(EngineError):
    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f'Timeout waiting for response to: "{command}"')


class HandshakeTimeout(CommandTimeout):
    pass


class EngineCrashed(EngineError):
    """The engine process exited while an operation was waiting on it."""

    def __init__(self, returncode: Optional[int], last_stderr: str = ""):
        self.returncode = returncode
        msg = f"engine terminated unexpectedly (code={returncode})"
        if last_stderr:
            msg += f" last stderr='{last_stderr}'"
        super().__init__(msg)


class EngineNotRunning(EngineError):
    pass


class EngineNotReady(EngineError):
    pass


class EngineFatalError(EngineError):
    """Too many crashes inside the retry window; the session will not recover."""


class SearchStopError(EngineError):
    pass


class NoActiveSearch(SearchStopError):
    def __init__(self):
        super().__init__("No search is currently running.")


class InvalidSearchToken(SearchStopError):
    def __init__(self):
        super().__init__("Token does not match the running search.")
