"""
Purpose: Frame analysis events for the /api/analyze/stream response.
Usage: yield sse_event({"type": "info", ...}); yield sse_comment("keepalive")
"""
import json
from typing import Dict


def sse_event(event: Dict) -> str:
    # engine names and info strings may be Japanese; keep them readable on the wire
    payload = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
    return f"data: {payload}\n\n"


def sse_comment(text: str) -> str:
    # comment frames keep proxies from closing an idle stream
    return f": {text}\n\n"
