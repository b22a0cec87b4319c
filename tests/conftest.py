"""Pytest configuration: run the bundled reference engine as the USI subprocess."""
import os
import sys

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
REFERENCE_ENGINE = os.path.join(ROOT, "usi_reference_engine.py")


def engine_args(*flags):
    return [REFERENCE_ENGINE, *flags]


@pytest.fixture
def make_bridge():
    """Build UsiBridge instances around the reference engine with test-sized timers."""
    from usi_bridge import UsiBridge

    def factory(*flags, options=None, **kwargs):
        kwargs.setdefault("usi_timeout", 5.0)
        kwargs.setdefault("ready_timeout", 5.0)
        kwargs.setdefault("restart_backoff", 0.01)
        return UsiBridge(sys.executable, options, args=engine_args(*flags), **kwargs)

    return factory


@pytest.fixture
async def bridge(make_bridge):
    b = make_bridge(options={"USI_Hash": 128})
    await b.initialize()
    yield b
    await b.shutdown()
