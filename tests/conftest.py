"""
conftest.py — Shared fixtures for maxtouch_studio tests.
"""
import sys
from pathlib import Path

import pytest

# Ensure the parent directory is on sys.path so we can import the main module
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import maxtouch_studio as mts  # noqa: E402


@pytest.fixture
def loopback() -> mts.LoopbackTransport:
    """A simulated 8x6 controller with the default object table."""
    return mts.LoopbackTransport()


@pytest.fixture
def comm(loopback) -> mts.MaxTouchComm:
    """MaxTouchComm connected to the loopback controller, TX log cleared."""
    c = mts.MaxTouchComm(loopback)
    c.connect()
    loopback.tx_log.clear()
    yield c
    c.disconnect()
