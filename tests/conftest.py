"""pytest setup: import path and shared fixtures"""

import io
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from rich.console import Console

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from proccatch import ConsoleSink, SessionRecord  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 12, 0, 0))


@pytest.fixture
def make_record():
    def _make(id=1, statement="SELECT 1", state="executing", user="app",
              host="10.0.0.5:51234", database="shop", command="Query", elapsed=0):
        return SessionRecord(
            id=id,
            user=user,
            host=host,
            database=database,
            command=command,
            elapsed_seconds=elapsed,
            state=state,
            statement_text=statement,
        )
    return _make


@pytest.fixture
def console_output():
    """Plain (no color) console writing into a buffer"""
    buffer = io.StringIO()
    console = Console(file=buffer, color_system=None, highlight=False, width=200)
    return ConsoleSink(console), buffer


@pytest.fixture
def color_console_output():
    buffer = io.StringIO()
    console = Console(file=buffer, force_terminal=True, color_system="standard",
                      highlight=False, width=200)
    return ConsoleSink(console), buffer
