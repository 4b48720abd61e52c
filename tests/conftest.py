import threading
from datetime import datetime, timedelta, timezone

import pytest

from clinic_queue.seed import build_engine


class FakeClock:
    """Deterministic clock: every reading is `step` seconds after the last."""

    def __init__(self, start=None, step=1.0):
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        self.step = timedelta(seconds=step)
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            now = self.current
            self.current += self.step
            return now

    def advance(self, **kwargs):
        with self._lock:
            self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    return build_engine(clock=clock)
