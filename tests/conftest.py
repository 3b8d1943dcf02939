import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "bridges" / "citrix-monitor" / "tools"))


class FakeSource:
    """In-memory record source that counts fetches per collection."""

    def __init__(self, collections=None, failing=()):
        self.collections = collections or {}
        self.failing = set(failing)
        self.calls = []

    def __call__(self, name):
        self.calls.append(name)
        if name in self.failing:
            raise ConnectionError(f"{name}: 503 Service Unavailable")
        if name not in self.collections:
            raise KeyError(name)
        return [dict(r) for r in self.collections[name]]

    def count(self, name):
        return self.calls.count(name)


@pytest.fixture
def make_source():
    return FakeSource
