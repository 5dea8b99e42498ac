"""Shared pytest fixtures for notebackup tests."""

import itertools

import pytest
from dotenv import load_dotenv

from notebackup.handles import MemoryDirectoryHandle
from notebackup.store import MemoryDocumentCollection
from notebackup.sync.caches import to_datetime
from notebackup.sync.engine import BackupEngine

load_dotenv()

START_MS = 1_700_000_000_000.0


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: float = START_MS) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backup_dir(clock):
    """Empty in-memory backup root sharing the fake clock."""
    return MemoryDirectoryHandle("backup", clock)


@pytest.fixture
def collection(clock):
    """Empty collection with predictable ids ``id00000001``, ``id00000002``..."""
    counter = itertools.count(1)
    return MemoryDocumentCollection(
        "c1",
        id_factory=lambda: f"id{next(counter):08d}",
        clock=lambda: to_datetime(clock()),
    )


@pytest.fixture
def engine(backup_dir, collection, clock):
    return BackupEngine(backup_dir, collection, clock=clock)


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Run from an empty working directory with a fake home and no config."""
    monkeypatch.delenv("NOTEBACKUP_CONFIG", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.chdir(tmp_path)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return tmp_path
