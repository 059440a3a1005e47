"""Shared fixtures: a throwaway SQLite database per test"""
import datetime

import pytest

from osutrack.change_detector import ChangeDetector
from osutrack.db import Database
from osutrack.delta import DeltaEngine
from osutrack.hiscores import HighScoreTracker
from osutrack.ingest import IngestionCoordinator

from helpers import T0

@pytest.fixture
def database(tmp_path):
    """A fresh file-backed SQLite database per test"""
    database = Database()
    database.init(f"sqlite:///{tmp_path / 'osutrack.db'}")
    yield database
    database.dispose()

@pytest.fixture
def coordinator(database):
    return IngestionCoordinator(database, ChangeDetector(float_epsilon=1e-4), max_retries=3)

@pytest.fixture
def engine(database):
    return DeltaEngine(database)

@pytest.fixture
def hiscores(database):
    return HighScoreTracker(database)

@pytest.fixture
def at():
    """Timestamps relative to T0: at(minutes=5)"""
    def _at(**kwargs):
        return T0 + datetime.timedelta(**kwargs)
    return _at
