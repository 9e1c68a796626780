from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from circdesk import database
from circdesk.catalog import CatalogStore
from circdesk.circulation import CirculationEngine
from circdesk.models import PatronClass, PatronStatus
from circdesk.patrons import PatronDirectory
from circdesk.settings_store import StaticSettingsProvider

START = datetime(2026, 3, 2, 10, 0, 0)


class FrozenClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingStatistics:
    def __init__(self):
        self.calls = []
        self.fail = False

    def record_borrow(self, call_number, patron_class, when=None):
        if self.fail:
            raise RuntimeError("statistics backend down")
        self.calls.append((call_number, patron_class, when))
        return True


@pytest.fixture
def db_file(tmp_path, monkeypatch):
    # Per-test database; code paths that fall back to the default file use it too
    path = str(tmp_path / "circulation_test.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    database.initialize_database(path)
    return path


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def policy():
    return StaticSettingsProvider()


@pytest.fixture
def stats():
    return RecordingStatistics()


@pytest.fixture
def engine(db_file, policy, stats, clock):
    return CirculationEngine(db_file=db_file, policy=policy, statistics=stats, clock=clock)


@pytest.fixture
def catalog(db_file, clock):
    return CatalogStore(db_file=db_file, clock=clock)


@pytest.fixture
def patrons(db_file):
    return PatronDirectory(db_file=db_file)


@pytest.fixture
def library(catalog, patrons):
    """Two patrons of each kind, one priced title and one unpriced title with copies."""
    student = patrons.register("2024-0001", "Ana Reyes", PatronClass.STUDENT)
    other_student = patrons.register("2024-0002", "Ben Cruz", PatronClass.STUDENT)
    faculty = patrons.register("F-100", "Dr. Lim", PatronClass.FACULTY)
    inactive_faculty = patrons.register(
        "F-200", "Dr. Santos", PatronClass.FACULTY, status=PatronStatus.INACTIVE
    )
    priced = catalog.add_title("Noli Me Tangere", "Jose Rizal", call_number="243.1", price=Decimal("350"))
    unpriced = catalog.add_title("Florante at Laura", "Francisco Balagtas", call_number="899.2")
    assets = [catalog.add_asset(priced.id, building="Main", aisle="A", shelf="1") for _ in range(4)]
    assets.append(catalog.add_asset(unpriced.id, building="Main", aisle="B", shelf="2"))
    return SimpleNamespace(
        student=student,
        other_student=other_student,
        faculty=faculty,
        inactive_faculty=inactive_faculty,
        priced=priced,
        unpriced=unpriced,
        assets=assets,
        codes=[asset.asset_code for asset in assets],
    )
