from datetime import datetime

import pytest

from circdesk.circulation import CirculationEngine
from circdesk.models import PatronClass
from circdesk.statistics import StatisticsRecorder, classify_call_number


@pytest.mark.parametrize(
    "call_number, expected",
    [("243.1", (200, 299)), ("5", (0, 99)), ("099", (0, 99)), ("999.9 R62", (900, 999)), ("QA76", None), ("", None), (None, None)],
)
def test_classify_call_number(call_number, expected):
    assert classify_call_number(call_number) == expected


def test_record_borrow_accumulates_by_month_and_class(db_file):
    recorder = StatisticsRecorder(db_file=db_file)
    march = datetime(2026, 3, 5)

    assert recorder.record_borrow("243.1", PatronClass.STUDENT, march)
    assert recorder.record_borrow("250", PatronClass.STUDENT, march)
    assert recorder.record_borrow("201", PatronClass.FACULTY, march)
    assert recorder.record_borrow("801", PatronClass.STUDENT, datetime(2026, 4, 1))
    assert recorder.record_borrow("QA76", PatronClass.STUDENT, march) is False

    students = recorder.yearly_matrix(2026, PatronClass.STUDENT)
    assert students["200-299"][3] == 2
    assert students["800-899"][4] == 1
    assert students["000-099"][1] == 0

    everyone = recorder.yearly_matrix(2026)
    assert everyone["200-299"][3] == 3
    assert recorder.yearly_matrix(2025)["200-299"][3] == 0


def test_engine_feeds_the_recorder(db_file, policy, clock, library):
    recorder = StatisticsRecorder(db_file=db_file)
    engine = CirculationEngine(db_file=db_file, policy=policy, statistics=recorder, clock=clock)

    engine.borrow(library.student.id, library.codes[0])
    engine.borrow(library.faculty.id, library.codes[4])

    matrix = recorder.yearly_matrix(2026)
    assert matrix["200-299"][3] == 1
    assert matrix["800-899"][3] == 1


def test_ranges_come_from_library_settings(db_file):
    from circdesk.settings_store import LibrarySettings

    library_settings = LibrarySettings(db_file=db_file)
    library_settings.set_value(
        "statistics_ranges",
        [{"start": 0, "end": 499, "label": "000-499"}, {"start": 500, "end": 999, "label": "500-999"}],
    )
    recorder = StatisticsRecorder(db_file=db_file, library_settings=library_settings)

    assert recorder.record_borrow("243.1", PatronClass.STUDENT, datetime(2026, 3, 5))
    assert recorder.record_borrow("612", PatronClass.STUDENT, datetime(2026, 3, 6))

    matrix = recorder.yearly_matrix(2026)
    assert set(matrix) == {"000-499", "500-999"}
    assert matrix["000-499"][3] == 1
    assert matrix["500-999"][3] == 1


def test_matrix_keys_match_seeded_labels(db_file):
    matrix = StatisticsRecorder(db_file=db_file).yearly_matrix(2026)
    assert list(matrix)[:2] == ["000-099", "100-199"]
    assert len(matrix) == 10
