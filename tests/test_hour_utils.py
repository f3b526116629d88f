import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from hour_utils import hour_label, ordinal, parse_hour_index  # noqa: E402


def test_ordinal_suffixes():
    assert [ordinal(n) for n in (1, 2, 3, 4, 11, 12, 13, 21, 22, 23)] == [
        '1st', '2nd', '3rd', '4th', '11th', '12th', '13th', '21st', '22nd', '23rd',
    ]
    assert ordinal('x') == ''


def test_hour_label():
    assert hour_label(1) == '1st Hour'
    assert hour_label('12') == '12th Hour'
    assert hour_label(None) == '-'


def test_parse_hour_index():
    assert parse_hour_index('2nd Hour') == 2
    assert parse_hour_index(' 10th Hour') == 10
    assert parse_hour_index(7) == 7
    assert parse_hour_index('Hour') is None
    assert parse_hour_index(None) is None
