import pytest

from devorch.UTILS.durations import parse_duration


@pytest.mark.parametrize("value,expected", [
    ("30s", 30.0),
    ("1m30s", 90.0),
    ("500ms", 0.5),
    ("1h", 3600.0),
    ("250us", 0.00025),
    ("1.5s", 1.5),
    ("12", 12.0),
    (7, 7.0),
    (0.25, 0.25),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


def test_default_for_missing():
    assert parse_duration(None, 30.0) == 30.0
    assert parse_duration("", 5.0) == 5.0


@pytest.mark.parametrize("value", ["abc", "10 parsecs", "s", "1m 30s"])
def test_invalid(value):
    with pytest.raises(ValueError):
        parse_duration(value)
