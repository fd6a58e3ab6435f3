from datetime import date

import pytest

from periods import Month, month_tabs, parse_month, recent_months


def test_parse_month_accepts_year_month_keys() -> None:
    month = parse_month(" 2024-02 ")

    assert month == Month(2024, 2)
    assert month.key == "2024-02"
    assert month.start == date(2024, 2, 1)
    assert month.end == date(2024, 2, 29)
    assert Month(2024, 12).end == date(2024, 12, 31)


@pytest.mark.parametrize("key", ["", None, "2024-2", "2024/02", "24-02", "2024-13", "2024-00"])
def test_parse_month_rejects_malformed_keys(key) -> None:
    with pytest.raises(ValueError):
        parse_month(key)


def test_shift_crosses_year_boundaries() -> None:
    assert Month(2025, 1).shift(-1) == Month(2024, 12)
    assert Month(2024, 12).shift(1) == Month(2025, 1)
    assert Month(2025, 3).shift(-14) == Month(2024, 1)


def test_month_tabs_start_with_future_and_now() -> None:
    tabs = month_tabs(date(2025, 1, 15))

    assert [t.key for t in tabs] == [
        "2025-02",
        "2025-01",
        "2024-12",
        "2024-11",
        "2024-10",
        "2024-09",
        "2024-08",
    ]
    assert [t.label for t in tabs[:3]] == ["Future", "Now", "Dec-24"]


def test_recent_months_newest_first() -> None:
    months = recent_months(3, date(2025, 2, 1))

    assert [m.key for m in months] == ["2025-02", "2025-01", "2024-12"]
