import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

_MONTH_KEY = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True, order=True)
class Month:
    year: int
    month: int

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return self.shift(1).start - date.resolution

    def shift(self, count: int) -> "Month":
        month_index = (self.year * 12) + (self.month - 1) + count
        return Month(month_index // 12, (month_index % 12) + 1)

    def contains(self, day: date) -> bool:
        return day.year == self.year and day.month == self.month


@dataclass(frozen=True)
class MonthTab:
    key: str
    label: str


def parse_month(key: Optional[str]) -> Month:
    match = _MONTH_KEY.match((key or "").strip())
    if not match:
        raise ValueError("Month must be in YYYY-MM form")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 01 and 12")
    return Month(year, month)


def month_of(day: date) -> Month:
    return Month(day.year, day.month)


def current_month(today: Optional[date] = None) -> Month:
    return month_of(today or date.today())


def recent_months(count: int = 6, today: Optional[date] = None) -> list[Month]:
    first = current_month(today)
    return [first.shift(-i) for i in range(count)]


def month_tabs(today: Optional[date] = None) -> list[MonthTab]:
    now = current_month(today)
    tabs = [MonthTab(now.shift(1).key, "Future"), MonthTab(now.key, "Now")]
    for i in range(1, 6):
        month = now.shift(-i)
        tabs.append(MonthTab(month.key, month.start.strftime("%b-%y")))
    return tabs
