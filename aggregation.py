"""Monthly ledger aggregation over a live transaction stream.

Every emission of the transaction collection is a complete snapshot, so the
derived views are rebuilt from scratch each time: nothing is carried over
from the previous emission. Records whose date cannot be read are skipped
without raising.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from config import get_settings
from docstore import DocumentSnapshot, ErrorListener, SnapshotListener, Unsubscribe
from models import TransactionType
from periods import Month, parse_month
from schemas import Transaction

logger = logging.getLogger(__name__)


def local_timezone() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def parse_timestamp(value: Any, tz: Optional[ZoneInfo] = None) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, date):
        ts = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    elif isinstance(value, dict) and isinstance(value.get("seconds"), (int, float)):
        # exported store timestamps: {"seconds": ..., "nanoseconds": ...}
        try:
            ts = datetime.fromtimestamp(value["seconds"], tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        return None
    if ts.tzinfo is not None:
        try:
            ts = ts.astimezone(tz or local_timezone()).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    return ts


def coerce_amount(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return 0
    if not number.is_finite():
        return 0
    return int(number)


def parse_transaction(
    snapshot: DocumentSnapshot, tz: Optional[ZoneInfo] = None
) -> Optional[Transaction]:
    data = snapshot.data
    ts = parse_timestamp(data.get("date"), tz)
    if ts is None:
        logger.debug(f"skip_transaction: id={snapshot.id} reason=unreadable_date")
        return None
    try:
        return Transaction(
            id=snapshot.id,
            amount=coerce_amount(data.get("amount")),
            category_id=data.get("categoryId"),
            category_name=data.get("categoryName"),
            category_type=data.get("categoryType"),
            date=ts,
            note=data.get("note"),
        )
    except ValidationError:
        logger.debug(f"skip_transaction: id={snapshot.id} reason=invalid_fields")
        return None


def parse_transactions(
    snapshots: Iterable[DocumentSnapshot], tz: Optional[ZoneInfo] = None
) -> list[Transaction]:
    tz = tz or local_timezone()
    parsed = (parse_transaction(s, tz) for s in snapshots)
    return [txn for txn in parsed if txn is not None]


@dataclass(frozen=True)
class LedgerSummary:
    month: str
    monthly_income: int = 0
    monthly_expense: int = 0
    total_income: int = 0
    total_expense: int = 0

    @property
    def all_time_balance(self) -> int:
        return self.total_income - self.total_expense


@dataclass
class DayGroup:
    day: date
    items: list[Transaction] = field(default_factory=list)
    income: int = 0
    expense: int = 0

    @property
    def key(self) -> str:
        return self.day.isoformat()

    @property
    def balance(self) -> int:
        return self.income - self.expense


@dataclass(frozen=True)
class LedgerView:
    summary: LedgerSummary
    days: list[DayGroup]


def summarize(transactions: Iterable[Transaction], month: Month) -> LedgerSummary:
    totals = {TransactionType.income.value: 0, TransactionType.expense.value: 0}
    monthly = dict(totals)
    for txn in transactions:
        if txn.category_type not in totals:
            continue
        totals[txn.category_type] += txn.amount
        if month.contains(txn.date.date()):
            monthly[txn.category_type] += txn.amount
    return LedgerSummary(
        month=month.key,
        monthly_income=monthly[TransactionType.income.value],
        monthly_expense=monthly[TransactionType.expense.value],
        total_income=totals[TransactionType.income.value],
        total_expense=totals[TransactionType.expense.value],
    )


def group_by_day(transactions: Iterable[Transaction], month: Month) -> list[DayGroup]:
    in_month = [txn for txn in transactions if month.contains(txn.date.date())]
    in_month.sort(key=lambda txn: (txn.date, txn.id), reverse=True)

    groups: dict[date, DayGroup] = {}
    for txn in in_month:
        day = txn.date.date()
        group = groups.get(day)
        if group is None:
            group = groups[day] = DayGroup(day)
        group.items.append(txn)
        if txn.category_type == TransactionType.income.value:
            group.income += txn.amount
        elif txn.category_type == TransactionType.expense.value:
            group.expense += txn.amount
    return [groups[day] for day in sorted(groups, reverse=True)]


def build_view(transactions: list[Transaction], month: Month) -> LedgerView:
    return LedgerView(summarize(transactions, month), group_by_day(transactions, month))


Subscribe = Callable[[SnapshotListener, ErrorListener], Unsubscribe]


class MonthlyAggregator:
    """Keeps the ledger view for one month in sync with a live subscription.

    The latest snapshot is cached, so ``select_month`` re-derives the view
    without a new round-trip. A subscription error is terminal: the
    aggregator stops listening and reports it once through ``on_error``.
    """

    def __init__(
        self,
        subscribe: Subscribe,
        month: str,
        *,
        on_change: Optional[Callable[[LedgerView], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        tz: Optional[ZoneInfo] = None,
    ) -> None:
        self._subscribe = subscribe
        self._month = parse_month(month)
        self._on_change = on_change
        self._on_error = on_error
        self._tz = tz or local_timezone()
        self._transactions: Optional[list[Transaction]] = None
        self._view: Optional[LedgerView] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._lock = threading.RLock()
        self.error: Optional[Exception] = None

    @property
    def month(self) -> str:
        return self._month.key

    @property
    def view(self) -> Optional[LedgerView]:
        return self._view

    @property
    def is_loading(self) -> bool:
        return self._transactions is None and self.error is None

    @property
    def is_listening(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        self.error = None
        unsubscribe = self._subscribe(self._handle_snapshot, self._handle_error)
        if self.error is not None:
            unsubscribe()
            return
        self._unsubscribe = unsubscribe

    def stop(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

    def select_month(self, key: str) -> Optional[LedgerView]:
        month = parse_month(key)
        with self._lock:
            self._month = month
            if self._transactions is None:
                return None
            return self._publish(build_view(self._transactions, month))

    def _handle_snapshot(self, snapshots: list[DocumentSnapshot]) -> None:
        transactions = parse_transactions(snapshots, self._tz)
        with self._lock:
            self._transactions = transactions
            self._publish(build_view(transactions, self._month))

    def _handle_error(self, exc: Exception) -> None:
        logger.warning(f"ledger_subscription_failed: month={self.month} error={exc}")
        self.error = exc
        self._unsubscribe = None
        if self._on_error is not None:
            self._on_error(exc)

    def _publish(self, view: LedgerView) -> LedgerView:
        self._view = view
        if self._on_change is not None:
            self._on_change(view)
        return view
