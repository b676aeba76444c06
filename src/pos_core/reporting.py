"""Read-only sales aggregation for the owner dashboard.

Only ``paid`` transactions count. All windows are computed in UTC from the
``now`` argument (or the context clock): *today* is the calendar day of
``now``, the *last 30 days* are today and the 29 days before it, and the
*previous 30 days* are the 30 days before that window.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import CASH_PAYMENT_METHOD, CollectionName, TransactionStatus
from .core_logic import RuntimeContext, utcnow
from .data_manager import TransactionItemRow, TransactionRow


WINDOW_DAYS = 30
RECENT_TRANSACTION_LIMIT = 5
PEAK_HOUR_LIMIT = 5
NO_PRODUCT_NAME = "-"
UNKNOWN_PRODUCT_NAME = "Unknown"


@dataclass(frozen=True)
class TopProduct:
    name: str
    quantity: int
    revenue: Decimal = Decimal("0")


@dataclass(frozen=True)
class RecentTransaction:
    receipt_number: str
    time: str
    amount: Decimal
    method: str


@dataclass(frozen=True)
class DailySummary:
    """Today's paid sales."""

    sales: Decimal
    transactions: int
    cash_payments: Decimal
    cashless_payments: Decimal
    top_product: TopProduct
    recent_transactions: Tuple[RecentTransaction, ...]


@dataclass(frozen=True)
class PaymentSummary:
    """Cash versus cashless split over the last 30 days."""

    cash_amount: Decimal
    cashless_amount: Decimal
    total_amount: Decimal
    cash_transactions: int
    cashless_transactions: int
    total_transactions: int


@dataclass(frozen=True)
class DailyBreakdown:
    date: str
    sales: Decimal
    transactions: int


@dataclass(frozen=True)
class PeakHour:
    hour: str
    transactions: int
    percentage: float


@dataclass(frozen=True)
class MonthlySummary:
    """Last-30-day totals, growth, daily series, and busiest hours."""

    sales: Decimal
    transactions: int
    cash_payments: Decimal
    cashless_payments: Decimal
    top_product: TopProduct
    sales_growth: float
    transaction_growth: float
    daily_breakdown: Tuple[DailyBreakdown, ...]
    peak_hours: Tuple[PeakHour, ...]


@dataclass(frozen=True)
class OwnerDashboard:
    daily: DailySummary
    payment: PaymentSummary
    monthly: MonthlySummary


@dataclass(frozen=True)
class _Windows:
    today_start: datetime
    tomorrow_start: datetime
    last30_start: datetime
    prev30_start: datetime


def _windows(now: datetime) -> _Windows:
    now = _as_utc(now)
    today_start = datetime.combine(now.date(), time.min, tzinfo=UTC)
    last30_start = today_start - timedelta(days=WINDOW_DAYS - 1)
    return _Windows(
        today_start=today_start,
        tomorrow_start=today_start + timedelta(days=1),
        last30_start=last30_start,
        prev30_start=last30_start - timedelta(days=WINDOW_DAYS),
    )


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def transaction_time(transaction: TransactionRow) -> datetime:
    """Parse ``transaction_date``; naive timestamps are taken as UTC."""

    return _as_utc(datetime.fromisoformat(transaction.transaction_date))


def _within(transactions: Iterable[TransactionRow], start: datetime, end: datetime) -> List[TransactionRow]:
    return [transaction for transaction in transactions if start <= transaction_time(transaction) < end]


def _total(transactions: Iterable[TransactionRow]) -> Decimal:
    return sum((transaction.total_amount for transaction in transactions), Decimal("0"))


def _is_cash(transaction: TransactionRow) -> bool:
    return transaction.payment_method == CASH_PAYMENT_METHOD


def _growth(current: Decimal, previous: Decimal) -> float:
    if previous <= 0:
        return 0.0
    return float((current - previous) / previous * 100)


async def _paid_transactions(context: RuntimeContext) -> List[TransactionRow]:
    return await context.store.where(CollectionName.TRANSACTIONS, "status", TransactionStatus.PAID.value)


async def _items_for(context: RuntimeContext, transactions: Sequence[TransactionRow]) -> List[TransactionItemRow]:
    return await context.store.any_of(
        CollectionName.TRANSACTION_ITEMS,
        "transaction_id",
        [transaction.id for transaction in transactions],
    )


async def _product_names(context: RuntimeContext, product_ids: Iterable[int]) -> Dict[int, str]:
    products = await context.store.any_of(CollectionName.PRODUCTS, "id", set(product_ids))
    return {product.id: product.name for product in products}


def _resolve_now(context: RuntimeContext, now: Optional[datetime]) -> datetime:
    return _as_utc(now) if now is not None else utcnow(context)


async def daily_summary(context: RuntimeContext, now: Optional[datetime] = None) -> DailySummary:
    """Summarise today's paid transactions.

    The top product is chosen by quantity sold; ``recent_transactions`` holds
    up to five of today's transactions, newest first.
    """

    windows = _windows(_resolve_now(context, now))
    today = _within(await _paid_transactions(context), windows.today_start, windows.tomorrow_start)
    items = await _items_for(context, today)

    quantities: Counter = Counter()
    for item in items:
        quantities[item.product_id] += item.quantity
    if quantities:
        product_id = max(quantities, key=lambda key: (quantities[key], -key))
        names = await _product_names(context, [product_id])
        top = TopProduct(name=names.get(product_id, UNKNOWN_PRODUCT_NAME), quantity=quantities[product_id])
    else:
        top = TopProduct(name=NO_PRODUCT_NAME, quantity=0)

    newest = sorted(today, key=transaction_time, reverse=True)[:RECENT_TRANSACTION_LIMIT]
    return DailySummary(
        sales=_total(today),
        transactions=len(today),
        cash_payments=_total(t for t in today if _is_cash(t)),
        cashless_payments=_total(t for t in today if not _is_cash(t)),
        top_product=top,
        recent_transactions=tuple(
            RecentTransaction(
                receipt_number=transaction.receipt_number,
                time=transaction.transaction_date,
                amount=transaction.total_amount,
                method="cash" if _is_cash(transaction) else "cashless",
            )
            for transaction in newest
        ),
    )


async def payment_summary(context: RuntimeContext, now: Optional[datetime] = None) -> PaymentSummary:
    """Split the last 30 days of paid sales by payment method."""

    windows = _windows(_resolve_now(context, now))
    recent = _within(await _paid_transactions(context), windows.last30_start, windows.tomorrow_start)
    cash = [transaction for transaction in recent if _is_cash(transaction)]
    cashless = [transaction for transaction in recent if not _is_cash(transaction)]
    return PaymentSummary(
        cash_amount=_total(cash),
        cashless_amount=_total(cashless),
        total_amount=_total(recent),
        cash_transactions=len(cash),
        cashless_transactions=len(cashless),
        total_transactions=len(recent),
    )


def _peak_hours(transactions: Sequence[TransactionRow]) -> Tuple[PeakHour, ...]:
    per_hour = Counter(transaction_time(transaction).hour for transaction in transactions)
    ranked = sorted(range(24), key=lambda hour: (-per_hour[hour], hour))[:PEAK_HOUR_LIMIT]
    busiest = per_hour[ranked[0]] if ranked else 0
    return tuple(
        PeakHour(
            hour=f"{hour:02d}:00-{(hour + 1) % 24:02d}:00",
            transactions=per_hour[hour],
            percentage=(per_hour[hour] / busiest * 100) if busiest else 0.0,
        )
        for hour in ranked
    )


async def monthly_summary(context: RuntimeContext, now: Optional[datetime] = None) -> MonthlySummary:
    """Summarise the last 30 days of paid transactions.

    Returns:
        MonthlySummary: Totals and the cash split; the top product by revenue;
            growth in percent against the previous 30 days (``0.0`` when that
            period had no sales); one breakdown entry per day, oldest first;
            and the five busiest hours with their share of the busiest one.
    """

    windows = _windows(_resolve_now(context, now))
    paid = await _paid_transactions(context)
    recent = _within(paid, windows.last30_start, windows.tomorrow_start)
    previous = _within(paid, windows.prev30_start, windows.last30_start)
    items = await _items_for(context, recent)

    quantity_by_product: Dict[int, int] = defaultdict(int)
    revenue_by_product: Dict[int, Decimal] = defaultdict(Decimal)
    for item in items:
        quantity_by_product[item.product_id] += item.quantity
        revenue_by_product[item.product_id] += item.total_price
    if revenue_by_product:
        product_id = max(revenue_by_product, key=lambda key: (revenue_by_product[key], -key))
        names = await _product_names(context, [product_id])
        top = TopProduct(
            name=names.get(product_id, UNKNOWN_PRODUCT_NAME),
            quantity=quantity_by_product[product_id],
            revenue=revenue_by_product[product_id],
        )
    else:
        top = TopProduct(name=NO_PRODUCT_NAME, quantity=0)

    days: Dict[str, List[TransactionRow]] = {
        (windows.last30_start + timedelta(days=offset)).date().isoformat(): [] for offset in range(WINDOW_DAYS)
    }
    for transaction in recent:
        days[transaction_time(transaction).date().isoformat()].append(transaction)

    sales = _total(recent)
    summary = MonthlySummary(
        sales=sales,
        transactions=len(recent),
        cash_payments=_total(t for t in recent if _is_cash(t)),
        cashless_payments=_total(t for t in recent if not _is_cash(t)),
        top_product=top,
        sales_growth=_growth(sales, _total(previous)),
        transaction_growth=_growth(Decimal(len(recent)), Decimal(len(previous))),
        daily_breakdown=tuple(
            DailyBreakdown(date=day, sales=_total(rows), transactions=len(rows)) for day, rows in days.items()
        ),
        peak_hours=_peak_hours(recent),
    )
    log.debug("Monthly summary: %d paid transactions, %s in sales", summary.transactions, summary.sales)
    return summary


async def owner_dashboard(context: RuntimeContext, now: Optional[datetime] = None) -> OwnerDashboard:
    """Bundle the daily, payment, and monthly summaries for one ``now``."""

    moment = _resolve_now(context, now)
    return OwnerDashboard(
        daily=await daily_summary(context, moment),
        payment=await payment_summary(context, moment),
        monthly=await monthly_summary(context, moment),
    )
