"""Cash-flow projection: past balances plus a forecast up to the horizon.

The series starts at the configured salary on the first day of the
window and walks forward bucket by bucket:

- **Past buckets** (starting on or before *today*) add the real
  transaction amounts of the bucket and carry ``actual_balance``.
- **Future buckets** carry ``projected_balance``. Daily buckets add the
  planned entries due that day plus the average past daily change
  times ``DAMPING ** k`` for the k-th day ahead. The damping scales the
  trend added each day, not the running balance, so planned entries
  and the balance reached so far are carried forward in full. Weekly
  buckets use the planned entries when planned income lands that week,
  otherwise the average past week.

Short windows (``1M``, ``3M``) use one bucket per day and project to the
end of the current month. Longer windows (``6M``, ``1A``, ``All``) use
four buckets per month (days 1-7, 8-14, 15-21, 22-end) and project to
the end of next month.

Every point also carries the average of the last few past balances
(seven for daily, five for weekly) so callers can draw a smoothed line.
All arithmetic is done in floats; balances are rounded to whole units
only when stored on a point.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from moni.models import (
    PROJECTION_WINDOWS,
    FinancialConfig,
    PlannedEntry,
    Projection,
    ProjectionPoint,
    Transaction,
)

logger = logging.getLogger(__name__)

# Months of history shown by each window. "All" starts at the oldest transaction.
WINDOW_MONTHS = {"1M": 1, "3M": 3, "6M": 6, "1A": 12}
DAILY_WINDOWS = ("1M", "3M")

# Weight of the historical daily trend k days ahead is DAMPING ** k.
DAMPING = 0.9

DAILY_TRAILING_POINTS = 7
WEEKLY_TRAILING_POINTS = 5

# Week buckets of a month: (first day, last day); 0 means month end.
WEEK_RANGES = ((1, 7), (8, 14), (15, 21), (22, 0))

TREND_MONTHS = 3
TREND_BAND_PERCENT = 5.0


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------


def month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def add_months(day: date, months: int) -> date:
    """Shift *day* by whole months, clamping to the end of shorter months."""
    index = day.year * 12 + day.month - 1 + months
    year, month = divmod(index, 12)
    last = calendar.monthrange(year, month + 1)[1]
    return date(year, month + 1, min(day.day, last))


def expand_recurrence(entry: PlannedEntry, until: date) -> list[PlannedEntry]:
    """Return the occurrences of *entry* due on or before *until*.

    The first occurrence keeps the entry's ``conciliado`` flag; later
    ones are unreconciled copies whose id gets a ``_proj_<n>`` suffix.
    ``mensal`` and ``anual`` keep the day of month, clamped to the end of
    shorter months. Unknown recurrences behave like ``unico``.
    """
    occurrences: list[PlannedEntry] = []
    index = 0
    while True:
        due = _occurrence_date(entry, index)
        if due is None or due > until:
            return occurrences
        if index == 0:
            occurrences.append(entry)
        else:
            occurrences.append(
                replace(entry, id=f"{entry.id}_proj_{index}", due_date=due, conciliado=False)
            )
        index += 1


def _occurrence_date(entry: PlannedEntry, index: int) -> date | None:
    if index == 0:
        return entry.due_date
    if entry.recurrence == "diario":
        return entry.due_date + timedelta(days=index)
    if entry.recurrence == "quinzenal":
        return entry.due_date + timedelta(days=15 * index)
    if entry.recurrence == "mensal":
        return add_months(entry.due_date, index)
    if entry.recurrence == "anual":
        return add_months(entry.due_date, 12 * index)
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def project(
    transactions: Iterable[Transaction],
    config: FinancialConfig,
    planned: Iterable[PlannedEntry] = (),
    window: str = "1M",
    today: date | None = None,
) -> Projection:
    """Build the balance series for *window* as seen on *today*.

    Args:
        transactions: The household's transactions, any order.
        config: Supplies ``salary`` (starting balance) and
            ``safety_floor``.
        planned: Planned entries; recurring ones are expanded.
        window: One of ``"1M"``, ``"3M"``, ``"6M"``, ``"1A"``, ``"All"``.
        today: Reference day separating history from forecast. Defaults
            to the current date.

    Raises:
        ValueError: If *window* is unknown.
    """
    if window not in PROJECTION_WINDOWS:
        raise ValueError(
            f"Unknown projection window {window!r}; expected one of {', '.join(PROJECTION_WINDOWS)}"
        )
    if today is None:
        today = date.today()

    txs = list(transactions)
    daily = window in DAILY_WINDOWS
    start = window_start(window, today, txs)
    horizon = month_end(today) if daily else month_end(add_months(today.replace(day=1), 1))
    buckets = daily_buckets(start, horizon) if daily else weekly_buckets(start, horizon)

    planned_by_day = _future_planned(planned, today, horizon)
    floor = _round(config.safety_floor)

    # Past pass: real deltas.
    running = float(config.salary)
    points: list[ProjectionPoint] = []
    past_deltas: list[float] = []
    past_balances: list[float] = []
    future: list[tuple[date, date]] = []
    for first, last in buckets:
        if first > today:
            future.append((first, last))
            continue
        delta = sum(float(t.amount) for t in txs if first <= t.date <= last and t.date <= today)
        running += delta
        past_deltas.append(delta)
        past_balances.append(running)
        points.append(
            ProjectionPoint(
                label=_label(first, last, daily),
                start=first,
                end=last,
                floor=floor,
                actual_balance=_round(running),
            )
        )

    # Future pass: planned entries plus the historical trend.
    average_delta = sum(past_deltas) / len(past_deltas) if past_deltas else 0.0
    for ahead, (first, last) in enumerate(future, start=1):
        amounts = [a for d, day_amounts in planned_by_day.items() if first <= d <= last for a in day_amounts]
        if daily:
            running += sum(amounts) + average_delta * DAMPING**ahead
        elif any(a > 0 for a in amounts):
            running += sum(amounts)
        else:
            running += average_delta
        points.append(
            ProjectionPoint(
                label=_label(first, last, daily),
                start=first,
                end=last,
                floor=floor,
                projected_balance=_round(running),
            )
        )

    _fill_trailing_average(points, past_balances, DAILY_TRAILING_POINTS if daily else WEEKLY_TRAILING_POINTS)

    trend, trend_percent = spending_trend(txs, window, today, start)
    crosses = any(p.balance is not None and p.balance < config.safety_floor for p in points)
    if crosses:
        logger.info("Projection for %s crosses the safety floor of %s", window, floor)

    return Projection(
        points=points,
        granularity="daily" if daily else "weekly",
        crosses_floor=crosses,
        trend=trend,
        trend_percent=trend_percent,
    )


def window_start(window: str, today: date, transactions: list[Transaction]) -> date:
    """First day shown by *window*: always the first day of a month."""
    current = today.replace(day=1)
    if window == "All":
        if not transactions:
            return current
        oldest = min(t.date for t in transactions).replace(day=1)
        return min(oldest, current)
    return add_months(current, -(WINDOW_MONTHS[window] - 1))


def daily_buckets(start: date, end: date) -> list[tuple[date, date]]:
    days = [start + timedelta(days=i) for i in range((end - start).days + 1)]
    return [(day, day) for day in days]


def weekly_buckets(start: date, end: date) -> list[tuple[date, date]]:
    """Split every month from *start* to *end* into the four week ranges."""
    buckets: list[tuple[date, date]] = []
    month = start.replace(day=1)
    while month <= end:
        last_day = month_end(month).day
        for first, last in WEEK_RANGES:
            buckets.append((month.replace(day=first), month.replace(day=last or last_day)))
        month = add_months(month, 1)
    return buckets


def spending_trend(
    transactions: list[Transaction],
    window: str,
    today: date,
    start: date | None = None,
) -> tuple[str, float]:
    """Compare the window's monthly spend with the previous three months.

    The window's spend is the total of its expenses up to *today* divided
    by the number of months it covers. The baseline is the average of the
    three calendar months before the current one.

    Returns:
        ``("up" | "down" | "stable", percent change)``. A baseline of zero
        yields ``("stable", 0.0)``.
    """
    current = today.replace(day=1)
    if start is None:
        start = window_start(window, today, transactions)
    months = (current.year - start.year) * 12 + current.month - start.month + 1

    window_spend = _expenses(transactions, start, today) / months
    baseline_start = add_months(current, -TREND_MONTHS)
    baseline = _expenses(transactions, baseline_start, current - timedelta(days=1)) / TREND_MONTHS

    if baseline <= 0:
        return "stable", 0.0
    percent = round((window_spend - baseline) / baseline * 100, 1)
    if percent > TREND_BAND_PERCENT:
        return "up", percent
    if percent < -TREND_BAND_PERCENT:
        return "down", percent
    return "stable", percent


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _future_planned(
    planned: Iterable[PlannedEntry], today: date, horizon: date
) -> dict[date, list[float]]:
    """Amounts of open planned occurrences due after *today*, by day."""
    by_day: dict[date, list[float]] = {}
    for entry in planned:
        for occurrence in expand_recurrence(entry, horizon):
            if occurrence.conciliado or occurrence.due_date <= today:
                continue
            by_day.setdefault(occurrence.due_date, []).append(float(occurrence.amount))
    return by_day


def _fill_trailing_average(points: list[ProjectionPoint], past_balances: list[float], size: int) -> None:
    for idx, point in enumerate(points):
        seen = past_balances[: idx + 1] if point.actual_balance is not None else past_balances
        recent = seen[-size:]
        if recent:
            point.trailing_average = _round(sum(recent) / len(recent))


def _expenses(transactions: list[Transaction], first: date, last: date) -> float:
    return sum(-float(t.amount) for t in transactions if t.amount < 0 and first <= t.date <= last)


def _label(first: date, last: date, daily: bool) -> str:
    if daily:
        return first.strftime("%d/%m")
    return f"{first.day:02d}-{last.day:02d}/{first.month:02d}"


def _round(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
