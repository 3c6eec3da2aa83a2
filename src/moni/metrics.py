"""Aggregates over classified transactions for the dashboard.

Plain reducers with no I/O. Anything tied to "the current month" takes
the reference day or the month explicitly.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from moni.categorizer import is_dinner
from moni.models import (
    DEFAULT_PROFILE,
    REWARD_SOURCE,
    CurrencyGoal,
    DinnerBudget,
    EfficiencyStats,
    EstablishmentRank,
    FinancialConfig,
    MilesProgress,
    MonthlyTotals,
    MonthSummary,
    Transaction,
)
from moni.projection import add_months

ALL_PROFILES = "todos"

MONTH_NAMES = ("Jan", "Fev", "Mar", "Abr", "Mai", "Jun", "Jul", "Ago", "Set", "Out", "Nov", "Dez")

# Current-month average above this multiple of the historical one is flagged.
PRICE_ALERT_RATIO = Decimal("1.2")
PRICE_ALERT_MONTHS = 3

ZERO = Decimal("0")


def _by_profile(txs: Iterable[Transaction], profile: str) -> list[Transaction]:
    """Rows of *profile*; shared household rows always count."""
    if profile == ALL_PROFILES:
        return list(txs)
    return [t for t in txs if t.spouse_profile in (profile, DEFAULT_PROFILE)]


def _round_int(value: Decimal | float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _percent(numerator: float, denominator: float) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator * 100, 1)


# ---------------------------------------------------------------------------
# Category and merchant breakdowns
# ---------------------------------------------------------------------------


def sum_by_category(txs: Iterable[Transaction], profile: str = ALL_PROFILES) -> dict[str, Decimal]:
    """Total spend per category key (expenses only, as positive amounts)."""
    totals: dict[str, Decimal] = {}
    for t in _by_profile(txs, profile):
        if t.amount < 0:
            totals[t.category] = totals.get(t.category, ZERO) + abs(t.amount)
    return totals


def top_establishments(
    txs: Iterable[Transaction],
    limit: int = 5,
    profile: str = ALL_PROFILES,
) -> list[EstablishmentRank]:
    """Merchants ranked by total spend, largest first."""
    totals: dict[str, list] = {}
    for t in _by_profile(txs, profile):
        if t.amount >= 0 or not t.establishment:
            continue
        entry = totals.setdefault(t.establishment, [ZERO, 0])
        entry[0] += abs(t.amount)
        entry[1] += 1
    ranked = sorted(totals.items(), key=lambda item: item[1][0], reverse=True)
    return [
        EstablishmentRank(name=name, amount=amount, transaction_count=count)
        for name, (amount, count) in ranked[:limit]
    ]


# ---------------------------------------------------------------------------
# Miles
# ---------------------------------------------------------------------------


def total_miles(txs: Iterable[Transaction]) -> int:
    return sum(t.miles_generated for t in txs)


def efficiency_stats(txs: Iterable[Transaction], config: FinancialConfig | None = None) -> EfficiencyStats:
    """How much of the spending went through the reward card.

    ``lost_miles`` estimates what the inefficient rows would have earned
    on the reward card at the configured rate and factor.
    """
    config = config or FinancialConfig()
    debits = [t for t in txs if t.amount < 0]
    total_spent = sum((abs(t.amount) for t in debits), ZERO)
    reward_spent = sum((abs(t.amount) for t in debits if t.source == REWARD_SOURCE), ZERO)

    lost = 0
    if config.dollar_rate > 0:
        for t in debits:
            if t.is_inefficient:
                lost += _round_int(
                    abs(t.amount) / Decimal(str(config.dollar_rate))
                    * Decimal(str(config.miles_factor(t.is_international)))
                )

    international = [t for t in debits if t.is_international]
    return EfficiencyStats(
        total_spent=total_spent,
        reward_card_spent=reward_spent,
        efficiency=_percent(float(reward_spent), float(total_spent)) if total_spent > 0 else 100.0,
        lost_miles=lost,
        international_spent=sum((abs(t.amount) for t in international), ZERO),
        total_iof=sum((t.iof_amount for t in international), ZERO),
        international_miles=total_miles(international),
    )


def miles_goal_progress(txs: Iterable[Transaction], config: FinancialConfig) -> MilesProgress:
    """Miles balance (configured plus earned) against the miles goal."""
    current = config.current_miles + total_miles(txs)
    return MilesProgress(
        current=current,
        goal=config.miles_goal,
        percent=_percent(current, config.miles_goal),
        remaining=max(config.miles_goal - current, 0),
    )


# ---------------------------------------------------------------------------
# Monthly views
# ---------------------------------------------------------------------------


def transactions_in_month(txs: Iterable[Transaction], year: int, month: int) -> list[Transaction]:
    return [t for t in txs if t.date.year == year and t.date.month == month]


def month_summary(
    txs: Iterable[Transaction],
    config: FinancialConfig,
    year: int,
    month: int,
) -> MonthSummary:
    """Income, expenses and investment contribution for one month.

    The contribution target is ``contribution_percent`` of the salary;
    money sent to the ``investimentos`` category counts towards it.
    """
    rows = transactions_in_month(txs, year, month)
    income = sum((t.amount for t in rows if t.amount > 0), ZERO)
    expenses = sum((abs(t.amount) for t in rows if t.amount < 0), ZERO)
    invested = sum((abs(t.amount) for t in rows if t.category == "investimentos" and t.amount < 0), ZERO)
    target = config.salary * config.contribution_percent / 100
    return MonthSummary(
        total_income=income,
        total_expenses=expenses,
        balance=income - expenses,
        miles_generated=total_miles(rows),
        contribution=invested,
        contribution_percent=_percent(float(invested), target),
        transaction_count=len(rows),
    )


def monthly_comparison(txs: Iterable[Transaction], today: date, months: int = 3) -> list[MonthlyTotals]:
    """Credits and debits for the last *months* months, oldest first."""
    rows = list(txs)
    current = today.replace(day=1)
    result: list[MonthlyTotals] = []
    for offset in range(months - 1, -1, -1):
        first = add_months(current, -offset)
        in_month = transactions_in_month(rows, first.year, first.month)
        result.append(
            MonthlyTotals(
                label=f"{MONTH_NAMES[first.month - 1]}/{first.year % 100:02d}",
                year=first.year,
                month=first.month,
                credits=_round_int(sum((t.amount for t in in_month if t.amount > 0), ZERO)),
                debits=_round_int(sum((abs(t.amount) for t in in_month if t.amount < 0), ZERO)),
            )
        )
    return result


def price_alerts(txs: Iterable[Transaction], today: date) -> set[str]:
    """Ids of this month's expenses at merchants that got pricier.

    For each merchant, the average expense of the current month is
    compared with the mean of the monthly averages of the previous three
    months (months without purchases are left out). Above 120% flags
    every current-month expense at that merchant.
    """
    by_merchant: dict[str, list[Transaction]] = {}
    for t in txs:
        if t.amount >= 0 or not t.establishment:
            continue
        by_merchant.setdefault(t.establishment.lower().strip(), []).append(t)

    current = today.replace(day=1)
    flagged: set[str] = set()
    for rows in by_merchant.values():
        this_month = transactions_in_month(rows, current.year, current.month)
        if not this_month:
            continue
        history: list[Decimal] = []
        for back in range(1, PRICE_ALERT_MONTHS + 1):
            month = add_months(current, -back)
            previous = transactions_in_month(rows, month.year, month.month)
            if previous:
                history.append(sum((abs(t.amount) for t in previous), ZERO) / len(previous))
        if not history:
            continue
        historical = sum(history, ZERO) / len(history)
        average = sum((abs(t.amount) for t in this_month), ZERO) / len(this_month)
        if average > historical * PRICE_ALERT_RATIO:
            flagged.update(t.id for t in this_month)
    return flagged


# ---------------------------------------------------------------------------
# Goals and limits
# ---------------------------------------------------------------------------


def currency_goal_progress(config: FinancialConfig, currency: str) -> CurrencyGoal:
    """Savings progress in ``"USD"`` or ``"EUR"`` with a DCA buy signal.

    Raises:
        ValueError: For any other currency.
    """
    code = currency.upper()
    if code == "USD":
        reserve, goal, rate, average = config.usd_reserve, config.usd_goal, config.dollar_rate, config.dca_dollar_rate
    elif code == "EUR":
        reserve, goal, rate, average = config.eur_reserve, config.eur_goal, config.euro_rate, config.dca_euro_rate
    else:
        raise ValueError(f"Unsupported currency {currency!r}; expected USD or EUR")

    diff = round((rate - average) / average * 100, 1) if average > 0 else 0.0
    return CurrencyGoal(
        currency=code,
        reserve=reserve,
        goal=goal,
        percent=_percent(reserve, goal),
        rate=rate,
        average_rate=average,
        rate_vs_average=diff,
        should_buy=rate < average,
    )


def dinner_budget(txs: Iterable[Transaction], config: FinancialConfig, year: int, month: int) -> DinnerBudget:
    """Dinners out this month against the monthly allowance."""
    dinners = [t for t in transactions_in_month(txs, year, month) if t.amount < 0 and is_dinner(t)]
    cap = Decimal(str(config.max_dinner_spend))
    return DinnerBudget(
        used=len(dinners),
        limit=config.max_dinners_per_month,
        remaining=max(config.max_dinners_per_month - len(dinners), 0),
        spent=sum((abs(t.amount) for t in dinners), ZERO),
        max_per_dinner=config.max_dinner_spend,
        over_limit=[t.id for t in dinners if abs(t.amount) > cap],
    )
