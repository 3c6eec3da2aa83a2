"""CSV export writer and summary printers.

- :func:`export` writes one month of transactions to a CSV file.
- :func:`print_import_summary` reports what an upload did.
- :func:`print_stats` prints the monthly dashboard figures.
- :func:`print_projection` prints the cash-flow series.
"""

from __future__ import annotations

import csv
from datetime import date
from decimal import Decimal
from pathlib import Path

from moni import metrics
from moni.categorizer import CategoryRegistry
from moni.models import FinancialConfig, ImportSummary, Projection, Transaction

CSV_COLUMNS = [
    "id",
    "date",
    "description",
    "treated_name",
    "establishment",
    "amount",
    "source",
    "category",
    "spouse_profile",
    "miles_generated",
    "is_international",
    "iof_amount",
    "is_inefficient",
    "reconciliation_status",
    "is_confirmed",
]

TREND_ARROWS = {"up": "↑", "down": "↓", "stable": "→"}


def _brl(value: Decimal | float) -> str:
    """Format as Brazilian currency: ``R$ 1.234,56``."""
    text = f"{abs(value):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"-R$ {text}" if value < 0 else f"R$ {text}"


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------


def export(
    transactions: list[Transaction],
    output_dir: str | Path,
    month: str,
) -> Path:
    """Write the transactions of *month* to ``output_dir/YYYY-MM.csv``.

    Rows are sorted by date, then source, then amount. An existing file
    is overwritten.

    Args:
        transactions: Transactions of any period; others are filtered out.
        output_dir: Directory to write the CSV file into.
        month: Target month as ``"YYYY-MM"`` string, used as the filename.

    Returns:
        The :class:`~pathlib.Path` to the written CSV file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / f"{month}.csv"

    year, mon = (int(part) for part in month.split("-"))
    rows = metrics.transactions_in_month(transactions, year, mon)
    rows.sort(key=lambda t: (t.date, t.source, t.amount))

    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for txn in rows:
            writer.writerow(
                {
                    "id": txn.id,
                    "date": txn.date.isoformat(),
                    "description": txn.description,
                    "treated_name": txn.treated_name,
                    "establishment": txn.establishment,
                    "amount": str(txn.amount),
                    "source": txn.source,
                    "category": txn.category,
                    "spouse_profile": txn.spouse_profile,
                    "miles_generated": txn.miles_generated,
                    "is_international": str(txn.is_international),
                    "iof_amount": str(txn.iof_amount),
                    "is_inefficient": str(txn.is_inefficient),
                    "reconciliation_status": txn.reconciliation_status,
                    "is_confirmed": str(txn.is_confirmed),
                }
            )

    return output_path


# ---------------------------------------------------------------------------
# Summary printers
# ---------------------------------------------------------------------------


def print_import_summary(summary: ImportSummary, file_name: str) -> None:
    """Print the counts of an import. Per-row problems are not listed."""
    print()
    print(f"== Import Summary: {file_name} ==")
    print(f"Parsed:      {summary.parsed} transactions")
    print(f"New:         {summary.new}")
    print(f"Duplicates:  {summary.duplicates} (already imported)")
    print(f"Reconciled:  {summary.reconciled} (merged into manual entries)")
    if summary.planned_matched:
        print(f"Planned:     {len(summary.planned_matched)} planned entries settled")
        for entry in summary.planned_matched:
            print(f"  - {entry.name} ({_brl(entry.real_amount or 0)})")
    print(f"Miles:       {summary.miles:,} earned by new transactions")
    print()


def print_stats(
    transactions: list[Transaction],
    config: FinancialConfig,
    year: int,
    month: int,
    profile: str = metrics.ALL_PROFILES,
) -> None:
    """Print the dashboard figures for one month."""
    rows = metrics.transactions_in_month(transactions, year, month)
    summary = metrics.month_summary(rows, config, year, month)
    efficiency = metrics.efficiency_stats(rows, config)
    registry = CategoryRegistry(config)

    print()
    print(f"== Month Summary: {year:04d}-{month:02d} ==")
    print(f"Income:      {_brl(summary.total_income)}")
    print(f"Expenses:    {_brl(summary.total_expenses)}")
    print(f"Balance:     {_brl(summary.balance)}")
    print(f"Invested:    {_brl(summary.contribution)} ({summary.contribution_percent:.1f}% of target)")
    print(f"Miles:       {summary.miles_generated:,}")
    print(f"Efficiency:  {efficiency.efficiency:.1f}% on the reward card, {efficiency.lost_miles:,} miles lost")
    if efficiency.international_spent:
        print(
            f"Abroad:      {_brl(efficiency.international_spent)} + IOF {_brl(efficiency.total_iof)}"
        )

    by_category = metrics.sum_by_category(rows, profile)
    if by_category:
        print()
        print("Spending by category:")
        for key, total in sorted(by_category.items(), key=lambda pair: -pair[1]):
            print(f"  {registry.label(key) + ':':<25} {_brl(total)}")

    top = metrics.top_establishments(rows, profile=profile)
    if top:
        print()
        print("Top establishments:")
        for i, rank in enumerate(top, start=1):
            print(f"  {i:>2}. {rank.name:<30} ({rank.transaction_count} txns, {_brl(rank.amount)})")

    miles = metrics.miles_goal_progress(transactions, config)
    dinners = metrics.dinner_budget(rows, config, year, month)
    print()
    print(f"Miles goal:  {miles.current:,} / {miles.goal:,} ({miles.percent:.1f}%)")
    print(f"Dinners:     {dinners.used} / {dinners.limit} ({_brl(dinners.spent)})")
    for code in ("USD", "EUR"):
        goal = metrics.currency_goal_progress(config, code)
        signal = "buy" if goal.should_buy else "wait"
        print(
            f"{code} goal:    {goal.reserve:,.0f} / {goal.goal:,.0f} ({goal.percent:.1f}%),"
            f" rate {goal.rate:.2f} vs avg {goal.average_rate:.2f}: {signal}"
        )
    for name, target in config.extra_goals.items():
        print(f"Goal:        {name} {_brl(target)}")
    print()


def print_projection(projection: Projection, today: date) -> None:
    """Print the balance series, marking points below the floor."""
    print()
    print(f"== Cash Flow ({projection.granularity}, as of {today.isoformat()}) ==")
    for point in projection.points:
        kind = "actual" if point.projected_balance is None else "projected"
        balance = point.balance or 0
        marker = "  !" if balance < point.floor else ""
        print(f"  {point.label:<12} {kind:<10} {_brl(balance):>16}{marker}")
    print()
    arrow = TREND_ARROWS.get(projection.trend, "")
    print(f"Trend:       {projection.trend} {arrow} ({projection.trend_percent:+.1f}%)")
    if projection.crosses_floor:
        print("Warning:     balance drops below the safety floor")
    print()
