"""Statement import orchestration.

Composes the upload stages: parse, classify, apply user rules,
reconcile against stored rows, insert what is new, and settle planned
entries.  Per-row problems never abort an import; they only change the
counts in the returned :class:`~moni.models.ImportSummary`.  A store
that cannot take the final insert fails the whole import once.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from moni.categorizer import apply_rules, classify
from moni.models import (
    ACTION_RECONCILED,
    CategorizationRule,
    ColumnMapping,
    FinancialConfig,
    IdFactory,
    ImportSummary,
    PlannedEntry,
    Transaction,
    new_id,
)
from moni.parsers import parse
from moni.reconciliation import ProgressCallback, Reconciler, settle_planned_entries
from moni.store import StoreError, TransactionStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def classify_statement(
    content: str,
    fmt: str,
    config: FinancialConfig,
    rules: Sequence[CategorizationRule] = (),
    file_hint: str | None = None,
    mapping: ColumnMapping | None = None,
    id_factory: IdFactory = new_id,
) -> list[Transaction]:
    """Parse and classify a statement without touching any store.

    Raises:
        ValueError: If *fmt* is not a supported format.
    """
    transactions = []
    for row in parse(content, fmt, file_hint, mapping):
        txn = classify(row, config=config, id_factory=id_factory)
        transactions.append(apply_rules(txn, list(rules)))
    logger.info("Parsed %d transaction(s) from %s statement", len(transactions), fmt.upper())
    return transactions


async def import_statement(
    content: str,
    fmt: str,
    store: TransactionStore,
    user_id: str,
    config: FinancialConfig,
    rules: Sequence[CategorizationRule] = (),
    file_hint: str | None = None,
    mapping: ColumnMapping | None = None,
    id_factory: IdFactory = new_id,
    on_progress: ProgressCallback | None = None,
    planned: list[PlannedEntry] | None = None,
    reconciler: Reconciler | None = None,
) -> ImportSummary:
    """Import one statement file for *user_id*.

    Stages executed in order:

    1. **Parse** -- OFX or CSV text into raw rows.
    2. **Classify** -- source, category, miles, IOF, then user rules.
    3. **Reconcile** -- one row at a time against the stored rows.
    4. **Insert** -- the rows that turned out to be new.
    5. **Settle planned entries** -- open entries matched by a new or
       merged row are marked reconciled.

    Args:
        content: Statement text.
        fmt: ``"OFX"`` or ``"CSV"``.
        store: Persistence backend.
        user_id: Owner of the imported rows.
        config: Financial settings used for miles and IOF.
        rules: User keyword rules, applied in order.
        file_hint: Bank hint, e.g. the file name or the chosen bank.
        mapping: Explicit CSV column mapping.
        id_factory: Produces ids for new transactions.
        on_progress: Called as ``on_progress(done, total)`` during
            reconciliation.
        planned: Planned entries to settle. Read from *store* when
            ``None``.
        reconciler: Shared reconciler, so concurrent imports of the same
            user serialize. A private one is created when ``None``.

    Returns:
        Counts of what happened plus the inserted rows and settled
        planned entries.

    Raises:
        ValueError: If *fmt* is not a supported format.
        StoreError: If the new rows cannot be inserted.
    """
    transactions = classify_statement(content, fmt, config, rules, file_hint, mapping, id_factory)
    summary = ImportSummary(parsed=len(transactions))
    if not transactions:
        return summary

    reconciler = reconciler or Reconciler(store)
    batch, summary.inserted = await reconciler.import_batch(transactions, user_id, on_progress)
    summary.duplicates = batch.duplicates
    summary.reconciled = batch.reconciled
    summary.miles = sum(t.miles_generated for t in summary.inserted)

    settled_by = [r.transaction for r in batch.results if r.action == ACTION_RECONCILED]
    summary.planned_matched = await _settle_planned(
        store, user_id, summary.inserted + settled_by, planned
    )

    logger.info(
        "Import finished: %d new, %d duplicate, %d reconciled, %d planned settled",
        summary.new,
        summary.duplicates,
        summary.reconciled,
        len(summary.planned_matched),
    )
    return summary


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


async def _settle_planned(
    store: TransactionStore,
    user_id: str,
    transactions: list[Transaction],
    planned: list[PlannedEntry] | None,
) -> list[PlannedEntry]:
    if not transactions:
        return []
    if planned is None:
        try:
            planned = await store.list_planned_entries(user_id)
        except StoreError as exc:
            logger.warning("Could not read planned entries, skipping: %s", exc)
            return []

    settled: list[PlannedEntry] = []
    for entry in settle_planned_entries(transactions, planned):
        try:
            await store.update_planned_entry(
                entry.id, conciliado=True, real_amount=entry.real_amount
            )
        except StoreError as exc:
            logger.warning("Could not settle planned entry %r: %s", entry.name, exc)
            continue
        settled.append(entry)
    return settled

