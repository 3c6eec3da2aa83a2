"""Match uploaded transactions against what the household already stored.

Every classified upload row falls into one of three cases:

- **Duplicate** (Cenário A): a stored row with the same description
  within ±3 days came from an earlier statement upload (its status is
  ``"novo"`` or ``"ja_conciliado"``). The stored row is marked
  ``"ja_conciliado"`` and confirmed; the upload row is discarded.
- **Merge** (Cenário B): the stored row is a manual or planned entry
  waiting for the bank. The bank amount overwrites it, its status becomes
  ``"conciliado_auto"`` and it is confirmed.
- **New**: nothing matched. The row is inserted with status ``"novo"``.

Descriptions match only when they are equal after collapsing whitespace
and lower-casing. When several stored rows match, the closest date wins
and ties keep store order.

Matching is best effort. A failed store read or write degrades the row
to "new" and is logged, so an upload always completes.

Rows of one user are reconciled strictly one at a time: the
:class:`Reconciler` holds an ``asyncio.Lock`` per user for a whole batch,
and :meth:`Reconciler.import_batch` keeps it until the new rows are
inserted, so two uploads for the same household never interleave their
match-then-write steps.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Collection, Iterable
from dataclasses import replace
from datetime import date, timedelta

from moni.models import (
    ACTION_DUPLICATE,
    ACTION_NEW,
    ACTION_RECONCILED,
    STATUS_ALREADY_RECONCILED,
    STATUS_AUTO_RECONCILED,
    STATUS_NEW,
    BatchResult,
    PlannedEntry,
    ReconciliationResult,
    Transaction,
)
from moni.store import StoreError, TransactionStore

logger = logging.getLogger(__name__)

MATCH_WINDOW_DAYS = 3

# Statuses that mark a stored row as coming from an earlier upload.
UPLOADED_STATUSES = (STATUS_NEW, STATUS_ALREADY_RECONCILED)

PLANNED_NAME_PREFIX = 5

ProgressCallback = Callable[[int, int], None]

_MULTISPACE = re.compile(r"\s{2,}")


# ---------------------------------------------------------------------------
# Pure matching
# ---------------------------------------------------------------------------


def normalize_description(description: str) -> str:
    """Collapse whitespace runs, trim and lowercase."""
    return _MULTISPACE.sub(" ", description).strip().lower()


def date_window(day: date, days: int = MATCH_WINDOW_DAYS) -> tuple[date, date]:
    """Return the inclusive ``(first, last)`` days of the match window."""
    return day - timedelta(days=days), day + timedelta(days=days)


def find_match(
    new_tx: Transaction,
    window: Iterable[Transaction],
    claimed: Collection[str] = (),
) -> Transaction | None:
    """Return the stored row *new_tx* duplicates or merges into, if any.

    Args:
        new_tx: The classified upload row.
        window: Stored rows to compare against, in store order.
        claimed: Ids already matched by earlier rows of the same batch.
            They are never matched twice.
    """
    first, last = date_window(new_tx.date)
    wanted = normalize_description(new_tx.description)
    best: Transaction | None = None
    best_distance = 0
    for existing in window:
        if existing.id in claimed or not first <= existing.date <= last:
            continue
        if normalize_description(existing.description) != wanted:
            continue
        distance = abs((existing.date - new_tx.date).days)
        if best is None or distance < best_distance:
            best, best_distance = existing, distance
    return best


def decide(
    new_tx: Transaction,
    window: Iterable[Transaction],
    claimed: Collection[str] = (),
) -> ReconciliationResult:
    """Decide what to do with *new_tx* without touching any store.

    Returns:
        A :class:`ReconciliationResult`. For a duplicate or a merge,
        ``transaction`` is the stored row as it should look after the
        update; for a new row it is *new_tx* with status ``"novo"``.
    """
    matched = find_match(new_tx, window, claimed)
    if matched is None:
        return _as_new(new_tx)

    if matched.reconciliation_status in UPLOADED_STATUSES:
        return ReconciliationResult(
            action=ACTION_DUPLICATE,
            status=STATUS_ALREADY_RECONCILED,
            transaction=replace(
                matched, reconciliation_status=STATUS_ALREADY_RECONCILED, is_confirmed=True
            ),
            matched_id=matched.id,
        )

    return ReconciliationResult(
        action=ACTION_RECONCILED,
        status=STATUS_AUTO_RECONCILED,
        transaction=replace(
            matched,
            amount=new_tx.amount,
            reconciliation_status=STATUS_AUTO_RECONCILED,
            is_confirmed=True,
        ),
        matched_id=matched.id,
    )


def _as_new(tx: Transaction) -> ReconciliationResult:
    return ReconciliationResult(
        action=ACTION_NEW,
        status=STATUS_NEW,
        transaction=replace(tx, reconciliation_status=STATUS_NEW),
    )


# ---------------------------------------------------------------------------
# Store-backed engine
# ---------------------------------------------------------------------------


class Reconciler:
    """Reconciles upload rows against a :class:`TransactionStore`.

    One instance should be shared by everything that uploads for the same
    store, since the per-user locks live on the instance.
    """

    def __init__(self, store: TransactionStore):
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def reconcile(self, tx: Transaction, user_id: str) -> ReconciliationResult:
        """Reconcile a single row, waiting for any batch of the same user."""
        async with self.lock_for(user_id):
            return await self._reconcile_one(tx, user_id, set())

    async def reconcile_batch(
        self,
        txs: list[Transaction],
        user_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """Reconcile *txs* in order, one row at a time.

        New rows are returned in ``to_insert`` for the caller to insert.
        Rows still waiting there are not visible to later rows of the
        batch, so two identical rows in one file are both kept. The lock
        is released before that insert; use :meth:`import_batch` when
        other uploads for the same user may run concurrently.

        Args:
            txs: Classified upload rows, in file order.
            user_id: Owner of the rows.
            on_progress: Called as ``on_progress(done, total)`` after
                each row.
        """
        async with self.lock_for(user_id):
            return await self._reconcile_all(txs, user_id, on_progress)

    async def import_batch(
        self,
        txs: list[Transaction],
        user_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> tuple[BatchResult, list[Transaction]]:
        """Reconcile *txs* and insert the new rows under the same user lock.

        Another upload for the user only starts matching once this
        batch's new rows are stored, so it sees them as duplicates.

        Returns:
            The batch outcome and the rows as returned by the store's
            insert.

        Raises:
            StoreError: If the new rows cannot be inserted.
        """
        async with self.lock_for(user_id):
            batch = await self._reconcile_all(txs, user_id, on_progress)
            inserted: list[Transaction] = []
            if batch.to_insert:
                inserted = await self.store.insert_transactions(user_id, batch.to_insert)
        return batch, inserted

    async def _reconcile_all(
        self,
        txs: list[Transaction],
        user_id: str,
        on_progress: ProgressCallback | None,
    ) -> BatchResult:
        """Body of a batch; the caller holds the user's lock."""
        batch = BatchResult()
        claimed: set[str] = set()
        total = len(txs)

        for done, tx in enumerate(txs, start=1):
            result = await self._reconcile_one(tx, user_id, claimed)
            batch.results.append(result)
            if result.action == ACTION_DUPLICATE:
                batch.duplicates += 1
            elif result.action == ACTION_RECONCILED:
                batch.reconciled += 1
            else:
                batch.to_insert.append(result.transaction)
            if on_progress is not None:
                on_progress(done, total)

        logger.info(
            "Reconciled %d row(s): %d new, %d duplicate, %d merged",
            total,
            len(batch.to_insert),
            batch.duplicates,
            batch.reconciled,
        )
        return batch

    async def _reconcile_one(
        self, tx: Transaction, user_id: str, claimed: set[str]
    ) -> ReconciliationResult:
        first, last = date_window(tx.date)
        try:
            window = await self.store.list_transactions(user_id, first, last)
        except StoreError as exc:
            logger.warning("Lookup failed for %r, treating as new: %s", tx.description, exc)
            return _as_new(tx)

        result = decide(tx, window, claimed)
        if result.matched_id is None:
            return result
        claimed.add(result.matched_id)

        if result.action == ACTION_DUPLICATE:
            try:
                await self.store.update_transaction_status(
                    result.matched_id, STATUS_ALREADY_RECONCILED, is_confirmed=True
                )
            except StoreError as exc:
                # The row is still a duplicate; only the status refresh was lost.
                logger.warning("Could not mark %s as duplicate: %s", result.matched_id, exc)
            return result

        try:
            updated = await self.store.update_transaction(
                result.matched_id,
                amount=tx.amount,
                reconciliation_status=STATUS_AUTO_RECONCILED,
                is_confirmed=True,
            )
        except StoreError as exc:
            logger.warning("Update failed for %r, treating as new: %s", tx.description, exc)
            claimed.discard(result.matched_id)
            return _as_new(tx)
        return replace(result, transaction=updated)


# ---------------------------------------------------------------------------
# Planned entries
# ---------------------------------------------------------------------------


def match_planned_entry(
    tx: Transaction,
    entries: Iterable[PlannedEntry],
    claimed: Collection[str] = (),
) -> PlannedEntry | None:
    """Return the first open planned entry *tx* settles, if any.

    An entry matches when it is not yet reconciled, its due date is
    within ±3 days of the transaction, and the first five letters of
    either the entry name or the description occur in the other
    (case-insensitive).
    """
    desc = tx.description.lower()
    for entry in entries:
        if entry.conciliado or entry.id in claimed:
            continue
        if abs((tx.date - entry.due_date).days) > MATCH_WINDOW_DAYS:
            continue
        name = entry.name.lower()
        if not name or not desc:
            continue
        if name[:PLANNED_NAME_PREFIX] in desc or desc[:PLANNED_NAME_PREFIX] in name:
            return entry
    return None


def settle_planned_entries(
    txs: Iterable[Transaction],
    entries: list[PlannedEntry],
) -> list[PlannedEntry]:
    """Mark the planned entries settled by *txs*.

    Each entry is settled at most once. Returns updated copies with
    ``conciliado=True`` and ``real_amount`` set to the signed amount of
    the matching transaction, in the order they were settled.
    """
    settled: list[PlannedEntry] = []
    claimed: set[str] = set()
    for tx in txs:
        entry = match_planned_entry(tx, entries, claimed)
        if entry is None:
            continue
        claimed.add(entry.id)
        settled.append(replace(entry, conciliado=True, real_amount=tx.amount))
    return settled
