"""Tests for the reconciliation engine.

Covers:
- decide: exact normalized-description matching within ±3 days,
  duplicate vs merge branching, closest-date tie-break, claimed rows.
- Reconciler: store updates, degraded handling of store failures,
  batch counting, progress callbacks, per-user serialization.
- Planned entries: loose name matching and one-to-one settlement.
"""

from __future__ import annotations

import asyncio
from datetime import date, timedelta
from decimal import Decimal

from moni.models import (
    ACTION_DUPLICATE,
    ACTION_NEW,
    ACTION_RECONCILED,
    PlannedEntry,
    Transaction,
)
from moni.reconciliation import (
    Reconciler,
    decide,
    find_match,
    match_planned_entry,
    normalize_description,
    settle_planned_entries,
)
from moni.store import MemoryStore, StoreError

USER = "casa"
DAY = date(2026, 3, 10)


def _txn(
    txn_id: str,
    description: str = "COMPRA ASSAI",
    amount: str = "-100.00",
    txn_date: date = DAY,
    status: str = "pendente",
) -> Transaction:
    return Transaction(
        id=txn_id,
        date=txn_date,
        description=description,
        amount=Decimal(amount),
        reconciliation_status=status,
    )


def _store_with(*txns: Transaction) -> MemoryStore:
    store = MemoryStore()
    asyncio.run(store.insert_transactions(USER, list(txns)))
    return store


class FailingStore(MemoryStore):
    """MemoryStore whose reads and/or writes raise StoreError."""

    def __init__(self, fail_reads: bool = False, fail_writes: bool = False):
        super().__init__()
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    async def list_transactions(self, user_id, date_from=None, date_to=None):
        if self.fail_reads:
            raise StoreError("connection refused")
        return await super().list_transactions(user_id, date_from, date_to)

    async def update_transaction(self, txn_id, **fields):
        if self.fail_writes:
            raise StoreError("write timeout")
        return await super().update_transaction(txn_id, **fields)


# ---------------------------------------------------------------------------
# Pure decisions
# ---------------------------------------------------------------------------


class TestNormalizeDescription:
    def test_whitespace_and_case(self) -> None:
        assert normalize_description("  COMPRA   Assai  ") == "compra assai"

    def test_single_spaces_kept(self) -> None:
        assert normalize_description("A B") == "a b"


class TestDecide:
    def test_no_match_is_new(self) -> None:
        result = decide(_txn("new"), [_txn("old", description="OUTRA COISA", status="novo")])
        assert result.action == ACTION_NEW
        assert result.status == "novo"
        assert result.transaction.reconciliation_status == "novo"
        assert result.matched_id is None

    def test_prior_upload_is_duplicate(self) -> None:
        """Cenário A: stored row from an upload is marked ja_conciliado."""
        stored = _txn("old", description="compra  assai", status="novo")
        result = decide(_txn("new"), [stored])

        assert result.action == ACTION_DUPLICATE
        assert result.status == "ja_conciliado"
        assert result.matched_id == "old"
        assert result.transaction.id == "old"
        assert result.transaction.is_confirmed

    def test_already_reconciled_upload_is_duplicate(self) -> None:
        result = decide(_txn("new"), [_txn("old", status="ja_conciliado")])
        assert result.action == ACTION_DUPLICATE

    def test_manual_entry_is_merged(self) -> None:
        """Cenário B: the bank amount overwrites the manual estimate."""
        manual = _txn("manual", amount="-90.00", status="pendente")
        result = decide(_txn("new", amount="-104.37"), [manual])

        assert result.action == ACTION_RECONCILED
        assert result.status == "conciliado_auto"
        assert result.transaction.id == "manual"
        assert result.transaction.amount == Decimal("-104.37")
        assert result.transaction.is_confirmed

    def test_auto_reconciled_entry_is_merged_again(self) -> None:
        result = decide(_txn("new"), [_txn("old", status="conciliado_auto")])
        assert result.action == ACTION_RECONCILED

    def test_window_is_three_days(self) -> None:
        inside = _txn("in", txn_date=DAY + timedelta(days=3), status="novo")
        outside = _txn("out", txn_date=DAY - timedelta(days=4), status="novo")
        assert decide(_txn("new"), [inside]).action == ACTION_DUPLICATE
        assert decide(_txn("new"), [outside]).action == ACTION_NEW

    def test_no_fuzzy_matching(self) -> None:
        result = decide(_txn("new", description="COMPRA ASSAI 2"), [_txn("old", status="novo")])
        assert result.action == ACTION_NEW

    def test_closest_date_wins(self) -> None:
        far = _txn("far", txn_date=DAY - timedelta(days=3), status="novo")
        near = _txn("near", txn_date=DAY + timedelta(days=1), status="novo")
        assert find_match(_txn("new"), [far, near]).id == "near"

    def test_equal_distance_keeps_store_order(self) -> None:
        before = _txn("before", txn_date=DAY - timedelta(days=2), status="novo")
        after = _txn("after", txn_date=DAY + timedelta(days=2), status="novo")
        assert find_match(_txn("new"), [after, before]).id == "after"

    def test_claimed_rows_skipped(self) -> None:
        first = _txn("first", status="novo")
        second = _txn("second", txn_date=DAY + timedelta(days=1), status="novo")
        assert find_match(_txn("new"), [first, second], claimed={"first"}).id == "second"
        assert find_match(_txn("new"), [first], claimed={"first"}) is None


# ---------------------------------------------------------------------------
# Store-backed reconciliation
# ---------------------------------------------------------------------------


class TestReconcile:
    def test_duplicate_updates_stored_status(self) -> None:
        store = _store_with(_txn("old", status="novo"))
        result = asyncio.run(Reconciler(store).reconcile(_txn("new"), USER))

        stored = asyncio.run(store.list_transactions(USER))
        assert result.action == ACTION_DUPLICATE
        assert len(stored) == 1
        assert stored[0].reconciliation_status == "ja_conciliado"
        assert stored[0].is_confirmed

    def test_merge_updates_stored_amount(self) -> None:
        store = _store_with(_txn("manual", amount="-90.00"))
        result = asyncio.run(Reconciler(store).reconcile(_txn("new", amount="-95.50"), USER))

        stored = asyncio.run(store.list_transactions(USER))[0]
        assert result.action == ACTION_RECONCILED
        assert result.transaction == stored
        assert stored.amount == Decimal("-95.50")
        assert stored.reconciliation_status == "conciliado_auto"

    def test_other_users_rows_ignored(self) -> None:
        store = MemoryStore()
        asyncio.run(store.insert_transactions("vizinho", [_txn("old", status="novo")]))
        result = asyncio.run(Reconciler(store).reconcile(_txn("new"), USER))
        assert result.action == ACTION_NEW

    def test_lookup_failure_degrades_to_new(self) -> None:
        store = FailingStore(fail_reads=True)
        result = asyncio.run(Reconciler(store).reconcile(_txn("new"), USER))
        assert result.action == ACTION_NEW
        assert result.transaction.id == "new"

    def test_merge_update_failure_degrades_to_new(self) -> None:
        store = FailingStore(fail_writes=True)
        asyncio.run(store.insert_transactions(USER, [_txn("manual")]))
        result = asyncio.run(Reconciler(store).reconcile(_txn("new"), USER))
        assert result.action == ACTION_NEW

    def test_duplicate_status_failure_still_duplicate(self) -> None:
        store = FailingStore(fail_writes=True)
        asyncio.run(store.insert_transactions(USER, [_txn("old", status="novo")]))
        result = asyncio.run(Reconciler(store).reconcile(_txn("new"), USER))
        assert result.action == ACTION_DUPLICATE


class TestReconcileBatch:
    def _upload(self, n: int) -> list[Transaction]:
        return [
            _txn(f"up-{i}", description=f"COMPRA LOJA {i}", txn_date=DAY + timedelta(days=i), status="pendente")
            for i in range(n)
        ]

    def test_exact_reupload_is_all_duplicates(self) -> None:
        """Second upload of the same statement inserts nothing."""
        store = MemoryStore()
        reconciler = Reconciler(store)

        first = asyncio.run(reconciler.reconcile_batch(self._upload(4), USER))
        asyncio.run(store.insert_transactions(USER, first.to_insert))
        second = asyncio.run(reconciler.reconcile_batch(self._upload(4), USER))

        assert len(first.to_insert) == 4
        assert second.to_insert == []
        assert second.duplicates == 4
        assert len(asyncio.run(store.list_transactions(USER))) == 4

    def test_identical_rows_map_one_to_one(self) -> None:
        """Two equal rows match two stored rows, not the same one twice."""
        store = _store_with(_txn("a", status="novo"), _txn("b", status="novo"))
        batch = asyncio.run(Reconciler(store).reconcile_batch([_txn("n1"), _txn("n2"), _txn("n3")], USER))

        assert batch.duplicates == 2
        assert [r.matched_id for r in batch.results[:2]] == ["a", "b"]
        assert [t.id for t in batch.to_insert] == ["n3"]

    def test_counts_and_results(self) -> None:
        store = _store_with(
            _txn("dup", description="NETFLIX", status="novo"),
            _txn("plan", description="ALUGUEL", amount="-2000", status="pendente"),
        )
        rows = [
            _txn("r1", description="NETFLIX"),
            _txn("r2", description="ALUGUEL", amount="-2100"),
            _txn("r3", description="PADARIA"),
        ]
        batch = asyncio.run(Reconciler(store).reconcile_batch(rows, USER))

        assert batch.duplicates == 1
        assert batch.reconciled == 1
        assert [t.id for t in batch.to_insert] == ["r3"]
        assert [r.action for r in batch.results] == [ACTION_DUPLICATE, ACTION_RECONCILED, ACTION_NEW]

    def test_progress_callback(self) -> None:
        calls: list[tuple[int, int]] = []
        asyncio.run(
            Reconciler(MemoryStore()).reconcile_batch(
                self._upload(3), USER, on_progress=lambda done, total: calls.append((done, total))
            )
        )
        assert calls == [(1, 3), (2, 3), (3, 3)]

    def test_lookup_failures_never_abort(self) -> None:
        batch = asyncio.run(Reconciler(FailingStore(fail_reads=True)).reconcile_batch(self._upload(3), USER))
        assert len(batch.to_insert) == 3
        assert all(t.reconciliation_status == "novo" for t in batch.to_insert)

    def test_batches_of_one_user_do_not_interleave(self) -> None:
        """Concurrent batches for the same user run one after the other."""
        seen: list[str] = []

        class SlowStore(MemoryStore):
            async def list_transactions(self, user_id, date_from=None, date_to=None):
                await asyncio.sleep(0)
                return await super().list_transactions(user_id, date_from, date_to)

        store = SlowStore()
        reconciler = Reconciler(store)

        async def run_both():
            def track(prefix):
                return lambda done, total: seen.append(f"{prefix}{done}")

            await asyncio.gather(
                reconciler.reconcile_batch(self._upload(3), USER, on_progress=track("a")),
                reconciler.reconcile_batch(self._upload(3), USER, on_progress=track("b")),
            )

        asyncio.run(run_both())
        assert seen in (["a1", "a2", "a3", "b1", "b2", "b3"], ["b1", "b2", "b3", "a1", "a2", "a3"])

    def test_different_users_have_separate_locks(self) -> None:
        reconciler = Reconciler(MemoryStore())
        assert reconciler.lock_for("a") is reconciler.lock_for("a")
        assert reconciler.lock_for("a") is not reconciler.lock_for("b")


# ---------------------------------------------------------------------------
# Planned entries
# ---------------------------------------------------------------------------


def _entry(entry_id: str, name: str, due: date = DAY, conciliado: bool = False) -> PlannedEntry:
    return PlannedEntry(id=entry_id, name=name, amount=Decimal("-2000"), due_date=due, conciliado=conciliado)


class TestPlannedEntries:
    def test_name_prefix_in_description(self) -> None:
        entry = _entry("p1", "Aluguel apartamento")
        assert match_planned_entry(_txn("t", description="PIX ALUGUEL MARCO"), [entry]) is entry

    def test_description_prefix_in_name(self) -> None:
        entry = _entry("p1", "conta netflix familia")
        assert match_planned_entry(_txn("t", description="NETFLIX.COM"), [entry]) is entry

    def test_outside_three_days(self) -> None:
        entry = _entry("p1", "Aluguel", due=DAY + timedelta(days=4))
        assert match_planned_entry(_txn("t", description="ALUGUEL"), [entry]) is None

    def test_reconciled_entries_skipped(self) -> None:
        entry = _entry("p1", "Aluguel", conciliado=True)
        assert match_planned_entry(_txn("t", description="ALUGUEL"), [entry]) is None

    def test_settle_marks_real_amount(self) -> None:
        entries = [_entry("p1", "Aluguel")]
        settled = settle_planned_entries([_txn("t", description="ALUGUEL", amount="-2050.00")], entries)

        assert len(settled) == 1
        assert settled[0].conciliado
        assert settled[0].real_amount == Decimal("-2050.00")
        assert not entries[0].conciliado

    def test_each_entry_settled_once(self) -> None:
        entries = [_entry("p1", "Aluguel")]
        txns = [_txn("t1", description="ALUGUEL"), _txn("t2", description="ALUGUEL")]
        assert [e.id for e in settle_planned_entries(txns, entries)] == ["p1"]
