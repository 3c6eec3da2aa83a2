"""Persistence for transactions and planned entries.

The core only needs four transaction operations from a backend --
insert, update by id, update status by id, and read a user's
transactions in a date range -- plus read/update of planned entries.
:class:`TransactionStore` spells that contract out; three backends
implement it:

- :class:`MemoryStore`: in-process lists, one per user. Used by tests
  and as the base of the file backend.
- :class:`JsonFileStore`: a :class:`MemoryStore` persisted to a single
  JSON document after every write. Default for the CLI.
- :class:`PocketBaseStore`: a remote PocketBase server reached over its
  REST API with ``httpx``.

Every backend raises :class:`StoreError` for I/O failures. All methods
are coroutines so the reconciliation engine can await them uniformly.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

import httpx

from moni.models import (
    DEFAULT_CATEGORY,
    DEFAULT_PROFILE,
    STATUS_PENDING,
    PlannedEntry,
    StoreConfig,
    Transaction,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A persistence operation failed."""


class TransactionStore(Protocol):
    """Operations the core expects from a persistence layer."""

    async def list_transactions(
        self,
        user_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[Transaction]:
        """Return the user's transactions with ``date_from <= date <= date_to``.

        ``None`` bounds are open. Order is the store's natural order.
        """
        ...

    async def insert_transactions(self, user_id: str, txns: list[Transaction]) -> list[Transaction]:
        ...

    async def update_transaction(self, txn_id: str, **fields: Any) -> Transaction:
        ...

    async def update_transaction_status(
        self, txn_id: str, status: str, is_confirmed: bool = True
    ) -> Transaction:
        ...

    async def list_planned_entries(self, user_id: str) -> list[PlannedEntry]:
        ...

    async def update_planned_entry(self, entry_id: str, **fields: Any) -> PlannedEntry:
        ...


# ---------------------------------------------------------------------------
# Record mapping (shared by the JSON and PocketBase backends)
# ---------------------------------------------------------------------------


def transaction_to_record(txn: Transaction) -> dict[str, Any]:
    """Flatten a transaction into a JSON-friendly record."""
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "description": txn.description,
        "treated_name": txn.treated_name,
        "amount": float(txn.amount),
        "source": txn.source,
        "category": txn.category,
        "miles_generated": txn.miles_generated,
        "is_international": txn.is_international,
        "iof_amount": float(txn.iof_amount),
        "is_inefficient": txn.is_inefficient,
        "establishment": txn.establishment,
        "reconciliation_status": txn.reconciliation_status,
        "spouse_profile": txn.spouse_profile,
        "is_confirmed": txn.is_confirmed,
    }


def record_to_transaction(record: dict[str, Any]) -> Transaction:
    """Rebuild a transaction from a stored record, defaulting missing fields."""
    return Transaction(
        id=str(record["id"]),
        date=_record_date(record["date"]),
        description=record.get("description") or "",
        treated_name=record.get("treated_name") or "",
        amount=_decimal(record.get("amount")),
        source=record.get("source") or "unknown",
        category=record.get("category") or DEFAULT_CATEGORY,
        miles_generated=int(record.get("miles_generated") or 0),
        is_international=bool(record.get("is_international")),
        iof_amount=_decimal(record.get("iof_amount")),
        is_inefficient=bool(record.get("is_inefficient")),
        establishment=record.get("establishment") or "",
        reconciliation_status=record.get("reconciliation_status") or STATUS_PENDING,
        spouse_profile=record.get("spouse_profile") or DEFAULT_PROFILE,
        is_confirmed=bool(record.get("is_confirmed")),
    )


def planned_to_record(entry: PlannedEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "name": entry.name,
        "amount": float(entry.amount),
        "category": entry.category,
        "due_date": entry.due_date.isoformat(),
        "recurrence": entry.recurrence,
        "spouse_profile": entry.spouse_profile,
        "conciliado": entry.conciliado,
        "real_amount": None if entry.real_amount is None else float(entry.real_amount),
    }


def record_to_planned(record: dict[str, Any]) -> PlannedEntry:
    real = record.get("real_amount")
    return PlannedEntry(
        id=str(record["id"]),
        name=record.get("name") or "",
        amount=_decimal(record.get("amount")),
        category=record.get("category") or DEFAULT_CATEGORY,
        due_date=_record_date(record["due_date"]),
        recurrence=record.get("recurrence") or "unico",
        spouse_profile=record.get("spouse_profile") or DEFAULT_PROFILE,
        conciliado=bool(record.get("conciliado")),
        real_amount=None if real is None else _decimal(real),
    )


def _record_date(value: str) -> date:
    # PocketBase returns "2026-03-05 00:00:00.000Z"; JSON files hold "2026-03-05".
    return date.fromisoformat(str(value)[:10])


def _decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def _coerce_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Normalize update payloads so in-memory records keep their types."""
    coerced = dict(fields)
    for key in ("amount", "iof_amount", "real_amount"):
        if key in coerced and coerced[key] is not None and not isinstance(coerced[key], Decimal):
            coerced[key] = Decimal(str(coerced[key]))
    return coerced


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStore:
    """Keeps each user's records in insertion order.

    Reads return copies, so callers can never mutate stored state except
    through the update methods.
    """

    def __init__(self) -> None:
        self._transactions: dict[str, list[Transaction]] = {}
        self._planned: dict[str, list[PlannedEntry]] = {}

    async def list_transactions(
        self,
        user_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[Transaction]:
        return [
            replace(t)
            for t in self._transactions.get(user_id, [])
            if (date_from is None or t.date >= date_from) and (date_to is None or t.date <= date_to)
        ]

    async def insert_transactions(self, user_id: str, txns: list[Transaction]) -> list[Transaction]:
        stored = [replace(t) for t in txns]
        self._transactions.setdefault(user_id, []).extend(stored)
        self._persist()
        return [replace(t) for t in stored]

    async def update_transaction(self, txn_id: str, **fields: Any) -> Transaction:
        for rows in self._transactions.values():
            for idx, txn in enumerate(rows):
                if txn.id == txn_id:
                    rows[idx] = replace(txn, **_coerce_fields(fields))
                    self._persist()
                    return replace(rows[idx])
        raise StoreError(f"transaction {txn_id!r} not found")

    async def update_transaction_status(
        self, txn_id: str, status: str, is_confirmed: bool = True
    ) -> Transaction:
        return await self.update_transaction(
            txn_id, reconciliation_status=status, is_confirmed=is_confirmed
        )

    async def list_planned_entries(self, user_id: str) -> list[PlannedEntry]:
        return [replace(e) for e in self._planned.get(user_id, [])]

    async def add_planned_entry(self, user_id: str, entry: PlannedEntry) -> PlannedEntry:
        self._planned.setdefault(user_id, []).append(replace(entry))
        self._persist()
        return replace(entry)

    async def update_planned_entry(self, entry_id: str, **fields: Any) -> PlannedEntry:
        for rows in self._planned.values():
            for idx, entry in enumerate(rows):
                if entry.id == entry_id:
                    rows[idx] = replace(entry, **_coerce_fields(fields))
                    self._persist()
                    return replace(rows[idx])
        raise StoreError(f"planned entry {entry_id!r} not found")

    async def delete_planned_entry(self, entry_id: str) -> None:
        for rows in self._planned.values():
            for idx, entry in enumerate(rows):
                if entry.id == entry_id:
                    del rows[idx]
                    self._persist()
                    return
        raise StoreError(f"planned entry {entry_id!r} not found")

    async def aclose(self) -> None:
        """Nothing to release; present so every backend closes alike."""

    def _persist(self) -> None:
        """Hook for subclasses that write through to disk."""


# ---------------------------------------------------------------------------
# JSON file backend
# ---------------------------------------------------------------------------


class JsonFileStore(MemoryStore):
    """A :class:`MemoryStore` saved to one JSON document after every write.

    Layout::

        {"users": {"<user_id>": {"transactions": [...], "planned_entries": [...]}}}
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        if self.path.is_file():
            self._load()

    def _load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"{self.path}: {exc}") from exc

        for user_id, section in data.get("users", {}).items():
            self._transactions[user_id] = [
                record_to_transaction(r) for r in section.get("transactions", [])
            ]
            self._planned[user_id] = [
                record_to_planned(r) for r in section.get("planned_entries", [])
            ]

    def _persist(self) -> None:
        users: dict[str, dict[str, list]] = {}
        for user_id in sorted(set(self._transactions) | set(self._planned)):
            users[user_id] = {
                "transactions": [transaction_to_record(t) for t in self._transactions.get(user_id, [])],
                "planned_entries": [planned_to_record(e) for e in self._planned.get(user_id, [])],
            }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps({"users": users}, indent=2, ensure_ascii=False), encoding="utf-8"
            )
        except OSError as exc:
            raise StoreError(f"{self.path}: {exc}") from exc


# ---------------------------------------------------------------------------
# PocketBase backend
# ---------------------------------------------------------------------------


class PocketBaseStore:
    """Remote store backed by a PocketBase server.

    Collections ``transactions`` and ``planned_entries`` hold one record
    per row with a ``user`` relation field. Records are created one by
    one, in order.

    Args:
        base_url: Server URL, e.g. ``"http://127.0.0.1:8090"``.
        token: Optional auth token sent as the ``Authorization`` header.
        timeout: HTTP request timeout in seconds. Default: 15.
        client: Pre-built ``httpx.AsyncClient`` (tests inject one with a
            mock transport). When given, *base_url*, *token* and
            *timeout* are ignored.
    """

    PAGE_SIZE = 500

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if client is None:
            headers = {"Authorization": token} if token else {}
            client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
        self._client = client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> PocketBaseStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def list_transactions(
        self,
        user_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[Transaction]:
        clauses = [f'user = "{user_id}"']
        if date_from is not None:
            clauses.append(f'date >= "{date_from.isoformat()}"')
        if date_to is not None:
            # Stored dates carry a time part; compare against the next day.
            clauses.append(f'date <= "{date_to.isoformat()} 23:59:59"')
        records = await self._list("transactions", " && ".join(clauses), sort="date")
        return [record_to_transaction(r) for r in records]

    async def insert_transactions(self, user_id: str, txns: list[Transaction]) -> list[Transaction]:
        created: list[Transaction] = []
        for txn in txns:
            record = transaction_to_record(txn)
            del record["id"]
            record["user"] = user_id
            body = await self._request("POST", "/api/collections/transactions/records", json=record)
            created.append(record_to_transaction(body))
        return created

    async def update_transaction(self, txn_id: str, **fields: Any) -> Transaction:
        body = await self._request(
            "PATCH",
            f"/api/collections/transactions/records/{txn_id}",
            json=_jsonable(fields),
        )
        return record_to_transaction(body)

    async def update_transaction_status(
        self, txn_id: str, status: str, is_confirmed: bool = True
    ) -> Transaction:
        return await self.update_transaction(
            txn_id, reconciliation_status=status, is_confirmed=is_confirmed
        )

    async def list_planned_entries(self, user_id: str) -> list[PlannedEntry]:
        records = await self._list("planned_entries", f'user = "{user_id}"', sort="due_date")
        return [record_to_planned(r) for r in records]

    async def update_planned_entry(self, entry_id: str, **fields: Any) -> PlannedEntry:
        body = await self._request(
            "PATCH",
            f"/api/collections/planned_entries/records/{entry_id}",
            json=_jsonable(fields),
        )
        return record_to_planned(body)

    async def _list(self, collection: str, filter_expr: str, sort: str) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        page = 1
        while True:
            body = await self._request(
                "GET",
                f"/api/collections/{collection}/records",
                params={
                    "filter": f"({filter_expr})",
                    "sort": sort,
                    "page": page,
                    "perPage": self.PAGE_SIZE,
                },
            )
            records.extend(body.get("items", []))
            if page >= int(body.get("totalPages") or 1):
                return records
            page += 1

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "PocketBase %s %s returned HTTP %d: %s",
                method,
                url,
                exc.response.status_code,
                exc.response.text[:200],
            )
            raise StoreError(f"{method} {url}: HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("PocketBase %s %s failed: %s", method, url, exc)
            raise StoreError(f"{method} {url}: {exc}") from exc


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, Decimal):
            value = float(value)
        elif isinstance(value, date):
            value = value.isoformat()
        out[key] = value
    return out


def open_store(config: StoreConfig, root: Path) -> JsonFileStore | PocketBaseStore:
    """Build the store selected by the ``[store]`` table of ``config.toml``.

    Raises:
        ValueError: If the backend name is unknown.
    """
    if config.backend == "file":
        return JsonFileStore(root / config.path)
    if config.backend == "pocketbase":
        return PocketBaseStore(config.url, token=os.environ.get(config.token_env, ""))
    raise ValueError(f"Unknown store backend {config.backend!r}; expected 'file' or 'pocketbase'")
