"""Shared pytest fixtures for moni tests.

Provides reusable fixtures for:
- Paths to the sample statement files in ``tests/fixtures/``.
- tmp_project_dir: a temporary project initialized with the default
  ``config.toml`` and a file store.
- sequential_ids: a deterministic id factory.
- make_txn: a builder for classified transactions.
"""

from __future__ import annotations

import itertools
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from moni.config import initialize
from moni.models import Transaction

# ---------------------------------------------------------------------------
# Path constants
# ---------------------------------------------------------------------------

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# ---------------------------------------------------------------------------
# Fixture file path helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def fixtures_dir() -> Path:
    """Path to the tests/fixtures/ directory."""
    return FIXTURES_DIR


@pytest.fixture
def santander_ofx() -> Path:
    """Path to the Santander sample OFX statement."""
    return FIXTURES_DIR / "santander_sample.ofx"


@pytest.fixture
def nubank_csv() -> Path:
    """Path to the Nubank sample CSV export (``;`` delimited, Brazilian amounts)."""
    return FIXTURES_DIR / "nubank_sample.csv"


@pytest.fixture
def positional_csv() -> Path:
    """Path to a CSV whose header names match no known column."""
    return FIXTURES_DIR / "positional.csv"


# ---------------------------------------------------------------------------
# Project and builders
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """A temporary project created by ``initialize`` with default settings."""
    project = tmp_path / "project"
    initialize(project)
    return project


@pytest.fixture
def sequential_ids():
    """Id factory yielding ``tx-1``, ``tx-2``, ... in call order."""
    counter = itertools.count(1)
    return lambda: f"tx-{next(counter)}"


@pytest.fixture
def make_txn():
    """Builder for transactions with sensible defaults."""

    def _make(
        description: str = "COMPRA TESTE",
        amount: str | Decimal = "-10.00",
        txn_date: date = date(2026, 3, 10),
        **fields,
    ) -> Transaction:
        fields.setdefault("id", f"id-{description[:6].lower()}-{txn_date.isoformat()}")
        return Transaction(
            date=txn_date,
            description=description,
            amount=Decimal(str(amount)),
            **fields,
        )

    return _make
