"""Core data models for moni.

This module defines the dataclasses, value constants, and small helpers
used throughout the package. It has zero internal imports -- everything
depends on it, but it depends on nothing within the package.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

# ---------------------------------------------------------------------------
# Value constants
# ---------------------------------------------------------------------------

SOURCES = ("santander", "bradesco", "nubank", "unknown")

# The only issuer whose card earns miles.
REWARD_SOURCE = "santander"

CATEGORIES = (
    "supermercado",
    "alimentacao",
    "transporte",
    "ajuda_mae",
    "saude",
    "lazer",
    "investimentos",
    "fixas",
    "compras",
    "outros",
)

CATEGORY_LABELS = {
    "supermercado": "Supermercado",
    "alimentacao": "Alimentação",
    "transporte": "Transporte",
    "ajuda_mae": "Ajuda Mãe",
    "saude": "Saúde",
    "lazer": "Lazer",
    "investimentos": "Investimentos",
    "fixas": "Fixas",
    "compras": "Compras",
    "outros": "Outros",
}

DEFAULT_CATEGORY = "outros"

SPOUSE_PROFILES = ("marido", "esposa", "familia")
DEFAULT_PROFILE = "familia"

# Reconciliation lifecycle.
STATUS_PENDING = "pendente"
STATUS_NEW = "novo"
STATUS_AUTO_RECONCILED = "conciliado_auto"
STATUS_ALREADY_RECONCILED = "ja_conciliado"
RECONCILIATION_STATUSES = (
    STATUS_PENDING,
    STATUS_NEW,
    STATUS_AUTO_RECONCILED,
    STATUS_ALREADY_RECONCILED,
)

RECURRENCES = ("unico", "diario", "quinzenal", "mensal", "anual")

CARD_NETWORKS = ("mastercard", "visa")

PROJECTION_WINDOWS = ("1M", "3M", "6M", "1A", "All")

IdFactory = Callable[[], str]


def new_id() -> str:
    """Default id factory: a random 32-character hex string."""
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Statement data
# ---------------------------------------------------------------------------


@dataclass
class RawRow:
    """One parsed statement line before classification.

    Attributes:
        date: Posting date.
        description: Raw statement text.
        amount: Signed amount. Negative means expense.
        source_hint: File-level hint about the issuing bank (file name,
            user-selected bank, or the OFX ``<ORG>`` tag). Empty when
            unknown.
    """

    date: date
    description: str
    amount: Decimal
    source_hint: str = ""


@dataclass
class Transaction:
    """A classified transaction.

    Derived fields (``source``, ``category``, ``miles_generated``,
    ``is_international``, ``iof_amount``, ``is_inefficient``,
    ``establishment``) are computed once by the classifier. After
    reconciliation the record only changes through explicit category or
    author corrections.

    Attributes:
        id: Unique identifier from the injected id factory or the store.
        date: Calendar date, no time component.
        description: Raw statement text; source of truth for matching.
        amount: Signed decimal. Negative means expense, positive income.
        source: Issuing bank, one of :data:`SOURCES`.
        category: Built-in or custom category key.
        miles_generated: Reward miles earned. Never negative.
        is_international: True when the description looks foreign.
        iof_amount: IOF tax charged on international reward-card spend.
        is_inefficient: True when the card used earns no miles.
        establishment: Normalized merchant name.
        reconciliation_status: One of :data:`RECONCILIATION_STATUSES`.
        spouse_profile: Household member, one of :data:`SPOUSE_PROFILES`.
        treated_name: Optional user-friendly name; not used for matching.
        is_confirmed: Set once reconciliation confirmed the record.
    """

    id: str
    date: date
    description: str
    amount: Decimal
    source: str = "unknown"
    category: str = DEFAULT_CATEGORY
    miles_generated: int = 0
    is_international: bool = False
    iof_amount: Decimal = Decimal("0")
    is_inefficient: bool = False
    establishment: str = ""
    reconciliation_status: str = STATUS_PENDING
    spouse_profile: str = DEFAULT_PROFILE
    treated_name: str = ""
    is_confirmed: bool = False

    @property
    def display_name(self) -> str:
        return self.treated_name or self.description


@dataclass
class PlannedEntry:
    """A budgeted transaction the user expects to happen.

    Attributes:
        id: Unique identifier.
        name: Free-text name, matched loosely against statement text.
        amount: Signed amount. Negative means planned expense.
        due_date: Next (or only) occurrence.
        category: Category key.
        recurrence: One of :data:`RECURRENCES`.
        spouse_profile: Household member.
        conciliado: True once matched to a real transaction.
        real_amount: Amount of the matched transaction, if any.
    """

    id: str
    name: str
    amount: Decimal
    due_date: date
    category: str = "fixas"
    recurrence: str = "unico"
    spouse_profile: str = DEFAULT_PROFILE
    conciliado: bool = False
    real_amount: Decimal | None = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class CustomCategory:
    """A user-defined category key with its display label."""

    key: str
    label: str


@dataclass
class CategorizationRule:
    """A user keyword rule.

    Matched as a case-insensitive substring of the transaction
    description. The first matching rule in list order wins and sets
    both the category and the household member.
    """

    keyword: str
    category: str
    profile: str = DEFAULT_PROFILE


@dataclass
class ColumnMapping:
    """Explicit CSV column indices that bypass header detection."""

    date_col: int = 0
    description_col: int = 1
    amount_col: int = 2
    source_hint: str = ""


@dataclass
class FinancialConfig:
    """Per-household financial settings.

    Loaded from the ``[financial]`` table of ``config.toml`` with every
    missing field falling back to the defaults below.
    """

    salary: float = 12000.0
    current_miles: int = 50000
    miles_goal: int = 600000
    dollar_rate: float = 5.0
    usd_reserve: float = 1200.0
    usd_goal: float = 8000.0
    euro_rate: float = 5.65
    eur_reserve: float = 500.0
    eur_goal: float = 6000.0
    dca_dollar_rate: float = 5.42
    dca_euro_rate: float = 5.80
    max_dinners_per_month: int = 2
    max_dinner_spend: float = 250.0
    max_cinemas_per_month: int = 2
    max_cinema_spend: float = 60.0
    contribution_percent: float = 15.0
    iof_rate: float = 4.38
    safety_floor: float = 2000.0
    reward_card_network: str = "mastercard"
    miles_factor_mastercard_brl: float = 1.0
    miles_factor_mastercard_usd: float = 2.0
    miles_factor_visa_brl: float = 0.0
    miles_factor_visa_usd: float = 0.0
    extra_goals: dict[str, float] = field(default_factory=dict)
    custom_categories: list[CustomCategory] = field(default_factory=list)
    hidden_categories: list[str] = field(default_factory=list)
    category_labels: dict[str, str] = field(default_factory=dict)

    def miles_factor(self, international: bool) -> float:
        """Miles per dollar for the reward card's network and currency."""
        currency = "usd" if international else "brl"
        return float(getattr(self, f"miles_factor_{self.reward_card_network}_{currency}", 0.0))


@dataclass
class StoreConfig:
    """Where transactions and planned entries are persisted.

    Attributes:
        backend: ``"file"`` (local JSON document) or ``"pocketbase"``.
        path: JSON document path for the file backend, relative to the
            project root.
        url: Base URL of the PocketBase server.
        user_id: Household/user the records belong to.
        token_env: Name of the environment variable holding an auth
            token for the remote backend.
    """

    backend: str = "file"
    path: str = "data/moni.json"
    url: str = "http://127.0.0.1:8090"
    user_id: str = "local"
    token_env: str = "MONI_PB_TOKEN"


@dataclass
class AppConfig:
    """Everything read from ``config.toml``."""

    financial: FinancialConfig = field(default_factory=FinancialConfig)
    rules: list[CategorizationRule] = field(default_factory=list)
    csv_mapping: ColumnMapping | None = None
    store: StoreConfig = field(default_factory=StoreConfig)
    output_dir: str = "output"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ReconciliationResult:
    """Outcome of reconciling one uploaded row.

    Attributes:
        action: ``"new"``, ``"skip_duplicate"`` or ``"reconciled_manual"``.
        status: Reconciliation status assigned.
        transaction: The row to insert (``new``) or the updated stored
            record (the other two actions).
        matched_id: Id of the stored record that matched, if any.
    """

    action: str
    status: str
    transaction: Transaction
    matched_id: str | None = None


ACTION_NEW = "new"
ACTION_DUPLICATE = "skip_duplicate"
ACTION_RECONCILED = "reconciled_manual"


@dataclass
class BatchResult:
    """Aggregate outcome of reconciling a batch of rows."""

    to_insert: list[Transaction] = field(default_factory=list)
    duplicates: int = 0
    reconciled: int = 0
    results: list[ReconciliationResult] = field(default_factory=list)


@dataclass
class ImportSummary:
    """What an upload did, reported as counts rather than per-row errors."""

    parsed: int = 0
    inserted: list[Transaction] = field(default_factory=list)
    duplicates: int = 0
    reconciled: int = 0
    planned_matched: list[PlannedEntry] = field(default_factory=list)
    miles: int = 0

    @property
    def new(self) -> int:
        return len(self.inserted)


@dataclass
class ProjectionPoint:
    """One bucket of the cash-flow series.

    Balances are rounded to whole currency units. ``actual_balance`` is
    set for buckets at or before the reference day, ``projected_balance``
    for buckets after it.
    """

    label: str
    start: date
    end: date
    floor: int
    actual_balance: int | None = None
    projected_balance: int | None = None
    trailing_average: int | None = None

    @property
    def balance(self) -> int | None:
        if self.projected_balance is not None:
            return self.projected_balance
        return self.actual_balance


@dataclass
class Projection:
    """A projected cash-flow series plus its floor and trend signals."""

    points: list[ProjectionPoint] = field(default_factory=list)
    granularity: str = "daily"
    crosses_floor: bool = False
    trend: str = "stable"
    trend_percent: float = 0.0


@dataclass
class EfficiencyStats:
    total_spent: Decimal = Decimal("0")
    reward_card_spent: Decimal = Decimal("0")
    efficiency: float = 100.0
    lost_miles: int = 0
    international_spent: Decimal = Decimal("0")
    total_iof: Decimal = Decimal("0")
    international_miles: int = 0


@dataclass
class MonthSummary:
    total_income: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    miles_generated: int = 0
    contribution: Decimal = Decimal("0")
    contribution_percent: float = 0.0
    transaction_count: int = 0


@dataclass
class EstablishmentRank:
    name: str
    amount: Decimal
    transaction_count: int


@dataclass
class MonthlyTotals:
    """Credits and debits of one calendar month, rounded to whole units."""

    label: str
    year: int
    month: int
    credits: int = 0
    debits: int = 0


@dataclass
class MilesProgress:
    current: int
    goal: int
    percent: float
    remaining: int


@dataclass
class CurrencyGoal:
    """Progress of a foreign-currency savings goal.

    ``should_buy`` is set when the current rate is below the average
    acquisition (DCA) rate.
    """

    currency: str
    reserve: float
    goal: float
    percent: float
    rate: float
    average_rate: float
    rate_vs_average: float
    should_buy: bool


@dataclass
class DinnerBudget:
    used: int
    limit: int
    remaining: int
    spent: Decimal
    max_per_dinner: float
    over_limit: list[str] = field(default_factory=list)
