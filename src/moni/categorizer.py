"""Transaction classification: source, category, miles, IOF, establishment.

The classifier is a total, deterministic function of a parsed statement
row, an optional file hint, and the financial configuration. It never
raises: anything it cannot recognise falls through to source
``"unknown"`` and category ``"outros"``.

Two layers decide the category:

1. **Built-in rules** -- an ordered list of regular expressions over the
   upper-cased description. The first match wins, so specific merchant
   patterns (supermarket chains) sit above generic shopping catch-alls.
2. **User rules** -- keyword rules from ``config.toml`` applied after
   classification by :func:`apply_rules`. The first keyword contained in
   the description overrides the built-in category and also sets the
   household member.

Depends on ``models.py`` only.
"""

from __future__ import annotations

import re
from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal

from moni.models import (
    CATEGORIES,
    CATEGORY_LABELS,
    DEFAULT_CATEGORY,
    REWARD_SOURCE,
    SPOUSE_PROFILES,
    STATUS_PENDING,
    CategorizationRule,
    FinancialConfig,
    IdFactory,
    RawRow,
    Transaction,
    new_id,
)

CENT = Decimal("0.01")

# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

# Order matters: first match wins.
CATEGORY_RULES: list[tuple[str, re.Pattern[str]]] = [
    (
        "supermercado",
        re.compile(
            r"assa[ií]|atacad[aã]o|carrefour|\bextra\b|p[aã]o de a[cç][uú]car|supermercado|"
            r"mercado(?!\s?livre|\s?pago)|hiper|\bsams\b|costco|\bbig\b",
            re.IGNORECASE,
        ),
    ),
    (
        "alimentacao",
        re.compile(
            r"ifood|rappi|uber\s?eats|mcdonald|burger|pizza|restaurante|lanchonete|padaria|"
            r"starbucks|subway|outback|habib",
            re.IGNORECASE,
        ),
    ),
    (
        "transporte",
        re.compile(
            r"shell|ipiranga|posto|combust[ií]vel|gasolina|uber(?!\s?eat)|99\s?taxi|"
            r"estacionamento|ped[aá]gio|sem\s?parar",
            re.IGNORECASE,
        ),
    ),
    ("ajuda_mae", re.compile(r"pix\s.*m[aã]e|transf.*m[aã]e|\bm[aã]e\b", re.IGNORECASE)),
    (
        "saude",
        re.compile(
            r"drogaria|farm[aá]cia|droga\s?raia|drogasil|hospital|medic|clinic|laborat|"
            r"unimed|amil|sulamerica",
            re.IGNORECASE,
        ),
    ),
    (
        "lazer",
        re.compile(
            r"netflix|spotify|disney\s?(?:\+|plus)|hbo|prime\s?video|cinema|ingresso|teatro|"
            r"\bshow\b|parque|\bgame|playstation|xbox|steam",
            re.IGNORECASE,
        ),
    ),
    (
        "investimentos",
        re.compile(
            r"xp\s?invest|\brico\b|\bclear\b|nuinvest|\bbtg\b|tesouro\s?direto|\bcdb\b|"
            r"\blci\b|\blca\b|invest",
            re.IGNORECASE,
        ),
    ),
    (
        "fixas",
        re.compile(
            r"aluguel|condom[ií]nio|energia|\benel\b|cpfl|\b[aá]gua\b|sabesp|internet|\bclaro\b|"
            r"\bvivo\b|\btim\b|\boi\b|seguro|iptu|ipva",
            re.IGNORECASE,
        ),
    ),
    (
        "compras",
        re.compile(
            r"amazon|mercado\s?livre|shopee|shein|magalu|americanas|casas\s?bahia|magazine|compra",
            re.IGNORECASE,
        ),
    ),
]

# Bank names in detection order: first match wins.
SOURCE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("santander", re.compile(r"santander", re.IGNORECASE)),
    ("bradesco", re.compile(r"bradesco", re.IGNORECASE)),
    ("nubank", re.compile(r"nubank", re.IGNORECASE)),
]

INEFFICIENT_SOURCES = ("bradesco", "nubank")

# Currency codes and foreign merchants. Brazilian ``.com.br`` domains are
# excluded by the negative lookahead on ``.com``.
INTERNATIONAL_PATTERN = re.compile(
    r"\b(?:USD|EUR|GBP|CAD|AUD|CHF|JPY|ARS|CLP|MXN)\b|US\$|U\$|€|£"
    r"|\bINTERNACIONAL\b|\bINTL\b|\bEXTERIOR\b"
    r"|APPLE\.COM/BILL|AIRBNB|BOOKING|DISNEY\s?(?:\+|PLUS)|WALT\s?DISNEY"
    r"|\.COM(?!\.BR)\b",
    re.IGNORECASE,
)

_PREFIX = re.compile(r"^(?:COMPRA|PGTO|PAG|DEB|TRANSF|PIX)\b\s*", re.IGNORECASE)
_MULTISPACE = re.compile(r"\s{2,}")
_DINNER = re.compile(r"restaurante|jantar|dinner", re.IGNORECASE)

ESTABLISHMENT_MAX_LENGTH = 50


# ---------------------------------------------------------------------------
# Individual detectors
# ---------------------------------------------------------------------------


def detect_source(description: str, file_hint: str = "") -> str:
    """Return the issuing bank named in *description* or *file_hint*."""
    text = f"{description} {file_hint}"
    for source, pattern in SOURCE_PATTERNS:
        if pattern.search(text):
            return source
    return "unknown"


def categorize_description(description: str) -> str:
    """Return the first built-in category whose pattern matches."""
    desc = description.upper()
    for category, pattern in CATEGORY_RULES:
        if pattern.search(desc):
            return category
    return DEFAULT_CATEGORY


def is_international(description: str) -> bool:
    return INTERNATIONAL_PATTERN.search(description) is not None


def is_inefficient(source: str) -> bool:
    """True when the card used earns no miles."""
    return source in INEFFICIENT_SOURCES


def compute_miles_and_iof(
    amount: Decimal,
    source: str,
    international: bool,
    config: FinancialConfig,
) -> tuple[int, Decimal]:
    """Compute reward miles and IOF for one transaction.

    Only debits on the reward card earn miles or pay IOF here. For an
    international debit the IOF is ``|amount| * iof_rate / 100`` and the
    miles are earned on the total charged (amount plus IOF) converted to
    dollars at ``config.dollar_rate`` and multiplied by the network and
    currency factor.

    Returns:
        ``(miles, iof)`` -- both zero for credits and other issuers.
    """
    zero = Decimal("0")
    if source != REWARD_SOURCE or amount >= 0:
        return 0, zero

    spent = abs(amount)
    iof = zero
    if international:
        iof = (spent * Decimal(str(config.iof_rate)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)
    total_charged = spent + iof

    if config.dollar_rate <= 0:
        return 0, iof
    miles = total_charged / Decimal(str(config.dollar_rate)) * Decimal(
        str(config.miles_factor(international))
    )
    return max(0, int(miles.quantize(Decimal("1"), rounding=ROUND_HALF_UP))), iof


def extract_establishment(description: str) -> str:
    """Strip transaction-type prefixes and normalize the merchant name."""
    name = _PREFIX.sub("", description.strip())
    name = _MULTISPACE.sub(" ", name).strip()
    return name[:ESTABLISHMENT_MAX_LENGTH]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify(
    row: RawRow,
    file_hint: str | None = None,
    config: FinancialConfig | None = None,
    id_factory: IdFactory = new_id,
) -> Transaction:
    """Build a :class:`Transaction` from a parsed statement row.

    Args:
        row: Parsed statement row.
        file_hint: Bank hint. Defaults to the row's own ``source_hint``.
        config: Financial settings for the miles/IOF computation.
            Defaults to :class:`FinancialConfig` defaults.
        id_factory: Callable producing the new transaction id.

    Returns:
        A transaction with status ``"pendente"`` and household member
        ``"familia"``.
    """
    if config is None:
        config = FinancialConfig()
    hint = row.source_hint if file_hint is None else file_hint

    source = detect_source(row.description, hint)
    international = is_international(row.description)
    miles, iof = compute_miles_and_iof(row.amount, source, international, config)

    return Transaction(
        id=id_factory(),
        date=row.date,
        description=row.description,
        amount=row.amount,
        source=source,
        category=categorize_description(row.description),
        miles_generated=miles,
        is_international=international,
        iof_amount=iof,
        is_inefficient=is_inefficient(source),
        establishment=extract_establishment(row.description),
        reconciliation_status=STATUS_PENDING,
    )


def match_rule(description: str, rules: list[CategorizationRule]) -> CategorizationRule | None:
    """Return the first user rule whose keyword occurs in *description*."""
    desc = description.lower()
    for rule in rules:
        keyword = rule.keyword.strip().lower()
        if keyword and keyword in desc:
            return rule
    return None


def apply_rules(txn: Transaction, rules: list[CategorizationRule]) -> Transaction:
    """Apply user keyword rules on top of the built-in classification."""
    rule = match_rule(txn.description, rules)
    if rule is None:
        return txn
    return replace(txn, category=rule.category, spouse_profile=rule.profile)


def is_dinner(txn: Transaction) -> bool:
    """True for restaurant-type spending counted against the dinner limit."""
    return txn.category == "alimentacao" or _DINNER.search(txn.description) is not None


# ---------------------------------------------------------------------------
# Categories and corrections
# ---------------------------------------------------------------------------


class CategoryRegistry:
    """Built-in categories plus the household's custom, hidden and renamed ones."""

    def __init__(self, config: FinancialConfig | None = None):
        config = config or FinancialConfig()
        self._hidden = set(config.hidden_categories)
        self._labels: dict[str, str] = {}
        for key in CATEGORIES:
            self._labels[key] = config.category_labels.get(key, CATEGORY_LABELS[key])
        for custom in config.custom_categories:
            self._labels[custom.key] = config.category_labels.get(custom.key, custom.label)

    def labels(self) -> dict[str, str]:
        """Selectable categories (hidden built-ins excluded), key to label."""
        return {k: v for k, v in self._labels.items() if k not in self._hidden}

    def label(self, key: str) -> str:
        return self._labels.get(key, key)

    def is_valid(self, key: str) -> bool:
        return key in self._labels


def correct_transaction(
    txn: Transaction,
    *,
    category: str | None = None,
    spouse_profile: str | None = None,
    treated_name: str | None = None,
    registry: CategoryRegistry | None = None,
) -> Transaction:
    """Return a corrected copy of *txn*.

    This is the only supported way to change a reconciled transaction.
    Derived fields (miles, IOF, source) are left untouched.

    Raises:
        ValueError: If the category or household member is unknown.
    """
    registry = registry or CategoryRegistry()
    changes: dict[str, object] = {}
    if category is not None:
        if not registry.is_valid(category):
            raise ValueError(f"Unknown category {category!r}")
        changes["category"] = category
    if spouse_profile is not None:
        if spouse_profile not in SPOUSE_PROFILES:
            raise ValueError(f"Unknown household member {spouse_profile!r}")
        changes["spouse_profile"] = spouse_profile
    if treated_name is not None:
        changes["treated_name"] = treated_name.strip()
    return replace(txn, **changes)
