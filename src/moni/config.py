"""Configuration loading, writing, and project initialization.

Reads TOML config files using stdlib ``tomllib`` and writes them using
``tomli_w``.  Depends only on ``models.py``.

Every ``[financial]`` value is optional: missing keys take the
:class:`~moni.models.FinancialConfig` defaults, unknown keys are ignored,
and values of the wrong type fall back to the default with a warning.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[no-redef]

import tomli_w

from moni.models import (
    DEFAULT_PROFILE,
    AppConfig,
    CategorizationRule,
    ColumnMapping,
    CustomCategory,
    FinancialConfig,
    StoreConfig,
)

logger = logging.getLogger(__name__)

# Older config files used Portuguese names for these fields.
LEGACY_KEYS = {
    "salario": "salary",
    "salario_liquido": "salary",
    "milhas_acumuladas": "current_miles",
    "milhas_atuais": "current_miles",
    "meta_milhas": "miles_goal",
    "meta_disney": "miles_goal",
}

# ---------------------------------------------------------------------------
# Default file content
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_TOML = """\
# moni configuration

[general]
output_dir = "output"

[financial]
salary = 12000.0
current_miles = 50000
miles_goal = 600000
dollar_rate = 5.0
usd_reserve = 1200.0
usd_goal = 8000.0
euro_rate = 5.65
eur_reserve = 500.0
eur_goal = 6000.0
dca_dollar_rate = 5.42
dca_euro_rate = 5.80
max_dinners_per_month = 2
max_dinner_spend = 250.0
max_cinemas_per_month = 2
max_cinema_spend = 60.0
contribution_percent = 15.0
iof_rate = 4.38
safety_floor = 2000.0
reward_card_network = "mastercard"   # "mastercard" or "visa"
miles_factor_mastercard_brl = 1.0
miles_factor_mastercard_usd = 2.0
miles_factor_visa_brl = 0.0
miles_factor_visa_usd = 0.0

[financial.extra_goals]
# name = target

[categories]
hidden = []

[categories.labels]
# outros = "Diversos"

# [[categories.custom]]
# key = "pets"
# label = "Pets"

# Keyword rules: case-insensitive substring, first match wins.
# [[rules]]
# keyword = "academia"
# category = "saude"
# profile = "esposa"

[store]
backend = "file"                # "file" or "pocketbase"
path = "data/moni.json"
url = "http://127.0.0.1:8090"
user_id = "local"
token_env = "MONI_PB_TOKEN"     # Name of env var containing the auth token
"""

# Directories that ``initialize`` creates.
_INIT_DIRS = [
    "input",
    "output",
    "data",
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(root: Path) -> AppConfig:
    """Load ``config.toml`` from *root* and return an :class:`AppConfig`.

    Args:
        root: Project root directory containing ``config.toml``.

    Returns:
        A fully-populated :class:`AppConfig` instance.

    Raises:
        FileNotFoundError: If ``config.toml`` does not exist.
    """
    data = _read_toml(Path(root) / "config.toml")

    general = data.get("general", {})
    store = data.get("store", {})
    mapping = data.get("csv_mapping")

    return AppConfig(
        financial=parse_financial(data.get("financial", {}), data.get("categories", {})),
        rules=[
            CategorizationRule(
                keyword=str(r["keyword"]),
                category=str(r["category"]),
                profile=str(r.get("profile", DEFAULT_PROFILE)),
            )
            for r in data.get("rules", [])
            if "keyword" in r and "category" in r
        ],
        csv_mapping=ColumnMapping(**_known(ColumnMapping, mapping)) if mapping else None,
        store=StoreConfig(**_known(StoreConfig, store)),
        output_dir=general.get("output_dir", "output"),
    )


def parse_financial(table: dict[str, Any], categories: dict[str, Any] | None = None) -> FinancialConfig:
    """Merge a ``[financial]`` table over the defaults.

    Legacy key names are migrated; the new name wins when both appear.
    """
    categories = categories or {}
    defaults = FinancialConfig()
    values: dict[str, Any] = {}

    for legacy, current in LEGACY_KEYS.items():
        if legacy in table and current not in table and current not in values:
            logger.info("config: migrating legacy key %r to %r", legacy, current)
            values[current] = table[legacy]
    for key, value in table.items():
        if key not in LEGACY_KEYS:
            values[key] = value

    scalar_fields = {
        f.name
        for f in fields(FinancialConfig)
        if f.name not in ("extra_goals", "custom_categories", "hidden_categories", "category_labels")
    }
    kwargs: dict[str, Any] = {}
    for name in scalar_fields & values.keys():
        value = _coerce(values[name], getattr(defaults, name))
        if value is None:
            logger.warning(
                "config: financial.%s=%r has the wrong type; using default %r",
                name,
                values[name],
                getattr(defaults, name),
            )
            continue
        kwargs[name] = value

    extra = values.get("extra_goals", {})
    if not isinstance(extra, dict):
        logger.warning("config: financial.extra_goals must be a table; ignored")
        extra = {}
    kwargs["extra_goals"] = {}
    for goal, target in extra.items():
        amount = _coerce(target, 0.0)
        if amount is None:
            logger.warning("config: extra goal %r=%r is not a number; ignored", goal, target)
            continue
        kwargs["extra_goals"][str(goal)] = amount

    kwargs["hidden_categories"] = [str(k) for k in categories.get("hidden", [])]
    kwargs["category_labels"] = {str(k): str(v) for k, v in categories.get("labels", {}).items()}
    kwargs["custom_categories"] = [
        CustomCategory(key=str(c["key"]), label=str(c.get("label", c["key"])))
        for c in categories.get("custom", [])
        if "key" in c
    ]
    return FinancialConfig(**kwargs)


def update_config(root: Path, **partial: Any) -> FinancialConfig:
    """Merge *partial* ``[financial]`` values into ``config.toml``.

    Only the given keys change; everything else in the file is kept
    (comments are not preserved).

    Raises:
        FileNotFoundError: If ``config.toml`` does not exist.
        ValueError: If a key is not a :class:`FinancialConfig` field.
    """
    known = {f.name for f in fields(FinancialConfig)}
    unknown = sorted(set(partial) - known)
    if unknown:
        raise ValueError(f"Unknown financial setting(s): {', '.join(unknown)}")

    path = Path(root) / "config.toml"
    data = _read_toml(path)
    financial = dict(data.get("financial", {}))
    for legacy, current in LEGACY_KEYS.items():
        if legacy in financial:
            financial.setdefault(current, financial[legacy])
            del financial[legacy]
    financial.update(partial)
    data["financial"] = financial
    _write_toml(path, data)
    return parse_financial(financial, data.get("categories", {}))


def save_rules(root: Path, rules: list[CategorizationRule]) -> None:
    """Replace the ``[[rules]]`` array of ``config.toml``."""
    path = Path(root) / "config.toml"
    data = _read_toml(path)
    data["rules"] = [asdict(r) for r in rules]
    _write_toml(path, data)


def save_csv_mapping(root: Path, mapping: ColumnMapping) -> None:
    """Store *mapping* as the ``[csv_mapping]`` table of ``config.toml``."""
    path = Path(root) / "config.toml"
    data = _read_toml(path)
    data["csv_mapping"] = asdict(mapping)
    _write_toml(path, data)


def initialize(target_dir: Path) -> None:
    """Create the standard directory structure and default config file.

    Idempotent: existing directories are left alone and existing files
    are **not** overwritten.

    Args:
        target_dir: The directory in which to create the project structure.
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    for d in _INIT_DIRS:
        (target_dir / d).mkdir(parents=True, exist_ok=True)

    _write_if_missing(target_dir / "config.toml", _DEFAULT_CONFIG_TOML)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _read_toml(path: Path) -> dict:
    """Read and parse a TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _write_toml(path: Path, data: dict) -> None:
    with open(path, "wb") as f:
        tomli_w.dump(data, f)


def _known(cls: type, table: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *table* that are fields of dataclass *cls*."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in table.items() if k in names}


def _coerce(value: Any, default: Any) -> Any:
    """Return *value* converted to the type of *default*, or ``None``."""
    if isinstance(value, bool) or isinstance(default, bool):
        return value if isinstance(value, bool) and isinstance(default, bool) else None
    if isinstance(default, float):
        return float(value) if isinstance(value, (int, float)) else None
    if isinstance(default, int):
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return None
    if isinstance(default, str):
        return value if isinstance(value, str) else None
    return None


def _write_if_missing(path: Path, content: str) -> None:
    """Write *content* to *path* only if the file does not already exist."""
    if not path.exists():
        path.write_text(content, encoding="utf-8")
