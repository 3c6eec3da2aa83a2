"""Tests for the transaction classifier.

Covers:
- detect_source / categorize_description: ordering and defaults.
- is_international: currency codes, foreign merchants, .com.br exclusion.
- compute_miles_and_iof: reward card only, IOF on international spend,
  network and currency factors.
- extract_establishment, classify, user rules, the category registry and
  corrections.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from moni.categorizer import (
    CategoryRegistry,
    apply_rules,
    categorize_description,
    classify,
    compute_miles_and_iof,
    correct_transaction,
    detect_source,
    extract_establishment,
    is_dinner,
    is_inefficient,
    is_international,
    match_rule,
)
from moni.models import (
    CategorizationRule,
    CustomCategory,
    FinancialConfig,
    RawRow,
)


def _row(description: str, amount: str = "-100.00", hint: str = "") -> RawRow:
    return RawRow(date=date(2026, 3, 10), description=description, amount=Decimal(amount), source_hint=hint)


# ---------------------------------------------------------------------------
# Source and category
# ---------------------------------------------------------------------------


class TestDetectSource:
    def test_from_description(self) -> None:
        assert detect_source("PAGTO NUBANK FATURA") == "nubank"

    def test_from_hint(self) -> None:
        assert detect_source("COMPRA LOJA", "Bradesco_marco.csv") == "bradesco"

    def test_santander_checked_first(self) -> None:
        """Santander wins when several banks are named."""
        assert detect_source("TRANSF NUBANK", "santander") == "santander"

    def test_unknown(self) -> None:
        assert detect_source("COMPRA LOJA", "") == "unknown"


class TestCategorizeDescription:
    def test_supermarket_before_generic_compras(self) -> None:
        """ASSAI ATACADISTA COMPRA is a supermarket, not generic shopping."""
        assert categorize_description("ASSAI ATACADISTA COMPRA") == "supermercado"

    def test_generic_compra(self) -> None:
        assert categorize_description("COMPRA LOJA QUALQUER") == "compras"

    def test_mercado_livre_is_shopping(self) -> None:
        assert categorize_description("MERCADO LIVRE*VENDEDOR") == "compras"

    @pytest.mark.parametrize(
        ("description", "category"),
        [
            ("IFOOD *RESTAURANTE", "alimentacao"),
            ("UBER *TRIP", "transporte"),
            ("UBER EATS", "alimentacao"),
            ("PIX ENVIADO MAE", "ajuda_mae"),
            ("DROGASIL 123", "saude"),
            ("NETFLIX.COM", "lazer"),
            ("TESOURO DIRETO", "investimentos"),
            ("CONDOMINIO EDIFICIO", "fixas"),
            ("AMAZON MARKETPLACE", "compras"),
        ],
    )
    def test_builtin_rules(self, description: str, category: str) -> None:
        assert categorize_description(description) == category

    def test_default_outros(self) -> None:
        assert categorize_description("XPTO 123") == "outros"

    def test_case_insensitive(self) -> None:
        assert categorize_description("carrefour bairro") == "supermercado"


class TestIsInternational:
    @pytest.mark.parametrize(
        "description",
        ["AMAZON USD 12.00", "HOTEL PARIS EUR", "APPLE.COM/BILL", "AIRBNB * HMXYZ", "STEAMGAMES.COM", "COMPRA INTERNACIONAL"],
    )
    def test_foreign(self, description: str) -> None:
        assert is_international(description)

    @pytest.mark.parametrize(
        "description",
        ["AMAZON.COM.BR", "MAGAZINELUIZA.COM.BR", "PADARIA CENTRAL", "BUSDORF"],
    )
    def test_domestic(self, description: str) -> None:
        assert not is_international(description)


class TestInefficiency:
    def test_non_reward_cards(self) -> None:
        assert is_inefficient("bradesco")
        assert is_inefficient("nubank")

    def test_reward_card_and_unknown(self) -> None:
        assert not is_inefficient("santander")
        assert not is_inefficient("unknown")


# ---------------------------------------------------------------------------
# Miles and IOF
# ---------------------------------------------------------------------------


class TestMilesAndIOF:
    def test_domestic_reward_card(self) -> None:
        """250 BRL at 5.0 BRL/USD and factor 1.0 earns 50 miles."""
        miles, iof = compute_miles_and_iof(Decimal("-250"), "santander", False, FinancialConfig())
        assert miles == 50
        assert iof == Decimal("0")

    def test_international_reward_card(self) -> None:
        """IOF 4.38% is added before conversion; USD factor is 2.0."""
        miles, iof = compute_miles_and_iof(Decimal("-100"), "santander", True, FinancialConfig())
        assert iof == Decimal("4.38")
        # (100 + 4.38) / 5.0 * 2.0 = 41.752
        assert miles == 42

    def test_credit_earns_nothing(self) -> None:
        assert compute_miles_and_iof(Decimal("100"), "santander", True, FinancialConfig()) == (0, Decimal("0"))

    def test_other_issuers_earn_nothing(self) -> None:
        for source in ("bradesco", "nubank", "unknown"):
            miles, iof = compute_miles_and_iof(Decimal("-500"), source, True, FinancialConfig())
            assert miles == 0
            assert iof == Decimal("0")

    def test_visa_factors(self) -> None:
        config = FinancialConfig(reward_card_network="visa", miles_factor_visa_brl=1.5)
        miles, _ = compute_miles_and_iof(Decimal("-100"), "santander", False, config)
        assert miles == 30

    def test_unknown_network_earns_nothing(self) -> None:
        config = FinancialConfig(reward_card_network="elo")
        miles, _ = compute_miles_and_iof(Decimal("-100"), "santander", False, config)
        assert miles == 0

    def test_zero_dollar_rate(self) -> None:
        config = FinancialConfig(dollar_rate=0)
        miles, iof = compute_miles_and_iof(Decimal("-100"), "santander", True, config)
        assert miles == 0
        assert iof == Decimal("4.38")

    def test_custom_iof_rate(self) -> None:
        config = FinancialConfig(iof_rate=3.5)
        _, iof = compute_miles_and_iof(Decimal("-200"), "santander", True, config)
        assert iof == Decimal("7.00")


# ---------------------------------------------------------------------------
# Establishment and classify
# ---------------------------------------------------------------------------


class TestExtractEstablishment:
    def test_prefix_removed(self) -> None:
        assert extract_establishment("COMPRA   ASSAI  ATACADISTA") == "ASSAI ATACADISTA"

    def test_pix_prefix(self) -> None:
        assert extract_establishment("PIX Maria Silva") == "Maria Silva"

    def test_prefix_must_be_a_word(self) -> None:
        assert extract_establishment("PAGUE MENOS") == "PAGUE MENOS"

    def test_truncated(self) -> None:
        assert len(extract_establishment("X" * 80)) == 50


class TestClassify:
    def test_full_classification(self) -> None:
        txn = classify(_row("COMPRA ASSAI ATACADISTA", "-250.00", "SANTANDER"), id_factory=lambda: "abc")

        assert txn.id == "abc"
        assert txn.source == "santander"
        assert txn.category == "supermercado"
        assert txn.miles_generated == 50
        assert not txn.is_international
        assert txn.establishment == "ASSAI ATACADISTA"
        assert txn.reconciliation_status == "pendente"
        assert txn.spouse_profile == "familia"

    def test_explicit_hint_overrides_row_hint(self) -> None:
        txn = classify(_row("LOJA", hint="santander"), file_hint="nubank.csv")
        assert txn.source == "nubank"
        assert txn.is_inefficient
        assert txn.miles_generated == 0

    def test_deterministic(self) -> None:
        """Same row, same id: identical output."""
        row = _row("AIRBNB USD", "-100.00", "santander")
        assert classify(row, id_factory=lambda: "x") == classify(row, id_factory=lambda: "x")

    def test_unknown_source_negative_amount(self) -> None:
        """Categorized normally but earns no miles."""
        txn = classify(_row("DROGASIL"))
        assert txn.source == "unknown"
        assert txn.category == "saude"
        assert txn.miles_generated == 0
        assert txn.iof_amount == Decimal("0")

    def test_ids_from_factory(self, sequential_ids) -> None:
        first = classify(_row("A"), id_factory=sequential_ids)
        second = classify(_row("B"), id_factory=sequential_ids)
        assert (first.id, second.id) == ("tx-1", "tx-2")


# ---------------------------------------------------------------------------
# User rules
# ---------------------------------------------------------------------------


class TestUserRules:
    def test_first_matching_rule_wins(self) -> None:
        rules = [
            CategorizationRule(keyword="smart fit", category="saude", profile="esposa"),
            CategorizationRule(keyword="smart", category="lazer"),
        ]
        assert match_rule("PAG SMART FIT PAULISTA", rules) is rules[0]

    def test_no_match(self) -> None:
        assert match_rule("PADARIA", [CategorizationRule(keyword="smart", category="saude")]) is None

    def test_blank_keyword_ignored(self) -> None:
        assert match_rule("ANY", [CategorizationRule(keyword="  ", category="saude")]) is None

    def test_apply_sets_category_and_profile(self) -> None:
        txn = classify(_row("PAG SMART FIT"))
        rules = [CategorizationRule(keyword="smart fit", category="saude", profile="esposa")]
        updated = apply_rules(txn, rules)
        assert updated.category == "saude"
        assert updated.spouse_profile == "esposa"
        assert txn.spouse_profile == "familia"

    def test_apply_without_match_returns_same(self) -> None:
        txn = classify(_row("PADARIA"))
        assert apply_rules(txn, []) is txn


class TestIsDinner:
    def test_food_category(self, make_txn) -> None:
        assert is_dinner(make_txn("QUALQUER", category="alimentacao"))

    def test_description_keyword(self, make_txn) -> None:
        assert is_dinner(make_txn("JANTAR ANIVERSARIO", category="outros"))

    def test_other(self, make_txn) -> None:
        assert not is_dinner(make_txn("POSTO SHELL", category="transporte"))


# ---------------------------------------------------------------------------
# Category registry and corrections
# ---------------------------------------------------------------------------


class TestCategoryRegistry:
    def test_defaults(self) -> None:
        labels = CategoryRegistry().labels()
        assert labels["supermercado"] == "Supermercado"
        assert len(labels) == 10

    def test_hidden_renamed_and_custom(self) -> None:
        config = FinancialConfig(
            hidden_categories=["ajuda_mae"],
            category_labels={"outros": "Diversos"},
            custom_categories=[CustomCategory(key="pets", label="Pets")],
        )
        registry = CategoryRegistry(config)
        labels = registry.labels()

        assert "ajuda_mae" not in labels
        assert labels["outros"] == "Diversos"
        assert labels["pets"] == "Pets"
        # Hidden categories stay valid for existing rows.
        assert registry.is_valid("ajuda_mae")
        assert registry.label("nao_existe") == "nao_existe"


class TestCorrectTransaction:
    def test_updates_user_fields_only(self) -> None:
        txn = classify(_row("COMPRA ASSAI", "-250", "santander"))
        fixed = correct_transaction(txn, category="compras", spouse_profile="marido", treated_name=" Assaí ")

        assert fixed.category == "compras"
        assert fixed.spouse_profile == "marido"
        assert fixed.treated_name == "Assaí"
        assert fixed.display_name == "Assaí"
        assert fixed.miles_generated == txn.miles_generated
        assert txn.category == "supermercado"

    def test_custom_category_allowed(self) -> None:
        registry = CategoryRegistry(FinancialConfig(custom_categories=[CustomCategory("pets", "Pets")]))
        txn = classify(_row("PETZ"))
        assert correct_transaction(txn, category="pets", registry=registry).category == "pets"

    def test_unknown_category(self) -> None:
        with pytest.raises(ValueError, match="Unknown category"):
            correct_transaction(classify(_row("X")), category="nope")

    def test_unknown_profile(self) -> None:
        with pytest.raises(ValueError, match="household member"):
            correct_transaction(classify(_row("X")), spouse_profile="avo")
