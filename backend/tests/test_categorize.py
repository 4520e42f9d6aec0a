import json

import pandas as pd
import pytest

from bankrec.categorize import (
    DEFAULT_CATEGORY_RULES,
    StaticCategoryLookup,
    add_categories,
    add_custom_category,
    add_persistent_custom_rule,
    categorize_with_metadata,
    clear_all_caches,
    list_custom_rules,
    load_persistent_custom_rules,
    match_category,
    register_custom_rule,
    reload_rules,
    validate_category,
)
from bankrec.constants import CANONICAL_CATEGORIES
from bankrec.models import InvalidCategoryError


class TestKeywordTable:
    """First matching rule wins, in table order."""

    @pytest.mark.parametrize(
        "desc,expected",
        [
            ("STARBUCKS #123", "meals"),
            ("UBER EATS ORDER 456", "meals"),
            ("ACH TRANSFER TO SAVINGS", "transfer"),
            ("ZELLE FROM JOHN SMITH", "income"),
            ("ZELLE TO JOHN SMITH", "professional_services"),
            ("EXXONMOBIL 4455", "vehicle"),
            ("HOME DEPOT #4455", "materials"),
            ("MONTHLY MAINTENANCE FEE", "bank_fees"),
            ("HOVER.COM DOMAIN", "software"),
            ("BUFFER PUBLISH", "software"),
            ("X ADS CAMPAIGN", "marketing"),
            ("PROMO ITEMS LLC", "marketing"),
        ],
    )
    def test_known_merchants(self, desc, expected):
        assert match_category(desc) == expected

    def test_order_decides_between_rules(self):
        # both "adobe" (software) and "best buy" (equipment) occur
        assert match_category("BEST BUY ADOBE LICENSE") == "software"

    def test_keyword_inside_longer_word_does_not_match(self):
        assert match_category("MOBILE DETAILING") is None

    def test_mobile_phone_is_a_utility(self):
        assert match_category("mobile phone bill") == "utilities"

    def test_unknown_and_empty(self):
        assert match_category("XYZZY LLC") is None
        assert match_category("") is None
        assert match_category(None) is None

    def test_every_table_category_is_canonical(self):
        for rule in DEFAULT_CATEGORY_RULES:
            assert rule.category in CANONICAL_CATEGORIES

    def test_metadata(self):
        info = categorize_with_metadata("STARBUCKS #123")
        assert info["category"] == "meals"
        assert info["source"] == "keyword"
        assert info["matched_keyword"] == "starbucks"
        assert isinstance(info["rule_index"], int)

    def test_metadata_without_match(self):
        info = categorize_with_metadata("XYZZY LLC")
        assert info["category"] is None
        assert info["source"] is None


class TestCategoryValidation:
    def test_canonical_category_is_valid(self):
        assert validate_category("meals") == "meals"

    def test_unknown_category_raises(self):
        with pytest.raises(InvalidCategoryError) as exc:
            validate_category("snacks")
        assert exc.value.category == "snacks"

    def test_invalid_category_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_category("snacks")

    def test_custom_category(self):
        add_custom_category("crew_lunches")
        assert validate_category("crew_lunches") == "crew_lunches"
        clear_all_caches()
        assert not StaticCategoryLookup().is_valid("crew_lunches")

    def test_extra_categories_on_lookup(self):
        lookup = StaticCategoryLookup(extra=["fuel_cards"])
        assert lookup.is_valid("fuel_cards")
        assert "fuel_cards" in lookup.categories()


class TestCustomRules:
    def test_custom_rules_run_before_the_table(self):
        register_custom_rule("marketing", ["starbucks"])
        assert match_category("STARBUCKS #123") == "marketing"
        clear_all_caches()
        assert match_category("STARBUCKS #123") == "meals"

    def test_prepend(self):
        register_custom_rule("marketing", "acme")
        register_custom_rule("materials", "acme", prepend=True)
        assert match_category("ACME SUPPLY") == "materials"
        assert [r.category for r in list_custom_rules()] == ["materials", "marketing"]

    def test_unknown_category_rejected(self):
        with pytest.raises(InvalidCategoryError):
            register_custom_rule("snacks", ["acme"])

    def test_blank_keywords_rejected(self):
        with pytest.raises(ValueError):
            register_custom_rule("meals", ["  ", ""])

    def test_rules_file_replaces_table(self, tmp_path, monkeypatch):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps([{"keywords": ["acme"], "category": "materials"}]))
        monkeypatch.setenv("CATEGORY_RULES_FILE", str(path))
        assert reload_rules() == 1
        assert match_category("ACME SUPPLY") == "materials"
        assert match_category("STARBUCKS #123") is None

    def test_persistent_rules_round_trip(self, tmp_path):
        path = tmp_path / "custom.json"
        path.write_text(json.dumps([{"category": "meals", "keywords": ["joe's grill"], "prepend": True}]))
        assert load_persistent_custom_rules(str(path)) == 1
        assert match_category("JOE'S GRILL AUSTIN") == "meals"

        assert add_persistent_custom_rule("materials", ["acme"]) is True
        saved = json.loads(path.read_text())
        assert [r["category"] for r in saved] == ["meals", "materials"]

    def test_persistent_rule_without_file_is_memory_only(self):
        assert add_persistent_custom_rule("materials", ["acme"]) is False
        assert match_category("ACME") == "materials"

    def test_bad_entries_in_persistent_file_are_skipped(self, tmp_path):
        path = tmp_path / "custom.json"
        path.write_text(json.dumps([{"category": "snacks", "keywords": ["x"]}, "junk"]))
        assert load_persistent_custom_rules(str(path)) == 0


class TestDataFrame:
    def test_add_categories(self):
        df = pd.DataFrame({"description": ["STARBUCKS #123", "XYZZY LLC"], "amount": [-5.0, -1.0]})
        out = add_categories(df)
        assert list(out["keyword_category"]) == ["meals", None]
        assert out["keyword_category"].dtype == object
        assert "keyword_category" not in df.columns

    def test_missing_column_returns_input(self):
        df = pd.DataFrame({"amount": [1.0]})
        assert add_categories(df) is df
