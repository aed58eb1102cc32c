"""Tests for keyword transaction categorization."""

from finsync.services.categorizer import (
    CATEGORY_KEYWORDS,
    VALID_CATEGORIES,
    categorize,
    resolve_category,
)


class TestCategorize:
    def test_supermarket_is_groceries(self):
        assert categorize("CARREFOUR HYPERMARKET", "Carrefour") == "groceries"

    def test_unknown_vendor_is_other(self):
        assert categorize("UNKNOWN VENDOR XYZ", "") == "other"

    def test_missing_inputs_are_other(self):
        assert categorize(None, None) == "other"

    def test_merchant_name_alone_matches(self):
        assert categorize("", "Careem") == "transport"

    def test_first_matching_category_wins(self):
        """Groceries is checked before dining."""
        assert categorize("LULU CAFE CORNER", None) == "groceries"

    def test_same_input_same_output(self):
        results = {categorize("Batelco bill payment", "Batelco") for _ in range(5)}
        assert results == {"bills"}

    def test_keyword_categories_are_valid(self):
        for category, _ in CATEGORY_KEYWORDS:
            assert category in VALID_CATEGORIES


class TestResolveCategory:
    def test_gateway_category_is_preferred(self):
        assert resolve_category("Dining", "CARREFOUR", "Carrefour") == "dining"

    def test_falls_back_to_keywords(self):
        assert resolve_category(None, "UBER TRIP 123", None) == "transport"

    def test_empty_gateway_category_falls_back(self):
        assert resolve_category("", "noon.com order", None) == "shopping"
