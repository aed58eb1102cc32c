"""Keyword categorization for transactions the gateway did not categorize."""

EXPENSE_CATEGORIES = (
    "groceries",
    "dining",
    "transport",
    "shopping",
    "bills",
    "entertainment",
    "health",
    "education",
    "travel",
    "coffee",
    "fuel",
    "subscriptions",
    "other",
)

INCOME_CATEGORIES = (
    "salary",
    "freelance",
    "investments",
    "rental",
    "other_income",
)

VALID_CATEGORIES = frozenset(EXPENSE_CATEGORIES + INCOME_CATEGORIES)

# Checked in order; the first keyword hit wins
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("groceries", ("lulu", "carrefour", "geant", "supermarket", "grocery")),
    ("dining", ("restaurant", "cafe", "coffee", "mcdonald", "kfc", "pizza")),
    ("transport", ("uber", "careem", "taxi", "petrol", "fuel", "parking")),
    ("bills", ("ewa", "electricity", "water", "batelco", "zain", "insurance")),
    ("shopping", ("amazon", "noon", "mall", "store", "shop")),
)


def categorize(description: str | None, merchant_name: str | None) -> str:
    text = f"{(description or '').lower()} {(merchant_name or '').lower()}"
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return "other"


def resolve_category(
    gateway_category: str | None,
    description: str | None,
    merchant_name: str | None,
) -> str:
    """Use the gateway's category name when present, else fall back to keywords."""
    if gateway_category:
        return gateway_category.lower()
    return categorize(description, merchant_name)
