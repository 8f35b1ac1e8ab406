"""Category normalization rules for highlights."""

CATEGORIES = ("yellow", "blue", "pink", "orange")
DEFAULT_CATEGORY = "yellow"

# Labels some readers export instead of the bare color name
CATEGORY_ALIASES = {
    "highlight-yellow": "yellow",
    "highlight-blue": "blue",
    "highlight-pink": "pink",
    "highlight-orange": "orange",
    "kp-notebook-highlight-yellow": "yellow",
    "kp-notebook-highlight-blue": "blue",
    "kp-notebook-highlight-pink": "pink",
    "kp-notebook-highlight-orange": "orange",
}


def normalize_category(category: str | None) -> str:
    """Normalize a raw category to one of CATEGORIES.

    Rules (in order):
    1. Lowercase and strip whitespace
    2. Known aliases (reader CSS classes, "highlight-<color>") map to the color
    3. Default: 'yellow' for None/empty/unknown

    Args:
        category: Raw category/color label from the extractor or an import

    Returns:
        Normalized category string
    """
    if not category:
        return DEFAULT_CATEGORY

    cat = category.strip().lower()
    cat = CATEGORY_ALIASES.get(cat, cat)
    return cat if cat in CATEGORIES else DEFAULT_CATEGORY


def is_known_category(category: str | None) -> bool:
    """True if the label is already a canonical category."""
    return category in CATEGORIES
