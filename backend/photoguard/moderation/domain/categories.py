"""Moderation categories and the provider label table that feeds them."""

from __future__ import annotations

from enum import Enum
from typing import Mapping


class Category(str, Enum):
    NUDITY = "nudity"
    VIOLENCE = "violence"
    DRUGS = "drugs"
    HATE = "hate"
    UNSAFE = "unsafe"
    TEXT = "text"


# Provider moderation label names mapped to categories; anything else is ignored.
LABEL_MAPPINGS: Mapping[str, Category] = {
    "Explicit Nudity": Category.NUDITY,
    "Suggestive": Category.NUDITY,
    "Partial Nudity": Category.NUDITY,
    "Nudity": Category.NUDITY,
    "Sexual Activity": Category.NUDITY,
    "Violence": Category.VIOLENCE,
    "Violent": Category.VIOLENCE,
    "Weapon": Category.VIOLENCE,
    "Weapons": Category.VIOLENCE,
    "Gun": Category.VIOLENCE,
    "Rifle": Category.VIOLENCE,
    "Pistol": Category.VIOLENCE,
    "Knife": Category.VIOLENCE,
    "Blood": Category.VIOLENCE,
    "Gore": Category.VIOLENCE,
    "Physical Violence": Category.VIOLENCE,
    "Drugs": Category.DRUGS,
    "Drug": Category.DRUGS,
    "Tobacco": Category.DRUGS,
    "Cigarette": Category.DRUGS,
    "Smoking": Category.DRUGS,
    "Alcohol": Category.DRUGS,
    "Alcoholic Beverages": Category.DRUGS,
    "Drugs Paraphernalia": Category.DRUGS,
    "Marijuana": Category.DRUGS,
    "Hate Symbol": Category.HATE,
    "Swastika": Category.HATE,
    "Extremist": Category.HATE,
    "Unsafe": Category.UNSAFE,
    "Medical": Category.UNSAFE,
}

# Label names that force a non-approve verdict whatever the confidence.
ZERO_TOLERANCE_LABELS: frozenset[str] = frozenset(
    {
        "Explicit Nudity",
        "Sexual Activity",
        "Violence",
        "Weapon",
        "Weapons",
        "Gun",
        "Drugs",
        "Hate Symbol",
    }
)

DEFAULT_DETECT_CATEGORIES: frozenset[Category] = frozenset(
    {Category.NUDITY, Category.VIOLENCE, Category.DRUGS, Category.HATE, Category.UNSAFE}
)

# Stable order used when rendering category lists into reasons.
CATEGORY_ORDER: tuple[Category, ...] = tuple(Category)


def category_for(label_name: str) -> Category | None:
    return LABEL_MAPPINGS.get(label_name)


def parse_category(value: str | Category) -> Category:
    if isinstance(value, Category):
        return value
    try:
        return Category(str(value).strip().lower())
    except ValueError as exc:
        raise ValueError(f"unknown moderation category: {value}") from exc


def sort_categories(categories) -> list[Category]:
    return sorted(set(categories), key=CATEGORY_ORDER.index)
