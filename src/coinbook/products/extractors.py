"""Animal and flavor taxonomy derived from product titles."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

# keyword -> (animal type, display name, icon)
ANIMAL_MAP: dict[str, tuple[str, str, str]] = {
    "ahi tuna": ("fish", "Fish", "🐟"),
    "tuna": ("fish", "Fish", "🐟"),
    "salmon": ("fish", "Fish", "🐟"),
    "rainbow trout": ("fish", "Fish", "🐟"),
    "trout": ("fish", "Fish", "🐟"),
    "beef": ("cattle", "Beef", "🐄"),
    "steak": ("cattle", "Beef", "🐄"),
    "brisket": ("cattle", "Beef", "🐄"),
    "buffalo": ("cattle", "Buffalo", "🦬"),
    "chicken": ("poultry", "Chicken", "🐔"),
    "turkey": ("poultry", "Turkey", "🦃"),
    "pork": ("pork", "Pork", "🐷"),
    "bacon": ("pork", "Pork", "🐷"),
    "elk": ("game", "Elk", "🦌"),
    "venison": ("game", "Venison", "🦌"),
    "deer": ("game", "Deer", "🦌"),
    "antelope": ("game", "Antelope", "🦌"),
    "wild boar": ("game", "Wild Boar", "🐗"),
    "boar": ("game", "Wild Boar", "🐗"),
    "alligator": ("exotic", "Alligator", "🐊"),
    "alpaca": ("exotic", "Alpaca", "🦙"),
    "kangaroo": ("exotic", "Kangaroo", "🦘"),
    "ostrich": ("exotic", "Ostrich", "🦢"),
    "lamb": ("exotic", "Lamb", "🐑"),
}

# Common proteins win over incidental words ("Beef & Elk Sampler" is beef).
PRIMARY_ANIMALS = ("chicken", "turkey", "beef", "steak", "pork", "bacon", "venison", "elk")
MULTI_WORD_ANIMALS = ("ahi tuna", "rainbow trout", "wild boar")

# keyword -> (flavor type, icon)
FLAVOR_MAP: dict[str, tuple[str, str]] = {
    "maple": ("sweet", "🍁"),
    "honey": ("sweet", "🍯"),
    "sweet": ("sweet", "🍬"),
    "teriyaki": ("sweet", "🍯"),
    "brown sugar": ("sweet", "🍬"),
    "hot": ("spicy", "🌶️"),
    "spicy": ("spicy", "🌶️"),
    "jalapeño": ("spicy", "🌶️"),
    "jalapeno": ("spicy", "🌶️"),
    "sriracha": ("spicy", "🌶️"),
    "habanero": ("spicy", "🌶️"),
    "ghost pepper": ("spicy", "🌶️"),
    "cayenne": ("spicy", "🌶️"),
    "chipotle": ("spicy", "🌶️"),
    "savory": ("savory", "🥩"),
    "original": ("savory", "🥩"),
    "classic": ("savory", "🥩"),
    "traditional": ("savory", "🥩"),
    "au jus": ("savory", "🥩"),
    "salt": ("savory", "🧂"),
    "sea salt": ("savory", "🧂"),
    "barbecue": ("smoky", "🔥"),
    "bbq": ("smoky", "🔥"),
    "hickory": ("smoky", "🔥"),
    "mesquite": ("smoky", "🔥"),
    "smoked": ("smoky", "🔥"),
    "smoke": ("smoky", "🔥"),
    "pepper": ("peppery", "🌿"),
    "black pepper": ("peppery", "🌿"),
    "cracked pepper": ("peppery", "🌿"),
    "peppered": ("peppery", "🌿"),
    "garlic": ("garlic", "🧄"),
    "herb": ("garlic", "🌿"),
    "rosemary": ("garlic", "🌿"),
    "citrus": ("tangy", "🍋"),
    "lime": ("tangy", "🍋"),
    "lemon": ("tangy", "🍋"),
    "vinegar": ("tangy", "🍋"),
    "korean": ("exotic", "🌏"),
    "thai": ("exotic", "🌏"),
    "jamaican": ("exotic", "🌏"),
    "jerk": ("exotic", "🌏"),
    "asian": ("exotic", "🌏"),
    "cajun": ("exotic", "🌏"),
}

MULTI_WORD_FLAVORS = ("ghost pepper", "brown sugar", "black pepper", "cracked pepper", "sea salt", "au jus")

# flavor type -> (display name, priority)
FLAVOR_TYPES: dict[str, tuple[str, int]] = {
    "sweet": ("Sweet", 1),
    "spicy": ("Spicy", 2),
    "savory": ("Savory", 3),
    "smoky": ("Smoky", 4),
    "peppery": ("Peppery", 5),
    "garlic": ("Garlic/Herb", 6),
    "tangy": ("Tangy", 7),
    "exotic": ("Exotic", 8),
}


def _contains(text: str, keyword: str) -> bool:
    return re.search(rf"(?<![a-z]){re.escape(keyword)}(?![a-z])", text) is not None


@dataclass(frozen=True)
class AnimalInfo:
    type: str
    display: str
    icon: str


@dataclass(frozen=True)
class FlavorInfo:
    primary: str
    secondary: tuple[str, ...]
    display: str
    icon: str


def extract_animal(title: str | None) -> AnimalInfo | None:
    text = (title or "").lower()
    if not text:
        return None
    ordered = [*PRIMARY_ANIMALS, *MULTI_WORD_ANIMALS]
    ordered += [k for k in ANIMAL_MAP if k not in ordered]
    for keyword in ordered:
        if _contains(text, keyword):
            return AnimalInfo(*ANIMAL_MAP[keyword])
    return None


def extract_flavors(title: str | None) -> FlavorInfo | None:
    text = (title or "").lower()
    if not text:
        return None

    matches: dict[str, str] = {}  # flavor type -> icon of first match
    for keyword in MULTI_WORD_FLAVORS:
        if _contains(text, keyword):
            ftype, icon = FLAVOR_MAP[keyword]
            matches.setdefault(ftype, icon)
            # "ghost pepper" is spicy only, not also a bare "pepper" hit.
            text = text.replace(keyword, " ")
    for keyword, (ftype, icon) in FLAVOR_MAP.items():
        if " " in keyword or ftype in matches:
            continue
        if _contains(text, keyword):
            matches[ftype] = icon

    if not matches:
        return None
    types = sorted(matches, key=lambda t: FLAVOR_TYPES[t][1])
    return FlavorInfo(
        primary=types[0],
        secondary=tuple(types[1:]),
        display=" & ".join(FLAVOR_TYPES[t][0] for t in types),
        icon=matches[types[0]],
    )


def extract_metadata(product: dict[str, Any]) -> dict[str, Any]:
    """Metadata row fields for a catalog product (title and vendor plus taxonomy)."""
    title = product.get("title") or ""
    animal = extract_animal(title)
    flavor = extract_flavors(title)
    return {
        "title": title,
        "vendor": product.get("vendor"),
        "animal_type": animal.type if animal else None,
        "animal_display": animal.display if animal else None,
        "animal_icon": animal.icon if animal else None,
        "primary_flavor": flavor.primary if flavor else None,
        "secondary_flavors": list(flavor.secondary) if flavor else [],
        "flavor_display": flavor.display if flavor else None,
        "flavor_icon": flavor.icon if flavor else None,
    }
