"""
Category Service

Folds whatever category vocabulary the model returns onto the fixed internal
taxonomy.  Receipt-level categories accept the English, Spanish and Dutch
labels the apps display; product categories accept common synonyms.
Anything unrecognised lands in "others".

Also cleans the VAT breakdown: zero-rate rows and rows with neither an amount
nor a base are dropped.
"""
import logging
import re
from typing import Optional

from models.schemas import VatEntry

logger = logging.getLogger("receiptlens.categories")

RECEIPT_CATEGORIES = ["grocery", "transport", "food", "fuel", "others"]
PRODUCT_CATEGORIES = ["food", "beverages", "cleaning", "personal_care", "pharmacy", "others"]

# Localised label → internal value.  Keys are lower-cased.
_RECEIPT_CATEGORY_ALIASES: dict[str, str] = {
    # English
    "grocery": "grocery",
    "groceries": "grocery",
    "market": "grocery",
    "supermarket": "grocery",
    "transport": "transport",
    "transportation": "transport",
    "food": "food",
    "restaurant": "food",
    "fuel": "fuel",
    "gas": "fuel",
    "others": "others",
    "other": "others",
    # Spanish
    "mercado": "grocery",
    "transporte": "transport",
    "comida": "food",
    "combustible": "fuel",
    "otros": "others",
    # Dutch
    "supermarkt": "grocery",
    "eten": "food",
    "brandstof": "fuel",
    "overige": "others",
}

_PRODUCT_CATEGORY_ALIASES: dict[str, str] = {
    "food": "food",
    "groceries": "food",
    "produce": "food",
    "beverages": "beverages",
    "beverage": "beverages",
    "drinks": "beverages",
    "drink": "beverages",
    "cleaning": "cleaning",
    "household": "cleaning",
    "personal_care": "personal_care",
    "personalcare": "personal_care",
    "hygiene": "personal_care",
    "pharmacy": "pharmacy",
    "medicine": "pharmacy",
    "health": "pharmacy",
    "others": "others",
    "other": "others",
}


def _key(label: str) -> str:
    """Lower-case, collapse spaces/hyphens to underscores."""
    return re.sub(r'[\s\-]+', '_', label.strip().lower())


def normalize_receipt_category(label: Optional[str]) -> str:
    if not label:
        return "others"
    key = _key(label)
    return _RECEIPT_CATEGORY_ALIASES.get(key) or _RECEIPT_CATEGORY_ALIASES.get(
        key.replace("_", " "), "others"
    )


def normalize_product_category(label: Optional[str]) -> str:
    if not label:
        return "others"
    return _PRODUCT_CATEGORY_ALIASES.get(_key(label), "others")


def clean_vat_info(vat_info: Optional[dict[str, VatEntry]]) -> Optional[dict[str, VatEntry]]:
    """
    Keep only VAT rows with a positive rate and a positive amount or base.
    Returns None when nothing survives.
    """
    if not vat_info:
        return None
    cleaned: dict[str, VatEntry] = {}
    for rate_label, entry in vat_info.items():
        try:
            rate = float(str(rate_label).replace("%", "").replace(",", ".").strip())
        except ValueError:
            logger.debug("Dropping VAT row with unreadable rate %r", rate_label)
            continue
        if rate <= 0:
            continue
        if (entry.amount or 0) > 0 or (entry.base or 0) > 0:
            cleaned[rate_label] = entry
    return cleaned or None
