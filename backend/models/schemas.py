import math
import re
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ── Lenient coercion for AI output ─────────────────────
_NON_NUMERIC_RE = re.compile(r"[^\d,.\-]")


def _to_float(value: Any) -> Optional[float]:
    """Best-effort number parse.  Garbage becomes None instead of an error."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    s = _NON_NUMERIC_RE.sub("", value.strip())
    if not s or s in ("-", ".", ","):
        return None
    # "1.234,56" (EU) vs "1,234.56" (US): the last separator is the decimal one
    if "," in s and "." in s:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        s = s.replace(",", ".")
    try:
        parsed = float(s)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


LooseFloat = Annotated[Optional[float], BeforeValidator(_to_float)]
LooseStr = Annotated[Optional[str], BeforeValidator(_to_str)]


class _DraftModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class _OutputModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ── Draft (as returned by the model) ───────────────────
class DraftItem(_DraftModel):
    name: LooseStr = None
    category: LooseStr = None
    quantity: LooseFloat = None
    unit_price: LooseFloat = None
    total_price: LooseFloat = None
    original_text: LooseStr = None


class DraftTotals(_DraftModel):
    subtotal: LooseFloat = None
    tax: LooseFloat = None
    discount: LooseFloat = None
    total: LooseFloat = None


class VatEntry(_DraftModel):
    amount: LooseFloat = None
    base: LooseFloat = None


class DraftReceipt(_DraftModel):
    """Loosely-typed extraction result.  Every field may be missing."""
    merchant_name: LooseStr = None
    purchase_date: LooseStr = None
    purchase_date_raw: LooseStr = None
    currency: LooseStr = None
    country: LooseStr = None
    payment_method: LooseStr = None
    card_type: LooseStr = None
    receipt_category: LooseStr = None
    totals: DraftTotals = Field(default_factory=DraftTotals)
    vat_info: Optional[Dict[str, VatEntry]] = None
    discount_info: Optional[Any] = None
    items: List[DraftItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("items", "products"),
    )
    extraction_method: LooseStr = None

    @field_validator("totals", mode="before")
    @classmethod
    def _totals_default(cls, value):
        return value if isinstance(value, (dict, DraftTotals)) else {}

    @field_validator("items", mode="before")
    @classmethod
    def _items_list(cls, value):
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, (dict, DraftItem))]

    @field_validator("vat_info", mode="before")
    @classmethod
    def _vat_mapping(cls, value):
        if not isinstance(value, dict):
            return None
        return {str(k): v for k, v in value.items() if isinstance(v, (dict, VatEntry))}


# ── Reconciled output ──────────────────────────────────
class Anomaly(_OutputModel):
    type: str
    message: str
    fields: List[str]
    item_index: Optional[int] = None
    item_name: Optional[str] = None
    evidence: Dict[str, Any] = Field(default_factory=dict)


class ReconciledItem(_OutputModel):
    name: Optional[str] = None
    category: Optional[str] = None
    quantity: float = 1.0
    unit_price: Optional[float] = None
    total_price: Optional[float] = None
    original_text: Optional[str] = None


class ReconciledTotals(_OutputModel):
    subtotal: Optional[float] = None
    tax: float = 0.0
    discount: float = 0.0
    total: Optional[float] = None
    calculated_total: Optional[float] = None


class VatAmount(_OutputModel):
    amount: Optional[float] = None
    base: Optional[float] = None


class DateResolution(_OutputModel):
    method: str
    raw: str
    country: Optional[str] = None


class Validation(_OutputModel):
    performed: bool = True
    anomalies_detected: int = 0
    anomalies: List[Anomaly] = Field(default_factory=list)
    confidence: float = 1.0


class ReconciledReceipt(_OutputModel):
    merchant_name: Optional[str] = None
    purchase_date: Optional[str] = None
    purchase_date_raw: Optional[str] = None
    currency: Optional[str] = None
    country: Optional[str] = None
    payment_method: Optional[str] = None
    card_type: Optional[str] = None
    receipt_category: Optional[str] = None
    totals: ReconciledTotals = Field(default_factory=ReconciledTotals)
    vat_info: Optional[Dict[str, VatAmount]] = None
    discount_info: Optional[Any] = None
    items: List[ReconciledItem] = Field(default_factory=list)
    date_resolution: Optional[DateResolution] = None
    extraction_method: Optional[str] = None
    validation: Validation = Field(default_factory=Validation)


# ── Pipeline result ────────────────────────────────────
class ExtractionResult(_OutputModel):
    success: bool
    receipt: Optional[ReconciledReceipt] = None
    error: Optional[str] = None
    cached: bool = False
