"""
Reconciliation Service

Turns a noisy DraftReceipt into an arithmetically consistent ReconciledReceipt.
Four passes run in order:

  1. Date disambiguation — dd/mm vs mm/dd using country/currency and a
     plausibility window around "today".
  2. Per-item checks — quantity, unit price bounds, outliers, q × u ≈ total.
  3. Totals — items sum vs subtotal, tax and discount bounds,
     subtotal + tax − discount ≈ total.
  4. Cross-record checks — total below an item, suspiciously low average.

Every check that fires records an Anomaly naming the fields it touched.
Confidence starts at 1.0 and loses one penalty per distinct anomaly type.

The whole thing is pure: no I/O, no clock reads unless `today` is omitted.
"""
import logging
import re
from datetime import date, timedelta
from typing import Optional

from models.schemas import (
    Anomaly,
    DateResolution,
    DraftItem,
    DraftReceipt,
    DraftTotals,
    ReconciledItem,
    ReconciledReceipt,
    ReconciledTotals,
    Validation,
    VatAmount,
)

logger = logging.getLogger("receiptlens.reconcile")

# ── Tolerances ────────────────────────────────────────────────────────────────
ITEM_PRICE_TOLERANCE = 0.02       # q × u vs totalPrice
SUBTOTAL_TOLERANCE = 0.05         # items sum vs declared subtotal
SUBTOTAL_REPAIR_RATIO = 0.20      # beyond this the subtotal is replaced
TOTAL_TOLERANCE = 0.02            # subtotal + tax − discount vs total
TAX_ADJUST_WINDOW = 0.10          # total gap small enough to absorb into tax
MAX_ADJUSTED_TAX_RATIO = 0.30
MAX_TAX_RATIO = 0.50
FALLBACK_TAX_RATE = 0.19          # approximation; not country aware
MAX_DISCOUNT_RATIO = 0.90
MIN_UNIT_PRICE = 0.01
MAX_UNIT_PRICE = 10_000
MAX_QUANTITY = 1_000
OUTLIER_FACTOR = 10
LOW_AVERAGE_MIN_ITEMS = 5
LOW_AVERAGE_PRICE = 0.5

MAX_FUTURE_DAYS = 7
MAX_PAST_YEARS = 2

ANOMALY_PENALTIES: dict[str, float] = {
    "total_mismatch": 0.30,
    "subtotal_mismatch": 0.20,
    "price_outlier": 0.15,
    "tax_too_high": 0.10,
    "price_mismatch": 0.10,
    "suspiciously_low_average": 0.25,
    "total_less_than_item": 0.40,
}
DEFAULT_PENALTY = 0.05

EU_COUNTRIES = frozenset({
    "NL", "ES", "FR", "DE", "BE", "IT", "PT", "IE", "LU", "AT", "FI", "SE",
    "DK", "NO", "PL", "CZ", "SK", "HU", "RO", "BG", "HR", "SI", "GR",
})

DATE_RAW_RE = re.compile(r'^(\d{1,2})[/\-](\d{1,2})[/\-](\d{2,4})$')


def _money(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 2)


# ── Date disambiguation ───────────────────────────────────────────────────────

def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _years_before(d: date, years: int) -> date:
    try:
        return d.replace(year=d.year - years)
    except ValueError:   # Feb 29
        return d.replace(year=d.year - years, day=28)


def _is_plausible(candidate: Optional[date], today: date) -> bool:
    if candidate is None:
        return False
    if candidate > today + timedelta(days=MAX_FUTURE_DAYS):
        return False
    return candidate >= _years_before(today, MAX_PAST_YEARS)


def resolve_purchase_date(
    raw: Optional[str],
    country: Optional[str] = None,
    currency: Optional[str] = None,
    today: Optional[date] = None,
) -> Optional[tuple[date, str]]:
    """
    Pick dd/mm or mm/dd for a numeric date string like "1/10/2025".

    Returns (date, method) or None when the string is not a numeric date or
    no reading is usable.  Methods:
      by_components_dmy|mdy   one component > 12, only one reading exists
      by_country_eu|us        ambiguous, regional preference was plausible
      by_plausibility_dmy|mdy only one reading falls in the window
      fallback_dmy|mdy        both plausible and no regional signal
    """
    m = DATE_RAW_RE.match((raw or "").strip())
    if not m:
        return None

    a, b = int(m.group(1)), int(m.group(2))
    year_text = m.group(3)
    if len(year_text) == 3:
        return None
    year = int(year_text) + (2000 if len(year_text) == 2 else 0)
    if not (1 <= a <= 31 and 1 <= b <= 31):
        return None

    today = today or date.today()
    as_dmy = _safe_date(year, b, a)
    as_mdy = _safe_date(year, a, b)

    if a > 12 or b > 12:
        if a > 12 and as_dmy:
            return as_dmy, "by_components_dmy"
        if b > 12 and as_mdy:
            return as_mdy, "by_components_mdy"
        return None

    country_code = (country or "").strip().upper()
    currency_code = (currency or "").strip().upper()
    is_eu = country_code in EU_COUNTRIES or currency_code == "EUR"
    is_us = country_code == "US" or currency_code == "USD"

    dmy_ok = _is_plausible(as_dmy, today)
    mdy_ok = _is_plausible(as_mdy, today)

    if is_eu and dmy_ok:
        return as_dmy, "by_country_eu"
    if is_us and mdy_ok:
        return as_mdy, "by_country_us"
    if dmy_ok and not mdy_ok:
        return as_dmy, "by_plausibility_dmy"
    if mdy_ok and not dmy_ok:
        return as_mdy, "by_plausibility_mdy"
    if dmy_ok:
        return as_dmy, "fallback_dmy"
    return None


# ── Per-item validation ───────────────────────────────────────────────────────

def _average_item_price(items: list[DraftItem]) -> float:
    prices = [
        p for p in (item.total_price or item.unit_price for item in items)
        if p is not None and p > 0
    ]
    return sum(prices) / len(prices) if prices else 0.0


def validate_items(items: list[DraftItem]) -> tuple[list[ReconciledItem], list[Anomaly]]:
    """
    Check and repair each line item.

    Quantity is checked first so that every later computation uses a valid
    multiplier.  The q × u comparison runs after the unit price repairs, so a
    corrected item always satisfies the 2% tolerance on the way out.
    """
    anomalies: list[Anomaly] = []
    reconciled: list[ReconciledItem] = []
    average = _average_item_price(items)

    for index, item in enumerate(items):
        label = item.name or item.original_text
        quantity = item.quantity
        unit_price = item.unit_price
        total_price = item.total_price

        def flag(kind: str, message: str, fields: list[str], **evidence):
            anomalies.append(Anomaly(
                type=kind,
                message=message,
                fields=fields,
                item_index=index,
                item_name=label,
                evidence=evidence,
            ))

        if quantity is not None and not (0 < quantity <= MAX_QUANTITY):
            flag("quantity_invalid", f"Invalid quantity: {quantity}",
                 ["quantity"], value=quantity)
            quantity = 1.0
        if quantity is None:
            quantity = 1.0

        if unit_price is not None:
            if unit_price < MIN_UNIT_PRICE:
                flag("price_too_low", f"Unit price too low: {unit_price}",
                     ["unitPrice"], value=unit_price)
                if total_price:
                    unit_price = round(total_price / quantity, 4)
            elif unit_price > MAX_UNIT_PRICE:
                flag("price_too_high", f"Unit price too high: {unit_price}",
                     ["unitPrice"], value=unit_price)
                unit_price = round(unit_price / 100, 4)

        if total_price is not None and average > 0 and total_price > average * OUTLIER_FACTOR:
            flag("price_outlier",
                 f"Price {total_price} is {total_price / average:.1f}x the average",
                 ["totalPrice"], value=total_price, average=round(average, 4))

        if total_price is not None and unit_price:
            expected = quantity * unit_price
            if abs(expected - total_price) > abs(expected) * ITEM_PRICE_TOLERANCE:
                flag("price_mismatch",
                     f"Line total does not match: {quantity:g} x {unit_price} != {total_price}",
                     ["quantity", "unitPrice", "totalPrice"],
                     expected=round(expected, 2), declared=total_price)
                total_price = expected

        if not total_price and unit_price:
            total_price = unit_price * quantity

        reconciled.append(ReconciledItem(
            name=item.name,
            category=item.category,
            quantity=quantity,
            unit_price=unit_price,
            total_price=_money(total_price),
            original_text=item.original_text,
        ))

    return reconciled, anomalies


# ── Totals ────────────────────────────────────────────────────────────────────

def items_sum(items: list[ReconciledItem]) -> float:
    """Sum of the best price signal each item carries."""
    total = 0.0
    for item in items:
        if item.total_price is not None:
            total += item.total_price
        elif item.unit_price is not None:
            total += item.unit_price * item.quantity
    return total


def validate_totals(
    items: list[ReconciledItem],
    totals: DraftTotals,
) -> tuple[ReconciledTotals, list[Anomaly]]:
    """
    Reconcile subtotal / tax / discount / total against each other and the
    items.  Item lines are often printed gross (tax included), so the items
    sum is compared with whichever of subtotal or total it sits closer to.
    """
    anomalies: list[Anomaly] = []
    subtotal = totals.subtotal
    tax = totals.tax
    discount = totals.discount
    total = totals.total
    calculated_aux: Optional[float] = None

    line_sum = items_sum(items)
    dist_subtotal = abs(line_sum - subtotal) if subtotal is not None else float("inf")
    dist_total = abs(line_sum - total) if total is not None else float("inf")
    items_are_gross = dist_total < dist_subtotal

    if subtotal is not None:
        if not items_are_gross:
            if line_sum > 0 and dist_subtotal > line_sum * SUBTOTAL_TOLERANCE:
                anomalies.append(Anomaly(
                    type="subtotal_mismatch",
                    message="Subtotal does not match the sum of items",
                    fields=["subtotal"],
                    evidence={
                        "calculated": round(line_sum, 2),
                        "declared": subtotal,
                        "difference": round(dist_subtotal, 2),
                    },
                ))
                if dist_subtotal > line_sum * SUBTOTAL_REPAIR_RATIO:
                    if tax is not None and total is not None:
                        subtotal = total - tax
                    else:
                        subtotal = line_sum
        elif tax is not None and total is not None:
            subtotal = total - tax
    elif tax is not None and total is not None:
        subtotal = total - tax
    elif line_sum > 0:
        subtotal = line_sum

    if tax and subtotal:
        rate = tax / subtotal
        if rate > MAX_TAX_RATIO:
            anomalies.append(Anomaly(
                type="tax_too_high",
                message=f"Tax is {rate * 100:.1f}% of the subtotal",
                fields=["tax"],
                evidence={"rate": round(rate, 4), "tax": tax, "subtotal": round(subtotal, 2)},
            ))
            tax = subtotal * FALLBACK_TAX_RATE

    if discount and subtotal:
        rate = discount / subtotal
        if rate > MAX_DISCOUNT_RATIO:
            anomalies.append(Anomaly(
                type="discount_too_high",
                message=f"Discount is {rate * 100:.1f}% of the subtotal",
                fields=["discount"],
                evidence={"rate": round(rate, 4), "discount": discount,
                          "subtotal": round(subtotal, 2)},
            ))
            discount = 0.0

    calculated = (subtotal or line_sum) + (tax or 0.0) - (discount or 0.0)

    if total:
        diff = abs(calculated - total)
        if diff > calculated * TOTAL_TOLERANCE:
            anomalies.append(Anomaly(
                type="total_mismatch",
                message=f"Total does not match the computed total: {calculated:.2f} vs {total}",
                fields=["subtotal", "tax", "discount", "total"],
                evidence={
                    "calculated": round(calculated, 2),
                    "declared": total,
                    "difference": round(diff, 2),
                },
            ))
            if diff < calculated * TAX_ADJUST_WINDOW:
                base = subtotal or 0.0
                adjusted_tax = total - base + (discount or 0.0)
                if 0 <= adjusted_tax < base * MAX_ADJUSTED_TAX_RATIO:
                    tax = adjusted_tax
            else:
                calculated_aux = calculated
    else:
        total = calculated

    return ReconciledTotals(
        subtotal=_money(subtotal),
        tax=_money(tax or 0.0),
        discount=_money(discount or 0.0),
        total=_money(total),
        calculated_total=_money(calculated_aux),
    ), anomalies


# ── Cross-record checks ───────────────────────────────────────────────────────

def cross_validate(items: list[ReconciledItem], totals: ReconciledTotals) -> list[Anomaly]:
    anomalies: list[Anomaly] = []
    total = totals.total
    if not total or not items:
        return anomalies

    max_item = max((item.total_price or 0.0) for item in items)
    if total < max_item:
        anomalies.append(Anomaly(
            type="total_less_than_item",
            message=f"Total ({total}) is less than a single item ({max_item})",
            fields=["total", "items"],
            evidence={"total": total, "maxItemPrice": max_item},
        ))

    if len(items) > LOW_AVERAGE_MIN_ITEMS:
        average = total / len(items)
        if average < LOW_AVERAGE_PRICE:
            anomalies.append(Anomaly(
                type="suspiciously_low_average",
                message=f"Average per item is very low: {average:.2f}",
                fields=["total", "items"],
                evidence={"avgPerItem": round(average, 4), "itemCount": len(items)},
            ))
    return anomalies


def compute_confidence(anomalies: list[Anomaly]) -> float:
    """1.0 minus one penalty per distinct anomaly type, clamped to [0, 1]."""
    confidence = 1.0
    for kind in {a.type for a in anomalies}:
        confidence -= ANOMALY_PENALTIES.get(kind, DEFAULT_PENALTY)
    return round(min(1.0, max(0.0, confidence)), 2)


# ── Entry point ───────────────────────────────────────────────────────────────

def reconcile(draft: DraftReceipt, today: Optional[date] = None) -> ReconciledReceipt:
    """Run every pass over a draft and return the reconciled receipt."""
    purchase_date = draft.purchase_date
    date_resolution = None
    if draft.purchase_date_raw:
        resolved = resolve_purchase_date(
            draft.purchase_date_raw, draft.country, draft.currency, today
        )
        if resolved:
            chosen, method = resolved
            iso = chosen.isoformat()
            if iso != purchase_date:
                logger.debug("Date %r resolved to %s via %s",
                             draft.purchase_date_raw, iso, method)
                purchase_date = iso
                date_resolution = DateResolution(
                    method=method, raw=draft.purchase_date_raw, country=draft.country,
                )

    items, item_anomalies = validate_items(draft.items)
    totals, total_anomalies = validate_totals(items, draft.totals)
    cross_anomalies = cross_validate(items, totals)

    anomalies = item_anomalies + total_anomalies + cross_anomalies
    confidence = compute_confidence(anomalies)
    if anomalies:
        logger.warning(
            "Reconciled '%s' with %d anomalies (%s), confidence %.2f",
            draft.merchant_name or "unknown merchant", len(anomalies),
            ", ".join(sorted({a.type for a in anomalies})), confidence,
        )

    vat_info = None
    if draft.vat_info:
        vat_info = {
            rate: VatAmount(amount=entry.amount, base=entry.base)
            for rate, entry in draft.vat_info.items()
        }

    return ReconciledReceipt(
        merchant_name=draft.merchant_name,
        purchase_date=purchase_date,
        purchase_date_raw=draft.purchase_date_raw,
        currency=draft.currency,
        country=draft.country,
        payment_method=draft.payment_method,
        card_type=draft.card_type,
        receipt_category=draft.receipt_category,
        totals=totals,
        vat_info=vat_info,
        discount_info=draft.discount_info,
        items=items,
        date_resolution=date_resolution,
        extraction_method=draft.extraction_method,
        validation=Validation(
            performed=True,
            anomalies_detected=len(anomalies),
            anomalies=anomalies,
            confidence=confidence,
        ),
    )
