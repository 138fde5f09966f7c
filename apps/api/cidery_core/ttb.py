"""TTB balance and Form 5120.17 arithmetic.

Per product type and period, volumes (liters) must close:

    opening + production + receipts + blended_in
        == packaged + distilled + blended_out + losses + ending   (+/- discrepancy)

The form itself is filed in wine gallons; the tax helpers follow the hard
cider rate with the small producer credit.
"""
from __future__ import annotations

import calendar
from dataclasses import asdict, dataclass, fields
from datetime import date
from typing import Iterable

from cidery_core.config import settings
from cidery_core.models import PRODUCT_TYPES

TTB_TAX_CLASSES = {
    "cider": "Hard Cider",
    "perry": "Hard Cider",
    "brandy": "Distilled Spirits (Apple Brandy)",
    "pommeau": "Wine (over 16% to 21%)",
    "juice": "Non-taxable (Juice)",
    "other": "Wine (7% or less)",
    "cider_perry": "Hard Cider",
}

# Types reported in the wine section of Form 5120.17. Brandy is spirits, juice is not wine.
WINE_PRODUCT_TYPES = ("cider", "perry", "pommeau", "other")

LITERS_PER_WINE_GALLON = 3.78541
WINE_GALLONS_PER_LITER = 0.264172

HARD_CIDER_TAX_RATE = 0.226
SMALL_PRODUCER_CREDIT_PER_GALLON = 0.056
SMALL_PRODUCER_CREDIT_LIMIT_GALLONS = 30000
EFFECTIVE_TAX_RATE = HARD_CIDER_TAX_RATE - SMALL_PRODUCER_CREDIT_PER_GALLON

RECONCILIATION_TOLERANCE_GALLONS = 0.1

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


def safe_ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator


@dataclass
class ProductTypeSummary:
    product_type: str
    ttb_tax_class: str
    batch_count: int = 0
    opening_balance_liters: float = 0.0
    production_liters: float = 0.0
    receipts_liters: float = 0.0
    blended_in_liters: float = 0.0
    total_source_liters: float = 0.0
    packaged_liters: float = 0.0
    distilled_liters: float = 0.0
    blended_out_liters: float = 0.0
    losses_liters: float = 0.0
    ending_balance_liters: float = 0.0
    total_destination_liters: float = 0.0
    discrepancy_liters: float = 0.0
    is_balanced: bool = True

    def as_dict(self) -> dict:
        return asdict(self)


_SUMMED_FIELDS = [
    f.name for f in fields(ProductTypeSummary)
    if f.name not in ("product_type", "ttb_tax_class", "is_balanced")
]


def build_summary(
    product_type: str,
    *,
    batch_count: int = 0,
    opening_balance: float = 0.0,
    production: float = 0.0,
    receipts: float = 0.0,
    blended_in: float = 0.0,
    packaged: float = 0.0,
    distilled: float = 0.0,
    blended_out: float = 0.0,
    losses: float = 0.0,
    ending_balance: float | None = None,
    tolerance: float | None = None,
) -> ProductTypeSummary:
    """Close the balance equation for one product type.

    Without an ending balance the closing balance is derived from the flows,
    so the summary balances by construction.
    """
    if tolerance is None:
        tolerance = settings.ttb_balance_tolerance_liters

    total_source = opening_balance + production + receipts + blended_in
    outflows = packaged + distilled + blended_out + losses
    if ending_balance is None:
        ending_balance = total_source - outflows

    total_destination = outflows + ending_balance
    discrepancy = round(total_source - total_destination, 3)

    return ProductTypeSummary(
        product_type=product_type,
        ttb_tax_class=TTB_TAX_CLASSES.get(product_type, TTB_TAX_CLASSES["other"]),
        batch_count=batch_count,
        opening_balance_liters=round(opening_balance, 3),
        production_liters=round(production, 3),
        receipts_liters=round(receipts, 3),
        blended_in_liters=round(blended_in, 3),
        total_source_liters=round(total_source, 3),
        packaged_liters=round(packaged, 3),
        distilled_liters=round(distilled, 3),
        blended_out_liters=round(blended_out, 3),
        losses_liters=round(losses, 3),
        ending_balance_liters=round(ending_balance, 3),
        total_destination_liters=round(total_destination, 3),
        discrepancy_liters=discrepancy,
        is_balanced=abs(discrepancy) <= tolerance,
    )


def combine_summaries(
    first: ProductTypeSummary,
    second: ProductTypeSummary,
    product_type: str,
    ttb_tax_class: str | None = None,
) -> ProductTypeSummary:
    values = {
        name: round(getattr(first, name) + getattr(second, name), 3)
        for name in _SUMMED_FIELDS
    }
    values["batch_count"] = first.batch_count + second.batch_count
    return ProductTypeSummary(
        product_type=product_type,
        ttb_tax_class=ttb_tax_class or TTB_TAX_CLASSES.get(product_type, first.ttb_tax_class),
        is_balanced=first.is_balanced and second.is_balanced,
        **values,
    )


def grand_summary(summaries: Iterable[ProductTypeSummary]) -> dict:
    summaries = list(summaries)
    return {
        "total_batches": sum(s.batch_count for s in summaries),
        "total_source_liters": round(sum(s.total_source_liters for s in summaries), 3),
        "total_destination_liters": round(sum(s.total_destination_liters for s in summaries), 3),
        "total_discrepancy_liters": round(sum(s.discrepancy_liters for s in summaries), 3),
        "is_balanced": all(s.is_balanced for s in summaries),
    }


# --- Form 5120.17 -------------------------------------------------------

def liters_to_wine_gallons(liters: float) -> float:
    if liters < 0:
        return 0.0
    return liters * WINE_GALLONS_PER_LITER


def wine_gallons_to_liters(gallons: float) -> float:
    if gallons < 0:
        return 0.0
    return gallons * LITERS_PER_WINE_GALLON


def round_gallons(gallons: float) -> float:
    return round(gallons, 3)


def calculate_hard_cider_tax(taxable_gallons: float, prior_year_gallons_used: float = 0) -> dict:
    """Federal excise tax with the small producer credit.

    The credit covers the first 30,000 gallons removed in the calendar year;
    prior_year_gallons_used is what this year's earlier periods already used.
    """
    if taxable_gallons <= 0:
        return {
            "taxable_gallons": 0.0,
            "gross_tax": 0.0,
            "small_producer_credit": 0.0,
            "credit_eligible_gallons": 0.0,
            "net_tax_owed": 0.0,
            "effective_rate": 0.0,
        }

    gross_tax = taxable_gallons * HARD_CIDER_TAX_RATE
    remaining_credit_gallons = max(0.0, SMALL_PRODUCER_CREDIT_LIMIT_GALLONS - prior_year_gallons_used)
    credit_eligible = min(taxable_gallons, remaining_credit_gallons)
    credit = credit_eligible * SMALL_PRODUCER_CREDIT_PER_GALLON
    net_tax = gross_tax - credit

    return {
        "taxable_gallons": taxable_gallons,
        "gross_tax": round(gross_tax, 2),
        "small_producer_credit": round(credit, 2),
        "credit_eligible_gallons": credit_eligible,
        "net_tax_owed": round(net_tax, 2),
        "effective_rate": round(safe_ratio(net_tax, taxable_gallons), 4),
    }


def calculate_reconciliation(
    *,
    beginning_inventory: float,
    wine_produced: float,
    receipts: float,
    tax_paid_removals: float,
    other_removals: float,
    ending_inventory: float,
) -> dict:
    total_available = beginning_inventory + wine_produced + receipts
    total_accounted_for = tax_paid_removals + other_removals + ending_inventory
    variance = round_gallons(total_available - total_accounted_for)

    return {
        "total_available": round_gallons(total_available),
        "total_accounted_for": round_gallons(total_accounted_for),
        "variance": variance,
        "balanced": abs(variance) < RECONCILIATION_TOLERANCE_GALLONS,
    }


def period_date_range(period_type: str, year: int, period_number: int | None = None) -> tuple[date, date]:
    if period_type == "monthly":
        month = period_number or 1
        if not 1 <= month <= 12:
            raise ValueError("Month must be between 1 and 12")
        return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])

    if period_type == "quarterly":
        quarter = period_number or 1
        if not 1 <= quarter <= 4:
            raise ValueError("Quarter must be between 1 and 4")
        start_month = (quarter - 1) * 3 + 1
        end_month = start_month + 2
        return date(year, start_month, 1), date(year, end_month, calendar.monthrange(year, end_month)[1])

    if period_type == "annual":
        return date(year, 1, 1), date(year, 12, 31)

    raise ValueError(f"Unknown period type: {period_type}")


def format_period_label(period_type: str, year: int, period_number: int | None = None) -> str:
    if period_type == "monthly":
        return f"{MONTH_NAMES[(period_number or 1) - 1]} {year}"
    if period_type == "quarterly":
        return f"Q{period_number or 1} {year}"
    return f"{year}"
