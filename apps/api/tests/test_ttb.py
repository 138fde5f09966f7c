from datetime import date

import pytest

from cidery_core import ttb


def test_summary_balances_when_flows_close():
    s = ttb.build_summary(
        "cider",
        opening_balance=1000,
        production=500,
        blended_in=100,
        packaged=400,
        losses=20,
        blended_out=80,
        ending_balance=1100,
        tolerance=0.5,
    )
    assert s.total_source_liters == 1600
    assert s.total_destination_liters == 1600
    assert s.discrepancy_liters == 0
    assert s.is_balanced
    assert s.ttb_tax_class == "Hard Cider"


def test_summary_flags_discrepancy_beyond_tolerance():
    s = ttb.build_summary("cider", opening_balance=100, ending_balance=98, tolerance=0.5)
    assert s.discrepancy_liters == 2
    assert not s.is_balanced

    within = ttb.build_summary("cider", opening_balance=100, ending_balance=99.7, tolerance=0.5)
    assert within.is_balanced


def test_summary_without_ending_derives_it():
    s = ttb.build_summary("perry", production=300, packaged=120, losses=5)
    assert s.ending_balance_liters == 175
    assert s.is_balanced


def test_combine_summaries():
    cider = ttb.build_summary("cider", batch_count=2, production=100, ending_balance=100)
    perry = ttb.build_summary("perry", batch_count=1, production=50, ending_balance=45, tolerance=1)
    combined = ttb.combine_summaries(cider, perry, "cider_perry")
    assert combined.batch_count == 3
    assert combined.production_liters == 150
    assert combined.discrepancy_liters == 5
    assert not combined.is_balanced


def test_grand_summary():
    a = ttb.build_summary("cider", batch_count=1, production=10, ending_balance=10)
    b = ttb.build_summary("brandy", batch_count=2, receipts=5, ending_balance=5)
    g = ttb.grand_summary([a, b])
    assert g == {
        "total_batches": 3,
        "total_source_liters": 15,
        "total_destination_liters": 15,
        "total_discrepancy_liters": 0,
        "is_balanced": True,
    }


def test_safe_ratio_guards_zero():
    assert ttb.safe_ratio(5, 0) == 0.0
    assert ttb.safe_ratio(5, 2) == 2.5


def test_wine_gallons_never_negative():
    assert ttb.liters_to_wine_gallons(-3) == 0.0
    assert ttb.liters_to_wine_gallons(100) == pytest.approx(26.4172)


def test_hard_cider_tax_with_credit():
    tax = ttb.calculate_hard_cider_tax(1000)
    assert tax["gross_tax"] == 226.0
    assert tax["small_producer_credit"] == 56.0
    assert tax["net_tax_owed"] == 170.0
    assert tax["effective_rate"] == pytest.approx(0.17)


def test_hard_cider_credit_limited_by_prior_usage():
    tax = ttb.calculate_hard_cider_tax(1000, prior_year_gallons_used=29500)
    assert tax["credit_eligible_gallons"] == 500
    assert tax["small_producer_credit"] == 28.0


def test_no_tax_on_nothing_removed():
    assert ttb.calculate_hard_cider_tax(0)["net_tax_owed"] == 0.0


def test_reconciliation():
    r = ttb.calculate_reconciliation(
        beginning_inventory=100,
        wine_produced=50,
        receipts=0,
        tax_paid_removals=30,
        other_removals=5,
        ending_inventory=115,
    )
    assert r["variance"] == 0
    assert r["balanced"]


@pytest.mark.parametrize("period_type,number,expected", [
    ("monthly", 2, (date(2024, 2, 1), date(2024, 2, 29))),
    ("quarterly", 4, (date(2024, 10, 1), date(2024, 12, 31))),
    ("annual", None, (date(2024, 1, 1), date(2024, 12, 31))),
])
def test_period_date_range(period_type, number, expected):
    assert ttb.period_date_range(period_type, 2024, number) == expected


def test_period_date_range_rejects_bad_input():
    with pytest.raises(ValueError):
        ttb.period_date_range("monthly", 2024, 13)
    with pytest.raises(ValueError):
        ttb.period_date_range("weekly", 2024)


def test_period_labels():
    assert ttb.format_period_label("monthly", 2025, 3) == "March 2025"
    assert ttb.format_period_label("quarterly", 2025, 2) == "Q2 2025"
    assert ttb.format_period_label("annual", 2025) == "2025"


def test_packaging_heavy_period_closes():
    s = ttb.build_summary(
        "cider",
        opening_balance=1000,
        production=500,
        receipts=0,
        packaged=1200,
        losses=50,
        tolerance=0.5,
    )
    assert s.ending_balance_liters == 250
    assert s.discrepancy_liters == 0
    assert s.is_balanced


@pytest.mark.parametrize("other_ending,balanced", [(20, True), (18, False)])
def test_juice_and_other_combine_into_other(other_ending, balanced):
    juice = ttb.build_summary("juice", batch_count=3, production=300, packaged=100, ending_balance=200, tolerance=0.5)
    other = ttb.build_summary("other", batch_count=2, production=40, losses=20, ending_balance=other_ending, tolerance=0.5)
    combined = ttb.combine_summaries(juice, other, "other")
    assert combined.batch_count == 5
    assert combined.production_liters == 340
    assert combined.total_source_liters == 340
    assert combined.is_balanced is balanced


@pytest.mark.parametrize("gallons", [0, 1, 26.4172, 1234.5])
def test_wine_gallons_round_trip(gallons):
    assert ttb.liters_to_wine_gallons(ttb.wine_gallons_to_liters(gallons)) == pytest.approx(gallons, rel=1e-4)


def test_wine_gallons_to_liters_clamps_negative():
    assert ttb.wine_gallons_to_liters(-1) == 0.0
