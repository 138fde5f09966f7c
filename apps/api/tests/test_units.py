import pytest

from cidery_core.units import (
    LITERS_PER_GALLON, celsius_to_fahrenheit, convert_volume, convert_weight,
    fahrenheit_to_celsius, from_liters, gallons_to_liters, kg_to_lbs, lbs_to_kg,
    liters_to_gallons, round_liters, to_kg, to_liters,
)


def test_gallons_round_trip_to_liters():
    assert to_liters(1, "gal") == pytest.approx(LITERS_PER_GALLON)
    assert from_liters(LITERS_PER_GALLON * 10, "gal") == pytest.approx(10)


def test_milliliters():
    assert to_liters(750, "mL") == pytest.approx(0.75)
    assert convert_volume(2, "L", "mL") == pytest.approx(2000)


def test_pounds_to_kg():
    assert to_kg(2.20462, "lb") == pytest.approx(1.0)
    assert convert_weight(10, "kg", "lb") == pytest.approx(22.0462)


def test_temperature():
    assert celsius_to_fahrenheit(100) == pytest.approx(212)
    assert fahrenheit_to_celsius(32) == pytest.approx(0)


@pytest.mark.parametrize("fn,unit", [(to_liters, "hl"), (from_liters, "oz"), (to_kg, "ton")])
def test_unknown_units_rejected(fn, unit):
    with pytest.raises(ValueError):
        fn(1, unit)


@pytest.mark.parametrize("x", [0, 0.5, 1, 19.5, 3785.411784, 12345.678])
def test_volume_conversion_round_trips(x):
    assert liters_to_gallons(gallons_to_liters(x)) == pytest.approx(x)
    assert gallons_to_liters(liters_to_gallons(x)) == pytest.approx(x)


@pytest.mark.parametrize("x", [0, 0.5, 1, 2.20462, 453.592, 10000])
def test_weight_conversion_round_trips(x):
    assert lbs_to_kg(kg_to_lbs(x)) == pytest.approx(x)
    assert kg_to_lbs(lbs_to_kg(x)) == pytest.approx(x)


def test_round_liters_keeps_milliliters():
    assert round_liters(378.5411784) == 378.541
    assert round_liters(0.0004) == 0.0
