"""Volume, weight and temperature conversions.

Everything is stored in liters and kilograms; these helpers convert request
input into storage units and storage units into display units. Nothing here
rounds; call sites round when they format output.
"""
from __future__ import annotations

LITERS_PER_GALLON = 3.785411784
LBS_PER_KG = 2.20462
ML_PER_LITER = 1000.0

VOLUME_UNITS = ("L", "gal", "mL")
WEIGHT_UNITS = ("kg", "lb")


def liters_to_gallons(liters: float) -> float:
    return liters / LITERS_PER_GALLON


def gallons_to_liters(gallons: float) -> float:
    return gallons * LITERS_PER_GALLON


def kg_to_lbs(kg: float) -> float:
    return kg * LBS_PER_KG


def lbs_to_kg(lbs: float) -> float:
    return lbs / LBS_PER_KG


def to_liters(value: float, unit: str) -> float:
    if unit == "L":
        return value
    if unit == "gal":
        return gallons_to_liters(value)
    if unit == "mL":
        return value / ML_PER_LITER
    raise ValueError(f"Unknown volume unit: {unit}")


def from_liters(liters: float, unit: str) -> float:
    if unit == "L":
        return liters
    if unit == "gal":
        return liters_to_gallons(liters)
    if unit == "mL":
        return liters * ML_PER_LITER
    raise ValueError(f"Unknown volume unit: {unit}")


def convert_volume(value: float, from_unit: str, to_unit: str) -> float:
    return from_liters(to_liters(value, from_unit), to_unit)


def to_kg(value: float, unit: str) -> float:
    if unit == "kg":
        return value
    if unit == "lb":
        return lbs_to_kg(value)
    raise ValueError(f"Unknown weight unit: {unit}")


def convert_weight(value: float, from_unit: str, to_unit: str) -> float:
    kg = to_kg(value, from_unit)
    if to_unit == "kg":
        return kg
    if to_unit == "lb":
        return kg_to_lbs(kg)
    raise ValueError(f"Unknown weight unit: {to_unit}")


def celsius_to_fahrenheit(celsius: float) -> float:
    return celsius * 9 / 5 + 32


def fahrenheit_to_celsius(fahrenheit: float) -> float:
    return (fahrenheit - 32) * 5 / 9


def round_liters(liters: float) -> float:
    return round(liters, 3)
