from __future__ import annotations

import math
from typing import Iterable

from cidery_core.units import liters_to_gallons

POMMEAU_ABV_RANGE = (16.0, 22.0)


def _pair(component, field: str) -> tuple[float, float | None]:
    if isinstance(component, (tuple, list)):
        volume, value = component
    else:
        volume, value = component.volume_liters, getattr(component, field)
    return float(volume), (None if value is None else float(value))


def calculate_blend_abv(components: Iterable) -> float:
    """Alcohol-weighted ABV of a blend.

    components: (volume_liters, abv) pairs, or objects with volume_liters/abv.
    Returns 0 for an empty blend or zero total volume.
    """
    total_volume = 0.0
    total_alcohol = 0.0
    for c in components:
        volume, abv = _pair(c, "abv")
        if volume < 0:
            raise ValueError("Blend component volume cannot be negative")
        total_volume += volume
        total_alcohol += volume * (abv or 0.0)

    if total_volume == 0:
        return 0.0
    return round(total_alcohol / total_volume, 2)


def proof_gallons(volume_liters: float, abv: float) -> float:
    # proof = 2 x ABV; one proof gallon is a wine gallon at 100 proof
    return liters_to_gallons(volume_liters) * abv * 2 / 100


def estimate_spirit_sg(abv: float) -> float:
    # ethanol ~0.789, water 1.000
    return 1 - (abv / 100 * 0.21)


def blend_specific_gravity(components: Iterable) -> float | None:
    total_volume = 0.0
    weighted = 0.0
    for c in components:
        volume, sg = _pair(c, "sg")
        if sg is None:
            return None
        total_volume += volume
        weighted += volume * sg

    if total_volume == 0:
        return None
    return round(weighted / total_volume, 4)


def is_typical_pommeau_abv(abv: float) -> bool:
    low, high = POMMEAU_ABV_RANGE
    return low <= abv <= high


def blend_ph(components: Iterable) -> float | None:
    # pH is logarithmic: blend hydrogen ion concentrations, not pH values
    total_volume = 0.0
    hydrogen = 0.0
    for c in components:
        volume, ph = _pair(c, "ph")
        if ph is None:
            return None
        total_volume += volume
        hydrogen += volume * 10 ** -ph

    if total_volume == 0 or hydrogen == 0:
        return None
    return round(-math.log10(hydrogen / total_volume), 2)
