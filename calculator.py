"""
Unit & markup calculations.

Pure functions only. Nothing here rounds except build_unit_prices(), which is
the single output stage; everything upstream of it works on unrounded floats.
"""

import math
from dataclasses import dataclass
from typing import Optional, Union

from config import GRAMS_PER_SOVEREIGN, GRAMS_PER_TOLA, GRAMS_PER_TROY_OUNCE
from errors import InvalidInput
from models import Denomination, MarkupFormula, UnitPrices

GRAMS_PER_UNIT = {
    Denomination.gram: 1.0,
    Denomination.ten_gram: 10.0,
    Denomination.kilogram: 1000.0,
    Denomination.tola: GRAMS_PER_TOLA,
    Denomination.sovereign: GRAMS_PER_SOVEREIGN,
    Denomination.troy_ounce: GRAMS_PER_TROY_OUNCE,
}

REFERENCE_FINENESS = 0.999
ESTIMATE_BAND = 0.015


@dataclass(frozen=True)
class CannotCompute:
    """Typed failure for inputs the calculator refuses to price."""

    field: str
    reason: str

    def as_error(self) -> InvalidInput:
        return InvalidInput(self.field, self.reason)


CalcResult = Union[float, CannotCompute]


def _check_positive(field: str, value) -> Optional[CannotCompute]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return CannotCompute(field, f"expected a number, got {type(value).__name__}")
    if not math.isfinite(value):
        return CannotCompute(field, "must be finite")
    if value <= 0:
        return CannotCompute(field, "must be greater than zero")
    return None


def round_money(value: float) -> float:
    return round(value, 2)


def convert(value: float, from_unit: Denomination, to_unit: Denomination) -> float:
    """Re-denominate a per-unit price, e.g. per gram -> per kilogram."""
    return value / GRAMS_PER_UNIT[from_unit] * GRAMS_PER_UNIT[to_unit]


def convert_amount(amount: float, from_unit: Denomination, to_unit: Denomination) -> CalcResult:
    """Re-express a weight, e.g. 2 tola -> 23.3276 gram."""
    problem = _check_positive("amount", amount)
    if problem:
        return problem
    return amount * GRAMS_PER_UNIT[from_unit] / GRAMS_PER_UNIT[to_unit]


def purity_multiplier(fineness: float, reference: float = REFERENCE_FINENESS) -> CalcResult:
    problem = _check_positive("fineness", fineness)
    if problem:
        return problem
    if fineness > 1:
        return CannotCompute("fineness", "must be a fraction no greater than 1")
    return fineness / reference


def apply_markup(price: float, formula: MarkupFormula) -> CalcResult:
    """price x (1 + duty) x (1 + tax) x (1 + premium), strictly in that order."""
    problem = _check_positive("price", price)
    if problem:
        return problem
    result = price
    for _, rate in formula.steps:
        result = result * (1 + rate)
    return result


def localize(
    international_price: float,
    exchange_rate: float,
    formula: MarkupFormula,
    fineness: Optional[float] = None,
    denomination: Denomination = Denomination.gram,
) -> CalcResult:
    """
    Turn an international per-troy-ounce quote into a local price.

    The quote is converted to local currency per gram, adjusted for purity,
    marked up, and finally expressed in the requested denomination.
    """
    for field, value in (("international_price", international_price), ("exchange_rate", exchange_rate)):
        problem = _check_positive(field, value)
        if problem:
            return problem

    per_gram = international_price * exchange_rate / GRAMS_PER_TROY_OUNCE

    if fineness is not None:
        multiplier = purity_multiplier(fineness)
        if isinstance(multiplier, CannotCompute):
            return multiplier
        per_gram = per_gram * multiplier

    marked_up = apply_markup(per_gram, formula)
    if isinstance(marked_up, CannotCompute):
        return marked_up
    return convert(marked_up, Denomination.gram, denomination)


def build_unit_prices(price_per_gram: float) -> UnitPrices | CannotCompute:
    problem = _check_positive("price_per_gram", price_per_gram)
    if problem:
        return problem
    return UnitPrices(
        per_gram=round_money(price_per_gram),
        per_ten_gram=round_money(convert(price_per_gram, Denomination.gram, Denomination.ten_gram)),
        per_kilogram=round_money(convert(price_per_gram, Denomination.gram, Denomination.kilogram)),
        per_tola=round_money(convert(price_per_gram, Denomination.gram, Denomination.tola)),
        per_sovereign=round_money(convert(price_per_gram, Denomination.gram, Denomination.sovereign)),
        per_troy_ounce=round_money(convert(price_per_gram, Denomination.gram, Denomination.troy_ounce)),
    )


def build_purity_prices(reference_per_gram: float, purities: dict[str, float]) -> dict[str, UnitPrices]:
    """Unit prices for every grade other than the reference one."""
    result = {}
    for label, fineness in purities.items():
        if fineness == REFERENCE_FINENESS:
            continue
        multiplier = purity_multiplier(fineness)
        if isinstance(multiplier, CannotCompute):
            continue
        prices = build_unit_prices(reference_per_gram * multiplier)
        if isinstance(prices, UnitPrices):
            result[label] = prices
    return result


def estimate_range(price: float, band: float = ESTIMATE_BAND) -> tuple[float, float]:
    """High/low estimate for a window when no observed extremes exist."""
    return round_money(price * (1 + band)), round_money(price * (1 - band))


def calculate_change(current: float, previous: float) -> tuple[float, float]:
    change = current - previous
    percent = (change / previous) * 100 if previous > 0 else 0.0
    return round_money(change), round_money(percent)


def gold_silver_ratio(gold_price: float, silver_price: float) -> tuple[float, str] | CannotCompute:
    """Ounces of silver per ounce of gold, with a coarse reading of the level."""
    for field, value in (("gold_price", gold_price), ("silver_price", silver_price)):
        problem = _check_positive(field, value)
        if problem:
            return problem
    ratio = gold_price / silver_price
    if ratio >= 80:
        interpretation = "silver_undervalued"
    elif ratio <= 50:
        interpretation = "silver_overvalued"
    else:
        interpretation = "normal"
    return round_money(ratio), interpretation
