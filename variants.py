"""City / market variants of a resolved price."""

from typing import Optional

from calculator import round_money
from models import PremiumKind, PriceRecord, VariantOffset, VariantPrice

SORT_KEYS = ("price", "name")


def apply_offset(base_per_gram: float, offset: VariantOffset) -> float:
    # Applied to the marked-up base only; the offset itself is never marked up.
    if offset.premium_kind == PremiumKind.multiplicative:
        return base_per_gram * (1 + offset.premium)
    return base_per_gram + offset.premium


def expand(
    record: PriceRecord,
    offsets: list[VariantOffset],
    sort_by: Optional[str] = None,
) -> list[VariantPrice]:
    """
    One derived price per offset, in configuration order unless sort_by is
    "price" or "name". The base record is left untouched.
    """
    if sort_by is not None and sort_by not in SORT_KEYS:
        raise ValueError(f"Unsupported sort key '{sort_by}'. Use one of: {SORT_KEYS}")

    base = record.prices.per_gram
    variants = []
    for offset in offsets:
        per_gram = apply_offset(base, offset)
        variants.append(
            VariantPrice(
                name=offset.name,
                region=offset.region,
                per_gram=round_money(per_gram),
                per_ten_gram=round_money(per_gram * 10),
                per_kilogram=round_money(per_gram * 1000),
                making_charges_pct=offset.making_charges_pct,
                tax_pct=offset.tax_pct,
            )
        )

    if sort_by == "price":
        variants.sort(key=lambda v: v.per_gram)
    elif sort_by == "name":
        variants.sort(key=lambda v: v.name.lower())
    return variants
