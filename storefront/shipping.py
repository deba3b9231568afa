from __future__ import annotations

from collections.abc import Iterable

from storefront.schemas import ShippingRate


def calculate_shipping_cents(
    lines: Iterable[tuple[ShippingRate | None, int]],
    *,
    default_rate: int,
) -> int:
    """
    Shipping for a cart given ``(rate, quantity)`` per line.

    Every unit is an item. The unit with the highest first-item cost pays that
    cost; every other unit pays its additional-item cost. Lines without a rate
    use ``default_rate`` for both, so a cart with no shipping metadata at all
    costs ``default_rate`` per unit.
    """
    highest_base = 0
    highest_base_additional = 0
    additional_total = 0
    units = 0
    for rate, quantity in lines:
        if quantity <= 0:
            continue
        first_item = rate.first_item if rate else default_rate
        additional = rate.additional_items if rate else default_rate
        units += quantity
        additional_total += additional * quantity
        if first_item > highest_base or units == quantity:
            highest_base = first_item
            highest_base_additional = additional

    if units == 0:
        return 0
    return highest_base + additional_total - highest_base_additional
