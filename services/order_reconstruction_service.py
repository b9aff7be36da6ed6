"""
Order reconstruction for settled payments.

Rebuilds what the buyer actually purchased from the offer definition and the
checkout metadata carried by the payment event:
- Main product at the event quantity (missing or non-positive clamps to 1)
- Selected order bumps, in selection order, each quantity 1
- Or, for an upsell payment, a single upsell item and nothing else

Bump ids that no longer exist on the offer are skipped so that a sale is never
blocked by a dangling reference. Every skip is logged and counted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Tuple

from domain.money import reference_price
from domain.offer import Offer
from domain.payment_event import CheckoutMetadata
from domain.sale import SaleItem, expected_total
from services.metrics import dangling_order_bumps_total

logger = logging.getLogger(__name__)

UPSELL_FALLBACK_NAME = "Upsell"


@dataclass(frozen=True, slots=True)
class ReconstructedOrder:
    """
    Purchased line items as of settlement time.

    items[0] is always the main product (or the upsell); bumps follow.
    """

    items: Tuple[SaleItem, ...]
    quantity: int
    is_upsell: bool = False
    dangling_bump_ids: Tuple[str, ...] = ()

    @property
    def total_in_cents(self) -> int:
        return expected_total(self.items, self.quantity)

    @property
    def reference_total_in_cents(self) -> int:
        """Pre-discount total for outbound payloads; never stored."""

        if not self.items:
            return 0
        head, *rest = self.items
        total = reference_price(head.price_in_cents, head.compare_at_price_in_cents) * self.quantity
        for item in rest:
            total += reference_price(item.price_in_cents, item.compare_at_price_in_cents)
        return total


def clamp_quantity(quantity: int | None) -> int:
    if quantity is None or quantity < 1:
        return 1
    return quantity


def _upsell_order(offer: Offer, amount_in_cents: int) -> ReconstructedOrder:
    upsell = offer.upsell
    if upsell is None or not upsell.name:
        logger.warning(
            "Upsell payment for offer without upsell configuration; using charged amount",
            extra={"offer_slug": offer.slug, "amount_in_cents": amount_in_cents},
        )
        item = SaleItem(name=UPSELL_FALLBACK_NAME, price_in_cents=amount_in_cents, is_order_bump=False)
    else:
        item = SaleItem(
            name=upsell.name,
            price_in_cents=upsell.price_in_cents,
            is_order_bump=False,
            custom_id=upsell.custom_id,
        )
    return ReconstructedOrder(items=(item,), quantity=1, is_upsell=True)


def reconstruct_order(
    offer: Offer,
    metadata: CheckoutMetadata,
    amount_in_cents: int = 0,
) -> ReconstructedOrder:
    """
    Build the frozen item list for a payment.

    Args:
        offer: Offer the payment was made against
        metadata: Parsed checkout metadata from the payment event
        amount_in_cents: Charged amount; only used to price an upsell when the
            offer no longer carries an upsell configuration

    Returns:
        ReconstructedOrder with items, clamped quantity and any dangling bump ids

    Example:
        order = reconstruct_order(offer, event.metadata, event.amount_in_cents)
        order.total_in_cents  # main * quantity + bumps
    """

    if metadata.is_upsell:
        return _upsell_order(offer, amount_in_cents)

    main = offer.main_product
    items: List[SaleItem] = [
        SaleItem(
            name=main.name,
            price_in_cents=main.price_in_cents,
            is_order_bump=False,
            product_id=main.product_id,
            custom_id=main.custom_id,
            compare_at_price_in_cents=main.compare_at_price_in_cents,
        )
    ]
    dangling: List[str] = []

    for bump_id in metadata.selected_order_bumps:
        bump = offer.find_order_bump(bump_id)
        if bump is None:
            dangling.append(bump_id)
            continue
        items.append(
            SaleItem(
                name=bump.name,
                price_in_cents=bump.price_in_cents,
                is_order_bump=True,
                product_id=bump.product_id,
                custom_id=bump.custom_id,
                compare_at_price_in_cents=bump.compare_at_price_in_cents,
            )
        )

    if dangling:
        dangling_order_bumps_total.inc(len(dangling))
        logger.warning(
            f"Skipped {len(dangling)} order bump(s) no longer present on offer '{offer.slug}'",
            extra={"offer_slug": offer.slug, "dangling_bump_ids": dangling},
        )

    return ReconstructedOrder(
        items=tuple(items),
        quantity=clamp_quantity(metadata.quantity),
        is_upsell=False,
        dangling_bump_ids=tuple(dangling),
    )


__all__ = [
    "ReconstructedOrder",
    "clamp_quantity",
    "reconstruct_order",
]
