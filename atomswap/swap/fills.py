"""
Partial Fill Allocator.

Splits an order's source amount among fillers. Callers hold the per-order
guard and write the order back with OrderStore.put(), so the order's
`filled_amount` is the single authoritative counter: of two concurrent fills
that together oversubscribe the order, the first written wins and the second
sees the decremented remainder.
"""

import logging
from typing import Optional

from ..core import (
    Order, OrderStatus, PartialFill, FillStatus, FillSecretMode,
    InsufficientRemaining, BelowMinimumFill, FillRejected, new_id,
)

log = logging.getLogger(__name__)

# Orders accept fills only in these states
FILLABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.SOURCE_LOCKED, OrderStatus.DEST_LOCKED)


class PartialFillAllocator:

    def allocate(self, order: Order, filler: str, amount: int) -> PartialFill:
        """
        Reserve `amount` of the order's source amount for `filler`.

        Raises:
            FillRejected: order no longer accepts fills
            BelowMinimumFill: amount < min_fill_amount
            InsufficientRemaining: amount > what is left
        """
        if order.status not in FILLABLE_STATUSES:
            raise FillRejected(f"Order {order.id} is {order.status.value}")
        if amount <= 0:
            raise BelowMinimumFill(f"Fill amount must be positive, got {amount}")

        # Non-fillable orders take a single fill for the whole amount
        minimum = order.min_fill_amount if order.fillable else order.source_amount
        remaining = order.remaining
        if amount < minimum:
            raise BelowMinimumFill(f"Fill {amount} below minimum {minimum}")
        if amount > remaining:
            raise InsufficientRemaining(f"Fill {amount} exceeds remaining {remaining}")

        fill = PartialFill(
            id=new_id("fill"),
            order_id=order.id,
            filler=filler,
            amount=amount,
            dest_amount=self._dest_share(order, amount),
        )
        if order.fill_secret_mode == FillSecretMode.PER_FILL:
            fill.secret_index = len(order.fills)

        order.fills.append(fill)
        order.filled_amount += amount
        log.info(f"Order {order.id}: fill {fill.id} by {filler} for {amount} "
                 f"({order.filled_amount}/{order.source_amount})")
        return fill

    def _dest_share(self, order: Order, amount: int) -> int:
        """Proportional destination amount. The fill that completes the order gets the remainder."""
        if order.filled_amount + amount == order.source_amount:
            already = sum(f.dest_amount for f in order.fills if f.active)
            return order.dest_amount - already
        return order.dest_amount * amount // order.source_amount

    def release(self, order: Order, fill_id: str, status: FillStatus) -> Optional[PartialFill]:
        """Move an active fill to a non-active status and return its amount to the order."""
        fill = order.get_fill(fill_id)
        if fill is None or not fill.active:
            return None
        fill.status = status
        order.filled_amount -= fill.amount
        log.info(f"Order {order.id}: fill {fill.id} {status.value}, "
                 f"{order.remaining} remaining")
        return fill
