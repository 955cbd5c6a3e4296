"""Ordering bounded context: order lifecycle, inventory and coupon consistency.

Handles checkout (price, reserve stock, persist order, record coupon usage),
the order state machine driven by staff actions and payment gateway callbacks,
and the compensations that run on cancellation.
"""

from protean.domain import Domain

ordering = Domain(name="ordering")
