"""Inventory ledger: stock reservation and release.

Reservation is all-or-nothing across an order's lines: each product is taken
with a single guarded decrement in the store, and if a later line fails the
lines already taken are given back before the error propagates.

Release is at most once per order. The order's ``stock_released`` flag is
claimed with a compare-and-set write, and only the claimant puts stock back.
A claimant that fails gives the claim back, so a later cancel can finish.
"""

from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from ordering.catalogue.product import ProductRepository
from ordering.config import RetryPolicy
from ordering.errors import Internal, InsufficientStock, ProductNotFound
from ordering.order.repository import OrderRepository
from ordering.store import StoreError
from ordering.utils.retry import retry_with_backoff

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StockLine:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class Reservation:
    lines: tuple[StockLine, ...]


class InventoryLedger:
    def __init__(self, products: ProductRepository, orders: OrderRepository, retry_policy: RetryPolicy) -> None:
        self._products = products
        self._orders = orders
        self._retry_policy = retry_policy

    def reserve(self, items: Iterable) -> Reservation:
        """Take stock for every line, or for none of them.

        ``items`` are objects with ``product_id`` and ``quantity``. Raises
        InsufficientStock (with the stock seen at the time) on the first line
        that cannot be covered.
        """
        taken: list[StockLine] = []
        for item in items:
            line = StockLine(product_id=item.product_id, quantity=item.quantity)
            try:
                self._products.conditional_decrement_stock(line.product_id, line.quantity)
            except (InsufficientStock, ProductNotFound, StoreError) as exc:
                logger.warning(
                    "Stock reservation failed, returning stock already taken",
                    product_id=line.product_id,
                    requested=line.quantity,
                    error=str(exc),
                    taken=len(taken),
                )
                self.restore(taken)
                raise
            taken.append(line)

        logger.info("Reserved stock", lines=[(line.product_id, line.quantity) for line in taken])
        return Reservation(lines=tuple(taken))

    def restore(self, lines: Iterable) -> None:
        """Give stock back unconditionally (compensation when no order exists yet).

        Each increment is retried with backoff. Lines that still fail are
        logged and reported together as Internal.
        """
        failed = []
        for line in lines:
            try:
                retry_with_backoff(
                    lambda line=line: self._products.increment_stock(line.product_id, line.quantity),
                    self._retry_policy,
                    (StoreError,),
                    f"restore stock for {line.product_id}",
                )
            except (StoreError, ProductNotFound) as exc:
                logger.error(
                    "Stock restore failed",
                    product_id=line.product_id,
                    quantity=line.quantity,
                    error=str(exc),
                )
                failed.append(line.product_id)
        if failed:
            raise Internal("Could not restore stock", product_ids=failed)

    def release(self, order_id: str, items: Iterable | None = None) -> bool:
        """Return an order's stock exactly once.

        ``items`` defaults to the order's own lines. Returns False when the
        stock had already been released. If some lines cannot be put back, the
        claim is given back with the lines that did succeed, so a retried
        release finishes only the rest.
        """
        order, claimed = self._orders.update(order_id, lambda order: order.claim_stock_release())
        if not claimed:
            logger.info("Stock already released", order_id=order_id)
            return False

        already_restored = set(order.restored_product_ids or [])
        lines = [
            StockLine(product_id=str(line.product_id), quantity=line.quantity)
            for line in (items if items is not None else order.items)
            if str(line.product_id) not in already_restored
        ]
        try:
            self.restore(lines)
        except Internal as exc:
            failed = set(exc.details.get("product_ids", []))
            restored = [line.product_id for line in lines if line.product_id not in failed]
            logger.error(
                "Stock release incomplete, giving back the claim",
                order_id=order_id,
                failed=sorted(failed),
                restored=restored,
            )
            self._orders.update(order_id, lambda order: order.abandon_stock_release(restored))
            raise

        logger.info("Released stock", order_id=order_id, skipped=sorted(already_restored))
        return True
