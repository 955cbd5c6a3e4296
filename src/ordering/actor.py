"""Caller identity as supplied by the external identity provider.

The engine trusts ``{uid, role}`` as already authenticated. It only decides
what the caller may do with it: customers act on their own orders, staff act
on any order and are the only ones who may move fulfilment states.
"""

from dataclasses import dataclass

from ordering.errors import Forbidden

STAFF_ROLES = frozenset({"admin", "staff"})
SYSTEM_ROLE = "system"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = "customer"

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def ensure_staff(self) -> None:
        if not self.is_staff:
            raise Forbidden("Staff access required", user_id=self.user_id, role=self.role)

    def ensure_can_access(self, order) -> None:
        """Owners and staff may act on an order; anyone else is refused."""
        if self.role == SYSTEM_ROLE or self.is_staff:
            return
        if not order.is_owned_by(self.user_id):
            raise Forbidden("Access denied", order_id=str(order.id), user_id=self.user_id)


PAYMENT_GATEWAY = Actor(user_id="payment-gateway", role=SYSTEM_ROLE)
SYSTEM = Actor(user_id="system", role=SYSTEM_ROLE)
