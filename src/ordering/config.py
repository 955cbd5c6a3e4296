"""Checkout policy and retry settings.

Shipping, fees and tax are business policy, not algorithm: they are read from
the environment once at process start and handed to the pricing evaluator.
All amounts are minor currency units.
"""

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class CheckoutPolicy:
    currency: str = "INR"
    tax_rate: float = 0.18
    standard_shipping: int = 0
    cod_shipping: int = 5000
    free_shipping_threshold: int | None = None
    processing_fees: dict[str, int] = field(default_factory=lambda: {"cod": 5000, "card": 2500})
    delivery_days: int = 7

    def shipping_for(self, payment_method: str, subtotal: int) -> int:
        if self.free_shipping_threshold is not None and subtotal >= self.free_shipping_threshold:
            return 0
        return self.cod_shipping if payment_method == "cod" else self.standard_shipping

    def processing_fee_for(self, payment_method: str) -> int:
        return self.processing_fees.get(payment_method, 0)

    @classmethod
    def from_env(cls) -> "CheckoutPolicy":
        return cls(
            currency=os.getenv("ORDERING_CURRENCY", "INR"),
            tax_rate=_env_float("ORDERING_TAX_RATE", 0.18),
            standard_shipping=_env_int("ORDERING_STANDARD_SHIPPING", 0),
            cod_shipping=_env_int("ORDERING_COD_SHIPPING", 5000),
            free_shipping_threshold=_env_int("ORDERING_FREE_SHIPPING_THRESHOLD", None),
            processing_fees={
                "cod": _env_int("ORDERING_COD_FEE", 5000),
                "card": _env_int("ORDERING_CARD_FEE", 2500),
            },
            delivery_days=_env_int("ORDERING_DELIVERY_DAYS", 7),
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounds optimistic-concurrency retries and compensation retries."""

    max_attempts: int = 3
    base_delay: float = 0.01
    max_delay: float = 0.2
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.max_delay < self.base_delay:
            raise ValueError(f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})")

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=_env_int("ORDERING_RETRY_ATTEMPTS", 3),
            base_delay=_env_float("ORDERING_RETRY_BASE_DELAY", 0.01),
            max_delay=_env_float("ORDERING_RETRY_MAX_DELAY", 0.2),
        )
