"""Catalogue collaborator: product reads and stock counters.

Products are owned by the catalogue service; the ordering engine only reads
them and moves their ``stock`` counter. Stock moves are single guarded
increments in the document store, never a read-then-write from here.
"""

from dataclasses import dataclass

import structlog

from ordering.errors import InsufficientStock, ProductNotFound
from ordering.store import BoundViolation, DocumentNotFound, DocumentStore

logger = structlog.get_logger(__name__)

PRODUCTS = "products"


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: int
    stock: int
    is_active: bool = True
    sku: str | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "price": self.price,
            "stock": self.stock,
            "is_active": self.is_active,
            "sku": self.sku,
        }

    @classmethod
    def from_document(cls, key: str, data: dict) -> "Product":
        return cls(
            id=key,
            name=data["name"],
            price=int(data["price"]),
            stock=int(data.get("stock") or 0),
            is_active=bool(data.get("is_active", True)),
            sku=data.get("sku"),
        )


class ProductRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def add(self, product: Product) -> Product:
        if product.stock < 0:
            raise ValueError(f"Stock cannot be negative for product {product.id}")
        self._store.create(PRODUCTS, product.id, product.to_dict())
        return product

    def get(self, product_id: str) -> Product:
        document = self._store.get(PRODUCTS, product_id)
        if document is None:
            raise ProductNotFound(product_id)
        return Product.from_document(document.key, document.data)

    def conditional_decrement_stock(self, product_id: str, quantity: int) -> int:
        """Take ``quantity`` units if at least that many remain. Returns the new stock."""
        try:
            document = self._store.increment(PRODUCTS, product_id, "stock", -quantity, minimum=0)
        except BoundViolation as exc:
            raise InsufficientStock(product_id, exc.current, quantity) from exc
        except DocumentNotFound as exc:
            raise ProductNotFound(product_id) from exc
        return document.data["stock"]

    def increment_stock(self, product_id: str, quantity: int) -> int:
        try:
            document = self._store.increment(PRODUCTS, product_id, "stock", quantity)
        except DocumentNotFound as exc:
            raise ProductNotFound(product_id) from exc
        return document.data["stock"]
